"""
Casbin enforcement of the role permission table.

Requests are (role, resource type, action). A policy line grants an action
on a resource to a role; "*" as the resource and "*" or "manage" as the
action are wildcards. There is no deny effect: anything no line matches is
refused.
"""

from typing import Iterable, Mapping

from casbin import Enforcer
from casbin.model import Model

from dabao_access.engine.permissions import DEFAULT_POLICY, Grant, Role

RBAC_MODEL = """
[request_definition]
r = sub, obj, act

[policy_definition]
p = sub, obj, act

[policy_effect]
e = some(where (p.eft == allow))

[matchers]
m = r.sub == p.sub && (r.obj == p.obj || p.obj == "*") && (r.act == p.act || p.act == "*" || p.act == "manage")
"""


def _create_model() -> Model:
    model = Model()
    model.load_model_from_text(RBAC_MODEL)
    return model


def build_enforcer(
    policy: Mapping[Role | str, Iterable[Grant]] = DEFAULT_POLICY,
) -> Enforcer:
    """Enforcer holding one policy line per (role, resource type, action) grant."""
    enforcer = Enforcer(_create_model())
    for role, grants in policy.items():
        subject = Role.parse(role).value
        for resource_type, action in grants:
            enforcer.add_named_policy("p", subject, resource_type.value, action.value)
    return enforcer
