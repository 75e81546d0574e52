"""Policy engine - decides (subject, scope, resource type, action).

A role is allowed when one of its grants matches exactly, by action wildcard
on the resource, or by resource wildcard. There is no explicit deny; a tuple
nothing grants is denied. The table is enforced by casbin, see
``dabao_access.engine.enforcer``.
"""

import logging
from functools import lru_cache
from typing import Iterable, Mapping

from casbin import Enforcer

from dabao_access.engine.enforcer import build_enforcer
from dabao_access.engine.permissions import Action, Grant, ResourceType, Role
from dabao_access.storage.policy_store import PolicyStore

logger = logging.getLogger(__name__)

# Sentinel for "looked up, no role" in the per-request cache
_NO_ROLE = object()


@lru_cache(maxsize=1)
def default_enforcer() -> Enforcer:
    return build_enforcer()


@lru_cache(maxsize=None)
def permits(role: Role, resource_type: ResourceType, action: Action) -> bool:
    """Decision of the default table. Total over the enumerations."""
    return default_enforcer().enforce(role.value, resource_type.value, action.value)


class PolicyEngine:
    """Evaluates permissions against the role assignments in a PolicyStore."""

    def __init__(
        self,
        store: PolicyStore,
        policy: Mapping[Role, Iterable[Grant]] | None = None,
    ):
        self.store = store
        self._enforcer = build_enforcer(policy) if policy is not None else None

    def role_permits(self, role: Role, resource_type: ResourceType, action: Action) -> bool:
        if self._enforcer is None:
            return permits(role, resource_type, action)
        return self._enforcer.enforce(role.value, resource_type.value, action.value)

    async def effective_role(
        self, subject_id: str, scope_id: str, cache: dict | None = None
    ) -> Role | None:
        """
        Role of the subject in the scope. ``cache`` is a per-request dict;
        callers must not share it between requests.
        """
        key = (subject_id, scope_id)
        if cache is not None and key in cache:
            cached = cache[key]
            return None if cached is _NO_ROLE else cached
        role = await self.store.get_effective_role(subject_id, scope_id)
        if cache is not None:
            cache[key] = _NO_ROLE if role is None else role
        return role

    async def is_authorized(
        self,
        subject_id: str,
        scope_id: str,
        resource_type: ResourceType | str,
        action: Action | str,
        *,
        cache: dict | None = None,
    ) -> bool:
        resource_type = ResourceType.parse(resource_type)
        action = Action.parse(action)
        role = await self.effective_role(subject_id, scope_id, cache)
        if role is None:
            logger.debug("User %s has no role in scope %s", subject_id, scope_id)
            return False
        return self.role_permits(role, resource_type, action)
