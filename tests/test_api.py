"""End-to-end tests through the HTTP API."""

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import delete, update

from dabao_access.engine.permissions import Role
from dabao_access.main import create_app
from dabao_access.models import ProjectDomain, ProjectInvite
from dabao_access.models.base import utc_now

from conftest import add_tenant, add_user, make_token

pytestmark = pytest.mark.anyio


@pytest.fixture
async def client(settings, services):
    app = create_app(settings, services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://acme.example.com") as c:
        yield c


@pytest.fixture
async def acme(session_factory):
    owner = await add_user(session_factory, "owner", "owner@acme.com")
    project = await add_tenant(session_factory, "acme", owner, domain="acme.example.com")
    return owner, project


def bearer(external_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(external_id)}"}


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_tenant_is_resolved_from_host(client, acme):
    _, project = acme
    response = await client.get("/v1/tenant", headers={"Host": "ACME.example.com:8080"})
    assert response.status_code == 200
    body = response.json()
    assert body["project_id"] == project.id
    assert body["domain"] == "acme.example.com"
    assert body["primary_domain"] == "acme.example.com"


async def test_unknown_host_is_404(client, acme):
    response = await client.get("/v1/tenant", headers={"Host": "nobody.example.com"})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TENANT_NOT_FOUND"


async def test_resolve_domain_endpoint(client, acme):
    _, project = acme
    response = await client.get("/v1/domains/resolve", params={"domain": "acme.example.com"})
    assert response.status_code == 200
    assert response.json()["project_slug"] == "acme"

    response = await client.get("/v1/domains/resolve", params={"domain": "other.example.com"})
    assert response.status_code == 404


async def test_members_require_authentication(client, acme):
    _, project = acme
    response = await client.get(f"/v1/projects/{project.id}/members")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHENTICATED"


async def test_invalid_credential_is_anonymous(client, acme):
    _, project = acme
    response = await client.get(
        f"/v1/projects/{project.id}/members", headers={"Authorization": "Bearer nope"}
    )
    assert response.status_code == 401


async def test_owner_lists_members(client, acme):
    owner, project = acme
    response = await client.get(f"/v1/projects/{project.id}/members", headers=bearer("owner"))
    assert response.status_code == 200
    assert response.json() == [
        {"user_id": owner.id, "email": "owner@acme.com", "role": "OWNER"}
    ]


async def test_session_cookie_is_accepted(client, acme):
    _, project = acme
    response = await client.get(
        f"/v1/projects/{project.id}/members",
        headers={"Cookie": f"sb-access-token={make_token('owner')}"},
    )
    assert response.status_code == 200


async def test_stranger_is_forbidden(client, acme):
    _, project = acme
    response = await client.get(
        f"/v1/projects/{project.id}/members", headers=bearer("stranger")
    )
    assert response.status_code == 403
    body = response.json()
    assert body["error"]["code"] == "FORBIDDEN"
    # The denied permission is not echoed back
    assert "user" not in body["error"]["message"].lower()


async def test_missing_project_looks_like_forbidden(client, acme):
    response = await client.get("/v1/projects/does-not-exist/members", headers=bearer("owner"))
    assert response.status_code == 403


async def test_member_promotion_flow(client, session_factory, services, acme):
    _, project = acme
    user = await add_user(session_factory, "member", "member@acme.com")
    url = f"/v1/projects/{project.id}/members/{user.id}"

    response = await client.put(url, json={"role": "member"}, headers=bearer("owner"))
    assert response.status_code == 200
    assert response.json()["role"] == "MEMBER"

    check = f"/v1/projects/{project.id}/auth/check"
    params = {"resource": "campaign", "action": "delete"}
    response = await client.get(check, params=params, headers=bearer("member"))
    assert response.json() == {"allowed": False, "resource": "campaign", "action": "delete"}

    response = await client.put(url, json={"role": "ADMIN"}, headers=bearer("owner"))
    assert response.status_code == 200

    response = await client.get(check, params=params, headers=bearer("member"))
    assert response.json()["allowed"] is True

    response = await client.get(f"/v1/projects/{project.id}/auth/role", headers=bearer("member"))
    assert response.json() == {"role": "ADMIN"}
    assert await services.policy_store.get_role(user.id, project.id) == Role.ADMIN


async def test_invalid_role_is_400(client, session_factory, acme):
    _, project = acme
    user = await add_user(session_factory, "member")
    response = await client.put(
        f"/v1/projects/{project.id}/members/{user.id}",
        json={"role": "SUPERUSER"},
        headers=bearer("owner"),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_unknown_user_is_404(client, acme):
    _, project = acme
    response = await client.put(
        f"/v1/projects/{project.id}/members/no-such-user",
        json={"role": "MEMBER"},
        headers=bearer("owner"),
    )
    assert response.status_code == 404


async def test_admin_cannot_touch_owner(client, session_factory, services, acme):
    owner, project = acme
    admin = await add_user(session_factory, "admin")
    await services.policy_store.assign_role(admin.id, project.id, Role.ADMIN)

    response = await client.delete(
        f"/v1/projects/{project.id}/members/{owner.id}", headers=bearer("admin")
    )
    assert response.status_code == 403

    response = await client.put(
        f"/v1/projects/{project.id}/members/{admin.id}",
        json={"role": "OWNER"},
        headers=bearer("admin"),
    )
    assert response.status_code == 403
    assert await services.policy_store.get_role(owner.id, project.id) == Role.OWNER


async def test_last_owner_cannot_leave(client, acme):
    owner, project = acme
    response = await client.delete(
        f"/v1/projects/{project.id}/members/{owner.id}", headers=bearer("owner")
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "LAST_OWNER_PROTECTION"


async def test_owner_removes_member(client, session_factory, services, acme):
    _, project = acme
    user = await add_user(session_factory, "viewer")
    await services.policy_store.assign_role(user.id, project.id, Role.VIEWER)

    response = await client.delete(
        f"/v1/projects/{project.id}/members/{user.id}", headers=bearer("owner")
    )
    assert response.status_code == 204
    assert await services.policy_store.get_role(user.id, project.id) is None

    response = await client.delete(
        f"/v1/projects/{project.id}/members/{user.id}", headers=bearer("owner")
    )
    assert response.status_code == 404


async def test_organization_and_project_flow(client):
    headers = bearer("founder")
    response = await client.post(
        "/v1/organizations", json={"name": "Globex", "slug": "globex"}, headers=headers
    )
    assert response.status_code == 201
    org = response.json()
    assert org["role"] == "OWNER"

    response = await client.get("/v1/organizations", headers=headers)
    assert [o["slug"] for o in response.json()] == ["globex"]

    response = await client.post(
        f"/v1/organizations/{org['id']}/projects",
        json={"name": "Globex Rewards", "slug": "globex-rewards"},
        headers=headers,
    )
    assert response.status_code == 201
    project = response.json()
    assert project["domain"] == "globex-rewards.dabao.test"

    # Platform subdomains are live immediately
    response = await client.get("/v1/tenant", headers={"Host": "globex-rewards.dabao.test"})
    assert response.status_code == 200
    assert response.json()["project_id"] == project["id"]

    # Organization ownership carries over to the new project
    response = await client.get(f"/v1/projects/{project['id']}/auth/role", headers=headers)
    assert response.json() == {"role": "OWNER"}


async def test_project_creation_needs_organization_role(client):
    response = await client.post(
        "/v1/organizations", json={"name": "Globex", "slug": "globex"}, headers=bearer("founder")
    )
    org_id = response.json()["id"]

    response = await client.post(
        f"/v1/organizations/{org_id}/projects",
        json={"name": "Sneaky", "slug": "sneaky"},
        headers=bearer("outsider"),
    )
    assert response.status_code == 403


async def test_anonymous_cannot_create_organization(client):
    response = await client.post("/v1/organizations", json={"name": "X", "slug": "x"})
    assert response.status_code == 401


async def test_custom_domain_lifecycle(client, verifier, acme):
    _, project = acme
    base = f"/v1/projects/{project.id}/domains"
    headers = bearer("owner")

    response = await client.post(base, json={"domain": "Shop.Acme.io"}, headers=headers)
    assert response.status_code == 201
    binding = response.json()
    assert binding["domain"] == "shop.acme.io"
    assert binding["is_verified"] is False
    assert binding["verification_token"].startswith("verify-")

    response = await client.get("/v1/tenant", headers={"Host": "shop.acme.io"})
    assert response.status_code == 404

    assert binding["verification_record"] == "_dabao-verify.shop.acme.io"
    response = await client.post(f"{base}/{binding['id']}/verify", headers=headers)
    assert response.status_code == 400

    verifier.publish("shop.acme.io", binding["verification_token"])
    response = await client.post(f"{base}/{binding['id']}/verify", headers=headers)
    assert response.status_code == 200
    assert response.json()["is_verified"] is True

    response = await client.get("/v1/tenant", headers={"Host": "shop.acme.io"})
    assert response.status_code == 200

    response = await client.post(base, json={"domain": "shop.acme.io"}, headers=headers)
    assert response.status_code == 400

    response = await client.delete(f"{base}/{binding['id']}", headers=headers)
    assert response.status_code == 204
    response = await client.get("/v1/tenant", headers={"Host": "shop.acme.io"})
    assert response.status_code == 404


async def test_api_token_flow(client, session_factory, services, acme):
    _, project = acme
    base = f"/v1/projects/{project.id}/auth-tokens"

    response = await client.post(base, json={"role": "MEMBER"}, headers=bearer("owner"))
    assert response.status_code == 201
    issued = response.json()
    assert issued["token"].startswith("datk_")
    token_headers = {"Authorization": f"Bearer {issued['token']}"}

    response = await client.get(
        f"/v1/projects/{project.id}/auth/check",
        params={"resource": "customer", "action": "create"},
        headers=token_headers,
    )
    assert response.json()["allowed"] is True

    # MEMBER tokens cannot read the member list
    response = await client.get(f"/v1/projects/{project.id}/members", headers=token_headers)
    assert response.status_code == 403

    response = await client.get(base, headers=bearer("owner"))
    listed = response.json()
    assert len(listed) == 1
    assert listed[0]["token"].endswith("...")
    assert listed[0]["token"] != issued["token"]

    response = await client.delete(f"{base}/{issued['id']}", headers=bearer("owner"))
    assert response.status_code == 204

    response = await client.get(
        f"/v1/projects/{project.id}/auth/role", headers=token_headers
    )
    assert response.status_code == 401


async def test_token_cannot_be_used_in_another_project(client, session_factory, services, acme):
    owner, project = acme
    other = await add_tenant(session_factory, "other", owner)
    issued = await services.tokens.create_token(project.id, Role.ADMIN)

    response = await client.get(
        f"/v1/projects/{other.id}/members",
        headers={"Authorization": f"Bearer {issued.token}"},
    )
    assert response.status_code == 403


async def test_token_above_own_role_is_forbidden(client, session_factory, services, acme):
    _, project = acme
    admin = await add_user(session_factory, "admin")
    await services.policy_store.assign_role(admin.id, project.id, Role.ADMIN)

    response = await client.post(
        f"/v1/projects/{project.id}/auth-tokens", json={"role": "OWNER"}, headers=bearer("admin")
    )
    assert response.status_code == 403

    response = await client.post(
        f"/v1/projects/{project.id}/auth-tokens", json={"role": "ADMIN"}, headers=bearer("admin")
    )
    assert response.status_code == 201


async def test_token_of_another_project_is_not_found(client, session_factory, services, acme):
    owner, project = acme
    other = await add_tenant(session_factory, "other", owner)
    foreign = await services.tokens.create_token(other.id, Role.VIEWER)

    response = await client.delete(
        f"/v1/projects/{project.id}/auth-tokens/{foreign.id}", headers=bearer("owner")
    )
    assert response.status_code == 404
    assert await services.tokens.get_token(foreign.id) is not None


async def test_lowercase_bearer_scheme_is_accepted(client, acme):
    _, project = acme
    response = await client.get(
        f"/v1/projects/{project.id}/members",
        headers={"Authorization": f"bearer {make_token('owner')}"},
    )
    assert response.status_code == 200


async def test_claimed_domains_never_skip_verification(client, acme):
    _, project = acme
    base = f"/v1/projects/{project.id}/domains"
    headers = bearer("owner")

    alias = {"domain": "www.bigbank.com", "type": "ALIAS", "is_primary": True}
    response = await client.post(base, json=alias, headers=headers)
    assert response.status_code == 201
    assert response.json()["is_verified"] is False
    response = await client.get("/v1/tenant", headers={"Host": "www.bigbank.com"})
    assert response.status_code == 404
    response = await client.get(f"/v1/projects/{project.id}", headers=headers)
    assert response.json()["domain"] == "acme.example.com"

    for body in (
        {"domain": "bigbank.com", "type": "SUBDOMAIN"},
        {"domain": "bigbank.com", "type": "PRIMARY"},
        {"domain": "globex.dabao.test"},
        {"domain": "globex.dabao.test", "type": "ALIAS"},
    ):
        response = await client.post(base, json=body, headers=headers)
        assert response.status_code == 400, body
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_failed_project_creation_leaves_nothing_behind(
    client, session_factory, services, acme
):
    _, squatted = acme
    async with session_factory() as db:
        conflict = ProjectDomain(
            project_id=squatted.id,
            domain="globex-rewards.dabao.test",
            type="CUSTOM_DOMAIN",
            is_verified=True,
        )
        db.add(conflict)
        await db.commit()

    headers = bearer("founder")
    response = await client.post(
        "/v1/organizations", json={"name": "Globex", "slug": "globex"}, headers=headers
    )
    url = f"/v1/organizations/{response.json()['id']}/projects"
    body = {"name": "Globex Rewards", "slug": "globex-rewards"}

    response = await client.post(url, json=body, headers=headers)
    assert response.status_code == 400
    assert await services.directory.resolve_by_slug("globex-rewards") is None

    async with session_factory() as db:
        await db.execute(delete(ProjectDomain).where(ProjectDomain.id == conflict.id))
        await db.commit()

    # The slug was never taken, so a retry succeeds
    response = await client.post(url, json=body, headers=headers)
    assert response.status_code == 201
    assert response.json()["domain"] == "globex-rewards.dabao.test"


async def test_admin_under_organization_owner_can_step_down(client, session_factory):
    founder = bearer("founder")
    response = await client.post(
        "/v1/organizations", json={"name": "Globex", "slug": "globex"}, headers=founder
    )
    response = await client.post(
        f"/v1/organizations/{response.json()['id']}/projects",
        json={"name": "Globex Rewards", "slug": "globex-rewards"},
        headers=founder,
    )
    project_id = response.json()["id"]
    admin = await add_user(session_factory, "admin")
    url = f"/v1/projects/{project_id}/members/{admin.id}"

    response = await client.put(url, json={"role": "ADMIN"}, headers=founder)
    assert response.status_code == 200

    # The founder still administers the project through the organization
    response = await client.put(url, json={"role": "MEMBER"}, headers=bearer("admin"))
    assert response.status_code == 200
    assert response.json()["role"] == "MEMBER"


async def test_project_settings(client, session_factory, services, acme):
    _, project = acme
    url = f"/v1/projects/{project.id}"
    viewer = await add_user(session_factory, "viewer")
    await services.policy_store.assign_role(viewer.id, project.id, Role.VIEWER)

    response = await client.get(url, headers=bearer("viewer"))
    assert response.status_code == 200
    assert response.json()["slug"] == "acme"
    assert response.json()["domain"] == "acme.example.com"

    response = await client.patch(url, json={"name": "Nope"}, headers=bearer("viewer"))
    assert response.status_code == 403

    response = await client.patch(
        url, json={"name": "Acme Rewards", "theme": {"primary": "#ff0000"}}, headers=bearer("owner")
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Acme Rewards"
    assert response.json()["theme"] == {"primary": "#ff0000"}

    response = await client.patch(url, json={"name": ""}, headers=bearer("owner"))
    assert response.status_code == 422


async def test_deactivated_project_stays_manageable(client, acme):
    _, project = acme
    url = f"/v1/projects/{project.id}"

    response = await client.patch(url, json={"is_active": False}, headers=bearer("owner"))
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    response = await client.get("/v1/tenant", headers={"Host": "acme.example.com"})
    assert response.status_code == 404

    response = await client.get(url, headers=bearer("owner"))
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    response = await client.patch(url, json={"is_active": True}, headers=bearer("owner"))
    assert response.status_code == 200
    response = await client.get("/v1/tenant", headers={"Host": "acme.example.com"})
    assert response.status_code == 200


async def test_invite_and_accept(client, session_factory, services, acme):
    _, project = acme
    base = f"/v1/projects/{project.id}/invites"

    response = await client.post(
        base, json={"email": "New@Acme.com", "role": "MEMBER"}, headers=bearer("owner")
    )
    assert response.status_code == 201
    invite = response.json()
    assert invite["email"] == "new@acme.com"
    assert invite["role"] == "MEMBER"
    assert invite["token"]

    response = await client.post(base, json={"email": "new@acme.com"}, headers=bearer("owner"))
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CONFLICT"

    response = await client.get(base, headers=bearer("owner"))
    assert [(i["email"], i["token"]) for i in response.json()] == [("new@acme.com", None)]

    accept = {"token": invite["token"]}
    response = await client.post("/v1/invites/accept", json=accept)
    assert response.status_code == 401

    await add_user(session_factory, "stranger")
    response = await client.post("/v1/invites/accept", json=accept, headers=bearer("stranger"))
    assert response.status_code == 403

    newcomer = await add_user(session_factory, "newcomer", "new@acme.com")
    response = await client.post("/v1/invites/accept", json=accept, headers=bearer("newcomer"))
    assert response.status_code == 200
    assert response.json() == {"project_id": project.id, "role": "MEMBER"}
    assert await services.policy_store.get_role(newcomer.id, project.id) == Role.MEMBER

    # Single use
    response = await client.post("/v1/invites/accept", json=accept, headers=bearer("newcomer"))
    assert response.status_code == 404
    response = await client.get(base, headers=bearer("owner"))
    assert response.json() == []

    # Members cannot be invited again
    response = await client.post(base, json={"email": "new@acme.com"}, headers=bearer("owner"))
    assert response.status_code == 409


async def test_invite_resend_and_revoke(client, session_factory, acme):
    _, project = acme
    base = f"/v1/projects/{project.id}/invites"
    await add_user(session_factory, "second", "second@acme.com")

    response = await client.post(base, json={"email": "second@acme.com"}, headers=bearer("owner"))
    first = response.json()
    response = await client.post(f"{base}/{first['id']}/resend", headers=bearer("owner"))
    assert response.status_code == 200
    resent = response.json()
    assert resent["id"] == first["id"]
    assert resent["token"] != first["token"]

    response = await client.post(
        "/v1/invites/accept", json={"token": first["token"]}, headers=bearer("second")
    )
    assert response.status_code == 404

    response = await client.delete(f"{base}/{first['id']}", headers=bearer("owner"))
    assert response.status_code == 204
    response = await client.post(
        "/v1/invites/accept", json={"token": resent["token"]}, headers=bearer("second")
    )
    assert response.status_code == 404
    response = await client.delete(f"{base}/{first['id']}", headers=bearer("owner"))
    assert response.status_code == 404


async def test_expired_invite_is_not_found(client, session_factory, services, acme):
    _, project = acme
    user = await add_user(session_factory, "late", "late@acme.com")
    issued = await services.invites.create_invite(project.id, "late@acme.com", Role.VIEWER)
    async with session_factory() as db:
        await db.execute(
            update(ProjectInvite)
            .where(ProjectInvite.id == issued.id)
            .values(expires_at=utc_now() - timedelta(minutes=1))
        )
        await db.commit()

    response = await client.post(
        "/v1/invites/accept", json={"token": issued.token}, headers=bearer("late")
    )
    assert response.status_code == 404
    assert await services.policy_store.get_role(user.id, project.id) is None

    # An expired invitation no longer blocks a new one
    response = await client.post(
        f"/v1/projects/{project.id}/invites",
        json={"email": "late@acme.com"},
        headers=bearer("owner"),
    )
    assert response.status_code == 201


async def test_invite_cannot_exceed_own_role(client, session_factory, services, acme):
    _, project = acme
    admin = await add_user(session_factory, "admin")
    await services.policy_store.assign_role(admin.id, project.id, Role.ADMIN)
    base = f"/v1/projects/{project.id}/invites"

    response = await client.post(
        base, json={"email": "boss@acme.com", "role": "OWNER"}, headers=bearer("admin")
    )
    assert response.status_code == 403
    response = await client.post(
        base, json={"email": "boss@acme.com", "role": "ADMIN"}, headers=bearer("admin")
    )
    assert response.status_code == 201


async def test_accepting_keeps_a_higher_role(session_factory, services, acme):
    _, project = acme
    user = await add_user(session_factory, "promoted", "promoted@acme.com")
    issued = await services.invites.create_invite(project.id, "promoted@acme.com", Role.VIEWER)
    await services.policy_store.assign_role(user.id, project.id, Role.ADMIN)

    invite = await services.invites.accept_invite(issued.token, user.id, "Promoted@acme.com")
    assert invite.project_id == project.id
    assert await services.invites.list_invites(project.id) == []
    assert await services.policy_store.get_role(user.id, project.id) == Role.ADMIN
