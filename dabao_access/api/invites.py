"""Project invitation endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from dabao_access.api.members import actor_role
from dabao_access.auth.gate import RequirePermission
from dabao_access.auth.middleware import ConsoleContextDep, RequestContext
from dabao_access.engine.permissions import Action, ResourceType, Role
from dabao_access.errors import Forbidden, Unauthenticated
from dabao_access.schemas.access import (
    AcceptInviteRequest,
    AcceptInviteResponse,
    CreateInviteRequest,
    InviteResponse,
)
from dabao_access.services import ServicesDep
from dabao_access.storage.invites import IssuedInvite

router = APIRouter()


def _require(action: Action):
    return Depends(RequirePermission(ResourceType.USER, action, scope_param="project_id"))


def _issued_response(issued: IssuedInvite) -> InviteResponse:
    return InviteResponse(
        id=issued.id,
        email=issued.email,
        role=issued.role,
        expires_at=issued.expires_at,
        token=issued.token,
    )


@router.get("/projects/{project_id}/invites", response_model=list[InviteResponse])
async def list_invites(
    project_id: str,
    ctx: Annotated[RequestContext, _require(Action.READ)],
    services: ServicesDep,
):
    """Pending invitations. Tokens are never listed."""
    return [
        InviteResponse(id=i.id, email=i.email, role=i.role, expires_at=i.expires_at)
        for i in await services.invites.list_invites(project_id)
    ]


@router.post(
    "/projects/{project_id}/invites",
    response_model=InviteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_invite(
    project_id: str,
    body: CreateInviteRequest,
    ctx: Annotated[RequestContext, _require(Action.CREATE)],
    services: ServicesDep,
):
    """Invite an email address. The token is returned once for delivery."""
    role = Role.parse(body.role)
    own = await actor_role(services, ctx, project_id)
    if own is None or role.rank > own.rank:
        raise Forbidden(ResourceType.USER, Action.CREATE, "Cannot invite above your own role")
    issued = await services.invites.create_invite(
        project_id,
        body.email,
        role,
        invited_by=ctx.subject.user_id if ctx.subject else None,
    )
    return _issued_response(issued)


@router.post(
    "/projects/{project_id}/invites/{invite_id}/resend",
    response_model=InviteResponse,
)
async def resend_invite(
    project_id: str,
    invite_id: str,
    ctx: Annotated[RequestContext, _require(Action.UPDATE)],
    services: ServicesDep,
):
    """Issue a fresh token and expiry; the previous token stops working."""
    return _issued_response(await services.invites.resend_invite(project_id, invite_id))


@router.delete(
    "/projects/{project_id}/invites/{invite_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def revoke_invite(
    project_id: str,
    invite_id: str,
    ctx: Annotated[RequestContext, _require(Action.DELETE)],
    services: ServicesDep,
):
    await services.invites.revoke_invite(project_id, invite_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/invites/accept", response_model=AcceptInviteResponse)
async def accept_invite(
    body: AcceptInviteRequest,
    ctx: ConsoleContextDep,
    services: ServicesDep,
):
    """Redeem an invitation as the signed-in user it was sent to."""
    if ctx.subject is None:
        raise Unauthenticated()
    invite = await services.invites.accept_invite(
        body.token, ctx.subject.user_id, ctx.subject.email
    )
    role = await services.policy_store.get_role(ctx.subject.user_id, invite.project_id)
    return AcceptInviteResponse(project_id=invite.project_id, role=role or invite.role)
