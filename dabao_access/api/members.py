"""Project membership, role and permission-check endpoints."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from dabao_access.auth.gate import RequirePermission
from dabao_access.auth.middleware import ConsoleContextDep, RequestContext
from dabao_access.database import get_db
from dabao_access.engine.permissions import Action, ResourceType, Role
from dabao_access.errors import Forbidden, NotFound, Unauthenticated
from dabao_access.schemas.access import (
    AuthCheckResponse,
    MemberResponse,
    RoleResponse,
    UpdateRoleRequest,
)
from dabao_access.services import Services, ServicesDep
from dabao_access.storage.repositories import get_users

logger = logging.getLogger(__name__)

router = APIRouter()


def _require(resource: ResourceType, action: Action):
    return Depends(RequirePermission(resource, action, scope_param="project_id"))


async def actor_role(services: Services, ctx: RequestContext, scope_id: str) -> Role | None:
    if ctx.token is not None:
        return ctx.token.role if ctx.token.project_id == scope_id else None
    if ctx.subject is None:
        return None
    return await services.engine.effective_role(ctx.subject.user_id, scope_id, ctx.role_cache)


async def _require_owner_for(
    services: Services,
    ctx: RequestContext,
    project_id: str,
    action: Action,
) -> None:
    # Only owners may grant OWNER or touch an owner's membership
    if await actor_role(services, ctx, project_id) != Role.OWNER:
        raise Forbidden(ResourceType.USER, action, "Only an owner can change an owner's access")


@router.get("/projects/{project_id}/auth/check", response_model=AuthCheckResponse)
async def check_permission(
    project_id: str,
    ctx: ConsoleContextDep,
    services: ServicesDep,
    resource: str = Query(),
    action: str = Query(),
):
    """Would the caller be allowed to perform ``action`` on ``resource``?"""
    if ctx.is_anonymous:
        raise Unauthenticated()
    resource_type = ResourceType.parse(resource)
    parsed_action = Action.parse(action)
    allowed = await services.gate.allows(ctx, project_id, resource_type, parsed_action)
    return AuthCheckResponse(allowed=allowed, resource=resource_type.value, action=parsed_action.value)


@router.get("/projects/{project_id}/auth/role", response_model=RoleResponse)
async def my_role(project_id: str, ctx: ConsoleContextDep, services: ServicesDep):
    """The caller's effective role in the project (null when none)."""
    if ctx.is_anonymous:
        raise Unauthenticated()
    return RoleResponse(role=await actor_role(services, ctx, project_id))


@router.get("/projects/{project_id}/members", response_model=list[MemberResponse])
async def list_members(
    project_id: str,
    ctx: Annotated[RequestContext, _require(ResourceType.USER, Action.READ)],
    services: ServicesDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Users with a role directly in the project."""
    assignments = await services.policy_store.list_role_assignments(project_id)
    users = await get_users(db, [user_id for user_id, _ in assignments])
    return [
        MemberResponse(
            user_id=user_id,
            email=users[user_id].email if user_id in users else None,
            role=role,
        )
        for user_id, role in assignments
    ]


@router.put("/projects/{project_id}/members/{user_id}", response_model=MemberResponse)
async def set_member_role(
    project_id: str,
    user_id: str,
    body: UpdateRoleRequest,
    ctx: Annotated[RequestContext, _require(ResourceType.USER, Action.UPDATE)],
    services: ServicesDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Add a user to the project or change their role."""
    role = Role.parse(body.role)
    users = await get_users(db, [user_id])
    if user_id not in users:
        raise NotFound("User not found")
    current = await services.policy_store.get_role(user_id, project_id)
    if role == Role.OWNER or current == Role.OWNER:
        await _require_owner_for(services, ctx, project_id, Action.UPDATE)
    actor_id = ctx.subject.user_id if ctx.subject else None
    await services.policy_store.assign_role(user_id, project_id, role, actor_id=actor_id)
    return MemberResponse(user_id=user_id, email=users[user_id].email, role=role)


@router.delete(
    "/projects/{project_id}/members/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_member(
    project_id: str,
    user_id: str,
    ctx: Annotated[RequestContext, _require(ResourceType.USER, Action.DELETE)],
    services: ServicesDep,
):
    """Remove a user's role from the project."""
    current = await services.policy_store.get_role(user_id, project_id)
    if current is None:
        raise NotFound("Member not found")
    if current == Role.OWNER:
        await _require_owner_for(services, ctx, project_id, Action.DELETE)
    actor_id = ctx.subject.user_id if ctx.subject else None
    await services.policy_store.revoke_role(user_id, project_id, current, actor_id=actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
