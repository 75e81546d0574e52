"""Project API token endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from dabao_access.api.members import actor_role
from dabao_access.auth.gate import RequirePermission, require_same_scope
from dabao_access.auth.middleware import RequestContext
from dabao_access.auth.tokens import mask_token
from dabao_access.engine.permissions import Action, ResourceType, Role
from dabao_access.errors import Forbidden
from dabao_access.schemas.access import CreateTokenRequest, TokenResponse
from dabao_access.services import ServicesDep

router = APIRouter()


def _require(action: Action):
    return Depends(
        RequirePermission(ResourceType.AUTH_TOKEN, action, scope_param="project_id")
    )


@router.get("/projects/{project_id}/auth-tokens", response_model=list[TokenResponse])
async def list_tokens(
    project_id: str,
    ctx: Annotated[RequestContext, _require(Action.READ)],
    services: ServicesDep,
):
    tokens = await services.tokens.list_tokens(project_id)
    return [
        TokenResponse(
            id=t.id,
            token=mask_token(t.token_prefix),
            role=t.role,
            expires_at=t.expires_at,
            last_used_at=t.last_used_at,
            created_at=t.created_at,
        )
        for t in tokens
    ]


@router.post(
    "/projects/{project_id}/auth-tokens",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_token(
    project_id: str,
    body: CreateTokenRequest,
    ctx: Annotated[RequestContext, _require(Action.CREATE)],
    services: ServicesDep,
):
    """Issue a token. The plaintext value is only returned here."""
    role = Role.parse(body.role)
    own = await actor_role(services, ctx, project_id)
    if own is None or role.rank > own.rank:
        raise Forbidden(
            ResourceType.AUTH_TOKEN, Action.CREATE, "Cannot issue a token above your own role"
        )
    issued = await services.tokens.create_token(
        project_id,
        role,
        expires_in_days=body.expires_in_days,
        user_id=ctx.subject.user_id if ctx.subject else None,
    )
    return TokenResponse(
        id=issued.id, token=issued.token, role=issued.role, expires_at=issued.expires_at
    )


@router.delete(
    "/projects/{project_id}/auth-tokens/{token_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def revoke_token(
    project_id: str,
    token_id: str,
    ctx: Annotated[RequestContext, _require(Action.DELETE)],
    services: ServicesDep,
):
    token = await services.tokens.get_token(token_id)
    require_same_scope(token.project_id if token else None, project_id, "Token")
    await services.tokens.revoke_token(project_id, token_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
