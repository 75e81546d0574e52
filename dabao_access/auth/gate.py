"""Authorization gate.

Wraps route handlers so that a handler runs only after the engine allows
the request. Also the one place where access errors become HTTP responses.

Usage as a wrapper:

    guarded = gate.authorize(handler, ResourceType.CUSTOMER, Action.READ)
    await guarded(ctx, customer_id=...)

Usage as a FastAPI dependency:

    @router.get("/projects/{project_id}/members")
    async def list_members(
        ctx: Annotated[RequestContext, Depends(RequirePermission(
            ResourceType.USER, Action.READ, scope_param="project_id"))],
    ):
        ...
"""

import functools
import logging
from typing import Any, Awaitable, Callable

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from dabao_access.auth.middleware import AUTH_HEADER, RequestContext, resolve_request_context
from dabao_access.engine.permissions import Action, ResourceType
from dabao_access.engine.policy import PolicyEngine
from dabao_access.errors import (
    AccessError,
    Forbidden,
    NotFound,
    TenantNotFound,
    Unauthenticated,
)

logger = logging.getLogger(__name__)

TENANT_SCOPE = "tenant"

Handler = Callable[..., Awaitable[Any]]


def require_same_scope(entity_scope_id: str | None, scope_id: str, what: str = "Resource") -> None:
    """
    Ownership check on a concrete entity, run after the role check. An entity
    belonging to another tenant is reported as missing, not forbidden.
    """
    if entity_scope_id is None or entity_scope_id != scope_id:
        raise NotFound(f"{what} not found")


class AuthorizationGate:
    def __init__(self, engine: PolicyEngine):
        self.engine = engine

    async def allows(
        self,
        ctx: RequestContext,
        scope_id: str,
        resource_type: ResourceType | str,
        action: Action | str,
    ) -> bool:
        """Decision without raising, for conditional logic. Anonymous -> False."""
        resource_type = ResourceType.parse(resource_type)
        action = Action.parse(action)
        if ctx.token is not None:
            return ctx.token.project_id == scope_id and self.engine.role_permits(
                ctx.token.role, resource_type, action
            )
        if ctx.subject is None:
            return False
        return await self.engine.is_authorized(
            ctx.subject.user_id, scope_id, resource_type, action, cache=ctx.role_cache
        )

    async def check(
        self,
        ctx: RequestContext,
        scope_id: str | None,
        resource_type: ResourceType | str,
        action: Action | str,
    ) -> RequestContext:
        """Raise unless the request may perform ``action`` on ``resource_type`` in the scope."""
        if ctx.is_anonymous:
            raise Unauthenticated()
        if not scope_id:
            # Never fall back to some other scope
            raise TenantNotFound()
        resource_type = ResourceType.parse(resource_type)
        action = Action.parse(action)
        if not await self.allows(ctx, scope_id, resource_type, action):
            raise Forbidden(resource_type, action)
        return ctx

    def scope_of(self, ctx: RequestContext, scope: str, params: dict[str, Any]) -> str | None:
        if scope == TENANT_SCOPE:
            return ctx.tenant_id
        value = params.get(scope)
        return str(value) if value else None

    def authorize(
        self,
        handler: Handler,
        resource_type: ResourceType | str,
        action: Action | str,
        scope: str = TENANT_SCOPE,
    ) -> Handler:
        """
        Wrap ``handler(ctx, **params)``. ``scope`` is either "tenant" (the
        host's tenant) or the name of the parameter holding the scope id.
        """
        resource_type = ResourceType.parse(resource_type)
        action = Action.parse(action)

        @functools.wraps(handler)
        async def guarded(ctx: RequestContext, **params: Any) -> Any:
            await self.check(ctx, self.scope_of(ctx, scope, params), resource_type, action)
            return await handler(ctx, **params)

        return guarded


class RequirePermission:
    """
    FastAPI dependency enforcing a permission and returning the verified
    RequestContext.

    Without ``scope_param`` the scope is the tenant resolved from the host.
    With it, the scope is taken from that path parameter (console routes).
    """

    def __init__(
        self,
        resource_type: ResourceType | str,
        action: Action | str,
        scope_param: str | None = None,
    ):
        self.resource_type = ResourceType.parse(resource_type)
        self.action = Action.parse(action)
        self.scope_param = scope_param

    async def __call__(
        self,
        request: Request,
        auth_header: str | None = Depends(AUTH_HEADER),
    ) -> RequestContext:
        require_tenant = self.scope_param is None
        ctx = await resolve_request_context(request, auth_header, require_tenant)
        gate: AuthorizationGate = request.app.state.gate
        scope = TENANT_SCOPE if require_tenant else self.scope_param
        return await gate.check(
            ctx, gate.scope_of(ctx, scope, request.path_params), self.resource_type, self.action
        )


def _error_body(exc: AccessError) -> dict:
    return {"error": {"code": exc.code, "message": exc.message}}


async def access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    if isinstance(exc, Forbidden):
        ctx = getattr(request.state, "console_context", None) or getattr(
            request.state, "tenant_context", None
        )
        subject = ctx.subject.user_id if ctx and ctx.subject else None
        token = ctx.token.token_id if ctx and ctx.token else None
        logger.info(
            "Denied %s %s: user=%s token=%s resource=%s action=%s",
            request.method,
            request.url.path,
            subject,
            token,
            getattr(exc.resource_type, "value", exc.resource_type),
            getattr(exc.action, "value", exc.action),
        )
    elif exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccessError, access_error_handler)
