"""Request context resolution: host -> tenant, credential -> subject."""

import logging
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dabao_access.auth.identity import IdentityProvider
from dabao_access.auth.tokens import TokenPrincipal, TokenService, is_api_token
from dabao_access.database import store_session
from dabao_access.errors import TenantNotFound
from dabao_access.models import Project
from dabao_access.storage.directory import TenantDirectory
from dabao_access.storage.repositories import ensure_user

logger = logging.getLogger(__name__)

AUTH_HEADER = APIKeyHeader(name="Authorization", auto_error=False)
SESSION_COOKIE = "sb-access-token"


@dataclass(frozen=True)
class Subject:
    """Authenticated user, mirrored locally."""

    user_id: str
    external_id: str
    email: str | None = None


@dataclass
class RequestContext:
    """
    Everything the gate needs about one request. Built once per request and
    never reused: the tenant depends on the host header and the subject on
    the credential.
    """

    tenant: Project | None = None
    subject: Subject | None = None
    token: TokenPrincipal | None = None
    # Per-request role lookups, see PolicyEngine.effective_role
    role_cache: dict = field(default_factory=dict, repr=False)

    @property
    def is_anonymous(self) -> bool:
        return self.subject is None and self.token is None

    @property
    def tenant_id(self) -> str | None:
        return self.tenant.id if self.tenant is not None else None


class RequestContextResolver:
    def __init__(
        self,
        directory: TenantDirectory,
        identity: IdentityProvider,
        tokens: TokenService,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.directory = directory
        self.identity = identity
        self.tokens = tokens
        self._session_factory = session_factory

    async def resolve(
        self,
        hostname: str | None,
        credential: str | None,
        *,
        require_tenant: bool = True,
    ) -> RequestContext:
        """
        Resolve tenant first, then identity. An unknown host is terminal for
        tenant-scoped traffic; a missing or invalid credential is not (the
        request continues anonymously).
        """
        ctx = RequestContext()
        if require_tenant:
            ctx.tenant = await self.directory.resolve_by_domain(hostname)
            if ctx.tenant is None:
                raise TenantNotFound()

        if not credential:
            return ctx
        if is_api_token(credential):
            ctx.token = await self.tokens.authenticate(credential)
            return ctx

        identity = await self.identity.validate_credential(credential)
        if identity is None:
            return ctx
        async with store_session(self._session_factory) as db:
            user = await ensure_user(db, identity.external_id, identity.email)
        ctx.subject = Subject(user_id=user.id, external_id=identity.external_id, email=user.email)
        return ctx


def extract_credential(request: Request, auth_header: str | None) -> str | None:
    """Bearer token from the Authorization header, else the session cookie."""
    if auth_header:
        scheme, _, token = auth_header.strip().partition(" ")
        token = token.strip()
        # Auth schemes are case-insensitive
        if scheme.lower() == "bearer" and token:
            return token
    return request.cookies.get(SESSION_COOKIE) or None


async def resolve_request_context(
    request: Request, auth_header: str | None, require_tenant: bool
) -> RequestContext:
    """Resolve the context once and keep it on request.state for this request only."""
    attr = "tenant_context" if require_tenant else "console_context"
    ctx = getattr(request.state, attr, None)
    if ctx is None:
        resolver: RequestContextResolver = request.app.state.resolver
        ctx = await resolver.resolve(
            request.headers.get("host"),
            extract_credential(request, auth_header),
            require_tenant=require_tenant,
        )
        setattr(request.state, attr, ctx)
    return ctx


async def get_tenant_context(
    request: Request,
    auth_header: str | None = Depends(AUTH_HEADER),
) -> RequestContext:
    """Context for storefront traffic: the host must map to an active tenant."""
    return await resolve_request_context(request, auth_header, require_tenant=True)


async def get_console_context(
    request: Request,
    auth_header: str | None = Depends(AUTH_HEADER),
) -> RequestContext:
    """Context for console traffic: the scope comes from the route, not the host."""
    return await resolve_request_context(request, auth_header, require_tenant=False)


# Type aliases for dependency injection
TenantContextDep = Annotated[RequestContext, Depends(get_tenant_context)]
ConsoleContextDep = Annotated[RequestContext, Depends(get_console_context)]
