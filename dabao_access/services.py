"""Process-wide collaborators, built once at startup and injected into requests."""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dabao_access.auth.gate import AuthorizationGate
from dabao_access.auth.identity import IdentityProvider, build_identity_provider
from dabao_access.auth.middleware import RequestContextResolver
from dabao_access.auth.tokens import TokenService
from dabao_access.config import Settings
from dabao_access.engine.policy import PolicyEngine
from dabao_access.storage.directory import TenantDirectory
from dabao_access.storage.invites import InviteService
from dabao_access.storage.policy_store import PolicyStore
from dabao_access.storage.verification import DnsOverHttpsVerifier, DomainVerifier


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    directory: TenantDirectory
    policy_store: PolicyStore
    engine: PolicyEngine
    tokens: TokenService
    invites: InviteService
    identity: IdentityProvider
    verifier: DomainVerifier
    resolver: RequestContextResolver
    gate: AuthorizationGate


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    identity: IdentityProvider | None = None,
    verifier: DomainVerifier | None = None,
) -> Services:
    verifier = verifier or DnsOverHttpsVerifier(
        settings.dns_resolver_url, timeout=settings.dns_timeout_seconds
    )
    directory = TenantDirectory(session_factory, verifier, settings.platform_root_domain)
    policy_store = PolicyStore(session_factory)
    engine = PolicyEngine(policy_store)
    tokens = TokenService(session_factory, settings.api_key_hash_salt)
    invites = InviteService(
        session_factory,
        policy_store,
        settings.api_key_hash_salt,
        ttl_days=settings.invite_ttl_days,
    )
    identity = identity or build_identity_provider(settings)
    return Services(
        settings=settings,
        session_factory=session_factory,
        directory=directory,
        policy_store=policy_store,
        engine=engine,
        tokens=tokens,
        invites=invites,
        identity=identity,
        verifier=verifier,
        resolver=RequestContextResolver(directory, identity, tokens, session_factory),
        gate=AuthorizationGate(engine),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]
