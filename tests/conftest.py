"""Shared fixtures: a throwaway SQLite database and seeded tenants."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from dabao_access.auth.identity import SupabaseJWTProvider
from dabao_access.config import Settings
from dabao_access.database import Base, build_session_factory
from dabao_access.engine.permissions import Role
from dabao_access.engine.policy import PolicyEngine
from dabao_access.models import Organization, Project, ProjectDomain, RoleAssignment, User
from dabao_access.services import build_services
from dabao_access.storage.directory import TenantDirectory
from dabao_access.storage.policy_store import PolicyStore
from dabao_access.storage.verification import verification_record_name

JWT_SECRET = "test-jwt-secret"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'access.db'}",
        supabase_jwt_secret=JWT_SECRET,
        identity_provider="jwt",
        platform_root_domain="dabao.test",
    )


@pytest.fixture
async def session_factory(settings):
    # NullPool: every session gets a fresh connection on the running loop
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


class FakeVerifier:
    """In-memory TXT records keyed by record name."""

    def __init__(self):
        self.records: dict[str, set[str]] = {}
        self.lookups: list[str] = []

    def publish(self, domain: str, token: str) -> None:
        self.records.setdefault(verification_record_name(domain), set()).add(token)

    async def has_txt_record(self, name: str, value: str) -> bool:
        self.lookups.append(name)
        return value in self.records.get(name, set())


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def directory(session_factory, verifier, settings):
    return TenantDirectory(session_factory, verifier, settings.platform_root_domain)


@pytest.fixture
def store(session_factory):
    return PolicyStore(session_factory)


@pytest.fixture
def policy_engine(store):
    return PolicyEngine(store)


@pytest.fixture
def services(settings, session_factory, verifier):
    return build_services(
        settings,
        session_factory,
        identity=SupabaseJWTProvider(JWT_SECRET),
        verifier=verifier,
    )


def make_token(external_id: str, email: str | None = None, expires_in: int = 3600) -> str:
    """Supabase-style access token signed with the test secret."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": external_id,
        "aud": "authenticated",
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


async def add_user(session_factory, external_id: str, email: str | None = None) -> User:
    async with session_factory() as db:
        user = User(external_id=external_id, email=email or f"{external_id}@example.com")
        db.add(user)
        await db.commit()
        return user


async def add_tenant(
    session_factory,
    slug: str,
    owner: User,
    domain: str | None = None,
    verified: bool = True,
    active: bool = True,
) -> Project:
    """Organization + project owned by ``owner``, optionally bound to ``domain``."""
    async with session_factory() as db:
        org = Organization(name=f"{slug} org", slug=f"{slug}-org", owner_user_id=owner.id)
        db.add(org)
        await db.flush()
        project = Project(
            organization_id=org.id, name=slug.title(), slug=slug, is_active=active
        )
        db.add(project)
        await db.flush()
        db.add(
            RoleAssignment(
                user_id=owner.id, scope_id=project.id, scope_type="PROJECT", role=Role.OWNER
            )
        )
        if domain:
            db.add(
                ProjectDomain(
                    project_id=project.id,
                    domain=domain,
                    type="CUSTOM_DOMAIN",
                    is_primary=True,
                    is_verified=verified,
                )
            )
        await db.commit()
        return project
