"""Tenant directory - domain, slug and id to project resolution.

Lookups return ``None`` when nothing matches. Connectivity failures raise
``StoreUnavailable`` so callers can tell "no such tenant" from "try again".
"""

import logging
import re
import secrets

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dabao_access.database import store_session
from dabao_access.errors import NotFound, ValidationError
from dabao_access.models import Project, ProjectDomain
from dabao_access.models.base import utc_now
from dabao_access.storage.verification import DomainVerifier, verification_record_name

logger = logging.getLogger(__name__)

DOMAIN_TYPES = ("PRIMARY", "SUBDOMAIN", "CUSTOM_DOMAIN", "ALIAS")
# Types a tenant may bind itself; the others are issued by the platform
CLAIMABLE_DOMAIN_TYPES = ("CUSTOM_DOMAIN", "ALIAS")

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))*$"
)


def normalize_hostname(hostname: str | None) -> str:
    """Lower-case, drop port and trailing dot: 'Acme.Example.com:443' -> 'acme.example.com'."""
    if not hostname:
        return ""
    host = hostname.strip().lower()
    if host.startswith("["):
        # IPv6 literals never map to a tenant
        return ""
    host = host.split(":", 1)[0]
    return host.rstrip(".")


def validate_domain(domain: str) -> str:
    host = normalize_hostname(domain)
    if not host or not _HOSTNAME_RE.match(host):
        raise ValidationError(f"Invalid domain: {domain}")
    return host


class TenantDirectory:
    """Read-mostly view over projects and their domain bindings."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: DomainVerifier,
        platform_root_domain: str = "dabao.in",
    ):
        self._session_factory = session_factory
        self.verifier = verifier
        self.platform_root_domain = platform_root_domain.lower().rstrip(".")

    async def resolve_by_domain(self, hostname: str | None) -> Project | None:
        """Public lookup: verified binding AND active project, else None."""
        host = normalize_hostname(hostname)
        if not host:
            return None
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(Project)
                .join(ProjectDomain, ProjectDomain.project_id == Project.id)
                .where(
                    ProjectDomain.domain == host,
                    ProjectDomain.is_verified.is_(True),
                    Project.is_active.is_(True),
                )
            )
            project = result.scalar_one_or_none()
        if project is None:
            logger.info("No active project for domain %s", host)
        return project

    async def resolve_by_slug(self, slug: str) -> Project | None:
        """Public lookup by slug (active projects only)."""
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(Project).where(
                    Project.slug == slug.lower(), Project.is_active.is_(True)
                )
            )
            return result.scalar_one_or_none()

    async def resolve_by_id(
        self, project_id: str, *, include_inactive: bool = False
    ) -> Project | None:
        """
        Lookup by id. Public traffic sees active projects only; console
        routes pass include_inactive=True so owners can still manage a
        deactivated project.
        """
        query = select(Project).where(Project.id == project_id)
        if not include_inactive:
            query = query.where(Project.is_active.is_(True))
        async with store_session(self._session_factory) as db:
            result = await db.execute(query)
            return result.scalar_one_or_none()

    async def update_project(
        self,
        project_id: str,
        *,
        name: str | None = None,
        is_active: bool | None = None,
        theme: dict | None = None,
    ) -> Project:
        """Change a project's settings. Deactivating hides it from public lookups."""
        async with store_session(self._session_factory) as db:
            result = await db.execute(select(Project).where(Project.id == project_id))
            project = result.scalar_one_or_none()
            if project is None:
                raise NotFound("Project not found")
            if name is not None:
                project.name = name
            if theme is not None:
                project.theme = theme
            if is_active is not None and is_active != project.is_active:
                project.is_active = is_active
                logger.info(
                    "Project %s %s", project_id, "activated" if is_active else "deactivated"
                )
            await db.commit()
            return project

    async def primary_domain(self, project_id: str) -> str | None:
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(ProjectDomain.domain).where(
                    ProjectDomain.project_id == project_id,
                    ProjectDomain.is_primary.is_(True),
                    ProjectDomain.is_verified.is_(True),
                )
            )
            return result.scalars().first()

    async def list_domains(self, project_id: str) -> list[ProjectDomain]:
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(ProjectDomain)
                .where(ProjectDomain.project_id == project_id)
                .order_by(ProjectDomain.created_at)
            )
            return list(result.scalars().all())

    async def add_domain(
        self,
        project_id: str,
        domain: str,
        type: str = "CUSTOM_DOMAIN",
        is_primary: bool = False,
    ) -> ProjectDomain:
        """
        Bind a tenant-supplied hostname to a project. The binding starts
        unverified with a TXT challenge token and does not resolve until
        ``verify_domain`` finds the record. Platform hostnames cannot be
        claimed this way.
        """
        host = validate_domain(domain)
        if type not in DOMAIN_TYPES:
            raise ValidationError(f"Domain type must be one of: {', '.join(DOMAIN_TYPES)}")
        if type not in CLAIMABLE_DOMAIN_TYPES:
            raise ValidationError(f"{type} domains are assigned by the platform")
        if self.is_platform_host(host):
            raise ValidationError("Platform domains are assigned when a project is created")
        binding = ProjectDomain(
            project_id=project_id,
            domain=host,
            type=type,
            is_primary=is_primary,
            is_verified=False,
            verification_token=f"verify-{secrets.token_hex(8)}",
        )
        async with store_session(self._session_factory) as db:
            if await self._domain_taken(db, host):
                raise ValidationError("Domain is already registered")
            db.add(binding)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ValidationError("Domain is already registered") from None
        logger.info("Bound domain %s to project %s (pending verification)", host, project_id)
        return binding

    def platform_domain(self, slug: str) -> str:
        return f"{slug}.{self.platform_root_domain}"

    def is_platform_host(self, host: str) -> bool:
        root = self.platform_root_domain
        return host == root or host.endswith(f".{root}")

    async def provision_platform_domain(self, db: AsyncSession, project: Project) -> ProjectDomain:
        """
        Add the project's ``<slug>.<platform root>`` binding to ``db``'s
        transaction. Verified at once: the platform owns the zone. The caller
        commits together with the project row.
        """
        host = self.platform_domain(project.slug)
        if await self._domain_taken(db, host):
            raise ValidationError("Domain is already registered")
        await self._clear_primary(db, project.id)
        binding = ProjectDomain(
            project_id=project.id,
            domain=host,
            type="SUBDOMAIN",
            is_primary=True,
            is_verified=True,
            verified_at=utc_now(),
        )
        db.add(binding)
        try:
            await db.flush()
        except IntegrityError:
            raise ValidationError("Domain is already registered") from None
        return binding

    async def verify_domain(self, project_id: str, domain_id: str) -> ProjectDomain:
        """Mark a binding verified once its TXT challenge record is published."""
        async with store_session(self._session_factory) as db:
            binding = await self._get_binding(db, project_id, domain_id)
            if binding.is_verified:
                return binding
            record = verification_record_name(binding.domain)
            if not await self.verifier.has_txt_record(record, binding.verification_token):
                raise ValidationError(
                    f"TXT record {record} does not contain the verification token"
                )
            binding.is_verified = True
            binding.verified_at = utc_now()
            if binding.is_primary:
                await self._clear_primary(db, project_id, keep=binding.id)
            await db.commit()
        logger.info("Verified domain %s for project %s", binding.domain, project_id)
        return binding

    async def remove_domain(self, project_id: str, domain_id: str) -> None:
        async with store_session(self._session_factory) as db:
            binding = await self._get_binding(db, project_id, domain_id)
            await db.delete(binding)
            await db.commit()
        logger.info("Removed domain %s from project %s", binding.domain, project_id)

    async def _get_binding(
        self, db: AsyncSession, project_id: str, domain_id: str
    ) -> ProjectDomain:
        # Scoped by project so one tenant cannot touch another's bindings
        result = await db.execute(
            select(ProjectDomain).where(
                ProjectDomain.id == domain_id,
                ProjectDomain.project_id == project_id,
            )
        )
        binding = result.scalar_one_or_none()
        if binding is None:
            raise NotFound("Domain not found")
        return binding

    async def _domain_taken(self, db: AsyncSession, host: str) -> bool:
        result = await db.execute(select(ProjectDomain.id).where(ProjectDomain.domain == host))
        return result.scalar_one_or_none() is not None

    async def _clear_primary(
        self, db: AsyncSession, project_id: str, keep: str | None = None
    ) -> None:
        result = await db.execute(
            select(ProjectDomain).where(
                ProjectDomain.project_id == project_id,
                ProjectDomain.is_primary.is_(True),
            )
        )
        for existing in result.scalars().all():
            if existing.id != keep:
                existing.is_primary = False
