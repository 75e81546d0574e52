"""Repository functions for users, organizations and projects."""

import re

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dabao_access.engine.permissions import Role
from dabao_access.errors import ValidationError
from dabao_access.models import Organization, Project, RoleAssignment, User

SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,98}[a-z0-9])?$")


def validate_slug(slug: str) -> str:
    slug = slug.strip().lower()
    if not SLUG_RE.match(slug):
        raise ValidationError("Slug may contain only lowercase letters, digits and hyphens")
    return slug


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> User | None:
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def ensure_user(db: AsyncSession, external_id: str, email: str | None) -> User:
    """Get or create the local mirror of an identity-provider user. Commits."""
    user = await get_user_by_external_id(db, external_id)
    if user is not None:
        if email and user.email != email:
            user.email = email
            await db.commit()
        return user
    user = User(external_id=external_id, email=email)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent first request for the same identity won the insert
        await db.rollback()
        user = await get_user_by_external_id(db, external_id)
        if user is None:
            raise
    return user


async def get_users(db: AsyncSession, user_ids: list[str]) -> dict[str, User]:
    if not user_ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(user_ids)))
    return {u.id: u for u in result.scalars().all()}


async def get_organization(db: AsyncSession, organization_id: str) -> Organization | None:
    result = await db.execute(
        select(Organization).where(Organization.id == organization_id)
    )
    return result.scalar_one_or_none()


async def create_organization(
    db: AsyncSession, name: str, slug: str, creator_id: str
) -> Organization:
    """
    Create an organization owned by its creator.

    This is the bootstrap case of the role model: there is no prior role
    state to authorize against, so the creator's OWNER assignment is written
    in the same transaction without going through the gate.
    """
    slug = validate_slug(slug)
    existing = await db.execute(select(Organization.id).where(Organization.slug == slug))
    if existing.scalar_one_or_none():
        raise ValidationError("Organization slug is already taken")
    org = Organization(name=name, slug=slug, owner_user_id=creator_id)
    db.add(org)
    try:
        await db.flush()
        db.add(
            RoleAssignment(
                user_id=creator_id,
                scope_id=org.id,
                scope_type="ORGANIZATION",
                role=Role.OWNER,
            )
        )
        await db.flush()
    except IntegrityError:
        raise ValidationError("Organization slug is already taken") from None
    return org


async def list_user_organizations(
    db: AsyncSession, user_id: str
) -> list[tuple[Organization, Role]]:
    result = await db.execute(
        select(Organization, RoleAssignment.role)
        .join(RoleAssignment, RoleAssignment.scope_id == Organization.id)
        .where(RoleAssignment.user_id == user_id)
        .order_by(Organization.name)
    )
    return [(org, role) for org, role in result.all()]


async def create_project(
    db: AsyncSession,
    organization_id: str,
    name: str,
    slug: str,
    theme: dict | None = None,
) -> Project:
    slug = validate_slug(slug)
    existing = await db.execute(select(Project.id).where(Project.slug == slug))
    if existing.scalar_one_or_none():
        raise ValidationError("Project slug is already taken")
    project = Project(
        organization_id=organization_id, name=name, slug=slug, theme=theme
    )
    db.add(project)
    try:
        await db.flush()
    except IntegrityError:
        raise ValidationError("Project slug is already taken") from None
    return project
