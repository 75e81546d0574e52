"""Policy store - role assignments per (user, scope).

Reads are plain queries. Every mutation is one transaction that re-reads the
scope's owners under a row lock before writing, and commits before the guard
is released, so two concurrent revokes can never strip the last owner.
"""

import asyncio
import logging
import weakref

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dabao_access.database import store_session
from dabao_access.engine.permissions import ADMINISTRATIVE_ROLES, Role
from dabao_access.errors import LastOwnerProtection, ValidationError
from dabao_access.models import Project, RoleAssignment

logger = logging.getLogger(__name__)

SCOPE_TYPES = ("ORGANIZATION", "PROJECT")


def _owning_organization(scope_id: str):
    """Organization id of the project ``scope_id``; NULL for non-project scopes."""
    return select(Project.organization_id).where(Project.id == scope_id).scalar_subquery()


class PolicyStore:
    """Persisted role assignments with owner-protection invariants."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        # Serializes mutations of one scope inside this process; the row
        # locks below do the same across processes on PostgreSQL. A lock
        # lives only while some mutation holds or awaits it.
        self._scope_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _scope_lock(self, scope_id: str) -> asyncio.Lock:
        lock = self._scope_locks.get(scope_id)
        if lock is None:
            lock = asyncio.Lock()
            self._scope_locks[scope_id] = lock
        return lock

    async def list_role_assignments(self, scope_id: str) -> list[tuple[str, Role]]:
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(RoleAssignment.user_id, RoleAssignment.role)
                .where(RoleAssignment.scope_id == scope_id)
                .order_by(RoleAssignment.created_at)
            )
            return [(user_id, role) for user_id, role in result.all()]

    async def get_role(self, user_id: str, scope_id: str) -> Role | None:
        """Role assigned directly in this scope."""
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(RoleAssignment.role).where(
                    RoleAssignment.user_id == user_id,
                    RoleAssignment.scope_id == scope_id,
                )
            )
            return result.scalar_one_or_none()

    async def get_effective_role(self, user_id: str, scope_id: str) -> Role | None:
        """
        Highest of the direct role in the scope and, when the scope is a
        project, the role held in the organization that owns it.
        """
        owning_org = _owning_organization(scope_id)
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(RoleAssignment.role).where(
                    RoleAssignment.user_id == user_id,
                    (RoleAssignment.scope_id == scope_id)
                    | (RoleAssignment.scope_id == owning_org),
                )
            )
            roles = result.scalars().all()
        if not roles:
            return None
        return max(roles, key=lambda r: r.rank)

    async def assign_role(
        self,
        user_id: str,
        scope_id: str,
        role: Role | str,
        scope_type: str = "PROJECT",
        *,
        actor_id: str | None = None,
    ) -> Role:
        """
        Give a user a role in a scope. Re-assigning the held role is a no-op;
        assigning a different role replaces it. Demoting the last owner is
        rejected, as is an actor demoting themselves out of the last
        administrative role.
        """
        role = Role.parse(role)
        if scope_type not in SCOPE_TYPES:
            raise ValidationError(f"Scope type must be one of: {', '.join(SCOPE_TYPES)}")

        async with self._scope_lock(scope_id):
            async with store_session(self._session_factory) as db:
                owners = await self._locked_owner_ids(db, scope_id)
                current = await self._get_assignment(db, user_id, scope_id)
                if current is not None and current.role == role:
                    await db.rollback()
                    return role
                if current is not None:
                    if current.role == Role.OWNER and owners == {user_id}:
                        await db.rollback()
                        raise LastOwnerProtection(
                            "Cannot change the role of the only owner"
                        )
                    if (
                        actor_id == user_id
                        and current.role in ADMINISTRATIVE_ROLES
                        and role not in ADMINISTRATIVE_ROLES
                        and not await self._has_other_admin(db, scope_id, user_id)
                    ):
                        await db.rollback()
                        raise LastOwnerProtection(
                            "Cannot give up your own access: no other administrator remains"
                        )
                    previous = current.role
                    current.role = role
                    logger.info(
                        "Changed role of user %s in scope %s: %s -> %s",
                        user_id, scope_id, previous.value, role.value,
                    )
                else:
                    db.add(
                        RoleAssignment(
                            user_id=user_id,
                            scope_id=scope_id,
                            scope_type=scope_type,
                            role=role,
                        )
                    )
                    logger.info(
                        "Assigned role %s to user %s in scope %s",
                        role.value, user_id, scope_id,
                    )
                try:
                    await db.commit()
                except IntegrityError:
                    # Another process inserted the same (user, scope) first
                    await db.rollback()
                    raise ValidationError("User already has a role in this scope") from None
        return role

    async def revoke_role(
        self,
        user_id: str,
        scope_id: str,
        role: Role | str,
        *,
        actor_id: str | None = None,
    ) -> bool:
        """
        Remove a user's role from a scope. Returns False when the user does
        not hold that role.

        Raises LastOwnerProtection when the scope would lose its last owner,
        or when an actor removing themselves would leave nobody able to
        administer the scope.
        """
        role = Role.parse(role)
        async with self._scope_lock(scope_id):
            async with store_session(self._session_factory) as db:
                owners = await self._locked_owner_ids(db, scope_id)
                current = await self._get_assignment(db, user_id, scope_id)
                if current is None or current.role != role:
                    await db.rollback()
                    return False
                if role == Role.OWNER and owners == {user_id}:
                    await db.rollback()
                    raise LastOwnerProtection()
                if (
                    actor_id == user_id
                    and role in ADMINISTRATIVE_ROLES
                    and not await self._has_other_admin(db, scope_id, user_id)
                ):
                    await db.rollback()
                    raise LastOwnerProtection(
                        "Cannot remove your own access: no other administrator remains"
                    )
                await db.execute(
                    delete(RoleAssignment).where(RoleAssignment.id == current.id)
                )
                await db.commit()
        logger.info("Revoked role %s from user %s in scope %s", role.value, user_id, scope_id)
        return True

    async def _get_assignment(
        self, db: AsyncSession, user_id: str, scope_id: str
    ) -> RoleAssignment | None:
        result = await db.execute(
            select(RoleAssignment)
            .where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.scope_id == scope_id,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _locked_owner_ids(self, db: AsyncSession, scope_id: str) -> set[str]:
        result = await db.execute(
            select(RoleAssignment.user_id)
            .where(
                RoleAssignment.scope_id == scope_id,
                RoleAssignment.role == Role.OWNER,
            )
            .with_for_update()
        )
        return set(result.scalars().all())

    async def _has_other_admin(self, db: AsyncSession, scope_id: str, user_id: str) -> bool:
        """
        Whether the scope stays administered without ``user_id``'s direct
        assignment: another direct OWNER/ADMIN, or any OWNER/ADMIN of the
        organization that owns the project.
        """
        result = await db.execute(
            select(RoleAssignment.id)
            .where(
                RoleAssignment.role.in_(list(ADMINISTRATIVE_ROLES)),
                ((RoleAssignment.scope_id == scope_id) & (RoleAssignment.user_id != user_id))
                | (RoleAssignment.scope_id == _owning_organization(scope_id)),
            )
            .limit(1)
        )
        return result.first() is not None
