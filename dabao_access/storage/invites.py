"""Project invitations.

An invitation offers a project role to an email address. The plaintext
token is handed back once (on creation and on resend) for delivery; only
its salted hash is stored. Accepting grants the role through the policy
store, so owner-protection rules still apply.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dabao_access.auth.tokens import hash_api_key
from dabao_access.database import store_session
from dabao_access.engine.permissions import Role
from dabao_access.errors import Conflict, Forbidden, NotFound, ValidationError
from dabao_access.models import ProjectInvite, RoleAssignment, User
from dabao_access.models.base import utc_now
from dabao_access.storage.policy_store import PolicyStore

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    email = email.strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email address")
    return email


@dataclass(frozen=True)
class IssuedInvite:
    id: str
    project_id: str
    email: str
    role: Role
    token: str
    expires_at: datetime


class InviteService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy_store: PolicyStore,
        salt: str,
        ttl_days: int = 7,
    ):
        self._session_factory = session_factory
        self.policy_store = policy_store
        self._salt = salt
        self.ttl = timedelta(days=ttl_days)

    def _new_token(self) -> tuple[str, str]:
        token = secrets.token_urlsafe(32)
        return token, hash_api_key(token, self._salt)

    def _issued(self, invite: ProjectInvite, token: str) -> IssuedInvite:
        return IssuedInvite(
            id=invite.id,
            project_id=invite.project_id,
            email=invite.email,
            role=invite.role,
            token=token,
            expires_at=invite.expires_at,
        )

    async def create_invite(
        self,
        project_id: str,
        email: str,
        role: Role | str,
        invited_by: str | None = None,
    ) -> IssuedInvite:
        """Invite an email address. Existing members and pending invites conflict."""
        role = Role.parse(role)
        email = normalize_email(email)
        now = utc_now()
        async with store_session(self._session_factory) as db:
            member = await db.execute(
                select(RoleAssignment.id)
                .join(User, User.id == RoleAssignment.user_id)
                .where(
                    RoleAssignment.scope_id == project_id,
                    func.lower(User.email) == email,
                )
            )
            if member.first() is not None:
                raise Conflict("User is already a member of this project")
            pending = await db.execute(
                select(ProjectInvite.id).where(
                    ProjectInvite.project_id == project_id,
                    ProjectInvite.email == email,
                    ProjectInvite.accepted_at.is_(None),
                    ProjectInvite.expires_at > now,
                )
            )
            if pending.first() is not None:
                raise Conflict("An active invitation already exists for this email")

            token, token_hash = self._new_token()
            invite = ProjectInvite(
                project_id=project_id,
                email=email,
                role=role,
                token_hash=token_hash,
                invited_by=invited_by,
                expires_at=now + self.ttl,
            )
            db.add(invite)
            await db.commit()
        logger.info("Invited %s to project %s as %s", email, project_id, role.value)
        return self._issued(invite, token)

    async def list_invites(self, project_id: str) -> list[ProjectInvite]:
        """Invitations not yet accepted, expired ones included."""
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(ProjectInvite)
                .where(
                    ProjectInvite.project_id == project_id,
                    ProjectInvite.accepted_at.is_(None),
                )
                .order_by(ProjectInvite.created_at)
            )
            return list(result.scalars().all())

    async def resend_invite(self, project_id: str, invite_id: str) -> IssuedInvite:
        """Replace the token and restart the expiry window. The old token stops working."""
        async with store_session(self._session_factory) as db:
            invite = await self._get_pending(db, project_id, invite_id)
            token, invite.token_hash = self._new_token()
            invite.expires_at = utc_now() + self.ttl
            await db.commit()
        logger.info("Re-issued invitation %s for project %s", invite_id, project_id)
        return self._issued(invite, token)

    async def revoke_invite(self, project_id: str, invite_id: str) -> None:
        async with store_session(self._session_factory) as db:
            invite = await self._get_pending(db, project_id, invite_id)
            await db.delete(invite)
            await db.commit()
        logger.info("Revoked invitation %s of project %s", invite_id, project_id)

    async def accept_invite(self, token: str, user_id: str, email: str | None) -> ProjectInvite:
        """
        Redeem an invitation for an authenticated user whose email matches.
        A user who already holds a higher role keeps it.
        """
        now = utc_now()
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(ProjectInvite).where(
                    ProjectInvite.token_hash == hash_api_key(token, self._salt),
                    ProjectInvite.accepted_at.is_(None),
                    ProjectInvite.expires_at > now,
                )
            )
            invite = result.scalar_one_or_none()
            if invite is None:
                raise NotFound("Invitation not found or expired")
            if not email or email.strip().lower() != invite.email:
                raise Forbidden(message="Invitation was sent to a different email address")
            claimed = await db.execute(
                update(ProjectInvite)
                .where(ProjectInvite.id == invite.id, ProjectInvite.accepted_at.is_(None))
                .values(accepted_at=now, accepted_by=user_id)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                raise NotFound("Invitation not found or expired")
            await db.commit()

        current = await self.policy_store.get_role(user_id, invite.project_id)
        if current is None or current.rank < invite.role.rank:
            await self.policy_store.assign_role(user_id, invite.project_id, invite.role)
        logger.info("User %s accepted invitation %s", user_id, invite.id)
        return invite

    async def _get_pending(
        self, db: AsyncSession, project_id: str, invite_id: str
    ) -> ProjectInvite:
        result = await db.execute(
            select(ProjectInvite).where(
                ProjectInvite.id == invite_id,
                ProjectInvite.project_id == project_id,
                ProjectInvite.accepted_at.is_(None),
            )
        )
        invite = result.scalar_one_or_none()
        if invite is None:
            raise NotFound("Invitation not found")
        return invite
