"""Project API tokens.

A token acts as a role (its "policy type") inside exactly one project. The
plaintext value is returned once at creation; only a salted hash is stored.
"""

import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dabao_access.database import store_session
from dabao_access.engine.permissions import Role
from dabao_access.models import AuthToken
from dabao_access.models.base import utc_now

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "datk_"


def hash_api_key(api_key: str, salt: str) -> str:
    """Hash API key with salt for storage/lookup."""
    return hashlib.sha256(f"{salt}:{api_key}".encode()).hexdigest()


def is_api_token(credential: str) -> bool:
    return credential.startswith(TOKEN_PREFIX)


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"


def generate_token() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_hex(16)}_{_base36(int(time.time() * 1000))}"


@dataclass(frozen=True)
class TokenPrincipal:
    """Authenticated API token."""

    token_id: str
    project_id: str
    role: Role


@dataclass(frozen=True)
class IssuedToken:
    id: str
    token: str
    project_id: str
    role: Role
    expires_at: datetime | None


class TokenService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], salt: str):
        self._session_factory = session_factory
        self._salt = salt

    async def create_token(
        self,
        project_id: str,
        role: Role | str,
        expires_in_days: int | None = None,
        user_id: str | None = None,
    ) -> IssuedToken:
        role = Role.parse(role)
        plaintext = generate_token()
        expires_at = utc_now() + timedelta(days=expires_in_days) if expires_in_days else None
        token = AuthToken(
            project_id=project_id,
            token_hash=hash_api_key(plaintext, self._salt),
            token_prefix=plaintext[:12],
            role=role,
            user_id=user_id,
            expires_at=expires_at,
        )
        async with store_session(self._session_factory) as db:
            db.add(token)
            await db.commit()
        logger.info("Issued %s token %s for project %s", role.value, token.id, project_id)
        return IssuedToken(
            id=token.id,
            token=plaintext,
            project_id=project_id,
            role=role,
            expires_at=expires_at,
        )

    async def list_tokens(self, project_id: str) -> list[AuthToken]:
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(AuthToken)
                .where(AuthToken.project_id == project_id)
                .order_by(AuthToken.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_token(self, token_id: str) -> AuthToken | None:
        async with store_session(self._session_factory) as db:
            result = await db.execute(select(AuthToken).where(AuthToken.id == token_id))
            return result.scalar_one_or_none()

    async def revoke_token(self, project_id: str, token_id: str) -> bool:
        """Delete a token. Tokens of other projects are treated as missing."""
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(AuthToken).where(
                    AuthToken.id == token_id, AuthToken.project_id == project_id
                )
            )
            token = result.scalar_one_or_none()
            if token is None:
                return False
            await db.delete(token)
            await db.commit()
        logger.info("Revoked token %s of project %s", token_id, project_id)
        return True

    async def authenticate(self, credential: str) -> TokenPrincipal | None:
        """Resolve a plaintext token. Expired or unknown tokens give None."""
        now = utc_now()
        async with store_session(self._session_factory) as db:
            result = await db.execute(
                select(AuthToken).where(
                    AuthToken.token_hash == hash_api_key(credential, self._salt),
                    (AuthToken.expires_at.is_(None)) | (AuthToken.expires_at > now),
                )
            )
            token = result.scalar_one_or_none()
            if token is None:
                return None
            await db.execute(
                update(AuthToken)
                .where(AuthToken.id == token.id)
                .values(last_used_at=now)
            )
            await db.commit()
        return TokenPrincipal(token_id=token.id, project_id=token.project_id, role=token.role)


def mask_token(prefix: str) -> str:
    return f"{prefix}..."
