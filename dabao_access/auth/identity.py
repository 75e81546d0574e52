"""Identity provider adapters.

The core only needs an opaque external user id and an email address out of
a credential. Two Supabase-backed implementations are provided: local JWT
verification (no network) and a call to the auth server's user endpoint.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
import jwt

from dabao_access.config import Settings
from dabao_access.errors import AuthProviderUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated subject as reported by the identity provider."""

    external_id: str
    email: str | None = None


class IdentityProvider(Protocol):
    async def validate_credential(self, token: str) -> UserIdentity | None:
        """Return the identity for a valid credential, None for an invalid one."""
        ...


class SupabaseJWTProvider:
    """Verifies Supabase access tokens locally with the project's JWT secret."""

    def __init__(self, secret: str, audience: str = "authenticated", leeway: int = 10):
        self.secret = secret
        self.audience = audience
        self.leeway = leeway

    async def validate_credential(self, token: str) -> UserIdentity | None:
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=["HS256"],
                audience=self.audience,
                leeway=self.leeway,
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Rejected expired access token")
            return None
        except jwt.InvalidTokenError as exc:
            logger.debug("Rejected invalid access token: %s", exc)
            return None
        return UserIdentity(external_id=str(payload["sub"]), email=payload.get("email"))


class SupabaseHTTPProvider:
    """Asks the Supabase auth server who a token belongs to."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.user_url = f"{base_url.rstrip('/')}/auth/v1/user"
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def validate_credential(self, token: str) -> UserIdentity | None:
        headers = {"Authorization": f"Bearer {token}", "apikey": self.api_key}
        try:
            if self._client is not None:
                response = await self._client.get(self.user_url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.user_url, headers=headers)
        except httpx.HTTPError as exc:
            # Timeouts and connection errors: the provider is down, not the user
            logger.warning("Identity provider request failed: %s", exc)
            raise AuthProviderUnavailable() from exc

        if response.status_code in (401, 403):
            return None
        if response.status_code >= 500:
            logger.warning("Identity provider returned %s", response.status_code)
            raise AuthProviderUnavailable()
        if response.status_code != 200:
            return None
        try:
            data = response.json()
        except ValueError as exc:
            logger.warning("Identity provider returned a malformed body: %s", exc)
            raise AuthProviderUnavailable() from exc
        if not isinstance(data, dict):
            logger.warning("Identity provider returned an unexpected body")
            raise AuthProviderUnavailable()
        if not data.get("id"):
            return None
        return UserIdentity(external_id=str(data["id"]), email=data.get("email"))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def build_identity_provider(settings: Settings) -> IdentityProvider:
    if settings.identity_provider == "http":
        return SupabaseHTTPProvider(
            settings.supabase_url,
            settings.supabase_anon_key,
            timeout=settings.identity_timeout_seconds,
            client=httpx.AsyncClient(timeout=settings.identity_timeout_seconds),
        )
    return SupabaseJWTProvider(
        settings.supabase_jwt_secret, audience=settings.supabase_jwt_audience
    )
