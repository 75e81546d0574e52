"""Custom domain ownership checks via DNS TXT records."""

import logging
from typing import Protocol

import httpx

from dabao_access.errors import VerificationUnavailable

logger = logging.getLogger(__name__)

VERIFICATION_RECORD_PREFIX = "_dabao-verify"
TXT_RECORD_TYPE = 16


def verification_record_name(domain: str) -> str:
    return f"{VERIFICATION_RECORD_PREFIX}.{domain}"


class DomainVerifier(Protocol):
    async def has_txt_record(self, name: str, value: str) -> bool:
        """True when ``name`` publishes a TXT record equal to ``value``."""
        ...


class DnsOverHttpsVerifier:
    """Looks up TXT records through a DNS-over-HTTPS JSON resolver."""

    def __init__(
        self,
        resolver_url: str,
        timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.resolver_url = resolver_url
        self.timeout = timeout
        self._client = client

    async def has_txt_record(self, name: str, value: str) -> bool:
        params = {"name": name, "type": "TXT"}
        headers = {"Accept": "application/dns-json"}
        try:
            if self._client is not None:
                response = await self._client.get(
                    self.resolver_url, params=params, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.resolver_url, params=params, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("TXT lookup for %s failed: %s", name, exc)
            raise VerificationUnavailable() from exc

        answers = (data.get("Answer") or []) if isinstance(data, dict) else []
        for answer in answers:
            if answer.get("type") != TXT_RECORD_TYPE:
                continue
            # Long TXT values arrive as several quoted chunks
            text = "".join(part for part in answer.get("data", "").split('"') if part.strip())
            if text == value:
                return True
        return False

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
