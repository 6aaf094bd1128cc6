"""Messages API client for the in-process conversation runtime.

A thin httpx wrapper around ``POST /v1/messages``. Rate-limit and
authentication failures are translated into CredentialOrQuotaExhausted
so the caller can pause dispatching instead of retrying per ticket.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from grove.errors import CredentialOrQuotaExhausted

logger = logging.getLogger(__name__)


class ModelClient:
    """Async Messages API client."""

    def __init__(
        self,
        *,
        base_url: str = "https://api.anthropic.com",
        api_key: str | None = None,
        api_version: str = "2023-06-01",
        timeout: float = 300.0,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.api_version = api_version
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        if not self.api_key:
            raise RuntimeError("Model API key not configured (conversation.api_key_env)")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": self.api_version,
                "content-type": "application/json",
                "User-Agent": "Grove/0.1.0",
            },
            timeout=self.timeout,
        )
        logger.info("Model client started (%s)", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Model client not started")
        return self._client

    async def create_message(
        self,
        *,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        max_tokens: int,
    ) -> dict[str, Any]:
        """Send one turn and return the decoded response body.

        Raises:
            CredentialOrQuotaExhausted: On 429, 402, 401 or 403.
            httpx.HTTPStatusError: On any other non-2xx response.
        """
        resp = await self.client.post(
            "/v1/messages",
            json={
                "model": model,
                "system": system,
                "messages": messages,
                "tools": tools,
                "max_tokens": max_tokens,
            },
        )
        if resp.status_code in (429, 402):
            retry_after = resp.headers.get("retry-after")
            resume_at = None
            if retry_after and retry_after.isdigit():
                resume_at = datetime.now(timezone.utc) + timedelta(seconds=int(retry_after))
            logger.warning("Model API quota/rate limit hit (%d)", resp.status_code)
            raise CredentialOrQuotaExhausted(
                f"rate limit ({resp.status_code}): {resp.text[:200]}", resume_at=resume_at
            )
        if resp.status_code in (401, 403):
            logger.warning("Model API rejected credentials (%d)", resp.status_code)
            raise CredentialOrQuotaExhausted(
                f"authentication failed ({resp.status_code})", auth_expired=True
            )
        resp.raise_for_status()
        return resp.json()
