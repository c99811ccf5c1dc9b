"""
Base adapter class that all provider adapters inherit from.

An adapter knows how to page through one provider's API, how to turn a raw
item into a CanonicalRecord, and how to turn a webhook push payload into the
same shape. Adapters hold no per-integration state: the access token is an
argument of every call, so one instance per provider is shared by all
workers.

HTTP failures are translated into the error taxonomy in connectors/errors.py
here, once, so every adapter signals expired credentials and transient
failures the same way.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from config import settings
from connectors.errors import (
    CredentialsInvalid,
    MalformedResponse,
    ProviderTimeout,
    RateLimited,
    TransientNetworkError,
)
from connectors.models import CanonicalRecord, Page
from connectors.registry import AdapterMeta  # noqa: F401 – re-export for convenience

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def tag_slug(value: str) -> str:
    """Lowercase a label and hyphenate whitespace: 'In Progress' -> 'in-progress'."""
    return _WHITESPACE.sub("-", value.strip().lower())


class BaseAdapter(ABC):
    """Abstract base class for provider adapters.

    Subclasses set ``provider``, ``meta`` and ``page_delay_seconds`` and
    implement the three contract methods.
    """

    # Override in subclasses - must match Provider values
    provider: str = "unknown"

    meta: AdapterMeta

    # Minimum spacing between successive page requests
    page_delay_seconds: float = 1.0

    # Whether the cursor left after a finished sync is a valid starting
    # point for the next one. If not, it is cleared on completion.
    resumable_cursor: bool = True

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        page_delay: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Args:
            transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
            page_delay: Override for ``page_delay_seconds``
            timeout: Per-request timeout in seconds
        """
        self._transport = transport
        self._timeout: float = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        if page_delay is not None:
            self.page_delay_seconds = page_delay
        self._last_page_at: Optional[float] = None

    # ── Contract ─────────────────────────────────────────────────────────

    @abstractmethod
    async def list_page(
        self,
        token: str,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Page:
        """Fetch one page of raw items.

        Args:
            token: Provider access token
            cursor: Opaque position returned by the previous page
            since: ISO8601 timestamp; only items modified after it
        """

    @abstractmethod
    def normalize(self, raw: dict[str, Any]) -> CanonicalRecord:
        """Map one raw item (as returned by ``list_page``) to a CanonicalRecord."""

    @abstractmethod
    async def normalize_webhook(self, payload: dict[str, Any], token: str) -> Optional[CanonicalRecord]:
        """Map a webhook push payload to a CanonicalRecord.

        Returns None when the payload describes nothing worth ingesting
        (bot messages, deletions, unsupported event types).
        """

    def webhook_targets_team(self, payload: dict[str, Any]) -> Optional[str]:
        """External team id named by a webhook payload, if any."""
        return None

    # ── HTTP helpers ─────────────────────────────────────────────────────

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _request(
        self,
        method: str,
        url: str,
        token: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        error_body_ok: bool = False,
    ) -> Any:
        """Send one request and return the decoded JSON body.

        With ``error_body_ok`` a 4xx body that decodes as JSON is returned
        instead of raising (GraphQL APIs report errors in the body).

        Raises:
            CredentialsInvalid: 401
            RateLimited: 429
            TransientNetworkError: 5xx or connection failure
            ProviderTimeout: request timed out
            MalformedResponse: any other non-2xx, or a body that isn't JSON
        """
        headers = self._auth_headers(token)
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            async with self._client() as client:
                response: httpx.Response = await client.request(
                    method, url, headers=headers, params=params, json=json
                )
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"{self.provider} request timed out: {url}", self.provider) from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(
                f"{self.provider} connection error: {exc}", self.provider
            ) from exc

        status = response.status_code
        if status == 401:
            raise CredentialsInvalid(f"{self.provider} rejected the access token", self.provider)
        if status == 429:
            raise RateLimited(
                f"{self.provider} rate limit hit",
                self.provider,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise TransientNetworkError(f"{self.provider} API error: {status}", self.provider)
        if status >= 400 and error_body_ok:
            try:
                return response.json()
            except ValueError:
                pass
        if status >= 400:
            logger.warning(
                "%s API returned %s for %s: %s",
                self.provider, status, url, response.text[:500],
            )
            raise MalformedResponse(f"{self.provider} API error: {status}", self.provider)

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponse(f"{self.provider} returned a non-JSON body", self.provider) from exc

    async def _graphql(
        self,
        url: str,
        token: str,
        query: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Execute a GraphQL query and return its ``data`` object."""
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        result = await self._request("POST", url, token, json=payload, error_body_ok=True)
        if not isinstance(result, dict):
            raise MalformedResponse(f"{self.provider} GraphQL response is not an object", self.provider)

        errors: list[dict[str, Any]] = result.get("errors") or []
        if errors:
            messages: list[str] = [str(e.get("message", "")) for e in errors]
            if any(_is_auth_error(m) for m in messages):
                raise CredentialsInvalid(f"{self.provider} auth error: {messages[0]}", self.provider)
            logger.error("%s GraphQL error: %s", self.provider, messages[0])
            raise MalformedResponse(f"{self.provider} GraphQL error: {messages[0]}", self.provider)

        data = result.get("data")
        if not isinstance(data, dict):
            raise MalformedResponse(f"{self.provider} GraphQL response has no data", self.provider)
        return data

    async def _pace(self) -> None:
        """Sleep until ``page_delay_seconds`` has passed since the previous page request."""
        now = time.monotonic()
        if self._last_page_at is not None and self.page_delay_seconds > 0:
            remaining = self.page_delay_seconds - (now - self._last_page_at)
            if remaining > 0:
                await asyncio.sleep(remaining)
        self._last_page_at = time.monotonic()


def _is_auth_error(message: str) -> bool:
    lowered = message.lower()
    return "authentication" in lowered or "unauthorized" in lowered


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def require(data: Any, key: str, provider: str) -> Any:
    """Fetch a required key from a provider response or raise MalformedResponse."""
    if not isinstance(data, dict) or key not in data or data[key] is None:
        raise MalformedResponse(f"{provider} response missing '{key}'", provider)
    return data[key]
