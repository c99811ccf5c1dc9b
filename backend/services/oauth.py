"""
OAuth client for the four providers.

Handles:
- Authorization URLs with a signed ``state`` (HS256 JWT, 10 minute expiry)
- Authorization-code exchange and refresh against each token endpoint
- Fetching the external account identity (team / email) after a connect

Token endpoints are called with form-encoded bodies. A refusal (non-2xx or
an ``error`` field) raises ``CredentialsInvalid``; timeouts and 5xx raise the
retryable transport errors.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from config import OAuthConfig, get_oauth_config, settings
from connectors.errors import CredentialsInvalid, ProviderTimeout, TransientNetworkError

logger = logging.getLogger(__name__)

STATE_TTL_MINUTES = 10
STATE_ALGORITHM = "HS256"


def encode_state(user_id: str, provider: str, secret: Optional[str] = None) -> str:
    """Sign the OAuth ``state`` parameter for a connect flow."""
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "provider": provider,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=STATE_TTL_MINUTES)).timestamp()),
    }
    return jwt.encode(claims, secret or settings.SECRET_KEY, algorithm=STATE_ALGORITHM)


def decode_state(state: str, secret: Optional[str] = None) -> tuple[str, str]:
    """
    Verify a ``state`` value.

    Returns:
        Tuple of (user_id, provider)

    Raises:
        ValueError: if the state is forged, malformed or expired
    """
    try:
        claims = jwt.decode(state, secret or settings.SECRET_KEY, algorithms=[STATE_ALGORITHM])
    except JWTError as exc:
        raise ValueError(f"Invalid OAuth state: {exc}") from exc
    user_id = claims.get("sub")
    provider = claims.get("provider")
    if not user_id or not provider:
        raise ValueError("OAuth state is missing claims")
    return user_id, provider


class OAuthClient:
    """Client for provider OAuth endpoints."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._transport = transport
        self._timeout: float = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS

    def build_authorize_url(self, provider: str, state: str) -> str:
        config = get_oauth_config(provider)
        params: dict[str, str] = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": ("," if provider == "slack" else " ").join(config.scopes),
            "state": state,
            "response_type": "code",
        }
        if provider == "google_drive":
            # Needed to get a refresh token back
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return f"{config.auth_url}?{urlencode(params)}"

    async def exchange_code(self, provider: str, code: str) -> dict[str, Any]:
        """Exchange an authorization code for a token response."""
        config = get_oauth_config(provider)
        data = await self._post_token(
            provider,
            config,
            {
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "code": code,
                "redirect_uri": config.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return _normalize_token_response(provider, data)

    async def refresh(self, provider: str, refresh_token: str) -> dict[str, Any]:
        """Trade a refresh token for a new token response."""
        config = get_oauth_config(provider)
        data = await self._post_token(
            provider,
            config,
            {
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return _normalize_token_response(provider, data)

    async def fetch_account_info(self, provider: str, token_response: dict[str, Any]) -> dict[str, Any]:
        """
        Identify the external account behind a fresh token.

        Returns a dict with optional ``team_id``, ``team_name`` and ``email``.
        Lookup failures are logged and yield whatever is already known.
        """
        info: dict[str, Any] = {}
        team = token_response.get("team") or {}
        if team:
            info["team_id"] = team.get("id")
            info["team_name"] = team.get("name")

        access_token: str = token_response["access_token"]
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                if provider == "linear":
                    response = await client.post(
                        "https://api.linear.app/graphql",
                        headers={"Authorization": f"Bearer {access_token}"},
                        json={"query": "{ viewer { email } organization { id name } }"},
                    )
                    response.raise_for_status()
                    data = response.json().get("data") or {}
                    organization = data.get("organization") or {}
                    info["team_id"] = organization.get("id")
                    info["team_name"] = organization.get("name")
                    info["email"] = (data.get("viewer") or {}).get("email")
                elif provider == "google_drive":
                    response = await client.get(
                        "https://www.googleapis.com/oauth2/v2/userinfo",
                        headers={"Authorization": f"Bearer {access_token}"},
                    )
                    response.raise_for_status()
                    info["email"] = response.json().get("email")
                elif provider == "fireflies":
                    response = await client.post(
                        "https://api.fireflies.ai/graphql",
                        headers={"Authorization": f"Bearer {access_token}"},
                        json={"query": "{ user { email name } }"},
                    )
                    response.raise_for_status()
                    user = (response.json().get("data") or {}).get("user") or {}
                    info["email"] = user.get("email")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Account lookup failed for %s: %s", provider, exc)

        return {k: v for k, v in info.items() if v}

    async def _post_token(
        self,
        provider: str,
        config: OAuthConfig,
        form: dict[str, str],
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    config.token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"{provider} token endpoint timed out", provider) from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{provider} token endpoint unreachable: {exc}", provider) from exc

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"{provider} token endpoint error: {response.status_code}", provider
            )
        if response.status_code >= 400:
            raise CredentialsInvalid(
                f"{provider} token request rejected: {response.text[:200]}", provider
            )
        try:
            data: dict[str, Any] = response.json()
        except ValueError as exc:
            raise CredentialsInvalid(f"{provider} token endpoint returned non-JSON", provider) from exc

        # Slack reports errors as 200 + {"ok": false}
        if data.get("error") or data.get("ok") is False:
            detail = data.get("error_description") or data.get("error") or "unknown error"
            raise CredentialsInvalid(f"{provider} OAuth error: {detail}", provider)
        return data


def _normalize_token_response(provider: str, data: dict[str, Any]) -> dict[str, Any]:
    """Flatten provider token responses to access/refresh/expires_in/scope/team."""
    token: dict[str, Any] = {
        "access_token": data.get("access_token"),
        "refresh_token": data.get("refresh_token"),
        "expires_in": data.get("expires_in"),
        "scope": data.get("scope"),
        "team": data.get("team"),
    }
    # Slack user-token installs nest the token under authed_user
    authed_user: dict[str, Any] = data.get("authed_user") or {}
    if provider == "slack" and not token["access_token"] and authed_user.get("access_token"):
        token["access_token"] = authed_user["access_token"]
        token["refresh_token"] = authed_user.get("refresh_token")
        token["expires_in"] = authed_user.get("expires_in")
        token["scope"] = authed_user.get("scope")
    if not token["access_token"]:
        raise CredentialsInvalid(f"{provider} token response has no access_token", provider)
    return token
