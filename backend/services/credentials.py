"""
Credential store - the only writer of Integration token fields.

Responsibilities:
- Look up integrations
- Hand out a usable access token, refreshing it shortly before expiry
- Persist new integrations from an OAuth code exchange (upsert on
  user/provider/team)
- Deactivate integrations and flag them for re-authorization
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import STATIC_API_KEYS, settings
from connectors.errors import CredentialsInvalid, IntegrationNotFound
from models.database import utcnow
from models.integration import DEFAULT_TEAM_ID, Integration
from services.oauth import OAuthClient

logger = logging.getLogger(__name__)


class CredentialStore:
    """Integration lookup, token refresh and OAuth persistence."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        oauth: Optional[OAuthClient] = None,
        refresh_margin_seconds: Optional[int] = None,
        static_api_keys: Optional[dict[str, Optional[str]]] = None,
        refresh_lock_seconds: Optional[int] = None,
        refresh_poll_seconds: float = 0.25,
    ) -> None:
        self._session_factory = session_factory
        self._oauth = oauth or OAuthClient()
        margin = (
            refresh_margin_seconds
            if refresh_margin_seconds is not None
            else settings.TOKEN_REFRESH_MARGIN_SECONDS
        )
        self._refresh_margin = timedelta(seconds=margin)
        self._refresh_lock = timedelta(
            seconds=refresh_lock_seconds or settings.TOKEN_REFRESH_LOCK_SECONDS
        )
        self._refresh_poll_seconds = refresh_poll_seconds
        self._static_api_keys = STATIC_API_KEYS if static_api_keys is None else static_api_keys
        # In-process waiters queue here; entries go away with their last holder
        self._refresh_locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def get(self, integration_id: Union[str, UUID]) -> Integration:
        async with self._session_factory() as session:
            integration = await session.get(Integration, UUID(str(integration_id)))
        if integration is None:
            raise IntegrationNotFound(f"Integration not found: {integration_id}")
        return integration

    async def ensure_fresh_token(self, integration: Integration) -> str:
        """
        Return a usable access token for ``integration``.

        Refreshes when the token expires within the safety margin and updates
        ``integration`` in place, so later calls on the same object reuse the
        new token. Across processes the refresh is serialized on the
        integration row (``token_refresh_locked_until``): one worker calls the
        token endpoint, the others wait and pick up what it stored.

        Raises:
            CredentialsInvalid: no token, no refresh token, or the provider
                refused the refresh
        """
        if not integration.access_token:
            static_key = self._static_api_keys.get(integration.provider)
            if static_key:
                return static_key
            raise CredentialsInvalid(
                f"{integration.provider} integration {integration.id} has no access token",
                integration.provider,
            )

        if not self._needs_refresh(integration):
            return integration.access_token

        lock = self._refresh_locks.get(integration.id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[integration.id] = lock
        async with lock:
            while True:
                # Another caller may have refreshed while we waited
                await self._reload_tokens(integration)
                if not self._needs_refresh(integration):
                    return integration.access_token
                if await self._claim_refresh(integration):
                    break
                await asyncio.sleep(self._refresh_poll_seconds)
            try:
                return await self._refresh(integration)
            finally:
                await self._release_refresh(integration.id)

    def _needs_refresh(self, integration: Integration) -> bool:
        if integration.token_expires_at is None:
            return False
        return integration.token_expires_at <= utcnow() + self._refresh_margin

    async def _reload_tokens(self, integration: Integration) -> None:
        _copy_tokens(await self.get(integration.id), integration)

    async def _claim_refresh(self, integration: Integration) -> bool:
        """Take the row's refresh lock if it is free and the refresh token is the one we hold."""
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Integration)
                .where(
                    Integration.id == integration.id,
                    Integration.refresh_token == integration.refresh_token,
                    or_(
                        Integration.token_refresh_locked_until.is_(None),
                        Integration.token_refresh_locked_until < now,
                    ),
                )
                .values(token_refresh_locked_until=now + self._refresh_lock)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def _release_refresh(self, integration_id: UUID) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Integration)
                .where(Integration.id == integration_id)
                .values(token_refresh_locked_until=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _refresh(self, integration: Integration) -> str:
        used_refresh_token = integration.refresh_token
        if not used_refresh_token:
            raise CredentialsInvalid(
                f"{integration.provider} token expired and no refresh token is stored",
                integration.provider,
            )

        logger.info(
            "Refreshing %s token for integration %s",
            integration.provider, integration.id,
            extra={"integration_id": str(integration.id), "provider": integration.provider},
        )
        try:
            token = await self._oauth.refresh(integration.provider, used_refresh_token)
        except CredentialsInvalid:
            # A rotated refresh token is refused once someone else has used it
            await self._reload_tokens(integration)
            if integration.refresh_token != used_refresh_token and not self._needs_refresh(integration):
                logger.info("Token for integration %s was refreshed elsewhere", integration.id)
                return integration.access_token
            logger.warning("Token refresh refused for integration %s", integration.id)
            raise

        now = utcnow()
        values: dict[str, Any] = {
            "access_token": token["access_token"],
            # Providers that don't rotate refresh tokens omit it
            "refresh_token": token.get("refresh_token") or used_refresh_token,
            "token_expires_at": _expiry(token.get("expires_in"), now),
            "token_refresh_locked_until": None,
            "updated_at": now,
        }
        async with self._session_factory() as session:
            result = await session.execute(
                update(Integration)
                .where(
                    Integration.id == integration.id,
                    Integration.refresh_token == used_refresh_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Integration %s tokens changed during refresh; keeping the stored ones",
                integration.id,
            )
            await self._reload_tokens(integration)
            return integration.access_token

        for key, value in values.items():
            setattr(integration, key, value)
        return integration.access_token

    async def save(
        self,
        user_id: Union[str, UUID],
        provider: str,
        token_response: dict[str, Any],
        account_info: Optional[dict[str, Any]] = None,
    ) -> UUID:
        """
        Upsert the integration for (user, provider, team) from an OAuth exchange.

        Returns:
            The integration id
        """
        account_info = account_info or {}
        now = utcnow()
        scope = token_response.get("scope")
        values: dict[str, Any] = {
            "access_token": token_response["access_token"],
            "refresh_token": token_response.get("refresh_token"),
            "token_expires_at": _expiry(token_response.get("expires_in"), now),
            "scopes": scope.replace(",", " ").split() if isinstance(scope, str) else scope,
            "team_name": account_info.get("team_name"),
            "user_email": account_info.get("email"),
            "is_active": True,
            "needs_reauth": False,
            "last_error": None,
            "updated_at": now,
        }
        insert_values: dict[str, Any] = {
            **values,
            "user_id": UUID(str(user_id)),
            "provider": provider,
            "team_id": account_info.get("team_id") or DEFAULT_TEAM_ID,
            "config": {},
            "created_at": now,
        }

        async with self._session_factory() as session:
            dialect = session.get_bind().dialect.name
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = (
                insert(Integration)
                .values(**insert_values)
                .on_conflict_do_update(
                    index_elements=["user_id", "provider", "team_id"],
                    set_=values,
                )
                .returning(Integration.id)
            )
            result = await session.execute(stmt)
            integration_id: UUID = result.scalar_one()
            await session.commit()

        logger.info(
            "Saved %s integration %s for user %s",
            provider, integration_id, user_id,
            extra={"integration_id": str(integration_id), "provider": provider},
        )
        return integration_id

    async def deactivate(self, integration_id: Union[str, UUID]) -> None:
        await self._set_flags(integration_id, is_active=False)
        logger.info("Deactivated integration %s", integration_id)

    async def mark_needs_reauth(self, integration_id: Union[str, UUID], reason: str) -> None:
        """Surface the integration as "needs reconnect" until the user re-authorizes."""
        await self._set_flags(integration_id, needs_reauth=True, last_error=reason[:500])
        logger.warning("Integration %s needs re-authorization: %s", integration_id, reason)

    async def list_active(
        self,
        provider: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> list[Integration]:
        """Active integrations that can still sync (not awaiting re-auth)."""
        conditions = [Integration.is_active.is_(True), Integration.needs_reauth.is_(False)]
        if provider:
            conditions.append(Integration.provider == provider)
        if team_id:
            conditions.append(Integration.team_id == team_id)
        async with self._session_factory() as session:
            result = await session.execute(select(Integration).where(*conditions))
            return list(result.scalars().all())

    async def list_for_user(self, user_id: Union[str, UUID]) -> list[Integration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Integration)
                .where(Integration.user_id == UUID(str(user_id)), Integration.is_active.is_(True))
                .order_by(Integration.created_at)
            )
            return list(result.scalars().all())

    async def update_config(self, integration_id: Union[str, UUID], config: dict[str, Any]) -> None:
        """Replace the integration's free-form config (e.g. Drive watch channel)."""
        async with self._session_factory() as session:
            await session.execute(
                update(Integration)
                .where(Integration.id == UUID(str(integration_id)))
                .values(config=config, updated_at=utcnow())
            )
            await session.commit()

    async def _set_flags(self, integration_id: Union[str, UUID], **values: Any) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Integration)
                .where(Integration.id == UUID(str(integration_id)))
                .values(**values, updated_at=utcnow())
            )
            await session.commit()
        if result.rowcount == 0:
            raise IntegrationNotFound(f"Integration not found: {integration_id}")


def _expiry(expires_in: Any, now: datetime) -> Optional[datetime]:
    if not expires_in:
        return None
    return now + timedelta(seconds=int(expires_in))


def _copy_tokens(source: Integration, target: Integration) -> None:
    target.access_token = source.access_token
    target.refresh_token = source.refresh_token
    target.token_expires_at = source.token_expires_at
