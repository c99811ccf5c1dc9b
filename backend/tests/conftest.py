"""Shared fixtures: a throwaway SQLite store and integration rows."""
import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from models.database import init_db, make_session_factory
from models.integration import Integration


@pytest.fixture
def session_factory(tmp_path: Path) -> Iterator[async_sessionmaker[AsyncSession]]:
    # NullPool: tests call asyncio.run more than once, so no connection may outlive a loop
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    yield make_session_factory(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def make_integration(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Integration]]:
    async def _make(
        provider: str = "linear",
        user_id: Optional[UUID] = None,
        access_token: Optional[str] = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        token_expires_at: Optional[datetime] = None,
        team_id: str = "default",
        **fields: Any,
    ) -> Integration:
        integration = Integration(
            user_id=user_id or uuid4(),
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            team_id=team_id,
            config={},
            **fields,
        )
        async with session_factory() as session:
            session.add(integration)
            await session.commit()
        return integration

    return _make
