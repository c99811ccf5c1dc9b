"""Alembic environment for the sync engine schema (integrations, jobs, activity, webhooks)."""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from config import settings
import models  # noqa: F401  registers every table on Base.metadata
from models.database import Base

config = context.config

# Migrations run on a sync driver: postgresql+asyncpg -> postgresql+psycopg,
# sqlite+aiosqlite -> sqlite
sync_url: str = (
    settings.DATABASE_URL
    .replace("postgresql://", "postgresql+psycopg://", 1)
    .replace("+asyncpg", "+psycopg")
    .replace("+aiosqlite", "")
)
config.set_main_option("sqlalchemy.url", sync_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# SQLite can't ALTER most constraints; batch mode rebuilds tables instead
_batch: bool = sync_url.startswith("sqlite")


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting."""
    context.configure(
        url=sync_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=_batch,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations against DATABASE_URL."""
    engine = create_engine(sync_url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                render_as_batch=_batch,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
