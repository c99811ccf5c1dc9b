"""Token refresh lock and webhook job linkage

Revision ID: 002_refresh_lock_webhook_jobs
Revises: 001_initial
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '002_refresh_lock_webhook_jobs'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Cross-worker guard so an expiring token is refreshed by one worker only
    op.add_column('integrations', sa.Column('token_refresh_locked_until', sa.DateTime(), nullable=True))

    # Lets a delivery be marked processed once every fanned-out job is done
    op.add_column('sync_jobs', sa.Column('webhook_event_id', postgresql.UUID(as_uuid=True), nullable=True))
    op.create_foreign_key(
        'fk_sync_jobs_webhook_event', 'sync_jobs', 'webhook_events', ['webhook_event_id'], ['id']
    )
    op.create_index('ix_sync_jobs_webhook_event', 'sync_jobs', ['webhook_event_id'])


def downgrade() -> None:
    op.drop_index('ix_sync_jobs_webhook_event', table_name='sync_jobs')
    op.drop_constraint('fk_sync_jobs_webhook_event', 'sync_jobs', type_='foreignkey')
    op.drop_column('sync_jobs', 'webhook_event_id')
    op.drop_column('integrations', 'token_refresh_locked_until')
