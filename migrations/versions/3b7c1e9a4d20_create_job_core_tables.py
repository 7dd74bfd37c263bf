"""Create broker, dead-letter and rate-limit tables

Revision ID: 3b7c1e9a4d20
Revises:
Create Date: 2026-10-18 09:12:41.508113

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b7c1e9a4d20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Durable queue rows
    op.create_table(
        'broker_messages',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('queue', sa.Text(), nullable=False),
        sa.Column('job_id', sa.Text(), nullable=False),
        sa.Column('body', sa.JSON(), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=False),
        sa.Column('state', sa.Text(), nullable=False, server_default='ready'),
        sa.Column('available_at', sa.Float(), nullable=False),
        sa.Column('ttl_s', sa.Float(), nullable=False),
        sa.Column('lease_expires_at', sa.Float(), nullable=True),
        sa.Column('consumer', sa.Text(), nullable=True),
        sa.Column('deliveries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expirations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('published_at', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("state IN ('ready', 'inflight', 'parked')", name='broker_messages_state_check'),
    )
    op.create_index(
        'ix_broker_messages_claim',
        'broker_messages',
        ['queue', 'state', 'available_at', 'id'],
    )
    op.create_index(
        'ix_broker_messages_lease', 'broker_messages', ['state', 'lease_expires_at']
    )

    # Terminal failure records
    op.create_table(
        'dead_letters',
        sa.Column('job_id', sa.Uuid(), nullable=False),
        sa.Column('job_type', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('priority', sa.Text(), nullable=False),
        sa.Column('final_error', sa.Text(), nullable=False),
        sa.Column('error_kind', sa.Text(), nullable=False),
        sa.Column('retry_count', sa.SmallInteger(), nullable=False),
        sa.Column('max_retries', sa.SmallInteger(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('failed_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('owner_tenant_id', sa.Text(), nullable=True),
        sa.Column('owner_user_id', sa.Text(), nullable=True),
        sa.Column('correlation_id', sa.Text(), nullable=True),
        sa.Column('severity', sa.Text(), nullable=False),
        sa.Column('origin_queue', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('job_id'),
    )
    op.create_index('ix_dead_letters_job_type', 'dead_letters', ['job_type'])
    op.create_index('ix_dead_letters_failed_at', 'dead_letters', ['failed_at'])

    # Shared concurrency counters and their leases
    op.create_table(
        'rate_limit_counters',
        sa.Column('key', sa.Text(), nullable=False),
        sa.Column('in_flight', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('key'),
        sa.CheckConstraint('in_flight >= 0', name='rate_limit_counters_non_negative'),
    )
    op.create_table(
        'rate_limit_leases',
        sa.Column('lease_id', sa.Text(), nullable=False),
        sa.Column('keys', sa.JSON(), nullable=False),
        sa.Column('expires_at', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('lease_id'),
    )
    op.create_index(
        'ix_rate_limit_leases_expires_at', 'rate_limit_leases', ['expires_at']
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_rate_limit_leases_expires_at', table_name='rate_limit_leases')
    op.drop_table('rate_limit_leases')
    op.drop_table('rate_limit_counters')
    op.drop_index('ix_dead_letters_failed_at', table_name='dead_letters')
    op.drop_index('ix_dead_letters_job_type', table_name='dead_letters')
    op.drop_table('dead_letters')
    op.drop_index('ix_broker_messages_lease', table_name='broker_messages')
    op.drop_index('ix_broker_messages_claim', table_name='broker_messages')
    op.drop_table('broker_messages')
