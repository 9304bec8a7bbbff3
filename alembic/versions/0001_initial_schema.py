"""initial_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create accounts, races and migration_log tables."""
    op.create_table('accounts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('external_id', sa.BigInteger(), nullable=False),
        sa.Column('local_id', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('profile', sa.Text(), nullable=True, comment='JSON profile returned by the provider'),
        sa.Column('encrypted_credential', sa.Text(), nullable=True, comment='AES-256-GCM encrypted OAuth credential (JSON: encrypted, iv, authTag)'),
        sa.Column('registered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_accounts_external_id', 'accounts', ['external_id'], unique=True)
    op.create_index('ix_accounts_local_id', 'accounts', ['local_id'], unique=True)

    op.create_table('races',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_external_id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('race_date', sa.Date(), nullable=False),
        sa.Column('race_type', sa.Enum('road', 'trail', name='race_type', native_enum=False), nullable=False),
        sa.Column('distance', sa.String(length=20), nullable=True),
        sa.Column('distance_km', sa.Float(), nullable=True),
        sa.Column('location', sa.String(length=100), nullable=True),
        sa.Column('status', sa.Enum('registered', 'completed', 'cancelled', 'dns', 'dnf', name='race_status', native_enum=False), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('goal_time', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_external_id'], ['accounts.external_id'], ondelete='CASCADE', onupdate='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_races_account_external_id', 'races', ['account_external_id'])
    op.create_index('idx_races_race_date', 'races', ['race_date'])

    op.create_table('migration_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('data_backup', sa.Text(), nullable=True, comment='JSON copy of the migrated source payload'),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('migration_log')
    op.drop_index('idx_races_race_date', table_name='races')
    op.drop_index('idx_races_account_external_id', table_name='races')
    op.drop_table('races')
    op.drop_index('ix_accounts_local_id', table_name='accounts')
    op.drop_index('ix_accounts_external_id', table_name='accounts')
    op.drop_table('accounts')
