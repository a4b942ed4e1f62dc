"""add scheduled_for to campaign memberships

Revision ID: 5b2e9c7d41a0
Revises: 0001_initial_schema
Create Date: 2026-01-22 10:14:37.218904

"""

from alembic import op
import sqlalchemy as sa



revision = '5b2e9c7d41a0'
down_revision = '0001_initial_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('campaign_memberships', sa.Column('scheduled_for', sa.DateTime(), nullable=True))
    # Only rows with a wall-clock send time are looked up by scheduled_for.
    op.create_index(
        'idx_campaign_memberships_scheduled_for',
        'campaign_memberships',
        ['scheduled_for'],
        unique=False,
        postgresql_where=sa.text('scheduled_for IS NOT NULL'),
        sqlite_where=sa.text('scheduled_for IS NOT NULL'),
    )


def downgrade() -> None:
    op.drop_index('idx_campaign_memberships_scheduled_for', table_name='campaign_memberships')
    op.drop_column('campaign_memberships', 'scheduled_for')
