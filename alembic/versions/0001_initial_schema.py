from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("telegram_id", sa.BigInteger(), nullable=True),
        sa.Column("traits", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_contacts_email", "contacts", ["email"], unique=False)

    op.create_table(
        "campaign_memberships",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), autoincrement=True, nullable=False),
        sa.Column("user_type", sa.String(), nullable=False, server_default=sa.text("'Contact'")),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("campaign_key", sa.String(), nullable=False),
        sa.Column("step_key", sa.String(), nullable=False),
        sa.Column("concurrent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_campaign_membership_user",
        "campaign_memberships",
        ["user_type", "user_id", "campaign_key"],
        unique=True,
    )
    op.create_index("idx_campaign_memberships_step", "campaign_memberships", ["campaign_key", "step_key"], unique=False)
    op.create_index("idx_campaign_memberships_last_sent", "campaign_memberships", ["last_sent_at"], unique=False)

    op.create_table(
        "campaign_receipts",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), autoincrement=True, nullable=False),
        sa.Column("user_type", sa.String(), nullable=False, server_default=sa.text("'Contact'")),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("campaign_key", sa.String(), nullable=False),
        sa.Column("step_key", sa.String(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_campaign_receipt_user_step",
        "campaign_receipts",
        ["user_type", "user_id", "campaign_key", "step_key"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_campaign_receipt_user_step", table_name="campaign_receipts")
    op.drop_table("campaign_receipts")
    op.drop_index("idx_campaign_memberships_last_sent", table_name="campaign_memberships")
    op.drop_index("idx_campaign_memberships_step", table_name="campaign_memberships")
    op.drop_index("uq_campaign_membership_user", table_name="campaign_memberships")
    op.drop_table("campaign_memberships")
    op.drop_index("idx_contacts_email", table_name="contacts")
    op.drop_table("contacts")
