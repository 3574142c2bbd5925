"""create detected_bills table

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

FREQUENCIES = ("weekly", "bi-weekly", "monthly", "bi-monthly", "quarterly")


def upgrade() -> None:
    op.create_table(
        "detected_bills",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("merchant_name", sa.String(255), nullable=False),
        sa.Column("merchant_pattern", sa.String(255), nullable=False),
        sa.Column("expected_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("frequency", sa.Enum(*FREQUENCIES, name="frequency"), nullable=False),
        sa.Column("next_predicted_date", sa.Date(), nullable=True),
        sa.Column("last_transaction_date", sa.Date(), nullable=True),
        sa.Column("last_paid_date", sa.Date(), nullable=True),
        sa.Column("confidence_score", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("lifecycle_state", sa.Enum("active", "dormant", name="lifecyclestate"), nullable=False),
        sa.Column("cycle_status", sa.Enum("upcoming", "paid", name="cyclestatus"), nullable=False),
        sa.Column("amount_drift", sa.Numeric(12, 2), nullable=True),
        sa.Column("auto_detected", sa.Boolean(), nullable=False),
        sa.Column("split_group_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "merchant_name", name="uq_detected_bill_user_merchant"),
    )
    op.create_index("ix_detected_bills_user_id", "detected_bills", ["user_id"])
    op.create_index("ix_detected_bills_split_group_id", "detected_bills", ["split_group_id"])


def downgrade() -> None:
    op.drop_index("ix_detected_bills_split_group_id", table_name="detected_bills")
    op.drop_index("ix_detected_bills_user_id", table_name="detected_bills")
    op.drop_table("detected_bills")
