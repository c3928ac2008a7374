"""allow at most one live checkout per vehicle and buyer

Revision ID: 0002_live_attempt_guard
Revises: 0001_payments
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_live_attempt_guard"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "uq_transactions_live_attempt",
        "transactions",
        ["vehicle_id", "buyer_id"],
        unique=True,
        postgresql_where=sa.text("status = 'payment_initiated'"),
    )


def downgrade() -> None:
    op.drop_index("uq_transactions_live_attempt", table_name="transactions")
