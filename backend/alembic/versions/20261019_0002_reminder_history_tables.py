"""Create the append-only reminder event log and throttle window claims."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reminder_events",
        sa.Column("event_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("invoice_id", sa.String(length=128), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=True),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_code", sa.String(length=128), nullable=True),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_reminder_events_invoice_id", "reminder_events", ["invoice_id"], unique=False)
    op.create_index("ix_reminder_events_sent_at", "reminder_events", ["sent_at"], unique=False)

    op.create_table(
        "reminder_window_claims",
        sa.Column("claim_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("invoice_id", sa.String(length=128), nullable=False),
        sa.Column("window_slot", sa.Integer(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("claim_id"),
        sa.UniqueConstraint("invoice_id", "window_slot", name="uq_reminder_window_claims_invoice_slot"),
    )
    op.create_index("ix_reminder_window_claims_invoice_id", "reminder_window_claims", ["invoice_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_reminder_window_claims_invoice_id", table_name="reminder_window_claims")
    op.drop_table("reminder_window_claims")

    op.drop_index("ix_reminder_events_sent_at", table_name="reminder_events")
    op.drop_index("ix_reminder_events_invoice_id", table_name="reminder_events")
    op.drop_table("reminder_events")
