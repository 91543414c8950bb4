# backend/alembic/versions/001_settlement_schema.py
"""Settlement schema - bookings, refunds, disputes, earnings, wallets, payouts

Revision ID: 001_settlement_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates every table the settlement engine reads or writes. Bookings carry their
own settlement state and a frozen copy of the mentor's cancellation policy.
Mentor earnings and token wallets are versioned for optimistic concurrency;
earnings ledger entries are unique per (type, source) so a payout is credited
once.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_settlement_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create settlement tables."""
    print("Creating settlement tables...")

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("service_id", sa.String(26), nullable=False),
        sa.Column("mentor_id", sa.String(26), nullable=False),
        sa.Column("student_id", sa.String(26), nullable=False),
        # Timing
        sa.Column("scheduled_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("mentor_timezone", sa.String(64), nullable=True),
        sa.Column("student_timezone", sa.String(64), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        # Payment
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(20), nullable=True),
        sa.Column("payment_reference", sa.String(255), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        # Settlement
        sa.Column("platform_commission", sa.Numeric(10, 2), nullable=True),
        sa.Column("mentor_payout", sa.Numeric(10, 2), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("commission_tier", sa.String(10), nullable=True),
        sa.Column("payout_status", sa.String(20), nullable=True),
        sa.Column("payout_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payout_failure_reason", sa.Text(), nullable=True),
        sa.Column("payout_retryable", sa.Boolean(), nullable=True),
        sa.Column("payout_transfer_id", sa.String(255), nullable=True),
        sa.Column("payout_idempotency_key", sa.String(255), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_period_ends", sa.DateTime(timezone=True), nullable=True),
        # Cancellation
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by_id", sa.String(26), nullable=True),
        sa.Column("cancelled_by_role", sa.String(20), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        # Policy snapshot
        sa.Column("policy_minimum_cancellation_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("policy_mentor_id", sa.String(26), nullable=True),
        sa.Column("policy_set_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("duration_minutes >= 15 AND duration_minutes <= 480", name="check_duration_range"),
        sa.CheckConstraint("amount >= 0", name="check_amount_non_negative"),
        sa.CheckConstraint(
            "policy_minimum_cancellation_hours >= 1 AND policy_minimum_cancellation_hours <= 168",
            name="check_policy_hours_range",
        ),
        comment="Paid sessions with their own settlement state",
    )
    op.create_index("ix_bookings_service_id", "bookings", ["service_id"])
    op.create_index("ix_bookings_mentor_id", "bookings", ["mentor_id"])
    op.create_index("ix_bookings_student_id", "bookings", ["student_id"])
    op.create_index("ix_bookings_scheduled_at_utc", "bookings", ["scheduled_at_utc"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_payout_status", "bookings", ["payout_status"])
    op.create_index("ix_bookings_dispute_period_ends", "bookings", ["dispute_period_ends"])
    op.create_index("ix_bookings_created_at", "bookings", ["created_at"])
    # Settlement sweep scan
    op.create_index(
        "ix_bookings_settlement_scan", "bookings", ["status", "payout_status", "dispute_period_ends"]
    )

    op.create_table(
        "booking_refunds",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("booking_id", sa.String(26), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="none"),
        sa.Column("refund_type", sa.String(20), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("percentage", sa.Integer(), nullable=True),
        sa.Column("external_refund_id", sa.String(255), nullable=True),
        sa.Column("wallet_transaction_id", sa.String(26), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failure_retryable", sa.Boolean(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("booking_id", name="uq_booking_refunds_booking_id"),
        comment="Refund state, one row per booking",
    )
    op.create_index("ix_booking_refunds_booking_id", "booking_refunds", ["booking_id"])
    op.create_index("ix_booking_refunds_status", "booking_refunds", ["status"])

    op.create_table(
        "reschedule_requests",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("booking_id", sa.String(26), nullable=False),
        sa.Column("requested_by_id", sa.String(26), nullable=False),
        sa.Column("new_scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("responded_by_id", sa.String(26), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reschedule_requests_booking_id", "reschedule_requests", ["booking_id"])
    op.create_index("ix_reschedule_requests_status", "reschedule_requests", ["status"])

    # ======== DISPUTES ========
    op.create_table(
        "disputes",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("booking_id", sa.String(26), nullable=False),
        sa.Column("mentee_id", sa.String(26), nullable=False),
        sa.Column("mentor_id", sa.String(26), nullable=False),
        sa.Column("reason", sa.String(40), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("mentor_response", sa.Text(), nullable=True),
        sa.Column("mentor_responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_decision", sa.String(20), nullable=True),
        sa.Column("resolution_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("resolution_reason", sa.String(500), nullable=True),
        sa.Column("resolved_by_id", sa.String(26), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("booking_id", name="uq_disputes_booking_id"),
        sa.CheckConstraint("length(description) <= 1000", name="check_dispute_description_length"),
    )
    op.create_index("ix_disputes_booking_id", "disputes", ["booking_id"])
    op.create_index("ix_disputes_mentee_id", "disputes", ["mentee_id"])
    op.create_index("ix_disputes_mentor_id", "disputes", ["mentor_id"])
    op.create_index("ix_disputes_status", "disputes", ["status"])

    op.create_table(
        "dispute_evidence",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("dispute_id", sa.String(26), nullable=False),
        sa.Column("submitted_by", sa.String(10), nullable=False),
        sa.Column("evidence_type", sa.String(20), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, comment="URL or inline text"),
        sa.Column("description", sa.String(200), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["dispute_id"], ["disputes.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dispute_evidence_dispute_id", "dispute_evidence", ["dispute_id"])

    # ======== EARNINGS ========
    op.create_table(
        "mentor_earnings",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("mentor_id", sa.String(26), nullable=False),
        sa.Column("total_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("session_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("message_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("completed_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cold_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("commission_tier", sa.String(10), nullable=False, server_default="tier1"),
        sa.Column("last_tier_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier_overridden_by", sa.String(26), nullable=True),
        sa.Column("tier_override_reason", sa.String(500), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("mentor_id", name="uq_mentor_earnings_mentor_id"),
    )
    op.create_index("ix_mentor_earnings_mentor_id", "mentor_earnings", ["mentor_id"])

    op.create_table(
        "mentor_monthly_earnings",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("mentor_id", sa.String(26), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("session_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("message_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("total_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("sessions_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cold_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("mentor_id", "year", "month", name="uq_mentor_monthly_earnings_period"),
    )
    op.create_index("ix_mentor_monthly_earnings_mentor_id", "mentor_monthly_earnings", ["mentor_id"])

    op.create_table(
        "earnings_ledger_entries",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("mentor_id", sa.String(26), nullable=False),
        sa.Column("earnings_type", sa.String(20), nullable=False),
        sa.Column("source_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("earnings_type", "source_id", name="uq_earnings_ledger_source"),
    )
    op.create_index("ix_earnings_ledger_entries_mentor_id", "earnings_ledger_entries", ["mentor_id"])

    # ======== TOKEN WALLETS ========
    op.create_table(
        "token_wallets",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("user_id", sa.String(26), nullable=False),
        sa.Column("balance", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_token_wallets_user_id"),
        sa.CheckConstraint("balance >= 0", name="ck_token_wallets_balance_non_negative"),
    )
    op.create_index("ix_token_wallets_user_id", "token_wallets", ["user_id"])

    op.create_table(
        "token_transactions",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("user_id", sa.String(26), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reference", sa.String(255), nullable=False, comment="Idempotency reference"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference", name="uq_token_transactions_reference"),
        sa.CheckConstraint("amount > 0", name="ck_token_transactions_amount_positive"),
        sa.CheckConstraint("direction IN ('credit', 'debit')", name="ck_token_transactions_direction"),
    )
    op.create_index("ix_token_transactions_user_id", "token_transactions", ["user_id"])

    # ======== PAYOUTS ========
    op.create_table(
        "mentor_payout_accounts",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("mentor_id", sa.String(26), nullable=False),
        sa.Column("external_account_id", sa.String(255), nullable=False),
        sa.Column("onboarding_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("mentor_id", name="uq_mentor_payout_accounts_mentor_id"),
        sa.UniqueConstraint("external_account_id", name="uq_mentor_payout_accounts_external_id"),
        comment="Connected payout destination per mentor",
    )
    op.create_index("ix_mentor_payout_accounts_mentor_id", "mentor_payout_accounts", ["mentor_id"])

    op.create_table(
        "cold_message_payouts",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("message_id", sa.String(64), nullable=False),
        sa.Column("mentor_id", sa.String(26), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("platform_commission", sa.Numeric(10, 2), nullable=True),
        sa.Column("mentor_payout", sa.Numeric(10, 2), nullable=True),
        sa.Column("commission_tier", sa.String(10), nullable=True),
        sa.Column("payout_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payout_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payout_transfer_id", sa.String(255), nullable=True),
        sa.Column("payout_idempotency_key", sa.String(255), nullable=True),
        sa.Column("payout_failure_reason", sa.Text(), nullable=True),
        sa.Column("payout_retryable", sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id", name="uq_cold_message_payouts_message_id"),
    )
    op.create_index("ix_cold_message_payouts_message_id", "cold_message_payouts", ["message_id"])
    op.create_index("ix_cold_message_payouts_mentor_id", "cold_message_payouts", ["mentor_id"])
    op.create_index("ix_cold_message_payouts_payout_status", "cold_message_payouts", ["payout_status"])

    # ======== NOTIFICATION OUTBOX ========
    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("booking_id", sa.String(26), nullable=True),
        sa.Column("recipient_id", sa.String(26), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()).with_variant(sa.JSON(), "sqlite"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_notification_outbox_idempotency_key"),
    )
    op.create_index("ix_notification_outbox_booking_id", "notification_outbox", ["booking_id"])
    op.create_index("ix_notification_outbox_recipient_id", "notification_outbox", ["recipient_id"])
    op.create_index("ix_notification_outbox_category", "notification_outbox", ["category"])
    op.create_index("ix_notification_outbox_status", "notification_outbox", ["status"])
    op.create_index("ix_notification_outbox_next_attempt_at", "notification_outbox", ["next_attempt_at"])

    print("Settlement tables created")


def downgrade() -> None:
    """Drop settlement tables in reverse dependency order."""
    print("Dropping settlement tables...")
    for table in (
        "notification_outbox",
        "cold_message_payouts",
        "mentor_payout_accounts",
        "token_transactions",
        "token_wallets",
        "earnings_ledger_entries",
        "mentor_monthly_earnings",
        "mentor_earnings",
        "dispute_evidence",
        "disputes",
        "reschedule_requests",
        "booking_refunds",
        "bookings",
    ):
        op.drop_table(table)
