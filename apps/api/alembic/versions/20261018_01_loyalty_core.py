"""Loyalty core: accounts, programs, cards, ledger, tokens, notifications, reconciliation.

Revision ID: 20261018_01
Revises: 
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="customer"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("is_provisional", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("role IN ('customer','staff','admin')", name="ck_users_role_valid"),
        sa.CheckConstraint("status IN ('active','invited','suspended','deleted')", name="ck_users_status_valid"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "businesses",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("owner_id", _uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_businesses_owner_id", "businesses", ["owner_id"])

    op.create_table(
        "business_staff_members",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("business_id", "user_id", name="uq_business_staff_members_business_user"),
    )
    op.create_index("ix_business_staff_members_user_id", "business_staff_members", ["user_id"])

    op.create_table(
        "loyalty_programs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_per_scan", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("max_points_per_award", sa.Integer(), nullable=False, server_default="10000"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_loyalty_programs_business_id", "loyalty_programs", ["business_id"])

    op.create_table(
        "program_enrollments",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("customer_id", _uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("program_id", _uuid(), sa.ForeignKey("loyalty_programs.id"), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("current_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_points_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("customer_id", "program_id", name="uq_program_enrollments_customer_program"),
    )
    op.create_index("ix_program_enrollments_customer_id", "program_enrollments", ["customer_id"])
    op.create_index("ix_program_enrollments_program_id", "program_enrollments", ["program_id"])

    op.create_table(
        "loyalty_cards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("customer_id", _uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("program_id", _uuid(), sa.ForeignKey("loyalty_programs.id"), nullable=False),
        sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id"), nullable=False),
        sa.Column("enrollment_id", _uuid(), sa.ForeignKey("program_enrollments.id"), nullable=False, unique=True),
        sa.Column("card_number", sa.String(length=32), nullable=False, unique=True),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("customer_id", "program_id", name="uq_loyalty_cards_customer_program"),
        sa.CheckConstraint("points_balance >= 0", name="ck_loyalty_cards_points_balance_non_negative"),
    )
    op.create_index("ix_loyalty_cards_customer_id", "loyalty_cards", ["customer_id"])
    op.create_index("ix_loyalty_cards_program_id", "loyalty_cards", ["program_id"])
    op.create_index("ix_loyalty_cards_business_id", "loyalty_cards", ["business_id"])

    op.create_table(
        "card_balance_views",
        sa.Column("card_id", _uuid(), sa.ForeignKey("loyalty_cards.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("customer_id", _uuid(), nullable=False),
        sa.Column("program_id", _uuid(), nullable=False),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refreshed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_card_balance_views_customer_id", "card_balance_views", ["customer_id"])

    op.create_table(
        "point_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("card_id", _uuid(), sa.ForeignKey("loyalty_cards.id"), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("performed_by", _uuid(), nullable=True),
        sa.Column("token_id", _uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("card_id", "idempotency_key", name="uq_point_transactions_card_idempotency_key"),
    )
    op.create_index("ix_point_transactions_card_id", "point_transactions", ["card_id"])
    op.create_index("ix_point_transactions_token_id", "point_transactions", ["token_id"])
    op.create_index("ix_point_transactions_created_at", "point_transactions", ["created_at"])

    op.create_table(
        "qr_tokens",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("subject_kind", sa.String(length=24), nullable=False),
        sa.Column("subject_id", _uuid(), nullable=False),
        sa.Column("program_id", _uuid(), nullable=True),
        sa.Column("nonce", sa.String(length=64), nullable=False),
        sa.Column("key_id", sa.String(length=64), nullable=False),
        sa.Column("version", sa.String(length=8), nullable=False),
        sa.Column("tag", sa.String(length=128), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumer_key", sa.String(length=128), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoke_reason", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("status IN ('active','consumed','revoked')", name="ck_qr_tokens_status_valid"),
    )
    op.create_index("ix_qr_tokens_subject_id", "qr_tokens", ["subject_id"])
    op.create_index("ix_qr_tokens_expires_at", "qr_tokens", ["expires_at"])
    op.create_index("ix_qr_tokens_status", "qr_tokens", ["status"])

    op.create_table(
        "qr_token_archive",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("token_id", _uuid(), nullable=False, unique=True),
        sa.Column("subject_kind", sa.String(length=24), nullable=False),
        sa.Column("subject_id", _uuid(), nullable=False),
        sa.Column("program_id", _uuid(), nullable=True),
        sa.Column("final_status", sa.String(length=16), nullable=False),
        sa.Column("nonce", sa.String(length=64), nullable=False),
        sa.Column("key_id", sa.String(length=64), nullable=False),
        sa.Column("version", sa.String(length=8), nullable=False),
        sa.Column("tag", sa.String(length=128), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumer_key", sa.String(length=128), nullable=True),
        sa.Column("revoke_reason", sa.String(length=64), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_qr_token_archive_subject_id", "qr_token_archive", ["subject_id"])

    op.create_table(
        "qr_scan_logs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("token_id", _uuid(), nullable=True),
        sa.Column("business_id", _uuid(), nullable=False),
        sa.Column("scanned_by", _uuid(), nullable=True),
        sa.Column("customer_id", _uuid(), nullable=True),
        sa.Column("program_id", _uuid(), nullable=True),
        sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("failure_reason", sa.String(length=48), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_qr_scan_logs_token_id", "qr_scan_logs", ["token_id"])
    op.create_index("ix_qr_scan_logs_business_id", "qr_scan_logs", ["business_id"])

    op.create_table(
        "notifications",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("card_id", _uuid(), nullable=True),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_status", "notifications", ["status"])

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("trigger", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("repair", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("cards_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discrepancies_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discrepancies_repaired", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_archived", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_revoked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notifications_redelivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "balance_discrepancies",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "run_id",
            _uuid(),
            sa.ForeignKey("reconciliation_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("card_id", _uuid(), nullable=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("canonical_value", sa.Integer(), nullable=True),
        sa.Column("observed_value", sa.Integer(), nullable=True),
        sa.Column("repaired", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_balance_discrepancies_run_id", "balance_discrepancies", ["run_id"])
    op.create_index("ix_balance_discrepancies_card_id", "balance_discrepancies", ["card_id"])


def downgrade() -> None:
    op.drop_table("balance_discrepancies")
    op.drop_table("reconciliation_runs")
    op.drop_table("notifications")
    op.drop_table("qr_scan_logs")
    op.drop_table("qr_token_archive")
    op.drop_table("qr_tokens")
    op.drop_table("point_transactions")
    op.drop_table("card_balance_views")
    op.drop_table("loyalty_cards")
    op.drop_table("program_enrollments")
    op.drop_table("loyalty_programs")
    op.drop_table("business_staff_members")
    op.drop_table("businesses")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
