"""initial reconciliation schema

Revision ID: 3c1e9a7b5d20
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "3c1e9a7b5d20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "identity_user",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("password_hash", sa.String(length=200), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_identity_user_email", "identity_user", ["email"], unique=True)
    op.create_index("ix_identity_user_role", "identity_user", ["role"])

    op.create_table(
        "invoices_invoice",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("invoice_no", sa.String(length=50), nullable=False),
        sa.Column("project_id", sa.String(length=64), nullable=True),
        sa.Column("phase_id", sa.String(length=64), nullable=True),
        sa.Column("issue_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("collected", sa.Numeric(12, 2), nullable=False),
        sa.Column("outstanding", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("approval_status", sa.String(length=30), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint("collected >= 0", name="ck_invoices_invoice_collected_non_negative"),
        sa.CheckConstraint(
            "outstanding >= 0", name="ck_invoices_invoice_outstanding_non_negative"
        ),
    )
    op.create_index(
        "ix_invoices_invoice_invoice_no", "invoices_invoice", ["invoice_no"], unique=True
    )
    op.create_index("ix_invoices_invoice_project_id", "invoices_invoice", ["project_id"])
    op.create_index("ix_invoices_invoice_status", "invoices_invoice", ["status"])

    op.create_table(
        "mailboxes_account",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False
        ),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.UniqueConstraint(
            "user_id", "provider", "email", name="uq_mailbox_user_provider_email"
        ),
    )
    op.create_index("ix_mailboxes_account_user_id", "mailboxes_account", ["user_id"])

    op.create_table(
        "evidence_payment_evidence",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("source_kind", sa.String(length=20), nullable=False),
        sa.Column("source_message_id", sa.String(length=200), nullable=False),
        sa.Column("attachment_name", sa.String(length=512), nullable=False),
        sa.Column("attachment_id", sa.String(length=512), nullable=True),
        sa.Column("thread_id", sa.String(length=200), nullable=True),
        sa.Column("source_mailbox", sa.String(length=320), nullable=True),
        sa.Column(
            "mailbox_account_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("mailboxes_account.id"),
            nullable=True,
        ),
        sa.Column("media_type", sa.String(length=200), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("storage_key", sa.String(length=1024), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payer_name", sa.String(length=320), nullable=True),
        sa.Column("payer_email", sa.String(length=320), nullable=True),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("invoice_reference", sa.String(length=50), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column(
            "invoice_id", sa.Uuid(as_uuid=True), sa.ForeignKey("invoices_invoice.id"), nullable=True
        ),
        sa.Column("matched_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applied_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "reviewed_by_user_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_user.id"),
            nullable=True,
        ),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_note", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("flags_json", sa.JSON(), nullable=False),
        sa.UniqueConstraint(
            "source_message_id", "attachment_name", name="uq_evidence_origin_identity"
        ),
    )
    for column in (
        "source_kind",
        "source_message_id",
        "mailbox_account_id",
        "invoice_reference",
        "status",
        "invoice_id",
    ):
        op.create_index(
            f"ix_evidence_payment_evidence_{column}", "evidence_payment_evidence", [column]
        )

    op.create_table(
        "evidence_payment_match",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "evidence_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("evidence_payment_evidence.id"),
            nullable=False,
        ),
        sa.Column(
            "invoice_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("invoices_invoice.id"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "matched_by_user_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_user.id"),
            nullable=False,
        ),
        sa.Column("match_type", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_evidence_payment_match_evidence_id", "evidence_payment_match", ["evidence_id"]
    )
    op.create_index(
        "ix_evidence_payment_match_invoice_id", "evidence_payment_match", ["invoice_id"]
    )

    op.create_table(
        "audit_event",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "evidence_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("evidence_payment_evidence.id"),
            nullable=True,
        ),
        sa.Column(
            "invoice_id", sa.Uuid(as_uuid=True), sa.ForeignKey("invoices_invoice.id"), nullable=True
        ),
        sa.Column(
            "actor_user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=True
        ),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    for column in ("evidence_id", "invoice_id", "actor_user_id", "event_type"):
        op.create_index(f"ix_audit_event_{column}", "audit_event", [column])


def downgrade() -> None:
    op.drop_table("audit_event")
    op.drop_table("evidence_payment_match")
    op.drop_table("evidence_payment_evidence")
    op.drop_table("mailboxes_account")
    op.drop_table("invoices_invoice")
    op.drop_table("identity_user")
