from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payment_recon.core.models import Base, Timestamped, UUIDPrimaryKey, utcnow


class EvidenceSource(str, enum.Enum):
    BANK_NOTIFICATION = "bank-notification"
    EMAIL_REPLY = "email-reply"
    MANUAL_UPLOAD = "manual-upload"


class EvidenceStatus(str, enum.Enum):
    UNMATCHED = "UNMATCHED"
    SUBMITTED = "SUBMITTED"
    MATCHED = "MATCHED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class MatchType(str, enum.Enum):
    BANK_CREDIT = "bank_credit"
    RECEIPT = "receipt"


PRE_MATCH_STATUSES = (EvidenceStatus.UNMATCHED, EvidenceStatus.SUBMITTED)
PRE_VERIFIED_STATUSES = (*PRE_MATCH_STATUSES, EvidenceStatus.MATCHED)
TERMINAL_STATUSES = (EvidenceStatus.VERIFIED, EvidenceStatus.REJECTED)

# Set by a reviewer's unmatch; ingestion never links such evidence to an invoice again.
MANUALLY_UNMATCHED_FLAG = "manually_unmatched"


class PaymentEvidence(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "evidence_payment_evidence"
    __table_args__ = (
        UniqueConstraint(
            "source_message_id", "attachment_name", name="uq_evidence_origin_identity"
        ),
    )

    source_kind: Mapped[EvidenceSource] = mapped_column(
        Enum(EvidenceSource, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        index=True,
    )

    # Origin identity. Bank notifications carry an empty attachment name.
    source_message_id: Mapped[str] = mapped_column(String(200), index=True)
    attachment_name: Mapped[str] = mapped_column(String(512), default="")
    attachment_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    thread_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    source_mailbox: Mapped[str | None] = mapped_column(String(320), nullable=True)
    mailbox_account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("mailboxes_account.id"), nullable=True, index=True
    )

    media_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    payer_name: Mapped[str | None] = mapped_column(String(320), nullable=True)
    payer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    invoice_reference: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[EvidenceStatus] = mapped_column(
        Enum(EvidenceStatus, native_enum=False), index=True
    )

    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("invoices_invoice.id"), nullable=True, index=True
    )
    matched_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    applied_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    reviewed_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    flags_json: Mapped[list] = mapped_column(JSON, default=list)

    invoice = relationship("Invoice")
    reviewed_by = relationship("User")
    mailbox_account = relationship("MailboxAccount")


class PaymentMatch(UUIDPrimaryKey, Base):
    """Insert-only binding of one evidence unit to one invoice."""

    __tablename__ = "evidence_payment_match"

    evidence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("evidence_payment_evidence.id"), index=True
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("invoices_invoice.id"), index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    matched_by_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id")
    )
    match_type: Mapped[MatchType] = mapped_column(
        Enum(MatchType, native_enum=False, values_callable=lambda e: [m.value for m in e])
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    evidence = relationship("PaymentEvidence")
    invoice = relationship("Invoice")
    matched_by = relationship("User")
