from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from payment_recon.modules.evidence.models import (
    EvidenceSource,
    EvidenceStatus,
    MatchType,
    PaymentEvidence,
)
from payment_recon.modules.invoices.schemas import InvoiceOut


class EvidenceOut(BaseModel):
    id: uuid.UUID
    source_kind: EvidenceSource
    source_message_id: str
    attachment_name: str
    thread_id: str | None
    source_mailbox: str | None
    media_type: str | None
    file_size: int | None
    file_url: str | None
    amount: Decimal | None
    currency: str
    payer_name: str | None
    payer_email: str | None
    subject: str | None
    memo: str | None
    invoice_reference: str | None
    received_at: datetime
    confidence: float
    status: EvidenceStatus
    invoice_id: uuid.UUID | None
    matched_amount: Decimal | None
    matched_at: datetime | None
    applied_amount: Decimal | None
    reviewed_by_user_id: uuid.UUID | None
    reviewed_at: datetime | None
    review_note: str | None
    rejection_reason: str | None
    needs_manual_amount: bool
    flags: list[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_evidence(cls, evidence: PaymentEvidence) -> EvidenceOut:
        has_file = bool(evidence.storage_key or evidence.attachment_id)
        return cls.model_validate(
            {
                **{name: getattr(evidence, name) for name in _COLUMN_FIELDS},
                "file_url": f"/api/evidence/{evidence.id}/file" if has_file else None,
                "needs_manual_amount": evidence.amount is None,
                "flags": list(evidence.flags_json or []),
            }
        )


_COLUMN_FIELDS = tuple(
    name
    for name in EvidenceOut.model_fields
    if name not in {"file_url", "needs_manual_amount", "flags"}
)


class PaymentMatchOut(BaseModel):
    id: uuid.UUID
    evidence_id: uuid.UUID
    invoice_id: uuid.UUID
    amount: Decimal
    matched_by_user_id: uuid.UUID
    match_type: MatchType
    created_at: datetime


class MatchSuggestionOut(BaseModel):
    invoice: InvoiceOut
    delta: Decimal
    confidence: float
    reason: str


class VerifyRequest(BaseModel):
    note: str | None = None


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1)
    note: str | None = None


class MatchRequest(BaseModel):
    invoice_id: uuid.UUID
    amount: Decimal | None = Field(default=None, ge=0)
