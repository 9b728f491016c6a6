from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payment_recon.core.errors import NotFound
from payment_recon.core.logging import get_logger, log_event
from payment_recon.modules.evidence.models import (
    MANUALLY_UNMATCHED_FLAG,
    PRE_MATCH_STATUSES,
    EvidenceSource,
    EvidenceStatus,
    PaymentEvidence,
    PaymentMatch,
)

logger = get_logger(__name__)


@dataclass
class EvidenceDraft:
    """A normalized evidence unit, not yet persisted."""

    source_kind: EvidenceSource
    source_message_id: str
    status: EvidenceStatus
    confidence: float
    currency: str
    received_at: datetime
    attachment_name: str = ""
    attachment_id: str | None = None
    thread_id: str | None = None
    source_mailbox: str | None = None
    mailbox_account_id: uuid.UUID | None = None
    media_type: str | None = None
    file_size: int | None = None
    storage_key: str | None = None
    amount: Decimal | None = None
    payer_name: str | None = None
    payer_email: str | None = None
    subject: str | None = None
    memo: str | None = None
    invoice_reference: str | None = None
    invoice_id: uuid.UUID | None = None
    flags: list[str] = field(default_factory=list)


# Refreshed on every re-ingestion.
_DESCRIPTIVE_FIELDS = (
    "attachment_id",
    "thread_id",
    "source_mailbox",
    "mailbox_account_id",
    "media_type",
    "file_size",
    "payer_name",
    "payer_email",
    "subject",
    "memo",
    "received_at",
)


def get_evidence(
    session: Session, *, evidence_id: uuid.UUID, for_update: bool = False
) -> PaymentEvidence:
    stmt = select(PaymentEvidence).where(PaymentEvidence.id == evidence_id)
    if for_update:
        stmt = stmt.with_for_update()
    evidence = session.scalar(stmt)
    if not evidence:
        raise NotFound("Evidence not found", evidence_id=str(evidence_id))
    return evidence


def find_by_origin(
    session: Session, *, source_message_id: str, attachment_name: str
) -> PaymentEvidence | None:
    return session.scalar(
        select(PaymentEvidence).where(
            PaymentEvidence.source_message_id == source_message_id,
            PaymentEvidence.attachment_name == attachment_name,
        )
    )


def list_evidence(
    session: Session,
    *,
    status: EvidenceStatus | None = None,
    source_kind: EvidenceSource | None = None,
    unmatched_only: bool = False,
    has_amount: bool | None = None,
) -> list[PaymentEvidence]:
    stmt = select(PaymentEvidence)
    if status is not None:
        stmt = stmt.where(PaymentEvidence.status == status)
    if source_kind is not None:
        stmt = stmt.where(PaymentEvidence.source_kind == source_kind)
    if unmatched_only:
        stmt = stmt.where(PaymentEvidence.status.in_(PRE_MATCH_STATUSES))
    if has_amount is True:
        stmt = stmt.where(PaymentEvidence.amount.is_not(None))
    elif has_amount is False:
        stmt = stmt.where(PaymentEvidence.amount.is_(None))
    stmt = stmt.order_by(PaymentEvidence.received_at.desc(), PaymentEvidence.id)
    return list(session.scalars(stmt))


def upsert_evidence(session: Session, *, draft: EvidenceDraft) -> tuple[PaymentEvidence, bool]:
    """Insert or refresh the evidence row for ``draft``'s origin identity.

    Returns ``(evidence, created)``. Existing rows only get descriptive fields refreshed;
    amount and invoice link move only while the row is still pre-match, and status never
    changes here.
    """
    existing = find_by_origin(
        session,
        source_message_id=draft.source_message_id,
        attachment_name=draft.attachment_name,
    )
    if existing is None:
        evidence = PaymentEvidence(
            source_kind=draft.source_kind,
            source_message_id=draft.source_message_id,
            attachment_name=draft.attachment_name,
            storage_key=draft.storage_key,
            amount=draft.amount,
            currency=draft.currency,
            invoice_reference=draft.invoice_reference,
            invoice_id=draft.invoice_id,
            confidence=draft.confidence,
            status=draft.status,
            flags_json=list(draft.flags),
            **{name: getattr(draft, name) for name in _DESCRIPTIVE_FIELDS},
        )
        session.add(evidence)
        try:
            session.commit()
        except IntegrityError:
            # Another ingestion run inserted the same origin identity first.
            session.rollback()
            existing = find_by_origin(
                session,
                source_message_id=draft.source_message_id,
                attachment_name=draft.attachment_name,
            )
            if existing is None:
                raise
        else:
            session.refresh(evidence)
            log_event(
                logger,
                "evidence.created",
                evidence_id=str(evidence.id),
                source_kind=evidence.source_kind.value,
                status=evidence.status.value,
                has_amount=evidence.amount is not None,
            )
            return evidence, True

    _refresh_existing(existing, draft)
    session.commit()
    session.refresh(existing)
    log_event(
        logger,
        "evidence.refreshed",
        evidence_id=str(existing.id),
        status=existing.status.value,
    )
    return existing, False


def _refresh_existing(evidence: PaymentEvidence, draft: EvidenceDraft) -> None:
    for name in _DESCRIPTIVE_FIELDS:
        value = getattr(draft, name)
        if value is not None:
            setattr(evidence, name, value)
    if draft.storage_key and not evidence.storage_key:
        evidence.storage_key = draft.storage_key
    merged_flags = list(evidence.flags_json or [])
    merged_flags.extend(f for f in draft.flags if f not in merged_flags)
    evidence.flags_json = merged_flags

    if evidence.status not in PRE_MATCH_STATUSES:
        return
    if draft.amount is not None:
        evidence.amount = draft.amount
        evidence.currency = draft.currency
    if draft.invoice_reference:
        evidence.invoice_reference = draft.invoice_reference
    if (
        draft.invoice_id
        and evidence.invoice_id is None
        and MANUALLY_UNMATCHED_FLAG not in merged_flags
    ):
        evidence.invoice_id = draft.invoice_id
    evidence.confidence = max(evidence.confidence or 0.0, draft.confidence)


def live_match(session: Session, *, evidence: PaymentEvidence) -> PaymentMatch | None:
    if evidence.matched_at is None or evidence.invoice_id is None:
        return None
    return session.scalar(
        select(PaymentMatch)
        .where(
            PaymentMatch.evidence_id == evidence.id,
            PaymentMatch.invoice_id == evidence.invoice_id,
        )
        .order_by(PaymentMatch.created_at.desc())
        .limit(1)
    )


def list_matches(session: Session, *, evidence_id: uuid.UUID) -> list[PaymentMatch]:
    return list(
        session.scalars(
            select(PaymentMatch)
            .where(PaymentMatch.evidence_id == evidence_id)
            .order_by(PaymentMatch.created_at)
        )
    )
