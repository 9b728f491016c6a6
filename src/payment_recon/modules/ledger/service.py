from __future__ import annotations

import re
import uuid
from collections.abc import Callable
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from payment_recon.core.errors import (
    AlreadyTerminal,
    EvidenceNotReady,
    LedgerInvariantViolation,
    NotFound,
)
from payment_recon.core.logging import get_logger, log_event, log_exception
from payment_recon.core.models import utcnow
from payment_recon.core.storage import get_storage
from payment_recon.modules.audit.service import record_event
from payment_recon.modules.evidence.models import (
    PRE_VERIFIED_STATUSES,
    EvidenceSource,
    EvidenceStatus,
    MatchType,
    PaymentEvidence,
    PaymentMatch,
)
from payment_recon.modules.evidence.service import get_evidence
from payment_recon.modules.invoices.models import Invoice, InvoiceStatus

logger = get_logger(__name__)

_CENTS = Decimal("0.01")

SlipFetcher = Callable[[PaymentEvidence], bytes]


def check_ledger_invariant(invoice: Invoice) -> None:
    expected = max(Decimal("0"), invoice.total - invoice.collected)
    if invoice.collected < 0 or invoice.outstanding != expected:
        raise LedgerInvariantViolation(
            "Invoice ledger would become inconsistent",
            invoice_id=str(invoice.id),
            total=str(invoice.total),
            collected=str(invoice.collected),
            outstanding=str(invoice.outstanding),
        )


def apply_payment(invoice: Invoice, amount: Decimal) -> None:
    """Add ``amount`` to the invoice's collected total and recompute derived fields."""
    invoice.collected = (invoice.collected + amount).quantize(_CENTS)
    invoice.outstanding = max(Decimal("0.00"), invoice.total - invoice.collected).quantize(_CENTS)
    if invoice.outstanding == 0:
        invoice.status = InvoiceStatus.PAID
    elif invoice.collected > 0:
        invoice.status = InvoiceStatus.PARTIALLY_PAID
    check_ledger_invariant(invoice)


def _applicable_amount(evidence: PaymentEvidence) -> Decimal | None:
    if evidence.matched_at is not None and evidence.matched_amount is not None:
        return evidence.matched_amount
    return evidence.amount


def _try_start_verification(
    session: Session, *, evidence: PaymentEvidence, actor_id: uuid.UUID, note: str | None
) -> bool:
    result = session.execute(
        update(PaymentEvidence)
        .where(
            PaymentEvidence.id == evidence.id,
            PaymentEvidence.status.in_(PRE_VERIFIED_STATUSES),
        )
        .values(
            status=EvidenceStatus.VERIFIED,
            reviewed_by_user_id=actor_id,
            reviewed_at=utcnow(),
            review_note=note,
        )
    )
    return bool(result.rowcount)


def _already_applied_elsewhere(session: Session, *, evidence: PaymentEvidence) -> bool:
    other = session.scalar(
        select(PaymentEvidence.id)
        .where(
            PaymentEvidence.id != evidence.id,
            PaymentEvidence.source_message_id == evidence.source_message_id,
            PaymentEvidence.status == EvidenceStatus.VERIFIED,
        )
        .limit(1)
    )
    return other is not None


def verify(
    session: Session,
    *,
    evidence_id: uuid.UUID,
    actor_id: uuid.UUID,
    note: str | None = None,
    fetch_slip: SlipFetcher | None = None,
) -> PaymentEvidence:
    evidence = get_evidence(session, evidence_id=evidence_id)
    if evidence.status == EvidenceStatus.VERIFIED:
        return evidence
    if evidence.status == EvidenceStatus.REJECTED:
        raise AlreadyTerminal("Evidence was rejected", evidence_id=str(evidence.id))

    amount = _applicable_amount(evidence)
    if evidence.invoice_id is None:
        raise EvidenceNotReady("Evidence is not linked to an invoice", evidence_id=str(evidence.id))
    if amount is None or amount <= 0:
        raise EvidenceNotReady("Evidence has no positive amount", evidence_id=str(evidence.id))

    try:
        if not _try_start_verification(session, evidence=evidence, actor_id=actor_id, note=note):
            # Lost the race to a concurrent verify or reject.
            session.rollback()
            session.refresh(evidence)
            if evidence.status == EvidenceStatus.VERIFIED:
                return evidence
            raise AlreadyTerminal(
                f"Evidence is already {evidence.status.value}", evidence_id=str(evidence.id)
            )

        invoice = session.scalar(
            select(Invoice).where(Invoice.id == evidence.invoice_id).with_for_update()
        )
        if invoice is None:
            raise NotFound("Invoice not found", invoice_id=str(evidence.invoice_id))

        duplicate = _already_applied_elsewhere(session, evidence=evidence)
        if duplicate:
            log_event(
                logger,
                "ledger.verify.duplicate_skipped",
                evidence_id=str(evidence.id),
                source_message_id=evidence.source_message_id,
            )
        else:
            apply_payment(invoice, amount)
            evidence.applied_amount = amount

        if evidence.matched_at is None:
            session.add(
                PaymentMatch(
                    evidence_id=evidence.id,
                    invoice_id=invoice.id,
                    amount=amount,
                    matched_by_user_id=actor_id,
                    match_type=(
                        MatchType.BANK_CREDIT
                        if evidence.source_kind == EvidenceSource.BANK_NOTIFICATION
                        else MatchType.RECEIPT
                    ),
                )
            )
            evidence.matched_amount = amount
            evidence.matched_at = utcnow()

        record_event(
            session,
            event_type="evidence.verified",
            actor_user_id=actor_id,
            evidence_id=evidence.id,
            invoice_id=invoice.id,
            amount=amount,
            ledger_applied=not duplicate,
            collected=invoice.collected,
            outstanding=invoice.outstanding,
            invoice_status=invoice.status,
            note=note,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(evidence)
    log_event(
        logger,
        "ledger.verify.success",
        evidence_id=str(evidence.id),
        invoice_id=str(evidence.invoice_id),
        ledger_applied=not duplicate,
    )
    if fetch_slip is not None:
        persist_slip(session, evidence=evidence, fetch_slip=fetch_slip)
    return evidence


def persist_slip(session: Session, *, evidence: PaymentEvidence, fetch_slip: SlipFetcher) -> None:
    """Copy a mailbox-hosted slip into durable storage. Failures never undo a verification."""
    if evidence.storage_key or not evidence.attachment_id:
        return
    try:
        body = fetch_slip(evidence)
        name = re.sub(r"[^A-Za-z0-9._-]+", "_", evidence.attachment_name or "slip")[:120]
        stored = get_storage().put(
            key=f"evidence/{evidence.id}/{name or 'slip'}",
            body=body,
            content_type=evidence.media_type,
        )
        evidence.storage_key = stored.key
        evidence.file_size = stored.byte_size
        session.commit()
    except Exception:  # noqa: BLE001
        session.rollback()
        log_exception(logger, "ledger.slip_persist.failure", evidence_id=str(evidence.id))


def reject(
    session: Session,
    *,
    evidence_id: uuid.UUID,
    actor_id: uuid.UUID,
    reason: str,
    note: str | None = None,
) -> PaymentEvidence:
    evidence = get_evidence(session, evidence_id=evidence_id, for_update=True)
    if evidence.status == EvidenceStatus.REJECTED:
        return evidence
    if evidence.status == EvidenceStatus.VERIFIED:
        raise AlreadyTerminal(
            "Verified evidence cannot be rejected", evidence_id=str(evidence.id)
        )

    result = session.execute(
        update(PaymentEvidence)
        .where(
            PaymentEvidence.id == evidence.id,
            PaymentEvidence.status.in_(PRE_VERIFIED_STATUSES),
        )
        .values(
            status=EvidenceStatus.REJECTED,
            rejection_reason=reason,
            review_note=note,
            reviewed_by_user_id=actor_id,
            reviewed_at=utcnow(),
        )
    )
    if not result.rowcount:
        session.rollback()
        raise AlreadyTerminal("Evidence changed state concurrently", evidence_id=str(evidence.id))
    record_event(
        session,
        event_type="evidence.rejected",
        actor_user_id=actor_id,
        evidence_id=evidence.id,
        invoice_id=evidence.invoice_id,
        reason=reason,
        note=note,
    )
    session.commit()
    session.refresh(evidence)
    log_event(logger, "ledger.reject.success", evidence_id=str(evidence.id))
    return evidence
