from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from payment_recon.core.errors import AlreadyTerminal, EvidenceNotReady
from payment_recon.core.logging import get_logger, log_event
from payment_recon.core.models import utcnow
from payment_recon.modules.audit.service import record_event
from payment_recon.modules.evidence.models import (
    MANUALLY_UNMATCHED_FLAG,
    TERMINAL_STATUSES,
    EvidenceSource,
    EvidenceStatus,
    MatchType,
    PaymentEvidence,
    PaymentMatch,
)
from payment_recon.modules.evidence.service import get_evidence, live_match
from payment_recon.modules.invoices.models import Invoice
from payment_recon.modules.invoices.service import (
    get_invoice,
    get_invoice_by_number,
    list_open_invoices,
)

logger = get_logger(__name__)

EXPLICIT_REFERENCE_CONFIDENCE = 0.95


@dataclass(frozen=True)
class MatchSuggestion:
    invoice: Invoice
    delta: Decimal
    confidence: float
    reason: str


def _ranked_confidence(*, amount: Decimal | None, delta: Decimal) -> float:
    if amount is None:
        return 0.1
    return 0.8 if delta == 0 else 0.4


def suggest_matches(
    session: Session, *, evidence_id: uuid.UUID, limit: int = 5
) -> list[MatchSuggestion]:
    """Advisory candidates for an evidence unit. Nothing is applied."""
    evidence = get_evidence(session, evidence_id=evidence_id)
    if evidence.status in TERMINAL_STATUSES:
        return []
    amount = evidence.amount if evidence.amount is not None else Decimal("0")

    if evidence.invoice_reference:
        invoice = get_invoice_by_number(session, invoice_no=evidence.invoice_reference)
        if invoice is not None:
            return [
                MatchSuggestion(
                    invoice=invoice,
                    delta=abs(invoice.total - amount),
                    confidence=EXPLICIT_REFERENCE_CONFIDENCE,
                    reason="explicit_reference",
                )
            ]

    ranked = sorted(
        list_open_invoices(session),
        key=lambda inv: (abs(inv.total - amount), inv.invoice_no),
    )
    return [
        MatchSuggestion(
            invoice=inv,
            delta=abs(inv.total - amount),
            confidence=_ranked_confidence(amount=evidence.amount, delta=abs(inv.total - amount)),
            reason="amount_proximity",
        )
        for inv in ranked[:limit]
    ]


def _match_type(evidence: PaymentEvidence) -> MatchType:
    if evidence.source_kind == EvidenceSource.BANK_NOTIFICATION:
        return MatchType.BANK_CREDIT
    return MatchType.RECEIPT


def pre_match_status(evidence: PaymentEvidence) -> EvidenceStatus:
    if evidence.source_kind == EvidenceSource.BANK_NOTIFICATION:
        return EvidenceStatus.UNMATCHED
    return EvidenceStatus.SUBMITTED


def _apply_match(
    session: Session,
    *,
    evidence: PaymentEvidence,
    invoice: Invoice,
    amount: Decimal,
    actor_id: uuid.UUID,
    confidence: float,
) -> PaymentMatch:
    match = PaymentMatch(
        evidence_id=evidence.id,
        invoice_id=invoice.id,
        amount=amount,
        matched_by_user_id=actor_id,
        match_type=_match_type(evidence),
    )
    session.add(match)
    evidence.invoice_id = invoice.id
    evidence.matched_amount = amount
    evidence.matched_at = utcnow()
    evidence.status = EvidenceStatus.MATCHED
    evidence.confidence = max(evidence.confidence or 0.0, confidence)
    return match


def auto_match_explicit_reference(
    session: Session, *, evidence: PaymentEvidence, actor_id: uuid.UUID
) -> PaymentEvidence:
    """Deterministic match for a bank notification naming an existing invoice."""
    if evidence.source_kind != EvidenceSource.BANK_NOTIFICATION:
        return evidence
    if evidence.status != EvidenceStatus.UNMATCHED or evidence.amount is None:
        return evidence
    if not evidence.invoice_reference or MANUALLY_UNMATCHED_FLAG in (evidence.flags_json or []):
        return evidence
    invoice = get_invoice_by_number(session, invoice_no=evidence.invoice_reference)
    if invoice is None:
        return evidence

    _apply_match(
        session,
        evidence=evidence,
        invoice=invoice,
        amount=evidence.amount,
        actor_id=actor_id,
        confidence=EXPLICIT_REFERENCE_CONFIDENCE,
    )
    record_event(
        session,
        event_type="evidence.auto_matched",
        actor_user_id=actor_id,
        evidence_id=evidence.id,
        invoice_id=invoice.id,
        amount=evidence.amount,
        invoice_reference=evidence.invoice_reference,
    )
    session.commit()
    session.refresh(evidence)
    log_event(
        logger,
        "matching.auto_match.applied",
        evidence_id=str(evidence.id),
        invoice_id=str(invoice.id),
    )
    return evidence


def _sever_live_match(
    session: Session, *, evidence: PaymentEvidence, actor_id: uuid.UUID, reason: str
) -> None:
    previous = live_match(session, evidence=evidence)
    previous_invoice_id = evidence.invoice_id
    evidence.invoice_id = None
    evidence.matched_amount = None
    evidence.matched_at = None
    record_event(
        session,
        event_type="evidence.unmatched",
        actor_user_id=actor_id,
        evidence_id=evidence.id,
        invoice_id=previous_invoice_id,
        match_id=previous.id if previous else None,
        amount=previous.amount if previous else None,
        reason=reason,
    )


def confirm_match(
    session: Session,
    *,
    evidence_id: uuid.UUID,
    invoice_id: uuid.UUID,
    actor_id: uuid.UUID,
    amount: Decimal | None = None,
) -> PaymentEvidence:
    evidence = get_evidence(session, evidence_id=evidence_id, for_update=True)
    if evidence.status in TERMINAL_STATUSES:
        raise AlreadyTerminal(
            f"Evidence is already {evidence.status.value}", evidence_id=str(evidence.id)
        )
    invoice = get_invoice(session, invoice_id=invoice_id)

    match_amount = amount if amount is not None else evidence.amount
    if match_amount is None:
        raise EvidenceNotReady(
            "Evidence has no amount; supply one to match", evidence_id=str(evidence.id)
        )
    if match_amount < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Match amount cannot be negative"
        )

    if evidence.matched_at is not None and evidence.invoice_id not in (None, invoice.id):
        _sever_live_match(session, evidence=evidence, actor_id=actor_id, reason="rematched")

    evidence.flags_json = [
        f for f in evidence.flags_json or [] if f != MANUALLY_UNMATCHED_FLAG
    ]
    match = _apply_match(
        session,
        evidence=evidence,
        invoice=invoice,
        amount=match_amount,
        actor_id=actor_id,
        confidence=EXPLICIT_REFERENCE_CONFIDENCE,
    )
    record_event(
        session,
        event_type="evidence.matched",
        actor_user_id=actor_id,
        evidence_id=evidence.id,
        invoice_id=invoice.id,
        amount=match_amount,
        match_type=match.match_type,
    )
    session.commit()
    session.refresh(evidence)
    log_event(
        logger,
        "matching.confirm.success",
        evidence_id=str(evidence.id),
        invoice_id=str(invoice.id),
    )
    return evidence


def unmatch(session: Session, *, evidence_id: uuid.UUID, actor_id: uuid.UUID) -> PaymentEvidence:
    evidence = get_evidence(session, evidence_id=evidence_id, for_update=True)
    if evidence.status in TERMINAL_STATUSES:
        raise AlreadyTerminal(
            f"Evidence is already {evidence.status.value}", evidence_id=str(evidence.id)
        )

    _sever_live_match(session, evidence=evidence, actor_id=actor_id, reason="manual")
    evidence.status = pre_match_status(evidence)
    flags = list(evidence.flags_json or [])
    if MANUALLY_UNMATCHED_FLAG not in flags:
        evidence.flags_json = [*flags, MANUALLY_UNMATCHED_FLAG]
    session.commit()
    session.refresh(evidence)
    log_event(logger, "matching.unmatch.success", evidence_id=str(evidence.id))
    return evidence
