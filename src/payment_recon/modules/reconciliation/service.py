from __future__ import annotations

import enum
import uuid

from sqlalchemy.orm import Session

from payment_recon.core.errors import (
    AlreadyTerminal,
    ExtractionFailure,
    NotFound,
    UpstreamUnavailable,
)
from payment_recon.core.logging import get_logger, log_event, log_exception
from payment_recon.core.storage import StorageError, get_storage
from payment_recon.modules.audit.service import record_event
from payment_recon.modules.evidence.models import TERMINAL_STATUSES, PaymentEvidence
from payment_recon.modules.evidence.service import get_evidence
from payment_recon.modules.extraction.amount import find_amount
from payment_recon.modules.extraction.service import extract_text
from payment_recon.modules.ingestion.service import EvidenceNormalizer, IngestionConfig
from payment_recon.modules.ledger import service as ledger
from payment_recon.modules.mailboxes.service import get_account, mail_client_for

logger = get_logger(__name__)


class IngestKind(str, enum.Enum):
    ALL = "all"
    BANK = "bank"
    REPLIES = "replies"


def _fetch_from_mailbox(session: Session, evidence: PaymentEvidence) -> bytes:
    if not evidence.attachment_id or not evidence.mailbox_account_id:
        raise NotFound("Evidence has no file", evidence_id=str(evidence.id))
    account = get_account(session, account_id=evidence.mailbox_account_id)
    client = mail_client_for(session, account=account)
    return client.get_attachment(
        message_id=evidence.source_message_id, attachment_id=evidence.attachment_id
    )


def load_evidence_file(session: Session, *, evidence: PaymentEvidence) -> tuple[bytes, str]:
    """Slip bytes and media type, from durable storage or proxied from the mailbox."""
    media_type = evidence.media_type or "application/octet-stream"
    if evidence.storage_key:
        try:
            return get_storage().get(key=evidence.storage_key), media_type
        except StorageError as e:
            raise UpstreamUnavailable(
                "Stored slip could not be read", evidence_id=str(evidence.id)
            ) from e
    return _fetch_from_mailbox(session, evidence), media_type


def verify_evidence(
    session: Session, *, evidence_id: uuid.UUID, actor_id: uuid.UUID, note: str | None = None
) -> PaymentEvidence:
    return ledger.verify(
        session,
        evidence_id=evidence_id,
        actor_id=actor_id,
        note=note,
        fetch_slip=lambda evidence: _fetch_from_mailbox(session, evidence),
    )


def reextract_amount(
    session: Session, *, evidence_id: uuid.UUID, actor_id: uuid.UUID
) -> PaymentEvidence:
    evidence = get_evidence(session, evidence_id=evidence_id)
    if evidence.status in TERMINAL_STATUSES:
        raise AlreadyTerminal(
            f"Evidence is already {evidence.status.value}", evidence_id=str(evidence.id)
        )

    body, media_type = load_evidence_file(session, evidence=evidence)
    found = find_amount(extract_text(body, media_type))
    if found is None:
        raise ExtractionFailure("No amount found on slip", evidence_id=str(evidence.id))

    previous = evidence.amount
    evidence.amount = found.amount
    if found.currency:
        evidence.currency = found.currency
    evidence.confidence = max(0.7, evidence.confidence or 0.0)
    evidence.flags_json = [f for f in evidence.flags_json or [] if f != "needs_manual_amount"]
    record_event(
        session,
        event_type="evidence.reextracted",
        actor_user_id=actor_id,
        evidence_id=evidence.id,
        previous_amount=previous,
        amount=found.amount,
        strategy=found.strategy,
    )
    session.commit()
    session.refresh(evidence)
    log_event(
        logger,
        "reconciliation.reextract.success",
        evidence_id=str(evidence.id),
        strategy=found.strategy,
    )
    return evidence


def ingest_mailbox(
    session: Session,
    *,
    account_id: uuid.UUID,
    actor_id: uuid.UUID,
    kind: IngestKind = IngestKind.ALL,
) -> list[PaymentEvidence]:
    account = get_account(session, account_id=account_id)
    normalizer = EvidenceNormalizer(
        config=IngestionConfig.from_settings(),
        mail_client=mail_client_for(session, account=account),
    )
    phases = []
    if kind in (IngestKind.ALL, IngestKind.REPLIES):
        phases.append((IngestKind.REPLIES, normalizer.ingest_payment_replies))
    if kind in (IngestKind.ALL, IngestKind.BANK):
        phases.append((IngestKind.BANK, normalizer.ingest_bank_notifications))

    results: list[PaymentEvidence] = []
    failed: list[UpstreamUnavailable] = []
    for phase, run in phases:
        try:
            results.extend(run(session, account=account, actor_id=actor_id))
        except UpstreamUnavailable as e:
            # Evidence from earlier phases is already committed; keep it.
            log_exception(
                logger,
                "reconciliation.ingest.phase_failure",
                account_id=str(account.id),
                phase=phase.value,
            )
            failed.append(e)
    if failed and len(failed) == len(phases):
        raise failed[-1]

    log_event(
        logger,
        "reconciliation.ingest.finish",
        account_id=str(account.id),
        kind=kind.value,
        evidence_count=len(results),
        failed_phases=len(failed),
    )
    return results
