from __future__ import annotations

import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session

from payment_recon.api.deps import require_reconciler
from payment_recon.core.db import db_session
from payment_recon.core.logging import get_logger, log_event
from payment_recon.modules.audit.schemas import AuditEventOut
from payment_recon.modules.audit.service import list_events
from payment_recon.modules.evidence.models import EvidenceSource, EvidenceStatus
from payment_recon.modules.evidence.schemas import (
    EvidenceOut,
    MatchRequest,
    MatchSuggestionOut,
    PaymentMatchOut,
    RejectRequest,
    VerifyRequest,
)
from payment_recon.modules.evidence.service import get_evidence, list_evidence, list_matches
from payment_recon.modules.identity.models import User
from payment_recon.modules.ingestion.service import ingest_manual_upload
from payment_recon.modules.invoices.schemas import InvoiceOut
from payment_recon.modules.ledger.service import reject
from payment_recon.modules.mailboxes.service import get_account
from payment_recon.modules.matching.service import confirm_match, suggest_matches, unmatch
from payment_recon.modules.reconciliation.service import (
    IngestKind,
    ingest_mailbox,
    load_evidence_file,
    reextract_amount,
    verify_evidence,
)

router = APIRouter(tags=["reconciliation"])
logger = get_logger(__name__)


@router.get("/evidence", response_model=list[EvidenceOut])
def list_evidence_endpoint(
    status: EvidenceStatus | None = None,
    source_kind: EvidenceSource | None = None,
    unmatched_only: bool = False,
    has_amount: bool | None = None,
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> list[EvidenceOut]:
    rows = list_evidence(
        session,
        status=status,
        source_kind=source_kind,
        unmatched_only=unmatched_only,
        has_amount=has_amount,
    )
    return [EvidenceOut.from_evidence(e) for e in rows]


@router.post("/evidence/uploads", response_model=EvidenceOut, status_code=201)
def upload_slip(
    upload: UploadFile = File(...),
    amount: Decimal | None = Form(default=None, ge=0),
    currency: str | None = Form(default=None),
    invoice_no: str | None = Form(default=None),
    payer_name: str | None = Form(default=None),
    note: str | None = Form(default=None),
    session: Session = Depends(db_session),
    user: User = Depends(require_reconciler),
) -> EvidenceOut:
    body = upload.file.read()
    log_event(
        logger,
        "upload.received",
        filename=upload.filename or "slip",
        content_type=upload.content_type,
        byte_size=len(body),
    )
    evidence = ingest_manual_upload(
        session,
        actor_id=user.id,
        filename=upload.filename or "slip",
        media_type=upload.content_type,
        body=body,
        declared_amount=amount,
        currency=currency,
        invoice_no=invoice_no,
        payer_name=payer_name,
        note=note,
    )
    return EvidenceOut.from_evidence(evidence)


@router.get("/evidence/{evidence_id}", response_model=EvidenceOut)
def get_evidence_endpoint(
    evidence_id: uuid.UUID,
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> EvidenceOut:
    return EvidenceOut.from_evidence(get_evidence(session, evidence_id=evidence_id))


@router.get("/evidence/{evidence_id}/file")
def get_evidence_file(
    evidence_id: uuid.UUID,
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> Response:
    evidence = get_evidence(session, evidence_id=evidence_id)
    body, media_type = load_evidence_file(session, evidence=evidence)
    filename = (evidence.attachment_name or "slip").replace('"', "")
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@router.get("/evidence/{evidence_id}/matches", response_model=list[PaymentMatchOut])
def list_matches_endpoint(
    evidence_id: uuid.UUID,
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> list[PaymentMatchOut]:
    get_evidence(session, evidence_id=evidence_id)
    return [
        PaymentMatchOut.model_validate(m, from_attributes=True)
        for m in list_matches(session, evidence_id=evidence_id)
    ]


@router.get("/evidence/{evidence_id}/events", response_model=list[AuditEventOut])
def list_events_endpoint(
    evidence_id: uuid.UUID,
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> list[AuditEventOut]:
    get_evidence(session, evidence_id=evidence_id)
    return [
        AuditEventOut.model_validate(e, from_attributes=True)
        for e in list_events(session, evidence_id=evidence_id)
    ]


@router.post("/evidence/{evidence_id}/verify", response_model=EvidenceOut)
def verify_endpoint(
    evidence_id: uuid.UUID,
    payload: VerifyRequest | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(require_reconciler),
) -> EvidenceOut:
    evidence = verify_evidence(
        session,
        evidence_id=evidence_id,
        actor_id=user.id,
        note=payload.note if payload else None,
    )
    return EvidenceOut.from_evidence(evidence)


@router.post("/evidence/{evidence_id}/reject", response_model=EvidenceOut)
def reject_endpoint(
    evidence_id: uuid.UUID,
    payload: RejectRequest,
    session: Session = Depends(db_session),
    user: User = Depends(require_reconciler),
) -> EvidenceOut:
    evidence = reject(
        session,
        evidence_id=evidence_id,
        actor_id=user.id,
        reason=payload.reason,
        note=payload.note,
    )
    return EvidenceOut.from_evidence(evidence)


@router.post("/evidence/{evidence_id}/match", response_model=EvidenceOut)
def match_endpoint(
    evidence_id: uuid.UUID,
    payload: MatchRequest,
    session: Session = Depends(db_session),
    user: User = Depends(require_reconciler),
) -> EvidenceOut:
    evidence = confirm_match(
        session,
        evidence_id=evidence_id,
        invoice_id=payload.invoice_id,
        actor_id=user.id,
        amount=payload.amount,
    )
    return EvidenceOut.from_evidence(evidence)


@router.post("/evidence/{evidence_id}/unmatch", response_model=EvidenceOut)
def unmatch_endpoint(
    evidence_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(require_reconciler),
) -> EvidenceOut:
    return EvidenceOut.from_evidence(unmatch(session, evidence_id=evidence_id, actor_id=user.id))


@router.get("/evidence/{evidence_id}/suggestions", response_model=list[MatchSuggestionOut])
def suggestions_endpoint(
    evidence_id: uuid.UUID,
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> list[MatchSuggestionOut]:
    return [
        MatchSuggestionOut(
            invoice=InvoiceOut.model_validate(s.invoice, from_attributes=True),
            delta=s.delta,
            confidence=s.confidence,
            reason=s.reason,
        )
        for s in suggest_matches(session, evidence_id=evidence_id)
    ]


@router.post("/evidence/{evidence_id}/reextract", response_model=EvidenceOut)
def reextract_endpoint(
    evidence_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(require_reconciler),
) -> EvidenceOut:
    return EvidenceOut.from_evidence(
        reextract_amount(session, evidence_id=evidence_id, actor_id=user.id)
    )


@router.post("/mailboxes/{account_id}/ingest", response_model=list[EvidenceOut])
def ingest_endpoint(
    account_id: uuid.UUID,
    kind: IngestKind = IngestKind.ALL,
    session: Session = Depends(db_session),
    user: User = Depends(require_reconciler),
) -> list[EvidenceOut]:
    rows = ingest_mailbox(session, account_id=account_id, actor_id=user.id, kind=kind)
    return [EvidenceOut.from_evidence(e) for e in rows]


@router.post("/mailboxes/{account_id}/ingest/async", status_code=202)
def enqueue_ingest_endpoint(
    account_id: uuid.UUID,
    kind: IngestKind = IngestKind.ALL,
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> dict[str, str]:
    from payment_recon.worker.tasks import ingest_mailbox_task

    account = get_account(session, account_id=account_id)
    async_result = ingest_mailbox_task.delay(str(account.id), kind.value)
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="ingest_mailbox",
        celery_task_id=async_result.id,
        account_id=str(account.id),
    )
    return {"task_id": str(async_result.id)}
