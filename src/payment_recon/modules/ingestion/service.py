from __future__ import annotations

import hashlib
import re
import time
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from email.utils import parseaddr

from sqlalchemy.orm import Session

from payment_recon.core.config import Settings, settings
from payment_recon.core.currencies import normalize_currency
from payment_recon.core.errors import ExtractionFailure, UpstreamUnavailable
from payment_recon.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    propagate_context,
)
from payment_recon.core.models import utcnow
from payment_recon.core.storage import StorageError, get_storage
from payment_recon.modules.audit.service import record_event
from payment_recon.modules.evidence.models import (
    EvidenceSource,
    EvidenceStatus,
    PaymentEvidence,
)
from payment_recon.modules.evidence.service import EvidenceDraft, upsert_evidence
from payment_recon.modules.extraction.amount import find_labeled_amount
from payment_recon.modules.extraction.service import (
    IMAGE,
    PDF,
    ExtractedAmount,
    detect_slip_kind,
    extract_amount_detail,
)
from payment_recon.modules.invoices.service import get_invoice_by_number, invoice_index
from payment_recon.modules.mailboxes.gmail import MailAttachment, MailClient, MailMessage
from payment_recon.modules.mailboxes.models import MailboxAccount
from payment_recon.modules.matching.service import auto_match_explicit_reference

logger = get_logger(__name__)

INVOICE_TOKEN_RE = re.compile(r"INV[-_ ]?\d{4}[-_ ]?\d{3,}", re.I)
_BOUNCE_FROM_RE = re.compile(
    r"(mailer-daemon|postmaster|no-reply|noreply|do-not-reply|bounce)@", re.I
)
_BOUNCE_SUBJECT_RE = re.compile(
    r"(delivery status notification|undelivered mail|mail delivery failed|returned mail)", re.I
)
_PAYMENT_KEYWORD_RE = re.compile(
    r"(slip|receipt|payment|transfer|deposit|bank-in|bank in|remittance)", re.I
)

REPLY_CONFIDENCE_KNOWN_INVOICE = 0.9
REPLY_CONFIDENCE_UNKNOWN_INVOICE = 0.6
MISSING_AMOUNT_PENALTY = 0.3
BANK_NOTIFICATION_CONFIDENCE = 0.5
MANUAL_UPLOAD_CONFIDENCE = 0.6

AmountExtractor = Callable[[bytes, str | None], ExtractedAmount]


@dataclass(frozen=True)
class IngestionConfig:
    bank_notification_query: str
    payment_reply_query: str
    max_results: int
    max_workers: int
    min_image_attachment_bytes: int
    min_pdf_attachment_bytes: int
    require_sent_thread: bool
    default_currency: str

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> IngestionConfig:
        source = source or settings
        return cls(
            bank_notification_query=source.bank_notification_query,
            payment_reply_query=source.payment_reply_query,
            max_results=source.ingestion_max_results,
            max_workers=max(1, source.ingestion_max_workers),
            min_image_attachment_bytes=source.min_image_attachment_bytes,
            min_pdf_attachment_bytes=source.min_pdf_attachment_bytes,
            require_sent_thread=source.require_sent_thread,
            default_currency=source.default_currency,
        )


def invoice_token(text: str) -> str | None:
    """Normalized invoice number (``INV-2025-001``) mentioned in ``text``, if any."""
    m = INVOICE_TOKEN_RE.search(text or "")
    if not m:
        return None
    return re.sub(r"[_ ]", "-", m.group(0)).upper()


def is_bounce(message: MailMessage) -> bool:
    return bool(
        _BOUNCE_FROM_RE.search(message.sender) or _BOUNCE_SUBJECT_RE.search(message.subject)
    )


def _sender(message: MailMessage) -> tuple[str | None, str | None]:
    name, address = parseaddr(message.sender or message.reply_to)
    return (name or address or None), (address.lower() or None)


class EvidenceNormalizer:
    """Turns mailbox messages into evidence rows.

    Remote work (message, thread and attachment fetches, slip extraction) fans out per
    message over a bounded thread pool; database writes happen afterwards, in message
    order, on the caller's session.
    """

    def __init__(
        self,
        *,
        config: IngestionConfig,
        mail_client: MailClient,
        extract: AmountExtractor = extract_amount_detail,
    ) -> None:
        self._config = config
        self._mail = mail_client
        self._extract = extract

    def ingest_payment_replies(
        self, session: Session, *, account: MailboxAccount, actor_id: uuid.UUID
    ) -> list[PaymentEvidence]:
        invoices = invoice_index(session)
        drafts = self._normalize_all(
            kind="replies",
            query=self._config.payment_reply_query,
            normalize=lambda message: self._reply_drafts(message, account, invoices),
        )
        return [self._persist(session, draft, actor_id=actor_id) for draft in drafts]

    def ingest_bank_notifications(
        self, session: Session, *, account: MailboxAccount, actor_id: uuid.UUID
    ) -> list[PaymentEvidence]:
        drafts = self._normalize_all(
            kind="bank",
            query=self._config.bank_notification_query,
            normalize=lambda message: self._bank_drafts(message, account),
        )
        persisted: list[PaymentEvidence] = []
        for draft in drafts:
            evidence = self._persist(session, draft, actor_id=actor_id)
            persisted.append(
                auto_match_explicit_reference(session, evidence=evidence, actor_id=actor_id)
            )
        return persisted

    def _persist(
        self, session: Session, draft: EvidenceDraft, *, actor_id: uuid.UUID
    ) -> PaymentEvidence:
        evidence, created = upsert_evidence(session, draft=draft)
        if created:
            record_event(
                session,
                event_type="evidence.ingested",
                actor_user_id=actor_id,
                evidence_id=evidence.id,
                invoice_id=evidence.invoice_id,
                source_kind=evidence.source_kind,
                amount=evidence.amount,
            )
            session.commit()
        return evidence

    def _normalize_all(
        self,
        *,
        kind: str,
        query: str,
        normalize: Callable[[MailMessage], list[EvidenceDraft]],
    ) -> list[EvidenceDraft]:
        start = time.monotonic()
        message_ids = self._mail.list_message_ids(query=query, max_results=self._config.max_results)

        def _one(message_id: str) -> list[EvidenceDraft]:
            try:
                return normalize(self._mail.get_message(message_id))
            except (UpstreamUnavailable, ExtractionFailure, ValueError, KeyError):
                log_exception(logger, "ingestion.message.failure", kind=kind, message_id=message_id)
                return []

        with ThreadPoolExecutor(max_workers=self._config.max_workers) as pool:
            per_message = list(pool.map(propagate_context(_one), message_ids))

        drafts = [draft for batch in per_message for draft in batch]
        log_event(
            logger,
            "ingestion.batch.normalized",
            kind=kind,
            message_count=len(message_ids),
            draft_count=len(drafts),
            duration_ms=monotonic_ms(start),
        )
        return drafts

    def _slip_attachments(self, message: MailMessage) -> Iterable[MailAttachment]:
        for att in message.attachments:
            kind = detect_slip_kind(body=b"", media_type=att.media_type)
            if kind is None:
                continue
            # Signature images and tiny PDFs are never payment slips.
            if kind == IMAGE and 0 < att.size < self._config.min_image_attachment_bytes:
                continue
            if kind == PDF and 0 < att.size < self._config.min_pdf_attachment_bytes:
                continue
            yield att

    def _replies_to_sent_invoice(self, message: MailMessage, token: str) -> bool:
        if not message.thread_id:
            return True
        thread = self._mail.get_thread(message.thread_id)
        has_sent = any("SENT" in m.label_ids for m in thread)
        mentions_invoice = any(token in m.subject for m in thread)
        return has_sent and mentions_invoice

    def _reply_drafts(
        self, message: MailMessage, account: MailboxAccount, invoices: dict[str, uuid.UUID]
    ) -> list[EvidenceDraft]:
        if is_bounce(message):
            log_event(logger, "ingestion.reply.skipped", message_id=message.id, reason="bounce")
            return []

        token = invoice_token(f"{message.subject} {message.snippet}")
        if token and self._config.require_sent_thread:
            try:
                if not self._replies_to_sent_invoice(message, token):
                    log_event(
                        logger,
                        "ingestion.reply.skipped",
                        message_id=message.id,
                        reason="not_reply_to_sent_invoice",
                    )
                    return []
            except UpstreamUnavailable:
                log_event(
                    logger,
                    "ingestion.reply.skipped",
                    message_id=message.id,
                    reason="thread_unavailable",
                )
                return []

        invoice_id = invoices.get(token) if token else None
        payer_name, payer_email = _sender(message)
        drafts: list[EvidenceDraft] = []
        for att in self._slip_attachments(message):
            relevant = _PAYMENT_KEYWORD_RE.search(
                f"{att.filename} {message.subject} {message.snippet}"
            )
            if not token and not relevant:
                continue

            body = self._mail.get_attachment(message_id=message.id, attachment_id=att.attachment_id)
            # The slip is authoritative; the email body is never read for an amount.
            extracted = self._extract(body, att.media_type)

            confidence = (
                REPLY_CONFIDENCE_KNOWN_INVOICE if invoice_id else REPLY_CONFIDENCE_UNKNOWN_INVOICE
            )
            flags: list[str] = []
            if extracted.amount is None:
                confidence -= MISSING_AMOUNT_PENALTY
                flags.append("needs_manual_amount")
            if token and not invoice_id:
                flags.append("unknown_invoice_reference")

            drafts.append(
                EvidenceDraft(
                    source_kind=EvidenceSource.EMAIL_REPLY,
                    source_message_id=message.id,
                    attachment_name=att.filename,
                    attachment_id=att.attachment_id,
                    thread_id=message.thread_id,
                    source_mailbox=account.email,
                    mailbox_account_id=account.id,
                    media_type=att.media_type,
                    file_size=len(body) or att.size or None,
                    amount=extracted.amount,
                    currency=extracted.currency or self._config.default_currency,
                    payer_name=payer_name,
                    payer_email=payer_email,
                    subject=message.subject or None,
                    memo=message.snippet or None,
                    invoice_reference=token,
                    invoice_id=invoice_id,
                    received_at=message.received_at,
                    confidence=round(confidence, 2),
                    status=EvidenceStatus.SUBMITTED,
                    flags=flags,
                )
            )
        return drafts

    def _bank_drafts(self, message: MailMessage, account: MailboxAccount) -> list[EvidenceDraft]:
        if is_bounce(message):
            log_event(logger, "ingestion.bank.skipped", message_id=message.id, reason="bounce")
            return []

        slips = list(self._slip_attachments(message))
        slip: MailAttachment | None = None
        slip_size: int | None = None
        amount: Decimal | None = None
        currency: str | None = None
        flags: list[str] = []

        for att in slips:
            body = self._mail.get_attachment(message_id=message.id, attachment_id=att.attachment_id)
            extracted = self._extract(body, att.media_type)
            if slip is None or extracted.amount is not None:
                slip, slip_size = att, len(body) or att.size or None
            if extracted.amount is not None:
                amount, currency = extracted.amount, extracted.currency
                break

        if slips:
            if amount is None:
                flags.append("needs_manual_amount")
        else:
            found = find_labeled_amount(message.snippet)
            if found is not None:
                amount, currency = found.amount, found.currency

        if slip is None and amount is None:
            log_event(logger, "ingestion.bank.skipped", message_id=message.id, reason="no_amount")
            return []

        payer_name, payer_email = _sender(message)
        return [
            EvidenceDraft(
                source_kind=EvidenceSource.BANK_NOTIFICATION,
                source_message_id=message.id,
                attachment_name="",
                attachment_id=slip.attachment_id if slip else None,
                thread_id=message.thread_id,
                source_mailbox=account.email,
                mailbox_account_id=account.id,
                media_type=slip.media_type if slip else None,
                file_size=slip_size,
                amount=amount,
                currency=currency or self._config.default_currency,
                payer_name=payer_name,
                payer_email=payer_email,
                subject=message.subject or None,
                memo=message.snippet or None,
                invoice_reference=invoice_token(f"{message.subject} {message.snippet}"),
                received_at=message.received_at,
                confidence=BANK_NOTIFICATION_CONFIDENCE,
                status=EvidenceStatus.UNMATCHED,
                flags=flags,
            )
        ]


def _safe_filename(filename: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9._ -]+", "", filename or "").strip()
    safe = re.sub(r"\s+", "_", safe)
    return safe[:120] or "slip"


def ingest_manual_upload(
    session: Session,
    *,
    actor_id: uuid.UUID,
    filename: str,
    media_type: str | None,
    body: bytes,
    declared_amount: Decimal | None = None,
    currency: str | None = None,
    invoice_no: str | None = None,
    payer_name: str | None = None,
    note: str | None = None,
    extract: AmountExtractor = extract_amount_detail,
) -> PaymentEvidence:
    """Record a slip uploaded by a reconciler. The slip's own amount wins over a declared one."""
    if not body:
        raise ExtractionFailure("Uploaded slip is empty")
    if detect_slip_kind(body=body, media_type=media_type) is None:
        raise ExtractionFailure("Only PDF or image slips are accepted", media_type=media_type)

    sha256 = hashlib.sha256(body).hexdigest()
    safe_name = _safe_filename(filename)
    source_message_id = f"manual:{sha256}"
    try:
        stored = get_storage().put(
            key=f"evidence/manual/{sha256}/{safe_name}", body=body, content_type=media_type
        )
    except StorageError as e:
        raise UpstreamUnavailable("Could not store uploaded slip") from e

    extracted = extract(body, media_type)
    flags: list[str] = []
    amount = extracted.amount
    if amount is None and declared_amount is not None:
        amount = declared_amount
        flags.append("declared_amount")
    if amount is None:
        flags.append("needs_manual_amount")

    reference = (invoice_token(invoice_no) or invoice_no.strip().upper()) if invoice_no else None
    invoice = get_invoice_by_number(session, invoice_no=reference) if reference else None

    confidence = MANUAL_UPLOAD_CONFIDENCE if extracted.amount is not None else 0.4
    draft = EvidenceDraft(
        source_kind=EvidenceSource.MANUAL_UPLOAD,
        source_message_id=source_message_id,
        attachment_name=safe_name,
        media_type=media_type,
        file_size=stored.byte_size,
        storage_key=stored.key,
        amount=amount,
        currency=normalize_currency(currency) or extracted.currency or settings.default_currency,
        payer_name=payer_name,
        memo=note,
        invoice_reference=reference or None,
        invoice_id=invoice.id if invoice else None,
        received_at=utcnow(),
        confidence=confidence,
        status=EvidenceStatus.SUBMITTED,
        flags=flags,
    )
    evidence, created = upsert_evidence(session, draft=draft)
    if created:
        record_event(
            session,
            event_type="evidence.uploaded",
            actor_user_id=actor_id,
            evidence_id=evidence.id,
            invoice_id=evidence.invoice_id,
            amount=evidence.amount,
            amount_source="slip" if extracted.amount is not None else "declared",
        )
        session.commit()
    log_event(
        logger,
        "ingestion.manual_upload.success",
        evidence_id=str(evidence.id),
        created=created,
        has_amount=evidence.amount is not None,
    )
    return evidence
