from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select

from payment_recon.core.config import Settings
from payment_recon.core.db import SessionLocal
from payment_recon.modules.evidence.models import (
    MANUALLY_UNMATCHED_FLAG,
    EvidenceSource,
    EvidenceStatus,
    PaymentEvidence,
    PaymentMatch,
)
from payment_recon.modules.identity.models import UserRole
from payment_recon.modules.identity.service import create_user
from payment_recon.modules.ingestion.service import (
    EvidenceNormalizer,
    IngestionConfig,
    invoice_token,
)
from payment_recon.modules.invoices.models import InvoiceStatus
from payment_recon.modules.invoices.service import create_invoice
from payment_recon.modules.ledger.service import reject
from payment_recon.modules.matching.service import unmatch
from payment_recon.modules.mailboxes.google_oauth import GMAIL_READONLY_SCOPE
from payment_recon.modules.mailboxes.models import MailboxAccount

PDF_SLIP = ("slip.pdf", "application/pdf", "att-pdf", 60_000)


def _setup(session):
    actor = create_user(session, email="finance@example.com", password="pw", role=UserRole.FINANCE)
    account = MailboxAccount(
        user_id=actor.id,
        email="ar@example.com",
        access_token="token",
        scope=GMAIL_READONLY_SCOPE,
    )
    session.add(account)
    session.commit()
    invoice = create_invoice(
        session, invoice_no="INV-2026-001", total=Decimal("1000.00"), status_=InvoiceStatus.SENT
    )
    return actor, account, invoice


def _config(**overrides) -> IngestionConfig:
    return IngestionConfig.from_settings(Settings(**overrides))


def _sent_thread(make_message, thread_id: str, invoice_no: str = "INV-2026-001"):
    return [
        make_message(
            f"{thread_id}-sent",
            subject=f"Invoice {invoice_no}",
            thread_id=thread_id,
            label_ids=("SENT",),
        )
    ]


def _count(session) -> int:
    return session.scalar(select(func.count()).select_from(PaymentEvidence))


def test_invoice_token_is_normalized():
    assert invoice_token("Re: inv_2026 001 payment") == "INV-2026-001"
    assert invoice_token("Payment for INV2026001") == "INV2026001"
    assert invoice_token("hello") is None


def test_reply_with_slip_links_known_invoice(fake_mail, make_message, text_slip_extractor):
    fake_mail.add(
        make_message(
            "m1",
            subject="Re: Invoice INV-2026-001",
            snippet="Amount: 5.00 paid, see slip",
            thread_id="t1",
            attachments=(PDF_SLIP,),
        ),
        attachments={"att-pdf": b"Bank slip\nAmount: USD 1,000.00"},
        thread=_sent_thread(make_message, "t1"),
    )

    with SessionLocal() as session:
        actor, account, invoice = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        rows = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)

        assert len(rows) == 1
        evidence = rows[0]
        assert evidence.source_kind == EvidenceSource.EMAIL_REPLY
        assert evidence.status == EvidenceStatus.SUBMITTED
        assert evidence.amount == Decimal("1000.00")
        assert evidence.invoice_id == invoice.id
        assert evidence.invoice_reference == "INV-2026-001"
        assert evidence.confidence == 0.9
        assert evidence.attachment_name == "slip.pdf"
        assert evidence.payer_email == "client@example.com"
        assert evidence.matched_at is None
        assert fake_mail.queries == [_config().payment_reply_query]


def test_unreadable_slip_is_kept_without_amount(fake_mail, make_message, text_slip_extractor):
    fake_mail.add(
        make_message(
            "m1",
            subject="Re: Invoice INV-2026-001",
            snippet="Amount: 1000 transferred",
            thread_id="t1",
            attachments=(PDF_SLIP,),
        ),
        attachments={"att-pdf": b"scanned image with no text layer"},
        thread=_sent_thread(make_message, "t1"),
    )

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        [evidence] = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)

        assert evidence.status == EvidenceStatus.SUBMITTED
        assert evidence.amount is None
        assert evidence.confidence == 0.6
        assert "needs_manual_amount" in evidence.flags_json


def test_reingestion_upserts_and_never_resets_status(
    fake_mail, make_message, text_slip_extractor
):
    fake_mail.add(
        make_message(
            "m1",
            subject="Re: Invoice INV-2026-001",
            thread_id="t1",
            attachments=(PDF_SLIP,),
        ),
        attachments={"att-pdf": b"Amount: 400.00"},
        thread=_sent_thread(make_message, "t1"),
    )

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        [first] = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)
        reject(session, evidence_id=first.id, actor_id=actor.id, reason="duplicate transfer")

        fake_mail.attachments[("m1", "att-pdf")] = b"Amount: 999.00"
        [second] = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)

        assert second.id == first.id
        assert second.status == EvidenceStatus.REJECTED
        assert second.amount == Decimal("400.00")
        assert _count(session) == 1


def test_bounces_tiny_images_and_non_slips_are_skipped(
    fake_mail, make_message, text_slip_extractor
):
    fake_mail.add(
        make_message(
            "bounce",
            subject="Delivery Status Notification (Failure) INV-2026-001",
            sender="Mail Delivery Subsystem <mailer-daemon@googlemail.com>",
            attachments=(PDF_SLIP,),
        ),
        attachments={"att-pdf": b"Amount: 1.00"},
    )
    fake_mail.add(
        make_message(
            "tiny",
            subject="Re: INV-2026-001",
            attachments=(
                ("logo.png", "image/png", "att-logo", 4_000),
                ("invite.ics", "text/calendar", "att-ics", 90_000),
            ),
        ),
        attachments={"att-logo": b"Amount: 2.00", "att-ics": b"Amount: 3.00"},
    )
    fake_mail.add(
        make_message(
            "chatter",
            subject="Lunch next week?",
            attachments=(("menu.pdf", "application/pdf", "att-menu", 80_000),),
        ),
        attachments={"att-menu": b"Amount: 45.00"},
    )

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(require_sent_thread=False),
            mail_client=fake_mail,
            extract=text_slip_extractor,
        )
        rows = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)

        assert rows == []
        assert fake_mail.attachment_fetches == []


def test_payment_keyword_keeps_reply_without_invoice_number(
    fake_mail, make_message, text_slip_extractor
):
    fake_mail.add(
        make_message(
            "m1",
            subject="Bank transfer receipt",
            attachments=(("receipt.jpg", "image/jpeg", "att-img", 150_000),),
        ),
        attachments={"att-img": b"Amount: LKR 25,000.00"},
    )

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        [evidence] = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)

        assert evidence.invoice_id is None
        assert evidence.invoice_reference is None
        assert evidence.currency == "LKR"
        assert evidence.confidence == 0.6


def test_reply_outside_a_sent_invoice_thread_is_skipped(
    fake_mail, make_message, text_slip_extractor
):
    fake_mail.add(
        make_message(
            "not-ours",
            subject="Re: INV-2026-001",
            thread_id="t-foreign",
            attachments=(PDF_SLIP,),
        ),
        attachments={"att-pdf": b"Amount: 10.00"},
        thread=[make_message("foreign-1", subject="Re: INV-2026-001", thread_id="t-foreign")],
    )
    fake_mail.add(
        make_message(
            "thread-down",
            subject="Re: INV-2026-001",
            thread_id="t-missing",
            attachments=(PDF_SLIP,),
        ),
        attachments={"att-pdf": b"Amount: 10.00"},
    )

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        assert normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id) == []


def test_failed_message_is_omitted_from_batch(fake_mail, make_message, text_slip_extractor):
    for message_id in ("m1", "m2", "m3"):
        fake_mail.add(
            make_message(
                message_id,
                subject="Payment slip for INV-2026-001",
                attachments=((f"{message_id}.pdf", "application/pdf", f"att-{message_id}", 0),),
            ),
            attachments={f"att-{message_id}": b"Amount: 100.00"},
        )
    fake_mail.failing_messages.add("m2")
    fake_mail.failing_attachments.add("att-m3")

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(require_sent_thread=False, ingestion_max_workers=2),
            mail_client=fake_mail,
            extract=text_slip_extractor,
        )
        rows = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)

        assert [e.source_message_id for e in rows] == ["m1"]


def test_bank_notification_amount_from_snippet(fake_mail, make_message, text_slip_extractor):
    fake_mail.add(
        make_message(
            "b1",
            subject="Credit alert",
            sender="Example Bank <alerts@bank.example>",
            snippet="Your account has been credited with LKR 45,000.00 from ACME LTD",
        )
    )
    fake_mail.add(
        make_message("b2", subject="Payment received", snippet="Funds are on the way")
    )

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        rows = normalizer.ingest_bank_notifications(session, account=account, actor_id=actor.id)

        assert len(rows) == 1
        evidence = rows[0]
        assert evidence.source_kind == EvidenceSource.BANK_NOTIFICATION
        assert evidence.attachment_name == ""
        assert evidence.status == EvidenceStatus.UNMATCHED
        assert evidence.amount == Decimal("45000.00")
        assert evidence.currency == "LKR"
        assert evidence.confidence == 0.5
        assert evidence.payer_name == "Example Bank"


def test_bank_slip_is_authoritative_over_snippet(fake_mail, make_message, text_slip_extractor):
    fake_mail.add(
        make_message(
            "b1",
            subject="Deposit advice",
            snippet="Deposit of USD 9,999.00 received",
            attachments=(("advice.pdf", "application/pdf", "att-advice", 0),),
        ),
        attachments={"att-advice": b"no amount printed here"},
    )

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        [evidence] = normalizer.ingest_bank_notifications(
            session, account=account, actor_id=actor.id
        )

        assert evidence.amount is None
        assert evidence.attachment_id == "att-advice"
        assert "needs_manual_amount" in evidence.flags_json


def test_bank_notification_with_invoice_reference_is_auto_matched(
    fake_mail, make_message, text_slip_extractor
):
    fake_mail.add(
        make_message(
            "b1",
            subject="Payment received INV-2026-001",
            snippet="Amount: USD 1,000.00 ref INV-2026-001",
        )
    )

    with SessionLocal() as session:
        actor, account, invoice = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        [evidence] = normalizer.ingest_bank_notifications(
            session, account=account, actor_id=actor.id
        )

        assert evidence.status == EvidenceStatus.MATCHED
        assert evidence.invoice_id == invoice.id
        assert evidence.matched_amount == Decimal("1000.00")
        assert evidence.confidence == 0.95

        # Running again neither duplicates the row nor re-matches it.
        again = normalizer.ingest_bank_notifications(session, account=account, actor_id=actor.id)
        assert [e.id for e in again] == [evidence.id]
        assert _count(session) == 1


def test_reingestion_does_not_rematch_unmatched_bank_notification(
    fake_mail, make_message, text_slip_extractor
):
    fake_mail.add(
        make_message(
            "b1",
            subject="Payment received INV-2026-001",
            snippet="Amount: USD 1,000.00 ref INV-2026-001",
        )
    )

    with SessionLocal() as session:
        actor, account, invoice = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        [evidence] = normalizer.ingest_bank_notifications(
            session, account=account, actor_id=actor.id
        )
        assert evidence.status == EvidenceStatus.MATCHED

        unmatch(session, evidence_id=evidence.id, actor_id=actor.id)
        [again] = normalizer.ingest_bank_notifications(session, account=account, actor_id=actor.id)

        assert again.id == evidence.id
        assert again.status == EvidenceStatus.UNMATCHED
        assert again.invoice_id is None
        assert again.matched_at is None
        assert MANUALLY_UNMATCHED_FLAG in again.flags_json
        match_count = session.scalar(
            select(func.count()).select_from(PaymentMatch).where(
                PaymentMatch.evidence_id == evidence.id
            )
        )
        assert match_count == 1


def test_reingestion_does_not_relink_unmatched_reply(
    fake_mail, make_message, text_slip_extractor
):
    fake_mail.add(
        make_message(
            "m1",
            subject="Re: Invoice INV-2026-001",
            thread_id="t1",
            attachments=(PDF_SLIP,),
        ),
        attachments={"att-pdf": b"Amount: USD 400.00"},
        thread=_sent_thread(make_message, "t1"),
    )

    with SessionLocal() as session:
        actor, account, invoice = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        [evidence] = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)
        assert evidence.invoice_id == invoice.id

        unmatched = unmatch(session, evidence_id=evidence.id, actor_id=actor.id)
        assert unmatched.invoice_id is None

        [again] = normalizer.ingest_payment_replies(session, account=account, actor_id=actor.id)

        assert again.id == evidence.id
        assert again.status == EvidenceStatus.SUBMITTED
        assert again.invoice_id is None
        assert again.invoice_reference == "INV-2026-001"


def test_payer_falls_back_to_reply_to_without_sender(
    fake_mail, make_message, text_slip_extractor
):
    fake_mail.add(
        make_message(
            "b1",
            subject="Credit alert",
            sender="",
            reply_to="Treasury <Treasury@Client.example>",
            snippet="Amount: USD 250.00 received",
        )
    )

    with SessionLocal() as session:
        actor, account, _ = _setup(session)
        normalizer = EvidenceNormalizer(
            config=_config(), mail_client=fake_mail, extract=text_slip_extractor
        )
        [evidence] = normalizer.ingest_bank_notifications(
            session, account=account, actor_id=actor.id
        )

        assert evidence.payer_name == "Treasury"
        assert evidence.payer_email == "treasury@client.example"
