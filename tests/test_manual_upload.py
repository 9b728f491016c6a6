from __future__ import annotations

from decimal import Decimal

import pytest

from payment_recon.core.db import SessionLocal
from payment_recon.core.errors import ExtractionFailure, UpstreamUnavailable
from payment_recon.core.storage import StorageError, get_storage
from payment_recon.modules.audit.service import list_events
from payment_recon.modules.evidence.models import EvidenceSource, EvidenceStatus
from payment_recon.modules.identity.models import UserRole
from payment_recon.modules.identity.service import create_user
from payment_recon.modules.ingestion import service as ingestion
from payment_recon.modules.ingestion.service import ingest_manual_upload
from payment_recon.modules.invoices.models import InvoiceStatus
from payment_recon.modules.invoices.service import create_invoice


def _actor(session):
    return create_user(session, email="finance@example.com", password="pw", role=UserRole.FINANCE)


def test_slip_amount_wins_over_declared_amount(text_slip_extractor):
    with SessionLocal() as session:
        actor = _actor(session)
        invoice = create_invoice(
            session, invoice_no="INV-2026-001", total=Decimal("250.00"), status_=InvoiceStatus.SENT
        )
        evidence = ingest_manual_upload(
            session,
            actor_id=actor.id,
            filename="transfer slip (1).pdf",
            media_type="application/pdf",
            body=b"%PDF-1.4\nAmount: USD 250.00",
            declared_amount=Decimal("999.00"),
            invoice_no="inv 2026 001",
            extract=text_slip_extractor,
        )

        assert evidence.source_kind == EvidenceSource.MANUAL_UPLOAD
        assert evidence.status == EvidenceStatus.SUBMITTED
        assert evidence.amount == Decimal("250.00")
        assert evidence.invoice_reference == "INV-2026-001"
        assert evidence.invoice_id == invoice.id
        assert evidence.attachment_name == "transfer_slip_1.pdf"
        assert evidence.source_message_id.startswith("manual:")
        assert evidence.confidence == 0.6
        assert evidence.flags_json == []
        assert get_storage().get(key=evidence.storage_key) == b"%PDF-1.4\nAmount: USD 250.00"
        assert [e.event_type for e in list_events(session, evidence_id=evidence.id)] == [
            "evidence.uploaded"
        ]


def test_declared_amount_used_when_slip_is_unreadable(text_slip_extractor):
    with SessionLocal() as session:
        actor = _actor(session)
        evidence = ingest_manual_upload(
            session,
            actor_id=actor.id,
            filename="photo.jpg",
            media_type="image/jpeg",
            body=b"\xff\xd8\xff blurry photo",
            declared_amount=Decimal("80.00"),
            currency="lkr",
            extract=text_slip_extractor,
        )

        assert evidence.amount == Decimal("80.00")
        assert evidence.currency == "LKR"
        assert evidence.confidence == 0.4
        assert evidence.flags_json == ["declared_amount"]
        assert evidence.invoice_id is None


def test_upload_without_any_amount_needs_manual_amount(text_slip_extractor):
    with SessionLocal() as session:
        actor = _actor(session)
        evidence = ingest_manual_upload(
            session,
            actor_id=actor.id,
            filename="scan.pdf",
            media_type="application/pdf",
            body=b"%PDF-1.4 scanned",
            extract=text_slip_extractor,
        )

        assert evidence.amount is None
        assert evidence.flags_json == ["needs_manual_amount"]


def test_same_bytes_uploaded_twice_is_one_evidence(text_slip_extractor):
    with SessionLocal() as session:
        actor = _actor(session)
        kwargs = dict(
            actor_id=actor.id,
            filename="slip.pdf",
            media_type="application/pdf",
            body=b"%PDF-1.4\nAmount: 10.00",
            extract=text_slip_extractor,
        )
        first = ingest_manual_upload(session, **kwargs)
        second = ingest_manual_upload(session, **kwargs)

        assert first.id == second.id
        assert len(list_events(session, evidence_id=first.id)) == 1


def test_octet_stream_pdf_is_sniffed(text_slip_extractor):
    with SessionLocal() as session:
        actor = _actor(session)
        evidence = ingest_manual_upload(
            session,
            actor_id=actor.id,
            filename="download",
            media_type="application/octet-stream",
            body=b"%PDF-1.7\nAmount: 12.50",
            extract=text_slip_extractor,
        )
        assert evidence.amount == Decimal("12.50")


@pytest.mark.parametrize(
    ("media_type", "body"),
    [
        ("application/pdf", b""),
        ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", b"PK\x03\x04"),
        ("application/octet-stream", b"\x00\x01\x02not-a-slip"),
    ],
)
def test_unsupported_or_empty_upload_is_rejected(media_type, body, text_slip_extractor):
    with SessionLocal() as session:
        actor = _actor(session)
        with pytest.raises(ExtractionFailure) as excinfo:
            ingest_manual_upload(
                session,
                actor_id=actor.id,
                filename="slip",
                media_type=media_type,
                body=body,
                extract=text_slip_extractor,
            )
        assert excinfo.value.status_code == 422
        assert excinfo.value.detail["code"] == "extraction_failure"


def test_storage_failure_surfaces_as_retryable(monkeypatch, text_slip_extractor):
    class _BrokenStorage:
        def put(self, *, key, body, content_type=None):
            raise StorageError("disk full")

    monkeypatch.setattr(ingestion, "get_storage", lambda: _BrokenStorage())

    with SessionLocal() as session:
        actor = _actor(session)
        with pytest.raises(UpstreamUnavailable) as excinfo:
            ingest_manual_upload(
                session,
                actor_id=actor.id,
                filename="slip.pdf",
                media_type="application/pdf",
                body=b"%PDF-1.4\nAmount: 10.00",
                extract=text_slip_extractor,
            )
        assert excinfo.value.status_code == 503
        assert excinfo.value.detail["retryable"] is True
