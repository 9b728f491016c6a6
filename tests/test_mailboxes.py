from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy import select

from payment_recon.core.db import SessionLocal
from payment_recon.core.errors import UpstreamUnavailable
from payment_recon.modules.audit.service import list_events
from payment_recon.modules.evidence.models import EvidenceSource, PaymentEvidence
from payment_recon.modules.identity.models import UserRole
from payment_recon.modules.identity.service import create_user
from payment_recon.modules.mailboxes import gmail
from payment_recon.modules.mailboxes import service as mailboxes
from payment_recon.modules.mailboxes.gmail import GmailClient, parse_gmail_message
from payment_recon.modules.mailboxes.google_oauth import GMAIL_READONLY_SCOPE
from payment_recon.modules.mailboxes.models import MailboxAccount

GMAIL_MESSAGE = {
    "id": "18c0ffee",
    "threadId": "t-42",
    "labelIds": ["INBOX", "UNREAD"],
    "snippet": "Please find the slip attached",
    "internalDate": "1767225600000",
    "payload": {
        "mimeType": "multipart/mixed",
        "headers": [
            {"name": "Subject", "value": "Re: Invoice INV-2026-001"},
            {"name": "From", "value": "Client <client@example.com>"},
            {"name": "Reply-To", "value": "accounts@example.com"},
        ],
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/plain", "body": {"size": 20, "data": "aGVsbG8"}},
                    {"mimeType": "text/html", "body": {"size": 40, "data": "PGI-aGk8L2I-"}},
                ],
            },
            {
                "mimeType": "application/pdf",
                "filename": "slip.pdf",
                "body": {"attachmentId": "ANGjdJ8", "size": 48213},
            },
        ],
    },
}


def _account(session, **fields) -> MailboxAccount:
    owner = create_user(session, email="ar-owner@example.com", password="pw", role=UserRole.ADMIN)
    account = MailboxAccount(
        user_id=owner.id,
        email="ar@example.com",
        access_token="old-token",
        scope=f"openid email {GMAIL_READONLY_SCOPE}",
        **fields,
    )
    session.add(account)
    session.commit()
    return account


def test_parse_gmail_message_collects_attachment_parts():
    message = parse_gmail_message(GMAIL_MESSAGE)

    assert message.id == "18c0ffee"
    assert message.thread_id == "t-42"
    assert message.subject == "Re: Invoice INV-2026-001"
    assert message.sender == "Client <client@example.com>"
    assert message.reply_to == "accounts@example.com"
    assert message.label_ids == ("INBOX", "UNREAD")
    assert message.received_at == datetime(2026, 1, 1, tzinfo=UTC)
    assert [(a.filename, a.media_type, a.attachment_id, a.size) for a in message.attachments] == [
        ("slip.pdf", "application/pdf", "ANGjdJ8", 48213)
    ]


def test_gmail_client_decodes_attachment_and_maps_failures(monkeypatch):
    raw = b"%PDF-1.4 slip bytes"
    encoded = base64.urlsafe_b64encode(raw).decode().rstrip("=")

    def fake_get(url, *, headers, params, timeout):
        request = httpx.Request("GET", url)
        if url.endswith("/attachments/att-1"):
            return httpx.Response(200, json={"data": encoded, "size": len(raw)}, request=request)
        return httpx.Response(500, json={"error": "backendError"}, request=request)

    monkeypatch.setattr(gmail.httpx, "get", fake_get)
    client = GmailClient(access_token="token", timeout_seconds=1.0)

    assert client.get_attachment(message_id="m1", attachment_id="att-1") == raw
    with pytest.raises(UpstreamUnavailable):
        client.get_message("m1")


def test_connect_keeps_existing_refresh_token(monkeypatch):
    monkeypatch.setattr(mailboxes, "fetch_account_email", lambda access_token: "AR@Example.com")

    with SessionLocal() as session:
        user = create_user(
            session, email="finance@example.com", password="pw", role=UserRole.FINANCE
        )
        first = mailboxes.connect_google_account(
            session,
            user_id=user.id,
            token_payload={
                "access_token": "a1",
                "refresh_token": "r1",
                "expires_in": 3600,
                "scope": GMAIL_READONLY_SCOPE,
            },
        )
        second = mailboxes.connect_google_account(
            session,
            user_id=user.id,
            token_payload={"access_token": "a2", "expires_in": 3600},
        )

        assert second.id == first.id
        assert second.email == "ar@example.com"
        assert second.access_token == "a2"
        assert second.refresh_token == "r1"
        assert second.scope == GMAIL_READONLY_SCOPE


def test_expired_token_is_refreshed_before_use(monkeypatch):
    calls = []

    def fake_refresh(*, refresh_token):
        calls.append(refresh_token)
        return {"access_token": "new-token", "expires_in": 3600}

    monkeypatch.setattr(mailboxes, "refresh_gmail_token", fake_refresh)

    with SessionLocal() as session:
        account = _account(
            session,
            refresh_token="r1",
            expires_at=datetime.now(UTC) - timedelta(minutes=5),
        )
        client = mailboxes.mail_client_for(session, account=account)

        assert calls == ["r1"]
        assert isinstance(client, GmailClient)
        assert account.access_token == "new-token"


def test_fresh_token_is_not_refreshed(monkeypatch):
    def fail_refresh(**_):
        raise AssertionError("refresh should not be called")

    monkeypatch.setattr(mailboxes, "refresh_gmail_token", fail_refresh)

    with SessionLocal() as session:
        account = _account(
            session, refresh_token="r1", expires_at=datetime.now(UTC) + timedelta(hours=1)
        )
        mailboxes.mail_client_for(session, account=account)
        assert account.access_token == "old-token"


def test_revoked_refresh_token_asks_for_reconnect(monkeypatch):
    def revoked(*, refresh_token):
        raise ValueError("Google token request failed: invalid_grant")

    monkeypatch.setattr(mailboxes, "refresh_gmail_token", revoked)

    with SessionLocal() as session:
        account = _account(session, refresh_token="r1")
        with pytest.raises(HTTPException) as excinfo:
            mailboxes.mail_client_for(session, account=account)
        assert excinfo.value.status_code == 409


def test_missing_readonly_scope_is_a_conflict():
    with SessionLocal() as session:
        account = _account(session)
        account.scope = "openid email"
        session.commit()

        with pytest.raises(HTTPException) as excinfo:
            mailboxes.mail_client_for(session, account=account)
        assert excinfo.value.status_code == 409
        assert "Reconnect" in excinfo.value.detail


def test_ingest_task_runs_for_account_owner(monkeypatch, fake_mail, make_message):
    import payment_recon.modules.extraction.service as extraction
    import payment_recon.modules.reconciliation.service as reconciliation
    from payment_recon.worker.tasks import ingest_mailbox_task

    fake_mail.add(
        make_message(
            "b1",
            subject="Credit alert",
            sender="Example Bank <alerts@bank.example>",
            snippet="Amount: USD 120.00 received",
        )
    )
    monkeypatch.setattr(reconciliation, "mail_client_for", lambda session, account: fake_mail)
    monkeypatch.setattr(extraction, "_pdf_text", lambda body: body.decode("utf-8", "ignore"))

    with SessionLocal() as session:
        account = _account(session)
        account_id = str(account.id)
        owner_id = account.user_id

    result = ingest_mailbox_task.apply(args=[account_id, "bank"])
    evidence_ids = result.get()

    with SessionLocal() as session:
        rows = list(session.scalars(select(PaymentEvidence)))
        assert [str(e.id) for e in rows] == evidence_ids
        assert rows[0].source_kind == EvidenceSource.BANK_NOTIFICATION
        assert rows[0].amount == Decimal("120.00")

        [event] = list_events(session, evidence_id=rows[0].id)
        assert event.actor_user_id == owner_id


def test_poll_fans_out_one_ingest_per_mailbox(monkeypatch):
    import payment_recon.worker.tasks as tasks

    queued = []

    class _FakeIngest:
        def delay(self, account_id):
            queued.append(account_id)

    monkeypatch.setattr(tasks, "ingest_mailbox_task", _FakeIngest())

    with SessionLocal() as session:
        account_id = str(_account(session).id)

    assert tasks.poll_mailboxes_task.apply().get() == [account_id]
    assert queued == [account_id]
