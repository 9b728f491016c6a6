from __future__ import annotations

import os
import shutil
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Set env before any payment_recon imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.payment_recon_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import payment_recon.core.storage as storage_mod
    import payment_recon.models  # noqa: F401
    from payment_recon.core.db import engine
    from payment_recon.core.models import Base

    storage_mod._storage = None
    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


class FakeMailClient:
    """In-memory mailbox; messages are listed in insertion order."""

    def __init__(self) -> None:
        self.messages: dict = {}
        self.threads: dict = {}
        self.attachments: dict = {}
        self.failing_messages: set[str] = set()
        self.failing_attachments: set[str] = set()
        self.failing_queries: set[str] = set()
        self.queries: list[str] = []
        self.attachment_fetches: list[tuple[str, str]] = []

    def add(self, message, *, attachments: dict[str, bytes] | None = None, thread=None) -> None:
        self.messages[message.id] = message
        for attachment_id, body in (attachments or {}).items():
            self.attachments[(message.id, attachment_id)] = body
        if thread is not None and message.thread_id:
            self.threads[message.thread_id] = thread

    def list_message_ids(self, *, query: str, max_results: int) -> list[str]:
        from payment_recon.core.errors import UpstreamUnavailable

        self.queries.append(query)
        if query in self.failing_queries:
            raise UpstreamUnavailable("message listing failed")
        return list(self.messages)[:max_results]

    def get_message(self, message_id: str):
        from payment_recon.core.errors import UpstreamUnavailable

        if message_id in self.failing_messages:
            raise UpstreamUnavailable("message fetch timed out")
        return self.messages[message_id]

    def get_thread(self, thread_id: str):
        from payment_recon.core.errors import UpstreamUnavailable

        if thread_id not in self.threads:
            raise UpstreamUnavailable("thread fetch failed")
        return self.threads[thread_id]

    def get_attachment(self, *, message_id: str, attachment_id: str) -> bytes:
        from payment_recon.core.errors import UpstreamUnavailable

        self.attachment_fetches.append((message_id, attachment_id))
        if attachment_id in self.failing_attachments:
            raise UpstreamUnavailable("attachment fetch failed")
        return self.attachments[(message_id, attachment_id)]


@pytest.fixture
def fake_mail() -> FakeMailClient:
    return FakeMailClient()


@pytest.fixture
def make_message():
    from payment_recon.modules.mailboxes.gmail import MailAttachment, MailMessage

    def _make(
        message_id: str,
        *,
        subject: str = "",
        sender: str = "Client <client@example.com>",
        reply_to: str = "",
        snippet: str = "",
        thread_id: str | None = None,
        label_ids: tuple[str, ...] = ("INBOX",),
        attachments: tuple[tuple[str, str, str, int], ...] = (),
    ) -> MailMessage:
        return MailMessage(
            id=message_id,
            thread_id=thread_id,
            subject=subject,
            sender=sender,
            reply_to=reply_to,
            snippet=snippet,
            received_at=datetime(2026, 3, 1, 9, 30, tzinfo=UTC),
            label_ids=label_ids,
            attachments=tuple(
                MailAttachment(filename=name, media_type=media, attachment_id=att_id, size=size)
                for name, media, att_id, size in attachments
            ),
        )

    return _make


@pytest.fixture
def text_slip_extractor():
    """Reads the slip bytes as plain text so tests can state a slip's content directly."""
    from payment_recon.modules.extraction.amount import find_amount
    from payment_recon.modules.extraction.service import ExtractedAmount

    def _extract(body: bytes, media_type: str | None) -> ExtractedAmount:
        found = find_amount(body.decode("utf-8", errors="ignore"))
        if found is None:
            return ExtractedAmount(amount=None)
        return ExtractedAmount(
            amount=found.amount, currency=found.currency, strategy=found.strategy
        )

    return _extract
