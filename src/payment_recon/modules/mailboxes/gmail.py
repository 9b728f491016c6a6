from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from payment_recon.core.errors import UpstreamUnavailable
from payment_recon.core.logging import get_logger, log_event

logger = get_logger(__name__)

_GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"


@dataclass(frozen=True)
class MailAttachment:
    filename: str
    media_type: str
    attachment_id: str
    size: int = 0


@dataclass(frozen=True)
class MailMessage:
    id: str
    thread_id: str | None
    subject: str
    sender: str
    snippet: str
    received_at: datetime
    reply_to: str = ""
    label_ids: tuple[str, ...] = ()
    attachments: tuple[MailAttachment, ...] = field(default_factory=tuple)


class MailClient:
    """Read-only view of one mailbox."""

    def list_message_ids(self, *, query: str, max_results: int) -> list[str]:
        raise NotImplementedError  # pragma: no cover

    def get_message(self, message_id: str) -> MailMessage:
        raise NotImplementedError  # pragma: no cover

    def get_thread(self, thread_id: str) -> list[MailMessage]:
        raise NotImplementedError  # pragma: no cover

    def get_attachment(self, *, message_id: str, attachment_id: str) -> bytes:
        raise NotImplementedError  # pragma: no cover


class GmailClient(MailClient):
    def __init__(self, *, access_token: str, timeout_seconds: float) -> None:
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._timeout = timeout_seconds

    def _get(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            resp = httpx.get(
                f"{_GMAIL_API}{path}",
                headers=self._headers,
                params=params,
                timeout=self._timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log_event(
                logger,
                "gmail.request.failure",
                path=path,
                error_type=type(e).__name__,
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise UpstreamUnavailable("Mail provider request failed", path=path) from e

    def list_message_ids(self, *, query: str, max_results: int) -> list[str]:
        data = self._get("/messages", params={"q": query, "maxResults": max_results})
        return [str(m["id"]) for m in data.get("messages") or [] if m.get("id")]

    def get_message(self, message_id: str) -> MailMessage:
        return parse_gmail_message(self._get(f"/messages/{message_id}"))

    def get_thread(self, thread_id: str) -> list[MailMessage]:
        data = self._get(f"/threads/{thread_id}")
        return [parse_gmail_message(m) for m in data.get("messages") or []]

    def get_attachment(self, *, message_id: str, attachment_id: str) -> bytes:
        data = self._get(f"/messages/{message_id}/attachments/{attachment_id}")
        return decode_base64url(str(data.get("data") or ""))


def decode_base64url(raw: str) -> bytes:
    padded = raw + "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(padded)


def parse_gmail_message(data: dict[str, Any]) -> MailMessage:
    payload = data.get("payload") or {}
    headers = {
        str(h.get("name", "")).lower(): str(h.get("value", ""))
        for h in payload.get("headers") or []
    }
    try:
        received_at = datetime.fromtimestamp(int(data["internalDate"]) / 1000, tz=UTC)
    except (KeyError, TypeError, ValueError):
        received_at = datetime.now(UTC)

    attachments: list[MailAttachment] = []
    for part in _leaf_parts(payload):
        body = part.get("body") or {}
        attachment_id = body.get("attachmentId")
        if not attachment_id:
            continue
        attachments.append(
            MailAttachment(
                filename=str(part.get("filename") or "attachment"),
                media_type=str(part.get("mimeType") or "application/octet-stream"),
                attachment_id=str(attachment_id),
                size=int(body.get("size") or 0),
            )
        )

    return MailMessage(
        id=str(data.get("id") or ""),
        thread_id=data.get("threadId") or None,
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        reply_to=headers.get("reply-to", ""),
        snippet=str(data.get("snippet") or ""),
        received_at=received_at,
        label_ids=tuple(data.get("labelIds") or ()),
        attachments=tuple(attachments),
    )


def _leaf_parts(part: dict[str, Any]) -> list[dict[str, Any]]:
    children = part.get("parts")
    if isinstance(children, list) and children:
        leaves: list[dict[str, Any]] = []
        for child in children:
            leaves.extend(_leaf_parts(child))
        return leaves
    return [part] if part else []
