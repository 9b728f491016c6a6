from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from payment_recon.core.config import settings
from payment_recon.core.errors import NotFound
from payment_recon.core.logging import get_logger, log_event
from payment_recon.modules.mailboxes.gmail import GmailClient, MailClient
from payment_recon.modules.mailboxes.google_oauth import (
    GMAIL_READONLY_SCOPE,
    fetch_account_email,
    refresh_gmail_token,
)
from payment_recon.modules.mailboxes.models import MailboxAccount, MailboxProvider

logger = get_logger(__name__)

_REFRESH_MARGIN = timedelta(seconds=60)


def _expiry_from(expires_in: Any) -> datetime | None:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    return datetime.now(UTC) + timedelta(seconds=seconds)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def get_account(session: Session, *, account_id: uuid.UUID) -> MailboxAccount:
    account = session.scalar(select(MailboxAccount).where(MailboxAccount.id == account_id))
    if not account:
        raise NotFound("Mailbox account not found", account_id=str(account_id))
    return account


def list_accounts(session: Session) -> list[MailboxAccount]:
    return list(session.scalars(select(MailboxAccount).order_by(MailboxAccount.created_at)))


def connect_google_account(
    session: Session, *, user_id: uuid.UUID, token_payload: dict[str, Any]
) -> MailboxAccount:
    """Store (or refresh) the Gmail connection granted through the OAuth callback."""
    access_token = token_payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Token response missing access_token"
        )
    email = (fetch_account_email(access_token=access_token) or "unknown").strip().lower()

    account = session.scalar(
        select(MailboxAccount).where(
            MailboxAccount.user_id == user_id,
            MailboxAccount.provider == MailboxProvider.GOOGLE,
            MailboxAccount.email == email,
        )
    )
    if account is None:
        account = MailboxAccount(
            user_id=user_id, provider=MailboxProvider.GOOGLE, email=email, access_token=""
        )
        session.add(account)

    account.access_token = access_token
    # Google omits the refresh token on re-consent; keep the one we have.
    if token_payload.get("refresh_token"):
        account.refresh_token = token_payload["refresh_token"]
    account.expires_at = _expiry_from(token_payload.get("expires_in"))
    account.scope = token_payload.get("scope") or account.scope
    session.commit()
    session.refresh(account)
    log_event(
        logger,
        "mailbox.connected",
        account_id=str(account.id),
        provider=account.provider.value,
        has_refresh_token=bool(account.refresh_token),
    )
    return account


def require_readonly_scope(account: MailboxAccount) -> None:
    if GMAIL_READONLY_SCOPE not in (account.scope or "").split():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Gmail read scope not granted. Reconnect the mailbox.",
        )


def ensure_fresh_token(session: Session, *, account: MailboxAccount) -> MailboxAccount:
    expires_at = _aware(account.expires_at)
    if not account.refresh_token:
        return account
    if expires_at is not None and expires_at > datetime.now(UTC) + _REFRESH_MARGIN:
        return account

    try:
        payload = refresh_gmail_token(refresh_token=account.refresh_token)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Mailbox authorization expired. Reconnect the mailbox.",
        ) from e
    account.access_token = payload.get("access_token") or account.access_token
    account.expires_at = _expiry_from(payload.get("expires_in"))
    session.commit()
    session.refresh(account)
    log_event(logger, "mailbox.token.refreshed", account_id=str(account.id))
    return account


def mail_client_for(session: Session, *, account: MailboxAccount) -> MailClient:
    require_readonly_scope(account)
    account = ensure_fresh_token(session, account=account)
    return GmailClient(
        access_token=account.access_token,
        timeout_seconds=settings.mail_http_timeout_seconds,
    )
