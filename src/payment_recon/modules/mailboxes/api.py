from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from payment_recon.api.deps import require_reconciler
from payment_recon.core.db import db_session
from payment_recon.core.security import create_state_token, decode_state_token
from payment_recon.modules.identity.models import User
from payment_recon.modules.mailboxes.google_oauth import (
    build_gmail_authorize_url,
    exchange_gmail_code,
    gmail_oauth_enabled,
    gmail_redirect_uri,
)
from payment_recon.modules.mailboxes.schemas import AuthorizeSessionOut, MailboxAccountOut
from payment_recon.modules.mailboxes.service import connect_google_account, list_accounts

router = APIRouter(tags=["mailboxes"])


@router.get("/mailboxes", response_model=list[MailboxAccountOut])
def list_mailboxes(
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> list[MailboxAccountOut]:
    return [
        MailboxAccountOut.model_validate(a, from_attributes=True) for a in list_accounts(session)
    ]


@router.post("/mailboxes/google/session", response_model=AuthorizeSessionOut)
def start_google_session(user: User = Depends(require_reconciler)) -> AuthorizeSessionOut:
    if not gmail_oauth_enabled():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Google OAuth not configured"
        )
    state = create_state_token(claims={"sub": str(user.id)})
    return AuthorizeSessionOut(
        authorize_url=build_gmail_authorize_url(state=state, redirect_uri=gmail_redirect_uri())
    )


@router.get("/mailboxes/google/callback", response_model=MailboxAccountOut)
def google_callback(
    code: str,
    state: str,
    session: Session = Depends(db_session),
) -> MailboxAccountOut:
    claims = decode_state_token(state)
    if not claims:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")
    try:
        user_id = uuid.UUID(str(claims.get("sub")))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state"
        ) from e

    try:
        payload = exchange_gmail_code(code=code, redirect_uri=gmail_redirect_uri())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    account = connect_google_account(session, user_id=user_id, token_payload=payload)
    return MailboxAccountOut.model_validate(account, from_attributes=True)
