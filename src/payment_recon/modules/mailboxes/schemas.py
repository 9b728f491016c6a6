from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel

from payment_recon.modules.mailboxes.models import MailboxProvider


class MailboxAccountOut(BaseModel):
    id: uuid.UUID
    provider: MailboxProvider
    email: str
    scope: str | None
    expires_at: datetime | None
    created_at: datetime


class AuthorizeSessionOut(BaseModel):
    authorize_url: str
