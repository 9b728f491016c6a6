from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


class AuditEventOut(BaseModel):
    id: uuid.UUID
    evidence_id: uuid.UUID | None
    invoice_id: uuid.UUID | None
    actor_user_id: uuid.UUID | None
    event_type: str
    payload_json: dict
    occurred_at: datetime
