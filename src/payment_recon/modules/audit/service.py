from __future__ import annotations

import enum
import uuid
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from payment_recon.modules.audit.models import AuditEvent


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    return value


def record_event(
    session: Session,
    *,
    event_type: str,
    actor_user_id: uuid.UUID | None,
    evidence_id: uuid.UUID | None = None,
    invoice_id: uuid.UUID | None = None,
    **payload: Any,
) -> AuditEvent:
    """Stage an audit row in the caller's transaction; the caller commits."""
    event = AuditEvent(
        evidence_id=evidence_id,
        invoice_id=invoice_id,
        actor_user_id=actor_user_id,
        event_type=event_type,
        payload_json={k: _jsonable(v) for k, v in payload.items() if v is not None},
    )
    session.add(event)
    return event


def list_events(session: Session, *, evidence_id: uuid.UUID) -> list[AuditEvent]:
    return list(
        session.scalars(
            select(AuditEvent)
            .where(AuditEvent.evidence_id == evidence_id)
            .order_by(AuditEvent.occurred_at)
        )
    )
