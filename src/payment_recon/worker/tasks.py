from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import payment_recon.models  # noqa: F401
# isort: on

import time
import uuid

from payment_recon.core.db import session_scope
from payment_recon.core.logging import (
    bind_log_context,
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_log_context,
    set_actor_context,
)
from payment_recon.worker.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(name="ingest_mailbox", bind=True)
def ingest_mailbox_task(self, account_id: str, kind: str = "all") -> list[str]:
    from payment_recon.modules.mailboxes.service import get_account
    from payment_recon.modules.reconciliation.service import IngestKind, ingest_mailbox

    token = bind_log_context(task_id=getattr(self.request, "id", None), account_id=account_id)
    start = time.monotonic()
    log_event(logger, "celery.task.start", task_name="ingest_mailbox", kind=kind)
    try:
        with session_scope() as session:
            account = get_account(session, account_id=uuid.UUID(account_id))
            # Polled runs act on behalf of the mailbox owner.
            set_actor_context(str(account.user_id))
            rows = ingest_mailbox(
                session,
                account_id=account.id,
                actor_id=account.user_id,
                kind=IngestKind(kind),
            )
            evidence_ids = [str(e.id) for e in rows]
        log_event(
            logger,
            "celery.task.finish",
            task_name="ingest_mailbox",
            evidence_count=len(evidence_ids),
            duration_ms=monotonic_ms(start),
        )
        return evidence_ids
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="ingest_mailbox",
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_log_context(token)


@celery_app.task(name="poll_mailboxes")
def poll_mailboxes_task() -> list[str]:
    """Fan out one ingestion task per connected mailbox."""
    from payment_recon.modules.mailboxes.service import list_accounts

    with session_scope() as session:
        account_ids = [str(a.id) for a in list_accounts(session)]
    for account_id in account_ids:
        ingest_mailbox_task.delay(account_id)
    log_event(
        logger, "celery.task.finish", task_name="poll_mailboxes", account_count=len(account_ids)
    )
    return account_ids


@celery_app.task(name="refresh_overdue_invoices")
def refresh_overdue_invoices_task() -> int:
    from payment_recon.modules.invoices.service import refresh_overdue

    with session_scope() as session:
        flagged = refresh_overdue(session)
    log_event(
        logger, "celery.task.finish", task_name="refresh_overdue_invoices", invoice_count=flagged
    )
    return flagged
