from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from payment_recon.core.currencies import normalize_currency
from payment_recon.core.errors import NotFound
from payment_recon.modules.invoices.models import (
    OPEN_INVOICE_STATUSES,
    Invoice,
    InvoiceStatus,
)

_CENTS = Decimal("0.01")


def create_invoice(
    session: Session,
    *,
    invoice_no: str,
    total: Decimal,
    currency: str = "USD",
    subtotal: Decimal | None = None,
    tax_amount: Decimal | None = None,
    project_id: str | None = None,
    phase_id: str | None = None,
    issue_date: date | None = None,
    due_date: date | None = None,
    notes: str | None = None,
    status_: InvoiceStatus = InvoiceStatus.DRAFT,
) -> Invoice:
    invoice_no = invoice_no.strip().upper()
    if get_invoice_by_number(session, invoice_no=invoice_no):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Invoice number exists")
    currency_norm = normalize_currency(currency)
    if not currency_norm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="currency must be a valid ISO-4217 code",
        )

    total = Decimal(total).quantize(_CENTS)
    invoice = Invoice(
        invoice_no=invoice_no,
        project_id=project_id,
        phase_id=phase_id,
        issue_date=issue_date,
        due_date=due_date,
        currency=currency_norm,
        subtotal=Decimal(subtotal if subtotal is not None else total).quantize(_CENTS),
        tax_amount=Decimal(tax_amount or 0).quantize(_CENTS),
        total=total,
        collected=Decimal("0.00"),
        outstanding=total,
        status=status_,
        notes=notes,
    )
    session.add(invoice)
    session.commit()
    session.refresh(invoice)
    return invoice


def get_invoice(session: Session, *, invoice_id: uuid.UUID) -> Invoice:
    invoice = session.scalar(select(Invoice).where(Invoice.id == invoice_id))
    if not invoice:
        raise NotFound("Invoice not found", invoice_id=str(invoice_id))
    return invoice


def get_invoice_by_number(session: Session, *, invoice_no: str) -> Invoice | None:
    return session.scalar(select(Invoice).where(Invoice.invoice_no == invoice_no.strip().upper()))


def list_invoices(session: Session) -> list[Invoice]:
    return list(session.scalars(select(Invoice).order_by(Invoice.created_at.desc())))


def list_open_invoices(session: Session) -> list[Invoice]:
    return list(
        session.scalars(select(Invoice).where(Invoice.status.in_(OPEN_INVOICE_STATUSES)))
    )


def invoice_index(session: Session) -> dict[str, uuid.UUID]:
    """Invoice number to id, loaded once so ingestion workers never touch the session."""
    rows = session.execute(select(Invoice.invoice_no, Invoice.id))
    return {invoice_no: invoice_id for invoice_no, invoice_id in rows}


def refresh_overdue(session: Session, *, today: date | None = None) -> int:
    """Flag sent or part-paid invoices past their due date as OVERDUE."""
    today = today or date.today()
    result = session.execute(
        update(Invoice)
        .where(
            Invoice.due_date.is_not(None),
            Invoice.due_date < today,
            Invoice.outstanding > 0,
            Invoice.status.in_((InvoiceStatus.SENT, InvoiceStatus.PARTIALLY_PAID)),
        )
        .values(status=InvoiceStatus.OVERDUE)
    )
    session.commit()
    return result.rowcount or 0
