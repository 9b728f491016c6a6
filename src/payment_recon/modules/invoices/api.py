from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from payment_recon.api.deps import get_current_user, require_reconciler
from payment_recon.core.db import db_session
from payment_recon.modules.identity.models import User
from payment_recon.modules.invoices.schemas import InvoiceCreate, InvoiceOut
from payment_recon.modules.invoices.service import create_invoice, get_invoice, list_invoices

router = APIRouter(tags=["invoices"])


@router.get("/invoices", response_model=list[InvoiceOut])
def list_invoices_endpoint(
    session: Session = Depends(db_session),
    _: User = Depends(get_current_user),
) -> list[InvoiceOut]:
    return [InvoiceOut.model_validate(i, from_attributes=True) for i in list_invoices(session)]


@router.post("/invoices", response_model=InvoiceOut, status_code=201)
def create_invoice_endpoint(
    payload: InvoiceCreate,
    session: Session = Depends(db_session),
    _: User = Depends(require_reconciler),
) -> InvoiceOut:
    invoice = create_invoice(session, **payload.model_dump())
    return InvoiceOut.model_validate(invoice, from_attributes=True)


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice_endpoint(
    invoice_id: uuid.UUID,
    session: Session = Depends(db_session),
    _: User = Depends(get_current_user),
) -> InvoiceOut:
    invoice = get_invoice(session, invoice_id=invoice_id)
    return InvoiceOut.model_validate(invoice, from_attributes=True)
