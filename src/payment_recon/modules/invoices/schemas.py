from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from payment_recon.modules.invoices.models import InvoiceStatus


class InvoiceCreate(BaseModel):
    invoice_no: str = Field(min_length=1, max_length=50)
    project_id: str | None = None
    phase_id: str | None = None
    issue_date: date | None = None
    due_date: date | None = None
    currency: str = "USD"
    subtotal: Decimal = Field(default=Decimal("0"), ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(ge=0)
    notes: str | None = None


class InvoiceOut(BaseModel):
    id: uuid.UUID
    invoice_no: str
    project_id: str | None
    phase_id: str | None
    issue_date: date | None
    due_date: date | None
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    collected: Decimal
    outstanding: Decimal
    status: InvoiceStatus
    approval_status: str
    notes: str | None
    created_at: datetime
    updated_at: datetime
