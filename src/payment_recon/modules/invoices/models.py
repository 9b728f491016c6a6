from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, Enum, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from payment_recon.core.models import Base, Timestamped, UUIDPrimaryKey


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


# Invoices that can still receive money.
OPEN_INVOICE_STATUSES = (
    InvoiceStatus.DRAFT,
    InvoiceStatus.SENT,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.OVERDUE,
)


class Invoice(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "invoices_invoice"
    __table_args__ = (
        CheckConstraint("collected >= 0", name="collected_non_negative"),
        CheckConstraint("outstanding >= 0", name="outstanding_non_negative"),
    )

    invoice_no: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    phase_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    issue_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    currency: Mapped[str] = mapped_column(String(3), default="USD")
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    collected: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    outstanding: Mapped[Decimal] = mapped_column(Numeric(12, 2))

    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, native_enum=False), index=True, default=InvoiceStatus.DRAFT
    )
    # Owned by the approvals workflow; reconciliation never reads or writes it.
    approval_status: Mapped[str] = mapped_column(String(30), default="PENDING")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
