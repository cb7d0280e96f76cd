"""
Module: ledger_kernel.models.invoice
Responsibility: ORM persistence for invoices issued for completed sales and
    completed service tickets.
Architecture position: Kernel > Models.

Invariants enforced:
    - At most one invoice per sale (uq_invoices_sale) and per service
      ticket (uq_invoices_service_ticket).  InvoiceService checks first and
      the constraint catches the race.
    - invoice_number is unique.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.domain.targets import Invoice, InvoiceKind, InvoiceStatus


class InvoiceModel(TrackedBase):
    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoices_number"),
        UniqueConstraint("sale_id", name="uq_invoices_sale"),
        UniqueConstraint("service_ticket_id", name="uq_invoices_service_ticket"),
        Index("idx_invoices_customer", "customer_id"),
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    sale_id: Mapped[UUID | None] = mapped_column(ForeignKey("sales.id"), nullable=True)
    service_ticket_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("service_tickets.id"), nullable=True
    )
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    tax: Mapped[Decimal] = mapped_column(nullable=False)
    discount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.DRAFT.value
    )

    def to_dto(self) -> Invoice:
        return Invoice(
            id=self.id,
            invoice_number=self.invoice_number,
            kind=InvoiceKind(self.kind),
            sale_id=self.sale_id,
            service_ticket_id=self.service_ticket_id,
            customer_id=self.customer_id,
            subtotal=self.subtotal,
            tax=self.tax,
            discount=self.discount,
            total=self.total,
            issue_date=self.issue_date,
            due_date=self.due_date,
            status=InvoiceStatus(self.status),
        )

    def __repr__(self) -> str:
        return f"<InvoiceModel {self.invoice_number} {self.kind}>"
