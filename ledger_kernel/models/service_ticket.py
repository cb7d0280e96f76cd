"""
Module: ledger_kernel.models.service_ticket
Responsibility: ORM persistence for device-service tickets, the
    service-domain payment target.
Architecture position: Kernel > Models.

Invariants enforced:
    - ticket_number is unique.
    - parts_cost == base_parts_cost + sum(parts_cost_applied) over approved
      parts payments; total_advance_paid / total_refund_given and the id
      lists are sums/collections over approved payments.  All are written
      only by ServiceBalanceCalculator.recompute().
    - version is a SQLAlchemy version_id_col (optimistic locking).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.domain.payments import ExternalPart
from ledger_kernel.domain.targets import ServiceTicket, ServiceTicketStatus


class ServiceTicketModel(TrackedBase):
    """ORM model for a repair job billed through service payments."""

    __tablename__ = "service_tickets"

    __table_args__ = (
        UniqueConstraint("ticket_number", name="uq_service_tickets_number"),
        Index("idx_service_tickets_customer", "customer_id"),
        Index("idx_service_tickets_status", "status"),
    )

    ticket_number: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    device: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ServiceTicketStatus.RECEIVED.value
    )

    # Entered on the ticket
    service_charge: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    diagnostic_fee: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    base_parts_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    # Derived
    parts_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_advance_paid: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_refund_given: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    advance_payment_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    refund_payment_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    external_parts: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self) -> ServiceTicket:
        return ServiceTicket(
            id=self.id,
            ticket_number=self.ticket_number,
            customer_id=self.customer_id,
            device=self.device,
            status=ServiceTicketStatus(self.status),
            service_charge=self.service_charge,
            diagnostic_fee=self.diagnostic_fee,
            base_parts_cost=self.base_parts_cost,
            parts_cost=self.parts_cost,
            total_advance_paid=self.total_advance_paid,
            total_refund_given=self.total_refund_given,
            advance_payment_ids=tuple(UUID(i) for i in self.advance_payment_ids or ()),
            refund_payment_ids=tuple(UUID(i) for i in self.refund_payment_ids or ()),
            external_parts=tuple(
                ExternalPart.from_dict(p) for p in self.external_parts or ()
            ),
            completed_at=self.completed_at,
            version=self.version,
        )

    def __repr__(self) -> str:
        return f"<ServiceTicketModel {self.ticket_number} {self.status}>"
