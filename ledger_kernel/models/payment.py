"""
Module: ledger_kernel.models.payment
Responsibility: ORM persistence for payment records, the ledger itself.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - receipt_number is unique (uq_payments_receipt_number).
    - status is one of pending / approved / declined; transitions are
      enforced by ApprovalWorkflow, not here.
    - Monetary values are Decimal (Numeric(38, 9)).  JSON columns store
      Decimals as strings so a reload reproduces them exactly.

Audit relevance:
    payment_calculation is the smart-calculation breakdown frozen at
    record time; it is never rewritten, so historical receipts stay
    reproducible after the ticket's costs move.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Date, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.domain.payments import (
    EnrollmentPayment,
    EnrollmentPaymentType,
    ExternalPart,
    Payment,
    PaymentStatus,
    ServicePayment,
    ServicePaymentType,
    TargetType,
)


class PaymentModel(TrackedBase):
    """
    ORM model for a payment against an enrollment or a service ticket.

    Maps to the ``EnrollmentPayment`` / ``ServicePayment`` tagged union;
    ``to_dto()`` picks the variant from ``target_type``.

    Guarantees:
        - (target_type, target_id, status) is indexed: every recompute
          reads "approved payments for target X".
        - approved_by / approved_at / admin_message are written only by a
          decision.
    """

    __tablename__ = "payments"

    __table_args__ = (
        UniqueConstraint("receipt_number", name="uq_payments_receipt_number"),
        Index("idx_payments_target_status", "target_type", "target_id", "status"),
        Index("idx_payments_status", "status"),
        Index("idx_payments_related_sale", "related_sale_id"),
    )

    receipt_number: Mapped[str] = mapped_column(String(50), nullable=False)
    target_type: Mapped[str] = mapped_column(String(30), nullable=False)
    target_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False, default="cash")
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    received_by: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    admin_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Service-domain extras
    related_sale_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    external_parts: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    pending_sales_to_complete: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list
    )
    payment_calculation: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    parts_cost_applied: Mapped[Decimal | None] = mapped_column(nullable=True)
    side_effects_dispatched_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def target_type_enum(self) -> TargetType:
        return TargetType(self.target_type)

    @property
    def parts(self) -> tuple[ExternalPart, ...]:
        return tuple(ExternalPart.from_dict(p) for p in self.external_parts or ())

    @property
    def sale_ids_to_complete(self) -> tuple[UUID, ...]:
        return tuple(UUID(s) for s in self.pending_sales_to_complete or ())

    def to_dto(self) -> Payment:
        """Convert ORM model to the frozen payment variant for its domain."""
        common = dict(
            id=self.id,
            receipt_number=self.receipt_number,
            target_id=self.target_id,
            amount=self.amount,
            method=self.method,
            payment_date=self.payment_date,
            received_by=self.received_by,
            notes=self.notes,
            status=self.status_enum,
            admin_message=self.admin_message,
            approved_by=self.approved_by,
            approved_at=self.approved_at,
        )
        if self.target_type_enum is TargetType.ENROLLMENT:
            return EnrollmentPayment(
                payment_type=EnrollmentPaymentType(self.payment_type),
                **common,
            )
        return ServicePayment(
            payment_type=ServicePaymentType(self.payment_type),
            related_sale_id=self.related_sale_id,
            external_parts=self.parts,
            pending_sales_to_complete=self.sale_ids_to_complete,
            payment_calculation=(
                dict(self.payment_calculation) if self.payment_calculation else None
            ),
            parts_cost_applied=self.parts_cost_applied,
            side_effects_dispatched_at=self.side_effects_dispatched_at,
            **common,
        )

    def __repr__(self) -> str:
        return f"<PaymentModel {self.receipt_number} {self.payment_type} {self.status}>"
