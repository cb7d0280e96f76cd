"""
Module: ledger_kernel.selectors.payment_selector
Responsibility: Read-side queries over the payments table: lookup, the
    approved-payments-for-target set every recompute folds over, filtered
    listings, and summary figures.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - approved_for_target() is ordered by (payment_date, receipt_number),
      so derived id lists on a ticket come out in the same order on every
      recompute.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from ledger_kernel.domain.payments import (
    ZERO,
    Payment,
    PaymentStatus,
    PaymentType,
    ServicePaymentType,
    TargetType,
)
from ledger_kernel.models.payment import PaymentModel
from ledger_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class PaymentSummary:
    """Counts per status and approved totals per payment type."""

    count_by_status: dict[str, int] = field(default_factory=dict)
    approved_total_by_type: dict[str, Decimal] = field(default_factory=dict)

    @property
    def pending_count(self) -> int:
        return self.count_by_status.get(PaymentStatus.PENDING.value, 0)

    @property
    def approved_total(self) -> Decimal:
        return sum(self.approved_total_by_type.values(), ZERO)


class PaymentSelector(BaseSelector):
    """Read-only payment queries returning frozen payment DTOs."""

    def get(self, payment_id: UUID) -> Payment | None:
        model = self.session.get(PaymentModel, payment_id)
        return model.to_dto() if model else None

    def for_target(
        self,
        target_type: TargetType,
        target_id: UUID,
        status: PaymentStatus | None = None,
    ) -> list[Payment]:
        stmt = (
            select(PaymentModel)
            .where(PaymentModel.target_type == target_type.value)
            .where(PaymentModel.target_id == target_id)
            .order_by(PaymentModel.payment_date, PaymentModel.receipt_number)
        )
        if status is not None:
            stmt = stmt.where(PaymentModel.status == status.value)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def approved_for_target(self, target_type: TargetType, target_id: UUID) -> list[Payment]:
        return self.for_target(target_type, target_id, PaymentStatus.APPROVED)

    def pending_refund_total(self, ticket_id: UUID) -> Decimal:
        """Sum of refund payments raised for a ticket but not yet decided."""
        amounts = self.session.execute(
            select(PaymentModel.amount)
            .where(PaymentModel.target_type == TargetType.SERVICE_TICKET.value)
            .where(PaymentModel.target_id == ticket_id)
            .where(PaymentModel.payment_type == ServicePaymentType.REFUND.value)
            .where(PaymentModel.status == PaymentStatus.PENDING.value)
        ).scalars()
        return sum(amounts, ZERO)

    def list_payments(
        self,
        *,
        status: PaymentStatus | None = None,
        target_type: TargetType | None = None,
        target_id: UUID | None = None,
        payment_type: PaymentType | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Payment]:
        """Filtered listing, newest receipt first."""
        stmt = select(PaymentModel).order_by(PaymentModel.receipt_number.desc())
        if status is not None:
            stmt = stmt.where(PaymentModel.status == status.value)
        if target_type is not None:
            stmt = stmt.where(PaymentModel.target_type == target_type.value)
        if target_id is not None:
            stmt = stmt.where(PaymentModel.target_id == target_id)
        if payment_type is not None:
            stmt = stmt.where(PaymentModel.payment_type == payment_type.value)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def summary(
        self,
        target_type: TargetType | None = None,
        target_id: UUID | None = None,
    ) -> PaymentSummary:
        filters = []
        if target_type is not None:
            filters.append(PaymentModel.target_type == target_type.value)
        if target_id is not None:
            filters.append(PaymentModel.target_id == target_id)

        counts = self.session.execute(
            select(PaymentModel.status, func.count())
            .where(*filters)
            .group_by(PaymentModel.status)
        ).all()

        # Summed in Python: SUM over Numeric loses precision on some backends.
        approved_rows = self.session.execute(
            select(PaymentModel.payment_type, PaymentModel.amount)
            .where(*filters)
            .where(PaymentModel.status == PaymentStatus.APPROVED.value)
        ).all()
        totals: dict[str, Decimal] = {}
        for payment_type, amount in approved_rows:
            totals[payment_type] = totals.get(payment_type, ZERO) + amount

        return PaymentSummary(
            count_by_status={status: count for status, count in counts},
            approved_total_by_type=totals,
        )
