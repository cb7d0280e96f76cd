"""
Module: ledger_engines.enrollment_balance
Responsibility:
    Derive an enrollment's paid / remaining / per-fee amounts from its
    payments.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import ledger_kernel.domain.

Invariants enforced:
    - Full recompute: the result depends only on ``total_amount`` and the
      approved subset of ``payments``.  There is no prior state to add to
      or subtract from, so edits, withdrawals and late decisions cannot
      drift the balance.
    - ``paid_amount + remaining_amount == total_amount``.
    - Each ``*_fee_paid`` flag is ``*_fee_amount > 0``.
    - Pending and declined payments contribute nothing.

Usage:
    from ledger_engines.enrollment_balance import EnrollmentBalanceEngine

    balance = EnrollmentBalanceEngine().compute(
        total_amount=Decimal("500"),
        payments=approved_payments,
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Sequence

from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.payments import (
    ZERO,
    EnrollmentPayment,
    EnrollmentPaymentType,
    PaymentStatus,
)


@dataclass(frozen=True)
class EnrollmentBalance:
    """Derived balance fields for one enrollment."""

    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    admission_fee_amount: Decimal
    registration_fee_amount: Decimal
    exam_fee_amount: Decimal

    @property
    def admission_fee_paid(self) -> bool:
        return self.admission_fee_amount > ZERO

    @property
    def registration_fee_paid(self) -> bool:
        return self.registration_fee_amount > ZERO

    @property
    def exam_fee_paid(self) -> bool:
        return self.exam_fee_amount > ZERO

    def as_fields(self) -> dict[str, Any]:
        """Column values to write back onto the enrollment row."""
        return {
            "paid_amount": self.paid_amount,
            "remaining_amount": self.remaining_amount,
            "admission_fee_amount": self.admission_fee_amount,
            "admission_fee_paid": self.admission_fee_paid,
            "registration_fee_amount": self.registration_fee_amount,
            "registration_fee_paid": self.registration_fee_paid,
            "exam_fee_amount": self.exam_fee_amount,
            "exam_fee_paid": self.exam_fee_paid,
        }


class EnrollmentBalanceEngine:
    """Stateless enrollment balance computation."""

    @traced_engine(
        "enrollment_balance", "1.0", fingerprint_fields=("total_amount", "payments")
    )
    def compute(
        self,
        *,
        total_amount: Decimal,
        payments: Sequence[EnrollmentPayment],
    ) -> EnrollmentBalance:
        paid = ZERO
        admission = ZERO
        registration = ZERO
        exam = ZERO

        for payment in payments:
            if payment.status != PaymentStatus.APPROVED:
                continue
            match payment.payment_type:
                case EnrollmentPaymentType.ENROLLMENT:
                    paid += payment.amount
                case EnrollmentPaymentType.ADMISSION:
                    admission += payment.amount
                case EnrollmentPaymentType.REGISTRATION:
                    registration += payment.amount
                case EnrollmentPaymentType.EXAM:
                    exam += payment.amount

        return EnrollmentBalance(
            total_amount=total_amount,
            paid_amount=paid,
            remaining_amount=total_amount - paid,
            admission_fee_amount=admission,
            registration_fee_amount=registration,
            exam_fee_amount=exam,
        )

    def remaining_after(
        self,
        *,
        total_amount: Decimal,
        payments: Sequence[EnrollmentPayment],
        excluding: set | frozenset = frozenset(),
    ) -> Decimal:
        """Remaining balance with the payments in ``excluding`` left out.

        Used to validate an amendment against the balance the payment's
        own approved contribution is not already part of.
        """
        kept = [p for p in payments if p.id not in excluding]
        return self.compute(total_amount=total_amount, payments=kept).remaining_amount
