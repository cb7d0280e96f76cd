"""
Module: ledger_engines.service_balance
Responsibility:
    The "smart payment calculation" for device-service tickets: total cost
    against approved advances, with a three-way due / settled / refund
    outcome, plus derivation of a ticket's accumulated totals (advance,
    refund, parts cost, external parts) from its approved payments.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import ledger_kernel.domain.

Invariants enforced:
    - ``total_service_cost = service_charge + diagnostic_fee + parts_cost``.
    - ``remaining_balance = total_service_cost - total_advance``.
    - Exactly one of ``amount_due`` and ``refund_due`` can be non-zero and
      neither is ever negative.
    - ``suggested_amount == amount_due``: a customer owed a refund is never
      asked to pay.
    - Only approved payments count.

Audit relevance:
    ``SmartCalculation.to_breakdown()`` is stored verbatim on the payment
    that triggered it, so a receipt printed later reproduces the figures
    the customer saw even after the ticket's costs change.

Usage:
    from ledger_engines.service_balance import ServiceBalanceEngine

    calc = ServiceBalanceEngine().calculate(
        service_charge=Decimal("150"),
        diagnostic_fee=Decimal("0"),
        parts_cost=Decimal("150"),
        payments=approved_payments,
    )
    calc.outcome        # SettlementOutcome.DUE
    calc.amount_due     # Decimal("200") with 100 in advances
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Sequence
from uuid import UUID

from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.payments import (
    ZERO,
    ExternalPart,
    PaymentStatus,
    ServicePayment,
    ServicePaymentType,
)

BREAKDOWN_VERSION = 1


class SettlementOutcome(str, Enum):
    """Which side of zero the remaining balance fell on."""

    DUE = "due"
    SETTLED = "settled"
    REFUND = "refund"


@dataclass(frozen=True)
class SmartCalculation:
    """
    Result of the smart payment calculation for one ticket.

    ``refund_given`` is informational: refunds already approved do not
    enter ``remaining_balance``.  ``refund_outstanding`` is what is left
    of ``refund_due`` once those are netted off.
    """

    service_charge: Decimal
    diagnostic_fee: Decimal
    parts_cost: Decimal
    total_service_cost: Decimal
    total_advance: Decimal
    remaining_balance: Decimal
    amount_due: Decimal
    refund_due: Decimal
    suggested_amount: Decimal
    outcome: SettlementOutcome
    refund_given: Decimal = ZERO
    advance_payment_ids: tuple[UUID, ...] = ()

    @property
    def refund_outstanding(self) -> Decimal:
        return max(self.refund_due - self.refund_given, ZERO)

    @property
    def needs_refund(self) -> bool:
        return self.outcome == SettlementOutcome.REFUND

    @property
    def is_fully_paid(self) -> bool:
        return self.remaining_balance <= ZERO

    def to_breakdown(self) -> dict[str, Any]:
        """Itemized, JSON-safe form stored on the triggering payment."""
        return {
            "version": BREAKDOWN_VERSION,
            "service_charge": str(self.service_charge),
            "diagnostic_fee": str(self.diagnostic_fee),
            "parts_cost": str(self.parts_cost),
            "total_service_cost": str(self.total_service_cost),
            "advance_applied": str(self.total_advance),
            "advance_payment_ids": [str(i) for i in self.advance_payment_ids],
            "remaining_balance": str(self.remaining_balance),
            "amount_due": str(self.amount_due),
            "refund_due": str(self.refund_due),
            "suggested_amount": str(self.suggested_amount),
            "outcome": self.outcome.value,
        }

    @classmethod
    def from_breakdown(cls, data: dict[str, Any]) -> SmartCalculation:
        return cls(
            service_charge=Decimal(data["service_charge"]),
            diagnostic_fee=Decimal(data["diagnostic_fee"]),
            parts_cost=Decimal(data["parts_cost"]),
            total_service_cost=Decimal(data["total_service_cost"]),
            total_advance=Decimal(data["advance_applied"]),
            remaining_balance=Decimal(data["remaining_balance"]),
            amount_due=Decimal(data["amount_due"]),
            refund_due=Decimal(data["refund_due"]),
            suggested_amount=Decimal(data["suggested_amount"]),
            outcome=SettlementOutcome(data["outcome"]),
            advance_payment_ids=tuple(UUID(i) for i in data.get("advance_payment_ids", ())),
        )


@dataclass(frozen=True)
class TicketTotals:
    """Ticket fields derived from approved payments."""

    parts_cost: Decimal
    total_advance_paid: Decimal
    total_refund_given: Decimal
    advance_payment_ids: tuple[UUID, ...]
    refund_payment_ids: tuple[UUID, ...]
    external_parts: tuple[ExternalPart, ...]

    def as_fields(self) -> dict[str, Any]:
        """Column values to write back onto the ticket row."""
        return {
            "parts_cost": self.parts_cost,
            "total_advance_paid": self.total_advance_paid,
            "total_refund_given": self.total_refund_given,
            "advance_payment_ids": [str(i) for i in self.advance_payment_ids],
            "refund_payment_ids": [str(i) for i in self.refund_payment_ids],
            "external_parts": [p.to_dict() for p in self.external_parts],
        }


def _approved(payments: Sequence[ServicePayment]) -> list[ServicePayment]:
    return [p for p in payments if p.status == PaymentStatus.APPROVED]


class ServiceBalanceEngine:
    """Stateless service-ticket balance computation."""

    @traced_engine(
        "service_balance",
        "1.0",
        fingerprint_fields=("service_charge", "diagnostic_fee", "parts_cost", "payments"),
    )
    def calculate(
        self,
        *,
        service_charge: Decimal,
        diagnostic_fee: Decimal,
        parts_cost: Decimal,
        payments: Sequence[ServicePayment],
    ) -> SmartCalculation:
        approved = _approved(payments)
        advances = [
            p for p in approved
            if p.payment_type == ServicePaymentType.ADVANCE_PAYMENT
        ]
        total_advance = sum((p.amount for p in advances), ZERO)
        refund_given = sum(
            (p.amount for p in approved if p.payment_type == ServicePaymentType.REFUND),
            ZERO,
        )

        total_service_cost = service_charge + diagnostic_fee + parts_cost
        remaining = total_service_cost - total_advance

        if remaining > ZERO:
            outcome = SettlementOutcome.DUE
            amount_due, refund_due = remaining, ZERO
        elif remaining == ZERO:
            outcome = SettlementOutcome.SETTLED
            amount_due, refund_due = ZERO, ZERO
        else:
            outcome = SettlementOutcome.REFUND
            amount_due, refund_due = ZERO, -remaining

        return SmartCalculation(
            service_charge=service_charge,
            diagnostic_fee=diagnostic_fee,
            parts_cost=parts_cost,
            total_service_cost=total_service_cost,
            total_advance=total_advance,
            remaining_balance=remaining,
            amount_due=amount_due,
            refund_due=refund_due,
            suggested_amount=amount_due,
            outcome=outcome,
            refund_given=refund_given,
            advance_payment_ids=tuple(p.id for p in advances),
        )

    @traced_engine(
        "service_totals", "1.0", fingerprint_fields=("base_parts_cost", "payments")
    )
    def derive_totals(
        self,
        *,
        base_parts_cost: Decimal,
        payments: Sequence[ServicePayment],
    ) -> TicketTotals:
        """Fold approved payments into the ticket's accumulated fields.

        A parts payment grows ``parts_cost`` by the ``parts_cost_applied``
        its dispatch recorded; until dispatch has run it adds nothing.
        """
        parts_cost = base_parts_cost
        advance = ZERO
        refund = ZERO
        advance_ids: list[UUID] = []
        refund_ids: list[UUID] = []
        external: list[ExternalPart] = []

        for payment in _approved(payments):
            match payment.payment_type:
                case ServicePaymentType.ADVANCE_PAYMENT:
                    advance += payment.amount
                    advance_ids.append(payment.id)
                case ServicePaymentType.REFUND:
                    refund += payment.amount
                    refund_ids.append(payment.id)
                case ServicePaymentType.PARTS_PAYMENT:
                    parts_cost += payment.parts_cost_applied or ZERO
                    external.extend(payment.external_parts)
                case (
                    ServicePaymentType.SERVICE_CHARGE
                    | ServicePaymentType.DIAGNOSTIC_FEE
                    | ServicePaymentType.FINAL_PAYMENT
                ):
                    pass

        return TicketTotals(
            parts_cost=parts_cost,
            total_advance_paid=advance,
            total_refund_given=refund,
            advance_payment_ids=tuple(advance_ids),
            refund_payment_ids=tuple(refund_ids),
            external_parts=tuple(external),
        )
