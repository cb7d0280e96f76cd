"""
ledger_services.service_balance -- Service-ticket reconciliation and the
smart payment calculation.

Responsibility:
    ``calculate`` answers "what does this customer owe, or get back?" for
    a ticket from its stored cost breakdown and approved advances.
    ``recompute`` rewrites the ticket's derived fields (parts cost,
    advance and refund totals and id lists, external parts) from its
    approved payments.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    The only writer of ``ServiceTicketModel``'s derived columns.

Invariants enforced:
    - ``total_advance_paid`` == sum of approved advance payments.
    - ``total_refund_given`` == sum of approved refund payments.
    - ``parts_cost`` == ``base_parts_cost`` + approved parts payments'
      ``parts_cost_applied``.
    - Idempotent: a second recompute writes nothing.

Failure modes:
    - TargetNotFoundError for an unknown ticket.
    - OptimisticLockError if the row's version moved under the flush.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from ledger_engines.service_balance import ServiceBalanceEngine, SmartCalculation
from ledger_kernel.domain.payments import ServicePayment, TargetType
from ledger_kernel.domain.targets import ServiceTicket
from ledger_kernel.logging_config import get_logger
from ledger_kernel.selectors.payment_selector import PaymentSelector
from ledger_kernel.services.target_guard import TargetGuard

logger = get_logger("services.service_balance")


class ServiceBalanceCalculator:
    """Smart calculation and derived-field recompute for service tickets."""

    def __init__(
        self,
        session: Session,
        guard: TargetGuard,
        selector: PaymentSelector,
        engine: ServiceBalanceEngine | None = None,
    ):
        self._session = session
        self._guard = guard
        self._selector = selector
        self._engine = engine or ServiceBalanceEngine()

    def approved_payments(self, ticket_id: UUID) -> list[ServicePayment]:
        return [
            p for p in self._selector.approved_for_target(TargetType.SERVICE_TICKET, ticket_id)
            if isinstance(p, ServicePayment)
        ]

    def calculate(self, ticket_id: UUID) -> SmartCalculation:
        """Read-only smart calculation over the ticket's current costs."""
        ticket = self._guard.load(TargetType.SERVICE_TICKET, ticket_id)
        calculation = self._engine.calculate(
            service_charge=ticket.service_charge,
            diagnostic_fee=ticket.diagnostic_fee,
            parts_cost=ticket.parts_cost,
            payments=self.approved_payments(ticket_id),
        )
        logger.debug(
            "smart_calculation",
            extra={
                "ticket_id": str(ticket_id),
                "outcome": calculation.outcome.value,
                "amount_due": str(calculation.amount_due),
                "refund_due": str(calculation.refund_due),
            },
        )
        return calculation

    def recompute(self, ticket_id: UUID) -> ServiceTicket:
        ticket = self._guard.lock_ticket(ticket_id)
        totals = self._engine.derive_totals(
            base_parts_cost=ticket.base_parts_cost,
            payments=self.approved_payments(ticket_id),
        )

        changed = {
            name: value
            for name, value in totals.as_fields().items()
            if getattr(ticket, name) != value
        }
        for name, value in changed.items():
            setattr(ticket, name, value)
        if changed:
            self._guard.flush(ticket)

        logger.info(
            "ticket_recomputed",
            extra={
                "ticket_id": str(ticket_id),
                "parts_cost": str(totals.parts_cost),
                "total_advance_paid": str(totals.total_advance_paid),
                "total_refund_given": str(totals.total_refund_given),
                "changed_fields": sorted(changed),
            },
        )
        return ticket.to_dto()
