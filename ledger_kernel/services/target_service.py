"""
TargetService -- creation and lifecycle of payment targets.

Responsibility:
    Opens enrollments and service tickets, edits a ticket's entered cost
    breakdown, and completes a ticket (issuing its service invoice once).

Architecture position:
    Kernel > Services.  Derived balance fields are initialised here and
    afterwards written only by the balance calculators in
    ``ledger_services``; after ``update_ticket_costs`` the orchestrator
    runs the ticket recompute.

Invariants enforced:
    - A new enrollment starts with ``remaining_amount == total_amount``.
    - A new ticket starts with ``parts_cost == base_parts_cost``.
    - Completing a ticket twice is a no-op; the invoice is generated
      idempotently.
    - A cancelled ticket cannot be completed.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.payments import ZERO, to_amount
from ledger_kernel.domain.targets import Enrollment, ServiceTicket, ServiceTicketStatus
from ledger_kernel.exceptions import InvalidAmountError, TicketClosedError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.enrollment import EnrollmentModel
from ledger_kernel.models.service_ticket import ServiceTicketModel
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.invoice_service import InvoiceGeneration, InvoiceService
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.target_guard import TargetGuard

logger = get_logger("services.targets")


def _non_negative(value, what: str) -> Decimal:
    amount = to_amount(value)
    if amount < ZERO:
        raise InvalidAmountError(value, f"{what} cannot be negative")
    return amount


class TargetService(BaseService):
    def __init__(
        self,
        session,
        sequence: SequenceService,
        auditor: AuditorService,
        invoices: InvoiceService,
        guard: TargetGuard,
        clock: Clock | None = None,
        *,
        ticket_prefix: str = "ST-",
        number_width: int = 6,
    ):
        super().__init__(session)
        self._sequence = sequence
        self._auditor = auditor
        self._invoices = invoices
        self._guard = guard
        self._clock = clock or SystemClock()
        self._ticket_prefix = ticket_prefix
        self._number_width = number_width

    def create_enrollment(
        self,
        student_id: UUID,
        batch_id: UUID,
        total_amount: Decimal | int | str,
        actor_id: UUID,
    ) -> Enrollment:
        total = _non_negative(total_amount, "enrollment total")
        enrollment = EnrollmentModel(
            student_id=student_id,
            batch_id=batch_id,
            total_amount=total,
            paid_amount=ZERO,
            remaining_amount=total,
            admission_fee_amount=ZERO,
            admission_fee_paid=False,
            registration_fee_amount=ZERO,
            registration_fee_paid=False,
            exam_fee_amount=ZERO,
            exam_fee_paid=False,
            created_by_id=actor_id,
        )
        self.session.add(enrollment)
        self.session.flush()
        logger.info(
            "enrollment_created",
            extra={"enrollment_id": str(enrollment.id), "total_amount": str(total)},
        )
        return enrollment.to_dto()

    def create_service_ticket(
        self,
        customer_id: UUID,
        actor_id: UUID,
        *,
        device: str = "",
        service_charge: Decimal | int | str = ZERO,
        diagnostic_fee: Decimal | int | str = ZERO,
        base_parts_cost: Decimal | int | str = ZERO,
    ) -> ServiceTicket:
        base_parts = _non_negative(base_parts_cost, "parts cost")
        ticket = ServiceTicketModel(
            ticket_number=self._sequence.next_number(
                SequenceService.SERVICE_TICKET, self._ticket_prefix, self._number_width
            ),
            customer_id=customer_id,
            device=device,
            status=ServiceTicketStatus.RECEIVED.value,
            service_charge=_non_negative(service_charge, "service charge"),
            diagnostic_fee=_non_negative(diagnostic_fee, "diagnostic fee"),
            base_parts_cost=base_parts,
            parts_cost=base_parts,
            total_advance_paid=ZERO,
            total_refund_given=ZERO,
            advance_payment_ids=[],
            refund_payment_ids=[],
            external_parts=[],
            created_by_id=actor_id,
        )
        self.session.add(ticket)
        self.session.flush()
        logger.info(
            "service_ticket_created",
            extra={"ticket_id": str(ticket.id), "ticket_number": ticket.ticket_number},
        )
        return ticket.to_dto()

    def update_ticket_costs(
        self,
        ticket_id: UUID,
        actor_id: UUID,
        *,
        service_charge: Decimal | int | str | None = None,
        diagnostic_fee: Decimal | int | str | None = None,
        base_parts_cost: Decimal | int | str | None = None,
    ) -> None:
        """Edit the entered cost breakdown.  The caller recomputes ``parts_cost``."""
        ticket = self._guard.lock_ticket(ticket_id)
        if ticket.status == ServiceTicketStatus.CANCELLED.value:
            raise TicketClosedError(str(ticket_id), ServiceTicketStatus.CANCELLED.value)
        if service_charge is not None:
            ticket.service_charge = _non_negative(service_charge, "service charge")
        if diagnostic_fee is not None:
            ticket.diagnostic_fee = _non_negative(diagnostic_fee, "diagnostic fee")
        if base_parts_cost is not None:
            ticket.base_parts_cost = _non_negative(base_parts_cost, "parts cost")
        ticket.updated_by_id = actor_id
        self._guard.flush(ticket)
        logger.info("ticket_costs_updated", extra={"ticket_id": str(ticket_id)})

    def complete_service_ticket(
        self, ticket_id: UUID, actor_id: UUID
    ) -> tuple[ServiceTicket, InvoiceGeneration]:
        ticket = self._guard.lock_ticket(ticket_id)
        status = ServiceTicketStatus(ticket.status)
        if status == ServiceTicketStatus.CANCELLED:
            raise TicketClosedError(str(ticket_id), ServiceTicketStatus.CANCELLED.value)

        if status not in (ServiceTicketStatus.COMPLETED, ServiceTicketStatus.DELIVERED):
            ticket.status = ServiceTicketStatus.COMPLETED.value
            ticket.completed_at = self._clock.now()
            ticket.updated_by_id = actor_id
            self._guard.flush(ticket)
            self._auditor.record_ticket_completed(
                ticket_id=ticket.id,
                ticket_number=ticket.ticket_number,
                actor_id=actor_id,
            )
            logger.info(
                "ticket_completed",
                extra={"ticket_id": str(ticket_id), "ticket_number": ticket.ticket_number},
            )

        generation = self._invoices.generate_for_ticket(ticket.id, actor_id)
        return ticket.to_dto(), generation

