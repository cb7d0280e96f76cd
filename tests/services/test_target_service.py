"""
Tests for TargetService: opening targets, editing ticket costs and
completing tickets.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.domain.targets import InvoiceKind, ServiceTicketStatus
from ledger_kernel.exceptions import InvalidAmountError, TargetNotFoundError, TicketClosedError
from ledger_kernel.models.audit_event import AuditAction
from ledger_kernel.models.service_ticket import ServiceTicketModel


def _cancel(session, ticket_id):
    ticket = session.get(ServiceTicketModel, ticket_id)
    ticket.status = ServiceTicketStatus.CANCELLED.value
    session.commit()


class TestCreateTargets:
    def test_enrollment_starts_unpaid(self, create_enrollment):
        enrollment = create_enrollment("750")

        assert enrollment.total_amount == Decimal("750")
        assert enrollment.paid_amount == Decimal("0")
        assert enrollment.remaining_amount == Decimal("750")
        assert enrollment.admission_fee_paid is False

    def test_negative_enrollment_total_rejected(self, orchestrator, test_actor_id):
        with pytest.raises(InvalidAmountError):
            orchestrator.create_enrollment(uuid4(), uuid4(), "-1", test_actor_id)

    def test_ticket_numbering(self, create_ticket):
        first = create_ticket()
        second = create_ticket()

        assert first.ticket_number == "ST-000001"
        assert second.ticket_number == "ST-000002"
        assert first.status == ServiceTicketStatus.RECEIVED

    def test_ticket_parts_cost_starts_at_base(self, create_ticket):
        ticket = create_ticket(service_charge="100", diagnostic_fee="20", base_parts_cost="30")

        assert ticket.parts_cost == Decimal("30")
        assert ticket.total_service_cost == Decimal("150")

    def test_negative_cost_rejected(self, orchestrator, test_actor_id):
        with pytest.raises(InvalidAmountError):
            orchestrator.create_service_ticket(uuid4(), test_actor_id, service_charge="-5")


class TestUpdateTicketCosts:
    def test_parts_cost_follows_new_base(self, orchestrator, create_ticket, test_actor_id):
        ticket = create_ticket(base_parts_cost="30")

        updated = orchestrator.update_ticket_costs(
            ticket.id, test_actor_id, base_parts_cost="45", diagnostic_fee="10"
        )

        assert updated.base_parts_cost == Decimal("45")
        assert updated.parts_cost == Decimal("45")
        assert updated.diagnostic_fee == Decimal("10")

    def test_linked_sales_kept_on_top_of_base(
        self, orchestrator, create_ticket, create_product, create_ticket_sale,
        record_payment, approve, test_actor_id,
    ):
        ticket = create_ticket(base_parts_cost="10")
        sale = create_ticket_sale(ticket.id, create_product(unit_price="40"))
        approve(record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,)))

        updated = orchestrator.update_ticket_costs(ticket.id, test_actor_id, base_parts_cost="20")

        assert updated.parts_cost == Decimal("60")

    def test_cancelled_ticket_rejected(self, orchestrator, session, create_ticket, test_actor_id):
        ticket = create_ticket()
        _cancel(session, ticket.id)

        with pytest.raises(TicketClosedError):
            orchestrator.update_ticket_costs(ticket.id, test_actor_id, service_charge="10")

    def test_unknown_ticket(self, orchestrator, test_actor_id):
        with pytest.raises(TargetNotFoundError):
            orchestrator.update_ticket_costs(uuid4(), test_actor_id, service_charge="10")


class TestCompleteTicket:
    def test_completion_issues_service_invoice(self, orchestrator, create_ticket, test_actor_id):
        ticket = create_ticket(service_charge="150", diagnostic_fee="20", base_parts_cost="30")

        completed, generation = orchestrator.complete_service_ticket(ticket.id, test_actor_id)

        assert completed.status == ServiceTicketStatus.COMPLETED
        assert completed.completed_at is not None
        assert generation.created is True
        invoice = generation.invoice
        assert invoice.kind == InvoiceKind.SERVICE
        assert invoice.invoice_number == "SRV-000001"
        assert invoice.subtotal == Decimal("200")
        assert invoice.tax == Decimal("20.00")
        assert invoice.total == Decimal("220.00")

    def test_second_completion_is_a_no_op(self, orchestrator, create_ticket, test_actor_id):
        ticket = create_ticket()
        _, first = orchestrator.complete_service_ticket(ticket.id, test_actor_id)

        _, second = orchestrator.complete_service_ticket(ticket.id, test_actor_id)

        assert second.created is False
        assert second.invoice.id == first.invoice.id
        assert orchestrator.invoice_for_ticket(ticket.id).id == first.invoice.id
        trace = orchestrator.auditor.get_trace("ServiceTicket", ticket.id)
        assert trace.actions.count(AuditAction.TICKET_COMPLETED) == 1

    def test_cancelled_ticket_cannot_complete(
        self, orchestrator, session, create_ticket, test_actor_id
    ):
        ticket = create_ticket()
        _cancel(session, ticket.id)

        with pytest.raises(TicketClosedError):
            orchestrator.complete_service_ticket(ticket.id, test_actor_id)

        assert orchestrator.invoice_for_ticket(ticket.id) is None
