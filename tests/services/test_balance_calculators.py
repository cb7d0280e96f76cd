"""
Tests for the balance calculators and the reconciler.

Covers:
- Enrollment recompute from the approved set
- Smart calculation against a stored ticket
- Ticket totals follow approved advances and refunds
- Recompute is idempotent and leaves the version alone when consistent
- Refund raising nets approved and pending refunds
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_engines.service_balance import SettlementOutcome
from ledger_kernel.domain.payments import PaymentStatus, ServicePaymentType, TargetType
from ledger_kernel.exceptions import TargetNotFoundError


class TestEnrollmentRecompute:
    def test_recompute_twice_is_identical(
        self, orchestrator, create_enrollment, record_payment, approve
    ):
        enrollment = create_enrollment("500")
        approve(record_payment(enrollment, "enrollment", "120"))
        approve(record_payment(enrollment, "registration", "30"))

        first = orchestrator.recompute(TargetType.ENROLLMENT, enrollment.id)
        second = orchestrator.recompute(TargetType.ENROLLMENT, enrollment.id)

        assert first == second
        assert first.paid_amount == Decimal("120")
        assert first.registration_fee_paid is True

    def test_consistent_recompute_keeps_version(
        self, orchestrator, create_enrollment, record_payment, approve
    ):
        enrollment = create_enrollment("500")
        approve(record_payment(enrollment, "enrollment", "120"))
        before = orchestrator.get_enrollment(enrollment.id)

        after = orchestrator.recompute(TargetType.ENROLLMENT, enrollment.id)

        assert after.version == before.version

    def test_recompute_repairs_drifted_fields(
        self, orchestrator, session, create_enrollment, record_payment, approve
    ):
        from ledger_kernel.models.enrollment import EnrollmentModel

        enrollment = create_enrollment("500")
        approve(record_payment(enrollment, "enrollment", "120"))
        model = session.get(EnrollmentModel, enrollment.id)
        model.paid_amount = Decimal("999")
        session.commit()

        repaired = orchestrator.recompute(TargetType.ENROLLMENT, enrollment.id)

        assert repaired.paid_amount == Decimal("120")
        assert repaired.remaining_amount == Decimal("380")

    def test_unknown_target(self, orchestrator):
        with pytest.raises(TargetNotFoundError):
            orchestrator.recompute(TargetType.ENROLLMENT, uuid4())


class TestSmartCalculation:
    @pytest.mark.parametrize(
        ("advance", "due", "refund", "outcome"),
        [
            ("100", "200", "0", SettlementOutcome.DUE),
            ("300", "0", "0", SettlementOutcome.SETTLED),
            ("350", "0", "50", SettlementOutcome.REFUND),
        ],
    )
    def test_boundaries_against_stored_ticket(
        self, orchestrator, create_ticket, record_payment, approve,
        advance, due, refund, outcome,
    ):
        ticket = create_ticket(service_charge="150", base_parts_cost="150")
        approve(record_payment(ticket, "advance_payment", advance))

        calc = orchestrator.calculate(ticket.id)

        assert calc.total_service_cost == Decimal("300")
        assert calc.amount_due == Decimal(due)
        assert calc.refund_due == Decimal(refund)
        assert calc.outcome == outcome

    def test_pending_advance_not_counted(self, orchestrator, create_ticket, record_payment):
        ticket = create_ticket(service_charge="150")
        record_payment(ticket, "advance_payment", "100")

        assert orchestrator.calculate(ticket.id).total_advance == Decimal("0")

    def test_unknown_ticket(self, orchestrator):
        with pytest.raises(TargetNotFoundError):
            orchestrator.calculate(uuid4())

    def test_stored_breakdown_survives_cost_change(
        self, orchestrator, create_ticket, record_payment, test_actor_id
    ):
        ticket = create_ticket(service_charge="150")
        payment = record_payment(ticket, "service_charge", None)

        orchestrator.update_ticket_costs(ticket.id, test_actor_id, service_charge="400")

        stored = orchestrator.get_payment(payment.id).payment_calculation
        assert Decimal(stored["total_service_cost"]) == Decimal("150")
        assert orchestrator.calculate(ticket.id).total_service_cost == Decimal("400")


class TestTicketTotals:
    def test_advance_ids_and_total(
        self, orchestrator, create_ticket, record_payment, approve, approver_id
    ):
        ticket = create_ticket()
        a1 = record_payment(ticket, "advance_payment", "50")
        a2 = record_payment(ticket, "advance_payment", "25")
        declined = record_payment(ticket, "advance_payment", "999")
        approve(a1)
        approve(a2)
        orchestrator.decline(declined.id, approver_id, "card declined")

        reloaded = orchestrator.get_ticket(ticket.id)

        assert reloaded.total_advance_paid == Decimal("75")
        assert set(reloaded.advance_payment_ids) == {a1.id, a2.id}

    def test_approved_refund_increments_refund_given(
        self, orchestrator, create_ticket, record_payment, approve
    ):
        ticket = create_ticket()
        refund = record_payment(ticket, "refund", "20")

        approve(refund)

        reloaded = orchestrator.get_ticket(ticket.id)
        assert reloaded.total_refund_given == Decimal("20")
        assert reloaded.refund_payment_ids == (refund.id,)

    def test_withdrawing_advance_restores_totals(
        self, orchestrator, create_ticket, record_payment, approve, test_actor_id
    ):
        ticket = create_ticket()
        advance = record_payment(ticket, "advance_payment", "60")
        approve(advance)

        orchestrator.withdraw_payment(advance.id, test_actor_id)

        reloaded = orchestrator.get_ticket(ticket.id)
        assert reloaded.total_advance_paid == Decimal("0")
        assert reloaded.advance_payment_ids == ()


class TestRaiseRefund:
    def test_raises_refund_for_overpayment(
        self, orchestrator, create_ticket, record_payment, approve, test_actor_id
    ):
        ticket = create_ticket(service_charge="100")
        approve(record_payment(ticket, "advance_payment", "130"))

        refund = orchestrator.raise_refund(ticket.id, test_actor_id, received_by="cashier")

        assert refund.payment_type == ServicePaymentType.REFUND
        assert refund.status == PaymentStatus.PENDING
        assert refund.amount == Decimal("30")
        assert refund.payment_calculation["outcome"] == "refund"

    def test_nothing_due(self, orchestrator, create_ticket, record_payment, approve, test_actor_id):
        ticket = create_ticket(service_charge="100")
        approve(record_payment(ticket, "advance_payment", "100"))

        assert orchestrator.raise_refund(ticket.id, test_actor_id) is None

    def test_pending_and_approved_refunds_netted(
        self, orchestrator, create_ticket, record_payment, approve, test_actor_id
    ):
        ticket = create_ticket(service_charge="100")
        approve(record_payment(ticket, "advance_payment", "150"))

        first = orchestrator.raise_refund(ticket.id, test_actor_id)
        assert first.amount == Decimal("50")
        assert orchestrator.raise_refund(ticket.id, test_actor_id) is None

        approve(first)
        assert orchestrator.raise_refund(ticket.id, test_actor_id) is None

    def test_partial_refund_leaves_remainder(
        self, orchestrator, create_ticket, record_payment, approve, test_actor_id
    ):
        ticket = create_ticket(service_charge="100")
        approve(record_payment(ticket, "advance_payment", "150"))
        approve(record_payment(ticket, "refund", "20"))

        remainder = orchestrator.raise_refund(ticket.id, test_actor_id)

        assert remainder.amount == Decimal("30")
