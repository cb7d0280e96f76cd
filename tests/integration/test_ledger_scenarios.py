"""
End-to-end ledger scenarios through PaymentOrchestrator.

Each test drives the public API the way the cashier and admin screens
do: open a target, take payments, decide them, and check the target's
derived fields, sales, stock and invoices afterwards.
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from ledger_engines.service_balance import SettlementOutcome
from ledger_kernel.domain.payments import PaymentStatus, TargetType
from ledger_kernel.domain.targets import SaleStatus, ServiceTicketStatus
from ledger_kernel.exceptions import DeclineMessageRequiredError, StoreWriteError


class TestEnrollmentScenario:
    def test_tuition_then_admission_fee(self, orchestrator, create_enrollment, record_payment, approve):
        enrollment = create_enrollment("500")

        approve(record_payment(enrollment, "enrollment", "200"))
        after_tuition = orchestrator.get_enrollment(enrollment.id)
        assert after_tuition.paid_amount == Decimal("200")
        assert after_tuition.remaining_amount == Decimal("300")

        approve(record_payment(enrollment, "admission", "50"))
        after_fee = orchestrator.get_enrollment(enrollment.id)
        assert after_fee.admission_fee_amount == Decimal("50")
        assert after_fee.admission_fee_paid is True
        assert after_fee.paid_amount == Decimal("200")
        assert after_fee.remaining_amount == Decimal("300")

    def test_paid_plus_remaining_is_total_throughout(
        self, orchestrator, create_enrollment, record_payment, approve, approver_id, test_actor_id
    ):
        enrollment = create_enrollment("500")
        a = record_payment(enrollment, "enrollment", "100")
        b = record_payment(enrollment, "enrollment", "150")
        c = record_payment(enrollment, "enrollment", "75")

        approve(a)
        orchestrator.decline(b.id, approver_id, "wrong student")
        approve(c)
        orchestrator.amend_payment(a.id, {"amount": "120"}, test_actor_id)
        orchestrator.withdraw_payment(c.id, test_actor_id)

        final = orchestrator.get_enrollment(enrollment.id)
        assert final.paid_amount == Decimal("120")
        assert final.paid_amount + final.remaining_amount == final.total_amount

    def test_approve_then_withdraw_restores_fields(
        self, orchestrator, create_enrollment, record_payment, approve, test_actor_id
    ):
        enrollment = create_enrollment("500")
        approve(record_payment(enrollment, "exam", "40"))
        before = orchestrator.get_enrollment(enrollment.id)
        payment = record_payment(enrollment, "enrollment", "200")
        approve(payment)

        orchestrator.withdraw_payment(payment.id, test_actor_id)

        after = orchestrator.get_enrollment(enrollment.id)
        assert after.paid_amount == before.paid_amount
        assert after.remaining_amount == before.remaining_amount
        assert after.exam_fee_amount == before.exam_fee_amount
        assert after.exam_fee_paid is True


class TestServiceTicketScenario:
    def test_parts_payment_completes_sale_and_invoices(
        self, orchestrator, create_ticket, create_product, create_ticket_sale,
        record_payment, approve,
    ):
        ticket = create_ticket(service_charge="150")
        product = create_product(unit_price="80", stock=2)
        sale = create_ticket_sale(ticket.id, product)
        payment = record_payment(ticket, "parts_payment", "80", sale_ids=(sale.id,))

        approve(payment)

        completed = orchestrator.get_sale(sale.id)
        assert completed.status == SaleStatus.COMPLETED
        assert orchestrator.invoice_for_sale(sale.id) is not None
        assert orchestrator.get_ticket(ticket.id).parts_cost == Decimal("80")
        assert orchestrator.get_product(product.id).stock == 1

    def test_full_repair_lifecycle(
        self, orchestrator, create_ticket, create_product, create_ticket_sale,
        record_payment, approve, test_actor_id,
    ):
        ticket = create_ticket(service_charge="150", diagnostic_fee="20")
        approve(record_payment(ticket, "diagnostic_fee", "20"))
        approve(record_payment(ticket, "advance_payment", "100"))
        sale = create_ticket_sale(ticket.id, create_product(unit_price="60"))
        approve(record_payment(ticket, "parts_payment", "60", sale_ids=(sale.id,)))

        calc = orchestrator.calculate(ticket.id)
        assert calc.total_service_cost == Decimal("230")
        assert calc.total_advance == Decimal("100")
        assert calc.amount_due == Decimal("130")
        assert calc.outcome == SettlementOutcome.DUE

        final = record_payment(ticket, "final_payment", None)
        assert final.amount == Decimal("130")
        approve(final)

        completed, generation = orchestrator.complete_service_ticket(ticket.id, test_actor_id)
        assert completed.status == ServiceTicketStatus.COMPLETED
        assert generation.invoice.subtotal == Decimal("230")

    def test_overpaid_ticket_refund_cycle(
        self, orchestrator, create_ticket, record_payment, approve, test_actor_id
    ):
        ticket = create_ticket(service_charge="100")
        approve(record_payment(ticket, "advance_payment", "180"))

        refund = orchestrator.raise_refund(ticket.id, test_actor_id)
        approve(refund)

        reloaded = orchestrator.get_ticket(ticket.id)
        assert reloaded.total_refund_given == Decimal("80")
        assert orchestrator.raise_refund(ticket.id, test_actor_id) is None

    def test_summary_per_ticket(
        self, orchestrator, create_ticket, record_payment, approve, approver_id
    ):
        ticket = create_ticket()
        approve(record_payment(ticket, "advance_payment", "50"))
        record_payment(ticket, "advance_payment", "30")
        declined = record_payment(ticket, "advance_payment", "10")
        orchestrator.decline(declined.id, approver_id, "duplicate")

        summary = orchestrator.payment_summary(TargetType.SERVICE_TICKET, ticket.id)

        assert summary.approved_total == Decimal("50")
        assert summary.pending_count == 1
        assert summary.count_by_status["declined"] == 1


class TestDeclineScenario:
    def test_empty_message_keeps_payment_pending(
        self, orchestrator, create_enrollment, record_payment, approver_id
    ):
        payment = record_payment(create_enrollment(), "enrollment", "100")

        with pytest.raises(DeclineMessageRequiredError):
            orchestrator.decline(payment.id, approver_id, "")

        assert orchestrator.get_payment(payment.id).status == PaymentStatus.PENDING


class TestStoreFailure:
    def test_failed_write_leaves_no_payment(
        self, orchestrator, create_enrollment, record_payment, monkeypatch
    ):
        enrollment = create_enrollment("500")

        def _fail(**kwargs):
            raise OperationalError("INSERT INTO audit_events", {}, Exception("disk I/O error"))

        monkeypatch.setattr(orchestrator.auditor, "record_payment_recorded", _fail)

        with pytest.raises(StoreWriteError):
            record_payment(enrollment, "enrollment", "100")

        assert orchestrator.list_payments(target_id=enrollment.id) == []

    def test_receipt_number_not_consumed_by_failed_write(
        self, orchestrator, create_enrollment, record_payment, monkeypatch
    ):
        enrollment = create_enrollment("500")
        original = orchestrator.auditor.record_payment_recorded

        def _fail(**kwargs):
            raise OperationalError("INSERT INTO audit_events", {}, Exception("disk I/O error"))

        monkeypatch.setattr(orchestrator.auditor, "record_payment_recorded", _fail)
        with pytest.raises(StoreWriteError):
            record_payment(enrollment, "enrollment", "100")
        monkeypatch.setattr(orchestrator.auditor, "record_payment_recorded", original)

        payment = record_payment(enrollment, "enrollment", "100")

        assert payment.receipt_number == "PV-000001"

    def test_failed_approval_rolls_back_dispatch(
        self, orchestrator, create_ticket, create_product, create_ticket_sale,
        record_payment, approve, monkeypatch,
    ):
        ticket = create_ticket()
        product = create_product(stock=5)
        sale = create_ticket_sale(ticket.id, product)
        payment = record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,))

        def _fail(*args, **kwargs):
            raise OperationalError("UPDATE service_tickets", {}, Exception("connection lost"))

        monkeypatch.setattr(orchestrator.reconciler, "reconcile", _fail)

        with pytest.raises(StoreWriteError):
            approve(payment)

        assert orchestrator.get_payment(payment.id).status == PaymentStatus.PENDING
        assert orchestrator.get_sale(sale.id).status == SaleStatus.PENDING
        assert orchestrator.get_product(product.id).stock == 5
        assert orchestrator.invoice_for_sale(sale.id) is None
