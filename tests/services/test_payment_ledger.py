"""
Tests for PaymentLedger: record, amend, withdraw.

Covers:
- Record-time validation (amount, remaining balance, target, domain types)
- Receipt numbering per domain
- Settlement payments carry a frozen smart-calculation breakdown
- Amendments recompute old and new targets of approved payments
- Withdrawal reverses by recompute
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.domain.payments import (
    ExternalPart,
    PaymentAmendment,
    PaymentDraft,
    PaymentStatus,
    TargetType,
)
from ledger_kernel.exceptions import (
    AmountExceedsRemainingError,
    InvalidAmendmentError,
    InvalidAmountError,
    InvalidPaymentTypeError,
    InvalidSaleLinkError,
    PaymentNotFoundError,
    TargetNotFoundError,
    ValidationError,
)
from ledger_kernel.models.audit_event import AuditAction


class TestRecord:
    def test_records_pending_enrollment_payment(self, create_enrollment, record_payment):
        enrollment = create_enrollment("500")

        payment = record_payment(enrollment, "enrollment", "200")

        assert payment.status == PaymentStatus.PENDING
        assert payment.target_type == TargetType.ENROLLMENT
        assert payment.amount == Decimal("200")
        assert payment.receipt_number == "PV-000001"
        assert payment.approved_by is None

    def test_pending_payment_does_not_touch_balance(
        self, orchestrator, create_enrollment, record_payment
    ):
        enrollment = create_enrollment("500")
        record_payment(enrollment, "enrollment", "200")

        reloaded = orchestrator.get_enrollment(enrollment.id)
        assert reloaded.paid_amount == Decimal("0")
        assert reloaded.remaining_amount == Decimal("500")

    def test_receipt_sequences_are_per_domain(
        self, create_enrollment, create_ticket, record_payment
    ):
        enrollment = create_enrollment()
        ticket = create_ticket()

        first = record_payment(enrollment, "admission", "10")
        service = record_payment(ticket, "advance_payment", "50")
        second = record_payment(enrollment, "exam", "10")

        assert first.receipt_number == "PV-000001"
        assert second.receipt_number == "PV-000002"
        assert service.receipt_number == "SP-000001"

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_rejects_non_positive_amount(self, create_enrollment, record_payment, amount):
        enrollment = create_enrollment()

        with pytest.raises(InvalidAmountError):
            record_payment(enrollment, "admission", amount)

    def test_rejects_float_amount(self, orchestrator, create_enrollment, test_actor_id):
        enrollment = create_enrollment()
        draft = PaymentDraft(
            target_type="enrollment",
            target_id=enrollment.id,
            payment_type="enrollment",
            amount=10.5,
        )

        with pytest.raises(InvalidAmountError):
            orchestrator.record_payment(draft, test_actor_id)

    def test_rejects_amount_over_remaining(self, create_enrollment, record_payment):
        enrollment = create_enrollment("500")

        with pytest.raises(AmountExceedsRemainingError) as exc_info:
            record_payment(enrollment, "enrollment", "500.01")

        assert exc_info.value.remaining == Decimal("500")
        assert isinstance(exc_info.value, ValidationError)

    def test_fee_payments_not_capped_by_remaining(self, create_enrollment, record_payment):
        enrollment = create_enrollment("100")

        payment = record_payment(enrollment, "exam", "150")

        assert payment.amount == Decimal("150")

    def test_unknown_target_rejected(self, orchestrator, test_actor_id):
        draft = PaymentDraft(
            target_type="enrollment",
            target_id=uuid4(),
            payment_type="enrollment",
            amount=Decimal("10"),
        )

        with pytest.raises(TargetNotFoundError):
            orchestrator.record_payment(draft, test_actor_id)

    def test_unknown_target_type_rejected(self, orchestrator, test_actor_id):
        draft = PaymentDraft(
            target_type="library_card",
            target_id=uuid4(),
            payment_type="enrollment",
            amount=Decimal("10"),
        )

        with pytest.raises(TargetNotFoundError):
            orchestrator.record_payment(draft, test_actor_id)

    def test_other_domain_type_rejected(self, create_enrollment, record_payment):
        enrollment = create_enrollment()

        with pytest.raises(InvalidPaymentTypeError):
            record_payment(enrollment, "advance_payment", "10")

    def test_rejected_record_leaves_no_payment(
        self, orchestrator, create_enrollment, record_payment
    ):
        enrollment = create_enrollment("100")

        with pytest.raises(AmountExceedsRemainingError):
            record_payment(enrollment, "enrollment", "101")

        assert orchestrator.list_payments(target_id=enrollment.id) == []

    def test_settlement_payment_prefilled_from_smart_calculation(
        self, create_ticket, record_payment
    ):
        ticket = create_ticket(service_charge="150")

        payment = record_payment(ticket, "service_charge", None)

        assert payment.amount == Decimal("150")
        assert Decimal(payment.payment_calculation["amount_due"]) == Decimal("150")
        assert payment.payment_calculation["outcome"] == "due"

    def test_settlement_without_amount_when_nothing_due(
        self, create_ticket, record_payment, approve
    ):
        ticket = create_ticket(service_charge="100")
        approve(record_payment(ticket, "advance_payment", "100"))

        with pytest.raises(InvalidAmountError):
            record_payment(ticket, "final_payment", None)

    def test_explicit_settlement_amount_still_stores_breakdown(
        self, create_ticket, record_payment
    ):
        ticket = create_ticket(service_charge="150")

        payment = record_payment(ticket, "final_payment", "100")

        assert payment.amount == Decimal("100")
        assert Decimal(payment.payment_calculation["suggested_amount"]) == Decimal("150")

    def test_external_parts_only_on_parts_payments(self, create_ticket, record_payment):
        ticket = create_ticket()
        part = ExternalPart(name="Fan", quantity=1, unit_price=Decimal("15"))

        with pytest.raises(InvalidPaymentTypeError):
            record_payment(ticket, "advance_payment", "15", external_parts=(part,))

    def test_sale_of_another_ticket_rejected(
        self, create_ticket, create_product, create_ticket_sale, record_payment
    ):
        ticket, other = create_ticket(), create_ticket()
        sale = create_ticket_sale(other.id, create_product())

        with pytest.raises(InvalidSaleLinkError):
            record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,))

    def test_sale_listed_on_two_payments_rejected(
        self, create_ticket, create_product, create_ticket_sale, record_payment
    ):
        ticket = create_ticket()
        sale = create_ticket_sale(ticket.id, create_product())
        record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,))

        with pytest.raises(InvalidSaleLinkError):
            record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,))

    def test_sale_listed_twice_on_one_payment_rejected(
        self, create_ticket, create_product, create_ticket_sale, record_payment
    ):
        ticket = create_ticket()
        sale = create_ticket_sale(ticket.id, create_product())

        with pytest.raises(InvalidSaleLinkError):
            record_payment(ticket, "parts_payment", "80", sale_ids=(sale.id, sale.id))

    def test_declined_claim_frees_the_sale(
        self, orchestrator, create_ticket, create_product, create_ticket_sale,
        record_payment, approver_id,
    ):
        ticket = create_ticket()
        sale = create_ticket_sale(ticket.id, create_product())
        first = record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,))
        orchestrator.decline(first.id, approver_id, "wrong part")

        second = record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,))

        assert second.pending_sales_to_complete == (sale.id,)

    def test_recorded_payment_is_audited(self, orchestrator, create_enrollment, record_payment):
        payment = record_payment(create_enrollment(), "admission", "25")

        trace = orchestrator.auditor.get_trace("Payment", payment.id)
        assert trace.actions == (AuditAction.PAYMENT_RECORDED,)


class TestAmend:
    def test_decision_fields_not_amendable(
        self, orchestrator, create_enrollment, record_payment, test_actor_id
    ):
        payment = record_payment(create_enrollment(), "admission", "25")

        with pytest.raises(InvalidAmendmentError) as exc_info:
            orchestrator.amend_payment(payment.id, {"status": "approved"}, test_actor_id)

        assert exc_info.value.field == "status"
        assert orchestrator.get_payment(payment.id).status == PaymentStatus.PENDING

    def test_unknown_field_not_amendable(
        self, orchestrator, create_enrollment, record_payment, test_actor_id
    ):
        payment = record_payment(create_enrollment(), "admission", "25")

        with pytest.raises(InvalidAmendmentError):
            orchestrator.amend_payment(payment.id, {"colour": "blue"}, test_actor_id)

    def test_amend_pending_does_not_recompute(
        self, orchestrator, create_enrollment, record_payment, test_actor_id
    ):
        enrollment = create_enrollment("500")
        payment = record_payment(enrollment, "enrollment", "100")

        amended = orchestrator.amend_payment(
            payment.id, {"amount": "150", "notes": "corrected"}, test_actor_id
        )

        assert amended.amount == Decimal("150")
        assert amended.notes == "corrected"
        assert orchestrator.get_enrollment(enrollment.id).paid_amount == Decimal("0")

    def test_amend_approved_amount_recomputes(
        self, orchestrator, create_enrollment, record_payment, approve, test_actor_id
    ):
        enrollment = create_enrollment("500")
        payment = record_payment(enrollment, "enrollment", "100")
        approve(payment)

        orchestrator.amend_payment(payment.id, PaymentAmendment(amount="250"), test_actor_id)

        reloaded = orchestrator.get_enrollment(enrollment.id)
        assert reloaded.paid_amount == Decimal("250")
        assert reloaded.remaining_amount == Decimal("250")

    def test_amend_approved_type_moves_contribution(
        self, orchestrator, create_enrollment, record_payment, approve, test_actor_id
    ):
        enrollment = create_enrollment("500")
        payment = record_payment(enrollment, "enrollment", "50")
        approve(payment)

        orchestrator.amend_payment(payment.id, {"payment_type": "admission"}, test_actor_id)

        reloaded = orchestrator.get_enrollment(enrollment.id)
        assert reloaded.paid_amount == Decimal("0")
        assert reloaded.admission_fee_amount == Decimal("50")
        assert reloaded.admission_fee_paid is True

    def test_amend_approved_target_recomputes_both(
        self, orchestrator, create_enrollment, record_payment, approve, test_actor_id
    ):
        old, new = create_enrollment("500"), create_enrollment("300")
        payment = record_payment(old, "enrollment", "200")
        approve(payment)

        orchestrator.amend_payment(payment.id, {"target_id": new.id}, test_actor_id)

        assert orchestrator.get_enrollment(old.id).paid_amount == Decimal("0")
        assert orchestrator.get_enrollment(old.id).remaining_amount == Decimal("500")
        assert orchestrator.get_enrollment(new.id).paid_amount == Decimal("200")
        assert orchestrator.get_enrollment(new.id).remaining_amount == Decimal("100")

    def test_amend_checks_remaining_without_own_contribution(
        self, orchestrator, create_enrollment, record_payment, approve, test_actor_id
    ):
        enrollment = create_enrollment("500")
        payment = record_payment(enrollment, "enrollment", "400")
        approve(payment)

        # 500 is allowed: the payment's own 400 is not double counted.
        orchestrator.amend_payment(payment.id, {"amount": "500"}, test_actor_id)
        with pytest.raises(AmountExceedsRemainingError):
            orchestrator.amend_payment(payment.id, {"amount": "501"}, test_actor_id)

        assert orchestrator.get_enrollment(enrollment.id).paid_amount == Decimal("500")

    def test_amend_without_changes_is_noop(
        self, orchestrator, create_enrollment, record_payment, test_actor_id
    ):
        payment = record_payment(create_enrollment(), "admission", "25")

        amended = orchestrator.amend_payment(payment.id, {"amount": "25"}, test_actor_id)

        assert amended == payment
        trace = orchestrator.auditor.get_trace("Payment", payment.id)
        assert AuditAction.PAYMENT_AMENDED not in trace.actions

    def test_amend_is_audited_with_changes(
        self, orchestrator, create_enrollment, record_payment, test_actor_id
    ):
        payment = record_payment(create_enrollment(), "admission", "25")

        orchestrator.amend_payment(payment.id, {"method": "card"}, test_actor_id)

        trace = orchestrator.auditor.get_trace("Payment", payment.id)
        assert trace.last_action == AuditAction.PAYMENT_AMENDED
        assert trace.entries[-1].payload["changes"]["method"] == {"old": "cash", "new": "card"}

    def test_amend_unknown_payment(self, orchestrator, test_actor_id):
        with pytest.raises(PaymentNotFoundError):
            orchestrator.amend_payment(uuid4(), {"notes": "x"}, test_actor_id)

    def test_linked_sales_pin_the_target(
        self, orchestrator, create_ticket, create_product, create_ticket_sale,
        record_payment, test_actor_id,
    ):
        ticket, other = create_ticket(), create_ticket()
        sale = create_ticket_sale(ticket.id, create_product())
        payment = record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,))

        with pytest.raises(InvalidAmendmentError):
            orchestrator.amend_payment(payment.id, {"target_id": other.id}, test_actor_id)

    def test_type_change_cannot_strand_sales(
        self, orchestrator, create_ticket, create_product, create_ticket_sale,
        record_payment, test_actor_id,
    ):
        ticket = create_ticket()
        sale = create_ticket_sale(ticket.id, create_product())
        payment = record_payment(ticket, "parts_payment", "40", sale_ids=(sale.id,))

        with pytest.raises(InvalidAmendmentError):
            orchestrator.amend_payment(
                payment.id, {"payment_type": "advance_payment"}, test_actor_id
            )

    def test_approved_advance_changed_to_fee_leaves_advance_total(
        self, orchestrator, create_ticket, record_payment, approve, test_actor_id
    ):
        ticket = create_ticket(service_charge="150")
        payment = record_payment(ticket, "advance_payment", "100")
        approve(payment)

        orchestrator.amend_payment(payment.id, {"payment_type": "diagnostic_fee"}, test_actor_id)

        reloaded = orchestrator.get_ticket(ticket.id)
        assert reloaded.total_advance_paid == Decimal("0")
        assert reloaded.advance_payment_ids == ()


class TestWithdraw:
    def test_withdraw_pending(self, orchestrator, create_enrollment, record_payment, test_actor_id):
        enrollment = create_enrollment()
        payment = record_payment(enrollment, "admission", "25")

        withdrawn = orchestrator.withdraw_payment(payment.id, test_actor_id)

        assert withdrawn.id == payment.id
        with pytest.raises(PaymentNotFoundError):
            orchestrator.get_payment(payment.id)

    def test_withdraw_approved_restores_balance(
        self, orchestrator, create_enrollment, record_payment, approve, test_actor_id
    ):
        enrollment = create_enrollment("500")
        keep = record_payment(enrollment, "enrollment", "100")
        drop = record_payment(enrollment, "enrollment", "200")
        approve(keep)
        approve(drop)
        assert orchestrator.get_enrollment(enrollment.id).paid_amount == Decimal("300")

        orchestrator.withdraw_payment(drop.id, test_actor_id)

        reloaded = orchestrator.get_enrollment(enrollment.id)
        assert reloaded.paid_amount == Decimal("100")
        assert reloaded.remaining_amount == Decimal("400")

    def test_withdraw_unknown(self, orchestrator, test_actor_id):
        with pytest.raises(PaymentNotFoundError):
            orchestrator.withdraw_payment(uuid4(), test_actor_id)

    def test_withdraw_is_audited(
        self, orchestrator, create_enrollment, record_payment, test_actor_id
    ):
        payment = record_payment(create_enrollment(), "admission", "25")

        orchestrator.withdraw_payment(payment.id, test_actor_id)

        trace = orchestrator.auditor.get_trace("Payment", payment.id)
        assert trace.actions == (AuditAction.PAYMENT_RECORDED, AuditAction.PAYMENT_WITHDRAWN)


class TestReads:
    def test_list_and_summary(
        self, orchestrator, create_enrollment, record_payment, approve, approver_id
    ):
        enrollment = create_enrollment("500")
        a = record_payment(enrollment, "enrollment", "100")
        b = record_payment(enrollment, "admission", "20")
        c = record_payment(enrollment, "exam", "30")
        approve(a)
        orchestrator.decline(b.id, approver_id, "duplicate")

        pending = orchestrator.list_payments(status=PaymentStatus.PENDING)
        summary = orchestrator.payment_summary(TargetType.ENROLLMENT, enrollment.id)

        assert [p.id for p in pending] == [c.id]
        assert summary.pending_count == 1
        assert summary.approved_total == Decimal("100")

    def test_list_newest_receipt_first(self, orchestrator, create_enrollment, record_payment):
        enrollment = create_enrollment()
        first = record_payment(enrollment, "admission", "1")
        second = record_payment(enrollment, "exam", "1")

        listed = orchestrator.list_payments(target_id=enrollment.id)

        assert [p.id for p in listed] == [second.id, first.id]
