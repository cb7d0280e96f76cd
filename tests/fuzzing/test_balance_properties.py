"""
Property-based tests for the balance engines.

Boundaries fuzzed here:
- Enrollment: paid + remaining == total over any approved/pending/declined mix
- Enrollment: payment order never changes the result
- Smart calculation: exactly one of due / refund is non-zero, neither negative
- Ticket totals: total advance equals the approved advance sum
- Recompute determinism: identical inputs give identical outputs
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from ledger_engines.enrollment_balance import EnrollmentBalanceEngine
from ledger_engines.service_balance import ServiceBalanceEngine, SettlementOutcome
from ledger_kernel.domain.payments import (
    ZERO,
    EnrollmentPayment,
    EnrollmentPaymentType,
    PaymentStatus,
    ServicePayment,
    ServicePaymentType,
)

amounts = st.decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("100000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
non_negative = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("100000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
statuses = st.sampled_from(list(PaymentStatus))

# The suite-wide autouse log-context fixture is function scoped.
_FIXTURES_OK = [HealthCheck.function_scoped_fixture]


@st.composite
def enrollment_payments(draw):
    return EnrollmentPayment(
        id=uuid4(),
        receipt_number="PV-000001",
        target_id=uuid4(),
        amount=draw(amounts),
        method="cash",
        payment_date=date(2024, 3, 1),
        received_by="",
        notes="",
        status=draw(statuses),
        payment_type=draw(st.sampled_from(list(EnrollmentPaymentType))),
    )


@st.composite
def service_payments(draw):
    payment_type = draw(st.sampled_from(list(ServicePaymentType)))
    applied = None
    if payment_type == ServicePaymentType.PARTS_PAYMENT:
        applied = draw(st.one_of(st.none(), non_negative))
    return ServicePayment(
        id=uuid4(),
        receipt_number="SP-000001",
        target_id=uuid4(),
        amount=draw(amounts),
        method="cash",
        payment_date=date(2024, 3, 1),
        received_by="",
        notes="",
        status=draw(statuses),
        payment_type=payment_type,
        parts_cost_applied=applied,
    )


class TestEnrollmentProperties:
    @given(total=non_negative, payments=st.lists(enrollment_payments(), max_size=20))
    @settings(max_examples=200, suppress_health_check=_FIXTURES_OK)
    def test_paid_plus_remaining_is_total(self, total, payments):
        balance = EnrollmentBalanceEngine().compute(total_amount=total, payments=payments)

        assert balance.paid_amount + balance.remaining_amount == total

    @given(payments=st.lists(enrollment_payments(), max_size=20))
    @settings(max_examples=200, suppress_health_check=_FIXTURES_OK)
    def test_paid_is_sum_of_approved_enrollment_payments(self, payments):
        balance = EnrollmentBalanceEngine().compute(total_amount=Decimal("1000"), payments=payments)

        expected = sum(
            (
                p.amount
                for p in payments
                if p.status == PaymentStatus.APPROVED
                and p.payment_type == EnrollmentPaymentType.ENROLLMENT
            ),
            ZERO,
        )
        assert balance.paid_amount == expected

    @given(payments=st.lists(enrollment_payments(), max_size=20), data=st.data())
    @settings(max_examples=100, suppress_health_check=_FIXTURES_OK)
    def test_order_independent(self, payments, data):
        shuffled = data.draw(st.permutations(payments))
        engine = EnrollmentBalanceEngine()

        a = engine.compute(total_amount=Decimal("500"), payments=payments)
        b = engine.compute(total_amount=Decimal("500"), payments=shuffled)

        assert a == b


class TestServiceProperties:
    @given(
        charge=non_negative,
        fee=non_negative,
        parts=non_negative,
        payments=st.lists(service_payments(), max_size=20),
    )
    @settings(max_examples=200, suppress_health_check=_FIXTURES_OK)
    def test_due_and_refund_exclusive(self, charge, fee, parts, payments):
        calc = ServiceBalanceEngine().calculate(
            service_charge=charge, diagnostic_fee=fee, parts_cost=parts, payments=payments
        )

        assert calc.amount_due >= ZERO
        assert calc.refund_due >= ZERO
        assert calc.amount_due == ZERO or calc.refund_due == ZERO
        assert calc.suggested_amount == calc.amount_due
        assert calc.amount_due - calc.refund_due == calc.remaining_balance
        if calc.outcome == SettlementOutcome.SETTLED:
            assert calc.remaining_balance == ZERO

    @given(payments=st.lists(service_payments(), max_size=20))
    @settings(max_examples=200, suppress_health_check=_FIXTURES_OK)
    def test_total_advance_is_approved_advance_sum(self, payments):
        engine = ServiceBalanceEngine()
        totals = engine.derive_totals(base_parts_cost=ZERO, payments=payments)
        calc = engine.calculate(
            service_charge=ZERO, diagnostic_fee=ZERO, parts_cost=ZERO, payments=payments
        )

        expected = sum(
            (
                p.amount
                for p in payments
                if p.status == PaymentStatus.APPROVED
                and p.payment_type == ServicePaymentType.ADVANCE_PAYMENT
            ),
            ZERO,
        )
        assert totals.total_advance_paid == expected
        assert calc.total_advance == expected

    @given(base=non_negative, payments=st.lists(service_payments(), max_size=20))
    @settings(max_examples=100, suppress_health_check=_FIXTURES_OK)
    def test_derive_totals_deterministic(self, base, payments):
        engine = ServiceBalanceEngine()

        assert engine.derive_totals(base_parts_cost=base, payments=payments) == (
            engine.derive_totals(base_parts_cost=base, payments=payments)
        )
