"""
Tests for SequenceService and the audit hash chain.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select, text

from ledger_kernel.exceptions import AuditChainBrokenError, ImmutabilityViolationError
from ledger_kernel.models.audit_event import AuditAction, AuditEvent
from ledger_kernel.services.sequence_service import SequenceService


class TestSequenceService:
    def test_values_are_monotonic(self, session):
        sequence = SequenceService(session)

        values = [sequence.next_value("test.counter") for _ in range(5)]

        assert values == [1, 2, 3, 4, 5]
        assert sequence.current_value("test.counter") == 5

    def test_unknown_sequence_has_no_value(self, session):
        assert SequenceService(session).current_value("never.used") is None

    def test_numbers_are_padded(self, session):
        sequence = SequenceService(session)

        assert sequence.next_number("test.numbered", "PV-", 6) == "PV-000001"
        assert sequence.next_number("test.numbered", "PV-", 6) == "PV-000002"

    def test_sequences_are_independent(self, session):
        sequence = SequenceService(session)
        sequence.next_value("a")
        sequence.next_value("a")

        assert sequence.next_value("b") == 1


class TestAuditChain:
    def _payment_activity(self, record_payment, approve, create_enrollment):
        enrollment = create_enrollment("500")
        approve(record_payment(enrollment, "enrollment", "100"))
        approve(record_payment(enrollment, "admission", "50"))

    def test_chain_validates(self, orchestrator, record_payment, approve, create_enrollment):
        self._payment_activity(record_payment, approve, create_enrollment)

        assert orchestrator.auditor.validate_chain() is True

    def test_empty_chain_validates(self, orchestrator):
        assert orchestrator.auditor.validate_chain() is True

    def test_trace_follows_payment_lifecycle(
        self, orchestrator, create_enrollment, record_payment, test_actor_id
    ):
        payment = record_payment(create_enrollment(), "enrollment", "100")
        orchestrator.amend_payment(payment.id, {"amount": "120"}, test_actor_id)
        orchestrator.withdraw_payment(payment.id, test_actor_id)

        trace = orchestrator.auditor.get_trace("Payment", payment.id)

        assert trace.actions == (
            AuditAction.PAYMENT_RECORDED,
            AuditAction.PAYMENT_AMENDED,
            AuditAction.PAYMENT_WITHDRAWN,
        )
        assert [e.seq for e in trace.entries] == sorted(e.seq for e in trace.entries)

    def test_tampered_hash_detected(
        self, orchestrator, session, record_payment, approve, create_enrollment
    ):
        self._payment_activity(record_payment, approve, create_enrollment)
        session.execute(text("UPDATE audit_events SET hash = :h WHERE seq = 2"), {"h": "0" * 64})
        session.commit()
        session.expire_all()

        with pytest.raises(AuditChainBrokenError):
            orchestrator.auditor.validate_chain()

    def test_orm_update_blocked(self, orchestrator, session, create_enrollment, record_payment):
        record_payment(create_enrollment(), "admission", "50")
        event = session.execute(select(AuditEvent).limit(1)).scalar_one()

        event.actor_id = uuid4()
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_orm_delete_blocked(self, orchestrator, session, create_enrollment, record_payment):
        record_payment(create_enrollment(), "admission", "50")
        event = session.execute(select(AuditEvent).limit(1)).scalar_one()

        session.delete(event)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
