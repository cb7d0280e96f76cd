"""
ledger_services.enrollment_balance -- Enrollment reconciliation.

Responsibility:
    Rewrites an enrollment's derived balance fields from its approved
    payments: gather the approved set, run the pure
    ``EnrollmentBalanceEngine``, write every field back in one flush.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    The only writer of ``EnrollmentModel``'s derived columns.

Invariants enforced:
    - Full recompute from the approved set; never add or subtract.
    - ``paid_amount + remaining_amount == total_amount`` after every call.
    - Idempotent: a second call with nothing changed in between writes
      nothing, so the row's version does not move.

Failure modes:
    - TargetNotFoundError for an unknown enrollment.
    - OptimisticLockError if the row's version moved under the flush.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_engines.enrollment_balance import EnrollmentBalanceEngine
from ledger_kernel.domain.payments import EnrollmentPayment, TargetType
from ledger_kernel.domain.targets import Enrollment
from ledger_kernel.logging_config import get_logger
from ledger_kernel.selectors.payment_selector import PaymentSelector
from ledger_kernel.services.target_guard import TargetGuard

logger = get_logger("services.enrollment_balance")


class EnrollmentBalanceCalculator:
    """Derives enrollment balances from the approved-payment set.

    Contract:
        ``recompute(enrollment_id)`` leaves the enrollment row equal to
        ``EnrollmentBalanceEngine.compute`` over its approved payments.

    Non-goals:
        - Does NOT validate payments (PaymentLedger does).
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        guard: TargetGuard,
        selector: PaymentSelector,
        engine: EnrollmentBalanceEngine | None = None,
    ):
        self._session = session
        self._guard = guard
        self._selector = selector
        self._engine = engine or EnrollmentBalanceEngine()

    def approved_payments(self, enrollment_id: UUID) -> list[EnrollmentPayment]:
        return [
            p for p in self._selector.approved_for_target(TargetType.ENROLLMENT, enrollment_id)
            if isinstance(p, EnrollmentPayment)
        ]

    def remaining_excluding(self, enrollment_id: UUID, payment_id: UUID) -> Decimal:
        """Remaining balance with ``payment_id``'s own approved
        contribution left out: what an amended amount is validated against."""
        enrollment = self._guard.load(TargetType.ENROLLMENT, enrollment_id)
        return self._engine.remaining_after(
            total_amount=enrollment.total_amount,
            payments=self.approved_payments(enrollment_id),
            excluding=frozenset({payment_id}),
        )

    def recompute(self, enrollment_id: UUID) -> Enrollment:
        enrollment = self._guard.lock_enrollment(enrollment_id)
        balance = self._engine.compute(
            total_amount=enrollment.total_amount,
            payments=self.approved_payments(enrollment_id),
        )

        changed = {
            name: value
            for name, value in balance.as_fields().items()
            if getattr(enrollment, name) != value
        }
        for name, value in changed.items():
            setattr(enrollment, name, value)
        if changed:
            self._guard.flush(enrollment)

        logger.info(
            "enrollment_recomputed",
            extra={
                "enrollment_id": str(enrollment_id),
                "paid_amount": str(balance.paid_amount),
                "remaining_amount": str(balance.remaining_amount),
                "changed_fields": sorted(changed),
            },
        )
        return enrollment.to_dto()
