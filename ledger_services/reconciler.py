"""
ledger_services.reconciler -- the single post-mutation recompute hook.

Every path that can change which payments are approved for a target
(decision, amendment, withdrawal, ticket cost edit) ends here, so the
two calculators are invoked from exactly one place.
"""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from ledger_kernel.domain.payments import TargetType
from ledger_kernel.domain.targets import Enrollment, ServiceTicket
from ledger_kernel.logging_config import get_logger
from ledger_services.enrollment_balance import EnrollmentBalanceCalculator
from ledger_services.service_balance import ServiceBalanceCalculator
from ledger_services.target_locks import TargetKey

logger = get_logger("services.reconciler")


class BalanceReconciler:
    def __init__(
        self,
        enrollments: EnrollmentBalanceCalculator,
        tickets: ServiceBalanceCalculator,
    ):
        self._enrollments = enrollments
        self._tickets = tickets

    def reconcile(self, target_type: TargetType, target_id: UUID) -> Enrollment | ServiceTicket:
        match target_type:
            case TargetType.ENROLLMENT:
                return self._enrollments.recompute(target_id)
            case TargetType.SERVICE_TICKET:
                return self._tickets.recompute(target_id)

    def reconcile_all(self, targets: Iterable[TargetKey]) -> list[Enrollment | ServiceTicket]:
        """Reconcile each distinct target once, in a stable order."""
        keys = sorted(set(targets), key=lambda k: (k[0].value, str(k[1])))
        if len(keys) > 1:
            logger.debug("reconcile_many", extra={"targets": [f"{t.value}:{i}" for t, i in keys]})
        return [self.reconcile(target_type, target_id) for target_type, target_id in keys]
