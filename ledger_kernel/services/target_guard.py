"""
TargetGuard -- single-writer access to enrollments and service tickets.

Responsibility:
    Loads a payment target for mutation with ``SELECT ... FOR UPDATE`` and
    translates SQLAlchemy's optimistic-version failure into the ledger's
    ``OptimisticLockError``.

Architecture position:
    Kernel > Services.  Used by every writer of a target row: the balance
    calculators, PaymentLedger (remaining-balance validation) and
    TargetService.

Invariants enforced:
    - A target row is only written while locked by the current
      transaction (PostgreSQL) or while the transaction holds the
      database write lock (SQLite, ``BEGIN IMMEDIATE``).
    - A flush against a stale ``version`` never succeeds silently.

Failure modes:
    - TargetNotFoundError: no row with that id.
    - OptimisticLockError: the row's version moved under this session.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from ledger_kernel.domain.payments import TargetType
from ledger_kernel.exceptions import OptimisticLockError, TargetNotFoundError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.enrollment import EnrollmentModel
from ledger_kernel.models.service_ticket import ServiceTicketModel
from ledger_kernel.services.base import BaseService

logger = get_logger("services.target_guard")

TargetModel = EnrollmentModel | ServiceTicketModel

_TARGET_MODELS: dict[TargetType, type[TargetModel]] = {
    TargetType.ENROLLMENT: EnrollmentModel,
    TargetType.SERVICE_TICKET: ServiceTicketModel,
}


class TargetGuard(BaseService):
    """Locked loads and version-checked flushes for payment targets."""

    @contextmanager
    def version_checked(self, target_type: TargetType, target_id: UUID) -> Iterator[None]:
        """Raise OptimisticLockError for a StaleDataError inside the block."""
        try:
            yield
        except StaleDataError as exc:
            logger.warning(
                "optimistic_lock_conflict",
                extra={"target_type": target_type.value, "target_id": str(target_id)},
            )
            raise OptimisticLockError(target_type.value, str(target_id)) from exc

    def lock(self, target_type: TargetType, target_id: UUID) -> TargetModel:
        model_cls = _TARGET_MODELS[target_type]
        with self.version_checked(target_type, target_id):
            target = self.session.execute(
                select(model_cls)
                .where(model_cls.id == target_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        if target is None:
            raise TargetNotFoundError(target_type.value, str(target_id))
        return target

    def lock_enrollment(self, enrollment_id: UUID) -> EnrollmentModel:
        return self.lock(TargetType.ENROLLMENT, enrollment_id)

    def lock_ticket(self, ticket_id: UUID) -> ServiceTicketModel:
        return self.lock(TargetType.SERVICE_TICKET, ticket_id)

    def load(self, target_type: TargetType, target_id: UUID) -> TargetModel:
        """Unlocked load for validation-only reads."""
        target = self.session.get(_TARGET_MODELS[target_type], target_id)
        if target is None:
            raise TargetNotFoundError(target_type.value, str(target_id))
        return target

    def flush(self, target: TargetModel) -> None:
        target_type = (
            TargetType.ENROLLMENT
            if isinstance(target, EnrollmentModel)
            else TargetType.SERVICE_TICKET
        )
        with self.version_checked(target_type, target.id):
            self.session.flush()
