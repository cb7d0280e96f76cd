"""
SequenceService -- document numbering via locked counter rows.

Responsibility:
    Hands out receipt numbers (``PV-``/``SP-``), invoice numbers
    (``INV-``/``SRV-``), ticket numbers (``ST-``) and audit sequence
    values.  Each named sequence is one counter row, read with
    ``SELECT ... FOR UPDATE`` and incremented in place.

Architecture position:
    Kernel > Services -- called by PaymentLedger, InvoiceService,
    TargetService and AuditorService.

Invariants enforced:
    - Monotonic per sequence name.  The aggregate-max-plus-one query is
      never used; the counter row is the sole source of truth.
    - Transactional: a rolled-back transaction gives its number back.

Failure modes:
    - IntegrityError on a concurrent first use of a sequence is absorbed
      by a savepoint rollback and a re-read of the winner's row.
"""

from sqlalchemy import String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from ledger_kernel.db.base import Base
from ledger_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """One row per named sequence."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(nullable=False, default=0)


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    AUDIT_EVENT = "audit_event"
    ENROLLMENT_RECEIPT = "receipt.enrollment"
    SERVICE_RECEIPT = "receipt.service"
    SALE_INVOICE = "invoice.sale"
    SERVICE_INVOICE = "invoice.service"
    SERVICE_TICKET = "service_ticket"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock, increment and return the next value of ``sequence_name``.

        Postconditions:
            - Returns an integer > 0 strictly greater than any value
              previously committed for this name.
            - The counter row stays locked until the transaction ends.
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def next_number(self, sequence_name: str, prefix: str, width: int) -> str:
        """Allocate the next value and render it as ``<prefix><zero-padded>``."""
        return f"{prefix}{self.next_value(sequence_name):0{width}d}"

    def current_value(self, sequence_name: str) -> int | None:
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None
