"""
ledger_services.payment_orchestrator -- DI container and unit of work.

Responsibility:
    Creates every kernel service and ledger component exactly once,
    wires them from ``LedgerConfig``, and runs each public operation as
    one unit of work: "mutate payment -> dispatch -> recompute" commits
    together or not at all.

Architecture position:
    Services -- top of the stack.  The only place ledger components are
    constructed and the only place a ledger transaction is committed.

Invariants enforced:
    - Single writer per target: the unit holds the in-process lock of
      every target it touches (sorted, so two units never deadlock) and
      reads those target rows with ``SELECT ... FOR UPDATE``.
    - A stale optimistic version rolls the whole unit back and retries it
      with exponential backoff, up to ``max_conflict_retries`` times.
    - A store failure rolls back and surfaces as StoreWriteError: state
      is pre-mutation.
    - With ``auto_commit=False`` the caller owns the transaction and no
      locking or retry happens here.

Failure modes:
    - Any LedgerError raised by a component, after rollback.
    - OptimisticLockError once the retry budget is spent.
    - StoreWriteError for database failures.

Usage:
    from ledger_services import PaymentOrchestrator

    ledger = PaymentOrchestrator(session, config=config, clock=clock)
    payment = ledger.record_payment(draft, actor_id)
    result = ledger.decide(payment.id, "approve", None, approver_id)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ledger_config import LedgerConfig, get_active_config
from ledger_engines.service_balance import SmartCalculation
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.payments import (
    ApprovalAction,
    Payment,
    PaymentAmendment,
    PaymentDraft,
    PaymentStatus,
    PaymentType,
    TargetType,
    parse_target_type,
)
from ledger_kernel.domain.targets import (
    Enrollment,
    Invoice,
    Product,
    Sale,
    SaleLine,
    ServiceTicket,
)
from ledger_kernel.exceptions import (
    LedgerError,
    OptimisticLockError,
    PaymentNotFoundError,
    StoreWriteError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.selectors.payment_selector import PaymentSelector, PaymentSummary
from ledger_kernel.selectors.target_selector import TargetSelector
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.invoice_service import InvoiceGeneration, InvoiceService
from ledger_kernel.services.sale_service import SaleService, StockService
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.target_guard import TargetGuard
from ledger_kernel.services.target_service import TargetService
from ledger_services.approval_workflow import ApprovalWorkflow, DecisionResult
from ledger_services.enrollment_balance import EnrollmentBalanceCalculator
from ledger_services.payment_ledger import PaymentLedger
from ledger_services.reconciler import BalanceReconciler
from ledger_services.service_balance import ServiceBalanceCalculator
from ledger_services.side_effects import SideEffectDispatcher
from ledger_services.target_locks import TargetKey, TargetLockRegistry, default_registry

logger = get_logger("services.payment_orchestrator")

T = TypeVar("T")


def _no_targets() -> list[TargetKey]:
    return []


def _target_fields(held: list[TargetKey]) -> dict[str, Any]:
    if len(held) != 1:
        return {}
    target_type, target_id = held[0]
    return {"target_type": target_type, "target_id": target_id}


class PaymentOrchestrator:
    """Central factory and transaction owner for the payment ledger.

    Contract:
        Receives a Session and optional LedgerConfig / Clock.  Constructs
        each service once, in dependency order, and exposes them as
        public attributes.

    Guarantees:
        - All services share one Session and one Clock.
        - Every public mutating method commits on success and rolls back
          on failure (``auto_commit=True``).

    Non-goals:
        - Does NOT own the Session lifecycle (no close).
    """

    def __init__(
        self,
        session: Session,
        config: LedgerConfig | None = None,
        clock: Clock | None = None,
        *,
        auto_commit: bool = True,
        locks: TargetLockRegistry | None = None,
        retry_backoff: float = 0.05,
    ) -> None:
        self._session = session
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._auto_commit = auto_commit
        self._locks = locks if locks is not None else default_registry
        self._retry_backoff = retry_backoff
        numbering = self._config.numbering

        # Foundational kernel services
        self.sequence = SequenceService(session)
        self.auditor = AuditorService(session, self._clock)
        self.guard = TargetGuard(session)
        self.payment_selector = PaymentSelector(session)
        self.target_selector = TargetSelector(session)

        # Collaborators the ledger drives
        self.stock = StockService(session, clamp_at_zero=self._config.clamp_stock_at_zero)
        self.sales = SaleService(
            session,
            self.stock,
            self.auditor,
            self._clock,
            sale_tax_rate=self._config.sale_tax_rate,
        )
        self.invoices = InvoiceService(
            session,
            self.sequence,
            self.auditor,
            self._clock,
            service_tax_rate=self._config.service_tax_rate,
            due_days=self._config.invoice_due_days,
            sale_prefix=numbering.sale_invoice_prefix,
            service_prefix=numbering.service_invoice_prefix,
            number_width=numbering.number_width,
        )
        self.targets = TargetService(
            session,
            self.sequence,
            self.auditor,
            self.invoices,
            self.guard,
            self._clock,
            ticket_prefix=numbering.ticket_prefix,
            number_width=numbering.number_width,
        )

        # Ledger components
        self.enrollment_balance = EnrollmentBalanceCalculator(
            session, self.guard, self.payment_selector
        )
        self.service_balance = ServiceBalanceCalculator(session, self.guard, self.payment_selector)
        self.reconciler = BalanceReconciler(self.enrollment_balance, self.service_balance)
        self.ledger = PaymentLedger(
            session,
            self.sequence,
            self.auditor,
            self.guard,
            self.payment_selector,
            self.sales,
            self.enrollment_balance,
            self.service_balance,
            self.reconciler,
            self._clock,
            enrollment_prefix=numbering.enrollment_receipt_prefix,
            service_prefix=numbering.service_receipt_prefix,
            number_width=numbering.number_width,
        )
        self.dispatcher = SideEffectDispatcher(
            session, self.sales, self.invoices, self.auditor, self._clock
        )
        self.workflow = ApprovalWorkflow(
            session,
            self.guard,
            self.dispatcher,
            self.reconciler,
            self.auditor,
            self._clock,
        )

    @property
    def config(self) -> LedgerConfig:
        return self._config

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _commit(self, operation: str) -> None:
        try:
            self._session.commit()
        except StaleDataError as exc:
            self._session.rollback()
            raise OptimisticLockError("target", operation) from exc
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise StoreWriteError(operation, str(exc)) from exc

    def _run(
        self,
        operation: str,
        fn: Callable[[list[TargetKey]], T],
        *,
        actor_id: UUID | None = None,
        targets: Callable[[], Iterable[TargetKey]] = _no_targets,
        **context: Any,
    ) -> T:
        with LogContext.bind(
            correlation_id=uuid4(), operation=operation, actor_id=actor_id, **context
        ):
            logger.info("operation_started")
            t0 = time.monotonic()

            if not self._auto_commit:
                result = fn(list(targets()))
                logger.info("operation_completed")
                return result

            attempt = 0
            while True:
                try:
                    keys = list(targets())
                    if keys:
                        # End the read that located the targets before
                        # queueing for their locks.
                        self._session.rollback()
                    with self._locks.hold(keys) as held:
                        LogContext.update(**_target_fields(held))
                        result = fn(held)
                        self._commit(operation)
                except OptimisticLockError:
                    self._session.rollback()
                    if attempt >= self._config.max_conflict_retries:
                        logger.error(
                            "operation_conflict_exhausted",
                            extra={"attempts": attempt + 1},
                        )
                        raise
                    attempt += 1
                    delay = self._retry_backoff * (2 ** (attempt - 1))
                    logger.warning(
                        "operation_conflict_retry",
                        extra={"attempt": attempt, "delay_s": delay},
                    )
                    time.sleep(delay)
                    continue
                except LedgerError as exc:
                    self._session.rollback()
                    logger.warning(
                        "operation_rejected",
                        extra={"error_code": exc.code},
                    )
                    raise
                except SQLAlchemyError as exc:
                    self._session.rollback()
                    logger.error("operation_failed", exc_info=True)
                    raise StoreWriteError(operation, str(exc)) from exc
                except Exception:
                    self._session.rollback()
                    logger.error("operation_failed", exc_info=True)
                    raise

                logger.info(
                    "operation_completed",
                    extra={
                        "attempts": attempt + 1,
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    },
                )
                return result

    def _read(self, fn: Callable[[], T]) -> T:
        """Run a read and end its transaction so no lock outlives it."""
        try:
            return fn()
        finally:
            if self._auto_commit:
                self._session.rollback()

    def _payment_targets(self, payment_id: UUID, *extra: UUID | None) -> list[TargetKey]:
        payment = self.payment_selector.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        keys = [(payment.target_type, payment.target_id)]
        keys.extend((payment.target_type, t) for t in extra if t is not None)
        return keys

    def _check_payment_locked(self, payment_id: UUID, held: list[TargetKey]) -> None:
        """The payment may have moved between locating and locking its target."""
        payment = self.payment_selector.get(payment_id)
        if payment is not None and held and (payment.target_type, payment.target_id) not in held:
            raise OptimisticLockError("payment", str(payment_id))

    # ------------------------------------------------------------------
    # Targets and collaborators
    # ------------------------------------------------------------------

    def create_enrollment(
        self,
        student_id: UUID,
        batch_id: UUID,
        total_amount: Decimal | int | str,
        actor_id: UUID,
    ) -> Enrollment:
        return self._run(
            "create_enrollment",
            lambda held: self.targets.create_enrollment(student_id, batch_id, total_amount, actor_id),
            actor_id=actor_id,
        )

    def create_service_ticket(self, customer_id: UUID, actor_id: UUID, **costs: Any) -> ServiceTicket:
        return self._run(
            "create_service_ticket",
            lambda held: self.targets.create_service_ticket(customer_id, actor_id, **costs),
            actor_id=actor_id,
        )

    def update_ticket_costs(self, ticket_id: UUID, actor_id: UUID, **costs: Any) -> ServiceTicket:
        """Edit a ticket's entered costs and re-derive its parts cost."""

        def unit(held: list[TargetKey]) -> ServiceTicket:
            self.targets.update_ticket_costs(ticket_id, actor_id, **costs)
            return self.reconciler.reconcile(TargetType.SERVICE_TICKET, ticket_id)

        return self._run(
            "update_ticket_costs",
            unit,
            actor_id=actor_id,
            target_id=ticket_id,
            targets=lambda: [(TargetType.SERVICE_TICKET, ticket_id)],
        )

    def complete_service_ticket(
        self, ticket_id: UUID, actor_id: UUID
    ) -> tuple[ServiceTicket, InvoiceGeneration]:
        return self._run(
            "complete_service_ticket",
            lambda held: self.targets.complete_service_ticket(ticket_id, actor_id),
            actor_id=actor_id,
            target_id=ticket_id,
            targets=lambda: [(TargetType.SERVICE_TICKET, ticket_id)],
        )

    def register_product(
        self,
        sku: str,
        name: str,
        unit_price: Decimal | int | str,
        stock: int,
        actor_id: UUID,
    ) -> Product:
        return self._run(
            "register_product",
            lambda held: self.stock.register_product(sku, name, unit_price, stock, actor_id),
            actor_id=actor_id,
        )

    def adjust_stock(self, product_id: UUID, delta: int, actor_id: UUID) -> Product:
        return self._run(
            "adjust_stock",
            lambda held: self.stock.adjust_stock(product_id, delta),
            actor_id=actor_id,
        )

    def create_sale(
        self,
        customer_id: UUID,
        lines: Sequence[SaleLine],
        actor_id: UUID,
        **options: Any,
    ) -> Sale:
        ticket_id = options.get("service_ticket_id")
        return self._run(
            "create_sale",
            lambda held: self.sales.create_sale(customer_id, lines, actor_id, **options),
            actor_id=actor_id,
            target_id=ticket_id,
            targets=lambda: [(TargetType.SERVICE_TICKET, ticket_id)] if ticket_id else [],
        )

    def generate_sale_invoice(self, sale_id: UUID, actor_id: UUID) -> InvoiceGeneration:
        return self._run(
            "generate_sale_invoice",
            lambda held: self.invoices.generate_for_sale(sale_id, actor_id),
            actor_id=actor_id,
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(self, draft: PaymentDraft, actor_id: UUID) -> Payment:
        return self._run(
            "record_payment",
            lambda held: self.ledger.record(draft, actor_id),
            actor_id=actor_id,
            target_id=draft.target_id,
            targets=lambda: [
                (parse_target_type(draft.target_type, draft.target_id), draft.target_id)
            ],
        )

    def amend_payment(
        self,
        payment_id: UUID,
        fields: PaymentAmendment | dict[str, Any],
        actor_id: UUID,
    ) -> Payment:
        amendment = (
            fields if isinstance(fields, PaymentAmendment) else PaymentAmendment.from_fields(fields)
        )

        def unit(held: list[TargetKey]) -> Payment:
            self._check_payment_locked(payment_id, held)
            return self.ledger.amend(payment_id, amendment, actor_id)

        return self._run(
            "amend_payment",
            unit,
            actor_id=actor_id,
            payment_id=payment_id,
            targets=lambda: self._payment_targets(payment_id, amendment.target_id),
        )

    def withdraw_payment(self, payment_id: UUID, actor_id: UUID) -> Payment:
        def unit(held: list[TargetKey]) -> Payment:
            self._check_payment_locked(payment_id, held)
            return self.ledger.withdraw(payment_id, actor_id)

        return self._run(
            "withdraw_payment",
            unit,
            actor_id=actor_id,
            payment_id=payment_id,
            targets=lambda: self._payment_targets(payment_id),
        )

    def decide(
        self,
        payment_id: UUID,
        action: ApprovalAction | str,
        message: str | None,
        actor_id: UUID,
    ) -> DecisionResult:
        def unit(held: list[TargetKey]) -> DecisionResult:
            self._check_payment_locked(payment_id, held)
            return self.workflow.decide(payment_id, action, message, actor_id)

        return self._run(
            "decide_payment",
            unit,
            actor_id=actor_id,
            payment_id=payment_id,
            targets=lambda: self._payment_targets(payment_id),
        )

    def approve(self, payment_id: UUID, actor_id: UUID, message: str | None = None) -> DecisionResult:
        return self.decide(payment_id, ApprovalAction.APPROVE, message, actor_id)

    def decline(self, payment_id: UUID, actor_id: UUID, message: str) -> DecisionResult:
        return self.decide(payment_id, ApprovalAction.DECLINE, message, actor_id)

    def retry_side_effects(self, payment_id: UUID, actor_id: UUID) -> DecisionResult:
        def unit(held: list[TargetKey]) -> DecisionResult:
            self._check_payment_locked(payment_id, held)
            return self.workflow.retry_side_effects(payment_id, actor_id)

        return self._run(
            "retry_side_effects",
            unit,
            actor_id=actor_id,
            payment_id=payment_id,
            targets=lambda: self._payment_targets(payment_id),
        )

    def raise_refund(self, ticket_id: UUID, actor_id: UUID, **options: Any) -> Payment | None:
        return self._run(
            "raise_refund",
            lambda held: self.ledger.raise_refund(ticket_id, actor_id, **options),
            actor_id=actor_id,
            target_id=ticket_id,
            targets=lambda: [(TargetType.SERVICE_TICKET, ticket_id)],
        )

    def recompute(self, target_type: TargetType, target_id: UUID) -> Enrollment | ServiceTicket:
        """Reconcile a target on demand.  A no-op write when already consistent."""
        return self._run(
            "recompute",
            lambda held: self.reconciler.reconcile(target_type, target_id),
            target_id=target_id,
            targets=lambda: [(target_type, target_id)],
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def calculate(self, ticket_id: UUID) -> SmartCalculation:
        return self._read(lambda: self.service_balance.calculate(ticket_id))

    def get_payment(self, payment_id: UUID) -> Payment:
        return self._read(lambda: self.ledger.get(payment_id))

    def list_payments(
        self,
        *,
        status: PaymentStatus | None = None,
        target_type: TargetType | None = None,
        target_id: UUID | None = None,
        payment_type: PaymentType | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Payment]:
        return self._read(
            lambda: self.payment_selector.list_payments(
                status=status,
                target_type=target_type,
                target_id=target_id,
                payment_type=payment_type,
                limit=limit,
                offset=offset,
            )
        )

    def payment_summary(
        self,
        target_type: TargetType | None = None,
        target_id: UUID | None = None,
    ) -> PaymentSummary:
        return self._read(lambda: self.payment_selector.summary(target_type, target_id))

    def get_enrollment(self, enrollment_id: UUID) -> Enrollment | None:
        return self._read(lambda: self.target_selector.get_enrollment(enrollment_id))

    def get_ticket(self, ticket_id: UUID) -> ServiceTicket | None:
        return self._read(lambda: self.target_selector.get_ticket(ticket_id))

    def get_sale(self, sale_id: UUID) -> Sale | None:
        return self._read(lambda: self.target_selector.get_sale(sale_id))

    def get_product(self, product_id: UUID) -> Product | None:
        return self._read(lambda: self.target_selector.get_product(product_id))

    def invoice_for_sale(self, sale_id: UUID) -> Invoice | None:
        return self._read(lambda: self.target_selector.invoice_for_sale(sale_id))

    def invoice_for_ticket(self, ticket_id: UUID) -> Invoice | None:
        return self._read(lambda: self.target_selector.invoice_for_ticket(ticket_id))
