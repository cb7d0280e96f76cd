"""
ledger_services.side_effects -- Cross-entity effects of an approval.

Responsibility:
    When a payment is approved, applies what the approval means outside
    the payment itself.  For a parts payment: complete each held sale it
    lists (drawing the sale's stock), invoice the sale, and record on the
    payment the parts cost it adds to its ticket.  Advance and refund
    payments need no direct mutation: the ticket recompute derives their
    totals and id lists.  Course payments dispatch nothing.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Invoked by ApprovalWorkflow exactly once per approval and by
    ``ApprovalWorkflow.retry_side_effects`` after a partial failure.  The
    collaborators it drives (``SaleService.complete_sale``,
    ``InvoiceService.generate_for_sale``, ``StockService``) are used,
    never re-implemented.

Invariants enforced:
    - Each step (complete one sale + invoice it) runs in its own
      savepoint: a sale is never left completed without its invoice, and
      a failing step rolls back alone.
    - A failing step never undoes the approval.  It is reported in the
      DispatchReport, logged and audited.
    - Idempotent: a sale this payment already completed is skipped, an
      existing invoice short-circuits, and ``parts_cost_applied`` is
      recomputed to the same value.

Failure modes:
    - SideEffectError / NotFoundError / ValidationError inside a step are
      captured as SideEffectFailure.
    - OptimisticLockError and database errors propagate: the whole unit
      is retried or rolled back by the caller.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.payments import (
    ZERO,
    EnrollmentPaymentType,
    PaymentStatus,
    ServicePaymentType,
    parse_payment_type,
)
from ledger_kernel.domain.targets import Sale
from ledger_kernel.exceptions import (
    NotFoundError,
    PaymentNotFoundError,
    SideEffectError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.payment import PaymentModel
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.invoice_service import InvoiceGeneration, InvoiceService
from ledger_kernel.services.sale_service import SaleService

logger = get_logger("services.side_effects")

T = TypeVar("T")

STEP_COMPLETE_SALE = "complete_sale"


@dataclass(frozen=True)
class SideEffectFailure:
    """One step that did not apply."""

    step: str
    subject_id: UUID | None
    error_code: str
    message: str


@dataclass(frozen=True)
class DispatchReport:
    """What a dispatch run did for one payment."""

    payment_id: UUID
    completed_sale_ids: tuple[UUID, ...] = ()
    previously_completed_sale_ids: tuple[UUID, ...] = ()
    invoices: tuple[InvoiceGeneration, ...] = ()
    parts_cost_applied: Decimal | None = None
    failures: tuple[SideEffectFailure, ...] = ()
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def created_invoice_ids(self) -> tuple[UUID, ...]:
        return tuple(g.invoice.id for g in self.invoices if g.created)


@dataclass
class _SaleStep:
    sale: Sale
    completed_now: bool
    invoice: InvoiceGeneration


class SideEffectDispatcher:
    """Applies approval side effects, one savepoint per step."""

    def __init__(
        self,
        session: Session,
        sales: SaleService,
        invoices: InvoiceService,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._sales = sales
        self._invoices = invoices
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def dispatch(self, payment_id: UUID, actor_id: UUID) -> DispatchReport:
        model = self._session.get(PaymentModel, payment_id)
        if model is None:
            raise PaymentNotFoundError(str(payment_id))
        if model.status_enum != PaymentStatus.APPROVED:
            logger.info(
                "dispatch_skipped_not_approved",
                extra={"payment_id": str(payment_id), "status": model.status},
            )
            return DispatchReport(payment_id=payment_id, skipped=True)

        payment_type = parse_payment_type(model.target_type_enum, model.payment_type)
        match payment_type:
            case ServicePaymentType.PARTS_PAYMENT:
                report = self._dispatch_parts(model, actor_id)
            case (
                ServicePaymentType.ADVANCE_PAYMENT
                | ServicePaymentType.REFUND
                | ServicePaymentType.SERVICE_CHARGE
                | ServicePaymentType.DIAGNOSTIC_FEE
                | ServicePaymentType.FINAL_PAYMENT
            ):
                report = DispatchReport(payment_id=payment_id)
            case EnrollmentPaymentType():
                report = DispatchReport(payment_id=payment_id)

        model.side_effects_dispatched_at = self._clock.now()
        self._session.flush()

        log = logger.warning if report.failures else logger.info
        log(
            "side_effects_dispatched",
            extra={
                "payment_id": str(payment_id),
                "payment_type": payment_type.value,
                "completed_sales": len(report.completed_sale_ids),
                "invoices_created": len(report.created_invoice_ids),
                "failures": [f.error_code for f in report.failures],
            },
        )
        return report

    def _dispatch_parts(self, model: PaymentModel, actor_id: UUID) -> DispatchReport:
        completed: list[UUID] = []
        previously: list[UUID] = []
        invoices: list[InvoiceGeneration] = []
        failures: list[SideEffectFailure] = []
        sales_total = ZERO

        for sale_id in model.sale_ids_to_complete:
            step, failure = self._run_step(
                STEP_COMPLETE_SALE,
                sale_id,
                model.id,
                actor_id,
                lambda sale_id=sale_id: self._complete_and_invoice(sale_id, model.id, actor_id),
            )
            if failure is not None:
                failures.append(failure)
                continue
            sales_total += step.sale.total
            (completed if step.completed_now else previously).append(sale_id)
            invoices.append(step.invoice)

        parts_cost_applied = sales_total + sum((p.total for p in model.parts), ZERO)
        model.parts_cost_applied = parts_cost_applied

        return DispatchReport(
            payment_id=model.id,
            completed_sale_ids=tuple(completed),
            previously_completed_sale_ids=tuple(previously),
            invoices=tuple(invoices),
            parts_cost_applied=parts_cost_applied,
            failures=tuple(failures),
        )

    def _complete_and_invoice(self, sale_id: UUID, payment_id: UUID, actor_id: UUID) -> _SaleStep:
        sale, completed_now = self._sales.complete_sale(sale_id, actor_id, payment_id=payment_id)
        generation = self._invoices.generate_for_sale(sale_id, actor_id)
        return _SaleStep(sale=sale, completed_now=completed_now, invoice=generation)

    def _run_step(
        self,
        step: str,
        subject_id: UUID | None,
        payment_id: UUID,
        actor_id: UUID,
        fn: Callable[[], T],
    ) -> tuple[T | None, SideEffectFailure | None]:
        savepoint = self._session.begin_nested()
        try:
            result = fn()
        except (SideEffectError, NotFoundError, ValidationError) as exc:
            savepoint.rollback()
            failure = SideEffectFailure(
                step=step,
                subject_id=subject_id,
                error_code=exc.code,
                message=str(exc),
            )
            logger.warning(
                "side_effect_failed",
                extra={
                    "payment_id": str(payment_id),
                    "step": step,
                    "subject_id": str(subject_id) if subject_id else None,
                    "error_code": exc.code,
                },
            )
            self._auditor.record_side_effect_failed(
                payment_id=payment_id,
                step=step,
                subject_id=subject_id,
                error_code=exc.code,
                message=str(exc),
                actor_id=actor_id,
            )
            return None, failure
        savepoint.commit()
        return result, None
