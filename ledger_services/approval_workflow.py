"""
ledger_services.approval_workflow -- pending -> approved | declined.

Responsibility:
    The one state machine both payment domains share.  A decision sets
    the status, the approver's message, identity and timestamp; an
    approval then runs the SideEffectDispatcher once and reconciles the
    payment's target.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

Invariants enforced:
    - Only ``PAYMENT_TRANSITIONS`` edges are taken; approved and declined
      are terminal.
    - A decline carries a non-empty message.
    - Re-submitting the identical decision (same action, message and
      actor) on a decided payment is a no-op; anything else is a
      conflict and mutates nothing.
    - Side effects run exactly once per approval, before the recompute.

Failure modes:
    - InvalidDecisionError: action is not approve / decline.
    - DeclineMessageRequiredError: blank decline message.
    - AmountExceedsRemainingError: approving an enrollment payment larger
      than the enrollment's current remaining balance.
    - PaymentAlreadyDecidedError: decision on a terminal payment.
    - PaymentNotFoundError.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.payments import (
    TERMINAL_PAYMENT_STATUSES,
    ApprovalAction,
    EnrollmentPaymentType,
    Payment,
    PaymentStatus,
    can_transition,
)
from ledger_kernel.domain.targets import Enrollment, ServiceTicket
from ledger_kernel.exceptions import (
    AmountExceedsRemainingError,
    DeclineMessageRequiredError,
    InvalidDecisionError,
    PaymentAlreadyDecidedError,
    PaymentNotFoundError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.payment import PaymentModel
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.target_guard import TargetGuard
from ledger_services.reconciler import BalanceReconciler
from ledger_services.side_effects import DispatchReport, SideEffectDispatcher

logger = get_logger("services.approval_workflow")


@dataclass(frozen=True)
class DecisionResult:
    payment: Payment
    dispatch: DispatchReport | None = None
    target: Enrollment | ServiceTicket | None = None
    replayed: bool = False


def parse_action(action: ApprovalAction | str) -> ApprovalAction:
    if isinstance(action, ApprovalAction):
        return action
    try:
        return ApprovalAction(str(action).strip().lower())
    except ValueError:
        raise InvalidDecisionError(str(action)) from None


class ApprovalWorkflow:
    """Decisions on pending payments.

    Contract:
        ``decide`` moves a pending payment to a terminal status and, on
        approval, leaves its side effects applied and its target
        reconciled, all inside the caller's transaction.

    Non-goals:
        - Does NOT check who may approve; only the actor identity is
          recorded.
    """

    def __init__(
        self,
        session: Session,
        guard: TargetGuard,
        dispatcher: SideEffectDispatcher,
        reconciler: BalanceReconciler,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._guard = guard
        self._dispatcher = dispatcher
        self._reconciler = reconciler
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def decide(
        self,
        payment_id: UUID,
        action: ApprovalAction | str,
        message: str | None,
        actor_id: UUID,
    ) -> DecisionResult:
        action = parse_action(action)
        model = self._session.get(PaymentModel, payment_id)
        if model is None:
            raise PaymentNotFoundError(str(payment_id))
        LogContext.update(receipt_number=model.receipt_number)

        text = (message or "").strip() or None
        current = model.status_enum
        target_new = action.resulting_status

        if current in TERMINAL_PAYMENT_STATUSES:
            if (
                current == target_new
                and model.admin_message == text
                and model.approved_by == actor_id
            ):
                logger.info(
                    "decision_replayed",
                    extra={"payment_id": str(payment_id), "status": current.value},
                )
                return DecisionResult(payment=model.to_dto(), replayed=True)
            logger.warning(
                "decision_conflict",
                extra={
                    "payment_id": str(payment_id),
                    "status": current.value,
                    "requested": target_new.value,
                },
            )
            raise PaymentAlreadyDecidedError(str(payment_id), current.value)

        if action == ApprovalAction.DECLINE and text is None:
            raise DeclineMessageRequiredError(str(payment_id))
        if not can_transition(current, target_new):
            raise PaymentAlreadyDecidedError(str(payment_id), current.value)

        target_type, target_id = model.target_type_enum, model.target_id
        locked = self._guard.lock(target_type, target_id)

        # Two pending payments can each pass the record-time cap.
        if (
            target_new == PaymentStatus.APPROVED
            and model.payment_type == EnrollmentPaymentType.ENROLLMENT.value
            and model.amount > locked.remaining_amount
        ):
            raise AmountExceedsRemainingError(
                str(target_id), model.amount, locked.remaining_amount
            )

        model.status = target_new.value
        model.admin_message = text
        model.approved_by = actor_id
        model.approved_at = self._clock.now()
        model.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_payment_decided(
            payment_id=payment_id,
            approved=target_new == PaymentStatus.APPROVED,
            message=text,
            actor_id=actor_id,
        )

        dispatch = None
        target = None
        if target_new == PaymentStatus.APPROVED:
            dispatch = self._dispatcher.dispatch(payment_id, actor_id)
            target = self._reconciler.reconcile(target_type, target_id)

        logger.info(
            "payment_decided",
            extra={
                "payment_id": str(payment_id),
                "status": target_new.value,
                "target_type": target_type.value,
                "target_id": str(target_id),
            },
        )
        return DecisionResult(payment=model.to_dto(), dispatch=dispatch, target=target)

    def retry_side_effects(self, payment_id: UUID, actor_id: UUID) -> DecisionResult:
        """Re-run dispatch for an approved payment, then reconcile its target.

        Safe to repeat: every dispatch step is idempotent.
        """
        model = self._session.get(PaymentModel, payment_id)
        if model is None:
            raise PaymentNotFoundError(str(payment_id))
        dispatch = self._dispatcher.dispatch(payment_id, actor_id)
        target = None
        if not dispatch.skipped:
            target = self._reconciler.reconcile(model.target_type_enum, model.target_id)
        logger.info(
            "side_effects_retried",
            extra={"payment_id": str(payment_id), "failures": len(dispatch.failures)},
        )
        return DecisionResult(payment=model.to_dto(), dispatch=dispatch, target=target)
