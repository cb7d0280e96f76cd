"""
ledger_services.payment_ledger -- Recording, amending and withdrawing payments.

Responsibility:
    The write side of the ledger outside of decisions.  ``record`` admits a
    new pending payment after validating it against its target;
    ``amend`` edits an existing one and ``withdraw`` deletes one, both
    re-running the reconciler for every target whose approved set moved.
    Owns receipt numbering (``PV-`` course, ``SP-`` service).

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Called by PaymentOrchestrator inside its per-target transaction.

Invariants enforced:
    - Recording never touches a balance: pending payments count for
      nothing until approved.
    - A course ``enrollment`` payment never exceeds the enrollment's
      remaining balance (on amend: the balance without its own approved
      contribution).
    - Only parts payments carry linked sales or external parts; every
      linked sale is pending, belongs to the payment's ticket and is not
      listed by another live payment.
    - Settlement payments (service_charge / final_payment) carry the
      smart-calculation breakdown frozen at record time.
    - Withdrawal reverses an approved payment by recompute, never by
      subtraction.
    - Amendment never re-dispatches side effects.

Failure modes:
    - TargetNotFoundError, PaymentNotFoundError, SaleNotFoundError.
    - InvalidAmountError, AmountExceedsRemainingError,
      InvalidPaymentTypeError, InvalidSaleLinkError, InvalidAmendmentError.
    - OptimisticLockError from the reconciler.

Audit relevance:
    Every record / amend / withdraw writes a hash-chained AuditEvent.
    Amendments store ``{field: {"old", "new"}}``.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.payments import (
    ZERO,
    EnrollmentPaymentType,
    ExternalPart,
    Payment,
    PaymentAmendment,
    PaymentDraft,
    PaymentStatus,
    PaymentType,
    ServicePayment,
    ServicePaymentType,
    SETTLEMENT_PAYMENT_TYPES,
    TargetType,
    parse_payment_type,
    parse_target_type,
    to_positive_amount,
)
from ledger_kernel.exceptions import (
    AmountExceedsRemainingError,
    InvalidAmendmentError,
    InvalidAmountError,
    InvalidPaymentTypeError,
    InvalidSaleLinkError,
    PaymentNotFoundError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.payment import PaymentModel
from ledger_kernel.selectors.payment_selector import PaymentSelector
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.sale_service import SaleService
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.target_guard import TargetGuard
from ledger_services.enrollment_balance import EnrollmentBalanceCalculator
from ledger_services.reconciler import BalanceReconciler
from ledger_services.service_balance import ServiceBalanceCalculator

logger = get_logger("services.payment_ledger")

# Fields only a decision may set.
_DECISION_FIELDS = frozenset({"status", "admin_message", "approved_by", "approved_at"})


class PaymentLedger:
    """Record / amend / withdraw for payments of both domains.

    Contract:
        Every method runs inside the caller's transaction and flushes;
        nothing here commits.

    Non-goals:
        - Does NOT decide payments (ApprovalWorkflow).
        - Does NOT dispatch side effects (SideEffectDispatcher).
    """

    def __init__(
        self,
        session: Session,
        sequence: SequenceService,
        auditor: AuditorService,
        guard: TargetGuard,
        selector: PaymentSelector,
        sales: SaleService,
        enrollments: EnrollmentBalanceCalculator,
        tickets: ServiceBalanceCalculator,
        reconciler: BalanceReconciler,
        clock: Clock | None = None,
        *,
        enrollment_prefix: str = "PV-",
        service_prefix: str = "SP-",
        number_width: int = 6,
    ):
        self._session = session
        self._sequence = sequence
        self._auditor = auditor
        self._guard = guard
        self._selector = selector
        self._sales = sales
        self._enrollments = enrollments
        self._tickets = tickets
        self._reconciler = reconciler
        self._clock = clock or SystemClock()
        self._enrollment_prefix = enrollment_prefix
        self._service_prefix = service_prefix
        self._number_width = number_width

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, payment_id: UUID) -> Payment:
        payment = self._selector.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    def _get_model(self, payment_id: UUID) -> PaymentModel:
        model = self._session.get(PaymentModel, payment_id)
        if model is None:
            raise PaymentNotFoundError(str(payment_id))
        return model

    # ------------------------------------------------------------------
    # Record
    # ------------------------------------------------------------------

    def record(self, draft: PaymentDraft, actor_id: UUID) -> Payment:
        """
        Admit a new pending payment.

        Settlement payments (service_charge / final_payment) run the smart
        calculation; an omitted amount is pre-filled with its suggested
        amount, which must itself be positive.
        """
        target_type = parse_target_type(draft.target_type, draft.target_id)
        payment_type = parse_payment_type(target_type, draft.payment_type)
        target = self._guard.lock(target_type, draft.target_id)

        calculation = None
        raw_amount = draft.amount
        if payment_type in SETTLEMENT_PAYMENT_TYPES:
            smart = self._tickets.calculate(draft.target_id)
            calculation = smart.to_breakdown()
            if raw_amount is None:
                raw_amount = smart.suggested_amount
        if raw_amount is None:
            raise InvalidAmountError(None, "amount is required")
        amount = to_positive_amount(raw_amount)

        if payment_type == EnrollmentPaymentType.ENROLLMENT and amount > target.remaining_amount:
            raise AmountExceedsRemainingError(
                str(draft.target_id), amount, target.remaining_amount
            )

        self._validate_parts_fields(
            target_type,
            payment_type,
            draft.target_id,
            related_sale_id=draft.related_sale_id,
            external_parts=draft.external_parts,
            sale_ids=draft.pending_sales_to_complete,
        )

        return self._create(
            target_type=target_type,
            target_id=draft.target_id,
            payment_type=payment_type,
            amount=amount,
            method=draft.method,
            payment_date=draft.payment_date,
            received_by=draft.received_by,
            notes=draft.notes,
            related_sale_id=draft.related_sale_id,
            external_parts=draft.external_parts,
            sale_ids=draft.pending_sales_to_complete,
            calculation=calculation,
            actor_id=actor_id,
        )

    def raise_refund(
        self,
        ticket_id: UUID,
        actor_id: UUID,
        *,
        method: str = "cash",
        received_by: str = "",
        notes: str = "",
    ) -> Payment | None:
        """
        Record a pending refund for whatever the smart calculation says is
        still owed back to the customer.

        Refunds already approved or already raised and awaiting a decision
        are netted off.  Returns None when nothing is owed.
        """
        self._guard.lock_ticket(ticket_id)
        smart = self._tickets.calculate(ticket_id)
        outstanding = smart.refund_outstanding - self._selector.pending_refund_total(ticket_id)
        if outstanding <= ZERO:
            logger.info(
                "refund_not_due",
                extra={
                    "ticket_id": str(ticket_id),
                    "refund_due": str(smart.refund_due),
                    "outcome": smart.outcome.value,
                },
            )
            return None

        return self._create(
            target_type=TargetType.SERVICE_TICKET,
            target_id=ticket_id,
            payment_type=ServicePaymentType.REFUND,
            amount=outstanding,
            method=method,
            payment_date=None,
            received_by=received_by,
            notes=notes,
            related_sale_id=None,
            external_parts=(),
            sale_ids=(),
            calculation=smart.to_breakdown(),
            actor_id=actor_id,
        )

    def _create(
        self,
        *,
        target_type: TargetType,
        target_id: UUID,
        payment_type: PaymentType,
        amount: Decimal,
        method: str,
        payment_date: date | None,
        received_by: str,
        notes: str,
        related_sale_id: UUID | None,
        external_parts: Sequence[ExternalPart],
        sale_ids: Sequence[UUID],
        calculation: dict[str, Any] | None,
        actor_id: UUID,
    ) -> Payment:
        if target_type == TargetType.ENROLLMENT:
            sequence_name, prefix = SequenceService.ENROLLMENT_RECEIPT, self._enrollment_prefix
        else:
            sequence_name, prefix = SequenceService.SERVICE_RECEIPT, self._service_prefix

        model = PaymentModel(
            receipt_number=self._sequence.next_number(sequence_name, prefix, self._number_width),
            target_type=target_type.value,
            target_id=target_id,
            payment_type=payment_type.value,
            amount=amount,
            method=method,
            payment_date=payment_date or self._clock.today(),
            received_by=received_by,
            notes=notes,
            status=PaymentStatus.PENDING.value,
            related_sale_id=related_sale_id,
            external_parts=[p.to_dict() for p in external_parts],
            pending_sales_to_complete=[str(s) for s in sale_ids],
            payment_calculation=calculation,
            created_by_id=actor_id,
        )
        self._session.add(model)
        self._session.flush()
        LogContext.update(payment_id=model.id, receipt_number=model.receipt_number)

        self._auditor.record_payment_recorded(
            payment_id=model.id,
            receipt_number=model.receipt_number,
            target_type=target_type.value,
            target_id=target_id,
            payment_type=payment_type.value,
            amount=amount,
            actor_id=actor_id,
        )
        logger.info(
            "payment_recorded",
            extra={
                "target_type": target_type.value,
                "target_id": str(target_id),
                "payment_type": payment_type.value,
                "amount": str(amount),
            },
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # Amend
    # ------------------------------------------------------------------

    def amend(
        self,
        payment_id: UUID,
        fields: PaymentAmendment | dict[str, Any],
        actor_id: UUID,
    ) -> Payment:
        """
        Edit a payment in place.

        If the payment is approved and its target, type, amount or
        external parts changed, the old and the new target are both
        reconciled.  Side effects an earlier approval already dispatched
        are never run again.

        Raises:
            InvalidAmendmentError: A decision field or unknown field, a
                move that would strand linked sales, or a type change on a
                dispatched parts payment.
        """
        amendment = (
            fields if isinstance(fields, PaymentAmendment) else PaymentAmendment.from_fields(fields)
        )
        if amendment.extra_fields:
            name = sorted(amendment.extra_fields)[0]
            reason = (
                "decisions go through the approval workflow"
                if name in _DECISION_FIELDS
                else "field is not amendable"
            )
            raise InvalidAmendmentError(str(payment_id), name, reason)

        model = self._get_model(payment_id)
        target_type = model.target_type_enum
        old_target_id = model.target_id
        old_type = parse_payment_type(target_type, model.payment_type)
        old_parts = model.parts
        sale_ids = model.sale_ids_to_complete
        dispatched = model.side_effects_dispatched_at is not None

        new_target_id = amendment.target_id or old_target_id
        new_type = (
            parse_payment_type(target_type, amendment.payment_type)
            if amendment.payment_type is not None
            else old_type
        )
        new_amount = (
            to_positive_amount(amendment.amount) if amendment.amount is not None else model.amount
        )
        new_parts = (
            tuple(amendment.external_parts)
            if amendment.external_parts is not None
            else old_parts
        )

        target_moved = new_target_id != old_target_id
        type_changed = new_type != old_type
        amount_changed = new_amount != model.amount
        parts_changed = new_parts != old_parts

        if target_moved:
            self._guard.lock(target_type, new_target_id)
            if sale_ids or model.related_sale_id:
                raise InvalidAmendmentError(
                    str(payment_id), "target_id", "linked sales belong to the current ticket"
                )

        if new_type != ServicePaymentType.PARTS_PAYMENT and (
            sale_ids or model.related_sale_id or new_parts
        ):
            raise InvalidAmendmentError(
                str(payment_id),
                "payment_type" if type_changed else "external_parts",
                "sales and external parts are only carried by parts payments",
            )
        if type_changed and dispatched and old_type == ServicePaymentType.PARTS_PAYMENT:
            raise InvalidAmendmentError(
                str(payment_id), "payment_type", "side effects were already dispatched"
            )

        if new_type == EnrollmentPaymentType.ENROLLMENT and (
            target_moved or type_changed or amount_changed
        ):
            remaining = self._enrollments.remaining_excluding(new_target_id, payment_id)
            if new_amount > remaining:
                raise AmountExceedsRemainingError(str(new_target_id), new_amount, remaining)

        changes: dict[str, dict[str, Any]] = {}

        def _change(name: str, old: Any, new: Any) -> None:
            if old != new:
                changes[name] = {"old": old, "new": new}

        _change("target_id", old_target_id, new_target_id)
        _change("payment_type", old_type.value, new_type.value)
        _change("amount", model.amount, new_amount)
        _change(
            "external_parts",
            [p.to_dict() for p in old_parts],
            [p.to_dict() for p in new_parts],
        )
        for name in ("method", "payment_date", "received_by", "notes"):
            value = getattr(amendment, name)
            if value is not None:
                _change(name, getattr(model, name), value)

        if not changes:
            return model.to_dto()

        model.target_id = new_target_id
        model.payment_type = new_type.value
        model.amount = new_amount
        model.external_parts = [p.to_dict() for p in new_parts]
        for name in ("method", "payment_date", "received_by", "notes"):
            if name in changes:
                setattr(model, name, changes[name]["new"])

        # A dispatched parts payment keeps the sales it completed; only the
        # external-parts share of what it applied follows the edit.
        if dispatched and parts_changed:
            old_total = sum((p.total for p in old_parts), ZERO)
            new_total = sum((p.total for p in new_parts), ZERO)
            model.parts_cost_applied = (model.parts_cost_applied or ZERO) - old_total + new_total

        if new_type in SETTLEMENT_PAYMENT_TYPES and (
            model.payment_calculation is None or target_moved
        ):
            model.payment_calculation = self._tickets.calculate(new_target_id).to_breakdown()

        model.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_payment_amended(
            payment_id=payment_id, changes=changes, actor_id=actor_id
        )
        logger.info(
            "payment_amended",
            extra={
                "payment_id": str(payment_id),
                "changed_fields": sorted(changes),
                "status": model.status,
            },
        )

        if model.status_enum == PaymentStatus.APPROVED and (
            target_moved or type_changed or amount_changed or parts_changed
        ):
            self._reconciler.reconcile_all(
                [(target_type, old_target_id), (target_type, new_target_id)]
            )

        return model.to_dto()

    # ------------------------------------------------------------------
    # Withdraw
    # ------------------------------------------------------------------

    def withdraw(self, payment_id: UUID, actor_id: UUID) -> Payment:
        """
        Delete a payment.  If it was approved, its target is reconciled
        over the remaining approved set.  Returns the deleted payment.
        """
        model = self._get_model(payment_id)
        withdrawn = model.to_dto()
        was_approved = model.status_enum == PaymentStatus.APPROVED

        if was_approved and model.side_effects_dispatched_at is not None and model.sale_ids_to_complete:
            # Completed sales and their invoices are records of goods that
            # left the shop; they outlive the payment.
            logger.warning(
                "withdrawn_payment_had_side_effects",
                extra={
                    "payment_id": str(payment_id),
                    "sale_ids": [str(s) for s in model.sale_ids_to_complete],
                },
            )

        self._session.delete(model)
        self._session.flush()

        self._auditor.record_payment_withdrawn(
            payment_id=payment_id,
            receipt_number=withdrawn.receipt_number,
            status=withdrawn.status.value,
            amount=withdrawn.amount,
            actor_id=actor_id,
        )
        logger.info(
            "payment_withdrawn",
            extra={
                "payment_id": str(payment_id),
                "receipt_number": withdrawn.receipt_number,
                "status": withdrawn.status.value,
            },
        )

        if was_approved:
            self._reconciler.reconcile(withdrawn.target_type, withdrawn.target_id)
        return withdrawn

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_parts_fields(
        self,
        target_type: TargetType,
        payment_type: PaymentType,
        target_id: UUID,
        *,
        related_sale_id: UUID | None,
        external_parts: Sequence[ExternalPart],
        sale_ids: Sequence[UUID],
    ) -> None:
        if payment_type != ServicePaymentType.PARTS_PAYMENT:
            if sale_ids or related_sale_id or external_parts:
                raise InvalidPaymentTypeError(
                    target_type.value,
                    payment_type.value,
                    "only parts payments carry linked sales or external parts",
                )
            return

        if len(set(sale_ids)) != len(sale_ids):
            duplicate = next(s for s in sale_ids if list(sale_ids).count(s) > 1)
            raise InvalidSaleLinkError(str(duplicate), "listed more than once")

        linked = list(sale_ids)
        if related_sale_id is not None and related_sale_id not in linked:
            linked.append(related_sale_id)
        for sale_id in linked:
            sale = self._sales.get_model(sale_id)
            if sale.service_ticket_id != target_id:
                raise InvalidSaleLinkError(str(sale_id), "sale belongs to another ticket")
            if sale_id in sale_ids and sale.is_completed:
                raise InvalidSaleLinkError(str(sale_id), "sale is already completed")

        if sale_ids:
            claimed = {
                sale_id
                for payment in self._selector.for_target(TargetType.SERVICE_TICKET, target_id)
                if isinstance(payment, ServicePayment)
                and payment.status != PaymentStatus.DECLINED
                for sale_id in payment.pending_sales_to_complete
            }
            for sale_id in sale_ids:
                if sale_id in claimed:
                    raise InvalidSaleLinkError(str(sale_id), "already listed on another payment")
