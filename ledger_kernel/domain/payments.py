"""
Payment domain types (``ledger_kernel.domain.payments``).

Responsibility
--------------
Pure value objects for payments: the status state machine, the two
per-domain payment-type vocabularies, amount coercion, and the frozen
payment DTOs returned by every ledger operation.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``PAYMENT_TRANSITIONS`` defines the only valid status transitions.
  Approved and declined have no outgoing edges.
* A payment's type always belongs to its target's domain: course
  payments carry an ``EnrollmentPaymentType``, ticket payments a
  ``ServicePaymentType``.  ``parse_payment_type`` is the only way in.
* Monetary amounts are ``Decimal``.  Floats are rejected outright.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from ledger_kernel.exceptions import (
    InvalidAmountError,
    InvalidPaymentTypeError,
    TargetNotFoundError,
)

ZERO = Decimal("0")


# =========================================================================
# Status lifecycle
# =========================================================================


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.APPROVED,
        PaymentStatus.DECLINED,
    }),
    PaymentStatus.APPROVED: frozenset(),
    PaymentStatus.DECLINED: frozenset(),
}

TERMINAL_PAYMENT_STATUSES: frozenset[PaymentStatus] = frozenset({
    PaymentStatus.APPROVED,
    PaymentStatus.DECLINED,
})


def can_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    return new in PAYMENT_TRANSITIONS[current]


class ApprovalAction(str, Enum):
    """Decisions an approver can make on a pending payment."""

    APPROVE = "approve"
    DECLINE = "decline"

    @property
    def resulting_status(self) -> PaymentStatus:
        if self is ApprovalAction.APPROVE:
            return PaymentStatus.APPROVED
        return PaymentStatus.DECLINED


# =========================================================================
# Targets and payment types
# =========================================================================


class TargetType(str, Enum):
    """The billable entity a payment is recorded against."""

    ENROLLMENT = "enrollment"
    SERVICE_TICKET = "service_ticket"


class EnrollmentPaymentType(str, Enum):
    """Course-domain payment types."""

    ENROLLMENT = "enrollment"
    ADMISSION = "admission"
    REGISTRATION = "registration"
    EXAM = "exam"


class ServicePaymentType(str, Enum):
    """Device-service-domain payment types."""

    SERVICE_CHARGE = "service_charge"
    ADVANCE_PAYMENT = "advance_payment"
    PARTS_PAYMENT = "parts_payment"
    DIAGNOSTIC_FEE = "diagnostic_fee"
    FINAL_PAYMENT = "final_payment"
    REFUND = "refund"


PaymentType = EnrollmentPaymentType | ServicePaymentType

PAYMENT_TYPES_BY_TARGET: dict[TargetType, type[Enum]] = {
    TargetType.ENROLLMENT: EnrollmentPaymentType,
    TargetType.SERVICE_TICKET: ServicePaymentType,
}

# Service payment types that settle the ticket and so carry a frozen
# smart-calculation breakdown.
SETTLEMENT_PAYMENT_TYPES: frozenset[ServicePaymentType] = frozenset({
    ServicePaymentType.SERVICE_CHARGE,
    ServicePaymentType.FINAL_PAYMENT,
})


def parse_target_type(raw: TargetType | str, target_id: UUID) -> TargetType:
    """An unknown target type means the target cannot exist."""
    if isinstance(raw, TargetType):
        return raw
    try:
        return TargetType(raw)
    except ValueError:
        raise TargetNotFoundError(str(raw), str(target_id)) from None


def parse_payment_type(
    target_type: TargetType,
    raw: PaymentType | str,
) -> PaymentType:
    """Resolve ``raw`` to the payment-type enum of ``target_type``'s domain.

    Raises:
        InvalidPaymentTypeError: ``raw`` is not a type of that domain,
            including a valid type of the *other* domain.
    """
    enum_cls = PAYMENT_TYPES_BY_TARGET[target_type]
    if isinstance(raw, enum_cls):
        return raw
    value = raw.value if isinstance(raw, Enum) else raw
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidPaymentTypeError(target_type.value, str(value)) from None


# =========================================================================
# Amounts
# =========================================================================


def to_amount(value: Any) -> Decimal:
    """Coerce ``value`` to a finite Decimal.

    Accepts Decimal, int and numeric strings.  Floats and bools are
    rejected: a float has already lost the cents it was meant to carry.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(value, "amount must be a Decimal, int or numeric string")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(value)
        except InvalidOperation:
            raise InvalidAmountError(value, "amount is not a number") from None
    else:
        raise InvalidAmountError(value, "amount must be a Decimal, int or numeric string")
    if not amount.is_finite():
        raise InvalidAmountError(value, "amount must be finite")
    return amount


def to_positive_amount(value: Any) -> Decimal:
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidAmountError(value)
    return amount


# =========================================================================
# Payment value objects
# =========================================================================


@dataclass(frozen=True)
class ExternalPart:
    """An ad-hoc part bought outside inventory and billed on a parts payment."""

    name: str
    quantity: int
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExternalPart:
        quantity = data.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidAmountError(quantity, "external part quantity must be a positive integer")
        unit_price = to_amount(data["unit_price"])
        if unit_price < ZERO:
            raise InvalidAmountError(unit_price, "external part price cannot be negative")
        return cls(name=str(data["name"]), quantity=quantity, unit_price=unit_price)


@dataclass(frozen=True)
class PaymentDraft:
    """Caller input for ``PaymentLedger.record``.

    ``amount`` may be left as None only for settlement payments
    (service_charge / final_payment), in which case the smart
    calculation's suggested amount is used.
    """

    target_type: TargetType | str
    target_id: UUID
    payment_type: PaymentType | str
    amount: Decimal | int | str | None = None
    method: str = "cash"
    payment_date: date | None = None
    received_by: str = ""
    notes: str = ""
    related_sale_id: UUID | None = None
    external_parts: tuple[ExternalPart, ...] = ()
    pending_sales_to_complete: tuple[UUID, ...] = ()


@dataclass(frozen=True, kw_only=True)
class _PaymentBase:
    id: UUID
    receipt_number: str
    target_id: UUID
    amount: Decimal
    method: str
    payment_date: date
    received_by: str
    notes: str
    status: PaymentStatus
    admin_message: str | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None


@dataclass(frozen=True, kw_only=True)
class EnrollmentPayment(_PaymentBase):
    """A course-domain payment against an enrollment."""

    payment_type: EnrollmentPaymentType

    @property
    def target_type(self) -> TargetType:
        return TargetType.ENROLLMENT


@dataclass(frozen=True, kw_only=True)
class ServicePayment(_PaymentBase):
    """A device-service payment against a service ticket."""

    payment_type: ServicePaymentType
    related_sale_id: UUID | None = None
    external_parts: tuple[ExternalPart, ...] = ()
    pending_sales_to_complete: tuple[UUID, ...] = ()
    payment_calculation: dict[str, Any] | None = None
    parts_cost_applied: Decimal | None = None
    side_effects_dispatched_at: datetime | None = None

    @property
    def target_type(self) -> TargetType:
        return TargetType.SERVICE_TICKET


Payment = EnrollmentPayment | ServicePayment


@dataclass(frozen=True)
class PaymentAmendment:
    """Fields a caller may change on an existing payment.

    ``None`` means "leave unchanged".  ``status`` is deliberately absent:
    decisions go through ``ApprovalWorkflow``.
    """

    target_id: UUID | None = None
    payment_type: PaymentType | str | None = None
    amount: Decimal | int | str | None = None
    method: str | None = None
    payment_date: date | None = None
    received_by: str | None = None
    notes: str | None = None
    external_parts: tuple[ExternalPart, ...] | None = None
    extra_fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_fields(cls, fields: dict[str, Any]) -> PaymentAmendment:
        """Split a loose field mapping into known fields and leftovers.

        Leftover keys are kept in ``extra_fields`` so the ledger can reject
        them by name.
        """
        known = {
            "target_id", "payment_type", "amount", "method",
            "payment_date", "received_by", "notes", "external_parts",
        }
        kwargs = {k: v for k, v in fields.items() if k in known}
        if "external_parts" in kwargs and kwargs["external_parts"] is not None:
            kwargs["external_parts"] = tuple(
                p if isinstance(p, ExternalPart) else ExternalPart.from_dict(p)
                for p in kwargs["external_parts"]
            )
        extra = {k: v for k, v in fields.items() if k not in known}
        return cls(extra_fields=extra, **kwargs)
