"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the ledger (forms, APIs, batch jobs) must react differently to
"fix your input", "somebody else got there first" and "try again later".
Parsing message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        ledger.record(draft, actor_id)
    except AmountExceedsRemainingError as e:
        api_response(code=e.code, remaining=str(e.remaining))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from LedgerError:

    LedgerError (base)
    |
    +-- NotFoundError
    |   +-- PaymentNotFoundError
    |   +-- TargetNotFoundError
    |   +-- SaleNotFoundError
    |   +-- ProductNotFoundError
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- AmountExceedsRemainingError
    |   +-- DeclineMessageRequiredError
    |   +-- InvalidDecisionError
    |   +-- InvalidPaymentTypeError
    |   +-- InvalidAmendmentError
    |   +-- InvalidSaleLinkError
    |   +-- TicketClosedError
    |
    +-- ConflictError
    |   +-- PaymentAlreadyDecidedError
    |   +-- OptimisticLockError
    |
    +-- AlreadyExistsError
    |   +-- InvoiceAlreadyExistsError
    |
    +-- SideEffectError
    |   +-- SaleAlreadyCompletedError
    |
    +-- StoreError
    |   +-- StoreWriteError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
        +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | When Raised
-------------|-----------------------------|-----------------------------------
Not found    | PAYMENT_NOT_FOUND           | Payment id doesn't exist
             | TARGET_NOT_FOUND            | Enrollment / ticket doesn't exist
             | SALE_NOT_FOUND              | Sale id doesn't exist
             | PRODUCT_NOT_FOUND           | Product id doesn't exist
-------------|-----------------------------|-----------------------------------
Validation   | INVALID_AMOUNT              | amount <= 0 or not a decimal
             | AMOUNT_EXCEEDS_REMAINING    | Enrollment payment > remaining
             | DECLINE_MESSAGE_REQUIRED    | Decline submitted without reason
             | INVALID_DECISION            | Action is not approve / decline
             | INVALID_PAYMENT_TYPE        | Type doesn't belong to target domain
             | INVALID_AMENDMENT           | Field not amendable / bad value
             | INVALID_SALE_LINK           | Sale not pending / other ticket
             | TICKET_CLOSED               | Change to a cancelled ticket
-------------|-----------------------------|-----------------------------------
Conflict     | PAYMENT_ALREADY_DECIDED     | Decision on a terminal payment
             | OPTIMISTIC_LOCK_CONFLICT    | Target changed under a recompute
-------------|-----------------------------|-----------------------------------
Exists       | INVOICE_ALREADY_EXISTS      | Invoice exists (no-op for callers)
-------------|-----------------------------|-----------------------------------
Side effect  | SALE_ALREADY_COMPLETED      | Sale completed by another payment
-------------|-----------------------------|-----------------------------------
Store        | STORE_WRITE_FAILED          | Commit failed, state rolled back
-------------|-----------------------------|-----------------------------------
Immutability | IMMUTABILITY_VIOLATION      | Modifying an audit record
-------------|-----------------------------|-----------------------------------
Audit        | AUDIT_CHAIN_BROKEN          | Hash chain validation failed

===============================================================================
HANDLING PATTERNS
===============================================================================

1. CONFLICTS ARE RETRYABLE:

    except OptimisticLockError:
        # PaymentOrchestrator already retries; surfacing means the
        # retry budget was exhausted.

2. INVOICE EXISTENCE IS SUCCESS:

    try:
        invoice = invoice_service.create_for_sale(sale)
    except InvoiceAlreadyExistsError as e:
        invoice = invoice_service.get(e.invoice_id)

3. SIDE-EFFECT ERRORS NEVER UNDO AN APPROVAL:

    SideEffectDispatcher catches SideEffectError / NotFoundError per step
    and reports it in DispatchReport.failures.

===============================================================================
"""

from decimal import Decimal


class LedgerError(Exception):
    """
    Base exception for all ledger kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LEDGER_ERROR"


# Not-found exceptions


class NotFoundError(LedgerError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    """Payment with given ID was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class TargetNotFoundError(NotFoundError):
    """Enrollment or service ticket a payment refers to was not found."""

    code: str = "TARGET_NOT_FOUND"

    def __init__(self, target_type: str, target_id: str):
        self.target_type = target_type
        self.target_id = target_id
        super().__init__(f"{target_type} not found: {target_id}")


class SaleNotFoundError(NotFoundError):
    """Sale with given ID was not found."""

    code: str = "SALE_NOT_FOUND"

    def __init__(self, sale_id: str):
        self.sale_id = sale_id
        super().__init__(f"Sale not found: {sale_id}")


class ProductNotFoundError(NotFoundError):
    """Product with given ID was not found."""

    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


# Validation exceptions


class ValidationError(LedgerError):
    """Base exception for rejected input. Nothing was mutated."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Amount is not a positive decimal."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: object, reason: str = "amount must be greater than zero"):
        self.amount = str(amount)
        self.reason = reason
        super().__init__(f"Invalid amount {amount!s}: {reason}")


class AmountExceedsRemainingError(ValidationError):
    """Enrollment payment larger than the enrollment's remaining balance."""

    code: str = "AMOUNT_EXCEEDS_REMAINING"

    def __init__(self, enrollment_id: str, amount: Decimal, remaining: Decimal):
        self.enrollment_id = enrollment_id
        self.amount = amount
        self.remaining = remaining
        super().__init__(
            f"Payment of {amount} exceeds remaining balance {remaining} "
            f"on enrollment {enrollment_id}"
        )


class DeclineMessageRequiredError(ValidationError):
    """A decline decision must carry a non-empty reason."""

    code: str = "DECLINE_MESSAGE_REQUIRED"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Declining payment {payment_id} requires a message")


class InvalidDecisionError(ValidationError):
    """Decision action is not one of approve / decline."""

    code: str = "INVALID_DECISION"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Unknown decision action: {action!r}")


class InvalidPaymentTypeError(ValidationError):
    """Payment type does not belong to the target's domain."""

    code: str = "INVALID_PAYMENT_TYPE"

    def __init__(self, target_type: str, payment_type: str, reason: str | None = None):
        self.target_type = target_type
        self.payment_type = payment_type
        self.reason = reason
        if reason:
            super().__init__(f"Payment type {payment_type!r}: {reason}")
        else:
            super().__init__(
                f"Payment type {payment_type!r} is not valid for target type {target_type!r}"
            )


class InvalidAmendmentError(ValidationError):
    """Amendment touches a field that cannot be changed, or has a bad value."""

    code: str = "INVALID_AMENDMENT"

    def __init__(self, payment_id: str, field: str, reason: str):
        self.payment_id = payment_id
        self.field = field
        self.reason = reason
        super().__init__(f"Cannot amend {field} on payment {payment_id}: {reason}")


class InvalidSaleLinkError(ValidationError):
    """A linked sale is not pending, or belongs to another ticket."""

    code: str = "INVALID_SALE_LINK"

    def __init__(self, sale_id: str, reason: str):
        self.sale_id = sale_id
        self.reason = reason
        super().__init__(f"Sale {sale_id} cannot be linked: {reason}")


class TicketClosedError(ValidationError):
    """Service ticket is cancelled and accepts no further changes."""

    code: str = "TICKET_CLOSED"

    def __init__(self, ticket_id: str, status: str):
        self.ticket_id = ticket_id
        self.status = status
        super().__init__(f"Service ticket {ticket_id} is {status}")


# Conflict exceptions


class ConflictError(LedgerError):
    """Base exception for state conflicts. Nothing was mutated."""

    code: str = "CONFLICT"


class PaymentAlreadyDecidedError(ConflictError):
    """Payment is already approved or declined."""

    code: str = "PAYMENT_ALREADY_DECIDED"

    def __init__(self, payment_id: str, status: str):
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Payment {payment_id} is already {status}")


class OptimisticLockError(ConflictError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Already-exists exceptions


class AlreadyExistsError(LedgerError):
    """Base exception for idempotent-create collisions."""

    code: str = "ALREADY_EXISTS"


class InvoiceAlreadyExistsError(AlreadyExistsError):
    """
    Invoice already exists for the sale or ticket.

    Not an error to ledger callers: InvoiceService.generate_* catches it
    and returns the existing invoice.
    """

    code: str = "INVOICE_ALREADY_EXISTS"

    def __init__(self, source_type: str, source_id: str, invoice_id: str):
        self.source_type = source_type
        self.source_id = source_id
        self.invoice_id = invoice_id
        super().__init__(
            f"Invoice {invoice_id} already exists for {source_type} {source_id}"
        )


# Side-effect exceptions


class SideEffectError(LedgerError):
    """Base exception for a dispatch step that could not be applied."""

    code: str = "SIDE_EFFECT_ERROR"


class SaleAlreadyCompletedError(SideEffectError):
    """Sale was completed outside of the payment being dispatched."""

    code: str = "SALE_ALREADY_COMPLETED"

    def __init__(self, sale_id: str, completed_by_payment_id: str | None):
        self.sale_id = sale_id
        self.completed_by_payment_id = completed_by_payment_id
        super().__init__(
            f"Sale {sale_id} is already completed"
            + (f" by payment {completed_by_payment_id}" if completed_by_payment_id else "")
        )


# Store exceptions


class StoreError(LedgerError):
    """Base exception for entity-store failures."""

    code: str = "STORE_ERROR"


class StoreWriteError(StoreError):
    """
    Commit to the entity store failed.

    The transaction was rolled back: ledger state is pre-mutation.
    Safe to retry.
    """

    code: str = "STORE_WRITE_FAILED"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store write failed during {operation}: {reason}")


# Immutability exceptions


class ImmutabilityError(LedgerError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit exceptions


class AuditError(LedgerError):
    """Base exception for audit trail errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )
