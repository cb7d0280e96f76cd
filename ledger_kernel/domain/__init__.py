"""Kernel domain layer - pure value objects, no I/O."""

from ledger_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from ledger_kernel.domain.payments import (
    ApprovalAction,
    EnrollmentPayment,
    EnrollmentPaymentType,
    ExternalPart,
    Payment,
    PaymentAmendment,
    PaymentDraft,
    PaymentStatus,
    ServicePayment,
    ServicePaymentType,
    TargetType,
)
from ledger_kernel.domain.targets import (
    Enrollment,
    Invoice,
    InvoiceKind,
    Product,
    Sale,
    SaleItem,
    SaleLine,
    SaleStatus,
    ServiceTicket,
    ServiceTicketStatus,
)

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "ApprovalAction",
    "EnrollmentPayment",
    "EnrollmentPaymentType",
    "ExternalPart",
    "Payment",
    "PaymentAmendment",
    "PaymentDraft",
    "PaymentStatus",
    "ServicePayment",
    "ServicePaymentType",
    "TargetType",
    "Enrollment",
    "Invoice",
    "InvoiceKind",
    "Product",
    "Sale",
    "SaleItem",
    "SaleLine",
    "SaleStatus",
    "ServiceTicket",
    "ServiceTicketStatus",
]
