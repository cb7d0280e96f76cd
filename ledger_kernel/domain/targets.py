"""
Billable targets and the collaborator records the ledger touches.

Frozen snapshots returned by the ORM models' ``to_dto()``.  Derived
balance fields on ``Enrollment`` and ``ServiceTicket`` are owned by the
balance calculators; nothing else writes them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from ledger_kernel.domain.payments import ExternalPart


class ServiceTicketStatus(str, Enum):
    RECEIVED = "received"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class SaleStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class InvoiceKind(str, Enum):
    SALE = "sale"
    SERVICE = "service"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"


@dataclass(frozen=True)
class Enrollment:
    id: UUID
    student_id: UUID
    batch_id: UUID
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    admission_fee_amount: Decimal
    admission_fee_paid: bool
    registration_fee_amount: Decimal
    registration_fee_paid: bool
    exam_fee_amount: Decimal
    exam_fee_paid: bool
    version: int


@dataclass(frozen=True)
class ServiceTicket:
    id: UUID
    ticket_number: str
    customer_id: UUID
    device: str
    status: ServiceTicketStatus
    service_charge: Decimal
    diagnostic_fee: Decimal
    base_parts_cost: Decimal
    parts_cost: Decimal
    total_advance_paid: Decimal
    total_refund_given: Decimal
    advance_payment_ids: tuple[UUID, ...]
    refund_payment_ids: tuple[UUID, ...]
    external_parts: tuple[ExternalPart, ...]
    completed_at: datetime | None
    version: int

    @property
    def total_service_cost(self) -> Decimal:
        return self.service_charge + self.diagnostic_fee + self.parts_cost


@dataclass(frozen=True)
class SaleLine:
    """Caller input for one line of a new sale."""

    product_id: UUID
    quantity: int
    unit_price: Decimal | None = None


@dataclass(frozen=True)
class SaleItem:
    product_id: UUID
    quantity: int
    unit_price: Decimal
    total: Decimal


@dataclass(frozen=True)
class Sale:
    id: UUID
    customer_id: UUID
    service_ticket_id: UUID | None
    status: SaleStatus
    items: tuple[SaleItem, ...]
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    payment_method: str
    completed_at: datetime | None
    completed_by_payment_id: UUID | None
    stock_applied: bool

    @property
    def is_completed(self) -> bool:
        return self.status == SaleStatus.COMPLETED


@dataclass(frozen=True)
class Product:
    id: UUID
    sku: str
    name: str
    unit_price: Decimal
    stock: int


@dataclass(frozen=True)
class Invoice:
    id: UUID
    invoice_number: str
    kind: InvoiceKind
    sale_id: UUID | None
    service_ticket_id: UUID | None
    customer_id: UUID
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    issue_date: date
    due_date: date
    status: InvoiceStatus
