"""
InvoiceService -- idempotent invoice generation for sales and tickets.

Responsibility:
    Issues at most one invoice per completed sale (``INV-`` numbers) and
    per completed service ticket (``SRV-`` numbers, service tax applied).
    ``generate_for_*`` is the idempotent entry point: an existing invoice
    is returned, not duplicated.

Architecture position:
    Kernel > Services.  Invoked by SideEffectDispatcher (sales completed
    by a parts payment) and TargetService (ticket completion).

Invariants enforced:
    - One invoice per source: check-then-create, with the unique
      constraints on ``invoices.sale_id`` / ``invoices.service_ticket_id``
      catching a concurrent creator.  The losing insert runs in a
      savepoint, so the surrounding transaction survives it.
    - Only completed sales are invoiced.
    - ``due_date = issue_date + invoice_due_days``; status starts draft.

Failure modes:
    - InvoiceAlreadyExistsError from ``create_for_*``; never from
      ``generate_for_*``.
    - SaleNotFoundError / TargetNotFoundError for unknown sources.
    - InvalidSaleLinkError when the sale is still pending.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.payments import ZERO
from ledger_kernel.domain.targets import Invoice, InvoiceKind, InvoiceStatus
from ledger_kernel.exceptions import (
    InvalidSaleLinkError,
    InvoiceAlreadyExistsError,
    SaleNotFoundError,
    TargetNotFoundError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.invoice import InvoiceModel
from ledger_kernel.models.sale import SaleModel
from ledger_kernel.models.service_ticket import ServiceTicketModel
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.sale_service import round_money
from ledger_kernel.services.sequence_service import SequenceService

logger = get_logger("services.invoice")


@dataclass(frozen=True)
class InvoiceGeneration:
    """Outcome of an idempotent generate call."""

    invoice: Invoice
    created: bool


class InvoiceService(BaseService):
    def __init__(
        self,
        session,
        sequence: SequenceService,
        auditor: AuditorService,
        clock: Clock | None = None,
        *,
        service_tax_rate: Decimal = Decimal("0.10"),
        due_days: int = 30,
        sale_prefix: str = "INV-",
        service_prefix: str = "SRV-",
        number_width: int = 6,
    ):
        super().__init__(session)
        self._sequence = sequence
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._service_tax_rate = service_tax_rate
        self._due_days = due_days
        self._sale_prefix = sale_prefix
        self._service_prefix = service_prefix
        self._number_width = number_width

    def get(self, invoice_id: UUID) -> Invoice | None:
        model = self.session.get(InvoiceModel, invoice_id)
        return model.to_dto() if model else None

    def _existing_for_sale(self, sale_id: UUID) -> InvoiceModel | None:
        return self.session.execute(
            select(InvoiceModel).where(InvoiceModel.sale_id == sale_id)
        ).scalar_one_or_none()

    def _existing_for_ticket(self, ticket_id: UUID) -> InvoiceModel | None:
        return self.session.execute(
            select(InvoiceModel).where(InvoiceModel.service_ticket_id == ticket_id)
        ).scalar_one_or_none()

    def _insert(
        self,
        invoice: InvoiceModel,
        source_type: str,
        source_id: UUID,
        actor_id: UUID,
    ) -> InvoiceModel:
        savepoint = self.session.begin_nested()
        try:
            self.session.add(invoice)
            self.session.flush()
        except IntegrityError:
            savepoint.rollback()
            existing = (
                self._existing_for_sale(source_id)
                if source_type == "sale"
                else self._existing_for_ticket(source_id)
            )
            if existing is None:
                raise
            raise InvoiceAlreadyExistsError(source_type, str(source_id), str(existing.id)) from None
        savepoint.commit()

        self._auditor.record_invoice_generated(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            source_type=source_type,
            source_id=source_id,
            actor_id=actor_id,
        )
        logger.info(
            "invoice_generated",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "source_type": source_type,
                "source_id": str(source_id),
                "total": str(invoice.total),
            },
        )
        return invoice

    def create_for_sale(self, sale: SaleModel, actor_id: UUID) -> InvoiceModel:
        """Issue the invoice for a completed sale.

        Raises:
            InvoiceAlreadyExistsError: The sale already has one.
            InvalidSaleLinkError: The sale is not completed.
        """
        existing = self._existing_for_sale(sale.id)
        if existing is not None:
            raise InvoiceAlreadyExistsError("sale", str(sale.id), str(existing.id))
        if not sale.is_completed:
            raise InvalidSaleLinkError(str(sale.id), "only completed sales are invoiced")

        today = self._clock.today()
        invoice = InvoiceModel(
            invoice_number=self._sequence.next_number(
                SequenceService.SALE_INVOICE, self._sale_prefix, self._number_width
            ),
            kind=InvoiceKind.SALE.value,
            sale_id=sale.id,
            customer_id=sale.customer_id,
            subtotal=sale.subtotal,
            tax=sale.tax,
            discount=sale.discount,
            total=sale.total,
            issue_date=today,
            due_date=today + timedelta(days=self._due_days),
            status=InvoiceStatus.DRAFT.value,
            created_by_id=actor_id,
        )
        return self._insert(invoice, "sale", sale.id, actor_id)

    def create_for_ticket(self, ticket: ServiceTicketModel, actor_id: UUID) -> InvoiceModel:
        """Issue the service invoice for a ticket: cost breakdown plus service tax."""
        existing = self._existing_for_ticket(ticket.id)
        if existing is not None:
            raise InvoiceAlreadyExistsError("service_ticket", str(ticket.id), str(existing.id))

        subtotal = ticket.service_charge + ticket.diagnostic_fee + ticket.parts_cost
        tax = round_money(subtotal * self._service_tax_rate)
        today = self._clock.today()
        invoice = InvoiceModel(
            invoice_number=self._sequence.next_number(
                SequenceService.SERVICE_INVOICE, self._service_prefix, self._number_width
            ),
            kind=InvoiceKind.SERVICE.value,
            service_ticket_id=ticket.id,
            customer_id=ticket.customer_id,
            subtotal=subtotal,
            tax=tax,
            discount=ZERO,
            total=subtotal + tax,
            issue_date=today,
            due_date=today + timedelta(days=self._due_days),
            status=InvoiceStatus.DRAFT.value,
            created_by_id=actor_id,
        )
        return self._insert(invoice, "service_ticket", ticket.id, actor_id)

    def generate_for_sale(self, sale_id: UUID, actor_id: UUID) -> InvoiceGeneration:
        """Idempotent: returns the existing invoice if there is one."""
        sale = self.session.get(SaleModel, sale_id)
        if sale is None:
            raise SaleNotFoundError(str(sale_id))
        try:
            invoice = self.create_for_sale(sale, actor_id)
        except InvoiceAlreadyExistsError as e:
            logger.debug("invoice_exists", extra={"sale_id": str(sale_id), "invoice_id": e.invoice_id})
            return InvoiceGeneration(self.get(UUID(e.invoice_id)), created=False)
        return InvoiceGeneration(invoice.to_dto(), created=True)

    def generate_for_ticket(self, ticket_id: UUID, actor_id: UUID) -> InvoiceGeneration:
        """Idempotent: returns the existing invoice if there is one."""
        ticket = self.session.get(ServiceTicketModel, ticket_id)
        if ticket is None:
            raise TargetNotFoundError("service_ticket", str(ticket_id))
        try:
            invoice = self.create_for_ticket(ticket, actor_id)
        except InvoiceAlreadyExistsError as e:
            logger.debug(
                "invoice_exists", extra={"service_ticket_id": str(ticket_id), "invoice_id": e.invoice_id}
            )
            return InvoiceGeneration(self.get(UUID(e.invoice_id)), created=False)
        return InvoiceGeneration(invoice.to_dto(), created=True)
