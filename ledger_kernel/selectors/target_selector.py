"""
Module: ledger_kernel.selectors.target_selector
Responsibility: Read-side lookups for enrollments, service tickets, sales,
    products and invoices.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from ledger_kernel.domain.targets import Enrollment, Invoice, Product, Sale, ServiceTicket
from ledger_kernel.models.enrollment import EnrollmentModel
from ledger_kernel.models.invoice import InvoiceModel
from ledger_kernel.models.sale import ProductModel, SaleModel
from ledger_kernel.models.service_ticket import ServiceTicketModel
from ledger_kernel.selectors.base import BaseSelector


class TargetSelector(BaseSelector):
    def get_enrollment(self, enrollment_id: UUID) -> Enrollment | None:
        model = self.session.get(EnrollmentModel, enrollment_id)
        return model.to_dto() if model else None

    def get_ticket(self, ticket_id: UUID) -> ServiceTicket | None:
        model = self.session.get(ServiceTicketModel, ticket_id)
        return model.to_dto() if model else None

    def get_sale(self, sale_id: UUID) -> Sale | None:
        model = self.session.get(SaleModel, sale_id)
        return model.to_dto() if model else None

    def get_product(self, product_id: UUID) -> Product | None:
        model = self.session.get(ProductModel, product_id)
        return model.to_dto() if model else None

    def invoice_for_sale(self, sale_id: UUID) -> Invoice | None:
        model = self.session.execute(
            select(InvoiceModel).where(InvoiceModel.sale_id == sale_id)
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def invoice_for_ticket(self, ticket_id: UUID) -> Invoice | None:
        model = self.session.execute(
            select(InvoiceModel).where(InvoiceModel.service_ticket_id == ticket_id)
        ).scalar_one_or_none()
        return model.to_dto() if model else None
