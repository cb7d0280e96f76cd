"""ORM models for the ledger kernel."""

from ledger_kernel.models.audit_event import AuditAction, AuditEvent
from ledger_kernel.models.enrollment import EnrollmentModel
from ledger_kernel.models.invoice import InvoiceModel
from ledger_kernel.models.payment import PaymentModel
from ledger_kernel.models.sale import ProductModel, SaleItemModel, SaleModel
from ledger_kernel.models.service_ticket import ServiceTicketModel


def import_all_models() -> None:
    """Register every mapped table on Base.metadata.

    SequenceCounter lives beside SequenceService, so it is imported here
    rather than at module level to keep models/ free of service imports.
    """
    from ledger_kernel.services import sequence_service  # noqa: F401


__all__ = [
    "AuditAction",
    "AuditEvent",
    "EnrollmentModel",
    "InvoiceModel",
    "PaymentModel",
    "ProductModel",
    "SaleItemModel",
    "SaleModel",
    "ServiceTicketModel",
    "import_all_models",
]
