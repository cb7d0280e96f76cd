"""Kernel services: flush-only writers inside the caller's transaction."""

from ledger_kernel.services.auditor_service import AuditorService, AuditTrace, AuditTraceEntry
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.invoice_service import InvoiceGeneration, InvoiceService
from ledger_kernel.services.sale_service import SaleService, StockService, round_money
from ledger_kernel.services.sequence_service import SequenceCounter, SequenceService
from ledger_kernel.services.target_guard import TargetGuard
from ledger_kernel.services.target_service import TargetService

__all__ = [
    "AuditTrace",
    "AuditTraceEntry",
    "AuditorService",
    "BaseService",
    "InvoiceGeneration",
    "InvoiceService",
    "SaleService",
    "SequenceCounter",
    "SequenceService",
    "StockService",
    "TargetGuard",
    "TargetService",
    "round_money",
]
