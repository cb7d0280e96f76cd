"""
ledger_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure balance engines
    (ledger_engines/) with the kernel's flush-only services.  This is the
    only layer that commits transactions or holds target locks.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction (enforced by tests/architecture/test_layer_boundary.py):
        ledger_services/ -> ledger_engines/  (allowed)
        ledger_services/ -> ledger_kernel/   (allowed)
        ledger_engines/  -> ledger_services/ (FORBIDDEN)
        ledger_kernel/   -> ledger_services/ (FORBIDDEN)

Invariants enforced:
    - DI transparency: all wiring is centralised in PaymentOrchestrator.
"""

from ledger_kernel.logging_config import get_logger

logger = get_logger("services")

from ledger_services.approval_workflow import ApprovalWorkflow, DecisionResult
from ledger_services.enrollment_balance import EnrollmentBalanceCalculator
from ledger_services.payment_ledger import PaymentLedger
from ledger_services.payment_orchestrator import PaymentOrchestrator
from ledger_services.reconciler import BalanceReconciler
from ledger_services.service_balance import ServiceBalanceCalculator
from ledger_services.side_effects import DispatchReport, SideEffectDispatcher, SideEffectFailure
from ledger_services.target_locks import TargetLockRegistry

__all__ = [
    "ApprovalWorkflow",
    "BalanceReconciler",
    "DecisionResult",
    "DispatchReport",
    "EnrollmentBalanceCalculator",
    "PaymentLedger",
    "PaymentOrchestrator",
    "ServiceBalanceCalculator",
    "SideEffectDispatcher",
    "SideEffectFailure",
    "TargetLockRegistry",
]
