"""
Module: ledger_engines
Responsibility:
    Package entrypoint re-exporting the pure balance engines.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import ledger_kernel.domain (and sibling engine modules).
    MUST NOT import ledger_services or kernel services.

Invariants enforced:
    - Purity: engines never read the clock or the database.
    - Decimal-only arithmetic for all monetary amounts.
    - Determinism: identical inputs always produce identical outputs,
      which is what makes ``recompute`` idempotent.

Audit relevance:
    Every engine invocation is traced via ``@traced_engine``, emitting a
    LEDGER_ENGINE_TRACE log record with an input fingerprint.
"""

from ledger_engines.enrollment_balance import EnrollmentBalance, EnrollmentBalanceEngine
from ledger_engines.service_balance import (
    ServiceBalanceEngine,
    SettlementOutcome,
    SmartCalculation,
    TicketTotals,
)
from ledger_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "EnrollmentBalance",
    "EnrollmentBalanceEngine",
    "ServiceBalanceEngine",
    "SettlementOutcome",
    "SmartCalculation",
    "TicketTotals",
    "compute_input_fingerprint",
    "traced_engine",
]
