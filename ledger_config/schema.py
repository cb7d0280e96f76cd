"""
Configuration schema (``ledger_config.schema``).

Responsibility
--------------
Frozen dataclasses describing every tunable of the ledger: tax rates,
invoice terms, document numbering, conflict-retry budget, stock clamping
and the database URL.  Defaults reproduce the behaviour of the business
tool the ledger serves.

Architecture position
---------------------
**Config layer** -- pure data.  No I/O, no kernel imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class NumberingConfig:
    """Prefixes and zero-padding for generated document numbers."""

    enrollment_receipt_prefix: str = "PV-"
    service_receipt_prefix: str = "SP-"
    sale_invoice_prefix: str = "INV-"
    service_invoice_prefix: str = "SRV-"
    ticket_prefix: str = "ST-"
    number_width: int = 6


@dataclass(frozen=True)
class LedgerConfig:
    """
    Runtime configuration for the payment ledger.

    Guarantees:
        - Tax rates are fractions in [0, 1].
        - ``invoice_due_days`` and ``max_conflict_retries`` are >= 0.
        - ``checksum`` identifies the source document; empty for
          in-code defaults.
    """

    sale_tax_rate: Decimal = Decimal("0.10")
    service_tax_rate: Decimal = Decimal("0.10")
    invoice_due_days: int = 30
    numbering: NumberingConfig = field(default_factory=NumberingConfig)
    max_conflict_retries: int = 3
    clamp_stock_at_zero: bool = True
    database_url: str = "sqlite:///ledger.db"
    checksum: str = ""
