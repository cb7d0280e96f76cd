"""Read-only query selectors."""

from ledger_kernel.selectors.payment_selector import PaymentSelector, PaymentSummary
from ledger_kernel.selectors.target_selector import TargetSelector

__all__ = ["PaymentSelector", "PaymentSummary", "TargetSelector"]
