"""
Ledger Kernel - payment reconciliation core

A transactional payment ledger with:
- Pending -> approved | declined decision workflow
- Full-recompute balances for enrollments and service tickets
- Exactly-once side effects (sale completion, invoices, stock)
- Per-target locking with optimistic version checks
- Hash-chained audit trail
"""

__version__ = "0.1.0"
