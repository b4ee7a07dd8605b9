"""
DocLedger Kernel

Persistence, domain types and stateful kernel services for the document
ledger:
- Atomic voucher numbering per (company, series, year)
- Idempotent duplicate detection with auditable overrides
- Threshold-based multi-level approval requests
- Period lifecycle with append-only history
"""

__version__ = "0.1.0"
