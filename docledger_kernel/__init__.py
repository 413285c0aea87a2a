"""
Document Ledger Kernel

Persistence, invariants and ledgers for financial documents:
- Stock ledger with reservations and an append-only movement log
- Credit ledger with conserved generated/used/blocked/available amounts
- Per-client append-only account balance ledger
- Tenant isolation and entity-level locking
"""

__version__ = "0.1.0"
