"""
State Store (SQLite-based).

Local mirror of the commission data the engine works on:
- Installments, proposals, customers and sales orders
- Bling OAuth credentials (rotated on every refresh)
- The advisory run lock

All engine writes are fill-if-null; see ``sqlite_store`` for the write rules.
"""

from .snapshot import ReconciliationSnapshot
from .sqlite_store import (
    CustomerRecord,
    ErpCredentials,
    InstallmentRecord,
    ProposalRecord,
    RunLockError,
    SalesOrderRecord,
    StateStore,
    StateStoreError,
)

__all__ = [
    "StateStore",
    "StateStoreError",
    "RunLockError",
    "ReconciliationSnapshot",
    "CustomerRecord",
    "ProposalRecord",
    "SalesOrderRecord",
    "InstallmentRecord",
    "ErpCredentials",
]
