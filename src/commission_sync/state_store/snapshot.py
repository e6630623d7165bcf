"""
Run-scoped working set.

A reconciliation run loads everything it needs once, then every stage reads
and updates these in-memory records. Writes to the store happen alongside
(and only when not in dry-run), so a dry run sees the same intermediate state
a real run would.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .sqlite_store import (
        InstallmentRecord,
        ProposalRecord,
        SalesOrderRecord,
        StateStore,
    )


@dataclass
class ReconciliationSnapshot:
    """In-memory view of the records a run works on."""

    installments: list[InstallmentRecord] = field(default_factory=list)
    proposals: dict[str, ProposalRecord] = field(default_factory=dict)
    customer_names: dict[str, str | None] = field(default_factory=dict)
    orders: dict[str, SalesOrderRecord] = field(default_factory=dict)

    @classmethod
    def load(cls, store: StateStore, released_status: str) -> ReconciliationSnapshot:
        """Load released installments without DANFE and all sales orders."""
        installments = store.get_pending_installments(released_status)
        proposal_ids = sorted({i.proposal_id for i in installments if i.proposal_id})
        proposals = store.get_proposals(proposal_ids)
        orders = {o.id: o for o in store.get_all_sales_orders()}

        customer_ids = {p.customer_id for p in proposals.values() if p.customer_id}
        customer_ids.update(o.customer_id for o in orders.values() if o.customer_id)

        return cls(
            installments=installments,
            proposals=proposals,
            customer_names=store.get_customer_names(sorted(customer_ids)),
            orders=orders,
        )

    def get_order(self, order_id: str | None) -> SalesOrderRecord | None:
        if order_id is None:
            return None
        return self.orders.get(order_id)

    def orders_for_customer(self, customer_id: str) -> list[SalesOrderRecord]:
        return [o for o in self.orders.values() if o.customer_id == customer_id]

    def orders_needing_invoice(self) -> list[SalesOrderRecord]:
        """Orders known to Bling that still lack a DANFE link."""
        return [
            o for o in self.orders.values() if o.erp_order_id is not None and not o.invoice_url
        ]
