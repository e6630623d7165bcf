"""Copy DANFE links from sales orders onto their installments."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..schemas.report import PropagationResult, RunParams

if TYPE_CHECKING:
    from ..state_store import ReconciliationSnapshot, StateStore

logger = logging.getLogger(__name__)


class Propagator:
    """Fills invoice link/number on installments whose order has them.

    Runs after invoice resolution and only sees what the snapshot holds at
    that point, so an order resolved later never propagates in this run.
    """

    def __init__(
        self, store: StateStore, snapshot: ReconciliationSnapshot, params: RunParams
    ) -> None:
        self.store = store
        self.snapshot = snapshot
        self.params = params

    def run(self) -> list[PropagationResult]:
        results: list[PropagationResult] = []

        for installment in self.snapshot.installments:
            if installment.invoice_url:
                continue
            order = self.snapshot.get_order(installment.sales_order_id)
            if order is None or not order.invoice_url:
                continue

            installment.invoice_url = order.invoice_url
            installment.invoice_number = order.invoice_number or ""

            if not self.params.dry_run:
                written = self.store.set_installment_invoice(
                    installment.id, installment.invoice_url, installment.invoice_number
                )
                if not written:
                    logger.debug(f"Installment {installment.id} already had a DANFE link")

            results.append(
                PropagationResult(
                    installment_id=installment.id,
                    order_id=order.id,
                    order_number=order.order_number,
                    invoice_number=installment.invoice_number,
                    invoice_url=installment.invoice_url,
                )
            )

        logger.info(f"DANFE links propagated: {len(results)}")
        return results
