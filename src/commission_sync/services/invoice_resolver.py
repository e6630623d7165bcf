"""NF-e resolution for sales orders known to Bling.

For every order in the run snapshot that has a Bling order id and no DANFE
link yet, fetch the order, find its NF-e, check that the NF-e is authorized
and record the DANFE link and number. Each order is isolated: a failure is
reported and the next order is processed. Only token failures abort.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from ..erp_client import FATAL_ERP_ERRORS, ErpError, ErpNotFoundError
from ..schemas.erp_payloads import InvoiceDetail, OrderDetail, unwrap_data
from ..schemas.report import InvoiceError, RunParams

if TYPE_CHECKING:
    from ..config import ReconciliationConfig
    from ..erp_client import ErpClient
    from ..schemas.report import RunReport
    from ..state_store import ReconciliationSnapshot, SalesOrderRecord, StateStore

logger = logging.getLogger(__name__)

ORDER_NOT_FOUND = "order_not_found_in_bling"
INVOICE_ID_MISSING = "invoice_id_missing"
INVOICE_NOT_FOUND = "invoice_not_found"
INVOICE_NOT_AUTHORIZED = "invoice_not_authorized"
DOCUMENT_LINK_MISSING = "document_link_missing"


class InvoiceResolver:
    """Fills DANFE link and NF-e number on sales orders."""

    def __init__(
        self,
        erp_client: ErpClient,
        store: StateStore,
        snapshot: ReconciliationSnapshot,
        params: RunParams,
        config: ReconciliationConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.erp = erp_client
        self.store = store
        self.snapshot = snapshot
        self.params = params
        self.config = config
        self._sleep = sleep

    def run(self, report: RunReport) -> None:
        """Resolve every pending order, recording counts and errors on report."""
        orders = self.snapshot.orders_needing_invoice()
        logger.info(f"Orders needing NF-e: {len(orders)}")

        for order in orders:
            report.invoices_fetched += 1
            self._pace(report.invoices_fetched)

            try:
                error = self.resolve_order(order)
            except FATAL_ERP_ERRORS:
                raise
            except ErpError as e:
                logger.error(f"Error resolving NF-e for order {order.order_number}: {e}")
                error = self._error(order, f"api_error: {e}")

            if error is None:
                report.invoices_found += 1
            else:
                report.invoice_errors.append(error)

        logger.info(
            f"NF-e lookups: {report.invoices_fetched}, found: {report.invoices_found}, "
            f"errors: {len(report.invoice_errors)}"
        )

    def _pace(self, fetched: int) -> None:
        every = self.config.pacing_every
        if every > 0 and fetched > 1 and fetched % every == 0:
            self._sleep(self.config.pacing_seconds)

    def _error(self, order: SalesOrderRecord, reason: str, **extra) -> InvoiceError:
        return InvoiceError(
            erp_order_id=order.erp_order_id,
            order_id=order.id,
            order_number=order.order_number,
            reason=reason,
            **extra,
        )

    def resolve_order(self, order: SalesOrderRecord) -> InvoiceError | None:
        """
        Resolve the NF-e of one order.

        Returns:
            None on success (order updated), else the InvoiceError to report

        Raises:
            ErpError: Transport/API failures other than 404
        """
        try:
            order_data = unwrap_data(self.erp.get_order(order.erp_order_id))
        except ErpNotFoundError:
            order_data = None
        if order_data is None:
            return self._error(order, ORDER_NOT_FOUND)

        detail = OrderDetail.from_payload(order_data)
        if detail.invoice_id is None:
            return self._error(order, INVOICE_ID_MISSING, payload_summary=detail.summary())

        try:
            invoice_data = unwrap_data(self.erp.get_invoice(detail.invoice_id))
        except ErpNotFoundError:
            invoice_data = None
        if invoice_data is None:
            return self._error(order, INVOICE_NOT_FOUND)

        invoice = InvoiceDetail.from_payload(invoice_data)
        if not invoice.is_authorized:
            logger.info(
                f"NF-e {detail.invoice_id} of order {order.order_number} "
                f"not authorized (situacao={invoice.status_code})"
            )
            return self._error(order, INVOICE_NOT_AUTHORIZED, status_code=invoice.status_code)

        if not invoice.document_link:
            return self._error(order, DOCUMENT_LINK_MISSING)

        order.invoice_url = invoice.document_link
        order.invoice_number = invoice.number
        if not self.params.dry_run:
            self.store.set_order_invoice(order.id, invoice.document_link, invoice.number)

        logger.info(f"NF-e {invoice.number} found for order {order.order_number}")
        return None
