"""
Shared schemas: Bling payload decoders and the run report.
"""

from .erp_payloads import (
    AUTHORIZED_STATUS,
    DOCUMENT_LINK_PATHS,
    INVOICE_ID_PATHS,
    INVOICE_NUMBER_PATHS,
    INVOICE_STATUS_PATHS,
    InvoiceDetail,
    OrderDetail,
    extract_store_order_id,
    first_present,
    get_path,
    unwrap_data,
)
from .report import (
    AmbiguousResult,
    ErpIdResolved,
    InvoiceError,
    LinkResult,
    NotFoundResult,
    PropagationResult,
    RunParams,
    RunReport,
)

__all__ = [
    # Bling payloads
    "AUTHORIZED_STATUS",
    "INVOICE_ID_PATHS",
    "INVOICE_STATUS_PATHS",
    "DOCUMENT_LINK_PATHS",
    "INVOICE_NUMBER_PATHS",
    "OrderDetail",
    "InvoiceDetail",
    "extract_store_order_id",
    "first_present",
    "get_path",
    "unwrap_data",
    # Run report
    "RunParams",
    "RunReport",
    "LinkResult",
    "AmbiguousResult",
    "NotFoundResult",
    "InvoiceError",
    "PropagationResult",
    "ErpIdResolved",
]
