"""
Bling v3 payload decoders (SSOT).

Bling responses have no fixed schema: the same field shows up under
different nesting paths depending on the account, the endpoint version and
how the order was created. Each decoder here declares an explicit ordered
list of paths and takes the first one that holds a usable value.

Path priority:
- Invoice id on an order: notasFiscais[0].id, notaFiscal.id, nfe.id
- Invoice status: situacao.id, then scalar situacao
- DANFE link: linkDanfe, xml.linkDanfe, link_danfe
- Invoice number: numero

Only status AUTHORIZED_STATUS (6) counts as an authorized NF-e.
"""

from dataclasses import dataclass
from typing import Any

# Bling "situacao" code of an authorized NF-e
AUTHORIZED_STATUS = 6

PayloadPath = tuple[str | int, ...]

INVOICE_ID_PATHS: tuple[PayloadPath, ...] = (
    ("notasFiscais", 0, "id"),
    ("notaFiscal", "id"),
    ("nfe", "id"),
)
INVOICE_STATUS_PATHS: tuple[PayloadPath, ...] = (
    ("situacao", "id"),
    ("situacao",),
)
DOCUMENT_LINK_PATHS: tuple[PayloadPath, ...] = (
    ("linkDanfe",),
    ("xml", "linkDanfe"),
    ("link_danfe",),
)
INVOICE_NUMBER_PATHS: tuple[PayloadPath, ...] = (("numero",),)


def get_path(payload: Any, path: PayloadPath) -> Any:
    """Walk a nested dict/list payload. Returns None when any step is missing."""
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


def _is_usable(value: Any) -> bool:
    # Bling uses 0 and "" for "not set"; containers are never a leaf value
    if value is None or isinstance(value, (dict, list, bool)):
        return False
    if isinstance(value, str):
        return value.strip() != ""
    return value != 0


def first_present(
    payload: Any, paths: tuple[PayloadPath, ...]
) -> tuple[Any, PayloadPath | None]:
    """
    Return the first usable value along the given paths.

    Returns:
        (value, path) of the first hit, or (None, None)
    """
    for path in paths:
        value = get_path(payload, path)
        if _is_usable(value):
            return value, path
    return None, None


def format_path(path: PayloadPath | None) -> str | None:
    """Render a path as dotted text, e.g. ``notasFiscais[0].id``."""
    if path is None:
        return None
    text = ""
    for step in path:
        if isinstance(step, int):
            text += f"[{step}]"
        else:
            text += f".{step}" if text else step
    return text


def unwrap_data(response: Any) -> dict[str, Any] | None:
    """Bling wraps single resources in ``{"data": {...}}``. Empty data -> None."""
    if not isinstance(response, dict):
        return None
    data = response.get("data")
    if not isinstance(data, dict) or not data:
        return None
    return data


def _normalize_status(value: Any) -> int | str | None:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return value


@dataclass
class OrderDetail:
    """Decoded ``GET /pedidos/vendas/{id}`` payload."""

    erp_order_id: int | None
    invoice_id: int | str | None
    invoice_id_path: str | None
    payload: dict[str, Any]

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "OrderDetail":
        invoice_id, path = first_present(data, INVOICE_ID_PATHS)
        return cls(
            erp_order_id=data.get("id"),
            invoice_id=invoice_id,
            invoice_id_path=format_path(path),
            payload=data,
        )

    def summary(self) -> dict[str, Any]:
        """Small description of the invoice fields, for diagnostics."""
        notas = self.payload.get("notasFiscais")
        return {
            "hasNotasFiscais": bool(notas),
            "notasFiscaisLength": len(notas) if isinstance(notas, list) else 0,
            "hasNotaFiscal": isinstance(self.payload.get("notaFiscal"), dict),
            "hasNfe": isinstance(self.payload.get("nfe"), dict),
        }


@dataclass
class InvoiceDetail:
    """Decoded ``GET /nfe/{id}`` payload."""

    invoice_id: int | str | None
    status_code: int | str | None
    document_link: str | None
    document_link_path: str | None
    number: str

    @property
    def is_authorized(self) -> bool:
        return self.status_code == AUTHORIZED_STATUS

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "InvoiceDetail":
        status, _ = first_present(data, INVOICE_STATUS_PATHS)
        link, link_path = first_present(data, DOCUMENT_LINK_PATHS)
        number, _ = first_present(data, INVOICE_NUMBER_PATHS)
        return cls(
            invoice_id=data.get("id"),
            status_code=_normalize_status(status),
            document_link=str(link).strip() if link is not None else None,
            document_link_path=format_path(link_path),
            number=str(number) if number is not None else "",
        )


def extract_store_order_id(
    response: Any, order_number: str
) -> int | None:
    """
    Find the Bling id of the order whose ``numeroLoja`` equals order_number.

    Matching ignores a leading '#' and case. Only an exact match counts;
    Bling's numeroLoja filter is a prefix search.
    """
    wanted = order_number.strip().lstrip("#").upper()
    if not wanted:
        return None
    rows = response.get("data") if isinstance(response, dict) else None
    if not isinstance(rows, list):
        return None
    for row in rows:
        if not isinstance(row, dict):
            continue
        store_number = str(row.get("numeroLoja") or "").strip().lstrip("#").upper()
        if store_number == wanted and _is_usable(row.get("id")):
            return row["id"]
    return None
