"""
Run report types.

The JSON shape produced here is the public contract of the HTTP trigger and
of ``commission-sync reconcile --json``. Keys keep the Portuguese names the
back-office tooling already consumes (parcela, pedido, vinculados, ...).

Money is carried as Decimal and rendered as float only in ``to_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..matching.engine import MatchCandidate


def money(value: Decimal | None) -> float | None:
    """Render a Decimal amount for JSON."""
    if value is None:
        return None
    return float(value)


@dataclass
class RunParams:
    """Per-run parameters (override the configured defaults)."""

    dry_run: bool = True
    tolerance_value: Decimal = Decimal("1.0")
    tolerance_days: int | float = 7
    lookup_draft_orders: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "tolerance_value": money(self.tolerance_value),
            "tolerance_days": self.tolerance_days,
            "lookup_draft_orders": self.lookup_draft_orders,
        }


@dataclass
class LinkResult:
    """Installment linked to its unique matching order."""

    installment_id: str
    order_id: str
    order_number: str
    diff_value: Decimal
    diff_days: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "parcela_id": self.installment_id,
            "pedido_id": self.order_id,
            "order_number": self.order_number,
            "diff_valor": money(self.diff_value),
            "diff_dias": self.diff_days,
        }


@dataclass
class AmbiguousResult:
    """Several orders satisfy both tolerances; left for a human decision."""

    installment_id: str
    proposal_id: str | None
    customer_id: str
    customer_name: str | None
    amount: Decimal
    candidates: list[MatchCandidate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "parcela_id": self.installment_id,
            "proposta_id": self.proposal_id,
            "cliente_id": self.customer_id,
            "cliente_nome": self.customer_name,
            "valor_parcela": money(self.amount),
            "candidatos": [c.to_dict() for c in self.candidates],
        }


@dataclass
class NotFoundResult:
    """No order satisfies both tolerances (or no candidate exists at all)."""

    installment_id: str
    amount: Decimal
    created_at: str | None
    due_date: str | None
    reason: str
    proposal_id: str | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    current_order_id: str | None = None
    current_order_number: str | None = None
    candidates: list[MatchCandidate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "parcela_id": self.installment_id,
            "valor": money(self.amount),
            "created_at": self.created_at,
            "data_vencimento": self.due_date,
            "pedido_id_atual": self.current_order_id,
            "order_number_atual": self.current_order_number,
            "proposta_id": self.proposal_id,
            "cliente_id": self.customer_id,
            "cliente_nome": self.customer_name,
            "motivo": self.reason,
            "candidatos": [c.to_dict() for c in self.candidates],
        }


@dataclass
class InvoiceError:
    """Order whose NF-e could not be resolved in this run."""

    erp_order_id: int
    order_id: str
    order_number: str
    reason: str
    status_code: int | str | None = None
    payload_summary: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "bling_order_id": self.erp_order_id,
            "pedido_id": self.order_id,
            "order_number": self.order_number,
            "motivo": self.reason,
        }
        if self.status_code is not None:
            data["situacao"] = self.status_code
        if self.payload_summary is not None:
            data["payload_resumido"] = self.payload_summary
        return data


@dataclass
class PropagationResult:
    """DANFE link copied from an order onto one of its installments."""

    installment_id: str
    order_id: str
    order_number: str
    invoice_number: str
    invoice_url: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "parcela_id": self.installment_id,
            "pedido_id": self.order_id,
            "order_number": self.order_number,
            "nota_fiscal_numero": self.invoice_number,
            "link_danfe": self.invoice_url,
        }


@dataclass
class ErpIdResolved:
    """Draft order whose Bling id was found by store number."""

    order_id: str
    order_number: str
    erp_order_id: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "pedido_id": self.order_id,
            "order_number": self.order_number,
            "bling_order_id": self.erp_order_id,
        }


@dataclass
class RunReport:
    """Aggregate result of one reconciliation run."""

    params: RunParams
    installments_processed: int = 0
    invoices_fetched: int = 0
    invoices_found: int = 0
    linked: list[LinkResult] = field(default_factory=list)
    ambiguous: list[AmbiguousResult] = field(default_factory=list)
    not_found: list[NotFoundResult] = field(default_factory=list)
    invoice_errors: list[InvoiceError] = field(default_factory=list)
    propagated: list[PropagationResult] = field(default_factory=list)
    erp_ids_resolved: list[ErpIdResolved] = field(default_factory=list)

    @property
    def dry_run(self) -> bool:
        return self.params.dry_run

    def summary(self) -> dict[str, int]:
        return {
            "parcelas_processadas": self.installments_processed,
            "vinculos_criados": len(self.linked),
            "nfes_buscadas": self.invoices_fetched,
            "nfes_encontradas": self.invoices_found,
            "danfes_propagados": len(self.propagated),
            "ambiguous": len(self.ambiguous),
            "not_found": len(self.not_found),
            "nfe_errors": len(self.invoice_errors),
            "erp_ids_resolvidos": len(self.erp_ids_resolved),
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": True,
            "dry_run": self.dry_run,
            "params": self.params.to_dict(),
            "summary": self.summary(),
            "vinculados": [r.to_dict() for r in self.linked],
            "ambiguous": [r.to_dict() for r in self.ambiguous],
            "not_found": [r.to_dict() for r in self.not_found],
            "nfe_errors": [r.to_dict() for r in self.invoice_errors],
            "danfes_propagados": [r.to_dict() for r in self.propagated],
            "erp_ids_resolvidos": [r.to_dict() for r in self.erp_ids_resolved],
        }
