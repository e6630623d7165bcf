"""Matching engine for re-linking commission installments to sales orders.

For each released installment without a DANFE link, the engine looks at the
customer's sales orders that Bling knows about and accepts a candidate when
both the value difference and the date difference are within the run's
tolerances (inclusive bounds). One accepted candidate is linked; several are
reported as ambiguous and never auto-selected; none is reported as not found
with every candidate and the bound it exceeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ..erp_client import FATAL_ERP_ERRORS, ErpError
from ..schemas.report import (
    AmbiguousResult,
    ErpIdResolved,
    LinkResult,
    NotFoundResult,
    RunParams,
    money,
)

if TYPE_CHECKING:
    from ..config import ReconciliationConfig
    from ..erp_client import ErpClient
    from ..state_store import (
        InstallmentRecord,
        ReconciliationSnapshot,
        SalesOrderRecord,
        StateStore,
    )

logger = logging.getLogger(__name__)

# Not-found reasons
MISSING_CUSTOMER = "missing_customer"
NO_ORDERS_FOR_CUSTOMER = "no_orders_for_customer"
NO_MATCHING_VALUE = "no_matching_value"
NO_MATCHING_DATE = "no_matching_date"

# Candidate rejection reasons without a numeric bound
ORDER_DATE_MISSING = "order_date_missing"
REFERENCE_DATE_MISSING = "reference_date_missing"


def parse_day(value: str | None) -> date | None:
    """Date part of an ISO date or timestamp string."""
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        logger.debug(f"Unparseable date {value!r}")
        return None


@dataclass
class MatchCandidate:
    """An (installment, order) pair scored against the tolerances."""

    order: SalesOrderRecord
    diff_value: Decimal
    diff_days: int | None
    value_ok: bool
    rejection: str | None = None

    @property
    def accepted(self) -> bool:
        return self.rejection is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pedido_id": self.order.id,
            "order_number": self.order.order_number,
            "valor_total": money(self.order.total_value),
            "order_date": self.order.order_date,
            "bling_order_id": self.order.erp_order_id,
            "diff_valor": money(self.diff_value),
            "diff_dias": self.diff_days,
            "motivo_rejeicao": self.rejection,
        }


@dataclass
class UniqueMatch:
    """Exactly one accepted candidate."""

    installment: InstallmentRecord
    candidate: MatchCandidate

    def to_result(self) -> LinkResult:
        return LinkResult(
            installment_id=self.installment.id,
            order_id=self.candidate.order.id,
            order_number=self.candidate.order.order_number,
            diff_value=self.candidate.diff_value,
            diff_days=self.candidate.diff_days or 0,
        )


@dataclass
class AmbiguousMatch:
    """More than one accepted candidate, closest first."""

    installment: InstallmentRecord
    customer_id: str
    customer_name: str | None
    candidates: list[MatchCandidate] = field(default_factory=list)

    def to_result(self) -> AmbiguousResult:
        return AmbiguousResult(
            installment_id=self.installment.id,
            proposal_id=self.installment.proposal_id,
            customer_id=self.customer_id,
            customer_name=self.customer_name,
            amount=self.installment.amount,
            candidates=self.candidates,
        )


@dataclass
class NotFound:
    """No accepted candidate."""

    installment: InstallmentRecord
    reason: str
    customer_id: str | None = None
    customer_name: str | None = None
    current_order: SalesOrderRecord | None = None
    candidates: list[MatchCandidate] = field(default_factory=list)

    def to_result(self) -> NotFoundResult:
        return NotFoundResult(
            installment_id=self.installment.id,
            amount=self.installment.amount,
            created_at=self.installment.created_at,
            due_date=self.installment.due_date,
            reason=self.reason,
            proposal_id=self.installment.proposal_id,
            customer_id=self.customer_id,
            customer_name=self.customer_name,
            current_order_id=self.current_order.id if self.current_order else None,
            current_order_number=(
                self.current_order.order_number if self.current_order else None
            ),
            candidates=self.candidates,
        )


MatchOutcome = UniqueMatch | AmbiguousMatch | NotFound


class MatchingEngine:
    """Classifies installments as unique match, ambiguous or not found.

    Reads and updates the run snapshot; writes go to the store only when the
    run is not a dry run.
    """

    def __init__(
        self,
        store: StateStore,
        snapshot: ReconciliationSnapshot,
        params: RunParams,
        config: ReconciliationConfig,
        erp_client: ErpClient | None = None,
    ) -> None:
        """Initialize the matching engine.

        Args:
            store: State store, written to only when params.dry_run is False.
            snapshot: Run-scoped working set.
            params: Tolerances and dry-run flag for this run.
            config: Reconciliation configuration.
            erp_client: Needed only when params.lookup_draft_orders is set.
        """
        self.store = store
        self.snapshot = snapshot
        self.params = params
        self.config = config
        self.erp_client = erp_client
        self.resolved_erp_ids: list[ErpIdResolved] = []

    def _is_placeholder(self, order: SalesOrderRecord) -> bool:
        return order.is_placeholder(self.config.placeholder_order_prefix)

    def resolve(self, installment: InstallmentRecord) -> MatchOutcome | None:
        """Match one installment.

        Returns:
            The outcome, or None when the installment is already linked to an
            order Bling knows about.
        """
        current = self.snapshot.get_order(installment.sales_order_id)

        if current is not None and current.erp_order_id is not None:
            logger.debug(
                f"Installment {installment.id} already linked to {current.order_number}"
            )
            return None

        if (
            current is not None
            and self.params.lookup_draft_orders
            and not self._is_placeholder(current)
            and self._lookup_erp_id(current)
        ):
            return None

        customer_id = self._customer_for(installment, current)
        if not customer_id:
            return NotFound(installment, MISSING_CUSTOMER, current_order=current)
        customer_name = self.snapshot.customer_names.get(customer_id)

        orders = [
            o
            for o in self.snapshot.orders_for_customer(customer_id)
            if o.erp_order_id is not None and not self._is_placeholder(o)
        ]
        if not orders:
            return NotFound(
                installment,
                NO_ORDERS_FOR_CUSTOMER,
                customer_id=customer_id,
                customer_name=customer_name,
                current_order=current,
            )

        reference = self._reference_date(installment)
        candidates = [self._score(installment.amount, reference, o) for o in orders]
        accepted = [c for c in candidates if c.accepted]

        if not accepted:
            reason = (
                NO_MATCHING_DATE if any(c.value_ok for c in candidates) else NO_MATCHING_VALUE
            )
            candidates.sort(
                key=lambda c: (
                    c.diff_value,
                    c.diff_days is None,
                    c.diff_days or 0,
                    c.order.order_number,
                )
            )
            limit = self.config.max_reported_candidates
            return NotFound(
                installment,
                reason,
                customer_id=customer_id,
                customer_name=customer_name,
                current_order=current,
                candidates=candidates[:limit] if limit > 0 else candidates,
            )

        if len(accepted) > 1:
            accepted.sort(key=lambda c: (c.diff_days, c.diff_value, c.order.order_number))
            return AmbiguousMatch(installment, customer_id, customer_name, accepted)

        match = UniqueMatch(installment, accepted[0])
        self._link(installment, accepted[0].order, current)
        return match

    def _customer_for(
        self, installment: InstallmentRecord, current: SalesOrderRecord | None
    ) -> str | None:
        """Proposal's customer, else the customer of the currently linked order."""
        proposal = self.snapshot.proposals.get(installment.proposal_id or "")
        if proposal is not None and proposal.customer_id:
            return proposal.customer_id
        if current is not None and current.customer_id:
            return current.customer_id
        return None

    def _reference_date(self, installment: InstallmentRecord) -> date | None:
        proposal = self.snapshot.proposals.get(installment.proposal_id or "")
        if proposal is not None:
            reference = parse_day(proposal.created_at)
            if reference is not None:
                return reference
        return parse_day(installment.created_at)

    def _score(
        self, amount: Decimal, reference: date | None, order: SalesOrderRecord
    ) -> MatchCandidate:
        tolerance_value = self.params.tolerance_value
        tolerance_days = self.params.tolerance_days

        diff_value = abs(amount - order.total_value)
        value_ok = diff_value <= tolerance_value

        order_day = parse_day(order.order_date)
        diff_days = abs((reference - order_day).days) if reference and order_day else None

        problems = []
        if not value_ok:
            problems.append(f"diff_valor {diff_value:.2f} > tolerance_value {tolerance_value}")
        if order_day is None:
            problems.append(ORDER_DATE_MISSING)
        elif reference is None:
            problems.append(REFERENCE_DATE_MISSING)
        elif diff_days > tolerance_days:
            problems.append(f"diff_dias {diff_days} > tolerance_days {tolerance_days}")

        return MatchCandidate(
            order=order,
            diff_value=diff_value,
            diff_days=diff_days,
            value_ok=value_ok,
            rejection="; ".join(problems) if problems else None,
        )

    def _link(
        self,
        installment: InstallmentRecord,
        order: SalesOrderRecord,
        current: SalesOrderRecord | None,
    ) -> None:
        previous = installment.sales_order_id
        installment.sales_order_id = order.id
        logger.info(f"Installment {installment.id} -> order {order.order_number}")

        if self.params.dry_run:
            return

        written = self.store.link_installment_to_order(
            installment.id, order.id, expected_current=previous
        )
        if not written:
            # Someone linked it concurrently; keep the stored link
            stored = self.store.get_installment(installment.id)
            installment.sales_order_id = stored.sales_order_id if stored else previous
            logger.warning(
                f"Installment {installment.id} was linked elsewhere "
                f"(now {installment.sales_order_id}), keeping existing link"
            )

    def _lookup_erp_id(self, order: SalesOrderRecord) -> bool:
        """Ask Bling for the id of a draft order. True when it was found."""
        if self.erp_client is None:
            return False
        try:
            erp_order_id = self.erp_client.find_order_id_by_store_number(
                order.order_number, self.config.placeholder_order_prefix
            )
        except FATAL_ERP_ERRORS:
            raise
        except ErpError as e:
            logger.warning(f"Bling lookup for order {order.order_number} failed: {e}")
            return False

        if erp_order_id is None:
            return False

        order.erp_order_id = erp_order_id
        if not self.params.dry_run:
            self.store.set_order_erp_id(order.id, erp_order_id)
        self.resolved_erp_ids.append(
            ErpIdResolved(
                order_id=order.id, order_number=order.order_number, erp_order_id=erp_order_id
            )
        )
        logger.info(f"Order {order.order_number} found in Bling as {erp_order_id}")
        return True
