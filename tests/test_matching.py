"""
Tests for the installment -> sales order matching engine.

The engine works on an in-memory snapshot; the store is a mock so every
write (or its absence in dry-run) can be asserted.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from commission_sync.config import ReconciliationConfig
from commission_sync.erp_client import ErpAPIError, ErpAuthError, TokenRefreshError
from commission_sync.matching import (
    MISSING_CUSTOMER,
    NO_MATCHING_DATE,
    NO_MATCHING_VALUE,
    NO_ORDERS_FOR_CUSTOMER,
    AmbiguousMatch,
    MatchingEngine,
    NotFound,
    UniqueMatch,
)
from commission_sync.matching.engine import parse_day
from commission_sync.schemas import RunParams
from commission_sync.state_store import ReconciliationSnapshot


def build_engine(
    orders,
    proposals,
    dry_run=True,
    config=None,
    erp_client=None,
    store=None,
    lookup_draft_orders=False,
):
    snapshot = ReconciliationSnapshot(
        installments=[],
        proposals={p.id: p for p in proposals},
        customer_names={"cust-1": "Igreja Central"},
        orders={o.id: o for o in orders},
    )
    params = RunParams(
        dry_run=dry_run,
        tolerance_value=Decimal("1.0"),
        tolerance_days=7,
        lookup_draft_orders=lookup_draft_orders,
    )
    return MatchingEngine(
        store if store is not None else MagicMock(),
        snapshot,
        params,
        config or ReconciliationConfig(),
        erp_client=erp_client,
    )


class TestParseDay:
    def test_timestamp_and_date(self):
        assert parse_day("2024-03-01T23:59:59Z").isoformat() == "2024-03-01"
        assert parse_day("2024-03-03").isoformat() == "2024-03-03"

    def test_missing_or_invalid(self):
        assert parse_day(None) is None
        assert parse_day("") is None
        assert parse_day("03/01/2024") is None


class TestUniqueMatch:
    def test_exact_value_two_days_apart(self, make_installment, make_order, make_proposal):
        installment = make_installment()
        engine = build_engine([make_order()], [make_proposal()])

        outcome = engine.resolve(installment)

        assert isinstance(outcome, UniqueMatch)
        result = outcome.to_result().to_dict()
        assert result == {
            "parcela_id": "inst-1",
            "pedido_id": "order-1",
            "order_number": "#1001",
            "diff_valor": 0.0,
            "diff_dias": 2,
        }
        assert installment.sales_order_id == "order-1"

    @pytest.mark.parametrize(
        "total_value,order_date",
        [
            ("151.00", "2024-03-03"),
            ("149.00", "2024-03-03"),
            ("150.00", "2024-03-08"),
            ("150.00", "2024-02-23"),
        ],
    )
    def test_tolerances_are_inclusive(
        self, make_installment, make_order, make_proposal, total_value, order_date
    ):
        order = make_order(total_value=total_value, order_date=order_date)
        engine = build_engine([order], [make_proposal()])

        assert isinstance(engine.resolve(make_installment()), UniqueMatch)

    def test_reference_date_falls_back_to_installment(self, make_installment, make_order):
        # No proposal: customer comes from the current (draft) order,
        # reference date from the installment itself
        draft = make_order(id="draft-1", order_number="#D77", erp_order_id=None)
        order = make_order(order_date="2024-03-06")
        installment = make_installment(proposal_id=None, sales_order_id="draft-1")
        engine = build_engine([draft, order], [])

        outcome = engine.resolve(installment)

        assert isinstance(outcome, UniqueMatch)
        assert outcome.candidate.diff_days == 1


class TestRejections:
    def test_value_just_over_tolerance(self, make_installment, make_order, make_proposal):
        order = make_order(total_value="151.01")
        engine = build_engine([order], [make_proposal()])

        outcome = engine.resolve(make_installment())

        assert isinstance(outcome, NotFound)
        assert outcome.reason == NO_MATCHING_VALUE
        assert outcome.candidates[0].rejection == "diff_valor 1.01 > tolerance_value 1.0"

    def test_date_just_over_tolerance(self, make_installment, make_order, make_proposal):
        order = make_order(order_date="2024-03-09")
        engine = build_engine([order], [make_proposal()])

        outcome = engine.resolve(make_installment())

        assert isinstance(outcome, NotFound)
        assert outcome.reason == NO_MATCHING_DATE
        assert outcome.candidates[0].rejection == "diff_dias 8 > tolerance_days 7"

    def test_both_bounds_exceeded(self, make_installment, make_order, make_proposal):
        order = make_order(total_value="200.00", order_date="2024-04-01")
        engine = build_engine([order], [make_proposal()])

        outcome = engine.resolve(make_installment())

        assert outcome.reason == NO_MATCHING_VALUE
        assert outcome.candidates[0].rejection == (
            "diff_valor 50.00 > tolerance_value 1.0; diff_dias 31 > tolerance_days 7"
        )

    def test_missing_order_date_is_rejected(self, make_installment, make_order, make_proposal):
        order = make_order(order_date=None)
        engine = build_engine([order], [make_proposal()])

        outcome = engine.resolve(make_installment())

        assert isinstance(outcome, NotFound)
        assert outcome.reason == NO_MATCHING_DATE
        candidate = outcome.candidates[0]
        assert candidate.rejection == "order_date_missing"
        assert candidate.diff_days is None

    def test_candidates_sorted_closest_value_first(
        self, make_installment, make_order, make_proposal
    ):
        far = make_order(id="o-far", order_number="#2000", total_value="300.00")
        near = make_order(id="o-near", order_number="#2001", total_value="160.00")
        engine = build_engine([far, near], [make_proposal()])

        outcome = engine.resolve(make_installment())

        assert [c.order.id for c in outcome.candidates] == ["o-near", "o-far"]

    def test_reported_candidates_can_be_limited(
        self, make_installment, make_order, make_proposal
    ):
        orders = [
            make_order(id=f"o-{i}", order_number=f"#30{i}", total_value=f"{200 + i}.00")
            for i in range(3)
        ]
        config = ReconciliationConfig(max_reported_candidates=2)
        engine = build_engine(orders, [make_proposal()], config=config)

        outcome = engine.resolve(make_installment())

        assert [c.order.id for c in outcome.candidates] == ["o-0", "o-1"]

    def test_not_found_report_shape(self, make_installment, make_order, make_proposal):
        draft = make_order(id="draft-1", order_number="#D77", erp_order_id=None)
        order = make_order(total_value="999.00")
        installment = make_installment(sales_order_id="draft-1")
        engine = build_engine([draft, order], [make_proposal()])

        data = engine.resolve(installment).to_result().to_dict()

        assert data["motivo"] == NO_MATCHING_VALUE
        assert data["pedido_id_atual"] == "draft-1"
        assert data["order_number_atual"] == "#D77"
        assert data["cliente_nome"] == "Igreja Central"
        assert data["valor"] == 150.0
        assert data["candidatos"][0]["pedido_id"] == "order-1"
        assert data["candidatos"][0]["bling_order_id"] == 9001


class TestNoCandidates:
    def test_missing_customer(self, make_installment, make_order, make_proposal):
        engine = build_engine([make_order()], [make_proposal(customer_id=None)])

        outcome = engine.resolve(make_installment())

        assert isinstance(outcome, NotFound)
        assert outcome.reason == MISSING_CUSTOMER
        assert outcome.candidates == []

    def test_only_drafts_and_unknown_orders(self, make_installment, make_order, make_proposal):
        orders = [
            make_order(id="draft-1", order_number="#D10", erp_order_id=None),
            make_order(id="local-1", order_number="#1010", erp_order_id=None),
            make_order(id="other", customer_id="cust-2"),
        ]
        engine = build_engine(orders, [make_proposal()])

        outcome = engine.resolve(make_installment())

        assert outcome.reason == NO_ORDERS_FOR_CUSTOMER
        assert outcome.customer_id == "cust-1"


class TestAmbiguous:
    def test_two_accepted_candidates(self, make_installment, make_order, make_proposal):
        orders = [
            make_order(id="o-a", order_number="#1001", order_date="2024-03-05"),
            make_order(id="o-b", order_number="#1002", order_date="2024-03-02"),
        ]
        store = MagicMock()
        installment = make_installment()
        engine = build_engine(orders, [make_proposal()], dry_run=False, store=store)

        outcome = engine.resolve(installment)

        assert isinstance(outcome, AmbiguousMatch)
        assert [c.order.id for c in outcome.candidates] == ["o-b", "o-a"]
        assert installment.sales_order_id is None
        store.link_installment_to_order.assert_not_called()

        data = outcome.to_result().to_dict()
        assert data["valor_parcela"] == 150.0
        assert [c["diff_dias"] for c in data["candidatos"]] == [1, 4]


class TestLinking:
    def test_already_linked_to_known_order_is_skipped(
        self, make_installment, make_order, make_proposal
    ):
        engine = build_engine([make_order()], [make_proposal()])
        assert engine.resolve(make_installment(sales_order_id="order-1")) is None

    def test_draft_link_is_replaced(self, make_installment, make_order, make_proposal):
        draft = make_order(id="draft-1", order_number="#D77", erp_order_id=None)
        store = MagicMock()
        store.link_installment_to_order.return_value = True
        installment = make_installment(sales_order_id="draft-1")
        engine = build_engine([draft, make_order()], [make_proposal()], False, store=store)

        outcome = engine.resolve(installment)

        assert isinstance(outcome, UniqueMatch)
        store.link_installment_to_order.assert_called_once_with(
            "inst-1", "order-1", expected_current="draft-1"
        )
        assert installment.sales_order_id == "order-1"

    def test_dry_run_does_not_write(self, make_installment, make_order, make_proposal):
        store = MagicMock()
        installment = make_installment()
        engine = build_engine([make_order()], [make_proposal()], dry_run=True, store=store)

        engine.resolve(installment)

        assert store.mock_calls == []
        assert installment.sales_order_id == "order-1"

    def test_concurrent_link_keeps_stored_value(
        self, make_installment, make_order, make_proposal
    ):
        store = MagicMock()
        store.link_installment_to_order.return_value = False
        store.get_installment.return_value = make_installment(sales_order_id="order-9")
        installment = make_installment()
        engine = build_engine([make_order()], [make_proposal()], dry_run=False, store=store)

        outcome = engine.resolve(installment)

        assert isinstance(outcome, UniqueMatch)
        assert installment.sales_order_id == "order-9"


class TestDraftOrderLookup:
    def _setup(self, make_installment, make_order, make_proposal, erp_client, **kwargs):
        current = make_order(id="local-1", order_number="#1050", erp_order_id=None)
        installment = make_installment(sales_order_id="local-1")
        engine = build_engine(
            [current, make_order()],
            [make_proposal()],
            erp_client=erp_client,
            lookup_draft_orders=True,
            **kwargs,
        )
        return engine, installment, current

    def test_found_order_id_is_recorded(self, make_installment, make_order, make_proposal):
        erp_client = MagicMock()
        erp_client.find_order_id_by_store_number.return_value = 9050
        store = MagicMock()
        engine, installment, current = self._setup(
            make_installment, make_order, make_proposal, erp_client, dry_run=False, store=store
        )

        assert engine.resolve(installment) is None

        erp_client.find_order_id_by_store_number.assert_called_once_with("#1050", "#D")
        store.set_order_erp_id.assert_called_once_with("local-1", 9050)
        assert current.erp_order_id == 9050
        assert engine.resolved_erp_ids[0].to_dict() == {
            "pedido_id": "local-1",
            "order_number": "#1050",
            "bling_order_id": 9050,
        }

    def test_lookup_skipped_when_disabled(self, make_installment, make_order, make_proposal):
        erp_client = MagicMock()
        current = make_order(id="local-1", order_number="#1050", erp_order_id=None)
        engine = build_engine([current, make_order()], [make_proposal()], erp_client=erp_client)

        outcome = engine.resolve(make_installment(sales_order_id="local-1"))

        assert isinstance(outcome, UniqueMatch)
        erp_client.find_order_id_by_store_number.assert_not_called()

    def test_lookup_failure_falls_back_to_matching(
        self, make_installment, make_order, make_proposal
    ):
        erp_client = MagicMock()
        erp_client.find_order_id_by_store_number.side_effect = ErpAPIError(
            500, "/pedidos/vendas", "boom"
        )
        engine, installment, _ = self._setup(
            make_installment, make_order, make_proposal, erp_client
        )

        outcome = engine.resolve(installment)

        assert isinstance(outcome, UniqueMatch)
        assert engine.resolved_erp_ids == []

    def test_repeated_401_falls_back_to_matching(
        self, make_installment, make_order, make_proposal
    ):
        erp_client = MagicMock()
        erp_client.find_order_id_by_store_number.side_effect = ErpAuthError(
            401, "/pedidos/vendas", "Unauthorized after token refresh"
        )
        engine, installment, _ = self._setup(
            make_installment, make_order, make_proposal, erp_client
        )

        assert isinstance(engine.resolve(installment), UniqueMatch)

    def test_token_failure_propagates(self, make_installment, make_order, make_proposal):
        erp_client = MagicMock()
        erp_client.find_order_id_by_store_number.side_effect = TokenRefreshError(
            "invalid_grant", status_code=400
        )
        engine, installment, _ = self._setup(
            make_installment, make_order, make_proposal, erp_client
        )

        with pytest.raises(TokenRefreshError):
            engine.resolve(installment)
