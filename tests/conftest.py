"""Test fixtures and utilities."""

from decimal import Decimal
from pathlib import Path

import pytest

from commission_sync.config import Config, ErpConfig, ReconciliationConfig
from commission_sync.erp_client import ErpClient, TokenManager
from commission_sync.services import ReconciliationService
from commission_sync.state_store import (
    InstallmentRecord,
    ProposalRecord,
    SalesOrderRecord,
    StateStore,
)

BLING_URL = "https://bling.test/Api/v3"
TOKEN_URL = "https://bling.test/Api/v3/oauth/token"
FAR_FUTURE = "2099-01-01T00:00:00Z"


def _no_sleep(seconds: float) -> None:
    pass


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Test configuration pointing at the fake Bling host."""
    return Config(
        erp=ErpConfig(base_url=BLING_URL, token_url=TOKEN_URL, max_connect_retries=0),
        reconciliation=ReconciliationConfig(),
        state_db_path=temp_db,
    )


@pytest.fixture
def credentials(store) -> StateStore:
    """Store seeded with Bling credentials holding a long-lived access token."""
    store.save_erp_credentials(
        client_id="cid",
        client_secret="secret",
        refresh_token="rt-1",
        access_token="at-1",
        token_expires_at=FAR_FUTURE,
    )
    return store


@pytest.fixture
def erp_client(store, config) -> ErpClient:
    """Real client with a no-op sleep."""
    token_manager = TokenManager.from_config(config.erp, store)
    return ErpClient(BLING_URL, token_manager, max_connect_retries=0, sleep=_no_sleep)


@pytest.fixture
def service(store, config, erp_client) -> ReconciliationService:
    """Reconciliation service wired to the temp store and fake Bling host."""
    return ReconciliationService(store, erp_client, config, sleep=_no_sleep)


@pytest.fixture
def make_installment():
    """Factory for installment records."""

    def _make(
        id: str = "inst-1",
        proposal_id: str | None = "prop-1",
        amount: str = "150.00",
        created_at: str = "2024-03-05T10:00:00Z",
        sales_order_id: str | None = None,
        sequence: int = 1,
    ) -> InstallmentRecord:
        return InstallmentRecord(
            id=id,
            proposal_id=proposal_id,
            sequence=sequence,
            amount=Decimal(amount),
            due_date="2024-04-01",
            commission_status="liberada",
            created_at=created_at,
            sales_order_id=sales_order_id,
        )

    return _make


@pytest.fixture
def make_order():
    """Factory for sales order records."""

    def _make(
        id: str = "order-1",
        order_number: str = "#1001",
        customer_id: str | None = "cust-1",
        total_value: str = "150.00",
        order_date: str | None = "2024-03-03",
        erp_order_id: int | None = 9001,
        invoice_url: str | None = None,
        invoice_number: str | None = None,
    ) -> SalesOrderRecord:
        return SalesOrderRecord(
            id=id,
            order_number=order_number,
            customer_id=customer_id,
            total_value=Decimal(total_value),
            order_date=order_date,
            erp_order_id=erp_order_id,
            invoice_url=invoice_url,
            invoice_number=invoice_number,
        )

    return _make


@pytest.fixture
def make_proposal():
    """Factory for proposal records."""

    def _make(
        id: str = "prop-1",
        customer_id: str | None = "cust-1",
        created_at: str | None = "2024-03-01T12:00:00Z",
        total_value: str = "450.00",
    ) -> ProposalRecord:
        return ProposalRecord(
            id=id,
            customer_id=customer_id,
            total_value=Decimal(total_value),
            created_at=created_at,
        )

    return _make

