"""Tests for CLI commands."""

import json

import pytest
import responses

from commission_sync.runner.main import create_cli, main
from commission_sync.state_store import StateStore

BLING_URL = "https://bling.test/Api/v3"


@pytest.fixture
def config_file(tmp_path):
    """Config file pointing at a temp state DB and the fake Bling host."""
    path = tmp_path / "config.yaml"
    path.write_text(
        f"""
erp:
  base_url: "{BLING_URL}"
  token_url: "{BLING_URL}/oauth/token"
  max_connect_retries: 0
state_db_path: "{tmp_path / 'state.db'}"
"""
    )
    return path


@pytest.fixture
def cli_store(tmp_path):
    return StateStore(tmp_path / "state.db")


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_reconcile_defaults(self):
        args = create_cli().parse_args(["reconcile"])
        assert args.command == "reconcile"
        assert args.apply is False
        assert args.tolerance_value is None
        assert args.tolerance_days is None
        assert args.json is False

    def test_reconcile_options(self):
        args = create_cli().parse_args(
            ["reconcile", "--apply", "--tolerance-value", "2.5", "--tolerance-days", "3"]
        )
        assert args.apply is True
        assert str(args.tolerance_value) == "2.5"
        assert args.tolerance_days == 3

    @pytest.mark.parametrize("value", ["-1", "abc", "nan"])
    def test_invalid_tolerance_value_rejected(self, value):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["reconcile", "--tolerance-value", value])

    def test_negative_tolerance_days_rejected(self):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["reconcile", "--tolerance-days", "-2"])

    def test_credentials_requires_refresh_token(self):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["credentials", "--client-id", "a", "--client-secret", "b"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1


class TestCommands:
    def test_init_config(self, tmp_path, capsys):
        path = tmp_path / "new" / "config.yaml"

        assert main(["-c", str(path), "init-config"]) == 0
        assert path.exists()
        assert main(["-c", str(path), "init-config"]) == 1

    def test_invalid_config_fails(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("reconciliation:\n  tolerance_days: -1\n")

        assert main(["-c", str(path), "status"]) == 1
        assert "Failed to load config" in capsys.readouterr().out

    def test_credentials_then_status(self, config_file, cli_store, capsys):
        code = main(
            [
                "-c",
                str(config_file),
                "credentials",
                "--client-id",
                "cid",
                "--client-secret",
                "secret",
                "--refresh-token",
                "rt-1",
                "--access-token",
                "at-1",
                "--expires-at",
                "2099-01-01T00:00:00Z",
            ]
        )
        assert code == 0
        assert cli_store.get_erp_credentials().refresh_token == "rt-1"

        assert main(["-c", str(config_file), "status"]) == 0
        out = capsys.readouterr().out
        assert "Reconciliation Status" in out
        assert "2099-01-01T00:00:00Z" in out

    def test_reconcile_without_credentials(self, config_file, capsys):
        assert main(["-c", str(config_file), "reconcile", "--json"]) == 1

        data = json.loads(capsys.readouterr().out)
        assert data["success"] is False
        assert data["error"]

    @responses.activate
    def test_reconcile_json_report(self, config_file, cli_store, capsys):
        cli_store.save_erp_credentials("cid", "secret", "rt-1", "at-1", "2099-01-01T00:00:00Z")
        cli_store.upsert_proposal("prop-1", "cust-1", "150.00", "2024-03-01T12:00:00Z")
        cli_store.upsert_sales_order("order-1", "#1001", "cust-1", "150.00", "2024-03-03", 9001)
        cli_store.upsert_installment(
            "inst-1", "prop-1", "150.00", "liberada", created_at="2024-03-05T10:00:00Z"
        )
        responses.add(
            responses.GET,
            f"{BLING_URL}/pedidos/vendas/9001",
            json={"data": {"id": 9001, "notasFiscais": [{"id": 555}]}},
        )
        responses.add(
            responses.GET,
            f"{BLING_URL}/nfe/555",
            json={"data": {"situacao": {"id": 1}, "linkDanfe": "https://danfe", "numero": "7"}},
        )

        code = main(["-c", str(config_file), "reconcile", "--json", "--tolerance-days", "1"])

        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["dry_run"] is True
        assert data["params"]["tolerance_days"] == 1
        assert data["summary"]["not_found"] == 1
        assert data["not_found"][0]["motivo"] == "no_matching_date"
        assert data["nfe_errors"][0]["motivo"] == "invoice_not_authorized"
        assert cli_store.get_installment("inst-1").sales_order_id is None
