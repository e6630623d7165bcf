"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..erp_client import ErpError
from ..schemas.report import RunReport
from ..services import ReconciliationService
from ..state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _non_negative_decimal(value: str) -> Decimal:
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if not parsed.is_finite() or parsed < 0:
        raise argparse.ArgumentTypeError(f"must be a non-negative number: {value!r}")
    return parsed


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from None
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0: {value!r}")
    return parsed


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="commission-sync",
        description="Reconcile commission installments with Bling sales orders and NF-e",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Link installments, fetch NF-e and propagate DANFE links"
    )
    reconcile_parser.add_argument(
        "--apply",
        action="store_true",
        help="Write changes (default is a dry run)",
    )
    reconcile_parser.add_argument(
        "--tolerance-value",
        type=_non_negative_decimal,
        help="Max amount difference, inclusive (default: from config)",
    )
    reconcile_parser.add_argument(
        "--tolerance-days",
        type=_non_negative_int,
        help="Max date difference in days, inclusive (default: from config)",
    )
    reconcile_parser.add_argument(
        "--lookup-draft-orders",
        action="store_true",
        help="Ask Bling for the id of linked draft orders before matching",
    )
    reconcile_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full JSON report instead of a summary",
    )

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP trigger endpoint")
    serve_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind the web server (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the web server (default: 8080)",
    )

    # status command
    subparsers.add_parser("status", help="Show reconciliation backlog")

    # credentials command
    credentials_parser = subparsers.add_parser(
        "credentials", help="Store Bling OAuth credentials"
    )
    credentials_parser.add_argument("--client-id", required=True, help="Bling app client id")
    credentials_parser.add_argument(
        "--client-secret", required=True, help="Bling app client secret"
    )
    credentials_parser.add_argument(
        "--refresh-token", required=True, help="Current Bling refresh token"
    )
    credentials_parser.add_argument(
        "--access-token", help="Current access token (optional, refreshed when missing)"
    )
    credentials_parser.add_argument(
        "--expires-at", help="Access token expiry as ISO timestamp (optional)"
    )

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    return parser


def _print_report(report: RunReport) -> None:
    summary = report.summary()

    print()
    print("📊 Reconciliation Results")
    print("=" * 40)
    print(f"  Installments processed: {summary['parcelas_processadas']}")
    print(f"  Links created:          {summary['vinculos_criados']}")
    print(f"  Ambiguous:              {summary['ambiguous']}")
    print(f"  Not found:              {summary['not_found']}")
    print(f"  Bling ids resolved:     {summary['erp_ids_resolvidos']}")
    print(f"  NF-e fetched:           {summary['nfes_buscadas']}")
    print(f"  NF-e found:             {summary['nfes_encontradas']}")
    print(f"  NF-e errors:            {summary['nfe_errors']}")
    print(f"  DANFE propagated:       {summary['danfes_propagados']}")
    print()

    if report.ambiguous:
        print("⚠️  Ambiguous (manual review):")
        for item in report.ambiguous:
            numbers = ", ".join(c.order.order_number for c in item.candidates)
            print(f"   - {item.installment_id}: {numbers}")
    if report.invoice_errors:
        print("⚠️  NF-e errors:")
        for error in report.invoice_errors:
            print(f"   - {error.order_number} ({error.erp_order_id}): {error.reason}")


def cmd_reconcile(
    config: Config,
    apply: bool = False,
    tolerance_value: Decimal | None = None,
    tolerance_days: int | None = None,
    lookup_draft_orders: bool = False,
    as_json: bool = False,
) -> int:
    """Run the three reconciliation stages."""
    service = ReconciliationService.from_config(config)
    params = service.default_params()
    params.dry_run = not apply
    if tolerance_value is not None:
        params.tolerance_value = tolerance_value
    if tolerance_days is not None:
        params.tolerance_days = tolerance_days
    if lookup_draft_orders:
        params.lookup_draft_orders = True

    if not as_json:
        print("🔄 Starting commission reconciliation...")
        if params.dry_run:
            print("  ℹ️  DRY RUN mode - no changes will be made (use --apply to write)")

    try:
        report = service.run(params)
    except (ErpError, StateStoreError) as e:
        logger.error(f"Reconciliation aborted: {e}")
        if as_json:
            print(json.dumps({"success": False, "error": str(e)}, indent=2))
        else:
            print(f"❌ Reconciliation aborted: {e}")
        return 1

    if as_json:
        print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    else:
        _print_report(report)
        print("✓ Reconciliation completed")
    return 0


def cmd_serve(config_path: Path, host: str = "127.0.0.1", port: int = 8080) -> int:
    """Start the HTTP trigger endpoint."""
    from ..web.app import run_server

    print("🌐 Starting reconciliation endpoint...")

    try:
        run_server(host=host, port=port, config_path=config_path)
    except KeyboardInterrupt:
        print("\n✓ Server stopped")

    return 0


def cmd_status(config: Config) -> int:
    """Show reconciliation backlog."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats(config.reconciliation.released_status)
    credentials = store.get_erp_credentials()

    print("\n📊 Reconciliation Status")
    print("=" * 40)
    print(f"  Installments total:         {stats['installments_total']}")
    print(f"  Released without DANFE:     {stats['installments_pending']}")
    print(f"    ...without sales order:   {stats['installments_without_order']}")
    print(f"  Sales orders total:         {stats['orders_total']}")
    print(f"  Orders known to Bling:      {stats['orders_with_erp_id']}")
    print(f"  Orders waiting for NF-e:    {stats['orders_pending_invoice']}")
    if credentials is None:
        print("  Bling credentials:          not configured")
    else:
        print(f"  Bling token expires at:     {credentials.token_expires_at or 'unknown'}")
    print()

    return 0


def cmd_credentials(
    config: Config,
    client_id: str,
    client_secret: str,
    refresh_token: str,
    access_token: str | None = None,
    expires_at: str | None = None,
) -> int:
    """Store Bling OAuth credentials."""
    store = StateStore(config.state_db_path)
    store.save_erp_credentials(
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=refresh_token,
        access_token=access_token,
        token_expires_at=expires_at,
    )
    print(f"✓ Bling credentials stored in {config.state_db_path}")
    return 0


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "reconcile":
        return cmd_reconcile(
            config,
            apply=parsed.apply,
            tolerance_value=parsed.tolerance_value,
            tolerance_days=parsed.tolerance_days,
            lookup_draft_orders=parsed.lookup_draft_orders,
            as_json=parsed.json,
        )
    elif parsed.command == "serve":
        return cmd_serve(parsed.config, parsed.host, parsed.port)
    elif parsed.command == "status":
        return cmd_status(config)
    elif parsed.command == "credentials":
        return cmd_credentials(
            config,
            client_id=parsed.client_id,
            client_secret=parsed.client_secret,
            refresh_token=parsed.refresh_token,
            access_token=parsed.access_token,
            expires_at=parsed.expires_at,
        )
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
