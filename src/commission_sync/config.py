"""
Configuration management (SSOT).

This module defines ALL configuration for commission-sync.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Tolerances are inclusive bounds (a diff equal to the tolerance is accepted)
- Per-run parameters (dry_run, tolerances) override the configured defaults
- Client credentials set here override the ones stored with the ERP tokens
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ErpConfig:
    """Bling ERP (API v3) configuration.

    - base_url: API root used for order and NF-e lookups
    - token_url: OAuth2 token endpoint used for refresh-token grants
    - client_id / client_secret: optional overrides for the stored credentials
    """

    base_url: str = "https://api.bling.com.br/Api/v3"
    token_url: str = "https://api.bling.com.br/Api/v3/oauth/token"
    client_id: str | None = None
    client_secret: str | None = None
    timeout_seconds: int = 30
    # Connection-level retries only (HTTP statuses are handled by the client)
    max_connect_retries: int = 2
    # Fixed wait before the single retry after HTTP 429
    rate_limit_backoff_seconds: float = 1.0
    # Treat the access token as expired this many seconds before it really is
    token_expiry_buffer_seconds: int = 300


@dataclass
class ReconciliationConfig:
    """Reconciliation settings."""

    # Max |installment amount - order total| (currency units)
    tolerance_value: float = 1.0
    # Max |reference date - order date| (days)
    tolerance_days: int = 7
    # Only installments in this commission status are processed
    released_status: str = "liberada"
    # Order numbers with this prefix are local placeholders, never in Bling
    placeholder_order_prefix: str = "#D"
    # Ask Bling for the order id of draft orders before matching
    lookup_draft_orders: bool = False
    # NF-e fetch pacing: pause pacing_seconds every pacing_every orders
    pacing_every: int = 5
    pacing_seconds: float = 0.5
    # How many rejected candidates to keep per not-found installment (0 = all)
    max_reported_candidates: int = 0


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    erp: ErpConfig = field(default_factory=ErpConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.erp.base_url:
            errors.append("erp.base_url is required")
        if not self.erp.token_url:
            errors.append("erp.token_url is required")
        if self.erp.rate_limit_backoff_seconds < 0:
            errors.append("erp.rate_limit_backoff_seconds must be >= 0")

        recon = self.reconciliation
        if recon.tolerance_value < 0:
            errors.append("reconciliation.tolerance_value must be >= 0")
        if recon.tolerance_days < 0:
            errors.append("reconciliation.tolerance_days must be >= 0")
        if recon.pacing_every < 0:
            errors.append("reconciliation.pacing_every must be >= 0")
        if not recon.released_status:
            errors.append("reconciliation.released_status is required")

        return errors


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - BLING_API_URL
    - BLING_TOKEN_URL
    - BLING_CLIENT_ID
    - BLING_CLIENT_SECRET
    - COMMISSION_SYNC_STATE_DB
    - COMMISSION_SYNC_TOLERANCE_VALUE
    - COMMISSION_SYNC_TOLERANCE_DAYS

    Raises:
        ConfigValidationError: If the resulting configuration is invalid
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # ERP config
    erp_data = data.get("erp", {})
    defaults = ErpConfig()
    erp = ErpConfig(
        base_url=os.environ.get("BLING_API_URL", erp_data.get("base_url", defaults.base_url)),
        token_url=os.environ.get("BLING_TOKEN_URL", erp_data.get("token_url", defaults.token_url)),
        client_id=os.environ.get("BLING_CLIENT_ID", erp_data.get("client_id")),
        client_secret=os.environ.get("BLING_CLIENT_SECRET", erp_data.get("client_secret")),
        timeout_seconds=erp_data.get("timeout_seconds", defaults.timeout_seconds),
        max_connect_retries=erp_data.get("max_connect_retries", defaults.max_connect_retries),
        rate_limit_backoff_seconds=erp_data.get(
            "rate_limit_backoff_seconds", defaults.rate_limit_backoff_seconds
        ),
        token_expiry_buffer_seconds=erp_data.get(
            "token_expiry_buffer_seconds", defaults.token_expiry_buffer_seconds
        ),
    )

    # Reconciliation config
    recon_data = data.get("reconciliation", {})
    recon_defaults = ReconciliationConfig()
    try:
        tolerance_value = float(
            os.environ.get(
                "COMMISSION_SYNC_TOLERANCE_VALUE",
                recon_data.get("tolerance_value", recon_defaults.tolerance_value),
            )
        )
        tolerance_days = int(
            os.environ.get(
                "COMMISSION_SYNC_TOLERANCE_DAYS",
                recon_data.get("tolerance_days", recon_defaults.tolerance_days),
            )
        )
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid tolerance setting: {e}") from e

    reconciliation = ReconciliationConfig(
        tolerance_value=tolerance_value,
        tolerance_days=tolerance_days,
        released_status=recon_data.get("released_status", recon_defaults.released_status),
        placeholder_order_prefix=recon_data.get(
            "placeholder_order_prefix", recon_defaults.placeholder_order_prefix
        ),
        lookup_draft_orders=recon_data.get(
            "lookup_draft_orders", recon_defaults.lookup_draft_orders
        ),
        pacing_every=recon_data.get("pacing_every", recon_defaults.pacing_every),
        pacing_seconds=recon_data.get("pacing_seconds", recon_defaults.pacing_seconds),
        max_reported_candidates=recon_data.get(
            "max_reported_candidates", recon_defaults.max_reported_candidates
        ),
    )

    # State DB
    state_db = os.environ.get(
        "COMMISSION_SYNC_STATE_DB", data.get("state_db_path", "data/state.db")
    )

    config = Config(
        erp=erp,
        reconciliation=reconciliation,
        state_db_path=Path(state_db),
    )

    errors = config.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))

    return config


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# commission-sync configuration
#
# OAuth tokens are NOT stored here. Seed them once with:
#   commission-sync credentials --client-id ... --client-secret ... --refresh-token ...
# They are rotated automatically and persisted in the state database.

erp:
  base_url: "https://api.bling.com.br/Api/v3"
  token_url: "https://api.bling.com.br/Api/v3/oauth/token"
  client_id: null                          # Overrides the stored client id
  client_secret: null                      # Overrides the stored client secret
  timeout_seconds: 30
  max_connect_retries: 2                   # Network-level retries only
  rate_limit_backoff_seconds: 1.0          # Wait before the single retry after HTTP 429
  token_expiry_buffer_seconds: 300         # Refresh 5 minutes before expiry

reconciliation:
  tolerance_value: 1.0                     # Max amount difference (inclusive)
  tolerance_days: 7                        # Max date difference in days (inclusive)
  released_status: "liberada"              # Commission status processed by the run
  placeholder_order_prefix: "#D"           # Digital proposals, never in Bling
  lookup_draft_orders: false               # Ask Bling for ids of draft orders first
  pacing_every: 5                          # Pause every N NF-e lookups
  pacing_seconds: 0.5
  max_reported_candidates: 0               # 0 = report every candidate

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
