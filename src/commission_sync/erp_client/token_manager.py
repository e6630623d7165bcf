"""
Bling OAuth2 token manager.

Holds the access token for the run, decides when it is (about to be)
expired, performs the refresh-token grant and persists the rotated
credentials back to the state store.

Bling invalidates the previous refresh token on every grant, so rotated
credentials are persisted immediately, dry-run or not.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import requests

from .client import ErpConfigurationError, TokenRefreshError

if TYPE_CHECKING:
    from ..config import ErpConfig
    from ..state_store import ErpCredentials, StateStore

logger = logging.getLogger(__name__)

# Bling access tokens live 6 hours when the response does not say otherwise
DEFAULT_EXPIRES_IN = 21600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable token expiry {value!r}, treating as expired")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class TokenManager:
    """Provides a valid Bling access token and rotates it when needed."""

    def __init__(
        self,
        store: StateStore,
        token_url: str,
        client_id: str | None = None,
        client_secret: str | None = None,
        expiry_buffer_seconds: int = 300,
        timeout: int = 30,
        now: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            store: Where the credentials live
            token_url: Bling OAuth token endpoint
            client_id / client_secret: Override the stored client credentials
            expiry_buffer_seconds: Treat the token as expired this early
            timeout: Token request timeout in seconds
            now: Clock, injected for tests
        """
        self.store = store
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.expiry_buffer = timedelta(seconds=expiry_buffer_seconds)
        self.timeout = timeout
        self._now = now
        self._credentials: ErpCredentials | None = None
        self.session = requests.Session()

    @classmethod
    def from_config(cls, erp_config: ErpConfig, store: StateStore) -> TokenManager:
        return cls(
            store=store,
            token_url=erp_config.token_url,
            client_id=erp_config.client_id,
            client_secret=erp_config.client_secret,
            expiry_buffer_seconds=erp_config.token_expiry_buffer_seconds,
            timeout=erp_config.timeout_seconds,
        )

    def is_expired(self, expires_at: str | None) -> bool:
        """True when the token expires within the safety buffer (or expiry is unknown)."""
        parsed = parse_timestamp(expires_at)
        if parsed is None:
            return True
        return self._now() >= parsed - self.expiry_buffer

    def _load_credentials(self) -> ErpCredentials:
        if self._credentials is None:
            credentials = self.store.get_erp_credentials()
            if credentials is None:
                raise ErpConfigurationError(
                    "No Bling credentials stored. Run 'commission-sync credentials' first."
                )
            self._credentials = credentials
        return self._credentials

    def _client_pair(self, credentials: ErpCredentials) -> tuple[str, str]:
        client_id = self.client_id or credentials.client_id
        client_secret = self.client_secret or credentials.client_secret
        if not client_id or not client_secret:
            raise ErpConfigurationError("Bling client_id/client_secret are not configured")
        return client_id, client_secret

    def get_valid_token(self, credentials: ErpCredentials | None = None) -> str:
        """
        Return an access token that is valid for at least the buffer period.

        Raises:
            ErpConfigurationError: No usable credentials
            TokenRefreshError: Refresh was needed and failed
        """
        if credentials is not None:
            self._credentials = credentials
        credentials = self._load_credentials()

        if credentials.access_token and not self.is_expired(credentials.token_expires_at):
            return credentials.access_token

        logger.info("Bling access token missing or about to expire, refreshing")
        return self.refresh()

    def refresh(self) -> str:
        """
        Perform the refresh-token grant and persist the rotated tokens.

        Raises:
            ErpConfigurationError: No usable credentials
            TokenRefreshError: Bling rejected the grant or the request failed
        """
        credentials = self._load_credentials()
        client_id, client_secret = self._client_pair(credentials)
        if not credentials.refresh_token:
            raise ErpConfigurationError("No Bling refresh token stored")

        try:
            response = self.session.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": credentials.refresh_token,
                },
                auth=(client_id, client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Token refresh request failed: {e}")
            raise TokenRefreshError(f"Token refresh request failed: {e}") from e

        if not response.ok:
            logger.error(f"Token refresh rejected: {response.status_code} {response.text}")
            raise TokenRefreshError(
                f"Failed to refresh Bling token: HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            token_data = response.json()
        except ValueError as e:
            raise TokenRefreshError(
                "Token endpoint returned invalid JSON",
                status_code=response.status_code,
                response_body=response.text,
            ) from e

        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not access_token:
            raise TokenRefreshError(
                "Token endpoint response has no access_token",
                status_code=response.status_code,
                response_body=response.text,
            )

        # Bling may omit the refresh token when it did not rotate it
        refresh_token = token_data.get("refresh_token") or credentials.refresh_token
        try:
            expires_in = int(token_data.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        expires_at = format_timestamp(self._now() + timedelta(seconds=expires_in))

        self.store.update_erp_tokens(
            credentials.id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=expires_at,
        )
        credentials.access_token = access_token
        credentials.refresh_token = refresh_token
        credentials.token_expires_at = expires_at

        logger.info(f"Bling token refreshed, valid until {expires_at}")
        return access_token
