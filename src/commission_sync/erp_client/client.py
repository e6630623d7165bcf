"""
Bling API v3 client implementation.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..schemas.erp_payloads import extract_store_order_id

if TYPE_CHECKING:
    from ..config import ErpConfig
    from .token_manager import TokenManager

logger = logging.getLogger(__name__)


class ErpError(Exception):
    """Base exception for Bling client errors."""

    pass


class ErpConfigurationError(ErpError):
    """ERP credentials are missing or incomplete. Fatal for the run."""

    pass


class TokenRefreshError(ErpError):
    """The refresh-token grant failed. Fatal for the run."""

    def __init__(
        self, message: str, status_code: int | None = None, response_body: str | None = None
    ):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class ErpAPIError(ErpError):
    """API returned an error response."""

    def __init__(
        self,
        status_code: int,
        endpoint: str,
        message: str,
        response_body: str | None = None,
    ):
        self.status_code = status_code
        self.endpoint = endpoint
        self.message = message
        self.response_body = response_body
        super().__init__(f"Bling API error {status_code} on {endpoint}: {message}")


class ErpNotFoundError(ErpAPIError):
    """Resource does not exist in Bling (HTTP 404)."""

    pass


class ErpAuthError(ErpAPIError):
    """Still unauthorized after a token refresh. Fatal for the run."""

    pass


class ErpConnectionError(ErpError):
    """Failed to connect to Bling."""

    pass


def _error_message(response: requests.Response) -> str:
    """Best-effort message from a Bling error body."""
    try:
        body = response.json()
    except ValueError:
        return response.reason or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("description") or error.get("message") or error.get("type") or str(error)
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason or f"HTTP {response.status_code}"


class ErpClient:
    """
    Client for the Bling v3 REST API (read-only).

    Features:
    - Bearer auth through the TokenManager
    - One token refresh + retry on HTTP 401
    - One fixed-backoff retry on HTTP 429
    - Connection-level retries via urllib3
    """

    DEFAULT_TIMEOUT = 30
    RATE_LIMIT_BACKOFF = 1.0

    def __init__(
        self,
        base_url: str,
        token_manager: TokenManager,
        timeout: int = DEFAULT_TIMEOUT,
        max_connect_retries: int = 2,
        rate_limit_backoff: float = RATE_LIMIT_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize Bling client.

        Args:
            base_url: API root (e.g., "https://api.bling.com.br/Api/v3")
            token_manager: Provides and refreshes the access token
            timeout: Request timeout in seconds
            max_connect_retries: Retries for connection failures only
            rate_limit_backoff: Seconds to wait before retrying after HTTP 429
            sleep: Injected for tests
        """
        self.base_url = base_url.rstrip("/")
        self.token_manager = token_manager
        self.timeout = timeout
        self.rate_limit_backoff = rate_limit_backoff
        self._sleep = sleep

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

        # HTTP statuses are handled in call(); only retry the transport here
        retry_strategy = Retry(
            total=max_connect_retries,
            connect=max_connect_retries,
            read=max_connect_retries,
            status=0,
            backoff_factor=0.5,
            allowed_methods=["GET"],
            respect_retry_after_header=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @classmethod
    def from_config(cls, erp_config: ErpConfig, token_manager: TokenManager) -> ErpClient:
        """Build a client from an ErpConfig."""
        return cls(
            base_url=erp_config.base_url,
            token_manager=token_manager,
            timeout=erp_config.timeout_seconds,
            max_connect_retries=erp_config.max_connect_retries,
            rate_limit_backoff=erp_config.rate_limit_backoff_seconds,
        )

    def _send(self, endpoint: str, params: dict | None, token: str) -> requests.Response:
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"API Request: GET {url} params={params}")
        try:
            response = self.session.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error to {url}: {e}")
            raise ErpConnectionError(f"Failed to connect to Bling at {self.base_url}: {e}") from e
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout for {url}: {e}")
            raise ErpConnectionError(f"Request to Bling timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error for {url}: {e}")
            raise ErpConnectionError(f"Request failed: {e}") from e

        logger.debug(f"Response status: {response.status_code}")
        return response

    def call(self, endpoint: str, params: dict | None = None) -> dict[str, Any]:
        """
        GET an endpoint and return the decoded JSON body.

        Raises:
            ErpAuthError: 401 again after one refresh
            ErpNotFoundError: 404
            ErpAPIError: Any other non-2xx (including a second 429)
            ErpConnectionError: Network failure
            TokenRefreshError / ErpConfigurationError: From the TokenManager
        """
        token = self.token_manager.get_valid_token()
        refreshed = False
        rate_limited = False

        while True:
            response = self._send(endpoint, params, token)

            if response.status_code == 401:
                if refreshed:
                    raise ErpAuthError(
                        401, endpoint, "Unauthorized after token refresh", response.text
                    )
                logger.info("Bling returned 401, refreshing token")
                token = self.token_manager.refresh()
                refreshed = True
                continue

            if response.status_code == 429:
                if rate_limited:
                    raise ErpAPIError(429, endpoint, "Rate limited", response.text)
                logger.warning(f"Rate limited on {endpoint}, waiting {self.rate_limit_backoff}s")
                self._sleep(self.rate_limit_backoff)
                rate_limited = True
                continue

            break

        if response.status_code == 404:
            raise ErpNotFoundError(404, endpoint, _error_message(response), response.text)

        if not response.ok:
            message = _error_message(response)
            logger.error(f"API Error {response.status_code} on {endpoint}: {message}")
            raise ErpAPIError(response.status_code, endpoint, message, response.text)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ErpAPIError(
                response.status_code, endpoint, "Invalid JSON in response", response.text
            ) from e

    def get_order(self, erp_order_id: int) -> dict[str, Any]:
        """Get a sales order (``GET /pedidos/vendas/{id}``)."""
        return self.call(f"/pedidos/vendas/{erp_order_id}")

    def get_invoice(self, invoice_id: int | str) -> dict[str, Any]:
        """Get an NF-e (``GET /nfe/{id}``)."""
        return self.call(f"/nfe/{invoice_id}")

    def find_order_id_by_store_number(
        self, order_number: str, placeholder_prefix: str = "#D"
    ) -> int | None:
        """
        Look up the Bling id of an order by its shop number (numeroLoja).

        Placeholder orders never exist in Bling and are not searched.

        Returns:
            The Bling order id on an exact match, else None
        """
        clean = (order_number or "").strip()
        if not clean:
            return None
        if placeholder_prefix and clean.upper().startswith(placeholder_prefix.upper()):
            logger.debug(f"Skipping placeholder order {order_number}")
            return None

        response = self.call(
            "/pedidos/vendas",
            params={"numeroLoja": clean.lstrip("#").upper(), "limite": 20},
        )
        return extract_store_order_id(response, clean)


# Errors that must abort a run instead of being reported per item
FATAL_ERP_ERRORS = (ErpConfigurationError, TokenRefreshError)
