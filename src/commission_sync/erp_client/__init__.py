"""
Bling ERP API Client.

Provides:
- OAuth2 token management (refresh-token grant, credential rotation)
- Authenticated GET calls with 401 refresh and 429 backoff
- Order detail, NF-e detail and order search by shop number

Token refresh and missing credentials are fatal for a run; everything else
is a per-item error.
"""

from .client import (
    FATAL_ERP_ERRORS,
    ErpAPIError,
    ErpAuthError,
    ErpClient,
    ErpConfigurationError,
    ErpConnectionError,
    ErpError,
    ErpNotFoundError,
    TokenRefreshError,
)
from .token_manager import TokenManager

__all__ = [
    "ErpClient",
    "TokenManager",
    "ErpError",
    "ErpAPIError",
    "ErpAuthError",
    "ErpNotFoundError",
    "ErpConnectionError",
    "ErpConfigurationError",
    "TokenRefreshError",
    "FATAL_ERP_ERRORS",
]
