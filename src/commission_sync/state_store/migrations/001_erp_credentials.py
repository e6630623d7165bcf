"""
Migration 001: Create erp_credentials table for Bling OAuth tokens.

A single row holds the client credentials and the current token pair.
The token manager rotates access_token/refresh_token/token_expires_at on
every refresh-token grant.
"""

import sqlite3

VERSION = 1
NAME = "erp_credentials"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the erp_credentials table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS erp_credentials (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id TEXT,
            client_secret TEXT,
            access_token TEXT,
            refresh_token TEXT,
            token_expires_at TEXT,  -- ISO timestamp, NULL = unknown (treated as expired)
            updated_at TEXT
        )
        """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the erp_credentials table."""
    conn.execute("DROP TABLE IF EXISTS erp_credentials")
