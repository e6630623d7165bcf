"""
Migration 002: Create run_locks table.

Advisory lock so two writing reconciliation runs never race on the same
unlinked installments. The primary key makes acquisition atomic.
"""

import sqlite3

VERSION = 2
NAME = "run_locks"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the run_locks table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS run_locks (
            name TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            acquired_at TEXT NOT NULL
        )
        """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the run_locks table."""
    conn.execute("DROP TABLE IF EXISTS run_locks")
