"""
SQLite-based state store implementation.

Tables:
- customers: Customer display names (read-only for the engine)
- proposals: Sales agreements that generate installments (read-only)
- sales_orders: Orders mirrored from the shop/ERP, with NF-e link fields
- installments: Commission installments ("parcelas") with link fields
- erp_credentials: Bling OAuth credentials (migration 001)
- run_locks: Advisory single-writer lock (migration 002)

Every write the engine performs is fill-if-null: link and invoice fields are
only ever set when they are empty, so re-running is safe.
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any


class StateStoreError(Exception):
    """Base exception for state store errors."""

    pass


class RunLockError(StateStoreError):
    """Another reconciliation run holds the advisory lock."""

    def __init__(self, name: str, owner: str | None, acquired_at: str | None):
        self.name = name
        self.owner = owner
        self.acquired_at = acquired_at
        super().__init__(
            f"Run lock '{name}' is held by {owner or 'unknown'} since {acquired_at or 'unknown'}"
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


@dataclass
class CustomerRecord:
    """Customer (church/school) of a proposal or order."""

    id: str
    name: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CustomerRecord":
        """Create from database row."""
        return cls(id=row["id"], name=row["name"])


@dataclass
class ProposalRecord:
    """Sales agreement that was split into installments."""

    id: str
    customer_id: str | None
    total_value: Decimal | None
    created_at: str | None  # ISO timestamp

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProposalRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            total_value=_to_decimal(row["total_value"]),
            created_at=row["created_at"],
        )


@dataclass
class SalesOrderRecord:
    """Sales order mirrored locally.

    erp_order_id is the Bling order id; orders without one are drafts and
    cannot be match targets or NF-e lookups yet.
    """

    id: str
    order_number: str
    customer_id: str | None
    total_value: Decimal
    order_date: str | None
    erp_order_id: int | None = None
    invoice_url: str | None = None  # DANFE link
    invoice_number: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SalesOrderRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            order_number=row["order_number"],
            customer_id=row["customer_id"],
            total_value=_to_decimal(row["total_value"]) or Decimal("0"),
            order_date=row["order_date"],
            erp_order_id=row["erp_order_id"],
            invoice_url=row["invoice_url"],
            invoice_number=row["invoice_number"],
        )

    def is_placeholder(self, prefix: str) -> bool:
        """Return True for local placeholder orders (digital proposals)."""
        return bool(prefix) and (self.order_number or "").upper().startswith(prefix.upper())


@dataclass
class InstallmentRecord:
    """Commission installment ("parcela")."""

    id: str
    proposal_id: str | None
    sequence: int
    amount: Decimal
    due_date: str | None
    commission_status: str
    created_at: str
    sales_order_id: str | None = None
    invoice_url: str | None = None  # DANFE link
    invoice_number: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "InstallmentRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            proposal_id=row["proposal_id"],
            sequence=row["sequence"],
            amount=_to_decimal(row["amount"]) or Decimal("0"),
            due_date=row["due_date"],
            commission_status=row["commission_status"],
            created_at=row["created_at"],
            sales_order_id=row["sales_order_id"],
            invoice_url=row["invoice_url"],
            invoice_number=row["invoice_number"],
        )


@dataclass
class ErpCredentials:
    """Bling OAuth credentials as persisted in the store."""

    id: int
    client_id: str | None
    client_secret: str | None
    access_token: str | None
    refresh_token: str | None
    token_expires_at: str | None  # ISO timestamp
    updated_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ErpCredentials":
        """Create from database row."""
        return cls(
            id=row["id"],
            client_id=row["client_id"],
            client_secret=row["client_secret"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=row["token_expires_at"],
            updated_at=row["updated_at"],
        )


class StateStore:
    """
    SQLite-based state store for the reconciliation engine.

    Provides persistent tracking of:
    - Installments, proposals, customers and sales orders
    - Bling OAuth credentials (rotated on refresh)
    - The advisory run lock

    Single-writer: callers must hold the run lock before writing link fields.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    id TEXT PRIMARY KEY,
                    name TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS proposals (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT,
                    total_value TEXT,
                    created_at TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sales_orders (
                    id TEXT PRIMARY KEY,
                    order_number TEXT NOT NULL,
                    customer_id TEXT,
                    total_value TEXT NOT NULL DEFAULT '0',
                    order_date TEXT,
                    erp_order_id INTEGER,
                    invoice_url TEXT,
                    invoice_number TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS installments (
                    id TEXT PRIMARY KEY,
                    proposal_id TEXT,
                    sequence INTEGER NOT NULL DEFAULT 1,
                    amount TEXT NOT NULL,
                    due_date TEXT,
                    commission_status TEXT NOT NULL,
                    sales_order_id TEXT,
                    invoice_url TEXT,
                    invoice_number TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sales_orders_customer ON sales_orders(customer_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_installments_status "
                "ON installments(commission_status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_installments_order ON installments(sales_order_id)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Upserts (used by the upstream sync and by tests)

    def upsert_customer(self, customer_id: str, name: str | None = None) -> None:
        """Insert or update a customer."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO customers (id, name) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name
                """,
                (customer_id, name),
            )

    def upsert_proposal(
        self,
        proposal_id: str,
        customer_id: str | None,
        total_value: Decimal | str | float | None = None,
        created_at: str | None = None,
    ) -> None:
        """Insert or update a proposal."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO proposals (id, customer_id, total_value, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    customer_id = excluded.customer_id,
                    total_value = excluded.total_value,
                    created_at = excluded.created_at
                """,
                (
                    proposal_id,
                    customer_id,
                    str(total_value) if total_value is not None else None,
                    created_at or _now_iso(),
                ),
            )

    def upsert_sales_order(
        self,
        order_id: str,
        order_number: str,
        customer_id: str | None,
        total_value: Decimal | str | float,
        order_date: str | None = None,
        erp_order_id: int | None = None,
        invoice_url: str | None = None,
        invoice_number: str | None = None,
    ) -> None:
        """Insert or update a sales order."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sales_orders (
                    id, order_number, customer_id, total_value, order_date,
                    erp_order_id, invoice_url, invoice_number
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    order_number = excluded.order_number,
                    customer_id = excluded.customer_id,
                    total_value = excluded.total_value,
                    order_date = excluded.order_date,
                    erp_order_id = COALESCE(sales_orders.erp_order_id, excluded.erp_order_id),
                    invoice_url = COALESCE(sales_orders.invoice_url, excluded.invoice_url),
                    invoice_number = COALESCE(sales_orders.invoice_number, excluded.invoice_number)
                """,
                (
                    order_id,
                    order_number,
                    customer_id,
                    str(total_value),
                    order_date,
                    erp_order_id,
                    invoice_url,
                    invoice_number,
                ),
            )

    def upsert_installment(
        self,
        installment_id: str,
        proposal_id: str | None,
        amount: Decimal | str | float,
        commission_status: str,
        sequence: int = 1,
        due_date: str | None = None,
        sales_order_id: str | None = None,
        invoice_url: str | None = None,
        invoice_number: str | None = None,
        created_at: str | None = None,
    ) -> None:
        """Insert or update an installment.

        Link fields are preserved when already set (fill-if-null).
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO installments (
                    id, proposal_id, sequence, amount, due_date, commission_status,
                    sales_order_id, invoice_url, invoice_number, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    proposal_id = excluded.proposal_id,
                    sequence = excluded.sequence,
                    amount = excluded.amount,
                    due_date = excluded.due_date,
                    commission_status = excluded.commission_status,
                    sales_order_id = COALESCE(installments.sales_order_id, excluded.sales_order_id),
                    invoice_url = COALESCE(installments.invoice_url, excluded.invoice_url),
                    invoice_number = COALESCE(installments.invoice_number, excluded.invoice_number)
                """,
                (
                    installment_id,
                    proposal_id,
                    sequence,
                    str(amount),
                    due_date,
                    commission_status,
                    sales_order_id,
                    invoice_url,
                    invoice_number,
                    created_at or _now_iso(),
                ),
            )

    # Reads

    def get_installment(self, installment_id: str) -> InstallmentRecord | None:
        """Get a single installment."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM installments WHERE id = ?", (installment_id,)
            ).fetchone()
            return InstallmentRecord.from_row(row) if row else None
        finally:
            conn.close()

    def get_sales_order(self, order_id: str) -> SalesOrderRecord | None:
        """Get a single sales order."""
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM sales_orders WHERE id = ?", (order_id,)).fetchone()
            return SalesOrderRecord.from_row(row) if row else None
        finally:
            conn.close()

    def get_pending_installments(self, commission_status: str) -> list[InstallmentRecord]:
        """Installments in the given status that still have no DANFE link."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM installments
                WHERE commission_status = ? AND invoice_url IS NULL
                ORDER BY created_at, id
                """,
                (commission_status,),
            ).fetchall()
            return [InstallmentRecord.from_row(r) for r in rows]
        finally:
            conn.close()

    def get_proposals(self, proposal_ids: list[str]) -> dict[str, ProposalRecord]:
        """Get proposals by id."""
        if not proposal_ids:
            return {}
        conn = self._get_connection()
        try:
            placeholders = ",".join("?" for _ in proposal_ids)
            rows = conn.execute(
                f"SELECT * FROM proposals WHERE id IN ({placeholders})", proposal_ids
            ).fetchall()
            return {r["id"]: ProposalRecord.from_row(r) for r in rows}
        finally:
            conn.close()

    def get_customer_names(self, customer_ids: list[str]) -> dict[str, str | None]:
        """Get customer display names by id."""
        if not customer_ids:
            return {}
        conn = self._get_connection()
        try:
            placeholders = ",".join("?" for _ in customer_ids)
            rows = conn.execute(
                f"SELECT * FROM customers WHERE id IN ({placeholders})", customer_ids
            ).fetchall()
            return {r["id"]: CustomerRecord.from_row(r).name for r in rows}
        finally:
            conn.close()

    def get_all_sales_orders(self) -> list[SalesOrderRecord]:
        """All locally known sales orders, in a stable order."""
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT * FROM sales_orders ORDER BY order_number, id").fetchall()
            return [SalesOrderRecord.from_row(r) for r in rows]
        finally:
            conn.close()

    # Fill-if-null writes

    def link_installment_to_order(
        self,
        installment_id: str,
        order_id: str,
        expected_current: str | None = None,
    ) -> bool:
        """Point an installment at a sales order.

        Compare-and-set: only succeeds while the installment is unlinked or
        still points at expected_current (the draft order seen by the run).

        Returns:
            True if the row was updated
        """
        with self._transaction() as conn:
            if expected_current is None:
                cursor = conn.execute(
                    """
                    UPDATE installments SET sales_order_id = ?
                    WHERE id = ? AND sales_order_id IS NULL
                    """,
                    (order_id, installment_id),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE installments SET sales_order_id = ?
                    WHERE id = ? AND (sales_order_id IS NULL OR sales_order_id = ?)
                    """,
                    (order_id, installment_id, expected_current),
                )
            return cursor.rowcount > 0

    def set_order_erp_id(self, order_id: str, erp_order_id: int) -> bool:
        """Record the Bling order id of a draft order."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE sales_orders SET erp_order_id = ? WHERE id = ? AND erp_order_id IS NULL",
                (erp_order_id, order_id),
            )
            return cursor.rowcount > 0

    def set_order_invoice(self, order_id: str, invoice_url: str, invoice_number: str) -> bool:
        """Store the DANFE link and NF-e number on a sales order."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sales_orders SET invoice_url = ?, invoice_number = ?
                WHERE id = ? AND invoice_url IS NULL
                """,
                (invoice_url, invoice_number, order_id),
            )
            return cursor.rowcount > 0

    def set_installment_invoice(
        self, installment_id: str, invoice_url: str, invoice_number: str
    ) -> bool:
        """Copy the DANFE link and NF-e number onto an installment."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE installments SET invoice_url = ?, invoice_number = ?
                WHERE id = ? AND invoice_url IS NULL
                """,
                (invoice_url, invoice_number, installment_id),
            )
            return cursor.rowcount > 0

    # ERP credentials

    def get_erp_credentials(self) -> ErpCredentials | None:
        """Get the (single) Bling credentials row."""
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM erp_credentials ORDER BY id LIMIT 1").fetchone()
            return ErpCredentials.from_row(row) if row else None
        finally:
            conn.close()

    def save_erp_credentials(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        access_token: str | None = None,
        token_expires_at: str | None = None,
    ) -> None:
        """Create or replace the Bling credentials."""
        now = _now_iso()
        with self._transaction() as conn:
            existing = conn.execute("SELECT id FROM erp_credentials ORDER BY id LIMIT 1").fetchone()
            if existing:
                conn.execute(
                    """
                    UPDATE erp_credentials
                    SET client_id = ?, client_secret = ?, access_token = ?,
                        refresh_token = ?, token_expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        client_id,
                        client_secret,
                        access_token,
                        refresh_token,
                        token_expires_at,
                        now,
                        existing["id"],
                    ),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO erp_credentials (
                        client_id, client_secret, access_token, refresh_token,
                        token_expires_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (client_id, client_secret, access_token, refresh_token, token_expires_at, now),
                )

    def update_erp_tokens(
        self,
        credentials_id: int,
        access_token: str,
        refresh_token: str,
        token_expires_at: str,
    ) -> None:
        """Persist rotated tokens after a refresh-token grant."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE erp_credentials
                SET access_token = ?, refresh_token = ?, token_expires_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (access_token, refresh_token, token_expires_at, _now_iso(), credentials_id),
            )

    # Advisory run lock

    def acquire_run_lock(self, name: str, owner: str) -> None:
        """Take the named advisory lock.

        Raises:
            RunLockError: If the lock is already held
        """
        with self._transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO run_locks (name, owner, acquired_at) VALUES (?, ?, ?)",
                    (name, owner, _now_iso()),
                )
            except sqlite3.IntegrityError:
                row = conn.execute(
                    "SELECT owner, acquired_at FROM run_locks WHERE name = ?", (name,)
                ).fetchone()
                raise RunLockError(
                    name,
                    row["owner"] if row else None,
                    row["acquired_at"] if row else None,
                ) from None

    def release_run_lock(self, name: str, owner: str | None = None) -> bool:
        """Release the named lock (only if held by owner, when given)."""
        with self._transaction() as conn:
            if owner is None:
                cursor = conn.execute("DELETE FROM run_locks WHERE name = ?", (name,))
            else:
                cursor = conn.execute(
                    "DELETE FROM run_locks WHERE name = ? AND owner = ?", (name, owner)
                )
            return cursor.rowcount > 0

    # Statistics

    def get_stats(self, commission_status: str = "liberada") -> dict[str, int]:
        """Get reconciliation backlog statistics."""
        conn = self._get_connection()
        try:
            stats = {}

            stats["installments_total"] = conn.execute(
                "SELECT COUNT(*) FROM installments"
            ).fetchone()[0]
            stats["installments_pending"] = conn.execute(
                "SELECT COUNT(*) FROM installments "
                "WHERE commission_status = ? AND invoice_url IS NULL",
                (commission_status,),
            ).fetchone()[0]
            stats["installments_without_order"] = conn.execute(
                "SELECT COUNT(*) FROM installments "
                "WHERE commission_status = ? AND invoice_url IS NULL AND sales_order_id IS NULL",
                (commission_status,),
            ).fetchone()[0]
            stats["orders_total"] = conn.execute("SELECT COUNT(*) FROM sales_orders").fetchone()[0]
            stats["orders_with_erp_id"] = conn.execute(
                "SELECT COUNT(*) FROM sales_orders WHERE erp_order_id IS NOT NULL"
            ).fetchone()[0]
            stats["orders_pending_invoice"] = conn.execute(
                "SELECT COUNT(*) FROM sales_orders "
                "WHERE erp_order_id IS NOT NULL AND invoice_url IS NULL"
            ).fetchone()[0]

            return stats
        finally:
            conn.close()
