"""Database utilities for the Backspace venue platform."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Sequence

from pydantic import BaseModel

from .errors import InternalError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

sqlite3.register_adapter(Decimal, str)
sqlite3.register_converter("DECIMAL", lambda value: Decimal(value.decode()))


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults.

    The connection runs in autocommit mode; transactions are opened
    explicitly through :meth:`Database.transaction`.
    """

    conn = sqlite3.connect(
        path,
        detect_types=sqlite3.PARSE_DECLTYPES,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = dict_factory
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            human_id TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            phone TEXT NOT NULL,
            email TEXT,
            customer_type TEXT NOT NULL DEFAULT 'visitor',
            balance DECIMAL TEXT NOT NULL DEFAULT '0.00',
            total_spent DECIMAL TEXT NOT NULL DEFAULT '0.00',
            total_sessions INTEGER NOT NULL DEFAULT 0 CHECK (total_sessions >= 0),
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS resources (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            resource_type TEXT NOT NULL,
            rate_per_hour DECIMAL TEXT NOT NULL,
            max_price DECIMAL TEXT NOT NULL DEFAULT '0.00',
            is_available INTEGER NOT NULL DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS inventory_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT 'other',
            price DECIMAL TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
            min_stock INTEGER NOT NULL DEFAULT 0 CHECK (min_stock >= 0),
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            customer_id INTEGER NOT NULL,
            plan_type TEXT NOT NULL CHECK (plan_type IN ('weekly', 'half-monthly', 'monthly')),
            price DECIMAL TEXT NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'inactive',
            invoice_id INTEGER,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(customer_id) REFERENCES customers(id),
            FOREIGN KEY(invoice_id) REFERENCES invoices(id)
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            customer_id INTEGER NOT NULL,
            resource_id INTEGER NOT NULL,
            resource_rate DECIMAL TEXT NOT NULL,
            resource_max_price DECIMAL TEXT NOT NULL DEFAULT '0.00',
            started_at TEXT NOT NULL,
            ended_at TEXT,
            is_subscribed INTEGER NOT NULL DEFAULT 0,
            inventory_total DECIMAL TEXT NOT NULL DEFAULT '0.00',
            session_cost DECIMAL TEXT NOT NULL DEFAULT '0.00',
            total_amount DECIMAL TEXT NOT NULL DEFAULT '0.00',
            status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'completed')),
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(customer_id) REFERENCES customers(id),
            FOREIGN KEY(resource_id) REFERENCES resources(id)
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);

        CREATE TABLE IF NOT EXISTS session_inventory_lines (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id INTEGER NOT NULL,
            item_id INTEGER NOT NULL,
            item_name TEXT NOT NULL,
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            price DECIMAL TEXT NOT NULL,
            added_at TEXT NOT NULL,
            UNIQUE(session_id, item_id),
            FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE,
            FOREIGN KEY(item_id) REFERENCES inventory_items(id)
        );

        CREATE TABLE IF NOT EXISTS invoices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_number TEXT UNIQUE NOT NULL,
            customer_id INTEGER NOT NULL,
            session_id INTEGER,
            amount DECIMAL TEXT NOT NULL,
            total DECIMAL TEXT NOT NULL,
            paid_amount DECIMAL TEXT NOT NULL DEFAULT '0.00',
            status TEXT NOT NULL DEFAULT 'unpaid'
                CHECK (status IN ('unpaid', 'partially_paid', 'paid', 'cancelled')),
            issue_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            paid_date TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(customer_id) REFERENCES customers(id),
            FOREIGN KEY(session_id) REFERENCES sessions(id)
        );

        CREATE TABLE IF NOT EXISTS invoice_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_id INTEGER NOT NULL,
            description TEXT NOT NULL,
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            rate DECIMAL TEXT NOT NULL,
            amount DECIMAL TEXT NOT NULL,
            FOREIGN KEY(invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_id INTEGER NOT NULL,
            amount DECIMAL TEXT NOT NULL,
            method TEXT NOT NULL CHECK (method IN ('cash', 'card', 'transfer')),
            notes TEXT,
            paid_at TEXT NOT NULL,
            FOREIGN KEY(invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
        );
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


def next_sequence(conn: sqlite3.Connection, name: str) -> int:
    """Increment and return the named counter stored in ``metadata``."""

    current = int(get_metadata(conn, f"seq_{name}", "0"))
    set_metadata(conn, f"seq_{name}", current + 1)
    return current + 1


def apply_patch(conn: sqlite3.Connection, table: str, row_id: int, patch: BaseModel) -> int:
    """Write the fields explicitly set on ``patch`` to ``table`` in one UPDATE.

    Column names come from the patch model's declared fields, never from
    caller input. Returns the number of columns written.
    """

    values = patch.model_dump(exclude_unset=True, mode="json")
    if not values:
        return 0
    assignments = ", ".join(f"{column} = ?" for column in values)
    cur = conn.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ?",
        (*values.values(), row_id),
    )
    if cur.rowcount == 0:
        raise NotFoundError(f"No row {row_id} in {table}")
    return len(values)


def order_clause(
    columns: dict[str, str],
    sort_by: str | None,
    sort_desc: bool,
    *,
    default: str,
    tiebreak: str,
) -> str:
    """Build an ORDER BY body from a whitelisted sort key."""

    if not sort_by:
        return default
    try:
        expression = columns[sort_by]
    except KeyError as exc:
        raise ValidationError(
            f"Cannot sort by {sort_by} (choose from {', '.join(sorted(columns))})"
        ) from exc
    direction = "DESC" if sort_desc else "ASC"
    return f"{expression} {direction}, {tiebreak} {direction}"


def paginate(
    conn: sqlite3.Connection,
    query: str,
    params: Sequence[Any],
    *,
    order_by: str,
    page: int,
    page_size: int,
) -> dict:
    """Return one page of ``query`` plus the counts needed to page through it.

    Pages start at 1. A page size outside ``1..MAX_PAGE_SIZE`` falls back to
    ``DEFAULT_PAGE_SIZE``.
    """

    if page < 1:
        page = 1
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        page_size = DEFAULT_PAGE_SIZE
    total = conn.execute(
        f"SELECT COUNT(*) AS total FROM ({query})", tuple(params)
    ).fetchone()["total"]
    items = conn.execute(
        f"{query} ORDER BY {order_by} LIMIT ? OFFSET ?",
        (*params, page_size, (page - 1) * page_size),
    ).fetchall()
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size,
    }


class Database:
    """Owns the SQLite handle(s) for one store and hands out units of work.

    File-backed stores give every thread its own connection. In-memory
    stores exist only inside a single connection, so they are shared and
    should be driven from one thread at a time.
    """

    def __init__(self, path: str | Path = ":memory:", busy_timeout_ms: int = 5000) -> None:
        self.path = str(path)
        self.busy_timeout_ms = busy_timeout_ms
        self._local = threading.local()
        self._shared: sqlite3.Connection | None = None
        if self.path == ":memory:":
            self._shared = get_connection(self.path, busy_timeout_ms)
        initialize_database(self.connection)

    @property
    def connection(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = get_connection(self.path, self.busy_timeout_ms)
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block as one ``BEGIN IMMEDIATE`` transaction.

        The writer lock is taken up front so read-check-then-write sequences
        inside the block cannot interleave with another writer.
        """

        conn = self.connection
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise InternalError(f"Could not open transaction: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("Transaction rolled back after storage error: %s", exc)
            raise InternalError(f"Storage failure: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise
        else:
            try:
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise InternalError(f"Could not commit transaction: {exc}") from exc

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
