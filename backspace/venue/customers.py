"""Customer accounts: running balance (debt), lifetime spend and visit count."""

from __future__ import annotations

import datetime as dt
import secrets
import sqlite3
from decimal import Decimal

from .database import DEFAULT_PAGE_SIZE, apply_patch, order_clause, paginate
from .errors import ConflictError, NotFoundError
from .money import to_money
from .schemas import CustomerCreate, CustomerPatch


def _generate_human_id() -> str:
    return secrets.token_hex(4).upper()


def create_customer(conn: sqlite3.Connection, data: CustomerCreate, *, now: dt.datetime) -> int:
    human_id = _generate_human_id()
    while conn.execute("SELECT 1 FROM customers WHERE human_id = ?", (human_id,)).fetchone():
        human_id = _generate_human_id()
    cur = conn.execute(
        """
        INSERT INTO customers(human_id, name, phone, email, notes, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (human_id, data.name, data.phone, data.email, data.notes, now.isoformat()),
    )
    return cur.lastrowid


def get_customer(conn: sqlite3.Connection, customer_id: int) -> dict:
    row = conn.execute("SELECT * FROM customers WHERE id = ?", (customer_id,)).fetchone()
    if not row:
        raise NotFoundError("Customer not found")
    return row


def find_duplicate(conn: sqlite3.Connection, *, name: str, phone: str) -> dict | None:
    return conn.execute(
        "SELECT * FROM customers WHERE lower(name) = lower(?) OR phone = ? LIMIT 1",
        (name.strip(), phone.strip()),
    ).fetchone()


SORT_COLUMNS = {
    "name": "name",
    "phone": "phone",
    "human_id": "human_id",
    "created_at": "created_at",
    "balance": "CAST(balance AS REAL)",
    "total_spent": "CAST(total_spent AS REAL)",
    "total_sessions": "total_sessions",
}


def _customer_query(search: str | None) -> tuple[str, list]:
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        return (
            "SELECT * FROM customers WHERE name LIKE ? OR phone LIKE ? OR human_id LIKE ?",
            [pattern, pattern, pattern],
        )
    return "SELECT * FROM customers", []


def list_customers(conn: sqlite3.Connection, *, search: str | None = None) -> list[dict]:
    query, params = _customer_query(search)
    return conn.execute(query + " ORDER BY name", params).fetchall()


def list_customers_page(
    conn: sqlite3.Connection,
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    search: str | None = None,
    sort_by: str | None = None,
    sort_desc: bool = False,
) -> dict:
    """Newest customers first unless ``sort_by`` names a column."""

    query, params = _customer_query(search)
    order_by = order_clause(
        SORT_COLUMNS,
        sort_by,
        sort_desc,
        default="created_at DESC, id DESC",
        tiebreak="id",
    )
    return paginate(conn, query, params, order_by=order_by, page=page, page_size=page_size)


def update_customer(conn: sqlite3.Connection, customer_id: int, patch: CustomerPatch) -> None:
    get_customer(conn, customer_id)
    apply_patch(conn, "customers", customer_id, patch)


def delete_customer(conn: sqlite3.Connection, customer_id: int) -> None:
    get_customer(conn, customer_id)
    for table in ("sessions", "invoices"):
        row = conn.execute(
            f"SELECT COUNT(*) AS total FROM {table} WHERE customer_id = ?", (customer_id,)
        ).fetchone()
        if row["total"]:
            raise ConflictError(f"Customer has {table} on record and cannot be deleted")
    conn.execute("DELETE FROM subscriptions WHERE customer_id = ?", (customer_id,))
    conn.execute("DELETE FROM customers WHERE id = ?", (customer_id,))


def adjust_balance(conn: sqlite3.Connection, customer_id: int, delta: Decimal) -> Decimal:
    """Add ``delta`` to the customer's debt; negative deltas record payments."""

    customer = get_customer(conn, customer_id)
    balance = to_money(customer["balance"] + delta)
    conn.execute("UPDATE customers SET balance = ? WHERE id = ?", (balance, customer_id))
    return balance


def add_spend(conn: sqlite3.Connection, customer_id: int, delta: Decimal) -> Decimal:
    if delta < 0:
        raise ValueError("Lifetime spend cannot decrease")
    customer = get_customer(conn, customer_id)
    spent = to_money(customer["total_spent"] + delta)
    conn.execute("UPDATE customers SET total_spent = ? WHERE id = ?", (spent, customer_id))
    return spent


def record_visit(conn: sqlite3.Connection, customer_id: int) -> None:
    conn.execute(
        "UPDATE customers SET total_sessions = total_sessions + 1 WHERE id = ?",
        (customer_id,),
    )


def set_customer_type(conn: sqlite3.Connection, customer_id: int, customer_type: str) -> None:
    conn.execute(
        "UPDATE customers SET customer_type = ? WHERE id = ?", (customer_type, customer_id)
    )
