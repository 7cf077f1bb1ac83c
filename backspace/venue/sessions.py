"""Session engine: timed occupancy of a resource and its settlement.

A session moves ``active -> completed`` exactly once. The hourly rate, the
daily cap and the customer's subscription status are copied onto the session
when it starts; every attached item line keeps the unit price it was first
attached at. Settlement reads only those snapshots, so later price changes
never alter a session's cost.

All functions run inside the caller's unit of work and never commit.
"""

from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from decimal import Decimal

from . import catalog
from .billing import DEFAULT_DUE_DAYS, create_invoice
from .customers import adjust_balance, get_customer, record_visit
from .errors import ConflictError, NotFoundError, ValidationError
from .money import ZERO, line_amount, session_cost, to_money
from .subscriptions import has_active_subscription

logger = logging.getLogger(__name__)

ACTIVE = "active"
COMPLETED = "completed"


def get_session(conn: sqlite3.Connection, session_id: int) -> dict:
    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        raise NotFoundError("Session not found")
    return row


def get_session_lines(conn: sqlite3.Connection, session_id: int) -> list[dict]:
    return conn.execute(
        "SELECT * FROM session_inventory_lines WHERE session_id = ? ORDER BY id",
        (session_id,),
    ).fetchall()


def list_active_sessions(conn: sqlite3.Connection) -> list[dict]:
    rows = conn.execute(
        """
        SELECT sessions.*, customers.name AS customer_name, resources.name AS resource_name
        FROM sessions
        JOIN customers ON customers.id = sessions.customer_id
        JOIN resources ON resources.id = sessions.resource_id
        WHERE sessions.status = ?
        ORDER BY sessions.started_at
        """,
        (ACTIVE,),
    ).fetchall()
    for row in rows:
        row["inventory_lines"] = get_session_lines(conn, row["id"])
    return rows


def duration_minutes(started_at: dt.datetime, ended_at: dt.datetime) -> int:
    """Whole minutes elapsed; partial minutes are dropped."""

    seconds = (ended_at - started_at).total_seconds()
    return max(int(seconds // 60), 0)


def start_session(
    conn: sqlite3.Connection, *, customer_id: int, resource_id: int, now: dt.datetime
) -> int:
    get_customer(conn, customer_id)
    resource = catalog.get_resource(conn, resource_id)
    if not resource["is_available"]:
        raise ConflictError("Resource is already occupied")
    running = conn.execute(
        "SELECT id FROM sessions WHERE customer_id = ? AND status = ? LIMIT 1",
        (customer_id, ACTIVE),
    ).fetchone()
    if running:
        raise ConflictError("Customer already has an active session")

    subscribed = has_active_subscription(conn, customer_id, now.date())
    cur = conn.execute(
        """
        INSERT INTO sessions(
            customer_id, resource_id, resource_rate, resource_max_price,
            started_at, is_subscribed, inventory_total, status
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            customer_id,
            resource_id,
            resource["rate_per_hour"],
            resource["max_price"],
            now.isoformat(),
            int(subscribed),
            ZERO,
            ACTIVE,
        ),
    )
    catalog.set_available(conn, resource_id, False)
    logger.info(
        "Session %s started: customer %s on %s at %s/h%s",
        cur.lastrowid,
        customer_id,
        resource["name"],
        resource["rate_per_hour"],
        " (subscribed)" if subscribed else "",
    )
    return cur.lastrowid


def _get_line(conn: sqlite3.Connection, session_id: int, item_id: int) -> dict | None:
    return conn.execute(
        "SELECT * FROM session_inventory_lines WHERE session_id = ? AND item_id = ?",
        (session_id, item_id),
    ).fetchone()


def _shift_inventory_total(conn: sqlite3.Connection, session: dict, delta: Decimal) -> None:
    new_total = to_money(session["inventory_total"] + delta)
    conn.execute(
        "UPDATE sessions SET inventory_total = ? WHERE id = ?", (new_total, session["id"])
    )


def _write_line(
    conn: sqlite3.Connection,
    *,
    session: dict,
    item: dict,
    line: dict | None,
    quantity: int,
    now: dt.datetime,
) -> None:
    """Move a (session, item) line to ``quantity`` and settle stock and totals.

    The line keeps the price it was first attached at; a new line snapshots
    the item's current price.
    """

    old_quantity = line["quantity"] if line else 0
    price = line["price"] if line else item["price"]
    diff = quantity - old_quantity
    if diff == 0:
        return
    catalog.adjust_stock(conn, item["id"], -diff)
    conn.execute(
        """
        INSERT INTO session_inventory_lines(session_id, item_id, item_name, quantity, price, added_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(session_id, item_id) DO UPDATE SET quantity = excluded.quantity
        """,
        (session["id"], item["id"], item["name"], quantity, price, now.isoformat()),
    )
    _shift_inventory_total(
        conn, session, line_amount(quantity, price) - line_amount(old_quantity, price)
    )


def attach_item(
    conn: sqlite3.Connection,
    *,
    session_id: int,
    item_id: int,
    quantity: int,
    now: dt.datetime,
) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("Quantity must be a positive whole number")
    session = get_session(conn, session_id)
    if session["status"] != ACTIVE:
        raise ConflictError("Cannot add items to a completed session")
    item = catalog.get_inventory_item(conn, item_id)
    if item["quantity"] < quantity:
        raise ConflictError(f"Insufficient stock: only {item['quantity']} available")
    line = _get_line(conn, session_id, item_id)
    current = line["quantity"] if line else 0
    _write_line(conn, session=session, item=item, line=line, quantity=current + quantity, now=now)


def detach_item(conn: sqlite3.Connection, *, session_id: int, item_id: int) -> None:
    """Remove a line and return its units to stock.

    Works on completed sessions too. The session's settled invoice,
    ``total_amount`` and the customer balance are not re-priced; only the
    stock and the session's ``inventory_total`` move.
    """

    session = get_session(conn, session_id)
    line = _get_line(conn, session_id, item_id)
    if not line:
        raise NotFoundError("Item is not attached to this session")
    catalog.adjust_stock(conn, item_id, line["quantity"])
    conn.execute("DELETE FROM session_inventory_lines WHERE id = ?", (line["id"],))
    _shift_inventory_total(conn, session, -line_amount(line["quantity"], line["price"]))


def set_item_quantity(
    conn: sqlite3.Connection,
    *,
    session_id: int,
    item_id: int,
    quantity: int,
    now: dt.datetime,
) -> None:
    """Move a line to ``quantity``; 0 detaches it.

    On a completed session only existing lines may change, and as with
    :func:`detach_item` the settled invoice is not re-priced.
    """

    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
        raise ValidationError("Quantity must be a non-negative whole number")
    if quantity == 0:
        detach_item(conn, session_id=session_id, item_id=item_id)
        return
    session = get_session(conn, session_id)
    line = _get_line(conn, session_id, item_id)
    if line is None and session["status"] != ACTIVE:
        raise ConflictError("Cannot add items to a completed session")
    item = catalog.get_inventory_item(conn, item_id)
    diff = quantity - (line["quantity"] if line else 0)
    if diff > 0 and item["quantity"] < diff:
        raise ConflictError(f"Insufficient stock: only {item['quantity']} more available")
    _write_line(conn, session=session, item=item, line=line, quantity=quantity, now=now)


def end_session(
    conn: sqlite3.Connection,
    *,
    session_id: int,
    now: dt.datetime,
    due_days: int = DEFAULT_DUE_DAYS,
) -> int:
    """Settle an active session and return the id of its invoice."""

    session = get_session(conn, session_id)
    if session["status"] != ACTIVE:
        raise ConflictError("Session is not active")
    resource = catalog.get_resource(conn, session["resource_id"])

    minutes = duration_minutes(dt.datetime.fromisoformat(session["started_at"]), now)
    cost = ZERO
    if not session["is_subscribed"]:
        cost = session_cost(minutes, session["resource_rate"], session["resource_max_price"])
    total_amount = to_money(cost + session["inventory_total"])

    conn.execute(
        """
        UPDATE sessions
        SET status = ?, ended_at = ?, session_cost = ?, total_amount = ?
        WHERE id = ?
        """,
        (COMPLETED, now.isoformat(), cost, total_amount, session_id),
    )
    catalog.set_available(conn, session["resource_id"], True)

    items: list[tuple[str, int, Decimal]] = []
    if cost:
        items.append((f"Session at {resource['name']}", 1, cost))
    for line in get_session_lines(conn, session_id):
        items.append((line["item_name"], line["quantity"], line["price"]))
    invoice_id = create_invoice(
        conn,
        customer_id=session["customer_id"],
        session_id=session_id,
        items=items,
        total=total_amount,
        issued_at=now,
        due_days=due_days,
    )

    adjust_balance(conn, session["customer_id"], total_amount)
    record_visit(conn, session["customer_id"])
    logger.info(
        "Session %s ended after %d min: time %s + items %s = %s (invoice %s)",
        session_id,
        minutes,
        cost,
        session["inventory_total"],
        total_amount,
        invoice_id,
    )
    return invoice_id


def find_stale_sessions(
    conn: sqlite3.Connection, *, now: dt.datetime, max_hours: float
) -> list[int]:
    cutoff = now - dt.timedelta(hours=max_hours)
    rows = conn.execute(
        "SELECT id, started_at FROM sessions WHERE status = ? ORDER BY started_at",
        (ACTIVE,),
    ).fetchall()
    return [row["id"] for row in rows if dt.datetime.fromisoformat(row["started_at"]) <= cutoff]
