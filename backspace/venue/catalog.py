"""Resource registry and inventory store.

Every function takes the connection of the caller's unit of work and never
commits on its own.
"""

from __future__ import annotations

import sqlite3
from decimal import Decimal

from .database import apply_patch
from .errors import ConflictError, NotFoundError
from .schemas import InventoryItemCreate, InventoryItemPatch, ResourceCreate, ResourcePatch


# ----------------------------------------------------------------------
# Resources
# ----------------------------------------------------------------------
def create_resource(conn: sqlite3.Connection, data: ResourceCreate) -> int:
    cur = conn.execute(
        """
        INSERT INTO resources(name, resource_type, rate_per_hour, max_price, is_available)
        VALUES (?, ?, ?, ?, 1)
        """,
        (data.name, data.resource_type, data.rate_per_hour, data.max_price),
    )
    return cur.lastrowid


def get_resource(conn: sqlite3.Connection, resource_id: int) -> dict:
    row = conn.execute("SELECT * FROM resources WHERE id = ?", (resource_id,)).fetchone()
    if not row:
        raise NotFoundError("Resource not found")
    return row


def list_resources(conn: sqlite3.Connection, *, available_only: bool = False) -> list[dict]:
    query = "SELECT * FROM resources"
    if available_only:
        query += " WHERE is_available = 1"
    return conn.execute(query + " ORDER BY name").fetchall()


def update_resource(conn: sqlite3.Connection, resource_id: int, patch: ResourcePatch) -> None:
    get_resource(conn, resource_id)
    apply_patch(conn, "resources", resource_id, patch)


def delete_resource(conn: sqlite3.Connection, resource_id: int) -> None:
    resource = get_resource(conn, resource_id)
    if not resource["is_available"]:
        raise ConflictError("Resource is in use by an active session")
    history = conn.execute(
        "SELECT COUNT(*) AS total FROM sessions WHERE resource_id = ?", (resource_id,)
    ).fetchone()
    if history["total"]:
        raise ConflictError("Resource has session history and cannot be deleted")
    conn.execute("DELETE FROM resources WHERE id = ?", (resource_id,))


def get_rate(conn: sqlite3.Connection, resource_id: int) -> Decimal:
    return get_resource(conn, resource_id)["rate_per_hour"]


def is_available(conn: sqlite3.Connection, resource_id: int) -> bool:
    return bool(get_resource(conn, resource_id)["is_available"])


def set_available(conn: sqlite3.Connection, resource_id: int, available: bool) -> None:
    cur = conn.execute(
        "UPDATE resources SET is_available = ? WHERE id = ?", (int(available), resource_id)
    )
    if cur.rowcount == 0:
        raise NotFoundError("Resource not found")


# ----------------------------------------------------------------------
# Inventory
# ----------------------------------------------------------------------
def create_inventory_item(conn: sqlite3.Connection, data: InventoryItemCreate) -> int:
    cur = conn.execute(
        """
        INSERT INTO inventory_items(name, category, price, quantity, min_stock)
        VALUES (?, ?, ?, ?, ?)
        """,
        (data.name, data.category, data.price, data.quantity, data.min_stock),
    )
    return cur.lastrowid


def get_inventory_item(conn: sqlite3.Connection, item_id: int) -> dict:
    row = conn.execute("SELECT * FROM inventory_items WHERE id = ?", (item_id,)).fetchone()
    if not row:
        raise NotFoundError("Inventory item not found")
    return row


def list_inventory(conn: sqlite3.Connection, *, low_stock_only: bool = False) -> list[dict]:
    query = "SELECT * FROM inventory_items"
    if low_stock_only:
        query += " WHERE quantity <= min_stock"
    return conn.execute(query + " ORDER BY name").fetchall()


def update_inventory_item(conn: sqlite3.Connection, item_id: int, patch: InventoryItemPatch) -> None:
    get_inventory_item(conn, item_id)
    apply_patch(conn, "inventory_items", item_id, patch)


def delete_inventory_item(conn: sqlite3.Connection, item_id: int) -> None:
    get_inventory_item(conn, item_id)
    used = conn.execute(
        "SELECT COUNT(*) AS total FROM session_inventory_lines WHERE item_id = ?", (item_id,)
    ).fetchone()
    if used["total"]:
        raise ConflictError("Inventory item is on session records and cannot be deleted")
    conn.execute("DELETE FROM inventory_items WHERE id = ?", (item_id,))


def get_stock(conn: sqlite3.Connection, item_id: int) -> int:
    return get_inventory_item(conn, item_id)["quantity"]


def get_price(conn: sqlite3.Connection, item_id: int) -> Decimal:
    return get_inventory_item(conn, item_id)["price"]


def adjust_stock(conn: sqlite3.Connection, item_id: int, delta: int) -> int:
    """Move stock by ``delta`` and return the new on-hand quantity."""

    item = get_inventory_item(conn, item_id)
    new_quantity = item["quantity"] + delta
    if new_quantity < 0:
        raise ConflictError(f"Insufficient stock: only {item['quantity']} available")
    conn.execute(
        "UPDATE inventory_items SET quantity = ? WHERE id = ?", (new_quantity, item_id)
    )
    return new_quantity
