"""Subscription registry: date-ranged plans that exempt sessions from time fees."""

from __future__ import annotations

import datetime as dt
import sqlite3
from decimal import Decimal

from .billing import raise_invoice
from .customers import get_customer, set_customer_type
from .database import apply_patch
from .errors import ConflictError, NotFoundError, ValidationError
from .money import to_money
from .schemas import PLAN_DAYS, PlanType, SubscriptionPatch

ACTIVE = "active"
INACTIVE = "inactive"


def plan_end_date(plan_type: str, start_date: dt.date) -> dt.date:
    return start_date + dt.timedelta(days=PLAN_DAYS[PlanType(plan_type)])


def create_subscription(
    conn: sqlite3.Connection,
    *,
    customer_id: int,
    plan_type: str,
    price: Decimal | int | float | str,
    start_date: dt.date,
    issued_at: dt.datetime,
) -> int:
    """Activate a plan for ``customer_id`` and invoice its price.

    Any plan the customer already holds is deactivated first.
    """

    try:
        plan = PlanType(plan_type)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid plan type: {plan_type} (must be weekly, half-monthly, or monthly)"
        ) from exc
    price = to_money(price)
    if price <= 0:
        raise ValidationError("Subscription price must be positive")
    get_customer(conn, customer_id)

    conn.execute(
        "UPDATE subscriptions SET is_active = 0, status = ? WHERE customer_id = ? AND is_active = 1",
        (INACTIVE, customer_id),
    )
    invoice_id = raise_invoice(
        conn,
        customer_id=customer_id,
        items=[(f"Subscription: {plan.value} plan", 1, price)],
        issued_at=issued_at,
        due_days=0,
    )
    cur = conn.execute(
        """
        INSERT INTO subscriptions(
            customer_id, plan_type, price, start_date, end_date, is_active, status, invoice_id
        ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
        """,
        (
            customer_id,
            plan.value,
            price,
            start_date.isoformat(),
            plan_end_date(plan.value, start_date).isoformat(),
            ACTIVE,
            invoice_id,
        ),
    )
    set_customer_type(conn, customer_id, plan.value)
    return cur.lastrowid


def get_subscription(conn: sqlite3.Connection, subscription_id: int) -> dict:
    row = conn.execute(
        "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
    ).fetchone()
    if not row:
        raise NotFoundError("Subscription not found")
    return row


def list_subscriptions(
    conn: sqlite3.Connection, *, customer_id: int | None = None, today: dt.date
) -> list[dict]:
    query = """
        SELECT subscriptions.*, customers.name AS customer_name
        FROM subscriptions
        JOIN customers ON customers.id = subscriptions.customer_id
    """
    params: list = []
    if customer_id is not None:
        query += " WHERE subscriptions.customer_id = ?"
        params.append(customer_id)
    rows = conn.execute(query + " ORDER BY subscriptions.start_date DESC", params).fetchall()
    for row in rows:
        end_date = dt.date.fromisoformat(row["end_date"])
        if row["is_active"] and end_date > today:
            row["days_remaining"] = (end_date - today).days
        else:
            row["days_remaining"] = 0
    return rows


def has_active_subscription(conn: sqlite3.Connection, customer_id: int, on_date: dt.date) -> bool:
    """True when an active plan's ``[start_date, end_date)`` range contains ``on_date``."""

    day = on_date.isoformat()
    row = conn.execute(
        """
        SELECT 1 FROM subscriptions
        WHERE customer_id = ? AND is_active = 1 AND start_date <= ? AND end_date > ?
        LIMIT 1
        """,
        (customer_id, day, day),
    ).fetchone()
    return row is not None


def cancel_subscription(conn: sqlite3.Connection, subscription_id: int) -> None:
    subscription = get_subscription(conn, subscription_id)
    if not subscription["is_active"]:
        raise ConflictError("Subscription is not active")
    conn.execute(
        "UPDATE subscriptions SET is_active = 0, status = ? WHERE id = ?",
        (INACTIVE, subscription_id),
    )
    _refresh_customer_type(conn, subscription["customer_id"])


def _refresh_customer_type(conn: sqlite3.Connection, customer_id: int) -> None:
    active = conn.execute(
        "SELECT plan_type FROM subscriptions WHERE customer_id = ? AND is_active = 1 LIMIT 1",
        (customer_id,),
    ).fetchone()
    set_customer_type(conn, customer_id, active["plan_type"] if active else "visitor")


def update_subscription(
    conn: sqlite3.Connection, subscription_id: int, patch: SubscriptionPatch
) -> None:
    """Correct price or dates. The invoice raised for the plan is left as issued."""

    subscription = get_subscription(conn, subscription_id)
    start = patch.start_date or dt.date.fromisoformat(subscription["start_date"])
    end = patch.end_date or dt.date.fromisoformat(subscription["end_date"])
    if end <= start:
        raise ValidationError("Subscription must end after it starts")
    apply_patch(conn, "subscriptions", subscription_id, patch)


def change_plan(conn: sqlite3.Connection, subscription_id: int, plan_type: str) -> None:
    """Switch to ``plan_type`` and recompute the end date from the start date."""

    try:
        plan = PlanType(plan_type)
    except ValueError as exc:
        raise ValidationError(f"Invalid plan type: {plan_type}") from exc
    subscription = get_subscription(conn, subscription_id)
    start = dt.date.fromisoformat(subscription["start_date"])
    conn.execute(
        "UPDATE subscriptions SET plan_type = ?, end_date = ? WHERE id = ?",
        (plan.value, plan_end_date(plan.value, start).isoformat(), subscription_id),
    )
    if subscription["is_active"]:
        set_customer_type(conn, subscription["customer_id"], plan.value)


def delete_subscription(conn: sqlite3.Connection, subscription_id: int) -> None:
    subscription = get_subscription(conn, subscription_id)
    conn.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))
    _refresh_customer_type(conn, subscription["customer_id"])


def reactivate_subscription(conn: sqlite3.Connection, subscription_id: int) -> None:
    subscription = get_subscription(conn, subscription_id)
    if subscription["is_active"]:
        raise ConflictError("Subscription is already active")
    conn.execute(
        "UPDATE subscriptions SET is_active = 0, status = ? WHERE customer_id = ? AND is_active = 1",
        (INACTIVE, subscription["customer_id"]),
    )
    conn.execute(
        "UPDATE subscriptions SET is_active = 1, status = ? WHERE id = ?",
        (ACTIVE, subscription_id),
    )
    set_customer_type(conn, subscription["customer_id"], subscription["plan_type"])
