"""Invoice and payment ledger."""

from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from decimal import Decimal
from typing import Any, Iterable, Sequence

from .customers import add_spend, adjust_balance, get_customer
from .database import DEFAULT_PAGE_SIZE, next_sequence, order_clause, paginate
from .errors import ConflictError, NotFoundError, ValidationError
from .money import ZERO, line_amount, to_money, total as sum_money
from .schemas import PaymentMethod

logger = logging.getLogger(__name__)

UNPAID = "unpaid"
PARTIALLY_PAID = "partially_paid"
PAID = "paid"
CANCELLED = "cancelled"

DEFAULT_DUE_DAYS = 7


def derive_status(paid: Decimal, total: Decimal, cancelled: bool = False) -> str:
    """Invoice status as a pure function of paid amount, total and cancellation."""

    if cancelled:
        return CANCELLED
    if paid >= total:
        return PAID
    if paid > 0:
        return PARTIALLY_PAID
    return UNPAID


def outstanding(invoice: dict) -> Decimal:
    remaining = invoice["total"] - invoice["paid_amount"]
    return remaining if remaining > 0 else ZERO


def _generate_invoice_number(conn: sqlite3.Connection, issue_date: dt.date) -> str:
    sequence = next_sequence(conn, f"invoice_{issue_date.year}")
    return f"INV-{issue_date.year}-{sequence:05d}"


def create_invoice(
    conn: sqlite3.Connection,
    *,
    customer_id: int,
    items: Iterable[tuple[str, int, Decimal]],
    issued_at: dt.datetime,
    session_id: int | None = None,
    total: Decimal | None = None,
    due_days: int = DEFAULT_DUE_DAYS,
) -> int:
    """Materialize an invoice with one line per ``(description, quantity, rate)``.

    The customer's balance is left alone; callers decide how the new debt is
    booked. A zero total is valid and yields an invoice that is already paid.
    """

    lines = [(description, quantity, to_money(rate)) for description, quantity, rate in items]
    for description, quantity, rate in lines:
        if quantity <= 0:
            raise ValidationError(f"Line '{description}' must have a positive quantity")
        if rate < 0:
            raise ValidationError(f"Line '{description}' cannot have a negative rate")
    if total is None:
        total = sum_money(line_amount(quantity, rate) for _, quantity, rate in lines)
    total = to_money(total)

    status = derive_status(ZERO, total)
    issue_date = issued_at.date()
    cur = conn.execute(
        """
        INSERT INTO invoices(
            invoice_number, customer_id, session_id, amount, total, paid_amount,
            status, issue_date, due_date, paid_date
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            _generate_invoice_number(conn, issue_date),
            customer_id,
            session_id,
            total,
            total,
            ZERO,
            status,
            issue_date.isoformat(),
            (issue_date + dt.timedelta(days=due_days)).isoformat(),
            issued_at.isoformat() if status == PAID else None,
        ),
    )
    invoice_id = cur.lastrowid
    for description, quantity, rate in lines:
        conn.execute(
            """
            INSERT INTO invoice_items(invoice_id, description, quantity, rate, amount)
            VALUES (?, ?, ?, ?, ?)
            """,
            (invoice_id, description, quantity, rate, line_amount(quantity, rate)),
        )
    return invoice_id


def raise_invoice(
    conn: sqlite3.Connection,
    *,
    customer_id: int,
    items: Sequence[tuple[str, int, Decimal]],
    issued_at: dt.datetime,
    due_days: int = DEFAULT_DUE_DAYS,
) -> int:
    """Create an ad hoc invoice and book its total against the customer."""

    if not items:
        raise ValidationError("An invoice needs at least one line item")
    get_customer(conn, customer_id)
    invoice_id = create_invoice(
        conn,
        customer_id=customer_id,
        items=items,
        issued_at=issued_at,
        due_days=due_days,
    )
    adjust_balance(conn, customer_id, get_invoice_row(conn, invoice_id)["total"])
    return invoice_id


def get_invoice_row(conn: sqlite3.Connection, invoice_id: int) -> dict:
    row = conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
    if not row:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return row


def get_invoice(conn: sqlite3.Connection, invoice_id: int) -> dict:
    row = get_invoice_row(conn, invoice_id)
    row["line_items"] = conn.execute(
        "SELECT * FROM invoice_items WHERE invoice_id = ? ORDER BY id", (invoice_id,)
    ).fetchall()
    row["payments"] = conn.execute(
        "SELECT * FROM payments WHERE invoice_id = ? ORDER BY id", (invoice_id,)
    ).fetchall()
    return row


SORT_COLUMNS = {
    "invoice_number": "invoices.invoice_number",
    "issue_date": "invoices.issue_date",
    "due_date": "invoices.due_date",
    "status": "invoices.status",
    "total": "CAST(invoices.total AS REAL)",
    "created_at": "invoices.created_at",
}


def _invoice_query(
    customer_id: int | None,
    status: Sequence[str] | None,
    search: str | None = None,
) -> tuple[str, list[Any]]:
    params: list[Any] = []
    conditions: list[str] = []
    if customer_id is not None:
        conditions.append("invoices.customer_id = ?")
        params.append(customer_id)
    if status:
        placeholders = ",".join("?" for _ in status)
        conditions.append(f"invoices.status IN ({placeholders})")
        params.extend(status)
    if search and search.strip():
        conditions.append("invoices.invoice_number LIKE ?")
        params.append(f"%{search.strip()}%")
    where = ""
    if conditions:
        where = " WHERE " + " AND ".join(conditions)
    query = (
        """
        SELECT invoices.*, customers.name AS customer_name, customers.phone AS customer_phone
        FROM invoices
        JOIN customers ON customers.id = invoices.customer_id
        {where}
        """.format(where=where)
    )
    return query, params


def list_invoices(
    conn: sqlite3.Connection,
    *,
    customer_id: int | None = None,
    status: Sequence[str] | None = None,
) -> list[dict]:
    """Return invoices optionally filtered by customer or status."""

    query, params = _invoice_query(customer_id, status)
    return conn.execute(query + " ORDER BY issue_date DESC, invoices.id DESC", params).fetchall()


def list_invoices_page(
    conn: sqlite3.Connection,
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    search: str | None = None,
    customer_id: int | None = None,
    status: Sequence[str] | None = None,
    sort_by: str | None = None,
    sort_desc: bool = False,
) -> dict:
    """One page of invoices; ``search`` matches the invoice number."""

    query, params = _invoice_query(customer_id, status, search)
    order_by = order_clause(
        SORT_COLUMNS,
        sort_by,
        sort_desc,
        default="invoices.created_at DESC, invoices.id DESC",
        tiebreak="invoices.id",
    )
    return paginate(conn, query, params, order_by=order_by, page=page, page_size=page_size)


def _validate_payment(amount: Decimal | int | float | str, method: str) -> tuple[Decimal, str]:
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be positive")
    try:
        method = PaymentMethod(method).value
    except ValueError as exc:
        raise ValidationError(f"Unknown payment method: {method}") from exc
    return amount, method


def _settle(
    conn: sqlite3.Connection,
    invoice: dict,
    amount: Decimal,
    method: str,
    notes: str | None,
    now: dt.datetime,
) -> dict:
    """Book ``amount`` against a loaded invoice and its customer."""

    paid = to_money(invoice["paid_amount"] + amount)
    status = derive_status(paid, invoice["total"])
    paid_date = invoice["paid_date"]
    if status == PAID and invoice["status"] != PAID:
        paid_date = now.isoformat()
    conn.execute(
        """
        INSERT INTO payments(invoice_id, amount, method, notes, paid_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (invoice["id"], amount, method, notes, now.isoformat()),
    )
    conn.execute(
        "UPDATE invoices SET paid_amount = ?, status = ?, paid_date = ? WHERE id = ?",
        (paid, status, paid_date, invoice["id"]),
    )
    adjust_balance(conn, invoice["customer_id"], -amount)
    add_spend(conn, invoice["customer_id"], amount)
    logger.info(
        "Applied %s (%s) to invoice %s: paid %s of %s, now %s",
        amount,
        method,
        invoice["invoice_number"],
        paid,
        invoice["total"],
        status,
    )
    return {"invoice_id": invoice["id"], "amount": amount, "status": status}


def apply_payment(
    conn: sqlite3.Connection,
    *,
    invoice_id: int,
    amount: Decimal | int | float | str,
    method: str,
    notes: str | None = None,
    now: dt.datetime,
) -> dict:
    """Apply one payment. Overpayment is accepted and leaves the invoice paid."""

    amount, method = _validate_payment(amount, method)
    invoice = get_invoice_row(conn, invoice_id)
    if invoice["status"] == CANCELLED:
        raise ConflictError("Invoice is cancelled")
    if invoice["status"] == PAID:
        raise ConflictError("Invoice is already fully paid")
    return _settle(conn, invoice, amount, method, notes, now)


def apply_bulk_payment(
    conn: sqlite3.Connection,
    *,
    invoice_ids: Sequence[int],
    amount: Decimal | int | float | str,
    method: str,
    notes: str | None = None,
    now: dt.datetime,
) -> dict:
    """Spread one payment greedily over ``invoice_ids`` in the order given.

    Cancelled and fully paid invoices are skipped without consuming any of
    the amount. A missing invoice aborts the whole batch.
    """

    if not invoice_ids:
        raise ValidationError("At least one invoice is required")
    amount, method = _validate_payment(amount, method)
    for invoice_id in invoice_ids:
        get_invoice_row(conn, invoice_id)
    remaining = amount
    allocations: list[dict] = []
    for invoice_id in invoice_ids:
        if remaining <= 0:
            break
        invoice = get_invoice_row(conn, invoice_id)
        if invoice["status"] in (CANCELLED, PAID):
            continue
        due = outstanding(invoice)
        if due <= 0:
            continue
        portion = min(remaining, due)
        allocations.append(_settle(conn, invoice, portion, method, notes, now))
        remaining = to_money(remaining - portion)
    return {"allocations": allocations, "unallocated": remaining}


def cancel_invoice(conn: sqlite3.Connection, invoice_id: int) -> Decimal:
    """Cancel an invoice and write its outstanding amount off the customer's debt."""

    invoice = get_invoice_row(conn, invoice_id)
    if invoice["status"] == CANCELLED:
        raise ConflictError("Invoice is already cancelled")
    written_off = outstanding(invoice)
    conn.execute("UPDATE invoices SET status = ? WHERE id = ?", (CANCELLED, invoice_id))
    if written_off:
        adjust_balance(conn, invoice["customer_id"], -written_off)
    return written_off
