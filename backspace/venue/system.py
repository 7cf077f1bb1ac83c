"""Core orchestration logic for the Backspace venue platform."""

from __future__ import annotations

import datetime as dt
import json
import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Callable, Iterator, Sequence

from . import billing, catalog, customers, sessions, subscriptions
from .billing import DEFAULT_DUE_DAYS
from .database import DEFAULT_PAGE_SIZE, Database, get_metadata, set_metadata
from .errors import ValidationError, VenueError
from .money import ZERO, total
from .schemas import (
    CustomerCreate,
    CustomerPatch,
    InventoryItemCreate,
    InventoryItemPatch,
    ResourceCreate,
    ResourcePatch,
    SubscriptionPatch,
    parse,
)

logger = logging.getLogger(__name__)

DEFAULT_STALE_HOURS = 12.0


class VenueSystem:
    """High level façade that exposes application level behaviours.

    Every public mutating method runs as one transaction: either all of its
    effects are committed or none are.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        clock: Callable[[], dt.datetime] | None = None,
        due_days: int = DEFAULT_DUE_DAYS,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db = Database(db_path, busy_timeout_ms=busy_timeout_ms)
        self.clock = clock or dt.datetime.now
        self.due_days = due_days

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def conn(self):
        return self.db.connection

    def _now(self) -> dt.datetime:
        return self.clock().replace(microsecond=0)

    def _parse_date(self, value: str | None) -> dt.date:
        if not value:
            return self._now().date()
        try:
            return dt.date.fromisoformat(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid date: {value}") from exc

    @contextmanager
    def _unit_of_work(self, operation: str) -> Iterator[Any]:
        try:
            with self.db.transaction() as conn:
                yield conn
        except VenueError as exc:
            logger.warning("%s rejected: %s", operation, exc)
            raise

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------
    def register_customer(
        self,
        *,
        name: str,
        phone: str,
        email: str | None = None,
        notes: str | None = None,
    ) -> dict:
        data = parse(CustomerCreate, {"name": name, "phone": phone, "email": email, "notes": notes})
        with self._unit_of_work("register_customer") as conn:
            customer_id = customers.create_customer(conn, data, now=self._now())
        return self.get_customer(customer_id)

    def get_customer(self, customer_id: int) -> dict:
        return customers.get_customer(self.conn, customer_id)

    def list_customers(self, *, search: str | None = None) -> list[dict]:
        return customers.list_customers(self.conn, search=search)

    def list_customers_page(
        self,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        search: str | None = None,
        sort_by: str | None = None,
        sort_desc: bool = False,
    ) -> dict:
        return customers.list_customers_page(
            self.conn,
            page=page,
            page_size=page_size,
            search=search,
            sort_by=sort_by,
            sort_desc=sort_desc,
        )

    def check_customer_duplicate(self, *, name: str, phone: str) -> dict | None:
        return customers.find_duplicate(self.conn, name=name, phone=phone)

    def update_customer(self, customer_id: int, fields: dict) -> dict:
        patch = parse(CustomerPatch, fields)
        with self._unit_of_work("update_customer") as conn:
            customers.update_customer(conn, customer_id, patch)
        return self.get_customer(customer_id)

    def delete_customer(self, customer_id: int) -> None:
        with self._unit_of_work("delete_customer") as conn:
            customers.delete_customer(conn, customer_id)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------
    def create_resource(
        self,
        *,
        name: str,
        resource_type: str,
        rate_per_hour: Decimal | int | float | str,
        max_price: Decimal | int | float | str = 0,
    ) -> dict:
        data = parse(
            ResourceCreate,
            {
                "name": name,
                "resource_type": resource_type,
                "rate_per_hour": rate_per_hour,
                "max_price": max_price,
            },
        )
        with self._unit_of_work("create_resource") as conn:
            resource_id = catalog.create_resource(conn, data)
        return self.get_resource(resource_id)

    def get_resource(self, resource_id: int) -> dict:
        return catalog.get_resource(self.conn, resource_id)

    def list_resources(self, *, available_only: bool = False) -> list[dict]:
        return catalog.list_resources(self.conn, available_only=available_only)

    def update_resource(self, resource_id: int, fields: dict) -> dict:
        patch = parse(ResourcePatch, fields)
        with self._unit_of_work("update_resource") as conn:
            catalog.update_resource(conn, resource_id, patch)
        return self.get_resource(resource_id)

    def delete_resource(self, resource_id: int) -> None:
        with self._unit_of_work("delete_resource") as conn:
            catalog.delete_resource(conn, resource_id)

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    def create_inventory_item(
        self,
        *,
        name: str,
        price: Decimal | int | float | str,
        quantity: int = 0,
        category: str = "other",
        min_stock: int = 0,
    ) -> dict:
        data = parse(
            InventoryItemCreate,
            {
                "name": name,
                "price": price,
                "quantity": quantity,
                "category": category,
                "min_stock": min_stock,
            },
        )
        with self._unit_of_work("create_inventory_item") as conn:
            item_id = catalog.create_inventory_item(conn, data)
        return self.get_inventory_item(item_id)

    def get_inventory_item(self, item_id: int) -> dict:
        return catalog.get_inventory_item(self.conn, item_id)

    def list_inventory(self, *, low_stock_only: bool = False) -> list[dict]:
        return catalog.list_inventory(self.conn, low_stock_only=low_stock_only)

    def update_inventory_item(self, item_id: int, fields: dict) -> dict:
        patch = parse(InventoryItemPatch, fields)
        with self._unit_of_work("update_inventory_item") as conn:
            catalog.update_inventory_item(conn, item_id, patch)
        return self.get_inventory_item(item_id)

    def delete_inventory_item(self, item_id: int) -> None:
        with self._unit_of_work("delete_inventory_item") as conn:
            catalog.delete_inventory_item(conn, item_id)

    def adjust_inventory(self, *, item_id: int, quantity_change: int) -> dict:
        with self._unit_of_work("adjust_inventory") as conn:
            catalog.adjust_stock(conn, item_id, quantity_change)
        return self.get_inventory_item(item_id)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def create_subscription(
        self,
        *,
        customer_id: int,
        plan_type: str,
        price: Decimal | int | float | str,
        start_date: str | None = None,
    ) -> dict:
        now = self._now()
        start = self._parse_date(start_date)
        with self._unit_of_work("create_subscription") as conn:
            subscription_id = subscriptions.create_subscription(
                conn,
                customer_id=customer_id,
                plan_type=plan_type,
                price=price,
                start_date=start,
                issued_at=now,
            )
        return self.get_subscription(subscription_id)

    def get_subscription(self, subscription_id: int) -> dict:
        return subscriptions.get_subscription(self.conn, subscription_id)

    def list_subscriptions(self, *, customer_id: int | None = None) -> list[dict]:
        return subscriptions.list_subscriptions(
            self.conn, customer_id=customer_id, today=self._now().date()
        )

    def cancel_subscription(self, subscription_id: int) -> dict:
        with self._unit_of_work("cancel_subscription") as conn:
            subscriptions.cancel_subscription(conn, subscription_id)
        return self.get_subscription(subscription_id)

    def update_subscription(self, subscription_id: int, fields: dict) -> dict:
        patch = parse(SubscriptionPatch, fields)
        with self._unit_of_work("update_subscription") as conn:
            subscriptions.update_subscription(conn, subscription_id, patch)
        return self.get_subscription(subscription_id)

    def change_subscription_plan(self, subscription_id: int, plan_type: str) -> dict:
        with self._unit_of_work("change_subscription_plan") as conn:
            subscriptions.change_plan(conn, subscription_id, plan_type)
        return self.get_subscription(subscription_id)

    def delete_subscription(self, subscription_id: int) -> None:
        with self._unit_of_work("delete_subscription") as conn:
            subscriptions.delete_subscription(conn, subscription_id)

    def reactivate_subscription(self, subscription_id: int) -> dict:
        with self._unit_of_work("reactivate_subscription") as conn:
            subscriptions.reactivate_subscription(conn, subscription_id)
        return self.get_subscription(subscription_id)

    def has_active_subscription(self, customer_id: int, on_date: str | None = None) -> bool:
        return subscriptions.has_active_subscription(
            self.conn, customer_id, self._parse_date(on_date)
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def start_session(self, *, customer_id: int, resource_id: int) -> dict:
        with self._unit_of_work("start_session") as conn:
            session_id = sessions.start_session(
                conn, customer_id=customer_id, resource_id=resource_id, now=self._now()
            )
        return self.get_session(session_id)

    def get_session(self, session_id: int) -> dict:
        session = sessions.get_session(self.conn, session_id)
        session["inventory_lines"] = sessions.get_session_lines(self.conn, session_id)
        return session

    def list_active_sessions(self) -> list[dict]:
        rows = sessions.list_active_sessions(self.conn)
        now = self._now()
        for row in rows:
            row["duration_minutes"] = sessions.duration_minutes(
                dt.datetime.fromisoformat(row["started_at"]), now
            )
        return rows

    def attach_item(self, *, session_id: int, item_id: int, quantity: int) -> dict:
        with self._unit_of_work("attach_item") as conn:
            sessions.attach_item(
                conn, session_id=session_id, item_id=item_id, quantity=quantity, now=self._now()
            )
        return self.get_session(session_id)

    def detach_item(self, *, session_id: int, item_id: int) -> dict:
        with self._unit_of_work("detach_item") as conn:
            sessions.detach_item(conn, session_id=session_id, item_id=item_id)
        return self.get_session(session_id)

    def set_item_quantity(self, *, session_id: int, item_id: int, quantity: int) -> dict:
        with self._unit_of_work("set_item_quantity") as conn:
            sessions.set_item_quantity(
                conn, session_id=session_id, item_id=item_id, quantity=quantity, now=self._now()
            )
        return self.get_session(session_id)

    def end_session(self, session_id: int) -> dict:
        with self._unit_of_work("end_session") as conn:
            invoice_id = sessions.end_session(
                conn, session_id=session_id, now=self._now(), due_days=self.due_days
            )
        return self.get_invoice(invoice_id)

    def close_stale_sessions(self, *, max_hours: float = DEFAULT_STALE_HOURS) -> list[dict]:
        """End every session open for ``max_hours`` or more, one transaction each."""

        stale = sessions.find_stale_sessions(self.conn, now=self._now(), max_hours=max_hours)
        invoices = []
        for session_id in stale:
            logger.warning("Closing stale session %s", session_id)
            invoices.append(self.end_session(session_id))
        return invoices

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def create_invoice(self, *, customer_id: int, items: Sequence[dict]) -> dict:
        try:
            lines = [
                (str(item["description"]), int(item.get("quantity", 1)), item["rate"])
                for item in items
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Each line needs a description, quantity and rate") from exc
        with self._unit_of_work("create_invoice") as conn:
            invoice_id = billing.raise_invoice(
                conn,
                customer_id=customer_id,
                items=lines,
                issued_at=self._now(),
                due_days=self.due_days,
            )
        return self.get_invoice(invoice_id)

    def get_invoice(self, invoice_id: int) -> dict:
        return billing.get_invoice(self.conn, invoice_id)

    def list_invoices(
        self,
        *,
        customer_id: int | None = None,
        status: Sequence[str] | None = None,
    ) -> list[dict]:
        return billing.list_invoices(self.conn, customer_id=customer_id, status=status)

    def list_invoices_page(
        self,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        search: str | None = None,
        customer_id: int | None = None,
        status: Sequence[str] | None = None,
        sort_by: str | None = None,
        sort_desc: bool = False,
    ) -> dict:
        return billing.list_invoices_page(
            self.conn,
            page=page,
            page_size=page_size,
            search=search,
            customer_id=customer_id,
            status=status,
            sort_by=sort_by,
            sort_desc=sort_desc,
        )

    def apply_payment(
        self,
        *,
        invoice_id: int,
        amount: Decimal | int | float | str,
        method: str,
        notes: str | None = None,
    ) -> dict:
        with self._unit_of_work("apply_payment") as conn:
            billing.apply_payment(
                conn,
                invoice_id=invoice_id,
                amount=amount,
                method=method,
                notes=notes,
                now=self._now(),
            )
        return self.get_invoice(invoice_id)

    def apply_bulk_payment(
        self,
        *,
        invoice_ids: Sequence[int],
        amount: Decimal | int | float | str,
        method: str,
        notes: str | None = None,
    ) -> dict:
        with self._unit_of_work("apply_bulk_payment") as conn:
            return billing.apply_bulk_payment(
                conn,
                invoice_ids=invoice_ids,
                amount=amount,
                method=method,
                notes=notes,
                now=self._now(),
            )

    def cancel_invoice(self, invoice_id: int) -> dict:
        with self._unit_of_work("cancel_invoice") as conn:
            billing.cancel_invoice(conn, invoice_id)
        return self.get_invoice(invoice_id)

    # ------------------------------------------------------------------
    # Settings & dashboard
    # ------------------------------------------------------------------
    def get_settings(self) -> dict:
        raw = get_metadata(self.conn, "settings")
        return json.loads(raw) if raw else {}

    def update_settings(self, settings: dict) -> dict:
        with self._unit_of_work("update_settings") as conn:
            set_metadata(conn, "settings", settings)
        return self.get_settings()

    def dashboard_metrics(self) -> dict:
        today = self._now().date().isoformat()
        payments = self.conn.execute(
            "SELECT amount FROM payments WHERE substr(paid_at, 1, 10) = ?", (today,)
        ).fetchall()
        active = self.conn.execute(
            "SELECT COUNT(*) AS total FROM sessions WHERE status = ?", (sessions.ACTIVE,)
        ).fetchone()
        new_customers = self.conn.execute(
            "SELECT COUNT(*) AS total FROM customers WHERE substr(created_at, 1, 10) = ?",
            (today,),
        ).fetchone()
        active_subscriptions = self.conn.execute(
            "SELECT COUNT(*) AS total FROM subscriptions WHERE status = ?",
            (subscriptions.ACTIVE,),
        ).fetchone()
        debts = self.conn.execute(
            "SELECT balance FROM customers"
        ).fetchall()
        return {
            "today_revenue": total(row["amount"] for row in payments),
            "active_sessions": active["total"],
            "new_customers_today": new_customers["total"],
            "active_subscriptions": active_subscriptions["total"],
            "outstanding_debt": total(row["balance"] for row in debts if row["balance"] > ZERO),
        }

    def close(self) -> None:
        self.db.close()
