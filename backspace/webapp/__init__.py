"""Flask application exposing the venue system as a local JSON API."""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Any

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider

from backspace import settings
from backspace.venue.database import DEFAULT_PAGE_SIZE
from backspace.venue.errors import ErrorCode, ValidationError, VenueError
from backspace.venue.money import format_money
from backspace.venue.system import VenueSystem

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.VALIDATION: 400,
    ErrorCode.INTERNAL: 500,
}


class VenueJSONProvider(DefaultJSONProvider):
    """Render money as fixed two-decimal strings rather than floats."""

    @staticmethod
    def default(o: Any) -> Any:
        if isinstance(o, Decimal):
            return format_money(o)
        return DefaultJSONProvider.default(o)


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data: dict, *keys: str) -> None:
    missing = [key for key in keys if data.get(key) in (None, "")]
    if missing:
        raise ValidationError(f"Missing field(s): {', '.join(missing)}")


def _as_int(value: Any, name: str) -> int:
    """Accept JSON integers and strings of digits; floats and bools are rejected."""

    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
        return int(value)
    raise ValidationError(f"{name} must be an integer")


def _int(data: dict, key: str) -> int:
    return _as_int(data.get(key), key)


def _page_args() -> dict:
    return {
        "page": request.args.get("page", 1, type=int),
        "page_size": request.args.get("page_size", DEFAULT_PAGE_SIZE, type=int),
        "search": request.args.get("search"),
        "sort_by": request.args.get("sort_by"),
        "sort_desc": request.args.get("sort_desc") in ("1", "true"),
    }


def create_app(
    database_path: str | None = None,
    *,
    system: VenueSystem | None = None,
) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.json = VenueJSONProvider(app)
    app.config["SECRET_KEY"] = settings.SECRET_KEY

    if system is None:
        system = VenueSystem(
            database_path or settings.DB_PATH,
            due_days=settings.INVOICE_DUE_DAYS,
            busy_timeout_ms=settings.BUSY_TIMEOUT_MS,
        )
    app.extensions["venue_system"] = system

    @app.errorhandler(VenueError)
    def handle_venue_error(exc: VenueError) -> Any:
        if exc.code is ErrorCode.INTERNAL:
            logger.exception("Internal error while handling %s", request.path)
        return jsonify({"error": exc.to_dict()}), STATUS_BY_CODE[exc.code]

    # --- Customers ---
    @app.route("/api/customers", methods=["GET", "POST"])
    def customers() -> Any:
        if request.method == "POST":
            data = _payload()
            customer = system.register_customer(
                name=data.get("name", ""),
                phone=data.get("phone", ""),
                email=data.get("email") or None,
                notes=data.get("notes") or None,
            )
            return jsonify(customer), 201
        return jsonify(system.list_customers(search=request.args.get("search")))

    @app.get("/api/customers/page")
    def customers_page() -> Any:
        return jsonify(system.list_customers_page(**_page_args()))

    @app.route("/api/customers/<int:customer_id>", methods=["GET", "PATCH", "DELETE"])
    def customer_detail(customer_id: int) -> Any:
        if request.method == "PATCH":
            return jsonify(system.update_customer(customer_id, _payload()))
        if request.method == "DELETE":
            system.delete_customer(customer_id)
            return "", 204
        customer = system.get_customer(customer_id)
        customer["invoices"] = system.list_invoices(customer_id=customer_id)
        customer["subscriptions"] = system.list_subscriptions(customer_id=customer_id)
        return jsonify(customer)

    # --- Resources ---
    @app.route("/api/resources", methods=["GET", "POST"])
    def resources() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "name", "resource_type", "rate_per_hour")
            resource = system.create_resource(
                name=data["name"],
                resource_type=data["resource_type"],
                rate_per_hour=data["rate_per_hour"],
                max_price=data.get("max_price", 0),
            )
            return jsonify(resource), 201
        available_only = request.args.get("available") == "1"
        return jsonify(system.list_resources(available_only=available_only))

    @app.route("/api/resources/<int:resource_id>", methods=["GET", "PATCH", "DELETE"])
    def resource_detail(resource_id: int) -> Any:
        if request.method == "PATCH":
            return jsonify(system.update_resource(resource_id, _payload()))
        if request.method == "DELETE":
            system.delete_resource(resource_id)
            return "", 204
        return jsonify(system.get_resource(resource_id))

    # --- Inventory ---
    @app.route("/api/inventory", methods=["GET", "POST"])
    def inventory() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "name", "price")
            item = system.create_inventory_item(
                name=data["name"],
                price=data["price"],
                quantity=data.get("quantity", 0),
                category=data.get("category", "other"),
                min_stock=data.get("min_stock", 0),
            )
            return jsonify(item), 201
        return jsonify(system.list_inventory(low_stock_only=request.args.get("low") == "1"))

    @app.route("/api/inventory/<int:item_id>", methods=["GET", "PATCH", "DELETE"])
    def inventory_detail(item_id: int) -> Any:
        if request.method == "PATCH":
            return jsonify(system.update_inventory_item(item_id, _payload()))
        if request.method == "DELETE":
            system.delete_inventory_item(item_id)
            return "", 204
        return jsonify(system.get_inventory_item(item_id))

    @app.post("/api/inventory/<int:item_id>/adjust")
    def adjust_inventory(item_id: int) -> Any:
        data = _payload()
        _require(data, "delta")
        return jsonify(system.adjust_inventory(item_id=item_id, quantity_change=_int(data, "delta")))

    # --- Subscriptions ---
    @app.route("/api/subscriptions", methods=["GET", "POST"])
    def subscriptions() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "customer_id", "plan_type", "price")
            subscription = system.create_subscription(
                customer_id=_int(data, "customer_id"),
                plan_type=data["plan_type"],
                price=data["price"],
                start_date=data.get("start_date"),
            )
            return jsonify(subscription), 201
        return jsonify(system.list_subscriptions())

    @app.route("/api/subscriptions/<int:subscription_id>", methods=["GET", "PATCH", "DELETE"])
    def subscription_detail(subscription_id: int) -> Any:
        if request.method == "PATCH":
            return jsonify(system.update_subscription(subscription_id, _payload()))
        if request.method == "DELETE":
            system.delete_subscription(subscription_id)
            return "", 204
        return jsonify(system.get_subscription(subscription_id))

    @app.post("/api/subscriptions/<int:subscription_id>/plan")
    def change_subscription_plan(subscription_id: int) -> Any:
        data = _payload()
        _require(data, "plan_type")
        return jsonify(system.change_subscription_plan(subscription_id, str(data["plan_type"])))

    @app.post("/api/subscriptions/<int:subscription_id>/cancel")
    def cancel_subscription(subscription_id: int) -> Any:
        return jsonify(system.cancel_subscription(subscription_id))

    @app.post("/api/subscriptions/<int:subscription_id>/reactivate")
    def reactivate_subscription(subscription_id: int) -> Any:
        return jsonify(system.reactivate_subscription(subscription_id))

    # --- Sessions ---
    @app.route("/api/sessions", methods=["GET", "POST"])
    def sessions() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "customer_id", "resource_id")
            session = system.start_session(
                customer_id=_int(data, "customer_id"),
                resource_id=_int(data, "resource_id"),
            )
            return jsonify(session), 201
        return jsonify(system.list_active_sessions())

    @app.get("/api/sessions/<int:session_id>")
    def session_detail(session_id: int) -> Any:
        return jsonify(system.get_session(session_id))

    @app.post("/api/sessions/<int:session_id>/items")
    def attach_item(session_id: int) -> Any:
        data = _payload()
        _require(data, "item_id", "quantity")
        return jsonify(
            system.attach_item(
                session_id=session_id,
                item_id=_int(data, "item_id"),
                quantity=data["quantity"],
            )
        )

    @app.route("/api/sessions/<int:session_id>/items/<int:item_id>", methods=["PUT", "DELETE"])
    def session_item(session_id: int, item_id: int) -> Any:
        if request.method == "DELETE":
            return jsonify(system.detach_item(session_id=session_id, item_id=item_id))
        data = _payload()
        _require(data, "quantity")
        return jsonify(
            system.set_item_quantity(
                session_id=session_id, item_id=item_id, quantity=data["quantity"]
            )
        )

    @app.post("/api/sessions/<int:session_id>/end")
    def end_session(session_id: int) -> Any:
        return jsonify(system.end_session(session_id))

    @app.post("/api/sessions/close-stale")
    def close_stale_sessions() -> Any:
        data = _payload()
        try:
            max_hours = float(data.get("max_hours", settings.STALE_SESSION_HOURS))
        except (TypeError, ValueError) as exc:
            raise ValidationError("max_hours must be a number") from exc
        return jsonify(system.close_stale_sessions(max_hours=max_hours))

    # --- Invoices & payments ---
    @app.route("/api/invoices", methods=["GET", "POST"])
    def invoices() -> Any:
        if request.method == "POST":
            data = _payload()
            _require(data, "customer_id", "items")
            invoice = system.create_invoice(
                customer_id=_int(data, "customer_id"), items=data["items"]
            )
            return jsonify(invoice), 201
        status = request.args.getlist("status") or None
        customer_id = request.args.get("customer_id", type=int)
        return jsonify(system.list_invoices(customer_id=customer_id, status=status))

    @app.get("/api/invoices/page")
    def invoices_page() -> Any:
        return jsonify(
            system.list_invoices_page(
                customer_id=request.args.get("customer_id", type=int),
                status=request.args.getlist("status") or None,
                **_page_args(),
            )
        )

    @app.get("/api/invoices/<int:invoice_id>")
    def invoice_detail(invoice_id: int) -> Any:
        return jsonify(system.get_invoice(invoice_id))

    @app.post("/api/invoices/<int:invoice_id>/cancel")
    def cancel_invoice(invoice_id: int) -> Any:
        return jsonify(system.cancel_invoice(invoice_id))

    @app.post("/api/invoices/<int:invoice_id>/payments")
    def apply_payment(invoice_id: int) -> Any:
        data = _payload()
        _require(data, "amount", "method")
        return jsonify(
            system.apply_payment(
                invoice_id=invoice_id,
                amount=str(data["amount"]),
                method=data["method"],
                notes=data.get("notes"),
            )
        )

    @app.post("/api/payments/bulk")
    def apply_bulk_payment() -> Any:
        data = _payload()
        _require(data, "invoice_ids", "amount", "method")
        if not isinstance(data["invoice_ids"], list):
            raise ValidationError("invoice_ids must be a list")
        return jsonify(
            system.apply_bulk_payment(
                invoice_ids=[_as_int(value, "invoice_ids") for value in data["invoice_ids"]],
                amount=str(data["amount"]),
                method=data["method"],
                notes=data.get("notes"),
            )
        )

    # --- Settings & dashboard ---
    @app.route("/api/settings", methods=["GET", "PUT"])
    def venue_settings() -> Any:
        if request.method == "PUT":
            return jsonify(system.update_settings(_payload()))
        return jsonify(system.get_settings())

    @app.get("/api/dashboard")
    def dashboard() -> Any:
        return jsonify(system.dashboard_metrics())

    return app
