"""
HTTP surface of the storefront.

There is no module-level ``app``; the application is built by the
``create_app`` factory. ``flask --app app run`` finds the factory on its
own, and WSGI servers take it as ``gunicorn "app:create_app()"``.
"""

import math
import os
import re
from datetime import timedelta

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from auth import admin_required, authenticate, clear_session, current_admin, issue_session
from errors import StorefrontError, ValidationError
from notifier import EventNotifier, OrderEvent, generate_event_id
from order_store import DEFAULT_PAGE_SIZE, MAX_PAGE, MAX_PAGE_SIZE, OrderDraft, OrderStore
from pricing import CUSTOM_TIER, PricingEngine, parse_location
from settings import Settings, configure_logging

# ASCII digits only; \d also matches Bengali digits
MOBILE_PATTERN = re.compile(r"[0-9]{11}")
NAME_MIN_LENGTH = 2
ADDRESS_MIN_LENGTH = 10


def create_app(settings=None, notifier=None):
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.config.update(
        SESSION_COOKIE_NAME="admin-token",
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=settings.secure_cookies,
        PERMANENT_SESSION_LIFETIME=timedelta(hours=settings.session_hours),
        STOREFRONT_SETTINGS=settings,
    )

    store = OrderStore(settings.database_path)
    store.init_db()
    if settings.admin_username and settings.admin_password:
        store.ensure_admin(settings.admin_username, settings.admin_password, settings.admin_email)

    app.extensions["order_store"] = store
    app.extensions["pricing"] = PricingEngine(settings.pricing)
    app.extensions["notifier"] = notifier or EventNotifier(settings.notifier)

    register_error_handlers(app)
    register_routes(app)
    return app


def get_store() -> OrderStore:
    return current_app.extensions["order_store"]


def get_pricing() -> PricingEngine:
    return current_app.extensions["pricing"]


def get_notifier() -> EventNotifier:
    return current_app.extensions["notifier"]


def register_error_handlers(app):
    @app.after_request
    def add_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.errorhandler(StorefrontError)
    def storefront_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({"error": error.name.upper().replace(" ", "_")}), error.code

    @app.errorhandler(Exception)
    def server_error(error):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "INTERNAL_ERROR"}), 500


def text_field(payload, key: str) -> str:
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ""


def as_string_list(value):
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return None
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if len(items) != len(value):
        return None
    return items


def parse_positive_int(value):
    if isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number >= 1 else None


def parse_selection(payload, errors):
    """Resolve tier, unit count and location from an order or quote payload."""
    pricing = get_pricing()
    settings = current_app.config["STOREFRONT_SETTINGS"]

    quantity = None
    raw_quantity = payload.get("quantity")
    if raw_quantity not in (None, ""):
        quantity = parse_positive_int(raw_quantity)
        if quantity is None:
            errors["quantity"] = "Quantity must be a positive whole number."
        elif quantity > pricing.config.max_quantity:
            errors["quantity"] = f"Quantity must be at most {pricing.config.max_quantity}."
            quantity = None

    tier = None
    raw_tier = payload.get("tier")
    if raw_tier not in (None, ""):
        try:
            tier = pricing.parse_tier(raw_tier)
        except ValueError:
            errors["tier"] = "Choose one of the listed combos."
    elif quantity is not None:
        tier = pricing.tier_for_quantity(quantity)
    elif "quantity" not in errors:
        errors["quantity"] = "Quantity is required."

    location = None
    try:
        location = parse_location(payload.get("location") or settings.default_location)
    except ValueError:
        errors["location"] = "Choose a delivery location."

    if tier == CUSTOM_TIER and quantity is None and "quantity" not in errors:
        errors["quantity"] = "Enter how many pieces you want."
    return tier, quantity, location


def validate_order_payload(payload):
    errors = {}
    name = text_field(payload, "name")
    mobile = text_field(payload, "mobile")
    address = text_field(payload, "address")
    if len(name) < NAME_MIN_LENGTH:
        errors["name"] = "Name must be at least 2 characters."
    if not MOBILE_PATTERN.fullmatch(mobile):
        errors["mobile"] = "Enter an 11 digit mobile number."
    if len(address) < ADDRESS_MIN_LENGTH:
        errors["address"] = "Address must be at least 10 characters."
    products = as_string_list(payload.get("product"))
    if not products:
        errors["product"] = "Select at least one product."
    sizes = as_string_list(payload.get("size"))
    if not sizes:
        errors["size"] = "Select at least one size."

    tier, quantity, location = parse_selection(payload, errors)
    if not errors:
        quote = get_pricing().quote(tier, quantity, location)
        if not quote.ready:
            errors["quantity"] = "Select a combo of at least 2 pieces."
    if errors:
        raise ValidationError(errors)

    return OrderDraft(
        name=name,
        mobile=mobile,
        address=address,
        products=products,
        sizes=sizes,
        quantity=quote.quantity,
        location=location.value,
        price=quote.price,
        delivery_charge=quote.delivery_charge,
        total=quote.total,
    )


def client_event_context(order, payload):
    page_url = text_field(payload, "pageUrl")
    return OrderEvent(
        order_id=order.id,
        value=order.total,
        quantity=order.quantity,
        mobile=order.mobile,
        event_id=order.event_id,
        page_url=page_url or request.referrer,
        referrer=request.referrer,
        ip=request.headers.get("X-Forwarded-For", request.remote_addr or "").split(",")[0].strip() or None,
        user_agent=request.user_agent.string or None,
    )


def parse_page_args():
    errors = {}
    page = parse_positive_int(request.args.get("page", "1"))
    if page is None:
        errors["page"] = "Page must be a positive whole number."
    elif page > MAX_PAGE:
        errors["page"] = f"Page must be at most {MAX_PAGE}."
    limit = parse_positive_int(request.args.get("limit", str(DEFAULT_PAGE_SIZE)))
    if limit is None:
        errors["limit"] = "Limit must be a positive whole number."
    if errors:
        raise ValidationError(errors)
    return page, min(limit, MAX_PAGE_SIZE)


def register_routes(app):
    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    @app.route("/pricing")
    def pricing_table():
        return jsonify(get_pricing().price_table())

    @app.route("/orders/quote", methods=["POST"])
    def order_quote():
        payload = request.get_json(silent=True) or {}
        errors = {}
        tier, quantity, location = parse_selection(payload, errors)
        if errors:
            raise ValidationError(errors)
        return jsonify(get_pricing().quote(tier, quantity, location).to_dict())

    @app.route("/orders", methods=["POST"])
    def submit_order():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError({"body": "Send the order as a JSON object."})
        draft = validate_order_payload(payload)
        # shared with the browser pixel so the two reports deduplicate
        draft.event_id = text_field(payload, "eventId") or generate_event_id()

        order = get_store().create_unless_duplicate(draft)

        event = client_event_context(order, payload)
        get_notifier().notify_order_placed(event)
        return (
            jsonify(
                {
                    "orderId": order.id,
                    "price": order.price,
                    "deliveryCharge": order.delivery_charge,
                    "total": order.total,
                }
            ),
            201,
        )

    @app.route("/orders", methods=["GET"])
    @admin_required
    def list_orders():
        page, limit = parse_page_args()
        status = (request.args.get("status") or "").strip() or None
        search = (request.args.get("search") or "").strip() or None
        orders, total = get_store().list(status=status, search=search, page=page, limit=limit)
        return jsonify(
            {
                "orders": [order.to_dict() for order in orders],
                "pagination": {
                    "total": total,
                    "page": page,
                    "limit": limit,
                    "totalPages": math.ceil(total / limit),
                },
            }
        )

    @app.route("/orders/<order_id>", methods=["GET"])
    @admin_required
    def order_detail(order_id: str):
        return jsonify(get_store().get(order_id).to_dict())

    @app.route("/orders/<order_id>", methods=["PATCH"])
    @admin_required
    def order_status_update(order_id: str):
        payload = request.get_json(silent=True) or {}
        status = payload.get("status")
        if not isinstance(status, str) or not status.strip():
            raise ValidationError({"status": "Status is required."})
        store = get_store()
        previous = store.get(order_id)
        order = store.update_status(order_id, status.strip().lower())
        admin = current_admin()
        store.log_audit_event(
            "admin",
            admin.id,
            "update",
            "order",
            order_id,
            f"Status changed from {previous.status} to {order.status}",
        )
        return jsonify(order.to_dict())

    @app.route("/orders/<order_id>", methods=["DELETE"])
    @admin_required
    def order_delete(order_id: str):
        store = get_store()
        store.delete(order_id)
        store.log_audit_event("admin", current_admin().id, "delete", "order", order_id, "Order deleted")
        return jsonify({"success": True})

    @app.route("/admin/login", methods=["POST"])
    def admin_login():
        payload = request.get_json(silent=True) or {}
        username = payload.get("username")
        password = payload.get("password")
        if not isinstance(username, str) or not isinstance(password, str):
            raise ValidationError({"credentials": "Username and password are required."})
        identity = authenticate(get_store(), username.strip(), password)
        if identity is None:
            return jsonify({"error": "Invalid credentials"}), 401
        issue_session(identity)
        app.logger.info("Admin %s signed in", identity.username)
        return jsonify({"success": True, "username": identity.username})

    @app.route("/admin/logout", methods=["POST"])
    def admin_logout():
        clear_session()
        return jsonify({"success": True})

    @app.route("/admin/session")
    @admin_required
    def admin_session():
        admin = current_admin()
        return jsonify({"adminId": admin.id, "username": admin.username})

    @app.route("/admin/stats")
    @admin_required
    def admin_stats():
        return jsonify(get_store().stats())


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
