import os
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, redirect, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, jwt_required, verify_jwt_in_request
from flask_pymongo import PyMongo
from flask_socketio import SocketIO, join_room, leave_room
from itsdangerous import BadSignature, URLSafeTimedSerializer
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from access import ADMIN_REQUIRED_MESSAGE, admin_required, current_user_id, is_admin
from auth_service import INVALID_TOKEN, AuthService
from carts import CartStore, cart_item_count, cart_total
from catalog import PRODUCT_CATEGORIES, ProductStore
from errors import NotFoundError, ServiceError, UnauthorizedError, ValidationError
from helpers import (
    clean_text,
    first_present,
    normalize_email,
    pagination_meta,
    parse_pagination,
    to_json_ready,
)
from live_stats import (
    ADMIN_ROOM,
    PRODUCT_ADDED,
    PRODUCT_DELETED,
    PRODUCT_UPDATED,
    SETTINGS_UPDATED,
    SocketIOEventSink,
    StatsBroadcaster,
)
from notifier import EmailNotifier
from oauth import PROVIDERS, OAuthClient, OAuthError
from order_engine import ORDER_STATUSES, OrderEngine
from settings_store import SETTINGS_SECTIONS, SettingsStore, public_settings
from tasks import TaskDispatcher
from users import ROLE_ADMIN, ROLE_CLIENT, UserStore, serialize_public_user

load_dotenv()

OAUTH_STATE_MAX_AGE_SECONDS = 600


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def create_app(config: Optional[Dict] = None, database=None, notifier=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` replaces the Flask-PyMongo connection and ``notifier`` the
    Resend email sender; both exist for tests and scripts.
    """
    app = Flask(__name__)

    trusted_proxy_hops = max(0, _env_int("TRUSTED_PROXY_HOPS", 1))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    jwt_secret = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config.update(
        {
            "APP_ENV": os.getenv("APP_ENV", "development").strip().lower(),
            "SECRET_KEY": os.getenv("SECRET_KEY", jwt_secret),
            "JWT_SECRET_KEY": jwt_secret,
            "JWT_TOKEN_LOCATION": ["headers"],
            "JWT_HEADER_NAME": os.getenv("AUTH_HEADER_NAME", "x-auth-token"),
            "JWT_HEADER_TYPE": "",
            "CLIENT_TOKEN_EXPIRES_DAYS": _env_int("CLIENT_TOKEN_EXPIRES_DAYS", 7),
            "ADMIN_TOKEN_EXPIRES_HOURS": _env_int("ADMIN_TOKEN_EXPIRES_HOURS", 8),
            "BCRYPT_ROUNDS": _env_int("BCRYPT_ROUNDS", 12),
            "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017/aynext"),
            "CLIENT_URL": os.getenv("CLIENT_URL", "http://localhost:3000").rstrip("/"),
            "LIST_QUERY_TIMEOUT_MS": _env_int("LIST_QUERY_TIMEOUT_MS", 10000),
            "RUN_BACKGROUND_TASKS_INLINE": os.getenv("RUN_BACKGROUND_TASKS_INLINE", "")
            .strip()
            .lower()
            in {"1", "true", "yes"},
            "RESEND_API_KEY": (os.getenv("RESEND_API_KEY") or "").strip(),
            "EMAIL_SENDER": os.getenv("EMAIL_SENDER", "orders@aynext.com"),
            "GOOGLE_CLIENT_ID": os.getenv("GOOGLE_CLIENT_ID", ""),
            "GOOGLE_CLIENT_SECRET": os.getenv("GOOGLE_CLIENT_SECRET", ""),
            "FACEBOOK_APP_ID": os.getenv("FACEBOOK_APP_ID", ""),
            "FACEBOOK_APP_SECRET": os.getenv("FACEBOOK_APP_SECRET", ""),
            "OAUTH_CALLBACK_BASE_URL": os.getenv("OAUTH_CALLBACK_BASE_URL", "http://localhost:5001"),
        }
    )
    if config:
        app.config.update(config)
    is_production = app.config["APP_ENV"] == "production"

    # --- Initialize extensions ---
    allowed_origins = [app.config["CLIENT_URL"]]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    for origin in cors_extra.split(","):
        trimmed = origin.strip()
        if trimmed:
            allowed_origins.append(trimmed)

    CORS(app, supports_credentials=True, origins=allowed_origins)
    socketio = SocketIO(app, cors_allowed_origins=allowed_origins, async_mode="threading")
    jwt = JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database

    # --- Components ---
    spawn = None if app.config["RUN_BACKGROUND_TASKS_INLINE"] else socketio.start_background_task
    dispatcher = TaskDispatcher(app.logger, spawn=spawn)
    broadcaster = StatsBroadcaster(db, SocketIOEventSink(socketio), dispatcher, app.logger)
    if notifier is None:
        notifier = EmailNotifier(
            app.config["RESEND_API_KEY"],
            app.config["EMAIL_SENDER"],
            app.logger,
            client_url=app.config["CLIENT_URL"],
        )

    users = UserStore(db, app.logger, bcrypt_rounds=app.config["BCRYPT_ROUNDS"])
    products = ProductStore(db, app.logger)
    carts = CartStore(db, products, app.logger)
    settings = SettingsStore(db, app.logger)
    auth_service = AuthService(
        users,
        broadcaster,
        dispatcher,
        notifier,
        app.logger,
        client_token_expires=timedelta(days=app.config["CLIENT_TOKEN_EXPIRES_DAYS"]),
        admin_token_expires=timedelta(hours=app.config["ADMIN_TOKEN_EXPIRES_HOURS"]),
    )
    order_engine = OrderEngine(
        db,
        products,
        carts,
        settings,
        users,
        broadcaster,
        dispatcher,
        notifier,
        app.logger,
        list_timeout_ms=app.config["LIST_QUERY_TIMEOUT_MS"],
    )

    # The single-admin invariant lives in this index; startup fails without it.
    users.ensure_indexes()
    for store in (products, carts, order_engine):
        try:
            store.ensure_indexes()
        except Exception as exc:
            app.logger.warning("Unable to ensure indexes for %s: %s", type(store).__name__, exc)

    app.extensions["aynext"] = {
        "db": db,
        "users": users,
        "products": products,
        "carts": carts,
        "settings": settings,
        "auth": auth_service,
        "orders": order_engine,
        "broadcaster": broadcaster,
        "dispatcher": dispatcher,
        "notifier": notifier,
        "socketio": socketio,
    }
    state_serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"], salt="oauth-state")

    # --- Helpers ---

    def envelope(status_code: int = 200, message: Optional[str] = None, **payload):
        body: Dict[str, object] = {"success": True}
        if message:
            body["message"] = message
        body.update(payload)
        return jsonify(body), status_code

    def json_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def actor_label() -> str:
        user_document = users.find_by_id(current_user_id())
        if not user_document:
            return ""
        return user_document.get("name") or user_document.get("email", "")

    def serialize_cart(cart_document):
        serialized = to_json_ready(cart_document)
        serialized["total"] = cart_total(cart_document)
        serialized["item_count"] = cart_item_count(cart_document)
        return serialized

    def notify_clients_about_product(product_document):
        clients = users.active_clients()
        if not clients:
            return
        sent, error = notifier.send_new_product(clients, product_document)
        if not sent:
            app.logger.warning("New product emails incomplete: %s", error)

    # --- Error handling ---

    @jwt.unauthorized_loader
    def handle_missing_token(reason):
        return jsonify({"success": False, "message": "Authentication required", "error": "unauthorized"}), 401

    @jwt.invalid_token_loader
    def handle_invalid_token(reason):
        return jsonify({"success": False, "message": INVALID_TOKEN, "error": "unauthorized"}), 401

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return jsonify({"success": False, "message": INVALID_TOKEN, "error": "unauthorized"}), 401

    @app.errorhandler(ServiceError)
    def handle_service_error(exc: ServiceError):
        return jsonify(exc.to_payload()), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"success": False, "message": exc.description, "error": exc.name}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        payload: Dict[str, object] = {"success": False, "message": "Server error", "error": "internal"}
        if not is_production:
            payload["detail"] = f"{type(exc).__name__}: {exc}"
        return jsonify(payload), 500

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # Auth
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        token, user_profile = auth_service.register(json_payload())
        return envelope(201, "Account created.", token=token, user=user_profile)

    def login_with_role(expected_role: str):
        payload = json_payload()
        email = normalize_email(payload.get("email"))
        password = str(first_present(payload, "password", "motDePasse") or "")
        if not email or not password:
            raise ValidationError("Email and password are required.")
        token, user_profile = auth_service.login(email, password, expected_role)
        return envelope(token=token, user=user_profile)

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        return login_with_role(ROLE_CLIENT)

    @app.route("/api/auth/admin-login", methods=["POST"])
    def admin_login():
        return login_with_role(ROLE_ADMIN)

    @app.route("/api/auth/check-role", methods=["POST"])
    def check_user_role():
        user_document = users.find_by_email(json_payload().get("email"))
        if not user_document:
            raise NotFoundError("User not found.")
        return envelope(role=user_document.get("role", ROLE_CLIENT))

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def current_account():
        return envelope(user=serialize_public_user(users.get(current_user_id())))

    @app.route("/api/auth/<provider>", methods=["GET"])
    def oauth_start(provider: str):
        if provider not in PROVIDERS:
            raise NotFoundError("Unknown sign-in provider.")
        client = OAuthClient.from_config(provider, app.config)
        if not client:
            return (
                jsonify({"success": False, "message": f"{provider.capitalize()} sign-in is not configured."}),
                503,
            )
        return redirect(client.authorization_url(state_serializer.dumps(provider)))

    @app.route("/api/auth/<provider>/callback", methods=["GET"])
    def oauth_callback(provider: str):
        failure_url = f"{app.config['CLIENT_URL']}/login?error=oauth_error"
        client = OAuthClient.from_config(provider, app.config)
        if not client:
            return redirect(failure_url)
        try:
            state_provider = state_serializer.loads(
                request.args.get("state", ""), max_age=OAUTH_STATE_MAX_AGE_SECONDS
            )
            if state_provider != provider or not request.args.get("code"):
                raise OAuthError("Invalid OAuth state or missing code.")
            profile = client.fetch_profile(request.args["code"])
            user_document = auth_service.oauth_link(
                provider,
                profile["provider_id"],
                profile["email"],
                profile["given_name"],
                profile["family_name"],
            )
        except (BadSignature, OAuthError, ServiceError) as exc:
            app.logger.warning("%s sign-in failed: %s", provider, exc)
            return redirect(failure_url)

        user_document = users.touch_last_login(user_document["_id"]) or user_document
        token = auth_service.issue_token(user_document)
        return redirect(f"{app.config['CLIENT_URL']}/oauth-success?token={token}")

    # Users
    @app.route("/api/users/profile", methods=["GET", "PUT"])
    @jwt_required()
    def manage_profile():
        if request.method == "GET":
            return envelope(user=serialize_public_user(users.get(current_user_id())))
        user_document = users.update_profile(current_user_id(), json_payload())
        return envelope(message="Profile updated.", user=serialize_public_user(user_document))

    @app.route("/api/users/password", methods=["PUT"])
    @jwt_required()
    def change_password():
        payload = json_payload()
        users.change_password(
            current_user_id(),
            str(first_present(payload, "current_password", "currentPassword", "motDePasseActuel") or ""),
            str(first_present(payload, "new_password", "newPassword", "nouveauMotDePasse") or ""),
        )
        return envelope(message="Password updated.")

    @app.route("/api/users/admin", methods=["GET"])
    @admin_required
    def list_users():
        page, limit = parse_pagination(request.args)
        role = clean_text(request.args.get("role")) or None
        user_documents, total = users.list_users(page, limit, role)
        return envelope(
            users=[serialize_public_user(document) for document in user_documents],
            **pagination_meta(page, limit, total),
        )

    @app.route("/api/users/admin/<user_id>", methods=["GET"])
    @admin_required
    def get_user(user_id: str):
        return envelope(user=serialize_public_user(users.get(user_id)))

    @app.route("/api/users/admin/<user_id>/stats", methods=["GET"])
    @admin_required
    def get_user_stats(user_id: str):
        statistics = users.order_statistics(user_id)
        return envelope(
            user=serialize_public_user(statistics["user"]),
            statistics={
                "order_count": statistics["order_count"],
                "amount_spent": statistics["amount_spent"],
                "orders": to_json_ready(statistics["orders"]),
            },
        )

    @app.route("/api/users/admin/<user_id>", methods=["PUT"])
    @admin_required
    def update_user(user_id: str):
        user_document = users.admin_update(user_id, json_payload())
        broadcaster.emit_stats_update()
        return envelope(message="User updated.", user=serialize_public_user(user_document))

    @app.route("/api/users/admin/<user_id>", methods=["DELETE"])
    @admin_required
    def delete_user(user_id: str):
        users.admin_delete(user_id, current_user_id())
        broadcaster.emit_stats_update()
        return envelope(message="User deleted.")

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        page, limit = parse_pagination(request.args, default_limit=12)
        product_documents, total = products.list_products(
            page,
            limit,
            category=clean_text(request.args.get("category")) or None,
            gender=clean_text(request.args.get("gender")) or None,
            sort_field=clean_text(request.args.get("sort")) or "created_at",
            descending=clean_text(request.args.get("order")).lower() != "asc",
        )
        return envelope(products=to_json_ready(product_documents), **pagination_meta(page, limit, total))

    @app.route("/api/products/categories", methods=["GET"])
    def list_categories():
        return envelope(categories=list(PRODUCT_CATEGORIES))

    @app.route("/api/products/brands", methods=["GET"])
    def list_brands():
        return envelope(brands=products.distinct_values("brand"))

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        return envelope(product=to_json_ready(products.get(product_id)))

    @app.route("/api/products", methods=["POST"])
    @admin_required
    def create_product():
        product_document = products.create(json_payload(), creator_id=current_user_id())
        app.logger.info("New product created: %s", product_document.get("name"))

        broadcaster.emit_event(PRODUCT_ADDED, {"product": product_document, "added_by": actor_label()})
        broadcaster.emit_stats_update()
        dispatcher.submit("New product emails", notify_clients_about_product, product_document)

        return envelope(201, "Product created.", product=to_json_ready(product_document))

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @admin_required
    def update_product(product_id: str):
        product_document = products.update(product_id, json_payload())
        broadcaster.emit_event(
            PRODUCT_UPDATED, {"product": product_document, "updated_by": actor_label()}
        )
        broadcaster.emit_stats_update()
        return envelope(message="Product updated.", product=to_json_ready(product_document))

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @admin_required
    def delete_product(product_id: str):
        product_document = products.delete(product_id)
        app.logger.info("Product deleted: %s", product_document.get("name"))
        broadcaster.emit_event(
            PRODUCT_DELETED,
            {
                "product_id": str(product_document["_id"]),
                "product_name": product_document.get("name", ""),
                "deleted_by": actor_label(),
            },
        )
        broadcaster.emit_stats_update()
        return envelope(message="Product deleted.")

    # Cart
    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        return envelope(cart=serialize_cart(carts.get_or_create(current_user_id())))

    @app.route("/api/cart/items", methods=["POST"])
    @jwt_required()
    def add_cart_item():
        cart_document = carts.add_item(current_user_id(), json_payload())
        return envelope(cart=serialize_cart(cart_document))

    @app.route("/api/cart/items/<item_id>", methods=["PUT"])
    @jwt_required()
    def update_cart_item(item_id: str):
        cart_document = carts.update_quantity(
            current_user_id(), item_id, first_present(json_payload(), "quantity", "quantite")
        )
        return envelope(cart=serialize_cart(cart_document))

    @app.route("/api/cart/items/<item_id>", methods=["DELETE"])
    @jwt_required()
    def remove_cart_item(item_id: str):
        cart_document = carts.remove_item(current_user_id(), item_id)
        return envelope(cart=serialize_cart(cart_document))

    @app.route("/api/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        carts.clear(current_user_id())
        return envelope(message="Cart cleared.")

    @app.route("/api/cart/count", methods=["GET"])
    @jwt_required()
    def count_cart_items():
        return envelope(count=carts.count_items(current_user_id()))

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        order_document = order_engine.create_order(current_user_id(), json_payload())
        return envelope(201, "Order created.", order=to_json_ready(order_document))

    @app.route("/api/orders/custom", methods=["POST"])
    @jwt_required()
    def create_custom_order():
        order_document = order_engine.create_custom_order(current_user_id(), json_payload())
        return envelope(201, "Custom order created.", order=to_json_ready(order_document))

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        return envelope(orders=to_json_ready(order_engine.list_user_orders(current_user_id())))

    @app.route("/api/orders/admin", methods=["GET"])
    @admin_required
    def list_all_orders():
        page, limit = parse_pagination(request.args)
        status = clean_text(request.args.get("status")) or None
        if status and status not in ORDER_STATUSES:
            raise ValidationError("Invalid status filter.")
        order_documents, total = order_engine.list_all_orders(page, limit, status)
        return envelope(orders=to_json_ready(order_documents), **pagination_meta(page, limit, total))

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        order_document = order_engine.get_order(order_id, current_user_id(), admin=is_admin())
        return envelope(order=to_json_ready(order_document))

    @app.route("/api/orders/<order_id>/status", methods=["PUT"])
    @admin_required
    def update_order_status(order_id: str):
        payload = json_payload()
        order_document = order_engine.update_status(
            order_id,
            first_present(payload, "status", "statut"),
            first_present(payload, "tracking_number", "trackingNumber", "numeroSuivi"),
        )
        return envelope(message="Order status updated.", order=to_json_ready(order_document))

    # Admin
    @app.route("/api/admin/check", methods=["GET"])
    def check_admin():
        return envelope(exists=users.admin_exists())

    @app.route("/api/admin/setup", methods=["POST"])
    def setup_admin():
        admin_profile = auth_service.bootstrap_admin(json_payload())
        return envelope(201, "Administrator account created.", user=admin_profile)

    @app.route("/api/admin/info", methods=["GET"])
    def admin_info():
        admin_document = users.find_admin()
        if not admin_document:
            raise NotFoundError("No administrator found.")
        address = admin_document.get("address") or {}
        formatted_address = ""
        if address.get("street") and address.get("city") and address.get("postal_code"):
            formatted_address = f"{address['street']}, {address['postal_code']} {address['city']}"
            if address.get("country"):
                formatted_address += f", {address['country']}"
        return envelope(
            email=admin_document.get("email", ""),
            phone=admin_document.get("phone", ""),
            address=formatted_address,
        )

    @app.route("/api/admin/stats", methods=["GET"])
    @admin_required
    def admin_stats():
        return envelope(stats=to_json_ready(broadcaster.compute_stats()))

    # Settings
    @app.route("/api/settings", methods=["GET"])
    def get_settings():
        verify_jwt_in_request(optional=True)
        settings_document = settings.get_settings()
        if is_admin():
            return envelope(settings=to_json_ready(settings_document))
        return envelope(settings=public_settings(settings_document))

    def apply_settings_update(section: str, payload: Dict):
        settings_document = settings.update(payload, editor_id=current_user_id())
        broadcaster.emit_event(
            SETTINGS_UPDATED, {"section": section, "data": settings_document}
        )
        return envelope(message="Settings updated.", settings=to_json_ready(settings_document))

    @app.route("/api/settings", methods=["PUT"])
    @admin_required
    def update_settings():
        return apply_settings_update("all", json_payload())

    @app.route("/api/settings/<section>", methods=["PUT"])
    @admin_required
    def update_settings_section(section: str):
        if section not in SETTINGS_SECTIONS:
            raise NotFoundError("Unknown settings section.")
        return apply_settings_update(section, {section: json_payload()})

    # --- Live channel ---

    socket_claims: Dict[str, Dict] = {}

    @socketio.on("connect")
    def handle_connect(auth=None):
        token = auth.get("token") if isinstance(auth, dict) else None
        if not token:
            return None
        try:
            socket_claims[request.sid] = auth_service.verify_token(token)
        except UnauthorizedError:
            return False
        return None

    @socketio.on("join-admin")
    def handle_join_admin(data=None):
        claims = socket_claims.get(request.sid)
        token = data.get("token") if isinstance(data, dict) else None
        if token:
            try:
                claims = auth_service.verify_token(token)
            except UnauthorizedError as exc:
                return {"success": False, "message": exc.message}
            socket_claims[request.sid] = claims
        if not claims or claims.get("role") != ROLE_ADMIN:
            return {"success": False, "message": ADMIN_REQUIRED_MESSAGE}

        join_room(ADMIN_ROOM)
        app.logger.info("Socket %s joined the admin room", request.sid)
        broadcaster.emit_stats_update()
        return {"success": True}

    @socketio.on("leave-admin")
    def handle_leave_admin(data=None):
        leave_room(ADMIN_ROOM)
        return {"success": True}

    @socketio.on("disconnect")
    def handle_disconnect(*args):
        socket_claims.pop(request.sid, None)

    return app
