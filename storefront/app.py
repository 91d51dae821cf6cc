import math
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import bcrypt
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from . import cart as carts
from .accounts import (
    LoggingResetNotifier,
    hash_token,
    issue_reset_token,
    normalize_profile_payload,
    reset_token_is_valid,
    serialize_address,
)
from .checkout import CheckoutService
from .config import load_config
from .coupons import apply_coupon, normalize_code, normalize_coupon_payload
from .errors import InvalidInput, NotFound, StoreError
from .helpers import (
    normalize_email,
    parse_object_id,
    safe_float,
    safe_positive_int,
    serialize_document,
)
from .orders import ORDER_STATUSES, can_transition
from .payments import build_payment_processor
from .store import MongoStore

ALLOWED_USER_ROLES = {"admin", "user"}
MIN_PASSWORD_LENGTH = 6
MIN_CATEGORY_NAME_LENGTH = 3
DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100
PRODUCT_SORT_FIELDS = {"created_at", "price", "name"}
PRIVATE_USER_FIELDS = {"password", "password_reset_token", "password_reset_expires_at"}


def create_app(
    config_overrides: Optional[Dict] = None,
    store=None,
    payment_processor=None,
    reset_notifier=None,
) -> Flask:
    """Create and configure the Flask application.

    ``store`` and ``payment_processor`` default to MongoDB (via Flask-PyMongo)
    and whatever ``PAYMENT_PROVIDER`` selects. Password reset links go to
    ``reset_notifier``, which logs them unless another one is given.
    """
    app = Flask(__name__)

    # --- Configuration ---
    app.config.update(load_config(config_overrides))
    app.logger.setLevel(app.config["LOG_LEVEL"])

    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=app.config["CORS_ALLOWED_ORIGINS"] or "*")
    JWTManager(app)

    if store is None:
        mongo = PyMongo(app)
        store = MongoStore(
            mongo.cx, mongo.db, transactions=app.config["MONGO_TRANSACTIONS"]
        )
        try:
            store.ensure_indexes()
        except PyMongoError as exc:
            app.logger.warning("Unable to ensure indexes: %s", exc)

    if payment_processor is None:
        payment_processor = build_payment_processor(app.config)

    checkout_service = CheckoutService(
        store,
        payment_processor,
        currency=app.config["CURRENCY"],
        payment_timeout=app.config["PAYMENT_TIMEOUT_SECONDS"],
    )
    if reset_notifier is None:
        reset_notifier = LoggingResetNotifier()

    app.extensions["storefront"] = {
        "store": store,
        "checkout": checkout_service,
        "reset_notifier": reset_notifier,
    }

    default_admin_email = app.config["DEFAULT_ADMIN_EMAIL"]

    # --- Error handling ---

    @app.errorhandler(StoreError)
    def handle_store_error(exc: StoreError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        message = "Requested url not found!" if exc.code == 404 else exc.description
        return jsonify({"message": message}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": "An unexpected error occurred"}), 500

    # --- Helpers ---

    def read_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "user"

    def get_user_role(user_document) -> str:
        if not user_document:
            return "user"

        email = normalize_email(user_document.get("email"))
        if default_admin_email and email == default_admin_email:
            return "admin"

        return normalize_role(user_document.get("role", "user"))

    def current_user_id() -> str:
        return str(get_jwt_identity() or "")

    def load_current_user():
        user_object_id = parse_object_id(current_user_id())
        if not user_object_id:
            return None
        return store.find_one("users", {"_id": user_object_id})

    def require_role(*roles: str):
        allowed = {normalize_role(role) for role in roles if role}

        current_user = load_current_user()
        user_role = get_user_role(current_user)

        if current_user and (user_role == "admin" or user_role in allowed):
            return current_user, None

        return (
            None,
            (
                jsonify(
                    {"message": "You need additional permissions to perform this action."}
                ),
                403,
            ),
        )

    def require_admin_user():
        return require_role("admin")

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        return {str(key): str(value) for key, value in metadata.items() if value is not None}

    def record_audit_log(user_id: Optional[str], action: str, metadata: Optional[Dict] = None):
        if not action:
            return
        try:
            store.insert_one(
                "audit_logs",
                {
                    "user_id": user_id or None,
                    "action": action,
                    "metadata": sanitize_metadata(metadata),
                    "created_at": datetime.utcnow(),
                },
            )
        except (PyMongoError, StoreError) as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def read_pagination() -> Tuple[int, int]:
        page = safe_positive_int(request.args.get("page"), 1)
        limit = safe_positive_int(request.args.get("limit"), 0) or DEFAULT_PAGE_LIMIT
        return page, min(limit, MAX_PAGE_LIMIT)

    def build_pagination(total: int, page: int, limit: int) -> Dict[str, int]:
        return {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if limit else 0,
        }

    def fetch_document(collection: str, identifier: str, label: str):
        object_id = parse_object_id(identifier)
        if not object_id:
            return None, (jsonify({"message": f"Invalid {label} identifier."}), 400)

        document = store.find_one(collection, {"_id": object_id})
        if not document:
            return None, (jsonify({"message": f"{label.capitalize()} not found."}), 404)

        return document, None

    def serialize_user(user_document) -> Dict:
        serialized = serialize_document(
            {
                key: value
                for key, value in user_document.items()
                if key not in PRIVATE_USER_FIELDS
            }
        )
        serialized["role"] = get_user_role(user_document)
        return serialized

    def issue_token(user_document) -> str:
        return create_access_token(
            identity=str(user_document["_id"]),
            additional_claims={"role": get_user_role(user_document)},
        )

    def parse_string_list(value) -> List[str]:
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, (list, tuple)):
            return []
        return [str(entry).strip() for entry in value if str(entry or "").strip()]

    def parse_flag(value) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)

    def normalize_product_payload(payload: Dict, partial: bool = False):
        fields: Dict[str, object] = {}

        if "name" in payload or not partial:
            name = str(payload.get("name") or "").strip()
            if not name:
                return {}, "Name is required."
            fields["name"] = name

        if "description" in payload or not partial:
            description = str(payload.get("description") or "").strip()
            if not description:
                return {}, "Description is required."
            fields["description"] = description

        if "price" in payload or not partial:
            price_value = safe_float(payload.get("price"), -1.0)
            if price_value < 0:
                return {}, "Price must be a valid number that is not negative."
            fields["price"] = round(price_value, 2)

        if "categories" in payload or not partial:
            categories = [entry.lower() for entry in parse_string_list(payload.get("categories"))]
            if not categories:
                return {}, "At least one category is required."
            fields["categories"] = categories

        for key in ("short_description", "sub_category", "image_url"):
            if key in payload:
                fields[key] = str(payload.get(key) or "").strip()
        if "sizes" in payload:
            fields["sizes"] = parse_string_list(payload.get("sizes"))
        if "is_featured" in payload:
            fields["is_featured"] = parse_flag(payload.get("is_featured"))
        elif not partial:
            fields["is_featured"] = False

        return fields, None

    def read_product_id(payload: Dict) -> str:
        product_id = str(payload.get("product_id") or payload.get("productId") or "").strip()
        if not product_id:
            raise InvalidInput("A product_id is required.")
        return product_id

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # Users

    @app.route("/api/users/register", methods=["POST"])
    def register():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        first_name = str(payload.get("first_name") or payload.get("firstName") or "").strip()
        last_name = str(payload.get("last_name") or payload.get("lastName") or "").strip()
        password = str(payload.get("password") or "")

        if not email or not first_name or not last_name or not password:
            return (
                jsonify(
                    {
                        "message": "First name, last name, email, and password are required to create an account."
                    }
                ),
                400,
            )
        if "@" not in email:
            return jsonify({"message": "Please provide a valid email address."}), 400
        if len(password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {
                        "message": f"Password should be minimum {MIN_PASSWORD_LENGTH} characters long."
                    }
                ),
                400,
            )

        if store.find_one("users", {"email": email}):
            return jsonify({"message": "An account with this email already exists."}), 409

        user_document = {
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
            "role": "admin" if email == default_admin_email else "user",
            "created_at": datetime.utcnow(),
        }
        store.insert_one("users", user_document)
        user_id = str(user_document["_id"])

        record_audit_log(user_id, "Registered new account", {"email": email})

        return (
            jsonify(
                {
                    "message": "User created successfully!",
                    "access_token": issue_token(user_document),
                    "user": serialize_user(user_document),
                }
            ),
            201,
        )

    @app.route("/api/users/login", methods=["POST"])
    def login():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = store.find_one("users", {"email": email})
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            return jsonify({"message": "Invalid email or password"}), 401

        user = store.find_one_and_update(
            "users", {"_id": user["_id"]}, {"$set": {"last_login_at": datetime.utcnow()}}
        ) or user

        record_audit_log(
            str(user["_id"]),
            "Signed in",
            {"ip": request.headers.get("X-Forwarded-For", request.remote_addr)},
        )

        return jsonify(
            {
                "message": "Login Successful!",
                "access_token": issue_token(user),
                "user": serialize_user(user),
            }
        )

    @app.route("/api/users/validate", methods=["GET"])
    @jwt_required()
    def validate_user():
        user = load_current_user()
        if not user:
            raise NotFound("User not found.")
        return jsonify({"message": "Token is valid.", "user": serialize_user(user)})

    @app.route("/api/users/forgot-password", methods=["POST"])
    def forgot_password():
        payload = read_payload()
        email = normalize_email(payload.get("email") or request.args.get("email"))
        generic_message = {
            "message": "If this email exists, a password reset link has been sent."
        }

        if not email or "@" not in email:
            return jsonify(generic_message), 200

        user = store.find_one("users", {"email": email})
        if user:
            token, token_hash, expires_at = issue_reset_token(
                app.config["PASSWORD_RESET_EXPIRY_MINUTES"]
            )
            store.find_one_and_update(
                "users",
                {"_id": user["_id"]},
                {
                    "$set": {
                        "password_reset_token": token_hash,
                        "password_reset_expires_at": expires_at,
                    }
                },
            )
            link = f"{request.host_url.rstrip('/')}/api/users/reset-password/{token}"
            reset_notifier.send_reset_link(email, link, expires_at)
            record_audit_log(str(user["_id"]), "Requested password reset", {"email": email})

        return jsonify(generic_message), 200

    @app.route("/api/users/reset-password/<token>", methods=["POST"])
    def reset_password(token: str):
        payload = read_payload()
        new_password = str(
            payload.get("new_password") or payload.get("newPassword") or ""
        ).strip()

        if len(new_password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {
                        "message": f"Password should be minimum {MIN_PASSWORD_LENGTH} characters long."
                    }
                ),
                400,
            )

        user = store.find_one("users", {"password_reset_token": hash_token(token)})
        if not reset_token_is_valid(user):
            return jsonify({"message": "Invalid or expired reset link."}), 400

        store.find_one_and_update(
            "users",
            {"_id": user["_id"]},
            {
                "$set": {
                    "password": bcrypt.hashpw(new_password.encode("utf-8"), bcrypt.gensalt()),
                    "password_reset_token": None,
                    "password_reset_expires_at": None,
                }
            },
        )

        record_audit_log(str(user["_id"]), "Reset password", {"context": "password_reset"})

        return jsonify({"message": "Password successfully reset"}), 200

    # Profiles

    def serialize_profile(profile_document) -> Dict:
        serialized = serialize_document(profile_document)
        serialized["billing_address"] = serialize_address(
            profile_document.get("billing_address")
        )
        return serialized

    @app.route("/api/users/profile", methods=["GET"])
    @jwt_required()
    def get_profile():
        user = load_current_user()
        if not user:
            raise NotFound("User not found.")

        profile_document = store.find_one("profiles", {"user_id": current_user_id()})
        if not profile_document:
            return jsonify({"message": "User profile not found"}), 404

        return jsonify(
            {
                "message": "Profile retrieved successfully",
                "profile": serialize_profile(profile_document),
                "user": serialize_user(user),
            }
        )

    @app.route("/api/users/profile", methods=["POST"])
    @jwt_required()
    def create_profile():
        user = load_current_user()
        if not user:
            raise NotFound("User not found.")

        fields, profile_error = normalize_profile_payload(read_payload())
        if profile_error:
            return jsonify({"message": profile_error}), 400

        if store.find_one("profiles", {"user_id": current_user_id()}):
            return jsonify({"message": "A profile already exists for this account."}), 409

        now = datetime.utcnow()
        profile_document = {
            "user_id": current_user_id(),
            **fields,
            "created_at": now,
            "updated_at": now,
        }
        store.insert_one("profiles", profile_document)

        record_audit_log(current_user_id(), "Created profile")

        return (
            jsonify(
                {
                    "message": "User profile created successfully!",
                    "profile": serialize_profile(profile_document),
                }
            ),
            201,
        )

    @app.route("/api/users/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        profile_document = store.find_one("profiles", {"user_id": current_user_id()})
        if not profile_document:
            return jsonify({"message": "User profile not found"}), 404

        fields, profile_error = normalize_profile_payload(read_payload(), partial=True)
        if profile_error:
            return jsonify({"message": profile_error}), 400

        profile_document.update(fields)
        profile_document["updated_at"] = datetime.utcnow()
        store.replace_one("profiles", {"_id": profile_document["_id"]}, profile_document)

        record_audit_log(
            current_user_id(), "Updated profile", {"fields": ",".join(sorted(fields))}
        )

        return jsonify(
            {
                "message": "User profile updated successfully!",
                "profile": serialize_profile(profile_document),
            }
        )

    # Products

    @app.route("/api/products", methods=["GET"])
    def list_products():
        page, limit = read_pagination()
        query: Dict[str, object] = {}
        category = str(request.args.get("category") or "").strip().lower()
        if category:
            query["categories"] = category
        if request.args.get("is_featured") is not None:
            query["is_featured"] = parse_flag(request.args.get("is_featured"))

        sort_value = str(request.args.get("sort") or "-created_at").strip()
        sort_field = sort_value.lstrip("-")
        if sort_field not in PRODUCT_SORT_FIELDS:
            return jsonify({"message": f"Cannot sort products by '{sort_field}'."}), 400
        direction = -1 if sort_value.startswith("-") else 1

        total = store.count("products", query)
        product_docs = store.find(
            "products",
            query,
            sort=[(sort_field, direction), ("_id", direction)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        return jsonify(
            {
                "products": [serialize_document(document) for document in product_docs],
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_document("products", product_id, "product")
        if load_error:
            return load_error
        return jsonify({"product": serialize_document(product_document)})

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        fields, product_error = normalize_product_payload(read_payload())
        if product_error:
            return jsonify({"message": product_error}), 400

        now = datetime.utcnow()
        product_document = {
            "short_description": "",
            "sub_category": "",
            "image_url": "",
            "sizes": [],
            **fields,
            "created_at": now,
            "updated_at": now,
        }
        store.insert_one("products", product_document)

        record_audit_log(
            str(current_user["_id"]),
            "Created product",
            {"product_id": str(product_document["_id"]), "product_name": fields["name"]},
        )

        return (
            jsonify(
                {
                    "message": "Product created successfully!",
                    "product": serialize_document(product_document),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        product_document, load_error = fetch_document("products", product_id, "product")
        if load_error:
            return load_error

        fields, product_error = normalize_product_payload(read_payload(), partial=True)
        if product_error:
            return jsonify({"message": product_error}), 400

        product_document.update(fields)
        product_document["updated_at"] = datetime.utcnow()
        store.replace_one("products", {"_id": product_document["_id"]}, product_document)

        record_audit_log(
            str(current_user["_id"]),
            "Updated product",
            {"product_id": product_id, "fields": ",".join(sorted(fields))},
        )

        return jsonify(
            {
                "message": "Product updated successfully!",
                "product": serialize_document(product_document),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        product_document, load_error = fetch_document("products", product_id, "product")
        if load_error:
            return load_error

        store.delete_one("products", {"_id": product_document["_id"]})

        record_audit_log(
            str(current_user["_id"]),
            "Deleted product",
            {"product_id": product_id, "product_name": product_document.get("name", "")},
        )

        return jsonify(
            {
                "message": "Product deleted successfully!",
                "product": serialize_document(product_document),
            }
        )

    # Categories

    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        category_documents = store.find("categories", sort=[("name", 1)])
        return jsonify(
            {"categories": [serialize_document(document) for document in category_documents]}
        )

    @app.route("/api/categories", methods=["POST"])
    @jwt_required()
    def create_category():
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        name_value = " ".join(str(read_payload().get("name") or "").split()).lower()
        if len(name_value) < MIN_CATEGORY_NAME_LENGTH:
            return (
                jsonify(
                    {
                        "message": f"Please provide a category name with at least {MIN_CATEGORY_NAME_LENGTH} characters."
                    }
                ),
                400,
            )

        category_document = {"name": name_value, "created_at": datetime.utcnow()}
        store.insert_one("categories", category_document)

        record_audit_log(
            str(current_user["_id"]),
            "Created category",
            {"category_id": str(category_document["_id"]), "name": name_value},
        )

        return (
            jsonify(
                {
                    "message": "New category created successfully",
                    "category": serialize_document(category_document),
                }
            ),
            201,
        )

    @app.route("/api/categories/<category_name>", methods=["GET"])
    def get_category(category_name: str):
        category_document = store.find_one(
            "categories", {"name": category_name.strip().lower()}
        )
        if not category_document:
            return jsonify({"message": "No category found"}), 404
        return jsonify({"category": serialize_document(category_document)})

    @app.route("/api/categories/<identifier>", methods=["DELETE"])
    @jwt_required()
    def delete_category(identifier: str):
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        object_id = parse_object_id(identifier) if len(identifier) == 24 else None
        query = {"_id": object_id} if object_id else {"name": identifier.strip().lower()}
        category_document = store.delete_one("categories", query)
        if not category_document:
            return jsonify({"message": "No category found!"}), 404

        record_audit_log(
            str(current_user["_id"]),
            "Deleted category",
            {
                "category_id": str(category_document["_id"]),
                "name": category_document.get("name", ""),
            },
        )

        return jsonify(
            {
                "message": "Category deleted successfully",
                "category": serialize_document(category_document),
            }
        )

    # Coupons

    @app.route("/api/coupons", methods=["POST"])
    @jwt_required()
    def create_coupon():
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        fields, coupon_error = normalize_coupon_payload(read_payload())
        if coupon_error:
            return jsonify({"message": coupon_error}), 400

        now = datetime.utcnow()
        coupon_document = {**fields, "created_at": now, "updated_at": now}
        store.insert_one("coupons", coupon_document)

        record_audit_log(
            str(current_user["_id"]),
            "Created coupon",
            {"coupon_id": str(coupon_document["_id"]), "code": fields["code"]},
        )

        return (
            jsonify(
                {
                    "message": "Coupon created successfully",
                    "coupon": serialize_document(coupon_document),
                }
            ),
            201,
        )

    @app.route("/api/coupons", methods=["GET"])
    @jwt_required()
    def list_coupons():
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        coupon_documents = store.find("coupons", sort=[("created_at", -1), ("_id", -1)])
        return jsonify(
            {"coupons": [serialize_document(document) for document in coupon_documents]}
        )

    @app.route("/api/coupons/<coupon_id>", methods=["GET"])
    @jwt_required()
    def get_coupon(coupon_id: str):
        coupon_document, load_error = fetch_document("coupons", coupon_id, "coupon")
        if load_error:
            return load_error
        return jsonify({"coupon": serialize_document(coupon_document)})

    @app.route("/api/coupons/<coupon_id>", methods=["PUT"])
    @jwt_required()
    def update_coupon(coupon_id: str):
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        coupon_document, load_error = fetch_document("coupons", coupon_id, "coupon")
        if load_error:
            return load_error

        fields, coupon_error = normalize_coupon_payload(read_payload(), partial=True)
        if coupon_error:
            return jsonify({"message": coupon_error}), 400

        coupon_document.update(fields)
        coupon_document["updated_at"] = datetime.utcnow()
        store.replace_one("coupons", {"_id": coupon_document["_id"]}, coupon_document)

        record_audit_log(
            str(current_user["_id"]),
            "Updated coupon",
            {"coupon_id": coupon_id, "code": coupon_document.get("code", "")},
        )

        return jsonify(
            {
                "message": "Coupon updated successfully",
                "coupon": serialize_document(coupon_document),
            }
        )

    @app.route("/api/coupons/<coupon_id>", methods=["DELETE"])
    @jwt_required()
    def delete_coupon(coupon_id: str):
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        coupon_document, load_error = fetch_document("coupons", coupon_id, "coupon")
        if load_error:
            return load_error

        store.delete_one("coupons", {"_id": coupon_document["_id"]})

        record_audit_log(
            str(current_user["_id"]),
            "Deleted coupon",
            {"coupon_id": coupon_id, "code": coupon_document.get("code", "")},
        )

        return jsonify(
            {
                "message": "Coupon deleted successfully!",
                "coupon": serialize_document(coupon_document),
            }
        )

    # Cart

    @app.route("/api/cart/add", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        payload = read_payload()
        cart_document = carts.add_or_update(
            store, current_user_id(), read_product_id(payload), payload.get("quantity", 1)
        )
        return jsonify(
            {"message": "Cart updated successfully", "cart": serialize_document(cart_document)}
        )

    @app.route("/api/cart/update", methods=["PUT"])
    @jwt_required()
    def update_cart_item():
        payload = read_payload()
        if "quantity" not in payload:
            raise InvalidInput("A quantity is required.")
        cart_document = carts.update_quantity(
            store, current_user_id(), read_product_id(payload), payload.get("quantity")
        )
        return jsonify(
            {"message": "Cart updated successfully", "cart": serialize_document(cart_document)}
        )

    @app.route("/api/cart/remove", methods=["POST"])
    @jwt_required()
    def remove_from_cart():
        cart_document = carts.remove_cart_item(
            store, current_user_id(), read_product_id(read_payload())
        )
        return jsonify(
            {
                "message": "Product removed from cart successfully",
                "cart": serialize_document(cart_document),
            }
        )

    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        cart_document = carts.get_cart(store, current_user_id())
        return jsonify(
            {"message": "Cart retrieved successfully", "cart": serialize_document(cart_document)}
        )

    @app.route("/api/cart/empty", methods=["PATCH"])
    @jwt_required()
    def empty_cart():
        cart_document = carts.empty_cart(store, current_user_id())
        return jsonify(
            {"message": "Cart emptied successfully", "cart": serialize_document(cart_document)}
        )

    @app.route("/api/cart/coupon", methods=["POST"])
    @jwt_required()
    def preview_coupon():
        payload = read_payload()
        code = normalize_code(payload.get("code") or payload.get("coupon_code"))
        if not code:
            raise InvalidInput("A coupon code is required.")

        cart_document = carts.get_cart(store, current_user_id())
        discount_amount = apply_coupon(store, code, cart_document["total_price"])
        return jsonify(
            {
                "message": "Coupon applied.",
                "coupon_code": code,
                "total_price": cart_document["total_price"],
                "discount_amount": discount_amount,
                "payable_amount": round(cart_document["total_price"] - discount_amount, 2),
            }
        )

    @app.route("/api/cart/checkout", methods=["PUT"])
    @jwt_required()
    def checkout_cart():
        payload = read_payload()
        coupon_code = payload.get("coupon_code") or payload.get("couponCode")
        user_id = current_user_id()

        order_document = checkout_service.checkout(user_id, coupon_code)

        record_audit_log(
            user_id,
            "Placed order",
            {
                "order_id": str(order_document["_id"]),
                "total": str(order_document["payable_amount"]),
                "currency": order_document["currency"],
            },
        )

        return (
            jsonify(
                {
                    "message": "Order placed successfully.",
                    "order": serialize_document(order_document),
                }
            ),
            201,
        )

    # Orders

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        page, limit = read_pagination()
        query: Dict[str, object] = {}
        if get_user_role(load_current_user()) != "admin":
            query["user_id"] = current_user_id()

        total = store.count("orders", query)
        order_docs = store.find(
            "orders",
            query,
            sort=[("created_at", -1), ("_id", -1)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        return jsonify(
            {
                "orders": [serialize_document(document) for document in order_docs],
                "pagination": build_pagination(total, page, limit),
            }
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        order_document, load_error = fetch_document("orders", order_id, "order")
        if load_error:
            return load_error

        is_owner = order_document.get("user_id") == current_user_id()
        if not is_owner and get_user_role(load_current_user()) != "admin":
            return jsonify({"message": "Order not found."}), 404

        return jsonify({"order": serialize_document(order_document)})

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_id: str):
        current_user, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        order_document, load_error = fetch_document("orders", order_id, "order")
        if load_error:
            return load_error

        target_status = str(read_payload().get("status") or "").strip().upper()
        if target_status not in ORDER_STATUSES:
            return (
                jsonify({"message": f"Status must be one of {', '.join(ORDER_STATUSES)}."}),
                400,
            )
        current_status = order_document.get("status")
        if not can_transition(current_status, target_status):
            return (
                jsonify(
                    {"message": f"Cannot change an order from {current_status} to {target_status}."}
                ),
                400,
            )

        order_document["status"] = target_status
        order_document["updated_at"] = datetime.utcnow()
        store.replace_one("orders", {"_id": order_document["_id"]}, order_document)

        record_audit_log(
            str(current_user["_id"]),
            "Changed order status",
            {"order_id": order_id, "from": current_status, "to": target_status},
        )

        return jsonify(
            {"message": "Order updated successfully", "order": serialize_document(order_document)}
        )

    # Audit logs

    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        _, permission_error = require_admin_user()
        if permission_error:
            return permission_error

        page, limit = read_pagination()
        total = store.count("audit_logs")
        log_docs = store.find(
            "audit_logs",
            sort=[("created_at", -1), ("_id", -1)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        return jsonify(
            {
                "logs": [serialize_document(document) for document in log_docs],
                "pagination": build_pagination(total, page, limit),
            }
        )

    return app
