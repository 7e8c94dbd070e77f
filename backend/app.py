import math
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from flask import Flask, g, jsonify, redirect, render_template, request, url_for
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_csrf_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
    set_access_cookies,
    unset_jwt_cookies,
)
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

import analytics
import media
from catalog import (
    DuplicateSkuError,
    ValidationError,
    build_product_query,
    ensure_unique_sku,
    resolve_sort,
    serialize_product,
    validate_product_payload,
)
from config import Config
from edge_filter import (
    CORS_ALLOWED_HEADERS,
    CORS_ALLOWED_METHODS,
    CORS_MAX_AGE_SECONDS,
    EdgeRequestFilter,
)
from security import (
    ADMIN_ROLE,
    ALLOWED_USER_ROLES,
    USER_ROLE,
    check_password,
    hash_password,
    normalize_role,
    principal_from_claims,
)


def create_app(config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` may be any PyMongo-compatible database handle; when it is
    omitted the app connects through Flask-PyMongo using ``MONGO_URI``.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Honor proxy headers so request.host reflects the public origin.
    trusted_proxy_hops = max(0, int(app.config.get("TRUSTED_PROXY_HOPS", 1) or 0))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Initialize extensions ---
    jwt = JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database
    app.extensions["mongo_db"] = db

    edge_filter = EdgeRequestFilter(app)
    CORS(
        app,
        resources={r"/api/*": {"origins": edge_filter.allowed_origins}},
        supports_credentials=True,
        methods=CORS_ALLOWED_METHODS,
        allow_headers=CORS_ALLOWED_HEADERS,
        max_age=CORS_MAX_AGE_SECONDS,
        always_send=False,
    )

    media.configure(app.config)

    try:
        db.users.create_index("email", unique=True)
        db.products.create_index("sku", unique=True)
        db.products.create_index("category")
        db.products.create_index("status")
        db.products.create_index([("created_at", -1)])
        db.sales.create_index([("date", -1)])
        db.sales.create_index("product_id")
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    min_password_length = 6

    # --- Token and error handling ---

    @jwt.unauthorized_loader
    def handle_missing_token(reason):
        return jsonify({"error": "Unauthorized", "message": reason}), 401

    @jwt.invalid_token_loader
    def handle_invalid_token(reason):
        return jsonify({"error": "Unauthorized", "message": reason}), 401

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return (
            jsonify({"error": "Unauthorized", "message": "Your session has expired."}),
            401,
        )

    @app.errorhandler(PyMongoError)
    def handle_database_error(exc):
        app.logger.exception("Database error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(500)
    def handle_server_error(exc):
        app.logger.error("Unhandled error on %s %s: %s", request.method, request.path, exc)
        return jsonify({"error": "Internal server error"}), 500

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def safe_positive_int(value, default=1):
        try:
            numeric = int(float(value))
        except (TypeError, ValueError):
            return default
        return max(default, numeric)

    def parse_pagination(default_limit: int = 10, max_limit: int = 100):
        page = safe_positive_int(request.args.get("page", 1), 1)
        limit = min(safe_positive_int(request.args.get("limit", default_limit), 1), max_limit)
        return page, limit

    def pagination_block(page: int, limit: int, total: int) -> Dict[str, int]:
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }

    def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
        if not value:
            return None
        candidate = str(value).strip()
        if not candidate:
            return None
        normalized = candidate.replace("Z", "+00:00")
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            normalized = f"{candidate}T00:00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            return parsed + timedelta(days=1)
        return parsed

    def parse_object_id(value):
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def isoformat(value) -> Optional[str]:
        return value.isoformat() if isinstance(value, datetime) else None

    def serialize_user(user_document) -> Dict[str, str]:
        if not user_document:
            return {}

        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "role": normalize_role(user_document.get("role")),
            "created_at": isoformat(user_document.get("created_at")),
            "updated_at": isoformat(user_document.get("updated_at")),
            "last_login_at": isoformat(user_document.get("last_login_at")),
        }

    def serialize_sale(sale_document) -> Dict:
        return {
            "id": str(sale_document.get("_id")),
            "product_id": str(sale_document.get("product_id", "")),
            "quantity": int(sale_document.get("quantity", 0) or 0),
            "total_amount": float(sale_document.get("total_amount", 0) or 0),
            "date": isoformat(sale_document.get("date")),
        }

    def validation_failed(details: List[Dict[str, str]]):
        return (
            jsonify(
                {
                    "error": "Validation failed",
                    "message": "Please check the following fields and try again",
                    "details": details,
                }
            ),
            400,
        )

    def duplicate_sku(exc: DuplicateSkuError):
        return (
            jsonify({"error": "Duplicate SKU", "message": str(exc), "field": "sku"}),
            400,
        )

    def validate_account_fields(name: str, email: str, password: str):
        details = []
        if len(name) < 2:
            details.append({"field": "name", "message": "Name must be at least 2 characters"})
        if not is_valid_email(email):
            details.append({"field": "email", "message": "Invalid email address"})
        if len(password) < min_password_length:
            details.append(
                {
                    "field": "password",
                    "message": f"Password must be at least {min_password_length} characters",
                }
            )
        return details

    def create_account(payload: Dict, role: str, duplicate_message: str):
        name = str(payload.get("name", "") or "").strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")

        details = validate_account_fields(name, email, password)
        if details:
            return None, validation_failed(details)

        if db.users.find_one({"email": email}):
            return None, (jsonify({"error": duplicate_message}), 400)

        timestamp = datetime.utcnow()
        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password, app.config.get("BCRYPT_ROUNDS", 12)),
            "role": role,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            insert_result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return None, (jsonify({"error": duplicate_message}), 400)

        user_document["_id"] = insert_result.inserted_id
        app.logger.info("Created %s account %s", role, email)
        return user_document, None

    def issue_access_token(user_document) -> str:
        return create_access_token(
            identity=str(user_document["_id"]),
            additional_claims={
                "role": normalize_role(user_document.get("role")),
                "email": user_document.get("email", ""),
                "name": user_document.get("name", ""),
            },
        )

    def current_user_document():
        object_id = parse_object_id(get_jwt_identity())
        if object_id is None:
            return None
        return db.users.find_one({"_id": object_id})

    def fetch_product(product_id: str):
        object_id = parse_object_id(product_id)
        if object_id is None:
            return None, (jsonify({"error": "Invalid product identifier."}), 400)

        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return None, (jsonify({"error": "Product not found"}), 404)

        return product_document, None

    # --- PAGES ---

    @app.route("/")
    def index():
        return redirect(url_for("dashboard_page"))

    @app.route("/auth/login")
    def login_page():
        return render_template(
            "login.html", callback_url=request.args.get("callbackUrl", "/dashboard")
        )

    @app.route("/dashboard")
    @app.route("/dashboard/<path:section>")
    def dashboard_page(section: str = ""):
        return render_template("dashboard.html", section=section)

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # --- AUTH ROUTES ---

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        user_document, error = create_account(payload, USER_ROLE, "User already exists")
        if error:
            return error

        return (
            jsonify(
                {
                    "message": "User registered successfully",
                    "user": serialize_user(user_document),
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")

        if not email or not password:
            return jsonify({"error": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not check_password(password, user.get("password")):
            app.logger.info("Failed sign-in for %s", email)
            return jsonify({"error": "Invalid credentials"}), 401

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login_at": datetime.utcnow()}},
        )
        user = db.users.find_one({"_id": user["_id"]})

        token = issue_access_token(user)
        # Cookie clients echo csrf_token in X-CSRF-TOKEN on mutating requests.
        response = jsonify(
            {
                "access_token": token,
                "csrf_token": get_csrf_token(token),
                "user": serialize_user(user),
            }
        )
        set_access_cookies(response, token)
        return response

    @app.route("/api/auth/logout", methods=["POST"])
    def logout():
        response = jsonify({"message": "Signed out"})
        unset_jwt_cookies(response)
        return response

    @app.route("/api/auth/session", methods=["GET"])
    @jwt_required(optional=True)
    def session_info():
        identity = get_jwt_identity()
        if not identity:
            return jsonify({"authenticated": False, "user": None})

        principal = principal_from_claims(identity, get_jwt())
        return jsonify(
            {
                "authenticated": True,
                "user": {
                    "id": principal.user_id,
                    "name": principal.name,
                    "email": principal.email,
                    "role": principal.role,
                },
            }
        )

    # --- SETUP ---

    @app.route("/api/setup", methods=["GET"])
    def setup_status():
        admin_count = db.users.count_documents({"role": ADMIN_ROLE})
        return jsonify(
            {
                "needsSetup": admin_count == 0,
                "message": "No admin exists. Setup required."
                if admin_count == 0
                else "System is configured.",
            }
        )

    @app.route("/api/setup", methods=["POST"])
    def setup_first_admin():
        if db.users.find_one({"role": ADMIN_ROLE}):
            return (
                jsonify({"error": "Setup already complete. Admin account exists."}),
                400,
            )

        payload = request.get_json(silent=True) or {}
        admin, error = create_account(payload, ADMIN_ROLE, "Email already in use")
        if error:
            return error

        return (
            jsonify(
                {
                    "message": "Admin account created successfully! You can now log in.",
                    "user": serialize_user(admin),
                }
            ),
            201,
        )

    # --- ADMIN ROUTES ---

    @app.route("/api/admin/create", methods=["POST"])
    def admin_create():
        payload = request.get_json(silent=True) or {}
        admin, error = create_account(
            payload, ADMIN_ROLE, "User with this email already exists"
        )
        if error:
            return error

        return (
            jsonify({"message": "Admin created successfully", "admin": serialize_user(admin)}),
            201,
        )

    @app.route("/api/users", methods=["GET"])
    def list_users():
        users = [
            serialize_user(user)
            for user in db.users.find({}, {"password": 0}).sort("created_at", -1)
        ]
        return jsonify({"users": users})

    @app.route("/api/users", methods=["PUT"])
    def update_user_role():
        principal = g.get("principal")
        payload = request.get_json(silent=True) or {}
        user_id = str(payload.get("userId", "") or "").strip()
        desired_role = str(payload.get("role", "") or "").strip().lower()

        if not user_id or not desired_role:
            return jsonify({"error": "User ID and role are required"}), 400

        if desired_role not in ALLOWED_USER_ROLES:
            return jsonify({"error": 'Invalid role. Must be "admin" or "user"'}), 400

        if principal is not None and user_id == principal.user_id:
            return jsonify({"error": "Cannot change your own role"}), 400

        target_object_id = parse_object_id(user_id)
        if target_object_id is None:
            return jsonify({"error": "Invalid user identifier."}), 400

        user_to_update = db.users.find_one({"_id": target_object_id})
        if not user_to_update:
            return jsonify({"error": "User not found"}), 404

        if (
            normalize_role(user_to_update.get("role")) == ADMIN_ROLE
            and desired_role != ADMIN_ROLE
            and db.users.count_documents({"role": ADMIN_ROLE}) <= 1
        ):
            return jsonify({"error": "At least one admin account must remain."}), 400

        updated_user = db.users.find_one_and_update(
            {"_id": target_object_id},
            {"$set": {"role": desired_role, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        app.logger.info(
            "Role of %s set to %s by %s",
            updated_user.get("email"),
            desired_role,
            principal.email if principal else "unknown",
        )

        return jsonify(
            {
                "message": f"User role updated to {desired_role}",
                "user": serialize_user(updated_user),
            }
        )

    # --- PROFILE ---

    @app.route("/api/profile", methods=["GET"])
    @jwt_required()
    def get_profile():
        user = current_user_document()
        if not user:
            return jsonify({"error": "User not found"}), 404
        return jsonify({"user": serialize_user(user)})

    @app.route("/api/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        user = current_user_document()
        if not user:
            return jsonify({"error": "User not found"}), 404

        payload = request.get_json(silent=True) or {}
        current_password = str(payload.get("currentPassword", "") or "")
        new_password = str(payload.get("newPassword", "") or "")
        name = str(payload.get("name", "") or "").strip()

        update_fields: Dict[str, object] = {}
        if current_password and new_password:
            if not check_password(current_password, user.get("password")):
                return jsonify({"error": "Current password is incorrect"}), 400
            if len(new_password) < min_password_length:
                return (
                    jsonify(
                        {
                            "error": f"New password must be at least {min_password_length} characters"
                        }
                    ),
                    400,
                )
            update_fields["password"] = hash_password(
                new_password, app.config.get("BCRYPT_ROUNDS", 12)
            )

        if name:
            update_fields["name"] = name

        if update_fields:
            update_fields["updated_at"] = datetime.utcnow()
            db.users.update_one({"_id": user["_id"]}, {"$set": update_fields})
            user = db.users.find_one({"_id": user["_id"]})

        return jsonify(
            {"message": "Profile updated successfully", "user": serialize_user(user)}
        )

    # --- PRODUCTS ---

    @app.route("/api/products", methods=["GET"])
    def list_products():
        query = build_product_query(request.args)
        sort_field, direction = resolve_sort(request.args)
        page, limit = parse_pagination()

        cursor = (
            db.products.find(query)
            .sort(sort_field, direction)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        products = [serialize_product(document) for document in cursor]
        total = db.products.count_documents(query)

        return jsonify(
            {"products": products, "pagination": pagination_block(page, limit, total)}
        )

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        return jsonify({"product": serialize_product(product_document)})

    @app.route("/api/products", methods=["POST"])
    def create_product():
        principal = g.get("principal")
        payload = request.get_json(silent=True)

        try:
            product_fields = validate_product_payload(payload)
            ensure_unique_sku(db.products, product_fields["sku"])
        except ValidationError as exc:
            return validation_failed(exc.details)
        except DuplicateSkuError as exc:
            app.logger.warning("Duplicate SKU rejected: %s", exc.sku)
            return duplicate_sku(exc)

        timestamp = datetime.utcnow()
        product_document = {
            **product_fields,
            "created_by": principal.user_id if principal else "",
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            result = db.products.insert_one(product_document)
        except DuplicateKeyError:
            return duplicate_sku(DuplicateSkuError(product_fields["sku"]))

        created_product = db.products.find_one({"_id": result.inserted_id})
        app.logger.info(
            "Product %s (%s) created", result.inserted_id, product_fields["sku"]
        )

        return (
            jsonify(
                {
                    "message": "Product created successfully",
                    "product": serialize_product(created_product),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT", "PATCH"])
    def update_product(product_id: str):
        payload = request.get_json(silent=True)
        try:
            product_fields = validate_product_payload(payload, partial=True)
        except ValidationError as exc:
            return validation_failed(exc.details)

        if not product_fields:
            return jsonify({"error": "No fields to update"}), 400

        existing_product, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        new_sku = product_fields.get("sku")
        if new_sku and new_sku != existing_product.get("sku"):
            try:
                ensure_unique_sku(db.products, new_sku, exclude_id=existing_product["_id"])
            except DuplicateSkuError as exc:
                app.logger.warning("Duplicate SKU rejected: %s", exc.sku)
                return duplicate_sku(exc)

        product_fields["updated_at"] = datetime.utcnow()
        try:
            updated_product = db.products.find_one_and_update(
                {"_id": existing_product["_id"]},
                {"$set": product_fields},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            return duplicate_sku(DuplicateSkuError(new_sku or ""))

        if not updated_product:
            return jsonify({"error": "Product not found"}), 404

        app.logger.info("Product %s updated", existing_product["_id"])
        return jsonify(
            {
                "message": "Product updated successfully",
                "product": serialize_product(updated_product),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    def delete_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        db.products.delete_one({"_id": product_document["_id"]})
        app.logger.info("Product %s deleted", product_document["_id"])
        return jsonify({"message": "Product deleted successfully"})

    # --- SALES ---

    @app.route("/api/sales", methods=["POST"])
    def record_sale():
        payload = request.get_json(silent=True) or {}
        quantity = payload.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            return validation_failed(
                [{"field": "quantity", "message": "Quantity must be at least 1"}]
            )

        sale_date = datetime.utcnow()
        if payload.get("date"):
            sale_date = parse_iso_date(payload.get("date"))
            if sale_date is None:
                return validation_failed(
                    [{"field": "date", "message": "Date must be an ISO-8601 value"}]
                )

        product_document, load_error = fetch_product(payload.get("product_id"))
        if load_error:
            return load_error

        price = float(product_document.get("price", 0) or 0)
        sale_document = {
            "product_id": str(product_document["_id"]),
            "quantity": quantity,
            "total_amount": round(price * quantity, 2),
            "date": sale_date,
            "created_at": datetime.utcnow(),
        }
        result = db.sales.insert_one(sale_document)
        sale_document["_id"] = result.inserted_id

        return (
            jsonify({"message": "Sale recorded", "sale": serialize_sale(sale_document)}),
            201,
        )

    @app.route("/api/sales", methods=["GET"])
    def list_sales():
        page, limit = parse_pagination(default_limit=50, max_limit=200)
        start_date = parse_iso_date(request.args.get("from") or request.args.get("start"))
        end_date = parse_iso_date(
            request.args.get("to") or request.args.get("end"), end_of_day=True
        )

        query: Dict[str, object] = {}
        if start_date or end_date:
            date_filter: Dict[str, datetime] = {}
            if start_date:
                date_filter["$gte"] = start_date
            if end_date:
                date_filter["$lt"] = end_date
            query["date"] = date_filter

        cursor = (
            db.sales.find(query).sort("date", -1).skip((page - 1) * limit).limit(limit)
        )
        sales = [serialize_sale(document) for document in cursor]
        total = db.sales.count_documents(query)

        return jsonify({"sales": sales, "pagination": pagination_block(page, limit, total)})

    # --- UPLOADS ---

    @app.route("/api/upload", methods=["POST"])
    def upload_image():
        if not media.is_configured(app.config):
            return (
                jsonify(
                    {
                        "error": "Cloudinary not configured",
                        "message": "Set CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET.",
                    }
                ),
                500,
            )

        image_file = request.files.get("file")
        if not image_file or not image_file.filename:
            return jsonify({"error": "No file provided"}), 400

        try:
            uploaded = media.upload_image(image_file, app.config)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        except media.MediaUploadError:
            return jsonify({"error": "Upload failed"}), 502

        return jsonify(uploaded)

    @app.route("/api/upload", methods=["DELETE"])
    def delete_uploaded_image():
        if not media.is_configured(app.config):
            return jsonify({"error": "Cloudinary not configured"}), 500

        payload = request.get_json(silent=True) or {}
        public_id = str(payload.get("public_id", "") or "").strip()
        if not public_id:
            return jsonify({"error": "No public ID provided"}), 400

        try:
            media.delete_image(public_id, app.config)
        except media.MediaUploadError:
            return jsonify({"error": "Delete failed"}), 502

        return jsonify({"message": "Image deleted successfully"})

    # --- DASHBOARD ---

    @app.route("/api/dashboard", methods=["GET"])
    def dashboard_summary():
        try:
            summary = analytics.build_dashboard_summary(db, g.get("principal"))
        except analytics.AuthorizationError:
            return jsonify({"error": "Unauthorized - Admin access required"}), 403
        except PyMongoError:
            app.logger.exception("Dashboard aggregation failed")
            return jsonify({"error": "Internal server error"}), 500

        return jsonify(summary)

    from commands import register_commands

    register_commands(app)

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
