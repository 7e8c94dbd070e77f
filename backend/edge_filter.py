"""Request gate that runs in front of every route.

For API paths the checks run in a fixed order: CORS preflight, origin
validation, rate limiting, then authentication and role checks for the
admin-only surface.  Dashboard pages only need the session cookie to be
present.  Flask-Limiter stamps the X-RateLimit headers; security headers
are stamped here on the way out.

Cookie sessions use double-submit CSRF protection: mutating requests that
authenticate with the access cookie must echo the ``csrf_access_token``
cookie (also returned by sign-in) in the ``X-CSRF-TOKEN`` header.
"""

import logging
from typing import List, Optional
from urllib.parse import urlencode, urlparse

from flask import current_app, g, jsonify, redirect, request
from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import CSRFError, JWTExtendedException
from flask_limiter import Limiter
from jwt.exceptions import PyJWTError

from rate_limit import create_limiter, get_client_ip, retry_after_seconds
from security import principal_from_claims

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
DASHBOARD_PREFIX = "/dashboard"
LOGIN_PATH = "/auth/login"
AUTH_PREFIX = "/api/auth"
SETUP_PATH = "/api/setup"
UPLOAD_PATH = "/api/upload"
CATALOG_PATH = "/api/products"
ADMIN_PATH_PREFIXES = (
    "/api/dashboard",
    "/api/users",
    "/api/admin",
    "/api/upload",
    "/api/sales",
)
MUTATING_METHODS = {"POST", "PUT", "DELETE", "PATCH"}

CORS_ALLOWED_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]
CORS_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "X-CSRF-TOKEN",
]
CORS_MAX_AGE_SECONDS = 86400

DEVELOPMENT_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5000",
    "http://127.0.0.1:5000",
]

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def matches_prefix(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def classify_route(path: str) -> str:
    if matches_prefix(path, AUTH_PREFIX) or matches_prefix(path, SETUP_PATH):
        return "auth"
    if matches_prefix(path, UPLOAD_PATH):
        return "upload"
    return "default"


def is_identity_route(path: str) -> bool:
    return matches_prefix(path, AUTH_PREFIX) or matches_prefix(path, SETUP_PATH)


def requires_admin(path: str, method: str) -> bool:
    if any(matches_prefix(path, prefix) for prefix in ADMIN_PATH_PREFIXES):
        return True
    return matches_prefix(path, CATALOG_PATH) and method.upper() in MUTATING_METHODS


def resolve_allowed_origins(raw: Optional[str], environment: str) -> List[str]:
    is_production = str(environment or "").strip().lower() == "production"

    if raw is None or not str(raw).strip():
        if is_production:
            logger.warning("ALLOWED_ORIGINS not set; cross-origin requests will be refused.")
            return []
        return list(DEVELOPMENT_ORIGINS)

    origins = [origin.strip() for origin in str(raw).split(",") if origin.strip()]
    if is_production and "*" in origins:
        logger.error("Wildcard origin (*) is not allowed in production; ignoring it.")
        origins = [origin for origin in origins if origin != "*"]
    return origins


def is_origin_allowed(origin: Optional[str], allowed_origins: List[str]) -> bool:
    if not origin:
        return False
    return "*" in allowed_origins or origin in allowed_origins


def origin_matches_host(origin: str, host: str) -> bool:
    parsed = urlparse(origin)
    return bool(parsed.netloc) and parsed.netloc.lower() == (host or "").lower()


def error_response(status: int, error: str, message: str, **extra):
    response = jsonify({"error": error, "message": message, **extra})
    response.status_code = status
    return response


class EdgeRequestFilter:
    def __init__(self, app=None):
        self.limiter: Optional[Limiter] = None
        self.allowed_origins: List[str] = []
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.allowed_origins = resolve_allowed_origins(
            app.config.get("ALLOWED_ORIGINS"), app.config.get("APP_ENV", "development")
        )

        app.extensions["edge_filter"] = self
        # Hook order is the check order: origin, rate limit, then auth.
        app.before_request(self.screen_request)
        self.limiter = create_limiter(
            app,
            classify_route,
            exempt=lambda: not matches_prefix(request.path, API_PREFIX),
        )
        app.before_request(self.authorize_request)
        app.register_error_handler(429, self.rate_limited)
        app.after_request(self.stamp_headers)

    def screen_request(self):
        path = request.path

        if not matches_prefix(path, API_PREFIX):
            if matches_prefix(path, DASHBOARD_PREFIX) and not self.has_session_cookie():
                query = urlencode({"callbackUrl": path})
                return redirect(f"{LOGIN_PATH}?{query}")
            return None

        if request.method == "OPTIONS":
            return current_app.response_class(status=204)

        origin = request.headers.get("Origin")
        if (
            origin
            and not origin_matches_host(origin, request.host)
            and not is_origin_allowed(origin, self.allowed_origins)
        ):
            logger.warning("Rejected request from disallowed origin %s to %s", origin, path)
            return error_response(
                403, "CORS policy violation", "This origin is not allowed to call the API."
            )

        return None

    def rate_limited(self, exc):
        retry_after = retry_after_seconds(self.limiter)
        logger.warning(
            "Rate limit exceeded for %s:%s on %s",
            classify_route(request.path),
            get_client_ip(request.headers),
            request.path,
        )
        return error_response(
            429,
            "Too many requests",
            "Rate limit exceeded. Please try again later.",
            retryAfter=retry_after,
        )

    def authorize_request(self):
        path = request.path
        if not matches_prefix(path, API_PREFIX) or is_identity_route(path):
            return None

        if requires_admin(path, request.method):
            return self.authorize_admin()

        return None

    def authorize_admin(self):
        try:
            verify_jwt_in_request(optional=True)
        except CSRFError as exc:
            logger.info("Rejected cookie session on %s: %s", request.path, exc)
            return error_response(
                401,
                "CSRF token missing or invalid",
                "Send the csrf_access_token cookie value in the X-CSRF-TOKEN header.",
            )
        except (JWTExtendedException, PyJWTError) as exc:
            logger.info("Rejected session token on %s: %s", request.path, exc)
            return error_response(401, "Unauthorized", "A valid session is required.")

        identity = get_jwt_identity()
        if not identity:
            return error_response(401, "Unauthorized", "A valid session is required.")

        principal = principal_from_claims(identity, get_jwt())
        if not principal.is_admin:
            return error_response(
                403, "Forbidden", "Unauthorized - Admin access required"
            )

        g.principal = principal
        return None

    def has_session_cookie(self) -> bool:
        cookie_name = current_app.config.get("JWT_ACCESS_COOKIE_NAME", "access_token_cookie")
        return bool(request.cookies.get(cookie_name))

    def stamp_headers(self, response):
        if matches_prefix(request.path, API_PREFIX):
            for header, value in SECURITY_HEADERS.items():
                response.headers[header] = value
        return response
