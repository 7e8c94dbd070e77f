"""Per-client request ceilings for the API, enforced with Flask-Limiter.

Each API request counts against a fixed window keyed by
``classification:client_ip``.  The window opens on the first request and
resets once it expires.  Counters live in the storage named by
``RATELIMIT_STORAGE_URI``; the default ``memory://`` backend bounds a single
process and expires its own keys, so multi-instance deployments should point
it at a shared store such as Redis.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from flask import request
from flask_limiter import Limiter

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"
DEFAULT_STORAGE_URI = "memory://"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: int

    @property
    def limit_string(self) -> str:
        return f"{self.max_requests} per {self.window_seconds} second"


def load_policies(config: Mapping) -> Dict[str, RateLimitPolicy]:
    def build(name: str, max_key: str, window_key: str, max_default: int):
        max_requests = int(config.get(max_key, max_default) or max_default)
        window_ms = int(config.get(window_key, 60000) or 60000)
        return RateLimitPolicy(name, max_requests, max(1, math.ceil(window_ms / 1000)))

    return {
        "auth": build("auth", "RATE_LIMIT_AUTH_MAX", "RATE_LIMIT_AUTH_WINDOW_MS", 20),
        "upload": build(
            "upload", "RATE_LIMIT_UPLOAD_MAX", "RATE_LIMIT_UPLOAD_WINDOW_MS", 10
        ),
        "default": build(
            "default", "RATE_LIMIT_MAX_REQUESTS", "RATE_LIMIT_WINDOW_MS", 100
        ),
    }


def get_client_ip(headers: Mapping[str, str]) -> str:
    forwarded_for = headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    for header_name in ("X-Real-IP", "CF-Connecting-IP"):
        value = (headers.get(header_name) or "").strip()
        if value:
            return value

    return UNKNOWN_CLIENT


def create_limiter(
    app,
    classify: Callable[[str], str],
    exempt: Callable[[], bool],
) -> Limiter:
    """Attach a Flask-Limiter instance that applies one policy per route class.

    The limiter's ``before_request`` hook is registered here, so callers
    control where it runs relative to their own hooks.
    """
    policies = load_policies(app.config)

    def policy_for_request() -> RateLimitPolicy:
        return policies.get(classify(request.path)) or policies["default"]

    def request_key() -> str:
        return f"{policy_for_request().name}:{get_client_ip(request.headers)}"

    def request_limit() -> str:
        return policy_for_request().limit_string

    limiter = Limiter(
        request_key,
        application_limits=[request_limit],
        storage_uri=app.config.get("RATELIMIT_STORAGE_URI", DEFAULT_STORAGE_URI),
        strategy="fixed-window",
        headers_enabled=True,
    )
    limiter.request_filter(exempt)
    limiter.init_app(app)
    return limiter


def retry_after_seconds(limiter: Limiter, now: Optional[float] = None) -> int:
    current = limiter.current_limit
    if current is None:
        return 1
    now = time.time() if now is None else now
    return max(1, math.ceil(current.reset_at - now))
