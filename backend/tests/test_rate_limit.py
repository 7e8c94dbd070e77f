"""
Rate limiter tests.

Covers policy loading from config, the Flask-Limiter wiring (per-class and
per-client buckets, exempt paths), Retry-After rounding and client IP
extraction.
"""

from types import SimpleNamespace

import pytest
from flask import Flask, jsonify, request

from rate_limit import (
    RateLimitPolicy,
    create_limiter,
    get_client_ip,
    load_policies,
    retry_after_seconds,
)


def classify(path):
    return "auth" if path.startswith("/login") else "default"


def limited_app(**config):
    app = Flask(__name__)
    app.config.update({"RATE_LIMIT_MAX_REQUESTS": 3, "RATE_LIMIT_AUTH_MAX": 2})
    app.config.update(config)
    limiter = create_limiter(app, classify, exempt=lambda: request.path == "/health")

    @app.route("/login")
    def login():
        return jsonify({"ok": True})

    @app.route("/items")
    def items():
        return jsonify({"ok": True})

    @app.route("/health")
    def health():
        return jsonify({"ok": True})

    return app, limiter


class TestPolicies:
    def test_defaults(self):
        policies = load_policies({})

        assert policies["auth"].max_requests == 20
        assert policies["upload"].max_requests == 10
        assert policies["default"].max_requests == 100
        assert all(policy.window_seconds == 60 for policy in policies.values())

    def test_overrides(self):
        policies = load_policies(
            {"RATE_LIMIT_UPLOAD_MAX": 3, "RATE_LIMIT_UPLOAD_WINDOW_MS": 30000}
        )
        assert policies["upload"].max_requests == 3
        assert policies["upload"].window_seconds == 30

    def test_sub_second_windows_round_up(self):
        policies = load_policies({"RATE_LIMIT_WINDOW_MS": 1500})
        assert policies["default"].window_seconds == 2

    def test_limit_string(self):
        assert RateLimitPolicy("auth", 20, 60).limit_string == "20 per 60 second"


class TestLimiter:
    def test_ceiling_per_class(self):
        app, _ = limited_app()
        client = app.test_client()

        assert [client.get("/login").status_code for _ in range(3)] == [200, 200, 429]
        assert client.get("/items").status_code == 200

    def test_clients_have_separate_buckets(self):
        app, _ = limited_app()
        client = app.test_client()
        first = {"X-Forwarded-For": "203.0.113.1"}
        second = {"X-Forwarded-For": "203.0.113.2"}

        for _ in range(2):
            client.get("/login", headers=first)

        assert client.get("/login", headers=first).status_code == 429
        assert client.get("/login", headers=second).status_code == 200

    def test_headers_are_stamped(self):
        app, _ = limited_app()

        resp = app.test_client().get("/items")

        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert resp.headers["X-RateLimit-Remaining"] == "2"
        assert "X-RateLimit-Reset" in resp.headers

    def test_exempt_paths_are_not_counted(self):
        app, _ = limited_app(RATE_LIMIT_MAX_REQUESTS=1)
        client = app.test_client()

        assert [client.get("/health").status_code for _ in range(3)] == [200, 200, 200]
        assert "X-RateLimit-Limit" not in client.get("/health").headers


class TestRetryAfter:
    def test_rounds_up(self):
        limiter = SimpleNamespace(current_limit=SimpleNamespace(reset_at=1060))
        assert retry_after_seconds(limiter, now=1015.2) == 45

    def test_never_below_one(self):
        limiter = SimpleNamespace(current_limit=SimpleNamespace(reset_at=1060))
        assert retry_after_seconds(limiter, now=1059.9) == 1
        assert retry_after_seconds(limiter, now=1061) == 1
        assert retry_after_seconds(SimpleNamespace(current_limit=None)) == 1


class TestClientIp:
    @pytest.mark.parametrize(
        "headers,expected",
        [
            ({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}, "203.0.113.7"),
            ({"X-Real-IP": "198.51.100.2"}, "198.51.100.2"),
            ({"CF-Connecting-IP": "192.0.2.9"}, "192.0.2.9"),
            (
                {"X-Forwarded-For": "203.0.113.7", "X-Real-IP": "198.51.100.2"},
                "203.0.113.7",
            ),
            ({}, "unknown"),
        ],
    )
    def test_get_client_ip(self, headers, expected):
        assert get_client_ip(headers) == expected
