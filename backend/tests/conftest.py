"""
Pytest fixtures for the Citadel admin backend.

Every test gets a fresh in-memory Mongo database, a fresh app (and so a
fresh rate-limit store) and helpers for signed session headers.
"""

from datetime import datetime

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from security import ADMIN_ROLE, USER_ROLE, hash_password

TEST_CONFIG = {
    "TESTING": True,
    "APP_ENV": "test",
    "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
    "BCRYPT_ROUNDS": 4,
    "ALLOWED_ORIGINS": "http://allowed.example",
    "TRUSTED_PROXY_HOPS": 0,
    "JWT_COOKIE_SECURE": False,
    "CLOUDINARY_CLOUD_NAME": "",
    "CLOUDINARY_API_KEY": "",
    "CLOUDINARY_API_SECRET": "",
}

PASSWORD = "Password123!"


def build_app(database, **overrides):
    config = dict(TEST_CONFIG)
    config.update(overrides)
    return create_app(config, database=database)


def insert_user(database, email, role, name="Test User"):
    timestamp = datetime.utcnow()
    document = {
        "name": name,
        "email": email,
        "password": hash_password(PASSWORD, 4),
        "role": role,
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    document["_id"] = database.users.insert_one(document).inserted_id
    return document


def auth_headers(app, user, role=None):
    with app.app_context():
        token = create_access_token(
            identity=str(user["_id"]),
            additional_claims={
                "role": role or user["role"],
                "email": user["email"],
                "name": user["name"],
            },
        )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def database():
    return mongomock.MongoClient().citadel_test


@pytest.fixture
def app(database):
    return build_app(database)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_user(database):
    return insert_user(database, "admin@citadel.test", ADMIN_ROLE, name="Admin User")


@pytest.fixture
def plain_user(database):
    return insert_user(database, "staff@citadel.test", USER_ROLE, name="Staff User")


@pytest.fixture
def admin_headers(app, admin_user):
    return auth_headers(app, admin_user)


@pytest.fixture
def user_headers(app, plain_user):
    return auth_headers(app, plain_user)


@pytest.fixture
def product_payload():
    return {
        "name": "Wireless Bluetooth Headphones",
        "description": "Premium noise-canceling headphones with 30-hour battery life",
        "category": "Electronics",
        "price": 149.99,
        "stock": 50,
        "images": ["https://res.cloudinary.com/demo/image/upload/headphones.jpg"],
        "sku": "ELEC-001",
        "status": "active",
        "tags": ["audio", "wireless"],
        "specifications": [{"key": "Battery Life", "value": "30 hours"}],
    }
