"""
Image upload tests.  Cloudinary calls are replaced with fakes.
"""

import io

import cloudinary.uploader
import pytest

from conftest import auth_headers, build_app
from media import allowed_image_extension

CLOUDINARY_SETTINGS = {
    "CLOUDINARY_CLOUD_NAME": "demo",
    "CLOUDINARY_API_KEY": "key",
    "CLOUDINARY_API_SECRET": "secret",
}


@pytest.fixture
def configured_app(database):
    return build_app(database, **CLOUDINARY_SETTINGS)


@pytest.fixture
def configured_client(configured_app):
    return configured_app.test_client()


@pytest.fixture
def configured_headers(configured_app, admin_user):
    return auth_headers(configured_app, admin_user)


@pytest.fixture
def uploads(monkeypatch):
    calls = []

    def fake_upload(stream, **options):
        calls.append((stream.read(), options))
        return {
            "secure_url": "https://res.cloudinary.com/demo/image/upload/citadel-products/photo.png",
            "public_id": "citadel-products/photo",
        }

    monkeypatch.setattr(cloudinary.uploader, "upload", fake_upload)
    return calls


def image(filename="photo.png", content=b"\x89PNG fake image"):
    return {"file": (io.BytesIO(content), filename)}


def test_allowed_image_extension():
    allowed = {"png", "jpg"}
    assert allowed_image_extension("photo.PNG", allowed)
    assert not allowed_image_extension("notes.txt", allowed)
    assert not allowed_image_extension("png", allowed)


def test_upload_returns_url_and_public_id(configured_client, configured_headers, uploads):
    resp = configured_client.post("/api/upload", data=image(), headers=configured_headers)

    assert resp.status_code == 200
    assert resp.get_json() == {
        "url": "https://res.cloudinary.com/demo/image/upload/citadel-products/photo.png",
        "public_id": "citadel-products/photo",
    }
    content, options = uploads[0]
    assert content == b"\x89PNG fake image"
    assert options["folder"] == "citadel-products"


def test_upload_requires_admin(configured_client, uploads):
    resp = configured_client.post("/api/upload", data=image())
    assert resp.status_code == 401
    assert uploads == []


def test_missing_file(configured_client, configured_headers, uploads):
    resp = configured_client.post("/api/upload", data={}, headers=configured_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "No file provided"


def test_unsupported_extension(configured_client, configured_headers, uploads):
    resp = configured_client.post(
        "/api/upload", data=image("notes.txt"), headers=configured_headers
    )
    assert resp.status_code == 400
    assert uploads == []


def test_provider_failure_returns_bad_gateway(
    configured_client, configured_headers, monkeypatch
):
    def broken_upload(stream, **options):
        raise RuntimeError("provider down")

    monkeypatch.setattr(cloudinary.uploader, "upload", broken_upload)

    resp = configured_client.post("/api/upload", data=image(), headers=configured_headers)
    assert resp.status_code == 502


def test_not_configured(client, admin_headers):
    resp = client.post("/api/upload", data=image(), headers=admin_headers)

    assert resp.status_code == 500
    assert resp.get_json()["error"] == "Cloudinary not configured"


def test_delete_image(configured_client, configured_headers, monkeypatch):
    destroyed = []
    monkeypatch.setattr(
        cloudinary.uploader, "destroy", lambda public_id: destroyed.append(public_id)
    )

    resp = configured_client.delete(
        "/api/upload", json={"public_id": "citadel-products/photo"}, headers=configured_headers
    )
    missing = configured_client.delete("/api/upload", json={}, headers=configured_headers)

    assert resp.status_code == 200
    assert destroyed == ["citadel-products/photo"]
    assert missing.status_code == 400
