"""Tests for the reference backend HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from ledgersync.config import ServerConfig
from ledgersync.server import ServerStore, create_app

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def server_store():
    s = ServerStore(":memory:")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def client(server_store):
    """Create a test client for the backend."""
    app = create_app(ServerConfig(token=TOKEN, max_attachment_bytes=16), store=server_store)
    return TestClient(app)


class TestAuth:
    """Tests for bearer token checks."""

    def test_health_is_open(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.text == "ok"

    def test_missing_token(self, client):
        response = client.get("/sync/version")
        assert response.status_code == 401

    def test_wrong_token(self, client):
        response = client.get("/sync/version", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_wrong_scheme(self, client):
        response = client.get("/sync/version", headers={"Authorization": f"Basic {TOKEN}"})
        assert response.status_code == 401

    def test_rejected_before_business_logic(self, client, server_store):
        """Test an unauthenticated push changes nothing."""
        response = client.post(
            "/sync/push", json={"ledgers": [{"id": "s1", "updatedAt": 1}]}
        )

        assert response.status_code == 401
        assert server_store.version("default") == 0

    def test_no_configured_token_rejects_everything(self, server_store):
        app = create_app(ServerConfig(token=""), store=server_store)
        client = TestClient(app)

        response = client.get("/sync/version", headers={"Authorization": "Bearer "})

        assert response.status_code == 401


class TestSync:
    """Tests for the sync endpoints."""

    def test_push_then_pull(self, client):
        """Test a pushed row comes back on pull with the new version."""
        response = client.post(
            "/sync/push",
            params={"user_id": "alice"},
            json={"ledgers": [{"id": "s1", "name": "Home", "updatedAt": 10}], "groups": []},
            headers=AUTH,
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True, "version": 1, "written": 1}

        pulled = client.get("/sync/pull", params={"user_id": "alice", "since": 0}, headers=AUTH)
        data = pulled.json()

        assert data["version"] == 1
        assert data["ledgers"][0]["name"] == "Home"
        assert data["settings"] is None

    def test_pull_since_current_version_is_empty(self, client):
        client.post(
            "/sync/push",
            json={"transactions": [{"id": "t1", "ledgerId": "s1", "updatedAt": 5}]},
            headers=AUTH,
        )

        data = client.get("/sync/pull", params={"since": 1}, headers=AUTH).json()

        assert data["transactions"] == []

    def test_empty_push_keeps_version(self, client):
        response = client.post("/sync/push", json={}, headers=AUTH)
        assert response.json()["version"] == 0

    def test_replayed_push_is_harmless(self, client):
        """Test pushing the same rows twice leaves the same data."""
        payload = {"categories": [{"id": "c1", "name": "Food", "updatedAt": 3}]}
        client.post("/sync/push", json=payload, headers=AUTH)
        client.post("/sync/push", json=payload, headers=AUTH)

        data = client.get("/sync/pull", headers=AUTH).json()

        assert len(data["categories"]) == 1
        assert data["categories"][0]["name"] == "Food"

    def test_bad_payload(self, client):
        response = client.post("/sync/push", json={"ledgers": [{"name": "no id"}]}, headers=AUTH)
        assert response.status_code == 400

    def test_version_endpoint(self, client):
        client.post("/sync/push", json={"ledgers": [{"id": "s1", "updatedAt": 1}]}, headers=AUTH)
        assert client.get("/sync/version", headers=AUTH).json() == {"version": 1}


class TestAttachments:
    """Tests for the attachment endpoint."""

    def test_upload_fetch_delete(self, client):
        response = client.post(
            "/upload/image",
            content=b"png-bytes",
            headers={**AUTH, "X-Image-Key": "abc", "Content-Type": "image/png"},
        )
        assert response.json() == {"key": "abc"}

        fetched = client.get("/image/abc", headers=AUTH)
        assert fetched.content == b"png-bytes"
        assert fetched.headers["content-type"] == "image/png"

        assert client.delete("/image/abc", headers=AUTH).status_code == 200
        assert client.get("/image/abc", headers=AUTH).status_code == 404

    def test_upload_without_key_gets_one(self, client):
        response = client.post("/upload/image", content=b"x", headers=AUTH)
        assert len(response.json()["key"]) == 32

    def test_too_large(self, client):
        response = client.post(
            "/upload/image", content=b"x" * 17, headers={**AUTH, "X-Image-Key": "big"}
        )
        assert response.status_code == 413

    def test_empty_body(self, client):
        response = client.post("/upload/image", content=b"", headers=AUTH)
        assert response.status_code == 400

    def test_delete_missing(self, client):
        assert client.delete("/image/nope", headers=AUTH).status_code == 404
