"""Every failure leaves the API as the same JSON envelope."""

import pytest
from fastapi.testclient import TestClient

from tasktrack import app as app_module
from tasktrack.api.schemas import Envelope, ErrorBody
from tasktrack.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app, raise_server_exceptions=False)


def _assert_error(resp, status, code):
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert body["request_id"]
    return body


class TestErrorEnvelope:
    """Tests for the registered exception handlers."""

    def test_unknown_route(self, client):
        _assert_error(client.get("/v1/nope"), 404, "not_found")

    def test_wrong_method(self, client):
        _assert_error(client.put("/v1/auth/login", json={}), 405, "validation_error")

    def test_malformed_body(self, client):
        body = _assert_error(client.post("/v1/auth/login", json={"email": "x"}), 400, "validation_error")
        assert isinstance(body["error"]["details"], list)
        assert any("password" in d["loc"] for d in body["error"]["details"])

    def test_invalid_json(self, client):
        resp = client.post(
            "/v1/auth/login", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        _assert_error(resp, 400, "validation_error")

    def test_bad_token(self, client):
        resp = client.get("/v1/todos", headers={"Authorization": "Bearer not.a.jwt"})
        _assert_error(resp, 401, "unauthorized")

    def test_store_failure_hides_details(self, client, monkeypatch):
        def broken(*args, **kwargs):
            raise OSError("connection refused to 10.0.0.5")

        monkeypatch.setattr(get_runtime().store, "get_user_by_email", broken)
        resp = client.post("/v1/auth/login", json={"email": "a@example.com", "password": "whatever"})
        body = _assert_error(resp, 500, "server_error")
        assert body["error"]["details"] is None
        assert "10.0.0.5" not in resp.text

    def test_unexpected_exception(self, client, monkeypatch):
        def explode(authorization):
            raise KeyError("boom")

        monkeypatch.setattr(get_runtime().auth, "authenticate", explode)
        body = _assert_error(
            client.get("/v1/todos", headers={"Authorization": "Bearer x"}), 500, "server_error"
        )
        assert body["error"]["message"] == "internal server error"

    def test_request_id_is_echoed(self, client):
        resp = client.get("/v1/nope", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"


class TestSchemas:
    """Tests for the envelope models themselves."""

    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValueError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValueError):
            Envelope(status="maybe")
        assert Envelope(status="ok", data={"a": 1}).request_id


class TestHealth:
    """Tests for /healthz."""

    def test_healthy_with_memory_backends(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["cache"]["type"] == "memory"
        assert resp.headers["Cache-Control"].startswith("no-store")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
