"""Tests for the FastAPI adapter: header dependencies and error envelopes."""

import asyncio

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gatehouse.api.deps import get_auth_claims, optional_auth_claims
from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.schemas import Envelope, ErrorBody
from gatehouse.service.errors import ConflictError, ServerError
from gatehouse.service.runtime import get_runtime
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import RegisterInput


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/me")
    async def me(claims=Depends(get_auth_claims)):
        return Envelope(status="ok", data={"account_id": claims.sub}).model_dump()

    @app.get("/whoami")
    async def whoami(claims=Depends(optional_auth_claims)):
        return Envelope(
            status="ok", data={"account_id": claims.sub if claims else None}
        ).model_dump()

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("email already registered", detail={"field": "email"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("username already exists", field="username")

    @app.get("/server-error")
    async def server_error():
        raise ServerError("query failed: SELECT * FROM account WHERE id = 1")

    @app.get("/page")
    async def page(n: int):
        return Envelope(status="ok", data={"n": n}).model_dump()

    @app.get("/boom")
    async def boom():
        raise RuntimeError("/var/lib/secret/path exploded")

    return app


@pytest.fixture
def client():
    return TestClient(_build_app(), raise_server_exceptions=False)


@pytest.fixture
def access_token(client):
    async def _register():
        _, pair = await get_runtime().auth.register(
            RegisterInput(username="alice", email="alice@x.com", password="pw-for-api-tests")
        )
        return pair.access_token

    return asyncio.run(_register())


class TestAuthDependency:
    """Bearer header resolution through the runtime's auth service."""

    def test_valid_bearer(self, client, access_token):
        response = client.get("/me", headers={"Authorization": f"Bearer {access_token}"})

        assert response.status_code == 200
        assert response.json()["data"]["account_id"]

    def test_missing_header(self, client):
        response = client.get("/me")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_token"

    def test_challenge_header_and_request_id(self, client):
        response = client.get(
            "/me", headers={"Authorization": "Bearer nope", "X-Request-ID": "req-42"}
        )

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == 'Bearer error="invalid_token"'
        assert response.json()["request_id"] == "req-42"

    def test_bot_scheme_rejected(self, client, access_token):
        response = client.get("/me", headers={"Authorization": f"Bot {access_token}"})

        assert response.status_code == 401

    def test_optional_dependency(self, client, access_token):
        anonymous = client.get("/whoami")
        known = client.get("/whoami", headers={"Authorization": f"Bearer {access_token}"})
        broken = client.get("/whoami", headers={"Authorization": "Bearer nope"})

        assert anonymous.json()["data"]["account_id"] is None
        assert known.json()["data"]["account_id"]
        assert broken.status_code == 401


class TestErrorEnvelope:
    def test_service_error(self, client):
        response = client.get("/conflict")

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == {
            "code": "conflict",
            "message": "email already registered",
            "details": {"field": "email"},
        }
        assert body["request_id"]

    def test_constraint_violation(self, client):
        response = client.get("/constraint")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "username"}

    def test_server_error_message_is_sanitized(self, client):
        response = client.get("/server-error")

        assert response.status_code == 500
        message = response.json()["error"]["message"]
        assert "SELECT" not in message
        assert "account" not in message

    def test_request_validation(self, client):
        response = client.get("/page", params={"n": "many"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"] == {"fields": ["query.n"]}

    def test_unhandled_exception(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }


class TestSchemas:
    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_ids_are_unique(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id
