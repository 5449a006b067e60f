from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from crosslink.api.middleware.security import RequestIDMiddleware
from crosslink.kernel.errors import CrosslinkError, ExpiredError, NotFoundError, StorageUnavailableError
from crosslink.kernel.http.errors import register_exception_handlers


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)
    return app


@pytest.mark.unit
def test_crosslink_error_payload_shape_includes_code_and_request_id():
    app = _app()

    @app.get("/boom")
    async def boom():  # pragma: no cover - exercised via request
        raise CrosslinkError(code="test.bad_request", message="Nope", status_code=400)

    client = TestClient(app)
    response = client.get("/boom", headers={"X-Request-ID": "req_123"})
    assert response.status_code == 400
    assert response.json() == {"detail": "Nope", "code": "test.bad_request", "request_id": "req_123"}
    assert response.headers["X-Request-ID"] == "req_123"


@pytest.mark.unit
def test_typed_errors_map_to_status_codes_and_carry_meta():
    app = _app()

    @app.get("/missing")
    async def missing():  # pragma: no cover - exercised via request
        raise NotFoundError(code="identity.profile_not_found", meta={"platform": "discord"})

    @app.get("/expired")
    async def expired():  # pragma: no cover - exercised via request
        raise ExpiredError(meta={"target_platform": "discord"})

    client = TestClient(app)
    missing_response = client.get("/missing")
    assert missing_response.status_code == 404
    assert missing_response.json()["meta"] == {"platform": "discord"}
    assert missing_response.json()["request_id"]

    expired_response = client.get("/expired")
    assert expired_response.status_code == 410
    assert expired_response.json()["code"] == "verification.expired"


@pytest.mark.unit
def test_http_exception_payload_shape_preserves_detail():
    app = _app()

    @app.get("/forbidden")
    async def forbidden():  # pragma: no cover - exercised via request
        raise HTTPException(status_code=403, detail="Forbidden")

    client = TestClient(app)
    response = client.get("/forbidden", headers={"X-Request-ID": "req_999"})
    assert response.status_code == 403
    payload = response.json()
    assert payload["detail"] == "Forbidden"
    assert payload["code"] == "http.403"
    assert payload["request_id"] == "req_999"


@pytest.mark.unit
def test_request_validation_error_payload_shape_is_stable():
    app = _app()

    class Body(BaseModel):
        value: int

    @app.post("/validate")
    async def validate(body: Body):  # pragma: no cover - exercised via request
        return {"ok": True, "value": body.value}

    client = TestClient(app)
    response = client.post("/validate", json={"value": "not-an-int"})
    assert response.status_code == 422
    payload = response.json()
    assert isinstance(payload.get("detail"), list)
    assert payload.get("code") == "http.validation_error"


@pytest.mark.unit
@pytest.mark.parametrize("code", ["Bad", "trailing.", "has space", ""])
def test_error_codes_must_be_dotted_lowercase(code):
    with pytest.raises(ValueError):
        CrosslinkError(code=code, message="x")


@pytest.mark.unit
def test_storage_unavailable_is_retryable_with_retry_after():
    app = _app()

    @app.get("/down")
    async def down():  # pragma: no cover - exercised via request
        raise StorageUnavailableError()

    client = TestClient(app)
    response = client.get("/down")
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"
    assert response.json()["code"] == "storage.unavailable"
    assert response.json()["retryable"] is True


@pytest.mark.unit
def test_unexpected_exception_is_masked():
    app = _app()

    @app.get("/crash")
    async def crash():  # pragma: no cover - exercised via request
        raise RuntimeError("secret internals")

    client = TestClient(app, raise_server_exceptions=False)
    response = client.get("/crash")
    assert response.status_code == 500
    assert response.json()["code"] == "internal.unhandled"
    assert "secret" not in response.text
