import jwt
from fastapi.testclient import TestClient

from tusvault.auth import principal_rate_limiter
from tusvault.config import settings
from tusvault.db import Base, engine
from tusvault.main import app

CREATE_HEADERS = {
    "Tus-Resumable": "1.0.0",
    "Upload-Length": "4",
    "Upload-Metadata": "filename YS5iaW4=,filetype dGV4dC9wbGFpbg==",
}


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    principal_rate_limiter.reset()


def test_missing_api_key_rejected() -> None:
    _reset_state()
    with TestClient(app) as client:
        response = client.post("/uploads", headers=CREATE_HEADERS)
        assert response.status_code == 401
        assert response.json()["error_code"] == "missing_credentials"
        assert response.headers["Tus-Resumable"] == "1.0.0"


def test_unknown_api_key_forbidden() -> None:
    _reset_state()
    with TestClient(app) as client:
        response = client.get("/v1/uploads", headers={"X-API-Key": "not-a-key"})
        assert response.status_code == 403


def test_jwt_mode_accepts_valid_bearer_token() -> None:
    _reset_state()
    old_mode = settings.auth_mode
    old_secret = settings.jwt_secret
    settings.auth_mode = "jwt"
    settings.jwt_secret = "test-secret"
    try:
        token = jwt.encode({"sub": "jwt-user"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        with TestClient(app) as client:
            response = client.post("/uploads", headers={**CREATE_HEADERS, "Authorization": f"Bearer {token}"})
            assert response.status_code == 201, response.text
            listed = client.get("/v1/uploads", headers={"Authorization": f"Bearer {token}"})
            assert [item["owner_id"] for item in listed.json()] == ["jwt-user"]

            rejected = client.get("/v1/uploads", headers={"Authorization": "Bearer bad.token.value"})
            assert rejected.status_code == 401
            api_key_only = client.get("/v1/uploads", headers={"X-API-Key": "dev-key"})
            assert api_key_only.status_code == 401
    finally:
        settings.auth_mode = old_mode
        settings.jwt_secret = old_secret


def test_hybrid_mode_keeps_api_key_fallback() -> None:
    _reset_state()
    old_mode = settings.auth_mode
    old_secret = settings.jwt_secret
    settings.auth_mode = "hybrid"
    settings.jwt_secret = "test-secret"
    try:
        token = jwt.encode({"sub": "jwt-user"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        with TestClient(app) as client:
            assert client.get("/v1/uploads", headers={"X-API-Key": "dev-key"}).status_code == 200
            assert client.get("/v1/uploads", headers={"Authorization": f"Bearer {token}"}).status_code == 200
    finally:
        settings.auth_mode = old_mode
        settings.jwt_secret = old_secret


def test_principal_rate_limit_returns_429() -> None:
    _reset_state()
    old_limit = settings.api_rate_limit_per_minute
    settings.api_rate_limit_per_minute = 2
    try:
        with TestClient(app) as client:
            assert client.get("/v1/uploads", headers={"X-API-Key": "dev-key"}).status_code == 200
            assert client.get("/v1/uploads", headers={"X-API-Key": "dev-key"}).status_code == 200
            throttled = client.get("/v1/uploads", headers={"X-API-Key": "dev-key"})
            assert throttled.status_code == 429
            assert throttled.headers["X-RateLimit-Reason"] == "principal_rate_limit"
            assert throttled.json()["error_code"] == "throttled"
    finally:
        settings.api_rate_limit_per_minute = old_limit
        principal_rate_limiter.reset()


def test_admin_routes_require_admin_principal() -> None:
    _reset_state()
    old_mapping = settings.api_key_mappings
    settings.api_key_mappings = "dev-key:dev-user,key-b:user-b"
    try:
        with TestClient(app) as client:
            assert client.post("/v1/admin/cleanup", headers={"X-API-Key": "key-b"}).status_code == 403
            response = client.post("/v1/admin/cleanup", headers={"X-API-Key": "dev-key"})
            assert response.status_code == 200
            assert response.json()["status"] == "ok"
    finally:
        settings.api_key_mappings = old_mapping
