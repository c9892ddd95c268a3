"""Integration tests for api/main.py and auth/dependencies.py.

Covers:
- GET /api/v1/health reports app, TTL store and database status, no auth
- GET /api/v1/session requires a valid access token (Bearer or cookie)
- 401 bodies carry the specific failure code (malformed, revoked, missing)
- require_role() returns 403 without the role
- try_get_current_claims() never raises
- the real lifespan wires components from environment settings
- the background cleanup loop calls sweep() each interval and keeps running
  after a failed sweep

Design: file-backed SQLite (tmp_path) instead of :memory: because TestClient
runs sync route handlers in a thread pool.
"""

import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from api.main import _cleanup_loop, app, lifespan
from auth.dependencies import require_role, try_get_current_claims
from auth.errors import StoreUnavailableError
from auth.models import CleanupResult, Principal
from auth.tokens import hash_password
from cache.store import SQLiteTTLStore
from core.bootstrap import build_components
from core.config import Settings, get_settings

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def components(tmp_path, signer):
    settings = Settings(_env_file=None, debug=False, database_url=f"sqlite:///{tmp_path / 'auth.db'}")
    built = build_components(settings, signer=signer, ttl_store=SQLiteTTLStore(tmp_path / "ttl.db"))
    built.users.create_user(
        Principal(email="admin@example.com", password_hash=hash_password("pw-admin"), roles=("ROLE_ADMIN",))
    )
    built.users.create_user(Principal(email="user@example.com", password_hash=hash_password("pw-user")))
    yield built
    built.close()


def _patch_lifespan(components):
    @asynccontextmanager
    async def test_lifespan(app):
        app.state.components = components
        app.state.auth_service = components.service
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture
def client(components, monkeypatch):
    monkeypatch.setattr(app.router, "lifespan_context", _patch_lifespan(components))
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


def _token(components, email="user@example.com", password="pw-user") -> str:
    return components.service.login(email, password, "127.0.0.1").access_token


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def test_health_no_auth(client):
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["components"] == {"app": "ok", "ttl_store": "ok", "database": "ok"}


def test_health_degraded_when_ttl_store_down(client, components, monkeypatch):
    monkeypatch.setattr(components.ttl_store, "ping", lambda: False)
    data = client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["ttl_store"] == "error"


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def test_session_requires_auth(client):
    resp = client.get("/api/v1/session")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert resp.headers["WWW-Authenticate"] == "Bearer"


def test_session_with_bearer(client, components):
    resp = client.get("/api/v1/session", headers={"Authorization": f"Bearer {_token(components)}"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["username"] == "user@example.com"
    assert data["roles"] == ["ROLE_USER"]


def test_session_with_cookie(client, components):
    client.cookies.set("access_token", _token(components))
    try:
        assert client.get("/api/v1/session").status_code == 200
    finally:
        client.cookies.clear()


def test_malformed_token_code(client):
    resp = client.get("/api/v1/session", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "malformed_token"


def test_revoked_token_rejected(client, components):
    token = _token(components)
    components.service.logout(access_token=token)
    resp = client.get("/api/v1/session", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unknown_token"


# ---------------------------------------------------------------------------
# Role dependency (standalone app)
# ---------------------------------------------------------------------------


@pytest.fixture
def role_client(components):
    mini = FastAPI()
    mini.state.auth_service = components.service

    @mini.get("/admin")
    def admin(claims=Depends(require_role("ROLE_ADMIN"))):
        return {"user": claims.subject}

    @mini.get("/maybe")
    def maybe(claims=Depends(try_get_current_claims)):
        return {"user": claims.subject if claims else None}

    return TestClient(mini)


def test_require_role(role_client, components):
    admin = _token(components, "admin@example.com", "pw-admin")
    user = _token(components)
    assert role_client.get("/admin", headers={"Authorization": f"Bearer {admin}"}).status_code == 200
    assert role_client.get("/admin", headers={"Authorization": f"Bearer {user}"}).status_code == 403
    assert role_client.get("/admin").status_code == 401


def test_try_get_current_claims(role_client, components):
    assert role_client.get("/maybe").json() == {"user": None}
    assert role_client.get("/maybe", headers={"Authorization": "Bearer junk"}).json() == {"user": None}
    token = _token(components)
    assert role_client.get("/maybe", headers={"Authorization": f"Bearer {token}"}).json() == {
        "user": "user@example.com"
    }


# ---------------------------------------------------------------------------
# Real lifespan / cleanup loop
# ---------------------------------------------------------------------------


def test_real_lifespan_wires_components(tmp_path, monkeypatch):
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("KEYS_DIR", str(tmp_path / "keys"))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'auth.db'}")
    monkeypatch.setenv("TTL_STORE_PATH", str(tmp_path / "ttl.db"))
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setattr(app.router, "lifespan_context", lifespan)
    get_settings.cache_clear()
    try:
        with TestClient(app) as c:
            assert c.get("/api/v1/health").json()["status"] == "healthy"
            assert app.state.auth_service is app.state.components.service
        assert (tmp_path / "keys" / "private_key.pem").is_file()
    finally:
        get_settings.cache_clear()


def test_cleanup_loop_sweeps():
    service = MagicMock()
    service.sweep.return_value = (CleanupResult(expired=2, revoked=1), 3)
    fake_app = SimpleNamespace(state=SimpleNamespace(auth_service=service))

    async def run():
        task = asyncio.create_task(_cleanup_loop(fake_app, 0))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert service.sweep.call_count >= 1


@pytest.mark.parametrize("error", [StoreUnavailableError("db down"), RuntimeError("boom")])
def test_cleanup_loop_survives_failed_sweep(error):
    service = MagicMock()
    outcomes = [error]

    def sweep():
        if outcomes:
            raise outcomes.pop()
        return CleanupResult(expired=0, revoked=0), 0

    service.sweep.side_effect = sweep
    fake_app = SimpleNamespace(state=SimpleNamespace(auth_service=service))

    async def run():
        task = asyncio.create_task(_cleanup_loop(fake_app, 0))
        await asyncio.sleep(0.05)
        assert not task.done()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert service.sweep.call_count >= 2
