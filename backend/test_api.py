"""HTTP surface: health and the token-gated admin views."""
import pytest
from fastapi.testclient import TestClient

from vpnshop.api.deps import get_db
from vpnshop.core.config import settings
from vpnshop.main import app
from vpnshop.services import user_service


@pytest.fixture
def client(session_factory, monkeypatch):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret")
    app.dependency_overrides[get_db] = override_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_without_bot(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["bot"] is False
    assert body["broadcast_running"] is False
    assert body["flash_sale"] == {"percent": 0, "ends_at": None}


def test_admin_endpoints_hidden_without_token(client):
    assert client.get("/admin/stats").status_code == 404
    assert client.get("/admin/stats", headers={"X-Admin-Token": "wrong"}).status_code == 404


def test_admin_stats_with_token(client, db):
    user_service.get_or_create_user(db, 1, "a")
    user_service.get_or_create_user(db, 2, "b")
    resp = client.get("/admin/stats", headers={"X-Admin-Token": "s3cret"})
    assert resp.status_code == 200
    assert resp.json()["total_users"] == 2


def test_admin_tickets_empty_when_bot_stopped(client):
    resp = client.get("/admin/tickets", headers={"X-Admin-Token": "s3cret"})
    assert resp.status_code == 200
    assert resp.json() == []
