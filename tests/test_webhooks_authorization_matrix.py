from fastapi.testclient import TestClient

from src.auth import create_access_token, create_super_admin_token
from src.main import app


def test_webhook_events_list_requires_super_admin_token():
    client = TestClient(app)
    response = client.get("/api/webhooks/events")
    assert response.status_code == 401


def test_webhook_replay_requires_super_admin_token():
    client = TestClient(app)
    response = client.post("/api/webhooks/replay/payments/evt-1")
    assert response.status_code == 401


def test_webhook_metrics_flush_requires_super_admin_token():
    client = TestClient(app)
    response = client.post("/api/webhooks/metrics/flush")
    assert response.status_code == 401


def test_session_token_is_not_a_super_admin_token(fake_db):
    client = TestClient(app)
    token = create_access_token("u-1", "co-1")
    response = client.get("/api/webhooks/events", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_super_admin_token_for_unknown_admin_is_rejected(fake_db):
    client = TestClient(app)
    token = create_super_admin_token("sa-404")
    response = client.get("/api/webhooks/events", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_super_admin_token_lists_events(fake_db):
    fake_db.tables["super_admins"] = [{"id": "sa-1", "email": "ops@example.com"}]
    client = TestClient(app)
    token = create_super_admin_token("sa-1")
    response = client.get("/api/webhooks/events", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json() == {"events": []}
