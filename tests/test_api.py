import pytest
from fastapi.testclient import TestClient
from app.main import app

LOGIN_PAGE = {
    "title": "Account login",
    "hasHttps": False,
    "forms": [{
        "action": "https://collector.bad.example/post",
        "isLoginForm": True,
        "inputs": [{"type": "password", "name": "pw"}],
    }],
}


@pytest.fixture(scope="session")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def fresh_state(client):
    client.post("/admin/reset")


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "active"
    assert body["feature_version"] == "v1.0"


def test_ping(client):
    r = client.get("/ping")
    assert r.text == "pong"


def test_assess_invalid(client):
    r = client.post("/assess", json={"url": ""})
    assert r.status_code == 400
    assert r.json()["error"] == "http_exception"


def test_assess_missing_url(client):
    r = client.post("/assess", json={})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_error"


def test_assess_login_page(client):
    r = client.post("/assess", json={"url": "http://shop.example.com/login", "page": LOGIN_PAGE})
    assert r.status_code == 200
    body = r.json()
    assert body["combinedScore"] == 60
    assert body["riskLevel"] == "suspicious"
    assert body["strategy"] == "baseline"
    assert body["sourceBreakdown"]["rule"] == 60
    assert r.headers["Cache-Control"] == "no-store"


def test_tab_lifecycle(client):
    r = client.post("/tabs/42/navigate", json={"url": "http://shop.example.com/login"})
    assert r.status_code == 200
    token = r.json()["navigationToken"]
    assert r.json()["status"] == "scanning"

    r = client.post("/tabs/42/scan", json={"url": "http://shop.example.com/login", "page": LOGIN_PAGE})
    assert r.status_code == 200
    assert r.json()["status"] == "suspicious"

    events = [{"type": "form_action_changed", "timestamp": 1.0,
               "attrs": {"old_action": "http://shop.example.com/login", "new_action": "https://x.bad.example/"}}]
    r = client.post("/tabs/42/events", json={"events": events, "navigationToken": token})
    assert r.status_code == 200
    assert r.json()["assessment"]["strategy"] == "session_fused"

    r = client.post("/tabs/42/interactions", json={"events": [{"type": "countdown"}]})
    assert r.status_code == 200
    assert r.json()["assessment"]["sourceBreakdown"]["interaction"] == 4

    r = client.get("/tabs/42")
    assert r.json()["navigationToken"] == token

    assert client.delete("/tabs/42").json()["closed"] is True
    assert client.get("/tabs/42").json()["status"] == "idle"


def test_events_for_unknown_tab(client):
    r = client.post("/tabs/nope/events", json={"events": []})
    assert r.status_code == 404


def test_stale_token_rejected(client):
    old = client.post("/tabs/9/navigate", json={"url": "https://a.example/"}).json()["navigationToken"]
    client.post("/tabs/9/navigate", json={"url": "https://b.example/"})
    r = client.post("/tabs/9/events", json={"events": [{"type": "popup"}], "navigationToken": old})
    assert r.status_code == 409


def test_metrics_and_reload(client):
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "cache" in r.json()
    r = client.post("/admin/reload")
    assert r.status_code == 200
    assert r.json()["status"] == "reloaded"
