from fastapi.testclient import TestClient

from assessment_session.main import create_app


def test_health_ok():
    app = create_app()
    client = TestClient(app)

    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"


def test_health_live():
    app = create_app()
    client = TestClient(app)

    r = client.get("/health/live")
    assert r.status_code == 200
    assert r.json().get("status") == "live"


def test_health_ready_pings_redis():
    app = create_app()
    client = TestClient(app)

    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json().get("status") == "ready"


def test_health_ready_reports_redis_outage(monkeypatch):
    import assessment_session.core.kv_store as kv_store_module

    def _down():
        raise ConnectionError("redis down")

    monkeypatch.setattr(kv_store_module, "get_redis", _down)
    client = TestClient(create_app())

    r = client.get("/health/ready")
    assert r.status_code == 503
    assert r.json()["error_message"] == "redis not ready"
