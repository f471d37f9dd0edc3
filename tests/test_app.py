"""
Tests: application factory wiring, health probes and global error handlers.
"""

from app.services.sla_service import list_sla_definitions


def test_health_reports_database(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["status"] == "ok"
    assert body["checks"]["app"]["generator_provider"] == "stub"


def test_ready_probe(client):
    res = client.get("/api/v1/health/ready")
    assert res.status_code == 200
    assert res.get_json() == {"status": "ok"}


def test_unknown_api_path_returns_json_404(client):
    res = client.get("/api/v1/no-such-thing")
    assert res.status_code == 404
    assert res.get_json() == {"error": "Not found", "path": "/api/v1/no-such-thing"}


def test_wrong_method_returns_json_405(client):
    res = client.patch("/api/v1/health/ready")
    assert res.status_code == 405
    assert res.get_json()["error"] == "Method not allowed"


def test_request_id_header_present(client):
    res = client.get("/api/v1/health/ready")
    assert res.headers.get("X-Request-ID")


def test_factory_seeds_sla_defaults(app):
    priorities = [d["priority"] for d in list_sla_definitions()]
    assert priorities == ["P0", "P1", "P2", "P3", "P4"]


def test_testing_config_loaded(app):
    assert app.config["TESTING"] is True
    assert app.config["RATELIMIT_ENABLED"] is False
