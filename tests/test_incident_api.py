"""
Tests: Incident REST surface (/api/v1/incidents, /api/v1/action-items).

Service-level rules are covered in test_incident_service.py; these tests
pin status codes, body shapes and request guards.
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from app.models import db as _db
from app.models.audit import AuditLog

BASE = "/api/v1/incidents"


@pytest.fixture()
def payload(service):
    return {
        "title": "Checkout 502s",
        "service_id": service["id"],
        "severity": "High",
        "impact": "Critical",
        "started_at": "2025-04-10T14:00:00Z",
        "detected_at": "2025-04-10T14:04:00Z",
    }


@pytest.fixture()
def incident(client, payload):
    res = client.post(BASE, json=payload)
    assert res.status_code == 201
    return res.get_json()


# ── Create / read / update ────────────────────────────────────────────────────


def test_create_incident(incident, service):
    assert incident["priority"] == "P1"
    assert incident["status"] == "Active"
    assert incident["service_name"] == "Payments API"
    assert incident["started_at"] == "2025-04-10T14:00:00Z"


@pytest.mark.parametrize("overrides, detail", [
    ({"detected_at": "2025-04-10T13:00:00Z"}, "timestamp_ordering"),
    ({"title": 5}, "title"),
    ({"severity": ["High"]}, "severity"),
    ({"status": ["Resolved"]}, "status"),
    ({"external_ref": 7}, "external_ref"),
])
def test_create_validation_error_is_422(client, payload, overrides, detail):
    payload.update(overrides)
    res = client.post(BASE, json=payload)
    assert res.status_code == 422
    assert detail in res.get_json()["details"]


@pytest.mark.parametrize("body", [{"status": ["Resolved"]}, {"title": 5}])
def test_update_with_wrong_types_is_422(client, incident, body):
    res = client.put(f"{BASE}/{incident['id']}", json=body)
    assert res.status_code == 422


def test_update_rejects_string_recurrence_of_self(client, incident):
    res = client.put(f"{BASE}/{incident['id']}", json={"recurrence_of": str(incident["id"])})
    assert res.status_code == 422
    assert client.get(f"{BASE}/{incident['id']}").get_json()["recurrence_of"] is None


def test_create_requires_object_body(client):
    res = client.post(BASE, json=["not", "a", "dict"])
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"


def test_non_json_body_rejected(client):
    res = client.post(BASE, data="title=x", content_type="text/plain")
    assert res.status_code == 415


def test_get_and_update(client, incident):
    res = client.get(f"{BASE}/{incident['id']}")
    assert res.status_code == 200
    res = client.put(f"{BASE}/{incident['id']}", json={"root_cause": "Bad deploy"})
    assert res.status_code == 200
    assert res.get_json()["root_cause"] == "Bad deploy"


def test_missing_incident_is_404(client):
    assert client.get(f"{BASE}/4040").status_code == 404


def test_list_and_search(client, incident):
    res = client.get(f"{BASE}?status=Active")
    assert res.get_json()["total"] == 1
    res = client.get(f"{BASE}/search?q=checkout")
    assert [i["id"] for i in res.get_json()["items"]] == [incident["id"]]
    assert client.get(f"{BASE}/search").status_code == 400


def test_list_rejects_non_integer_service(client):
    assert client.get(f"{BASE}?service_id=abc").status_code == 400


# ── Transitions ───────────────────────────────────────────────────────────────


def test_transition_endpoint(client, incident):
    res = client.post(f"{BASE}/{incident['id']}/transition", json={
        "status": "Resolved", "resolved_at": "2025-04-10T15:00:00Z",
    })
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "Resolved"
    assert body["duration_minutes"] == 60


def test_disallowed_transition_is_422(client, incident):
    res = client.post(f"{BASE}/{incident['id']}/transition", json={"status": "Post-Mortem"})
    assert res.status_code == 422
    assert res.get_json()["details"]["allowed"] == ["Acknowledged", "Monitoring", "Resolved"]


def test_transition_requires_status(client, incident):
    assert client.post(f"{BASE}/{incident['id']}/transition", json={}).status_code == 400


def test_actor_header_lands_in_audit(client, payload):
    res = client.post(BASE, json=payload, headers={"X-Actor": "oncall@example.com"})
    row = _db.session.execute(
        select(AuditLog).where(
            AuditLog.action == "incident.create",
            AuditLog.entity_id == str(res.get_json()["id"]),
        )
    ).scalars().one()
    assert row.actor == "oncall@example.com"


# ── Bulk ──────────────────────────────────────────────────────────────────────


def test_bulk_status(client, incident, payload):
    other = client.post(BASE, json=payload).get_json()
    res = client.post(f"{BASE}/bulk-status", json={
        "incident_ids": [incident["id"], other["id"]], "status": "Monitoring",
    })
    assert res.status_code == 200
    assert {i["status"] for i in res.get_json()["items"]} == {"Monitoring"}


def test_bulk_status_repeated_id_counts_once(client, incident):
    res = client.post(f"{BASE}/bulk-status", json={
        "incident_ids": [incident["id"], incident["id"]], "status": "Monitoring",
    })
    assert res.status_code == 200
    assert res.get_json()["total"] == 1


def test_bulk_status_bad_ids(client):
    res = client.post(f"{BASE}/bulk-status", json={"incident_ids": ["1"], "status": "Monitoring"})
    assert res.status_code == 400
    res = client.post(f"{BASE}/bulk-status", json={"incident_ids": [], "status": "Monitoring"})
    assert res.status_code == 400


def test_bulk_delete(client, incident):
    res = client.post(f"{BASE}/bulk-delete", json={"incident_ids": [incident["id"]]})
    assert res.get_json() == {"deleted": 1}
    assert client.get(f"{BASE}/{incident['id']}").status_code == 404


# ── Soft delete lifecycle ─────────────────────────────────────────────────────


def test_delete_restore_purge(client, incident):
    iid = incident["id"]
    assert client.delete(f"{BASE}/{iid}").status_code == 200
    assert client.get(f"{BASE}/deleted").get_json()["total"] == 1

    assert client.post(f"{BASE}/{iid}/restore").status_code == 200
    assert client.get(f"{BASE}/{iid}").status_code == 200

    # purge only applies to soft-deleted rows
    assert client.delete(f"{BASE}/{iid}/purge").status_code == 422
    client.delete(f"{BASE}/{iid}")
    assert client.delete(f"{BASE}/{iid}/purge").status_code == 200
    assert client.get(f"{BASE}/deleted").get_json()["total"] == 0


# ── SLA & action items ────────────────────────────────────────────────────────


def test_incident_sla_endpoint(client, incident):
    res = client.get(f"{BASE}/{incident['id']}/sla")
    assert res.status_code == 200
    body = res.get_json()
    assert body["priority"] == "P1"
    assert body["response_target_minutes"] == 30


def test_action_items_crud(client, incident):
    url = f"{BASE}/{incident['id']}/action-items"
    res = client.post(url, json={"title": "Add canary stage", "due_date": "2025-05-01"})
    assert res.status_code == 201
    item = res.get_json()
    assert item["status"] == "Open"

    res = client.put(f"/api/v1/action-items/{item['id']}", json={"status": "Done"})
    assert res.get_json()["status"] == "Done"
    assert client.get(url).get_json()["total"] == 1

    res = client.put(f"/api/v1/action-items/{item['id']}", json={"status": "Someday"})
    assert res.status_code == 422

    assert client.delete(f"/api/v1/action-items/{item['id']}").status_code == 200
    assert client.get(url).get_json()["total"] == 0


def test_overdue_count_endpoint(client, incident):
    client.post(f"{BASE}/{incident['id']}/action-items", json={
        "title": "Rotate credentials", "due_date": "2020-01-01",
    })
    res = client.get("/api/v1/action-items/overdue-count")
    assert res.get_json() == {"overdue": 1}
