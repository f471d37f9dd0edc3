"""
Tests: Dashboard metrics (MTTR, MTTA, recurrence, breakdowns).
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.core.exceptions import ValidationError
from app.models import db as _db
from app.models.incident import Incident
from app.models.service import Service
from app.services.metrics_service import compute_dashboard, get_dashboard


def _dt(text: str) -> datetime:
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)


def _make_service(name: str) -> Service:
    s = Service(name=name, category="Infrastructure", tier="T2")
    _db.session.add(s)
    _db.session.commit()
    return s


def _make_incident(service_id: int, **overrides) -> Incident:
    values = dict(
        title="Disk pressure",
        service_id=service_id,
        severity="Medium",
        impact="Medium",
        status="Active",
        started_at=_dt("2025-05-01T08:00:00"),
        detected_at=_dt("2025-05-01T08:10:00"),
    )
    values.update(overrides)
    inc = Incident(**values)
    inc.refresh_derived()
    _db.session.add(inc)
    _db.session.commit()
    return inc


@pytest.fixture()
def _seeded():
    storage = _make_service("Storage")
    network = _make_service("Network Core")
    _make_incident(
        storage.id, status="Resolved",
        acknowledged_at=_dt("2025-05-01T08:20:00"),
        resolved_at=_dt("2025-05-01T09:00:00"),        # 60 min, ack 10 min
        tickets_submitted=4, is_recurring=True,
    )
    _make_incident(
        network.id, severity="Critical", impact="Critical", status="Resolved",
        started_at=_dt("2025-05-02T08:00:00"), detected_at=_dt("2025-05-02T08:00:00"),
        responded_at=_dt("2025-05-02T08:30:00"),
        resolved_at=_dt("2025-05-02T11:00:00"),        # 180 min, ack 30 min (responded)
        tickets_submitted=2,
    )
    _make_incident(storage.id, started_at=_dt("2025-05-03T08:00:00"),
                   detected_at=_dt("2025-05-03T08:00:00"))
    return storage, network


def test_dashboard_aggregates(_seeded):
    result = get_dashboard("2025-05-01T00:00:00Z", "2025-05-31T23:59:59Z")
    assert result["total_incidents"] == 3
    assert result["mttr_minutes"] == 120.0
    assert result["mtta_minutes"] == 20.0
    assert result["recurrence_rate"] == 33.33
    assert result["avg_tickets"] == 2.0
    assert result["by_priority"][0] == {"category": "P3", "count": 2}
    assert {"category": "P0", "count": 1} in result["by_priority"]


def test_downtime_sorted_by_minutes(_seeded):
    result = get_dashboard("2025-05-01T00:00:00Z", "2025-05-31T23:59:59Z")
    downtime = result["downtime_by_service"]
    assert [d["service_name"] for d in downtime] == ["Network Core", "Storage"]
    assert downtime[0]["total_minutes"] == 180


def test_service_filter(_seeded):
    storage, _ = _seeded
    result = get_dashboard("2025-05-01T00:00:00Z", "2025-05-31T23:59:59Z", [storage.id])
    assert result["total_incidents"] == 2
    assert result["by_service"] == [{"category": "Storage", "count": 2}]


def test_soft_deleted_incidents_excluded(_seeded):
    inc = _db.session.query(Incident).filter_by(severity="Critical").one()
    inc.soft_delete()
    _db.session.commit()
    result = get_dashboard("2025-05-01T00:00:00Z", "2025-05-31T23:59:59Z")
    assert result["total_incidents"] == 2


def test_empty_range_returns_zeroes():
    result = compute_dashboard([])
    assert result["total_incidents"] == 0
    assert result["mttr_minutes"] == 0.0
    assert result["recurrence_rate"] == 0.0


def test_date_only_end_covers_whole_day(_seeded):
    storage, _ = _seeded
    _make_incident(
        storage.id, started_at=_dt("2025-05-31T12:00:00"), detected_at=_dt("2025-05-31T12:05:00"),
    )
    _make_incident(
        storage.id, started_at=_dt("2025-06-01T00:00:00"), detected_at=_dt("2025-06-01T00:05:00"),
    )
    result = get_dashboard("2025-05-01", "2025-05-31")
    assert result["total_incidents"] == 4


def test_dashboard_endpoint_date_only_end(client, _seeded):
    storage, _ = _seeded
    _make_incident(
        storage.id, started_at=_dt("2025-05-31T23:30:00"), detected_at=_dt("2025-05-31T23:40:00"),
    )
    res = client.get("/api/v1/metrics/dashboard?start=2025-05-01&end=2025-05-31")
    assert res.status_code == 200
    assert res.get_json()["total_incidents"] == 4


def test_end_before_start_rejected():
    with pytest.raises(ValidationError):
        get_dashboard("2025-06-01T00:00:00Z", "2025-05-01T00:00:00Z")


def test_dashboard_endpoint(client, _seeded):
    storage, network = _seeded
    res = client.get(
        f"/api/v1/metrics/dashboard?start=2025-05-01T00:00:00Z&end=2025-05-31T23:59:59Z"
        f"&service_id={storage.id}&service_id={network.id}"
    )
    assert res.status_code == 200
    assert res.get_json()["total_incidents"] == 3


def test_dashboard_endpoint_requires_bounds(client):
    res = client.get("/api/v1/metrics/dashboard?start=2025-05-01")
    assert res.status_code == 400


def test_dashboard_endpoint_bad_timestamp(client):
    res = client.get("/api/v1/metrics/dashboard?start=yesterday&end=today")
    assert res.status_code == 422
