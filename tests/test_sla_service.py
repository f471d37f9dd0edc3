"""
Tests: SLA definitions and live SLA evaluation.

Default definitions (P0..P4) are seeded by the `session` fixture.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

import app.services.sla_service as svc
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.incident import Incident
from app.models.service import Service
from app.models.sla import SlaDefinition


def _dt(text: str) -> datetime:
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)


def _make_incident(**overrides) -> Incident:
    service = Service(name="Billing", category="Application", tier="T2")
    _db.session.add(service)
    _db.session.flush()
    values = dict(
        title="Invoice export failing",
        service_id=service.id,
        severity="High",
        impact="High",            # → P1: respond 30 min, resolve 240 min
        status="Active",
        started_at=_dt("2025-03-01T10:00:00"),
        detected_at=_dt("2025-03-01T10:05:00"),
    )
    values.update(overrides)
    inc = Incident(**values)
    inc.refresh_derived()
    _db.session.add(inc)
    _db.session.commit()
    return inc


def _definition(priority: str) -> SlaDefinition:
    stmt = select(SlaDefinition).where(SlaDefinition.priority == priority)
    return _db.session.execute(stmt).scalars().first()


# ── Evaluation ────────────────────────────────────────────────────────────────


def test_open_incident_breaches_response_target_after_now():
    inc = _make_incident()
    status = svc.compute_sla_status(inc, now=_dt("2025-03-01T10:40:00"))
    assert status.priority == "P1"
    assert status.response_target_minutes == 30
    assert status.response_elapsed_minutes == 35
    assert status.response_breached is True
    assert status.resolve_elapsed_minutes == 40
    assert status.resolve_breached is False


def test_breach_is_strictly_greater_than_target():
    inc = _make_incident()
    status = svc.compute_sla_status(inc, now=_dt("2025-03-01T10:35:00"))
    assert status.response_elapsed_minutes == 30
    assert status.response_breached is False


def test_responded_and_resolved_timestamps_stop_the_clock():
    inc = _make_incident(
        responded_at=_dt("2025-03-01T10:20:00"),
        resolved_at=_dt("2025-03-01T13:00:00"),
        status="Resolved",
    )
    status = svc.compute_sla_status(inc, now=_dt("2025-06-01T00:00:00"))
    assert status.response_elapsed_minutes == 15
    assert status.resolve_elapsed_minutes == 180
    assert status.breached is False


def test_same_incident_flips_to_breached_as_time_passes():
    inc = _make_incident()
    early = svc.compute_sla_status(inc, now=_dt("2025-03-01T10:10:00"))
    late = svc.compute_sla_status(inc, now=_dt("2025-03-01T15:00:00"))
    assert early.breached is False
    assert late.resolve_breached is True


def test_missing_definition_means_no_policy():
    inc = _make_incident()
    svc.update_sla_definition(_definition("P1").id, {"is_active": False})
    status = svc.compute_sla_status(inc, now=_dt("2025-04-01T00:00:00"))
    assert status.response_target_minutes is None
    assert status.resolve_target_minutes is None
    assert status.response_breached is False
    assert status.resolve_breached is False


def test_list_breaches_only_returns_breached_incidents():
    breached = _make_incident()
    _db.session.add(Incident(
        title="Fine", service_id=breached.service_id, severity="Low", impact="Low",
        status="Active", priority="P4",
        started_at=_dt("2025-03-01T10:30:00"), detected_at=_dt("2025-03-01T10:31:00"),
    ))
    _db.session.commit()
    rows = svc.list_sla_breaches(now=_dt("2025-03-01T10:45:00"))
    assert [r["incident_id"] for r in rows] == [breached.id]
    assert rows[0]["title"] == "Invoice export failing"


def test_get_incident_sla_for_missing_incident():
    with pytest.raises(NotFoundError):
        svc.get_incident_sla(999)


# ── Definitions ───────────────────────────────────────────────────────────────


def test_defaults_seeded_once():
    assert len(svc.list_sla_definitions()) == 5
    assert svc.seed_defaults() == 0


def test_second_active_definition_for_priority_conflicts():
    with pytest.raises(ConflictError):
        svc.create_sla_definition({
            "name": "P1 strict", "priority": "P1",
            "response_time_minutes": 10, "resolve_time_minutes": 60,
        })


def test_inactive_definition_can_coexist():
    created = svc.create_sla_definition({
        "name": "P1 draft", "priority": "P1", "is_active": False,
        "response_time_minutes": 10, "resolve_time_minutes": 60,
    })
    assert created["is_active"] is False
    assert len(svc.list_sla_definitions(active_only=True)) == 5


def test_resolve_target_below_response_rejected():
    with pytest.raises(ValidationError, match="greater than or equal"):
        svc.update_sla_definition(_definition("P2").id, {"resolve_time_minutes": 10})


def test_unknown_priority_rejected():
    with pytest.raises(ValidationError, match="Invalid priority"):
        svc.create_sla_definition({
            "name": "P9", "priority": "P9",
            "response_time_minutes": 10, "resolve_time_minutes": 60,
        })


def test_definitions_api_round_trip(client):
    res = client.get("/api/v1/sla-definitions")
    assert res.status_code == 200
    assert res.get_json()["total"] == 5

    p4 = _definition("P4")
    res = client.put(f"/api/v1/sla-definitions/{p4.id}", json={"response_time_minutes": 0})
    assert res.status_code == 422

    res = client.delete(f"/api/v1/sla-definitions/{p4.id}")
    assert res.status_code == 200
    res = client.delete(f"/api/v1/sla-definitions/{p4.id}")
    assert res.status_code == 404
