"""
Tests: Quarter finalization — override gating, snapshot idempotence,
drift detection, unfinalize and the HTTP surface.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

import app.services.finalization_service as fin
import app.services.incident_service as incidents
from app.core.exceptions import NotFoundError, ValidationError
from app.models import db as _db
from app.models.audit import AuditLog
from app.models.incident import Incident
from app.models.quarter import (
    QuarterConfig,
    QuarterFinalization,
    QuarterReadinessOverride,
    QuarterSnapshot,
)
from app.models.service import Service
from app.services.quarter_service import delete_quarter


def _dt(text: str) -> datetime:
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)


def _count(model) -> int:
    return _db.session.execute(select(func.count()).select_from(model)).scalar()


def _make_quarter() -> QuarterConfig:
    q = QuarterConfig(
        fiscal_year=2026, quarter_number=1, label="FY2026 Q1",
        start_date=_dt("2026-01-01T00:00:00").date(),
        end_date=_dt("2026-03-31T00:00:00").date(),
    )
    _db.session.add(q)
    _db.session.commit()
    return q


def _make_service() -> Service:
    s = Service(name="Orders", category="Application", tier="T1")
    _db.session.add(s)
    _db.session.commit()
    return s


def _make_incident(service_id: int, **overrides) -> Incident:
    values = dict(
        title="Order queue backlog",
        service_id=service_id,
        severity="Medium",
        impact="High",
        status="Resolved",
        started_at=_dt("2026-01-15T12:00:00"),
        detected_at=_dt("2026-01-15T12:05:00"),
        resolved_at=_dt("2026-01-15T13:00:00"),
    )
    values.update(overrides)
    inc = Incident(**values)
    inc.refresh_derived()
    _db.session.add(inc)
    _db.session.commit()
    return inc


@pytest.fixture()
def ctx():
    return _make_quarter(), _make_service()


# ── Gate ──────────────────────────────────────────────────────────────────────


def test_finalize_clean_quarter(ctx):
    q, s = ctx
    _make_incident(s.id)
    result = fin.finalize_quarter(q.id, finalized_by="ops-lead", notes="Q1 close")
    assert result["finalized_by"] == "ops-lead"
    assert result["notes"] == "Q1 close"

    status = fin.get_finalization_status(q.id)
    assert status["finalized"] is True
    assert status["facts_changed_since_finalization"] is False
    assert status["snapshot_inputs_hash"] == result["inputs_hash"]


def test_finalized_by_defaults_to_self(ctx):
    q, _ = ctx
    assert fin.finalize_quarter(q.id)["finalized_by"] == "self"


def test_missing_override_blocks_and_writes_nothing(ctx):
    q, s = ctx
    inc = _make_incident(s.id, resolved_at=None)
    with pytest.raises(ValidationError) as exc:
        fin.finalize_quarter(q.id)
    assert exc.value.details["missing_overrides"] == [
        {"rule_key": "resolved_requires_resolved_at", "incident_id": inc.id},
    ]
    assert _count(QuarterSnapshot) == 0
    assert _count(QuarterFinalization) == 0


def test_matching_override_unblocks_finalize(ctx):
    q, s = ctx
    inc = _make_incident(s.id, resolved_at=None)
    fin.upsert_override(
        q.id, "resolved_requires_resolved_at", inc.id,
        reason="Resolved in vendor ticket, timestamp unavailable", approved_by="cto",
    )
    fin.finalize_quarter(q.id)
    snapshot = fin.get_quarter_snapshot(q.id)["snapshot"]
    assert snapshot["overrides"][0]["incident_id"] == inc.id
    assert snapshot["overrides"][0]["approved_by"] == "cto"


def test_override_for_other_rule_does_not_count(ctx):
    q, s = ctx
    inc = _make_incident(s.id, resolved_at=None)
    fin.upsert_override(q.id, "timestamp_ordering", inc.id, reason="wrong rule")
    with pytest.raises(ValidationError):
        fin.finalize_quarter(q.id)


def test_carried_over_alone_does_not_block(ctx):
    q, s = ctx
    inc = _make_incident(s.id, status="Active", resolved_at=None)
    fin.finalize_quarter(q.id)
    snapshot = fin.get_quarter_snapshot(q.id)["snapshot"]
    assert snapshot["carried_over_incident_ids"] == [inc.id]


# ── Overrides ─────────────────────────────────────────────────────────────────


def test_override_upsert_replaces_not_duplicates(ctx):
    q, s = ctx
    inc = _make_incident(s.id, resolved_at=None)
    fin.upsert_override(q.id, "resolved_requires_resolved_at", inc.id, reason="first")
    fin.upsert_override(q.id, "resolved_requires_resolved_at", inc.id, reason="second", approved_by="vp")
    rows = fin.list_overrides(q.id)
    assert len(rows) == 1
    assert rows[0]["reason"] == "second"
    assert rows[0]["approved_by"] == "vp"


def test_override_requires_reason(ctx):
    q, s = ctx
    inc = _make_incident(s.id)
    with pytest.raises(ValidationError, match="reason"):
        fin.upsert_override(q.id, "timestamp_ordering", inc.id, reason="   ")
    assert _count(QuarterReadinessOverride) == 0


def test_override_rejects_unknown_rule(ctx):
    q, s = ctx
    inc = _make_incident(s.id)
    with pytest.raises(ValidationError, match="Unknown readiness rule"):
        fin.upsert_override(q.id, "made_up_rule", inc.id, reason="x")


def test_delete_override(ctx):
    q, s = ctx
    inc = _make_incident(s.id)
    fin.upsert_override(q.id, "timestamp_ordering", inc.id, reason="x")
    fin.delete_override(q.id, "timestamp_ordering", inc.id)
    assert fin.list_overrides(q.id) == []
    with pytest.raises(NotFoundError):
        fin.delete_override(q.id, "timestamp_ordering", inc.id)


# ── Snapshot & drift ──────────────────────────────────────────────────────────


def test_refinalize_is_idempotent(ctx):
    q, s = ctx
    _make_incident(s.id)
    _make_incident(s.id, title="Second", severity="Critical")
    first = fin.finalize_quarter(q.id)
    snap_one = fin.get_quarter_snapshot(q.id)["snapshot"]
    second = fin.finalize_quarter(q.id)
    snap_two = fin.get_quarter_snapshot(q.id)["snapshot"]

    assert first["inputs_hash"] == second["inputs_hash"]
    snap_one.pop("generated_at")
    snap_two.pop("generated_at")
    assert snap_one == snap_two
    assert _count(QuarterSnapshot) == 1
    assert _count(QuarterFinalization) == 1


def test_fact_change_is_detected_as_drift(ctx):
    q, s = ctx
    inc = _make_incident(s.id)
    fin.finalize_quarter(q.id)
    before = fin.get_finalization_status(q.id)

    incidents.update_incident(inc.id, {"severity": "Critical"})

    after = fin.get_finalization_status(q.id)
    assert after["facts_changed_since_finalization"] is True
    assert after["current_inputs_hash"] != before["current_inputs_hash"]
    assert after["snapshot_inputs_hash"] == before["snapshot_inputs_hash"]


def test_narrative_change_is_not_drift(ctx):
    q, s = ctx
    inc = _make_incident(s.id)
    fin.finalize_quarter(q.id)
    incidents.update_incident(inc.id, {"root_cause": "Consumer pool exhausted", "notes": "See RCA"})
    assert fin.get_finalization_status(q.id)["facts_changed_since_finalization"] is False


def test_new_incident_in_window_is_drift(ctx):
    q, s = ctx
    _make_incident(s.id)
    fin.finalize_quarter(q.id)
    _make_incident(s.id, title="Late arrival")
    assert fin.get_finalization_status(q.id)["facts_changed_since_finalization"] is True


def test_snapshot_contents(ctx):
    q, s = ctx
    short = _make_incident(s.id, resolved_at=_dt("2026-01-15T12:30:00"))     # 30 min
    long = _make_incident(s.id, resolved_at=_dt("2026-01-15T16:00:00"))      # 240 min
    tie = _make_incident(s.id, resolved_at=_dt("2026-01-15T12:30:00"))       # 30 min
    fin.finalize_quarter(q.id)
    body = fin.get_quarter_snapshot(q.id)
    snapshot = body["snapshot"]

    assert body["schema_version"] == 1
    assert snapshot["quarter"]["label"] == "FY2026 Q1"
    assert snapshot["incident_ids"] == [short.id, long.id, tie.id]
    assert snapshot["notable_incident_ids"] == [long.id, short.id, tie.id]
    assert snapshot["dashboard"]["total_incidents"] == 3
    assert snapshot["dashboard"]["period_label"] == "FY2026 Q1"
    assert snapshot["inputs_hash"] == body["inputs_hash"]


def test_notable_limit_from_config(app, ctx):
    q, s = ctx
    for i in range(3):
        _make_incident(s.id, title=f"Incident {i}")
    app.config["NOTABLE_INCIDENT_LIMIT"] = 2
    try:
        fin.finalize_quarter(q.id)
    finally:
        app.config["NOTABLE_INCIDENT_LIMIT"] = 5
    assert len(fin.get_quarter_snapshot(q.id)["snapshot"]["notable_incident_ids"]) == 2


def test_finalize_writes_audit(ctx):
    q, _ = ctx
    fin.finalize_quarter(q.id, finalized_by="auditor")
    row = _db.session.execute(
        select(AuditLog).where(AuditLog.action == "quarter.finalize")
    ).scalars().one()
    assert row.actor == "auditor"
    assert row.entity_id == str(q.id)


# ── Unfinalize ────────────────────────────────────────────────────────────────


def test_unfinalize_keeps_snapshot(ctx):
    q, _ = ctx
    fin.finalize_quarter(q.id)
    fin.unfinalize_quarter(q.id)
    status = fin.get_finalization_status(q.id)
    assert status["finalized"] is False
    assert status["snapshot_inputs_hash"] is not None
    assert fin.get_quarter_snapshot(q.id)["quarter_id"] == q.id


def test_unfinalize_when_not_finalized_fails(ctx):
    q, _ = ctx
    with pytest.raises(ValidationError):
        fin.unfinalize_quarter(q.id)


def test_finalized_quarter_cannot_be_deleted(ctx):
    q, _ = ctx
    fin.finalize_quarter(q.id)
    with pytest.raises(ValidationError, match="unfinalize"):
        delete_quarter(q.id)


def test_snapshot_missing_before_first_finalize(ctx):
    q, _ = ctx
    with pytest.raises(NotFoundError):
        fin.get_quarter_snapshot(q.id)


# ── HTTP surface ──────────────────────────────────────────────────────────────


def test_finalize_flow_over_http(client, ctx):
    q, s = ctx
    inc = _make_incident(s.id, resolved_at=None)

    res = client.post(f"/api/v1/quarters/{q.id}/finalize", json={"finalized_by": "ops"})
    assert res.status_code == 422
    assert res.get_json()["details"]["missing_overrides"] == [
        {"rule_key": "resolved_requires_resolved_at", "incident_id": inc.id},
    ]

    res = client.post(f"/api/v1/quarters/{q.id}/overrides", json={
        "rule_key": "resolved_requires_resolved_at",
        "incident_id": inc.id,
        "reason": "Closed by vendor",
        "approved_by": "cto",
    })
    assert res.status_code == 200

    res = client.post(f"/api/v1/quarters/{q.id}/finalize", json={"finalized_by": "ops"})
    assert res.status_code == 200
    assert res.get_json()["finalized_by"] == "ops"

    res = client.get(f"/api/v1/quarters/{q.id}/finalization")
    assert res.get_json()["finalized"] is True

    res = client.get(f"/api/v1/quarters/{q.id}/snapshot")
    assert res.status_code == 200
    assert res.get_json()["snapshot"]["incident_ids"] == [inc.id]

    res = client.post(f"/api/v1/quarters/{q.id}/unfinalize")
    assert res.status_code == 200
    assert res.get_json() == {"finalized": False}


def test_override_endpoint_validates_body(client, ctx):
    q, _ = ctx
    res = client.post(f"/api/v1/quarters/{q.id}/overrides", json={"incident_id": 1})
    assert res.status_code == 400
    res = client.post(f"/api/v1/quarters/{q.id}/overrides", json={
        "rule_key": "timestamp_ordering", "incident_id": 1, "reason": "",
    })
    assert res.status_code == 422
