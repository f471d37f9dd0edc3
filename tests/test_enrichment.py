"""
Tests: Enrichment jobs, the accept protocol and the provenance ledger.

All generation goes through LocalStubGenerator; no network is touched.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

import app.services.enrichment_service as svc
import app.services.provenance_service as prov
from app.ai.enrichment_outputs import FactorCategorizationOutput, parse_output
from app.ai.generator import LocalStubGenerator, probe_availability
from app.core.exceptions import NotFoundError, ValidationError
from app.models import db as _db
from app.models.enrichment import (
    ContributingFactor,
    FieldProvenance,
    IncidentEnrichment,
    Postmortem,
    StakeholderUpdate,
)
from app.models.incident import Incident
from app.models.service import Service


def _dt(text: str) -> datetime:
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)


def _count(model) -> int:
    return _db.session.execute(select(func.count()).select_from(model)).scalar()


def _make_incident(**overrides) -> Incident:
    service = Service(name="Search", category="Application", tier="T2")
    _db.session.add(service)
    _db.session.flush()
    values = dict(
        title="Search latency spike",
        service_id=service.id,
        severity="High",
        impact="Medium",
        status="Resolved",
        started_at=_dt("2025-07-01T09:00:00"),
        detected_at=_dt("2025-07-01T09:03:00"),
        resolved_at=_dt("2025-07-01T10:00:00"),
        root_cause="Index shard rebalancing saturated disk IO",
        resolution="Throttled rebalancing",
    )
    values.update(overrides)
    inc = Incident(**values)
    inc.refresh_derived()
    _db.session.add(inc)
    _db.session.commit()
    return inc


def _run(job_type: str, incident_id: int, generator=None) -> dict:
    generator = generator or LocalStubGenerator()
    return svc.run_incident_enrichment(
        job_type, incident_id, generator, probe_availability(generator),
    )


# ── Job lifecycle ─────────────────────────────────────────────────────────────


def test_job_completes_exactly_once():
    job = svc.create_job_running("incident_executive_summary", "incident", 1, "abc")
    assert job.status == "running"
    done = svc.complete_job_success(job.id, {"summary": "ok"})
    assert done.status == "succeeded"
    assert done.completed_at is not None
    with pytest.raises(ValidationError, match="already succeeded"):
        svc.complete_job_failure(job.id, "late failure")


def test_failed_job_records_error():
    job = svc.create_job_running("stakeholder_update", "incident", 1, "abc")
    done = svc.complete_job_failure(job.id, "boom")
    assert done.status == "failed"
    assert done.error == "boom"


def test_job_requires_input_hash():
    with pytest.raises(ValidationError, match="input_hash"):
        svc.create_job_running("incident_executive_summary", "incident", 1, "  ")


def test_complete_missing_job():
    with pytest.raises(NotFoundError):
        svc.complete_job_success(12345, {})


# ── Generation ────────────────────────────────────────────────────────────────


def test_executive_summary_with_stub():
    inc = _make_incident()
    job = _run("incident_executive_summary", inc.id)
    assert job["status"] == "succeeded"
    assert job["output"]["summary"].startswith("Executive summary.")
    assert job["model_id"] == LocalStubGenerator().primary_model
    assert job["prompt_version"] == "v1"
    assert job["entity_type"] == "incident"
    assert job["entity_id"] == str(inc.id)


def test_unavailable_generator_fails_job():
    inc = _make_incident()
    job = _run("incident_executive_summary", inc.id, LocalStubGenerator(available=False))
    assert job["status"] == "failed"
    assert job["error"] == "AI unavailable"


def test_factor_categorization_is_computed():
    inc = _make_incident()
    job = _run("factor_categorization", inc.id, LocalStubGenerator(available=False))
    assert job["status"] == "succeeded"
    assert job["model_id"] == ""
    assert job["prompt_version"] == "computed-v1"
    assert job["output"]["factors"][0]["description"].startswith("Index shard")


def test_same_facts_same_input_hash():
    inc = _make_incident()
    first = _run("stakeholder_update", inc.id)
    second = _run("stakeholder_update", inc.id)
    assert first["input_hash"] == second["input_hash"]
    assert first["id"] != second["id"]


def test_unknown_job_type_creates_nothing():
    inc = _make_incident()
    with pytest.raises(ValidationError):
        _run("haiku", inc.id)
    assert svc.list_jobs() == []


def test_deleted_incident_not_enriched():
    inc = _make_incident()
    inc.soft_delete()
    _db.session.commit()
    with pytest.raises(NotFoundError):
        _run("incident_executive_summary", inc.id)


def test_list_jobs_filters():
    inc = _make_incident()
    _run("incident_executive_summary", inc.id)
    _run("stakeholder_update", inc.id)
    assert len(svc.list_jobs(entity_type="incident", entity_id=inc.id)) == 2
    assert len(svc.list_jobs(job_type="stakeholder_update")) == 1


# ── Accept ────────────────────────────────────────────────────────────────────


def test_accept_summary_upserts_and_appends_provenance():
    inc = _make_incident()
    job = _run("incident_executive_summary", inc.id)

    result = svc.accept_job(job["id"], actor="editor")
    assert result["provenance"]["source_type"] == "ai"
    assert result["provenance"]["field_name"] == "executive_summary"
    assert result["provenance"]["meta"]["job_id"] == job["id"]
    assert result["provenance"]["source_version"] == "v1"

    row = _db.session.get(IncidentEnrichment, inc.id)
    assert row.executive_summary == job["output"]["summary"]
    assert row.last_job_id == job["id"]

    svc.accept_job(job["id"])
    assert _count(IncidentEnrichment) == 1
    assert _count(FieldProvenance) == 2


def test_accept_does_not_touch_facts():
    inc = _make_incident()
    before = (inc.severity, inc.status, inc.root_cause)
    svc.accept_job(_run("incident_executive_summary", inc.id)["id"])
    _db.session.refresh(inc)
    assert (inc.severity, inc.status, inc.root_cause) == before


def test_accept_factors_marks_computed():
    inc = _make_incident()
    job = _run("factor_categorization", inc.id)
    result = svc.accept_job(job["id"])
    assert result["provenance"]["source_type"] == "computed"
    factor = _db.session.execute(select(ContributingFactor)).scalars().one()
    assert factor.category == "Process"
    assert factor.is_root is True


def test_accept_stakeholder_appends_row():
    inc = _make_incident()
    job = _run("stakeholder_update", inc.id)
    result = svc.accept_job(job["id"])
    update = _db.session.execute(select(StakeholderUpdate)).scalars().one()
    assert update.content.startswith("Stakeholder update.")
    assert result["provenance"]["entity_type"] == "stakeholder_update"
    assert result["provenance"]["entity_id"] == str(update.id)


def test_accept_postmortem_merges_markdown():
    inc = _make_incident()
    _db.session.add(Postmortem(
        incident_id=inc.id, status="review", content_json='{"owner": "sre"}',
    ))
    _db.session.commit()
    svc.accept_job(_run("postmortem_draft", inc.id)["id"])
    pm = _db.session.execute(select(Postmortem)).scalars().one()
    assert pm.content["owner"] == "sre"
    assert pm.content["markdown"].startswith("# Post-Mortem")
    assert pm.status == "review"


def test_accept_failed_job_rejected():
    inc = _make_incident()
    job = _run("incident_executive_summary", inc.id, LocalStubGenerator(available=False))
    with pytest.raises(ValidationError, match="succeeded"):
        svc.accept_job(job["id"])
    assert _count(FieldProvenance) == 0


def test_accept_malformed_output_rolls_back():
    inc = _make_incident()
    job = svc.create_job_running("incident_executive_summary", "incident", inc.id, "h")
    svc.complete_job_success(job.id, {"text": "wrong key"})
    with pytest.raises(ValidationError, match="Malformed"):
        svc.accept_job(job.id)
    assert _count(IncidentEnrichment) == 0


def test_parse_output_shapes():
    parsed = parse_output("factor_categorization", {
        "factors": [{"category": "Tooling", "description": "No alert", "is_root": False}],
    })
    assert isinstance(parsed, FactorCategorizationOutput)
    assert parsed.factors[0].category == "Tooling"
    with pytest.raises(ValidationError):
        parse_output("factor_categorization", {"factors": [{"category": "Luck"}]})
    with pytest.raises(ValidationError):
        parse_output("stakeholder_update", ["not", "an", "object"])


# ── Provenance retention ──────────────────────────────────────────────────────


def test_export_then_prune_keeps_running_jobs():
    inc = _make_incident()
    svc.accept_job(_run("incident_executive_summary", inc.id)["id"])
    running = svc.create_job_running("stakeholder_update", "incident", inc.id, "h")

    exported = prov.export_audit_log(before="2999-01-01T00:00:00Z")
    assert len(exported["jobs"]) == 1
    assert len(exported["provenance"]) == 1

    counts = prov.prune_audit_log(before="2999-01-01T00:00:00Z")
    assert counts["jobs_deleted"] == 1
    assert counts["provenance_deleted"] == 1
    assert [j["id"] for j in svc.list_jobs()] == [running.id]


def test_default_horizon_keeps_recent_rows():
    inc = _make_incident()
    svc.accept_job(_run("incident_executive_summary", inc.id)["id"])
    counts = prov.prune_audit_log()
    assert counts["jobs_deleted"] == 0
    assert counts["provenance_deleted"] == 0
    assert _count(FieldProvenance) == 1


def test_record_provenance_rejects_unknown_source():
    with pytest.raises(ValidationError, match="source_type"):
        prov.record_provenance(
            entity_type="incident", entity_id=1, field_name="title", source_type="guess",
        )


# ── HTTP surface ──────────────────────────────────────────────────────────────


def test_enrichment_api_flow(client):
    inc = _make_incident()
    res = client.post("/api/v1/enrichments/run", json={
        "job_type": "incident_executive_summary", "incident_id": inc.id,
    })
    assert res.status_code == 201
    job = res.get_json()
    assert job["status"] == "succeeded"

    res = client.post(f"/api/v1/enrichments/jobs/{job['id']}/accept", headers={"X-Actor": "editor"})
    assert res.status_code == 200

    res = client.get(f"/api/v1/enrichments/provenance?entity_type=incident&entity_id={inc.id}")
    assert res.status_code == 200
    assert res.get_json()["total"] == 1

    res = client.get(f"/api/v1/enrichments/jobs/{job['id']}")
    assert res.get_json()["output"]["summary"].startswith("Executive summary.")


def test_enrichment_api_errors(client):
    res = client.post("/api/v1/enrichments/run", json={"incident_id": 1})
    assert res.status_code == 400
    res = client.post("/api/v1/enrichments/run", json={
        "job_type": "incident_executive_summary", "incident_id": 999,
    })
    assert res.status_code == 404
    res = client.get("/api/v1/enrichments/provenance?entity_type=incident")
    assert res.status_code == 400
    res = client.get("/api/v1/enrichments/jobs/999")
    assert res.status_code == 404


def test_generator_health_endpoint(client):
    res = client.get("/api/v1/enrichments/generator/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["available"] is True
    assert body["base_url"] == "stub://local"
