"""
Incident Ledger
Finalization Service — quarter close, overrides and drift detection.

finalize_quarter() is the integrity-critical path:
  1. lock the quarter row
  2. recompute readiness and load overrides
  3. gate: every critical (rule_key, incident_id) must carry an override
  4. compute dashboard, id lists and the inputs hash
  5. upsert QuarterSnapshot + QuarterFinalization, write audit, commit once

A failed gate rolls back and writes nothing. get_finalization_status()
recomputes the inputs hash from current facts and compares it to the
snapshot's stored hash; a mismatch means facts changed after close.

The inputs hash covers fact fields only. Narrative text and anything
produced by enrichment jobs are excluded, so prose edits never count as drift.
"""

from __future__ import annotations

import json
import logging

from flask import current_app
from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.incident import TIMESTAMP_FIELDS, Incident
from app.models.quarter import (
    SNAPSHOT_SCHEMA_VERSION,
    QuarterConfig,
    QuarterFinalization,
    QuarterReadinessOverride,
    QuarterSnapshot,
)
from app.services.incident_service import incidents_in_range
from app.services.metrics_service import compute_dashboard
from app.services.readiness_service import RULES_BY_KEY, evaluate_incidents, get_quarter
from app.utils.hashing import hash_json
from app.utils.helpers import as_utc, iso_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_NOTABLE_LIMIT = 5


# ═════════════════════════════════════════════════════════════════════════════
# Inputs hash & id lists
# ═════════════════════════════════════════════════════════════════════════════


def _fact_projection(inc: Incident) -> dict:
    row = {
        "id": inc.id,
        "service_id": inc.service_id,
        "severity": inc.severity,
        "impact": inc.impact,
        "status": inc.status,
        "external_ref": inc.external_ref or "",
        "reopen_count": inc.reopen_count or 0,
        # Counters feed avg_tickets / recurrence_rate in the snapshot dashboard.
        "tickets_submitted": inc.tickets_submitted or 0,
        "affected_users": inc.affected_users or 0,
        "is_recurring": bool(inc.is_recurring),
    }
    for field in TIMESTAMP_FIELDS:
        row[field] = iso_utc(getattr(inc, field))
    return row


def compute_inputs_hash(incidents: list[Incident]) -> str:
    """Stable digest over the sorted-by-id fact projection of ``incidents``."""
    projection = [_fact_projection(i) for i in sorted(incidents, key=lambda i: i.id)]
    return hash_json(projection)


def notable_incident_ids(incidents: list[Incident], limit: int) -> list[int]:
    """Top ``limit`` incidents by duration (unresolved count as 0), ties by id."""
    ranked = sorted(incidents, key=lambda i: (-(i.duration_minutes or 0), i.id))
    return [i.id for i in ranked[:limit]]


def carried_over_incident_ids(incidents: list[Incident], quarter: QuarterConfig) -> list[int]:
    """Incidents not resolved before the quarter window closed."""
    end = quarter.window_end
    return sorted(
        i.id for i in incidents
        if i.resolved_at is None or as_utc(i.resolved_at) >= end
    )


def _notable_limit() -> int:
    return int(current_app.config.get("NOTABLE_INCIDENT_LIMIT", DEFAULT_NOTABLE_LIMIT))


# ═════════════════════════════════════════════════════════════════════════════
# Overrides
# ═════════════════════════════════════════════════════════════════════════════


def _overrides_for(quarter_id: int) -> list[QuarterReadinessOverride]:
    stmt = (
        select(QuarterReadinessOverride)
        .where(QuarterReadinessOverride.quarter_id == quarter_id)
        .order_by(
            QuarterReadinessOverride.rule_key,
            QuarterReadinessOverride.incident_id,
        )
    )
    return list(db.session.execute(stmt).scalars().all())


def list_overrides(quarter_id: int) -> list[dict]:
    get_quarter(quarter_id)
    return [o.to_dict() for o in _overrides_for(quarter_id)]


def upsert_override(
    quarter_id: int,
    rule_key: str,
    incident_id: int,
    reason: str,
    approved_by: str = "",
    actor: str = "system",
) -> dict:
    """Record or replace the override for (quarter_id, rule_key, incident_id).

    Idempotent on the composite key: a second call rewrites reason/approved_by.

    Raises:
        NotFoundError: Quarter does not exist.
        ValidationError: Missing rule_key/incident_id, unknown rule, blank reason.
    """
    get_quarter(quarter_id)
    rule_key = (rule_key or "").strip()
    if not rule_key:
        raise ValidationError("rule_key is required", details={"rule_key": "required"})
    if rule_key not in RULES_BY_KEY:
        raise ValidationError(
            f"Unknown readiness rule '{rule_key}'. Must be one of: {', '.join(RULES_BY_KEY)}",
            details={"rule_key": rule_key},
        )
    if not isinstance(incident_id, int) or isinstance(incident_id, bool):
        raise ValidationError("incident_id is required", details={"incident_id": incident_id})
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Override reason is required", details={"reason": "required"})

    stmt = select(QuarterReadinessOverride).where(
        QuarterReadinessOverride.quarter_id == quarter_id,
        QuarterReadinessOverride.rule_key == rule_key,
        QuarterReadinessOverride.incident_id == incident_id,
    )
    override = db.session.execute(stmt).scalars().first()
    if override is None:
        override = QuarterReadinessOverride(
            quarter_id=quarter_id, rule_key=rule_key, incident_id=incident_id,
        )
        db.session.add(override)
    override.reason = reason
    override.approved_by = (approved_by or "").strip()
    db.session.flush()

    write_audit(
        entity_type="quarter_override", entity_id=override.id,
        action="quarter.override_upsert", actor=actor,
        diff={"quarter_id": quarter_id, "rule_key": rule_key, "incident_id": incident_id},
    )
    db.session.commit()
    logger.info(
        "Readiness override recorded",
        extra={"quarter_id": quarter_id, "rule_key": rule_key, "incident_id": incident_id},
    )
    return override.to_dict()


def delete_override(quarter_id: int, rule_key: str, incident_id: int, actor: str = "system") -> None:
    get_quarter(quarter_id)
    stmt = select(QuarterReadinessOverride).where(
        QuarterReadinessOverride.quarter_id == quarter_id,
        QuarterReadinessOverride.rule_key == rule_key,
        QuarterReadinessOverride.incident_id == incident_id,
    )
    override = db.session.execute(stmt).scalars().first()
    if override is None:
        raise NotFoundError(
            resource="QuarterReadinessOverride",
            resource_id=f"{quarter_id}/{rule_key}/{incident_id}",
        )
    override_id = override.id
    db.session.delete(override)
    write_audit(
        entity_type="quarter_override", entity_id=override_id,
        action="quarter.override_delete", actor=actor,
        diff={"quarter_id": quarter_id, "rule_key": rule_key, "incident_id": incident_id},
    )
    db.session.commit()
    logger.info(
        "Readiness override deleted",
        extra={"quarter_id": quarter_id, "rule_key": rule_key, "incident_id": incident_id},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Finalize / unfinalize
# ═════════════════════════════════════════════════════════════════════════════


def _locked_quarter(quarter_id: int) -> QuarterConfig:
    stmt = select(QuarterConfig).where(QuarterConfig.id == quarter_id).with_for_update()
    quarter = db.session.execute(stmt).scalars().first()
    if quarter is None:
        raise NotFoundError(resource="Quarter", resource_id=quarter_id)
    return quarter


def _snapshot_for(quarter_id: int) -> QuarterSnapshot | None:
    stmt = select(QuarterSnapshot).where(QuarterSnapshot.quarter_id == quarter_id)
    return db.session.execute(stmt).scalars().first()


def _finalization_for(quarter_id: int) -> QuarterFinalization | None:
    stmt = select(QuarterFinalization).where(QuarterFinalization.quarter_id == quarter_id)
    return db.session.execute(stmt).scalars().first()


def finalize_quarter(quarter_id: int, finalized_by: str = "", notes: str = "") -> dict:
    """Freeze a quarter's readiness, overrides and metrics into its snapshot.

    Re-finalizing replaces the snapshot and resets finalized_at.

    Raises:
        NotFoundError: Quarter does not exist.
        ValidationError: A critical finding has no matching override;
            ``details["missing_overrides"]`` lists the (rule_key, incident_id) pairs.
    """
    quarter = _locked_quarter(quarter_id)
    incidents = incidents_in_range(quarter.window_start, quarter.window_end)
    report = evaluate_incidents(quarter, incidents)
    overrides = _overrides_for(quarter_id)

    covered = {(o.rule_key, o.incident_id) for o in overrides}
    missing = sorted(report.critical_pairs() - covered)
    if missing:
        db.session.rollback()
        logger.warning(
            "Quarter finalize blocked by missing overrides",
            extra={"quarter_id": quarter_id, "missing": len(missing)},
        )
        raise ValidationError(
            f"Cannot finalize: {len(missing)} critical finding(s) lack an override",
            details={
                "missing_overrides": [
                    {"rule_key": rule_key, "incident_id": incident_id}
                    for rule_key, incident_id in missing
                ],
            },
        )

    now = utcnow()
    inputs_hash = compute_inputs_hash(incidents)
    snapshot_body = {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "quarter": {
            "id": quarter.id,
            "label": quarter.label,
            "fiscal_year": quarter.fiscal_year,
            "quarter_number": quarter.quarter_number,
            "start_date": quarter.start_date.isoformat(),
            "end_date": quarter.end_date.isoformat(),
        },
        "readiness": report.to_dict(),
        "overrides": [o.to_dict() for o in overrides],
        "dashboard": compute_dashboard(incidents, quarter.label),
        "incident_ids": [i.id for i in incidents],
        "notable_incident_ids": notable_incident_ids(incidents, _notable_limit()),
        "carried_over_incident_ids": carried_over_incident_ids(incidents, quarter),
        "generated_at": iso_utc(now),
        "inputs_hash": inputs_hash,
    }

    snapshot = _snapshot_for(quarter_id)
    if snapshot is None:
        snapshot = QuarterSnapshot(quarter_id=quarter_id)
        db.session.add(snapshot)
    snapshot.schema_version = SNAPSHOT_SCHEMA_VERSION
    snapshot.inputs_hash = inputs_hash
    snapshot.snapshot_json = json.dumps(snapshot_body, sort_keys=True)
    snapshot.created_at = now
    db.session.flush()

    finalization = _finalization_for(quarter_id)
    if finalization is None:
        finalization = QuarterFinalization(quarter_id=quarter_id)
        db.session.add(finalization)
    finalization.snapshot_id = snapshot.id
    finalization.finalized_at = now
    finalization.finalized_by = (finalized_by or "").strip() or "self"
    finalization.inputs_hash = inputs_hash
    finalization.notes = notes or ""
    db.session.flush()

    write_audit(
        entity_type="quarter", entity_id=quarter_id, action="quarter.finalize",
        actor=finalization.finalized_by,
        diff={"inputs_hash": inputs_hash, "incident_count": len(incidents)},
    )
    db.session.commit()
    logger.info(
        "Quarter finalized",
        extra={
            "quarter_id": quarter_id,
            "incident_count": len(incidents),
            "inputs_hash": inputs_hash,
        },
    )
    return finalization.to_dict()


def unfinalize_quarter(quarter_id: int, actor: str = "system") -> None:
    """Remove the finalization record. The snapshot stays for audit history."""
    get_quarter(quarter_id)
    finalization = _finalization_for(quarter_id)
    if finalization is None:
        raise ValidationError("Quarter is not finalized", details={"quarter_id": quarter_id})
    db.session.delete(finalization)
    write_audit(
        entity_type="quarter", entity_id=quarter_id, action="quarter.unfinalize", actor=actor,
    )
    db.session.commit()
    logger.info("Quarter unfinalized", extra={"quarter_id": quarter_id})


# ═════════════════════════════════════════════════════════════════════════════
# Status & snapshot
# ═════════════════════════════════════════════════════════════════════════════


def get_finalization_status(quarter_id: int) -> dict:
    quarter = get_quarter(quarter_id)
    incidents = incidents_in_range(quarter.window_start, quarter.window_end)
    report = evaluate_incidents(quarter, incidents)
    finalization = _finalization_for(quarter_id)
    snapshot = _snapshot_for(quarter_id)

    current_hash = compute_inputs_hash(incidents)
    snapshot_hash = snapshot.inputs_hash if snapshot else None
    return {
        "quarter_id": quarter_id,
        "finalized": finalization is not None,
        "finalization": finalization.to_dict() if finalization else None,
        "readiness": report.to_dict(),
        "overrides": [o.to_dict() for o in _overrides_for(quarter_id)],
        "snapshot_inputs_hash": snapshot_hash,
        "current_inputs_hash": current_hash,
        "facts_changed_since_finalization": (
            snapshot_hash is not None and snapshot_hash != current_hash
        ),
    }


def get_quarter_snapshot(quarter_id: int) -> dict:
    get_quarter(quarter_id)
    snapshot = _snapshot_for(quarter_id)
    if snapshot is None:
        raise NotFoundError(resource="QuarterSnapshot", resource_id=quarter_id)
    return snapshot.to_dict()
