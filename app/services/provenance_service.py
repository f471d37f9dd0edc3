"""
Incident Ledger
Provenance Service — the append-only field provenance ledger and its retention.

Enrichment jobs and provenance rows together form an audit log. Rows are
never updated in place. Retention is explicit: export_audit_log() hands back
everything older than a horizon as plain dicts for archival, and
prune_audit_log() then removes exactly that set. Running jobs are never
pruned.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import delete, select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.enrichment import (
    SOURCE_TYPES,
    TERMINAL_JOB_STATUSES,
    EnrichmentJob,
    FieldProvenance,
)
from app.utils.helpers import as_utc, iso_utc, parse_datetime, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 730


def record_provenance(
    *,
    entity_type: str,
    entity_id,
    field_name: str,
    source_type: str,
    source_ref: str = "",
    source_version: str = "",
    input_hash: str = "",
    meta: dict | None = None,
) -> FieldProvenance:
    """Append one provenance row. Flushes only; the caller owns the commit.

    Raises:
        ValidationError: Blank entity_type/entity_id/field_name or unknown source_type.
    """
    entity_id = str(entity_id if entity_id is not None else "").strip()
    if not (entity_type or "").strip() or not entity_id or not (field_name or "").strip():
        raise ValidationError("Provenance entity_type/entity_id/field_name are required")
    if source_type not in SOURCE_TYPES:
        raise ValidationError(
            f"Invalid provenance source_type '{source_type}'. "
            f"Must be one of: {', '.join(sorted(SOURCE_TYPES))}",
        )
    row = FieldProvenance(
        entity_type=entity_type,
        entity_id=entity_id,
        field_name=field_name,
        source_type=source_type,
        source_ref=source_ref or "",
        source_version=source_version or "",
        input_hash=input_hash or "",
        meta_json=json.dumps(meta or {}, sort_keys=True),
    )
    db.session.add(row)
    db.session.flush()
    return row


def list_provenance(entity_type: str, entity_id) -> list[dict]:
    """Provenance rows for one entity, newest first."""
    stmt = (
        select(FieldProvenance)
        .where(
            FieldProvenance.entity_type == entity_type,
            FieldProvenance.entity_id == str(entity_id),
        )
        .order_by(FieldProvenance.recorded_at.desc(), FieldProvenance.id.desc())
    )
    return [p.to_dict() for p in db.session.execute(stmt).scalars().all()]


# ── Retention ────────────────────────────────────────────────────────────────


def default_horizon() -> datetime:
    days = int(current_app.config.get("PROVENANCE_RETENTION_DAYS", DEFAULT_RETENTION_DAYS))
    return utcnow() - timedelta(days=days)


def _resolve_horizon(before) -> datetime:
    if before is None:
        return default_horizon()
    try:
        horizon = parse_datetime(before)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"before": before}) from exc
    if horizon is None:
        return default_horizon()
    return as_utc(horizon)


def _prunable_jobs(horizon: datetime):
    return select(EnrichmentJob).where(
        EnrichmentJob.status.in_(TERMINAL_JOB_STATUSES),
        EnrichmentJob.created_at < horizon,
    )


def _prunable_provenance(horizon: datetime):
    return select(FieldProvenance).where(FieldProvenance.recorded_at < horizon)


def export_audit_log(before=None) -> dict:
    """Return terminal jobs and provenance rows older than ``before``.

    ``before`` defaults to now minus PROVENANCE_RETENTION_DAYS.
    """
    horizon = _resolve_horizon(before)
    jobs = db.session.execute(_prunable_jobs(horizon).order_by(EnrichmentJob.id)).scalars().all()
    rows = db.session.execute(
        _prunable_provenance(horizon).order_by(FieldProvenance.id)
    ).scalars().all()
    return {
        "before": iso_utc(horizon),
        "jobs": [j.to_dict() for j in jobs],
        "provenance": [p.to_dict() for p in rows],
    }


def prune_audit_log(before=None) -> dict:
    """Delete what export_audit_log(before) returns. Returns the deleted counts."""
    horizon = _resolve_horizon(before)
    job_ids = db.session.execute(
        _prunable_jobs(horizon).with_only_columns(EnrichmentJob.id)
    ).scalars().all()
    prov_ids = db.session.execute(
        _prunable_provenance(horizon).with_only_columns(FieldProvenance.id)
    ).scalars().all()
    if job_ids:
        db.session.execute(delete(EnrichmentJob).where(EnrichmentJob.id.in_(job_ids)))
    if prov_ids:
        db.session.execute(delete(FieldProvenance).where(FieldProvenance.id.in_(prov_ids)))
    db.session.commit()
    logger.warning(
        "Audit log pruned",
        extra={"before": iso_utc(horizon), "jobs": len(job_ids), "provenance": len(prov_ids)},
    )
    return {"before": iso_utc(horizon), "jobs_deleted": len(job_ids), "provenance_deleted": len(prov_ids)}
