"""
Incident Ledger
SLA Service.

Business logic for SLA definitions and live SLA evaluation:
  - Definition CRUD with "one active definition per priority"
  - Default seeding on first start
  - compute_sla_status(): elapsed / target / breach for response and resolution

Architecture:
  Breach status is a *live query*: open incidents are measured against
  wall-clock now, so the same incident can flip from "within SLA" to
  "breached" purely because time passed. Nothing here is cached or persisted.
  A missing definition for a priority means "no policy configured" and is
  reported as None targets with no breach, never as an error.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.priority import Priority
from app.models import db
from app.models.incident import Incident
from app.models.sla import SLA_DEFAULTS, SlaDefinition
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlaStatus:
    """Point-in-time SLA evaluation for one incident."""

    incident_id: int | None
    priority: str
    response_target_minutes: int | None
    resolve_target_minutes: int | None
    response_elapsed_minutes: int | None
    resolve_elapsed_minutes: int | None
    response_breached: bool
    resolve_breached: bool

    @property
    def breached(self) -> bool:
        return self.response_breached or self.resolve_breached

    def to_dict(self) -> dict:
        return asdict(self)


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _get_definition(definition_id: int) -> SlaDefinition:
    sla = db.session.get(SlaDefinition, definition_id)
    if not sla:
        raise NotFoundError(resource="SlaDefinition", resource_id=definition_id)
    return sla


def _validate_targets(response_minutes, resolve_minutes) -> None:
    if not isinstance(response_minutes, int) or isinstance(response_minutes, bool) or response_minutes <= 0:
        raise ValidationError(
            "Response time must be a positive number of minutes",
            details={"response_time_minutes": response_minutes},
        )
    if not isinstance(resolve_minutes, int) or isinstance(resolve_minutes, bool) or resolve_minutes <= 0:
        raise ValidationError(
            "Resolve time must be a positive number of minutes",
            details={"resolve_time_minutes": resolve_minutes},
        )
    if resolve_minutes < response_minutes:
        raise ValidationError(
            "Resolve time must be greater than or equal to response time",
            details={
                "response_time_minutes": response_minutes,
                "resolve_time_minutes": resolve_minutes,
            },
        )


def _ensure_single_active(priority: str, exclude_id: int | None = None) -> None:
    stmt = select(SlaDefinition.id).where(
        SlaDefinition.priority == priority,
        SlaDefinition.is_active.is_(True),
    )
    if exclude_id is not None:
        stmt = stmt.where(SlaDefinition.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError(resource="SlaDefinition", field="active priority", value=priority)


def _minutes_between(start: datetime, end: datetime) -> int:
    return int((as_utc(end) - as_utc(start)).total_seconds() // 60)


# ═════════════════════════════════════════════════════════════════════════════
# Definitions
# ═════════════════════════════════════════════════════════════════════════════


def seed_defaults() -> int:
    """Insert the default definition for every priority that has none.

    Idempotent: priorities that already have any row (active or not) are left alone.
    Returns the number of rows inserted.
    """
    existing = set(db.session.execute(select(SlaDefinition.priority)).scalars().all())
    added = 0
    for priority, (response_min, resolve_min) in SLA_DEFAULTS.items():
        if priority in existing:
            continue
        db.session.add(SlaDefinition(
            name=f"{priority} default",
            priority=priority,
            response_time_minutes=response_min,
            resolve_time_minutes=resolve_min,
            is_active=True,
        ))
        added += 1
    if added:
        db.session.commit()
        logger.info("Seeded default SLA definitions", extra={"count": added})
    return added


def list_sla_definitions(*, active_only: bool = False) -> list[dict]:
    stmt = select(SlaDefinition).order_by(SlaDefinition.priority, SlaDefinition.id)
    if active_only:
        stmt = stmt.where(SlaDefinition.is_active.is_(True))
    return [s.to_dict() for s in db.session.execute(stmt).scalars().all()]


def get_active_definition(priority: str) -> SlaDefinition | None:
    stmt = select(SlaDefinition).where(
        SlaDefinition.priority == priority,
        SlaDefinition.is_active.is_(True),
    )
    return db.session.execute(stmt).scalars().first()


def create_sla_definition(data: dict) -> dict:
    """Create an SLA definition.

    Raises:
        ValidationError: Unknown priority, blank name, or invalid targets.
        ConflictError: An active definition for the priority already exists.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Name is required", details={"name": "required"})
    priority = data.get("priority")
    if priority not in Priority.values():
        raise ValidationError(
            f"Invalid priority '{priority}'. Must be one of: {', '.join(Priority.values())}",
        )
    response_min = data.get("response_time_minutes")
    resolve_min = data.get("resolve_time_minutes")
    _validate_targets(response_min, resolve_min)
    is_active = bool(data.get("is_active", True))
    if is_active:
        _ensure_single_active(priority)

    sla = SlaDefinition(
        name=name,
        priority=priority,
        response_time_minutes=response_min,
        resolve_time_minutes=resolve_min,
        is_active=is_active,
    )
    db.session.add(sla)
    db.session.commit()
    logger.info(
        "SLA definition created",
        extra={"sla_id": sla.id, "priority": priority},
    )
    return sla.to_dict()


def update_sla_definition(definition_id: int, data: dict) -> dict:
    """Partial update. Targets are re-validated against the merged values."""
    sla = _get_definition(definition_id)

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Name cannot be empty", details={"name": "required"})
        sla.name = name
    if "priority" in data and data["priority"] not in Priority.values():
        raise ValidationError(
            f"Invalid priority '{data['priority']}'. Must be one of: {', '.join(Priority.values())}",
        )

    priority = data.get("priority", sla.priority)
    response_min = data.get("response_time_minutes", sla.response_time_minutes)
    resolve_min = data.get("resolve_time_minutes", sla.resolve_time_minutes)
    is_active = bool(data.get("is_active", sla.is_active))
    _validate_targets(response_min, resolve_min)
    if is_active:
        _ensure_single_active(priority, exclude_id=sla.id)

    sla.priority = priority
    sla.response_time_minutes = response_min
    sla.resolve_time_minutes = resolve_min
    sla.is_active = is_active
    db.session.commit()
    logger.info("SLA definition updated", extra={"sla_id": sla.id, "priority": priority})
    return sla.to_dict()


def delete_sla_definition(definition_id: int) -> None:
    sla = _get_definition(definition_id)
    db.session.delete(sla)
    db.session.commit()
    logger.info("SLA definition deleted", extra={"sla_id": definition_id})


# ═════════════════════════════════════════════════════════════════════════════
# Live evaluation
# ═════════════════════════════════════════════════════════════════════════════


def compute_sla_status(incident: Incident, now: datetime | None = None) -> SlaStatus:
    """Evaluate response and resolution SLA for ``incident`` at ``now``.

    response_elapsed = (responded_at or now) - detected_at
    resolve_elapsed  = (resolved_at or now) - started_at
    A breach is strictly greater than the target.
    """
    priority = incident.computed_priority()
    sla = get_active_definition(priority)
    if sla is None:
        return SlaStatus(
            incident_id=incident.id,
            priority=priority,
            response_target_minutes=None,
            resolve_target_minutes=None,
            response_elapsed_minutes=None,
            resolve_elapsed_minutes=None,
            response_breached=False,
            resolve_breached=False,
        )

    now = as_utc(now) if now is not None else utcnow()
    response_elapsed = None
    if incident.detected_at is not None:
        response_elapsed = _minutes_between(incident.detected_at, incident.responded_at or now)
    resolve_elapsed = None
    if incident.started_at is not None:
        resolve_elapsed = _minutes_between(incident.started_at, incident.resolved_at or now)

    return SlaStatus(
        incident_id=incident.id,
        priority=priority,
        response_target_minutes=sla.response_time_minutes,
        resolve_target_minutes=sla.resolve_time_minutes,
        response_elapsed_minutes=response_elapsed,
        resolve_elapsed_minutes=resolve_elapsed,
        response_breached=response_elapsed is not None and response_elapsed > sla.response_time_minutes,
        resolve_breached=resolve_elapsed is not None and resolve_elapsed > sla.resolve_time_minutes,
    )


def get_incident_sla(incident_id: int, now: datetime | None = None) -> dict:
    incident = db.session.get(Incident, incident_id)
    if not incident or incident.is_deleted:
        raise NotFoundError(resource="Incident", resource_id=incident_id)
    return compute_sla_status(incident, now).to_dict()


def list_sla_breaches(now: datetime | None = None) -> list[dict]:
    """Return SLA status for every live incident currently in breach."""
    now = as_utc(now) if now is not None else utcnow()
    incidents = db.session.execute(
        Incident.select_active().order_by(Incident.started_at.desc())
    ).scalars().all()
    breaches = []
    for incident in incidents:
        status = compute_sla_status(incident, now)
        if status.breached:
            row = status.to_dict()
            row["title"] = incident.title
            row["status"] = incident.status
            breaches.append(row)
    return breaches
