"""
Incident Ledger
Incident Service — the incident state machine.

Business logic for the incident aggregate:
  - Field validation on create and update (lengths, enums, counters, references)
  - Status transitions through the INCIDENT_TRANSITIONS allow-list with
    auto-stamped acknowledged_at / resolved_at and reopen tracking
  - Timestamp ordering re-validated against the *merged* (stored ∪ requested)
    values, so a partial update cannot introduce a violation
  - Listing, search, bulk status / delete, soft delete, restore and purge
  - Action items hanging off an incident

Architecture:
  Every mutation computes the full set of field changes first, validates the
  merged result, then applies and commits. A failed validation leaves the
  stored row untouched. Updates are last-write-wins at field level; there is
  no optimistic concurrency token.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import delete, func, or_, select, update

from app.core.exceptions import NotFoundError, ValidationError
from app.core.priority import Level
from app.models import db
from app.models.audit import write_audit
from app.models.enrichment import (
    ContributingFactor,
    IncidentEnrichment,
    Postmortem,
    StakeholderUpdate,
)
from app.models.incident import (
    ACTION_ITEM_STATUSES,
    INCIDENT_STATUSES,
    INCIDENT_TRANSITIONS,
    MAX_REF_LEN,
    MAX_TEXT_FIELD_LEN,
    MAX_TITLE_LEN,
    TEXT_FIELDS,
    TIMESTAMP_FIELDS,
    ActionItem,
    Incident,
    is_reopen,
    timestamp_violations,
    validate_incident_transition,
)
from app.models.quarter import QuarterConfig
from app.models.service import Service
from app.utils.helpers import as_utc, iso_utc, parse_date, parse_datetime, utcnow

logger = logging.getLogger(__name__)

# Timestamps a caller may set directly; reopened_at is stamped by transitions only.
SETTABLE_TIMESTAMPS = tuple(f for f in TIMESTAMP_FIELDS if f != "reopened_at")
REQUIRED_TIMESTAMPS = ("started_at", "detected_at")

UPDATABLE = {
    "title", "service_id", "severity", "impact", "status",
    *SETTABLE_TIMESTAMPS,
    *TEXT_FIELDS,
    "tickets_submitted", "affected_users",
    "is_recurring", "recurrence_of", "external_ref",
}

SORT_COLUMNS = {
    "started_at": Incident.started_at,
    "severity": Incident.severity,
    "impact": Incident.impact,
    "priority": Incident.priority,
    "duration": Incident.duration_minutes,
    "status": Incident.status,
    "title": Incident.title,
    "created_at": Incident.created_at,
}


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _get_incident(incident_id: int, *, include_deleted: bool = False) -> Incident:
    inc = db.session.get(Incident, incident_id)
    if not inc or (inc.is_deleted and not include_deleted):
        raise NotFoundError(resource="Incident", resource_id=incident_id)
    return inc


def _require_service(service_id) -> None:
    if service_id is None or db.session.get(Service, service_id) is None:
        raise ValidationError(
            "Service is required" if service_id is None else f"Service id={service_id} does not exist",
            details={"service_id": service_id},
        )


def _is_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _clean_payload(data: dict, *, partial: bool, incident_id: int | None = None) -> dict:
    """Validate and normalise an incoming create/update payload.

    Unknown keys are ignored. Returns only the keys that were supplied
    (plus defaults on create). Raises ValidationError on the first problem.
    """
    values: dict = {}
    supplied = {k: v for k, v in data.items() if k in UPDATABLE}

    if not partial:
        for required in ("title", "service_id", "severity", "impact", *REQUIRED_TIMESTAMPS):
            if supplied.get(required) in (None, ""):
                raise ValidationError(
                    f"{required.replace('_', ' ').capitalize()} is required",
                    details={required: "required"},
                )

    if "title" in supplied:
        if supplied["title"] is not None and not isinstance(supplied["title"], str):
            raise ValidationError("Title must be a string", details={"title": supplied["title"]})
        title = (supplied["title"] or "").strip()
        if not title:
            raise ValidationError("Title cannot be empty", details={"title": "required"})
        if len(title) > MAX_TITLE_LEN:
            raise ValidationError(f"Title too long (max {MAX_TITLE_LEN} characters)")
        values["title"] = title

    if "service_id" in supplied:
        _require_service(supplied["service_id"])
        values["service_id"] = supplied["service_id"]

    for field in ("severity", "impact"):
        if field in supplied:
            if not isinstance(supplied[field], str) or supplied[field] not in Level.values():
                raise ValidationError(
                    f"Invalid {field} '{supplied[field]}'. Must be one of: {', '.join(Level.values())}",
                    details={field: supplied[field]},
                )
            values[field] = supplied[field]

    if "status" in supplied:
        if not isinstance(supplied["status"], str) or supplied["status"] not in INCIDENT_STATUSES:
            raise ValidationError(
                f"Invalid status '{supplied['status']}'. Must be one of: "
                f"{', '.join(INCIDENT_TRANSITIONS)}",
                details={"status": supplied["status"]},
            )
        values["status"] = supplied["status"]

    for field in SETTABLE_TIMESTAMPS:
        if field not in supplied:
            continue
        try:
            parsed = parse_datetime(supplied[field])
        except ValueError as exc:
            raise ValidationError(str(exc), details={field: supplied[field]}) from exc
        if parsed is None and field in REQUIRED_TIMESTAMPS:
            raise ValidationError(
                f"{field.replace('_', ' ').capitalize()} cannot be empty",
                details={field: "required"},
            )
        values[field] = parsed

    for field in TEXT_FIELDS:
        if field in supplied:
            text = supplied[field] or ""
            if not isinstance(text, str):
                raise ValidationError(f"{field} must be a string")
            if len(text) > MAX_TEXT_FIELD_LEN:
                raise ValidationError(
                    f"{field.replace('_', ' ').capitalize()} text too long (max {MAX_TEXT_FIELD_LEN} characters)",
                )
            values[field] = text

    if "external_ref" in supplied:
        ref = supplied["external_ref"] or ""
        if not isinstance(ref, str):
            raise ValidationError("external_ref must be a string", details={"external_ref": ref})
        if len(ref) > MAX_REF_LEN:
            raise ValidationError(f"External reference too long (max {MAX_REF_LEN} characters)")
        values["external_ref"] = ref

    for field in ("tickets_submitted", "affected_users"):
        if field in supplied:
            value = supplied[field] if supplied[field] is not None else 0
            if not _is_count(value) or value < 0:
                raise ValidationError(
                    f"{field.replace('_', ' ').capitalize()} cannot be negative",
                    details={field: supplied[field]},
                )
            values[field] = value

    if "is_recurring" in supplied:
        values["is_recurring"] = bool(supplied["is_recurring"])

    if "recurrence_of" in supplied:
        ref_id = supplied["recurrence_of"]
        if ref_id is not None:
            if not _is_count(ref_id):
                raise ValidationError(
                    "recurrence_of must be an incident id",
                    details={"recurrence_of": ref_id},
                )
            if incident_id is not None and ref_id == incident_id:
                raise ValidationError(
                    "An incident cannot be a recurrence of itself",
                    details={"recurrence_of": ref_id},
                )
            if db.session.get(Incident, ref_id) is None:
                raise ValidationError(
                    f"Recurrence target incident id={ref_id} does not exist",
                    details={"recurrence_of": ref_id},
                )
        values["recurrence_of"] = ref_id

    return values


def _plan_status_change(
    current: dict, old_status: str, new_status: str, now: datetime, supplied: set,
) -> dict:
    """Return the field changes a status transition implies.

    Raises ValidationError if the transition is not in the allow-list.
    Auto-stamps never overwrite a value the caller supplied or one already stored.
    """
    if not validate_incident_transition(old_status, new_status):
        allowed = INCIDENT_TRANSITIONS.get(old_status, [])
        raise ValidationError(
            f"Invalid transition: {old_status} → {new_status}. "
            f"Allowed: {', '.join(allowed) or 'none'}",
            details={"from": old_status, "to": new_status, "allowed": allowed},
        )

    changes: dict = {"status": new_status}
    if (
        new_status == "Acknowledged"
        and current.get("acknowledged_at") is None
        and "acknowledged_at" not in supplied
    ):
        changes["acknowledged_at"] = now
    if (
        new_status == "Resolved"
        and current.get("resolved_at") is None
        and "resolved_at" not in supplied
    ):
        changes["resolved_at"] = now
    if is_reopen(old_status, new_status):
        changes["reopen_count"] = (current.get("reopen_count") or 0) + 1
        changes["reopened_at"] = now
    return changes


def _check_ordering(merged: dict) -> None:
    problems = timestamp_violations(merged)
    if problems:
        raise ValidationError(problems[0], details={"timestamp_ordering": problems})


def _fact_state(inc: Incident) -> dict:
    state = inc.timestamps()
    state.update(status=inc.status, reopen_count=inc.reopen_count)
    return state


def _diff(inc: Incident, changes: dict) -> dict:
    out = {}
    for field, new in changes.items():
        old = getattr(inc, field)
        if isinstance(old, datetime) or isinstance(new, datetime):
            if iso_utc(old) == iso_utc(new):
                continue
            out[field] = {"old": iso_utc(old), "new": iso_utc(new)}
        elif old != new:
            out[field] = {"old": old, "new": new}
    return out


def incidents_in_range(start: datetime, end: datetime) -> list[Incident]:
    """Live incidents whose started_at is in [start, end), ordered by id."""
    stmt = (
        Incident.select_active()
        .where(Incident.started_at >= start, Incident.started_at < end)
        .order_by(Incident.id)
    )
    return list(db.session.execute(stmt).scalars().all())


# ═════════════════════════════════════════════════════════════════════════════
# Incident CRUD
# ═════════════════════════════════════════════════════════════════════════════


def create_incident(data: dict, actor: str = "system") -> dict:
    """Create an incident.

    New incidents begin ``Active``. A requested initial status other than
    Active is applied as a transition out of Active, with the same
    auto-stamping and allow-list as a later transition.

    Raises:
        ValidationError: Any field, reference, transition or ordering failure.
    """
    values = _clean_payload(data, partial=False)
    requested_status = values.pop("status", "Active")
    now = utcnow()

    merged = {f: values.get(f) for f in TIMESTAMP_FIELDS}
    merged.update(status="Active", reopen_count=0)
    if requested_status != "Active":
        merged.update(_plan_status_change(merged, "Active", requested_status, now, set(values)))
    _check_ordering(merged)

    incident = Incident(**{**values, **merged})
    incident.refresh_derived()
    db.session.add(incident)
    db.session.flush()
    write_audit(
        entity_type="incident", entity_id=incident.id, action="incident.create",
        actor=actor, diff={"status": incident.status, "priority": incident.priority},
    )
    db.session.commit()
    logger.info(
        "Incident created",
        extra={
            "incident_id": incident.id,
            "severity": incident.severity,
            "impact": incident.impact,
            "priority": incident.priority,
        },
    )
    return incident.to_dict()


def get_incident(incident_id: int) -> dict:
    return _get_incident(incident_id).to_dict()


def update_incident(incident_id: int, data: dict, actor: str = "system") -> dict:
    """Partial update of an incident.

    A changed ``status`` is routed through the transition allow-list. All
    timestamp invariants are checked against the merged values before commit.

    Raises:
        NotFoundError: Incident missing or soft-deleted.
        ValidationError: Field, transition or ordering failure.
    """
    inc = _get_incident(incident_id)
    changes = _clean_payload(data, partial=True, incident_id=inc.id)
    now = utcnow()

    requested_status = changes.pop("status", None)
    merged = {**_fact_state(inc), **changes}
    if requested_status is not None and requested_status != inc.status:
        status_changes = _plan_status_change(
            merged, inc.status, requested_status, now, set(changes),
        )
        merged.update(status_changes)
        changes.update(status_changes)
    _check_ordering(merged)

    old_status = inc.status
    diff = _diff(inc, changes)
    for field, value in changes.items():
        setattr(inc, field, value)
    inc.refresh_derived()

    if diff:
        action = "incident.update"
        if "status" in diff:
            action = "incident.reopen" if is_reopen(old_status, inc.status) else "incident.transition"
        write_audit(
            entity_type="incident", entity_id=inc.id, action=action,
            actor=actor, diff=diff,
        )
    db.session.commit()
    logger.info(
        "Incident updated",
        extra={"incident_id": inc.id, "fields": sorted(diff)},
    )
    return inc.to_dict()


def transition_incident(
    incident_id: int, new_status: str, actor: str = "system", data: dict | None = None,
) -> dict:
    """Move an incident to ``new_status``.

    ``data`` may carry explicit timestamps (e.g. a back-dated resolved_at)
    that take precedence over auto-stamping. Unlike update_incident, a
    transition to the current status is rejected: it is not in the allow-list.
    """
    if new_status not in INCIDENT_STATUSES:
        raise ValidationError(
            f"Invalid status '{new_status}'. Must be one of: {', '.join(INCIDENT_TRANSITIONS)}",
        )
    inc = _get_incident(incident_id)
    if new_status == inc.status:
        raise ValidationError(
            f"Invalid transition: {inc.status} → {new_status}. "
            f"Allowed: {', '.join(INCIDENT_TRANSITIONS.get(inc.status, []))}",
            details={
                "from": inc.status, "to": new_status,
                "allowed": INCIDENT_TRANSITIONS.get(inc.status, []),
            },
        )
    payload = {k: v for k, v in (data or {}).items() if k in SETTABLE_TIMESTAMPS}
    payload["status"] = new_status
    result = update_incident(incident_id, payload, actor=actor)
    logger.info(
        "Incident transitioned",
        extra={"incident_id": incident_id, "status": new_status},
    )
    return result


def list_incidents(filters: dict | None = None) -> list[dict]:
    """List live incidents.

    Filters: service_id, severity, impact, status, quarter_id, date_from,
    date_to (on started_at), sort_by (see SORT_COLUMNS), sort_order (asc|desc).
    """
    filters = filters or {}
    stmt = Incident.select_active()

    for field in ("service_id", "severity", "impact", "status"):
        if filters.get(field):
            stmt = stmt.where(getattr(Incident, field) == filters[field])

    if filters.get("quarter_id"):
        quarter = db.session.get(QuarterConfig, filters["quarter_id"])
        if not quarter:
            raise NotFoundError(resource="Quarter", resource_id=filters["quarter_id"])
        stmt = stmt.where(
            Incident.started_at >= quarter.window_start,
            Incident.started_at < quarter.window_end,
        )
    try:
        date_from = parse_datetime(filters.get("date_from"))
        date_to = parse_datetime(filters.get("date_to"))
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if date_from:
        stmt = stmt.where(Incident.started_at >= date_from)
    if date_to:
        stmt = stmt.where(Incident.started_at <= date_to)

    column = SORT_COLUMNS.get(filters.get("sort_by") or "started_at", Incident.started_at)
    if (filters.get("sort_order") or "desc").lower() == "asc":
        stmt = stmt.order_by(column.asc(), Incident.id.asc())
    else:
        stmt = stmt.order_by(column.desc(), Incident.id.desc())

    return [i.to_dict() for i in db.session.execute(stmt).scalars().all()]


def search_incidents(query: str, limit: int = 50) -> list[dict]:
    """Case-insensitive substring search across narrative fields."""
    text = (query or "").strip().lower()
    if not text:
        return []
    columns = (
        Incident.title, Incident.root_cause, Incident.resolution,
        Incident.notes, Incident.lessons_learned, Incident.external_ref,
    )
    stmt = (
        Incident.select_active()
        .where(or_(*(func.lower(c).contains(text, autoescape=True) for c in columns)))
        .order_by(Incident.started_at.desc())
        .limit(limit)
    )
    return [i.to_dict() for i in db.session.execute(stmt).scalars().all()]


# ═════════════════════════════════════════════════════════════════════════════
# Bulk operations
# ═════════════════════════════════════════════════════════════════════════════


def bulk_update_status(incident_ids: list[int], new_status: str, actor: str = "system") -> list[dict]:
    """Apply one transition to many incidents, all-or-nothing.

    Every id must exist and every transition must be allowed; otherwise
    nothing is written.
    """
    if not incident_ids:
        raise ValidationError("At least one incident id is required")
    incident_ids = list(dict.fromkeys(incident_ids))
    if new_status not in INCIDENT_STATUSES:
        raise ValidationError(
            f"Invalid status '{new_status}'. Must be one of: {', '.join(INCIDENT_TRANSITIONS)}",
        )
    now = utcnow()
    plans = []
    failures = {}
    for incident_id in incident_ids:
        inc = _get_incident(incident_id)
        if inc.status == new_status:
            continue
        try:
            merged = _fact_state(inc)
            changes = _plan_status_change(merged, inc.status, new_status, now, set())
            merged.update(changes)
            _check_ordering(merged)
        except ValidationError as exc:
            failures[str(incident_id)] = str(exc)
            continue
        plans.append((inc, changes))
    if failures:
        raise ValidationError(
            f"{len(failures)} incident(s) cannot move to {new_status}",
            details={"failures": failures},
        )

    for inc, changes in plans:
        old_status = inc.status
        diff = _diff(inc, changes)
        for field, value in changes.items():
            setattr(inc, field, value)
        inc.refresh_derived()
        write_audit(
            entity_type="incident", entity_id=inc.id,
            action="incident.reopen" if is_reopen(old_status, new_status) else "incident.transition",
            actor=actor, diff=diff,
        )
    db.session.commit()
    logger.info(
        "Bulk status update",
        extra={"count": len(plans), "status": new_status},
    )
    return [inc.to_dict() for inc, _ in plans]


def bulk_delete(incident_ids: list[int], actor: str = "system") -> int:
    """Soft-delete many incidents in one transaction."""
    incidents = [_get_incident(i) for i in dict.fromkeys(incident_ids)]
    for inc in incidents:
        inc.soft_delete()
        write_audit(entity_type="incident", entity_id=inc.id, action="incident.delete", actor=actor)
    db.session.commit()
    logger.info("Bulk soft delete", extra={"count": len(incidents)})
    return len(incidents)


# ═════════════════════════════════════════════════════════════════════════════
# Soft delete / restore / purge
# ═════════════════════════════════════════════════════════════════════════════


def delete_incident(incident_id: int, actor: str = "system") -> None:
    inc = _get_incident(incident_id)
    inc.soft_delete()
    write_audit(entity_type="incident", entity_id=inc.id, action="incident.delete", actor=actor)
    db.session.commit()
    logger.info("Incident soft-deleted", extra={"incident_id": incident_id})


def list_deleted_incidents() -> list[dict]:
    stmt = Incident.select_deleted().order_by(Incident.deleted_at.desc())
    return [i.to_dict() for i in db.session.execute(stmt).scalars().all()]


def count_deleted_incidents() -> int:
    stmt = select(func.count(Incident.id)).where(Incident.deleted_at.isnot(None))
    return db.session.execute(stmt).scalar() or 0


def restore_incident(incident_id: int, actor: str = "system") -> dict:
    inc = _get_incident(incident_id, include_deleted=True)
    if not inc.is_deleted:
        raise ValidationError("Incident is not deleted", details={"incident_id": incident_id})
    inc.restore()
    write_audit(entity_type="incident", entity_id=inc.id, action="incident.restore", actor=actor)
    db.session.commit()
    logger.info("Incident restored", extra={"incident_id": incident_id})
    return inc.to_dict()


def purge_incident(incident_id: int, actor: str = "system") -> None:
    """Permanently remove a soft-deleted incident and its dependent rows.

    Action items, executive summary, stakeholder updates, post-mortem and
    contributing factors go with it. Other incidents pointing at it via
    recurrence_of are detached. Enrichment jobs and provenance rows are an
    audit log and are kept.
    """
    inc = _get_incident(incident_id, include_deleted=True)
    if not inc.is_deleted:
        raise ValidationError(
            "Only soft-deleted incidents can be purged",
            details={"incident_id": incident_id},
        )
    for model in (IncidentEnrichment, StakeholderUpdate, Postmortem, ContributingFactor):
        db.session.execute(delete(model).where(model.incident_id == incident_id))
    db.session.execute(
        update(Incident).where(Incident.recurrence_of == incident_id).values(recurrence_of=None)
    )
    db.session.delete(inc)
    write_audit(entity_type="incident", entity_id=incident_id, action="incident.purge", actor=actor)
    db.session.commit()
    logger.warning("Incident purged", extra={"incident_id": incident_id})


# ═════════════════════════════════════════════════════════════════════════════
# Action items
# ═════════════════════════════════════════════════════════════════════════════


def _get_action_item(item_id: int) -> ActionItem:
    item = db.session.get(ActionItem, item_id)
    if not item:
        raise NotFoundError(resource="ActionItem", resource_id=item_id)
    return item


def _clean_action_item(data: dict, *, partial: bool) -> dict:
    values = {}
    if "title" in data or not partial:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("Action item title is required", details={"title": "required"})
        if len(title) > MAX_TITLE_LEN:
            raise ValidationError("Action item title too long")
        values["title"] = title
    if "description" in data:
        description = data.get("description") or ""
        if len(description) > MAX_TEXT_FIELD_LEN:
            raise ValidationError("Description too long")
        values["description"] = description
    if "status" in data or not partial:
        status = data.get("status") or "Open"
        if status not in ACTION_ITEM_STATUSES:
            raise ValidationError(
                f"Invalid action item status '{status}'. Must be one of: Open, In-Progress, Done",
            )
        values["status"] = status
    if "owner" in data:
        values["owner"] = data.get("owner") or ""
    if "due_date" in data:
        raw = data.get("due_date")
        due = parse_date(raw)
        if raw and due is None:
            raise ValidationError(f"Invalid due date {raw!r}", details={"due_date": raw})
        values["due_date"] = due
    return values


def create_action_item(incident_id: int, data: dict) -> dict:
    _get_incident(incident_id)
    values = _clean_action_item(data, partial=False)
    item = ActionItem(incident_id=incident_id, **values)
    db.session.add(item)
    db.session.commit()
    logger.info("Action item created", extra={"incident_id": incident_id, "action_item_id": item.id})
    return item.to_dict()


def update_action_item(item_id: int, data: dict) -> dict:
    item = _get_action_item(item_id)
    for field, value in _clean_action_item(data, partial=True).items():
        setattr(item, field, value)
    db.session.commit()
    return item.to_dict()


def delete_action_item(item_id: int) -> None:
    item = _get_action_item(item_id)
    db.session.delete(item)
    db.session.commit()


def list_action_items(incident_id: int | None = None, status: str | None = None) -> list[dict]:
    stmt = select(ActionItem).join(Incident).where(Incident.deleted_at.is_(None))
    if incident_id is not None:
        stmt = stmt.where(ActionItem.incident_id == incident_id)
    if status:
        stmt = stmt.where(ActionItem.status == status)
    stmt = stmt.order_by(ActionItem.due_date.is_(None), ActionItem.due_date, ActionItem.id)
    return [a.to_dict() for a in db.session.execute(stmt).scalars().all()]


def count_overdue_action_items(today: date | None = None) -> int:
    """Action items not Done whose due date has passed."""
    today = today or as_utc(utcnow()).date()
    stmt = (
        select(func.count(ActionItem.id))
        .join(Incident)
        .where(
            Incident.deleted_at.is_(None),
            ActionItem.status != "Done",
            ActionItem.due_date.isnot(None),
            ActionItem.due_date < today,
        )
    )
    return db.session.execute(stmt).scalar() or 0
