"""
Incident Ledger
Incident domain models.

Models:
    - Incident:    the aggregate root; lifecycle, timestamps, counters, narrative
    - ActionItem:  follow-up work tracked against an incident

Architecture:
    Service ──1:N──▶ Incident ──1:N──▶ ActionItem
    Incident ──0..1──▶ Incident  (recurrence_of, a non-enforced hint)

Lifecycle states:
    Incident:    Active ⇄ Acknowledged ⇄ Monitoring → Resolved → Post-Mortem
                 Resolved | Post-Mortem → Active  (reopen)
    ActionItem:  Open → In-Progress → Done
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from app.core.priority import Level, priority_for
from app.models import db
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import as_utc, iso_utc


class IncidentStatus(str, Enum):
    ACTIVE = "Active"
    ACKNOWLEDGED = "Acknowledged"
    MONITORING = "Monitoring"
    RESOLVED = "Resolved"
    POST_MORTEM = "Post-Mortem"

    @classmethod
    def decode(cls, value) -> "IncidentStatus":
        """Return the matching member; legacy/unknown values decode to ``ACTIVE``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.ACTIVE

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]


# ── Constants ────────────────────────────────────────────────────────────────

INCIDENT_SEVERITIES = set(Level.values())
INCIDENT_IMPACTS = set(Level.values())
INCIDENT_STATUSES = set(IncidentStatus.values())

ACTION_ITEM_STATUSES = {"Open", "In-Progress", "Done"}

MAX_TITLE_LEN = 500
MAX_TEXT_FIELD_LEN = 10_000
MAX_REF_LEN = 200

TEXT_FIELDS = ("root_cause", "resolution", "lessons_learned", "action_items", "notes")

# Ordered: (field, must not precede field)
TIMESTAMP_ORDERING = (
    ("detected_at", "started_at"),
    ("acknowledged_at", "detected_at"),
    ("first_response_at", "detected_at"),
    ("mitigation_started_at", "detected_at"),
    ("responded_at", "detected_at"),
    ("resolved_at", "started_at"),
)

TIMESTAMP_FIELDS = (
    "started_at", "detected_at", "acknowledged_at", "first_response_at",
    "mitigation_started_at", "responded_at", "resolved_at", "reopened_at",
)

INCIDENT_TRANSITIONS = {
    "Active":       ["Acknowledged", "Monitoring", "Resolved"],
    "Acknowledged": ["Active", "Monitoring", "Resolved"],
    "Monitoring":   ["Active", "Acknowledged", "Resolved"],
    "Resolved":     ["Active", "Post-Mortem"],   # reopen if regression found
    "Post-Mortem":  ["Active"],                  # reopen edge case
}

REOPEN_SOURCES = {"Resolved", "Post-Mortem"}
OPEN_STATUSES = {"Active", "Acknowledged", "Monitoring"}


def validate_incident_transition(old_status, new_status):
    """Return True if the Incident status transition is in the allow-list."""
    return new_status in INCIDENT_TRANSITIONS.get(old_status, [])


def is_reopen(old_status, new_status):
    """A reopen moves a closed-out incident back into an open state."""
    return old_status in REOPEN_SOURCES and new_status in OPEN_STATUSES


def timestamp_violations(values: dict) -> list[str]:
    """Return human-readable ordering violations for a dict of timestamps.

    Missing values are skipped: only pairs where both sides are present are compared.
    """
    problems = []
    for later, earlier in TIMESTAMP_ORDERING:
        a, b = as_utc(values.get(later)), as_utc(values.get(earlier))
        if a is not None and b is not None and a < b:
            problems.append(
                f"{_label(later)} must be on or after {_label(earlier).lower()}"
            )
    return problems


def _label(field: str) -> str:
    return field.replace("_at", " at").replace("_", " ").capitalize()


def duration_between(started_at, resolved_at) -> int | None:
    """Whole minutes from start to resolution, None while unresolved."""
    if started_at is None or resolved_at is None:
        return None
    delta = as_utc(resolved_at) - as_utc(started_at)
    return int(delta.total_seconds() // 60)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Incident
# ═════════════════════════════════════════════════════════════════════════════


class Incident(SoftDeleteMixin, db.Model):
    """
    Operational incident. Status moves only through INCIDENT_TRANSITIONS.

    ``priority`` and ``duration_minutes`` are derived columns: the service layer
    recomputes them on every write via refresh_derived(); they are kept in the
    table only so list views can filter and sort on them.
    """

    __tablename__ = "incidents"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(MAX_TITLE_LEN), nullable=False)
    service_id = db.Column(
        db.Integer, db.ForeignKey("services.id"), nullable=False, index=True,
    )

    severity = db.Column(
        db.String(10), nullable=False, index=True,
        comment="Critical | High | Medium | Low",
    )
    impact = db.Column(
        db.String(10), nullable=False, index=True,
        comment="Critical | High | Medium | Low",
    )
    priority = db.Column(
        db.String(2), nullable=False, default="P3",
        comment="Derived: priority_for(severity, impact)",
    )
    status = db.Column(
        db.String(20), nullable=False, default="Active", index=True,
        comment="Active | Acknowledged | Monitoring | Resolved | Post-Mortem",
    )

    # Timeline
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    detected_at = db.Column(db.DateTime(timezone=True), nullable=False)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    first_response_at = db.Column(db.DateTime(timezone=True), nullable=True)
    mitigation_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    reopened_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reopen_count = db.Column(db.Integer, nullable=False, default=0)
    duration_minutes = db.Column(
        db.Integer, nullable=True,
        comment="Derived: resolved_at - started_at in whole minutes",
    )

    # Narrative
    root_cause = db.Column(db.Text, default="")
    resolution = db.Column(db.Text, default="")
    lessons_learned = db.Column(db.Text, default="")
    action_items = db.Column(db.Text, default="")
    notes = db.Column(db.Text, default="")

    # Counters
    tickets_submitted = db.Column(db.Integer, nullable=False, default=0)
    affected_users = db.Column(db.Integer, nullable=False, default=0)

    # Recurrence hint (no cycle detection)
    is_recurring = db.Column(db.Boolean, nullable=False, default=False)
    recurrence_of = db.Column(
        db.Integer, db.ForeignKey("incidents.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    external_ref = db.Column(db.String(MAX_REF_LEN), default="")

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    service = db.relationship("Service", lazy="joined")
    action_item_rows = db.relationship(
        "ActionItem", backref="incident", lazy="select",
        cascade="all, delete-orphan", order_by="ActionItem.id",
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(
            "severity IN ('Critical','High','Medium','Low')",
            name="ck_incident_severity",
        ),
        db.CheckConstraint(
            "impact IN ('Critical','High','Medium','Low')",
            name="ck_incident_impact",
        ),
        db.CheckConstraint(
            "status IN ('Active','Acknowledged','Monitoring','Resolved','Post-Mortem')",
            name="ck_incident_status",
        ),
        db.CheckConstraint("reopen_count >= 0", name="ck_incident_reopen_count"),
        db.CheckConstraint("tickets_submitted >= 0", name="ck_incident_tickets"),
        db.CheckConstraint("affected_users >= 0", name="ck_incident_affected_users"),
    )

    @property
    def service_name(self) -> str:
        return self.service.name if self.service else ""

    def computed_priority(self) -> str:
        return priority_for(self.severity, self.impact).value

    def refresh_derived(self):
        """Recompute priority and duration from the current facts."""
        self.priority = self.computed_priority()
        self.duration_minutes = duration_between(self.started_at, self.resolved_at)

    def timestamps(self) -> dict:
        return {f: getattr(self, f) for f in TIMESTAMP_FIELDS}

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "service_id": self.service_id,
            "service_name": self.service_name,
            "severity": self.severity,
            "impact": self.impact,
            "priority": self.computed_priority(),
            "status": self.status,
            "started_at": iso_utc(self.started_at),
            "detected_at": iso_utc(self.detected_at),
            "acknowledged_at": iso_utc(self.acknowledged_at),
            "first_response_at": iso_utc(self.first_response_at),
            "mitigation_started_at": iso_utc(self.mitigation_started_at),
            "responded_at": iso_utc(self.responded_at),
            "resolved_at": iso_utc(self.resolved_at),
            "reopened_at": iso_utc(self.reopened_at),
            "reopen_count": self.reopen_count,
            "duration_minutes": duration_between(self.started_at, self.resolved_at),
            "root_cause": self.root_cause or "",
            "resolution": self.resolution or "",
            "lessons_learned": self.lessons_learned or "",
            "action_items": self.action_items or "",
            "notes": self.notes or "",
            "tickets_submitted": self.tickets_submitted,
            "affected_users": self.affected_users,
            "is_recurring": self.is_recurring,
            "recurrence_of": self.recurrence_of,
            "external_ref": self.external_ref or "",
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
            "deleted_at": iso_utc(self.deleted_at),
        }

    def __repr__(self):
        return f"<Incident {self.id}: [{self.severity}/{self.impact}] {self.status} {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ActionItem
# ═════════════════════════════════════════════════════════════════════════════


class ActionItem(db.Model):
    """Follow-up work item raised from an incident review."""

    __tablename__ = "action_items"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.Integer, db.ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(MAX_TITLE_LEN), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default="Open",
        comment="Open | In-Progress | Done",
    )
    owner = db.Column(db.String(200), default="")
    due_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('Open','In-Progress','Done')",
            name="ck_action_item_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "incident_title": self.incident.title if self.incident else None,
            "title": self.title,
            "description": self.description or "",
            "status": self.status,
            "owner": self.owner or "",
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<ActionItem {self.id}: incident={self.incident_id} [{self.status}]>"
