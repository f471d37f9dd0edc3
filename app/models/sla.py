"""
Incident Ledger
SLA definition model.

Models:
    - SlaDefinition: response / resolve targets (minutes) for one priority.

At most one *active* definition exists per priority; inactive rows are kept as
history. Defaults are seeded on first start by sla_service.seed_defaults().
"""

from datetime import datetime, timezone

from app.models import db
from app.utils.helpers import iso_utc

# priority → (response_minutes, resolve_minutes)
SLA_DEFAULTS: dict[str, tuple[int, int]] = {
    "P0": (15, 60),
    "P1": (30, 240),
    "P2": (60, 480),
    "P3": (120, 1440),
    "P4": (480, 2880),
}


class SlaDefinition(db.Model):
    """SLA targets for one priority level."""

    __tablename__ = "sla_definitions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    priority = db.Column(
        db.String(2), nullable=False, index=True,
        comment="P0 | P1 | P2 | P3 | P4",
    )
    response_time_minutes = db.Column(
        db.Integer, nullable=False,
        comment="Maximum detected → responded time in minutes",
    )
    resolve_time_minutes = db.Column(
        db.Integer, nullable=False,
        comment="Maximum started → resolved time in minutes",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)

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
            "priority IN ('P0','P1','P2','P3','P4')",
            name="ck_sla_priority",
        ),
        db.CheckConstraint(
            "response_time_minutes > 0 AND resolve_time_minutes >= response_time_minutes",
            name="ck_sla_targets",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "response_time_minutes": self.response_time_minutes,
            "resolve_time_minutes": self.resolve_time_minutes,
            "is_active": self.is_active,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
        }

    def __repr__(self):
        return (
            f"<SlaDefinition {self.id}: {self.priority} "
            f"{self.response_time_minutes}/{self.resolve_time_minutes}m>"
        )
