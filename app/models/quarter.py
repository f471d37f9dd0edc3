"""
Incident Ledger
Quarterly reporting models.

Models:
    - QuarterConfig:             fiscal period descriptor bounding date-range queries
    - QuarterReadinessOverride:  human-approved exception for a critical readiness finding
    - QuarterSnapshot:           frozen readiness/overrides/metrics blob (one per quarter, upsert)
    - QuarterFinalization:       "this quarter is closed" marker (one per quarter, upsert)

Architecture:
    QuarterConfig ──1:N──▶ QuarterReadinessOverride  keyed (quarter_id, rule_key, incident_id)
    QuarterConfig ──1:1──▶ QuarterSnapshot
    QuarterConfig ──1:1──▶ QuarterFinalization ──▶ QuarterSnapshot
"""

import json
from datetime import datetime, time, timedelta, timezone

from app.models import db
from app.utils.helpers import iso_utc

SNAPSHOT_SCHEMA_VERSION = 1


class QuarterConfig(db.Model):
    """Fiscal quarter. Only used to bound incident date windows."""

    __tablename__ = "quarter_config"

    id = db.Column(db.Integer, primary_key=True)
    fiscal_year = db.Column(db.Integer, nullable=False)
    quarter_number = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    label = db.Column(db.String(50), nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    overrides = db.relationship(
        "QuarterReadinessOverride", backref="quarter", lazy="select",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("fiscal_year", "quarter_number", name="uq_quarter_year_number"),
        db.CheckConstraint("quarter_number BETWEEN 1 AND 4", name="ck_quarter_number"),
        db.CheckConstraint("end_date > start_date", name="ck_quarter_dates"),
    )

    @property
    def window_start(self) -> datetime:
        """Inclusive lower bound: start_date at 00:00 UTC."""
        return datetime.combine(self.start_date, time.min, tzinfo=timezone.utc)

    @property
    def window_end(self) -> datetime:
        """Exclusive upper bound: the day after end_date at 00:00 UTC."""
        return datetime.combine(self.end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "fiscal_year": self.fiscal_year,
            "quarter_number": self.quarter_number,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "label": self.label,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<QuarterConfig {self.id}: {self.label}>"


class QuarterReadinessOverride(db.Model):
    """
    Approved exception for one (rule_key, incident_id) finding.

    Never alters metrics: it only satisfies the finalize gate and is copied
    verbatim into the snapshot. ``incident_id`` is deliberately not a foreign
    key so an override survives a later purge of the incident.
    """

    __tablename__ = "quarter_readiness_overrides"

    id = db.Column(db.Integer, primary_key=True)
    quarter_id = db.Column(
        db.Integer, db.ForeignKey("quarter_config.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    rule_key = db.Column(db.String(60), nullable=False)
    incident_id = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)
    approved_by = db.Column(db.String(200), nullable=False, default="")

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
        db.UniqueConstraint(
            "quarter_id", "rule_key", "incident_id",
            name="uq_override_quarter_rule_incident",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "quarter_id": self.quarter_id,
            "rule_key": self.rule_key,
            "incident_id": self.incident_id,
            "reason": self.reason,
            "approved_by": self.approved_by,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<QuarterReadinessOverride {self.id}: q={self.quarter_id} {self.rule_key}/{self.incident_id}>"


class QuarterSnapshot(db.Model):
    """Frozen quarter facts. Replaced only by re-running finalize."""

    __tablename__ = "quarter_snapshots"

    id = db.Column(db.Integer, primary_key=True)
    quarter_id = db.Column(
        db.Integer, db.ForeignKey("quarter_config.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    schema_version = db.Column(db.Integer, nullable=False, default=SNAPSHOT_SCHEMA_VERSION)
    inputs_hash = db.Column(db.String(64), nullable=False)
    snapshot_json = db.Column(db.Text, nullable=False, default="{}")

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def snapshot(self) -> dict:
        try:
            return json.loads(self.snapshot_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "quarter_id": self.quarter_id,
            "schema_version": self.schema_version,
            "inputs_hash": self.inputs_hash,
            "snapshot": self.snapshot,
            "created_at": iso_utc(self.created_at),
        }

    def __repr__(self):
        return f"<QuarterSnapshot {self.id}: q={self.quarter_id} v{self.schema_version}>"


class QuarterFinalization(db.Model):
    """Presence of this row is what makes a quarter finalized."""

    __tablename__ = "quarter_finalizations"

    id = db.Column(db.Integer, primary_key=True)
    quarter_id = db.Column(
        db.Integer, db.ForeignKey("quarter_config.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    snapshot_id = db.Column(
        db.Integer, db.ForeignKey("quarter_snapshots.id", ondelete="CASCADE"),
        nullable=False,
    )
    finalized_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    finalized_by = db.Column(db.String(200), nullable=False, default="self")
    inputs_hash = db.Column(db.String(64), nullable=False)
    notes = db.Column(db.Text, default="")

    def to_dict(self):
        return {
            "id": self.id,
            "quarter_id": self.quarter_id,
            "snapshot_id": self.snapshot_id,
            "finalized_at": iso_utc(self.finalized_at),
            "finalized_by": self.finalized_by,
            "inputs_hash": self.inputs_hash,
            "notes": self.notes or "",
        }

    def __repr__(self):
        return f"<QuarterFinalization q={self.quarter_id} by={self.finalized_by}>"
