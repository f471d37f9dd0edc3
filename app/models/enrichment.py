"""
Incident Ledger
Enrichment job, provenance ledger and the narrative tables accepted jobs write into.

Models:
    - EnrichmentJob:        one row per generation attempt (append; one terminal update)
    - FieldProvenance:      append-only record of which source produced a field value
    - IncidentEnrichment:   per-incident executive summary (upsert)
    - StakeholderUpdate:    stakeholder communication drafts (append)
    - Postmortem:           one post-mortem document per incident
    - ContributingFactor:   categorised factors behind an incident

Lifecycle states:
    EnrichmentJob:  running → succeeded | failed   (exactly once)

Facts and metrics never read from these tables.
"""

import json
from datetime import datetime, timezone

from app.models import db
from app.utils.helpers import iso_utc

# ── Constants ────────────────────────────────────────────────────────────────

JOB_STATUSES = {"running", "succeeded", "failed"}
TERMINAL_JOB_STATUSES = {"succeeded", "failed"}

JOB_TYPES = {
    "incident_executive_summary",
    "stakeholder_update",
    "postmortem_draft",
    "factor_categorization",
}

SOURCE_TYPES = {"manual", "import", "computed", "ai"}

FACTOR_CATEGORIES = {
    "Process", "Tooling", "Communication", "Human Factors", "External",
}

POSTMORTEM_STATUSES = {"draft", "review", "final"}


def _loads(raw, default):
    try:
        return json.loads(raw) if raw else default
    except (json.JSONDecodeError, TypeError):
        return default


# ═════════════════════════════════════════════════════════════════════════════
# 1. EnrichmentJob
# ═════════════════════════════════════════════════════════════════════════════


class EnrichmentJob(db.Model):
    """
    A single enrichment attempt against one entity.

    Rows are never deleted by application code and only the
    status/output/error/completed_at columns change, once.
    """

    __tablename__ = "enrichment_jobs"
    __table_args__ = (
        db.Index("idx_enrichment_job_entity", "entity_type", "entity_id"),
        db.CheckConstraint(
            "status IN ('running','succeeded','failed')",
            name="ck_enrichment_job_status",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_type = db.Column(db.String(60), nullable=False, index=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="running")
    input_hash = db.Column(
        db.String(64), nullable=False,
        comment="base64 SHA-256 of the canonical input projection",
    )
    output_json = db.Column(db.Text, nullable=True)
    model_id = db.Column(db.String(100), nullable=False, default="")
    prompt_version = db.Column(db.String(30), nullable=False, default="")
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def output(self) -> dict | None:
        return _loads(self.output_json, None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "job_type": self.job_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status,
            "input_hash": self.input_hash,
            "output": self.output,
            "model_id": self.model_id,
            "prompt_version": self.prompt_version,
            "error": self.error,
            "created_at": iso_utc(self.created_at),
            "completed_at": iso_utc(self.completed_at),
        }

    def __repr__(self):
        return f"<EnrichmentJob {self.id}: {self.job_type} {self.entity_type}/{self.entity_id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. FieldProvenance
# ═════════════════════════════════════════════════════════════════════════════


class FieldProvenance(db.Model):
    """
    Append-only provenance fact: ``source_type`` produced the current value of
    ``entity_type/entity_id.field_name`` at ``recorded_at``.
    """

    __tablename__ = "field_provenance"
    __table_args__ = (
        db.Index("idx_provenance_entity", "entity_type", "entity_id"),
        db.CheckConstraint(
            "source_type IN ('manual','import','computed','ai')",
            name="ck_provenance_source_type",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    field_name = db.Column(db.String(60), nullable=False)
    source_type = db.Column(db.String(20), nullable=False)
    source_ref = db.Column(
        db.String(100), nullable=True,
        comment="Generating model id (or import batch) when applicable",
    )
    source_version = db.Column(db.String(30), nullable=True, comment="Prompt / rule version")
    input_hash = db.Column(db.String(64), nullable=True)
    meta_json = db.Column(db.Text, default="{}")
    recorded_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def meta(self) -> dict:
        return _loads(self.meta_json, {})

    def to_dict(self):
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "field_name": self.field_name,
            "source_type": self.source_type,
            "source_ref": self.source_ref,
            "source_version": self.source_version,
            "input_hash": self.input_hash,
            "meta": self.meta,
            "recorded_at": iso_utc(self.recorded_at),
        }

    def __repr__(self):
        return (
            f"<FieldProvenance {self.id}: {self.entity_type}/{self.entity_id}."
            f"{self.field_name} ← {self.source_type}>"
        )


# ═════════════════════════════════════════════════════════════════════════════
# 3. Narrative tables
# ═════════════════════════════════════════════════════════════════════════════


class IncidentEnrichment(db.Model):
    """Executive summary for an incident (one row per incident)."""

    __tablename__ = "incident_enrichments"

    incident_id = db.Column(
        db.Integer, db.ForeignKey("incidents.id", ondelete="CASCADE"),
        primary_key=True,
    )
    executive_summary = db.Column(db.Text, default="")
    last_job_id = db.Column(db.Integer, nullable=True)
    generated_by = db.Column(
        db.String(10), nullable=False, default="manual",
        comment="manual | ai",
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "incident_id": self.incident_id,
            "executive_summary": self.executive_summary or "",
            "last_job_id": self.last_job_id,
            "generated_by": self.generated_by,
            "updated_at": iso_utc(self.updated_at),
        }


class StakeholderUpdate(db.Model):
    """A drafted stakeholder communication."""

    __tablename__ = "stakeholder_updates"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.Integer, db.ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    content = db.Column(db.Text, nullable=False)
    update_type = db.Column(db.String(20), nullable=False, default="status")
    generated_by = db.Column(db.String(10), nullable=False, default="manual")
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "content": self.content,
            "update_type": self.update_type,
            "generated_by": self.generated_by,
            "created_at": iso_utc(self.created_at),
        }


class Postmortem(db.Model):
    """Post-mortem document. ``content_json`` holds ``{"markdown": ...}``."""

    __tablename__ = "postmortems"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.Integer, db.ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    status = db.Column(db.String(20), nullable=False, default="draft")
    content_json = db.Column(db.Text, nullable=False, default="{}")
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def content(self) -> dict:
        return _loads(self.content_json, {})

    def to_dict(self):
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "status": self.status,
            "content": self.content,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
        }


class ContributingFactor(db.Model):
    __tablename__ = "contributing_factors"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.Integer, db.ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    category = db.Column(db.String(30), nullable=False, default="Process")
    description = db.Column(db.Text, nullable=False)
    is_root = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "category": self.category,
            "description": self.description,
            "is_root": self.is_root,
            "created_at": iso_utc(self.created_at),
        }
