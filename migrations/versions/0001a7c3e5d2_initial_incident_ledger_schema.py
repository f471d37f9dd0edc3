"""initial_incident_ledger_schema

Creates the incident ledger tables:
  - services                     — service catalog
  - incidents / action_items     — incident facts and follow-ups
  - sla_definitions              — response/resolve targets per priority
  - quarter_config + overrides, snapshots, finalizations
  - enrichment_jobs / field_provenance and the narrative tables
  - audit_logs

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 0001a7c3e5d2
Revises:
Create Date: 2026-10-19 09:12:40.118302
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '0001a7c3e5d2'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Services ──────────────────────────────────────────────────────────
    if "services" not in existing:
        op.create_table(
            "services",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("category", sa.String(length=30), nullable=False, server_default="Other"),
            sa.Column("tier", sa.String(length=5), nullable=False, server_default="T3",
                      comment="T1 | T2 | T3 | T4"),
            sa.Column("owner", sa.String(length=200), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    # ── Incidents ─────────────────────────────────────────────────────────
    if "incidents" not in existing:
        op.create_table(
            "incidents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=500), nullable=False),
            sa.Column("service_id", sa.Integer(), nullable=False),
            sa.Column("severity", sa.String(length=10), nullable=False),
            sa.Column("impact", sa.String(length=10), nullable=False),
            sa.Column("priority", sa.String(length=2), nullable=False, server_default="P3",
                      comment="Derived from severity x impact"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Active"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("first_response_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("mitigation_started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reopened_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reopen_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("duration_minutes", sa.Integer(), nullable=True),
            sa.Column("root_cause", sa.Text(), nullable=True),
            sa.Column("resolution", sa.Text(), nullable=True),
            sa.Column("lessons_learned", sa.Text(), nullable=True),
            sa.Column("action_items", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("tickets_submitted", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("affected_users", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("recurrence_of", sa.Integer(), nullable=True),
            sa.Column("external_ref", sa.String(length=200), nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
            sa.ForeignKeyConstraint(["recurrence_of"], ["incidents.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        for column in ("service_id", "severity", "impact", "status", "started_at",
                       "resolved_at", "recurrence_of", "deleted_at"):
            op.create_index(f"ix_incidents_{column}", "incidents", [column])

    if "action_items" not in existing:
        op.create_table(
            "action_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("incident_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=500), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Open",
                      comment="Open | In-Progress | Done"),
            sa.Column("owner", sa.String(length=200), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_action_items_incident_id", "action_items", ["incident_id"])

    # ── SLA ───────────────────────────────────────────────────────────────
    if "sla_definitions" not in existing:
        op.create_table(
            "sla_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("priority", sa.String(length=2), nullable=False),
            sa.Column("response_time_minutes", sa.Integer(), nullable=False),
            sa.Column("resolve_time_minutes", sa.Integer(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sla_definitions_priority", "sla_definitions", ["priority"])

    # ── Quarters ──────────────────────────────────────────────────────────
    if "quarter_config" not in existing:
        op.create_table(
            "quarter_config",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("fiscal_year", sa.Integer(), nullable=False),
            sa.Column("quarter_number", sa.Integer(), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False, comment="Inclusive"),
            sa.Column("label", sa.String(length=50), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("fiscal_year", "quarter_number", name="uq_quarter_year_number"),
        )

    if "quarter_readiness_overrides" not in existing:
        op.create_table(
            "quarter_readiness_overrides",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("quarter_id", sa.Integer(), nullable=False),
            sa.Column("rule_key", sa.String(length=60), nullable=False),
            sa.Column("incident_id", sa.Integer(), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("approved_by", sa.String(length=200), nullable=False, server_default=""),
            *_timestamps(),
            sa.ForeignKeyConstraint(["quarter_id"], ["quarter_config.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("quarter_id", "rule_key", "incident_id",
                                name="uq_override_quarter_rule_incident"),
        )
        op.create_index("ix_quarter_readiness_overrides_quarter_id",
                        "quarter_readiness_overrides", ["quarter_id"])

    if "quarter_snapshots" not in existing:
        op.create_table(
            "quarter_snapshots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("quarter_id", sa.Integer(), nullable=False),
            sa.Column("schema_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("inputs_hash", sa.String(length=64), nullable=False),
            sa.Column("snapshot_json", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["quarter_id"], ["quarter_config.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("quarter_id"),
        )

    if "quarter_finalizations" not in existing:
        op.create_table(
            "quarter_finalizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("quarter_id", sa.Integer(), nullable=False),
            sa.Column("snapshot_id", sa.Integer(), nullable=False),
            sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("finalized_by", sa.String(length=200), nullable=False, server_default="self"),
            sa.Column("inputs_hash", sa.String(length=64), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["quarter_id"], ["quarter_config.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["snapshot_id"], ["quarter_snapshots.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("quarter_id"),
        )

    # ── Enrichment & provenance ───────────────────────────────────────────
    if "enrichment_jobs" not in existing:
        op.create_table(
            "enrichment_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_type", sa.String(length=60), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="running",
                      comment="running | succeeded | failed"),
            sa.Column("input_hash", sa.String(length=64), nullable=False),
            sa.Column("output_json", sa.Text(), nullable=True),
            sa.Column("model_id", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("prompt_version", sa.String(length=30), nullable=False, server_default=""),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_enrichment_jobs_job_type", "enrichment_jobs", ["job_type"])
        op.create_index("idx_enrichment_job_entity", "enrichment_jobs", ["entity_type", "entity_id"])

    if "field_provenance" not in existing:
        op.create_table(
            "field_provenance",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("field_name", sa.String(length=60), nullable=False),
            sa.Column("source_type", sa.String(length=20), nullable=False,
                      comment="manual | import | computed | ai"),
            sa.Column("source_ref", sa.String(length=100), nullable=True),
            sa.Column("source_version", sa.String(length=30), nullable=True,
                      comment="Prompt / rule version"),
            sa.Column("input_hash", sa.String(length=64), nullable=True),
            sa.Column("meta_json", sa.Text(), nullable=True),
            sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_provenance_entity", "field_provenance", ["entity_type", "entity_id"])

    if "incident_enrichments" not in existing:
        op.create_table(
            "incident_enrichments",
            sa.Column("incident_id", sa.Integer(), nullable=False),
            sa.Column("executive_summary", sa.Text(), nullable=True),
            sa.Column("last_job_id", sa.Integer(), nullable=True),
            sa.Column("generated_by", sa.String(length=10), nullable=False, server_default="manual"),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("incident_id"),
        )

    if "stakeholder_updates" not in existing:
        op.create_table(
            "stakeholder_updates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("incident_id", sa.Integer(), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("update_type", sa.String(length=20), nullable=False, server_default="status"),
            sa.Column("generated_by", sa.String(length=10), nullable=False, server_default="manual"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stakeholder_updates_incident_id", "stakeholder_updates", ["incident_id"])

    if "postmortems" not in existing:
        op.create_table(
            "postmortems",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("incident_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("content_json", sa.Text(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("incident_id"),
        )

    if "contributing_factors" not in existing:
        op.create_table(
            "contributing_factors",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("incident_id", sa.Integer(), nullable=False),
            sa.Column("category", sa.String(length=30), nullable=False, server_default="Process"),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("is_root", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["incident_id"], ["incidents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_contributing_factors_incident_id", "contributing_factors", ["incident_id"])

    # ── Audit ─────────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    for table in (
        "audit_logs", "contributing_factors", "postmortems", "stakeholder_updates",
        "incident_enrichments", "field_provenance", "enrichment_jobs",
        "quarter_finalizations", "quarter_snapshots", "quarter_readiness_overrides",
        "quarter_config", "sla_definitions", "action_items", "incidents", "services",
    ):
        op.drop_table(table)
