"""
Incident Ledger
Enrichment Blueprint — generated narrative jobs, accept and the provenance ledger.

Routes:
    POST /api/v1/enrichments/run
    GET  /api/v1/enrichments/jobs
    GET  /api/v1/enrichments/jobs/<job_id>
    POST /api/v1/enrichments/jobs/<job_id>/accept
    GET  /api/v1/enrichments/provenance?entity_type=&entity_id=
    GET  /api/v1/enrichments/generator/health
    GET  /api/v1/enrichments/audit-log/export?before=
    POST /api/v1/enrichments/audit-log/prune

The generator is built once per app and lives in
``current_app.extensions["generator"]``.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.enrichment_service as svc
import app.services.provenance_service as prov
from app.ai.generator import probe_availability
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

enrichment_bp = Blueprint("enrichment", __name__, url_prefix="/api/v1/enrichments")


def _actor() -> str:
    return (request.headers.get("X-Actor") or "system").strip() or "system"


def _generator():
    return current_app.extensions["generator"]


# ── Error handlers ────────────────────────────────────────────────────────────


@enrichment_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@enrichment_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@enrichment_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return jsonify({"error": str(error)}), 409


@enrichment_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in enrichment_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


# ═════════════════════════════════════════════════════════════════════════════
# Jobs
# ═════════════════════════════════════════════════════════════════════════════


@enrichment_bp.route("/run", methods=["POST"])
def run_enrichment():
    """Body: {job_type, incident_id}.

    Always 201 once a job row exists; a failed generation is reported via
    the job's status and error fields.
    """
    data = request.get_json(silent=True) or {}
    job_type = data.get("job_type")
    incident_id = data.get("incident_id")
    if not isinstance(job_type, str) or not job_type:
        return api_error(E.VALIDATION_REQUIRED, "job_type is required")
    if not isinstance(incident_id, int) or isinstance(incident_id, bool):
        return api_error(E.VALIDATION_INVALID, "incident_id must be an integer")

    generator = _generator()
    job = svc.run_incident_enrichment(
        job_type, incident_id, generator, probe_availability(generator),
    )
    return jsonify(job), 201


@enrichment_bp.route("/jobs", methods=["GET"])
def list_jobs():
    items = svc.list_jobs(
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id"),
        job_type=request.args.get("job_type"),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@enrichment_bp.route("/jobs/<int:job_id>", methods=["GET"])
def get_job(job_id: int):
    return jsonify(svc.get_job(job_id)), 200


@enrichment_bp.route("/jobs/<int:job_id>/accept", methods=["POST"])
def accept_job(job_id: int):
    return jsonify(svc.accept_job(job_id, actor=_actor())), 200


# ═════════════════════════════════════════════════════════════════════════════
# Provenance & retention
# ═════════════════════════════════════════════════════════════════════════════


@enrichment_bp.route("/provenance", methods=["GET"])
def list_provenance():
    entity_type = request.args.get("entity_type")
    entity_id = request.args.get("entity_id")
    if not entity_type or not entity_id:
        return api_error(E.VALIDATION_REQUIRED, "entity_type and entity_id are required")
    items = prov.list_provenance(entity_type, entity_id)
    return jsonify({"items": items, "total": len(items)}), 200


@enrichment_bp.route("/generator/health", methods=["GET"])
def generator_health():
    return jsonify(probe_availability(_generator()).to_dict()), 200


@enrichment_bp.route("/audit-log/export", methods=["GET"])
def export_audit_log():
    return jsonify(prov.export_audit_log(request.args.get("before"))), 200


@enrichment_bp.route("/audit-log/prune", methods=["POST"])
def prune_audit_log():
    """Body (optional): {before: ISO datetime}. Defaults to the retention horizon."""
    data = request.get_json(silent=True) or {}
    return jsonify(prov.prune_audit_log(data.get("before"))), 200
