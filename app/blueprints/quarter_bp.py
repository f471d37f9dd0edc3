"""
Incident Ledger
Quarter Blueprint — fiscal quarters, readiness, overrides and finalization.

Routes:
    GET    /api/v1/quarters
    POST   /api/v1/quarters
    GET    /api/v1/quarters/<quarter_id>
    PUT    /api/v1/quarters/<quarter_id>
    DELETE /api/v1/quarters/<quarter_id>
    GET    /api/v1/quarters/<quarter_id>/readiness
    GET    /api/v1/quarters/<quarter_id>/overrides
    POST   /api/v1/quarters/<quarter_id>/overrides
    DELETE /api/v1/quarters/<quarter_id>/overrides
    POST   /api/v1/quarters/<quarter_id>/finalize
    POST   /api/v1/quarters/<quarter_id>/unfinalize
    GET    /api/v1/quarters/<quarter_id>/finalization
    GET    /api/v1/quarters/<quarter_id>/snapshot
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.finalization_service as fin
import app.services.quarter_service as svc
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.services.readiness_service import compute_readiness
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

quarter_bp = Blueprint("quarter", __name__, url_prefix="/api/v1/quarters")


def _actor() -> str:
    return (request.headers.get("X-Actor") or "system").strip() or "system"


def _json_body() -> dict | None:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _override_key(data: dict):
    """Return (rule_key, incident_id) from a body, or an error response."""
    rule_key = data.get("rule_key")
    incident_id = data.get("incident_id")
    if not isinstance(rule_key, str) or not rule_key.strip():
        return None, api_error(E.VALIDATION_REQUIRED, "rule_key is required")
    if not isinstance(incident_id, int) or isinstance(incident_id, bool):
        return None, api_error(E.VALIDATION_INVALID, "incident_id must be an integer")
    return (rule_key.strip(), incident_id), None


# ── Error handlers ────────────────────────────────────────────────────────────


@quarter_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@quarter_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@quarter_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return jsonify({"error": str(error)}), 409


@quarter_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in quarter_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


# ═════════════════════════════════════════════════════════════════════════════
# Quarters
# ═════════════════════════════════════════════════════════════════════════════


@quarter_bp.route("", methods=["GET"])
def list_quarters():
    items = svc.list_quarters()
    return jsonify({"items": items, "total": len(items)}), 200


@quarter_bp.route("", methods=["POST"])
def create_quarter():
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.create_quarter(data)), 201


@quarter_bp.route("/<int:quarter_id>", methods=["GET"])
def get_quarter(quarter_id: int):
    return jsonify(svc.get_quarter(quarter_id)), 200


@quarter_bp.route("/<int:quarter_id>", methods=["PUT"])
def update_quarter(quarter_id: int):
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.update_quarter(quarter_id, data)), 200


@quarter_bp.route("/<int:quarter_id>", methods=["DELETE"])
def delete_quarter(quarter_id: int):
    svc.delete_quarter(quarter_id)
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Readiness & overrides
# ═════════════════════════════════════════════════════════════════════════════


@quarter_bp.route("/<int:quarter_id>/readiness", methods=["GET"])
def readiness(quarter_id: int):
    return jsonify(compute_readiness(quarter_id).to_dict()), 200


@quarter_bp.route("/<int:quarter_id>/overrides", methods=["GET"])
def list_overrides(quarter_id: int):
    items = fin.list_overrides(quarter_id)
    return jsonify({"items": items, "total": len(items)}), 200


@quarter_bp.route("/<int:quarter_id>/overrides", methods=["POST"])
def upsert_override(quarter_id: int):
    """Body: {rule_key, incident_id, reason, approved_by?}."""
    data = _json_body() or {}
    key, error = _override_key(data)
    if error:
        return error
    rule_key, incident_id = key
    override = fin.upsert_override(
        quarter_id, rule_key, incident_id,
        reason=data.get("reason") or "",
        approved_by=data.get("approved_by") or "",
        actor=_actor(),
    )
    return jsonify(override), 200


@quarter_bp.route("/<int:quarter_id>/overrides", methods=["DELETE"])
def delete_override(quarter_id: int):
    data = _json_body() or {}
    key, error = _override_key(data)
    if error:
        return error
    rule_key, incident_id = key
    fin.delete_override(quarter_id, rule_key, incident_id, actor=_actor())
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Finalization
# ═════════════════════════════════════════════════════════════════════════════


@quarter_bp.route("/<int:quarter_id>/finalize", methods=["POST"])
def finalize(quarter_id: int):
    """Body (optional): {finalized_by?, notes?}. 422 with missing_overrides when gated."""
    data = _json_body() or {}
    result = fin.finalize_quarter(
        quarter_id,
        finalized_by=data.get("finalized_by") or request.headers.get("X-Actor") or "",
        notes=data.get("notes") or "",
    )
    return jsonify(result), 200


@quarter_bp.route("/<int:quarter_id>/unfinalize", methods=["POST"])
def unfinalize(quarter_id: int):
    fin.unfinalize_quarter(quarter_id, actor=_actor())
    return jsonify({"finalized": False}), 200


@quarter_bp.route("/<int:quarter_id>/finalization", methods=["GET"])
def finalization_status(quarter_id: int):
    return jsonify(fin.get_finalization_status(quarter_id)), 200


@quarter_bp.route("/<int:quarter_id>/snapshot", methods=["GET"])
def snapshot(quarter_id: int):
    return jsonify(fin.get_quarter_snapshot(quarter_id)), 200
