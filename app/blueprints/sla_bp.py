"""
Incident Ledger
SLA Blueprint — SLA definitions, live breaches and the priority matrix.

Routes:
    GET    /api/v1/sla-definitions
    POST   /api/v1/sla-definitions
    PUT    /api/v1/sla-definitions/<definition_id>
    DELETE /api/v1/sla-definitions/<definition_id>
    GET    /api/v1/sla/breaches
    GET    /api/v1/priority?severity=&impact=
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.sla_service as svc
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.priority import Level, priority_for
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

sla_bp = Blueprint("sla", __name__, url_prefix="/api/v1")


@sla_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@sla_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@sla_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return jsonify({"error": str(error)}), 409


@sla_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in sla_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


# ═════════════════════════════════════════════════════════════════════════════
# Definitions
# ═════════════════════════════════════════════════════════════════════════════


@sla_bp.route("/sla-definitions", methods=["GET"])
def list_definitions():
    active_only = request.args.get("active_only", "false").lower() == "true"
    items = svc.list_sla_definitions(active_only=active_only)
    return jsonify({"items": items, "total": len(items)}), 200


@sla_bp.route("/sla-definitions", methods=["POST"])
def create_definition():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.create_sla_definition(data)), 201


@sla_bp.route("/sla-definitions/<int:definition_id>", methods=["PUT"])
def update_definition(definition_id: int):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.update_sla_definition(definition_id, data)), 200


@sla_bp.route("/sla-definitions/<int:definition_id>", methods=["DELETE"])
def delete_definition(definition_id: int):
    svc.delete_sla_definition(definition_id)
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════════
# Live evaluation
# ═════════════════════════════════════════════════════════════════════════════


@sla_bp.route("/sla/breaches", methods=["GET"])
def list_breaches():
    items = svc.list_sla_breaches()
    return jsonify({"items": items, "total": len(items)}), 200


@sla_bp.route("/priority", methods=["GET"])
def compute_priority():
    """Priority for a (severity, impact) pair. Both params are required."""
    severity = request.args.get("severity")
    impact = request.args.get("impact")
    if not severity or not impact:
        return api_error(E.VALIDATION_REQUIRED, "severity and impact are required")
    for name, value in (("severity", severity), ("impact", impact)):
        if value not in Level.values():
            return api_error(
                E.VALIDATION_INVALID,
                f"Invalid {name} '{value}'. Must be one of: {', '.join(Level.values())}",
            )
    return jsonify({
        "severity": severity,
        "impact": impact,
        "priority": priority_for(severity, impact).value,
    }), 200
