"""
Incident Ledger
Incident Blueprint — HTTP boundary for incidents and their action items.

Routes:
    GET    /api/v1/incidents
    POST   /api/v1/incidents
    GET    /api/v1/incidents/search?q=
    GET    /api/v1/incidents/deleted
    POST   /api/v1/incidents/bulk-status
    POST   /api/v1/incidents/bulk-delete
    GET    /api/v1/incidents/<incident_id>
    PUT    /api/v1/incidents/<incident_id>
    DELETE /api/v1/incidents/<incident_id>
    POST   /api/v1/incidents/<incident_id>/transition
    POST   /api/v1/incidents/<incident_id>/restore
    DELETE /api/v1/incidents/<incident_id>/purge
    GET    /api/v1/incidents/<incident_id>/sla
    GET    /api/v1/incidents/<incident_id>/action-items
    POST   /api/v1/incidents/<incident_id>/action-items
    PUT    /api/v1/action-items/<item_id>
    DELETE /api/v1/action-items/<item_id>
    GET    /api/v1/action-items/overdue-count

The acting user is taken from the optional ``X-Actor`` header and only
recorded in the audit trail.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.incident_service as svc
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.services.sla_service import get_incident_sla
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

incident_bp = Blueprint("incident", __name__, url_prefix="/api/v1")

_FILTER_KEYS = (
    "service_id", "severity", "impact", "status", "quarter_id",
    "date_from", "date_to", "sort_by", "sort_order",
)


def _actor() -> str:
    return (request.headers.get("X-Actor") or "system").strip() or "system"


def _json_body() -> dict | None:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _id_list(value) -> list[int] | None:
    if not isinstance(value, list) or not value:
        return None
    if not all(isinstance(i, int) and not isinstance(i, bool) for i in value):
        return None
    return value


# ── Error handlers ────────────────────────────────────────────────────────────


@incident_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@incident_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@incident_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return jsonify({"error": str(error)}), 409


@incident_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in incident_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


# ═════════════════════════════════════════════════════════════════════════════
# Incidents
# ═════════════════════════════════════════════════════════════════════════════


@incident_bp.route("/incidents", methods=["GET"])
def list_incidents():
    """List live incidents. Query params: see _FILTER_KEYS."""
    filters = {k: request.args.get(k) for k in _FILTER_KEYS if request.args.get(k)}
    for key in ("service_id", "quarter_id"):
        if key in filters:
            try:
                filters[key] = int(filters[key])
            except ValueError:
                return api_error(E.VALIDATION_INVALID, f"{key} must be an integer")
    items = svc.list_incidents(filters)
    return jsonify({"items": items, "total": len(items)}), 200


@incident_bp.route("/incidents", methods=["POST"])
def create_incident():
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.create_incident(data, actor=_actor())), 201


@incident_bp.route("/incidents/search", methods=["GET"])
def search_incidents():
    query = (request.args.get("q") or "").strip()
    if not query:
        return api_error(E.VALIDATION_REQUIRED, "q is required")
    limit = request.args.get("limit", 50, type=int)
    items = svc.search_incidents(query, limit=max(1, min(limit, 200)))
    return jsonify({"items": items, "total": len(items)}), 200


@incident_bp.route("/incidents/deleted", methods=["GET"])
def list_deleted_incidents():
    items = svc.list_deleted_incidents()
    return jsonify({"items": items, "total": len(items)}), 200


@incident_bp.route("/incidents/bulk-status", methods=["POST"])
def bulk_status():
    """Body: {incident_ids: [int], status: str}. All-or-nothing."""
    data = _json_body() or {}
    ids = _id_list(data.get("incident_ids"))
    if ids is None:
        return api_error(E.VALIDATION_INVALID, "incident_ids must be a non-empty list of integers")
    status = data.get("status")
    if not isinstance(status, str) or not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    items = svc.bulk_update_status(ids, status, actor=_actor())
    return jsonify({"items": items, "total": len(items)}), 200


@incident_bp.route("/incidents/bulk-delete", methods=["POST"])
def bulk_delete():
    data = _json_body() or {}
    ids = _id_list(data.get("incident_ids"))
    if ids is None:
        return api_error(E.VALIDATION_INVALID, "incident_ids must be a non-empty list of integers")
    return jsonify({"deleted": svc.bulk_delete(ids, actor=_actor())}), 200


@incident_bp.route("/incidents/<int:incident_id>", methods=["GET"])
def get_incident(incident_id: int):
    return jsonify(svc.get_incident(incident_id)), 200


@incident_bp.route("/incidents/<int:incident_id>", methods=["PUT"])
def update_incident(incident_id: int):
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.update_incident(incident_id, data, actor=_actor())), 200


@incident_bp.route("/incidents/<int:incident_id>", methods=["DELETE"])
def delete_incident(incident_id: int):
    svc.delete_incident(incident_id, actor=_actor())
    return jsonify({"deleted": True}), 200


@incident_bp.route("/incidents/<int:incident_id>/transition", methods=["POST"])
def transition_incident(incident_id: int):
    """Body: {status: str, <timestamp overrides>?}."""
    data = _json_body() or {}
    status = data.get("status")
    if not isinstance(status, str) or not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(svc.transition_incident(incident_id, status, actor=_actor(), data=data)), 200


@incident_bp.route("/incidents/<int:incident_id>/restore", methods=["POST"])
def restore_incident(incident_id: int):
    return jsonify(svc.restore_incident(incident_id, actor=_actor())), 200


@incident_bp.route("/incidents/<int:incident_id>/purge", methods=["DELETE"])
def purge_incident(incident_id: int):
    svc.purge_incident(incident_id, actor=_actor())
    return jsonify({"purged": True}), 200


@incident_bp.route("/incidents/<int:incident_id>/sla", methods=["GET"])
def incident_sla(incident_id: int):
    return jsonify(get_incident_sla(incident_id)), 200


# ═════════════════════════════════════════════════════════════════════════════
# Action items
# ═════════════════════════════════════════════════════════════════════════════


@incident_bp.route("/incidents/<int:incident_id>/action-items", methods=["GET"])
def list_action_items(incident_id: int):
    svc.get_incident(incident_id)
    items = svc.list_action_items(incident_id, status=request.args.get("status"))
    return jsonify({"items": items, "total": len(items)}), 200


@incident_bp.route("/incidents/<int:incident_id>/action-items", methods=["POST"])
def create_action_item(incident_id: int):
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.create_action_item(incident_id, data)), 201


@incident_bp.route("/action-items/<int:item_id>", methods=["PUT"])
def update_action_item(item_id: int):
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.update_action_item(item_id, data)), 200


@incident_bp.route("/action-items/<int:item_id>", methods=["DELETE"])
def delete_action_item(item_id: int):
    svc.delete_action_item(item_id)
    return jsonify({"deleted": True}), 200


@incident_bp.route("/action-items/overdue-count", methods=["GET"])
def overdue_action_items():
    return jsonify({"overdue": svc.count_overdue_action_items()}), 200
