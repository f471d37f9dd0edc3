"""
Incident Ledger
Service catalog blueprint.

Routes:
    GET  /api/v1/services
    POST /api/v1/services
    GET  /api/v1/services/<service_id>
    PUT  /api/v1/services/<service_id>
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.service_catalog as svc
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

service_bp = Blueprint("service", __name__, url_prefix="/api/v1")


@service_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@service_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@service_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return jsonify({"error": str(error)}), 409


@service_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in service_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


@service_bp.route("/services", methods=["GET"])
def list_services():
    active_only = request.args.get("active_only", "false").lower() == "true"
    items = svc.list_services(active_only=active_only)
    return jsonify({"items": items, "total": len(items)}), 200


@service_bp.route("/services", methods=["POST"])
def create_service():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.create_service(data)), 201


@service_bp.route("/services/<int:service_id>", methods=["GET"])
def get_service(service_id: int):
    return jsonify(svc.get_service(service_id)), 200


@service_bp.route("/services/<int:service_id>", methods=["PUT"])
def update_service(service_id: int):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON object body required")
    return jsonify(svc.update_service(service_id, data)), 200
