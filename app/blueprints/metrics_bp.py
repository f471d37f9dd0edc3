"""
Incident Ledger
Metrics Blueprint — dashboard aggregates.

Routes:
    GET /api/v1/metrics/dashboard?start=&end=&service_id=
        service_id may repeat to select several services.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from app.core.exceptions import ValidationError
from app.services.metrics_service import get_dashboard
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

metrics_bp = Blueprint("metrics", __name__, url_prefix="/api/v1/metrics")


@metrics_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@metrics_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in metrics_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


@metrics_bp.route("/dashboard", methods=["GET"])
def dashboard():
    start = request.args.get("start")
    end = request.args.get("end")
    if not start or not end:
        return api_error(E.VALIDATION_REQUIRED, "start and end are required")
    try:
        service_ids = [int(s) for s in request.args.getlist("service_id")]
    except ValueError:
        return api_error(E.VALIDATION_INVALID, "service_id must be an integer")
    return jsonify(get_dashboard(start, end, service_ids or None)), 200
