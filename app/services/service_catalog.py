"""
Incident Ledger
Service catalog — the monitored systems incidents are raised against.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.service import SERVICE_CATEGORIES, SERVICE_TIERS, Service

logger = logging.getLogger(__name__)

MAX_SERVICE_NAME_LEN = 200


def _get_service(service_id: int) -> Service:
    service = db.session.get(Service, service_id)
    if not service:
        raise NotFoundError(resource="Service", resource_id=service_id)
    return service


def _ensure_unique_name(name: str, exclude_id: int | None = None) -> None:
    stmt = select(Service.id).where(func.lower(Service.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Service.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError(resource="Service", field="name", value=name)


def _clean(data: dict, *, partial: bool) -> dict:
    values = {}
    if "name" in data or not partial:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Service name is required", details={"name": "required"})
        if len(name) > MAX_SERVICE_NAME_LEN:
            raise ValidationError(f"Service name too long (max {MAX_SERVICE_NAME_LEN} characters)")
        values["name"] = name
    if "category" in data:
        category = data.get("category") or "Other"
        if category not in SERVICE_CATEGORIES:
            raise ValidationError(
                f"Invalid category '{category}'. Must be one of: {', '.join(sorted(SERVICE_CATEGORIES))}",
            )
        values["category"] = category
    if "tier" in data:
        tier = data.get("tier") or "T3"
        if tier not in SERVICE_TIERS:
            raise ValidationError(
                f"Invalid tier '{tier}'. Must be one of: {', '.join(sorted(SERVICE_TIERS))}",
            )
        values["tier"] = tier
    for field in ("owner", "description"):
        if field in data:
            values[field] = data.get(field) or ""
    if "is_active" in data:
        values["is_active"] = bool(data["is_active"])
    return values


def create_service(data: dict) -> dict:
    """Create a catalog entry.

    Raises:
        ValidationError: Blank/oversized name, unknown category or tier.
        ConflictError: Name already used (case-insensitive).
    """
    values = _clean(data, partial=False)
    _ensure_unique_name(values["name"])
    service = Service(**values)
    db.session.add(service)
    db.session.commit()
    logger.info("Service created", extra={"service_id": service.id, "service_name": service.name})
    return service.to_dict()


def get_service(service_id: int) -> dict:
    return _get_service(service_id).to_dict()


def list_services(*, active_only: bool = False) -> list[dict]:
    stmt = select(Service).order_by(Service.name)
    if active_only:
        stmt = stmt.where(Service.is_active.is_(True))
    return [s.to_dict() for s in db.session.execute(stmt).scalars().all()]


def update_service(service_id: int, data: dict) -> dict:
    service = _get_service(service_id)
    values = _clean(data, partial=True)
    if "name" in values:
        _ensure_unique_name(values["name"], exclude_id=service.id)
    for field, value in values.items():
        setattr(service, field, value)
    db.session.commit()
    logger.info("Service updated", extra={"service_id": service.id})
    return service.to_dict()
