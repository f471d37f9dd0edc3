"""
Incident Ledger
Metrics Service — dashboard aggregates over a date range.

Definitions:
  - MTTR: mean duration_minutes of incidents with a resolved_at
  - MTTA: mean minutes from detected_at to COALESCE(acknowledged_at, responded_at)
  - recurrence_rate: % of incidents flagged is_recurring
  - avg_tickets: mean tickets_submitted

Only stored facts feed these numbers: no wall-clock input and nothing from
the enrichment tables. A snapshot's dashboard is therefore reproducible from
the same incident rows.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta

from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.incident import Incident, duration_between
from app.utils.helpers import as_utc, parse_datetime

logger = logging.getLogger(__name__)


def _mean(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _category_counts(counter: Counter) -> list[dict]:
    return [
        {"category": category, "count": count}
        for category, count in sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
    ]


def compute_dashboard(incidents: list[Incident], period_label: str = "") -> dict:
    """Aggregate dashboard figures for an already-filtered incident list."""
    total = len(incidents)
    durations: list[float] = []
    ack_minutes: list[float] = []
    tickets: list[float] = []
    recurring = 0
    by_severity: Counter = Counter()
    by_impact: Counter = Counter()
    by_status: Counter = Counter()
    by_priority: Counter = Counter()
    by_service: Counter = Counter()
    downtime: dict[int, int] = defaultdict(int)
    service_names: dict[int, str] = {}

    for inc in incidents:
        duration = duration_between(inc.started_at, inc.resolved_at)
        if duration is not None:
            durations.append(duration)
            downtime[inc.service_id] += duration

        acknowledged = inc.acknowledged_at or inc.responded_at
        if acknowledged is not None and inc.detected_at is not None:
            ack_minutes.append(
                (as_utc(acknowledged) - as_utc(inc.detected_at)).total_seconds() / 60
            )

        tickets.append(inc.tickets_submitted or 0)
        if inc.is_recurring:
            recurring += 1

        service_name = inc.service_name or "Unknown Service"
        service_names[inc.service_id] = service_name
        by_severity[inc.severity or "Unknown"] += 1
        by_impact[inc.impact or "Unknown"] += 1
        by_status[inc.status or "Unknown"] += 1
        by_priority[inc.computed_priority()] += 1
        by_service[service_name] += 1

    return {
        "period_label": period_label,
        "total_incidents": total,
        "mttr_minutes": _mean(durations),
        "mtta_minutes": _mean(ack_minutes),
        "recurrence_rate": round(recurring / total * 100, 2) if total else 0.0,
        "avg_tickets": _mean(tickets),
        "by_severity": _category_counts(by_severity),
        "by_impact": _category_counts(by_impact),
        "by_status": _category_counts(by_status),
        "by_priority": _category_counts(by_priority),
        "by_service": _category_counts(by_service),
        "downtime_by_service": [
            {
                "service_id": service_id,
                "service_name": service_names.get(service_id, "Unknown Service"),
                "total_minutes": minutes,
            }
            for service_id, minutes in sorted(downtime.items(), key=lambda kv: (-kv[1], kv[0]))
        ],
    }


def _is_date_only(value) -> bool:
    return isinstance(value, str) and len(value.strip()) == 10


def get_dashboard(start, end, service_ids: list[int] | None = None) -> dict:
    """Dashboard for live incidents with started_at in [start, end].

    Args:
        start: datetime or ISO string (inclusive).
        end: datetime or ISO string (inclusive). A bare date (``YYYY-MM-DD``)
            covers that whole day.
        service_ids: Optional restriction to these services.

    Raises:
        ValidationError: Missing/unparseable bounds or end before start.
    """
    try:
        start_dt: datetime | None = parse_datetime(start)
        end_dt: datetime | None = parse_datetime(end)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if start_dt is None or end_dt is None:
        raise ValidationError("start and end are required")
    if end_dt < start_dt:
        raise ValidationError("end must be on or after start")

    if _is_date_only(end):
        upper = Incident.started_at < end_dt + timedelta(days=1)
    else:
        upper = Incident.started_at <= end_dt

    stmt = (
        select(Incident)
        .where(
            Incident.deleted_at.is_(None),
            Incident.started_at >= start_dt,
            upper,
        )
        .order_by(Incident.id)
    )
    if service_ids:
        stmt = stmt.where(Incident.service_id.in_(service_ids))
    incidents = list(db.session.execute(stmt).scalars().all())
    logger.debug(
        "Dashboard computed",
        extra={"count": len(incidents), "start": start_dt.isoformat(), "end": end_dt.isoformat()},
    )
    return compute_dashboard(incidents)
