"""
Quarter Readiness Engine.

Scans every live incident whose started_at falls inside a quarter's window
and evaluates four independent rules per incident. Findings are grouped by
rule_key; each carries the offending incident ids and a fixed remediation.

An incident is *ready* when it trips none of the critical rules. The
``carried_over`` warning is informational and never blocks readiness.

The report is always recomputed from current data and is never persisted
on its own; finalize_quarter copies it into the snapshot.

Usage:
    from app.services.readiness_service import compute_readiness
    report = compute_readiness(quarter_id)
    report.to_dict()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from app.core.exceptions import NotFoundError
from app.core.priority import Level
from app.models import db
from app.models.incident import INCIDENT_STATUSES, Incident, timestamp_violations
from app.models.quarter import QuarterConfig
from app.services.incident_service import incidents_in_range
from app.utils.helpers import as_utc

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class FindingSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


@dataclass(frozen=True)
class ReadinessRule:
    """One readiness predicate and the fixed texts reported when it trips."""
    rule_key: str
    severity: FindingSeverity
    message: str
    remediation: str
    check: Callable[[Incident, QuarterConfig], bool]


@dataclass
class ReadinessFinding:
    rule_key: str
    severity: FindingSeverity
    message: str
    remediation: str
    incident_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "rule_key": self.rule_key,
            "severity": self.severity.value,
            "message": self.message,
            "incident_ids": list(self.incident_ids),
            "remediation": self.remediation,
        }


@dataclass
class ReadinessReport:
    """Aggregate readiness of one quarter."""
    quarter_id: int
    quarter_label: str
    total_incidents: int
    ready_incidents: int
    needs_attention_incidents: int
    findings: list[ReadinessFinding] = field(default_factory=list)

    def critical_pairs(self) -> set[tuple[str, int]]:
        """Every (rule_key, incident_id) a critical finding points at."""
        return {
            (f.rule_key, incident_id)
            for f in self.findings
            if f.severity == FindingSeverity.CRITICAL
            for incident_id in f.incident_ids
        }

    def to_dict(self) -> dict:
        return {
            "quarter_id": self.quarter_id,
            "quarter_label": self.quarter_label,
            "total_incidents": self.total_incidents,
            "ready_incidents": self.ready_incidents,
            "needs_attention_incidents": self.needs_attention_incidents,
            "findings": [f.to_dict() for f in self.findings],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Rule Definitions
# ═════════════════════════════════════════════════════════════════════════════

def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _missing_required_fields(inc: Incident, quarter: QuarterConfig) -> bool:
    return (
        _blank(inc.title)
        or inc.service_id is None
        or inc.service is None
        or _blank(inc.severity) or inc.severity not in Level.values()
        or _blank(inc.impact) or inc.impact not in Level.values()
        or _blank(inc.status) or inc.status not in INCIDENT_STATUSES
        or inc.started_at is None
        or inc.detected_at is None
    )


def _timestamp_ordering(inc: Incident, quarter: QuarterConfig) -> bool:
    if timestamp_violations(inc.timestamps()):
        return True
    # Direct check so a missing detected_at cannot hide an early acknowledgement.
    ack, started = as_utc(inc.acknowledged_at), as_utc(inc.started_at)
    return ack is not None and started is not None and ack < started


def _resolved_without_resolved_at(inc: Incident, quarter: QuarterConfig) -> bool:
    return inc.status == "Resolved" and inc.resolved_at is None


def _carried_over(inc: Incident, quarter: QuarterConfig) -> bool:
    if inc.status == "Resolved":
        return False
    return inc.resolved_at is None or as_utc(inc.resolved_at) >= quarter.window_end


READINESS_RULES: tuple[ReadinessRule, ...] = (
    ReadinessRule(
        rule_key="missing_required_fields",
        severity=FindingSeverity.CRITICAL,
        message="Some incidents are missing required fields for quarterly reporting.",
        remediation=(
            "Open each incident and fill in the missing required fields "
            "(title, service, severity/impact, status, started_at, detected_at)."
        ),
        check=_missing_required_fields,
    ),
    ReadinessRule(
        rule_key="timestamp_ordering",
        severity=FindingSeverity.CRITICAL,
        message="Some incidents have inconsistent timestamp ordering.",
        remediation=(
            "Fix timestamps so detected_at >= started_at, and other timestamps "
            "do not precede detected/started."
        ),
        check=_timestamp_ordering,
    ),
    ReadinessRule(
        rule_key="resolved_requires_resolved_at",
        severity=FindingSeverity.CRITICAL,
        message="Some incidents are marked Resolved but have no resolved_at timestamp.",
        remediation="Set resolved_at for resolved incidents (or change status if not resolved).",
        check=_resolved_without_resolved_at,
    ),
    ReadinessRule(
        rule_key="carried_over",
        severity=FindingSeverity.WARNING,
        message="Some incidents detected this quarter were not resolved by quarter end (carried over).",
        remediation=(
            "Confirm these are correct and ensure the quarterly packet includes a "
            "carried-over section with current status/context."
        ),
        check=_carried_over,
    ),
)

RULES_BY_KEY = {r.rule_key: r for r in READINESS_RULES}
CRITICAL_RULE_KEYS = {r.rule_key for r in READINESS_RULES if r.severity == FindingSeverity.CRITICAL}


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════

def evaluate_incidents(quarter: QuarterConfig, incidents: list[Incident]) -> ReadinessReport:
    """Run every rule over ``incidents``. Pure: no reads, no writes."""
    findings = {
        r.rule_key: ReadinessFinding(r.rule_key, r.severity, r.message, r.remediation)
        for r in READINESS_RULES
    }
    ready = 0
    for inc in sorted(incidents, key=lambda i: i.id):
        blocked = False
        for rule in READINESS_RULES:
            if rule.check(inc, quarter):
                findings[rule.rule_key].incident_ids.append(inc.id)
                if rule.severity == FindingSeverity.CRITICAL:
                    blocked = True
        if not blocked:
            ready += 1

    return ReadinessReport(
        quarter_id=quarter.id,
        quarter_label=quarter.label,
        total_incidents=len(incidents),
        ready_incidents=ready,
        needs_attention_incidents=len(incidents) - ready,
        findings=[findings[r.rule_key] for r in READINESS_RULES if findings[r.rule_key].incident_ids],
    )


def get_quarter(quarter_id: int) -> QuarterConfig:
    quarter = db.session.get(QuarterConfig, quarter_id)
    if not quarter:
        raise NotFoundError(resource="Quarter", resource_id=quarter_id)
    return quarter


def compute_readiness(quarter_id: int) -> ReadinessReport:
    """Recompute readiness for a quarter from current incident data.

    Raises:
        NotFoundError: Quarter does not exist.
    """
    quarter = get_quarter(quarter_id)
    incidents = incidents_in_range(quarter.window_start, quarter.window_end)
    report = evaluate_incidents(quarter, incidents)
    logger.debug(
        "Readiness computed",
        extra={
            "quarter_id": quarter_id,
            "total": report.total_incidents,
            "needs_attention": report.needs_attention_incidents,
        },
    )
    return report
