"""
Typed enrichment job outputs.

A job's ``output_json`` is parsed exactly once, here, into one of four
output types keyed by job_type. The accept path works on these objects and
never re-reads raw JSON. A payload that does not match its job_type's shape
raises ValidationError.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from app.core.exceptions import ValidationError
from app.models.enrichment import FACTOR_CATEGORIES


@dataclass(frozen=True)
class ExecutiveSummaryOutput:
    summary: str
    job_type = "incident_executive_summary"

    def to_dict(self) -> dict:
        return {"summary": self.summary}


@dataclass(frozen=True)
class StakeholderUpdateOutput:
    content: str
    update_type: str = "status"
    job_type = "stakeholder_update"

    def to_dict(self) -> dict:
        return {"content": self.content, "update_type": self.update_type}


@dataclass(frozen=True)
class PostmortemDraftOutput:
    markdown: str
    job_type = "postmortem_draft"

    def to_dict(self) -> dict:
        return {"markdown": self.markdown}


@dataclass(frozen=True)
class Factor:
    category: str
    description: str
    is_root: bool = False


@dataclass(frozen=True)
class FactorCategorizationOutput:
    factors: list[Factor] = field(default_factory=list)
    job_type = "factor_categorization"

    def to_dict(self) -> dict:
        return {"factors": [asdict(f) for f in self.factors]}


EnrichmentOutput = (
    ExecutiveSummaryOutput
    | StakeholderUpdateOutput
    | PostmortemDraftOutput
    | FactorCategorizationOutput
)


def _text(payload: dict, key: str, job_type: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ValidationError(
            f"Malformed {job_type} output: '{key}' must be a string",
            details={"job_type": job_type, "field": key},
        )
    return value


def _parse_factors(payload: dict) -> FactorCategorizationOutput:
    raw = payload.get("factors")
    if not isinstance(raw, list):
        raise ValidationError(
            "Malformed factor_categorization output: 'factors' must be a list",
            details={"job_type": "factor_categorization", "field": "factors"},
        )
    factors = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError("Malformed factor entry", details={"factor": item})
        category = item.get("category") or "Process"
        if category not in FACTOR_CATEGORIES:
            raise ValidationError(
                f"Invalid factor category '{category}'",
                details={"category": category},
            )
        factors.append(Factor(
            category=category,
            description=str(item.get("description") or ""),
            is_root=bool(item.get("is_root", False)),
        ))
    return FactorCategorizationOutput(factors=factors)


def parse_output(job_type: str, payload) -> EnrichmentOutput:
    """Parse a raw job output dict into its typed form.

    Raises:
        ValidationError: Unknown job type or payload shape mismatch.
    """
    if not isinstance(payload, dict):
        raise ValidationError(
            f"Malformed {job_type} output: expected an object",
            details={"job_type": job_type},
        )
    if job_type == "incident_executive_summary":
        return ExecutiveSummaryOutput(summary=_text(payload, "summary", job_type))
    if job_type == "stakeholder_update":
        return StakeholderUpdateOutput(
            content=_text(payload, "content", job_type),
            update_type=payload.get("update_type") or "status",
        )
    if job_type == "postmortem_draft":
        return PostmortemDraftOutput(markdown=_text(payload, "markdown", job_type))
    if job_type == "factor_categorization":
        return _parse_factors(payload)
    raise ValidationError(f"Unknown job type '{job_type}'", details={"job_type": job_type})
