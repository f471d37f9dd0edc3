"""
Incident Ledger
Enrichment Service — job lifecycle, generation dispatch and the accept protocol.

Job lifecycle:
    create_job_running()  → status=running, committed immediately
    complete_job_success() / complete_job_failure()  → terminal, exactly once

run_incident_enrichment() never holds a transaction across the generator
call: the running job is committed first, the generator is called, and the
terminal state is committed afterwards. Generation failures (including an
unavailable generator) are recorded on the job row as status=failed; the
caller still receives the job.

accept_job() copies a succeeded job's typed output into the matching
narrative table and appends one FieldProvenance row in the same commit.
Re-accepting re-applies the write and appends another provenance row.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import select

from app.ai.enrichment_outputs import (
    ExecutiveSummaryOutput,
    FactorCategorizationOutput,
    PostmortemDraftOutput,
    StakeholderUpdateOutput,
    parse_output,
)
from app.ai.generator import GeneratorAvailability, GeneratorError, TextGenerator
from app.ai.prompts import (
    POSTMORTEM_SYSTEM,
    PROMPT_VERSION,
    STAKEHOLDER_SYSTEM,
    SUMMARIZE_SYSTEM,
    postmortem_prompt,
    stakeholder_prompt,
    summarize_prompt,
)
from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.enrichment import (
    JOB_TYPES,
    ContributingFactor,
    EnrichmentJob,
    IncidentEnrichment,
    Postmortem,
    StakeholderUpdate,
)
from app.models.incident import Incident
from app.services.provenance_service import record_provenance
from app.utils.hashing import hash_json
from app.utils.helpers import iso_utc, utcnow

logger = logging.getLogger(__name__)

COMPUTED_PROMPT_VERSION = "computed-v1"
AI_UNAVAILABLE = "AI unavailable"


# ═════════════════════════════════════════════════════════════════════════════
# Job lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def _get_job(job_id: int) -> EnrichmentJob:
    job = db.session.get(EnrichmentJob, job_id)
    if not job:
        raise NotFoundError(resource="EnrichmentJob", resource_id=job_id)
    return job


def create_job_running(
    job_type: str,
    entity_type: str,
    entity_id,
    input_hash: str,
    model_id: str = "",
    prompt_version: str = "",
) -> EnrichmentJob:
    """Insert and commit a job in ``running`` state.

    Raises:
        ValidationError: Blank job_type/entity_type/entity_id/input_hash.
    """
    entity_id = str(entity_id if entity_id is not None else "").strip()
    if not (job_type or "").strip() or not (entity_type or "").strip() or not entity_id:
        raise ValidationError("job_type/entity_type/entity_id are required")
    if not (input_hash or "").strip():
        raise ValidationError("input_hash is required")

    job = EnrichmentJob(
        job_type=job_type,
        entity_type=entity_type,
        entity_id=entity_id,
        status="running",
        input_hash=input_hash,
        model_id=model_id or "",
        prompt_version=prompt_version or "",
    )
    db.session.add(job)
    db.session.commit()
    logger.info(
        "Enrichment job started",
        extra={"job_id": job.id, "job_type": job_type, "entity_id": entity_id},
    )
    return job


def _complete(job_id: int, status: str, *, output: dict | None = None, error: str | None = None) -> EnrichmentJob:
    job = _get_job(job_id)
    if job.is_terminal:
        raise ValidationError(
            f"Job {job_id} is already {job.status}",
            details={"job_id": job_id, "status": job.status},
        )
    job.status = status
    if output is not None:
        job.output_json = json.dumps(output, sort_keys=True)
    job.error = error
    job.completed_at = utcnow()
    db.session.commit()
    return job


def complete_job_success(job_id: int, output: dict) -> EnrichmentJob:
    job = _complete(job_id, "succeeded", output=output)
    logger.info("Enrichment job succeeded", extra={"job_id": job_id, "job_type": job.job_type})
    return job


def complete_job_failure(job_id: int, error: str) -> EnrichmentJob:
    job = _complete(job_id, "failed", error=error or "unknown error")
    logger.warning(
        "Enrichment job failed",
        extra={"job_id": job_id, "job_type": job.job_type, "error": job.error},
    )
    return job


def get_job(job_id: int) -> dict:
    return _get_job(job_id).to_dict()


def list_jobs(entity_type: str | None = None, entity_id=None, job_type: str | None = None) -> list[dict]:
    stmt = select(EnrichmentJob).order_by(EnrichmentJob.created_at.desc(), EnrichmentJob.id.desc())
    if entity_type:
        stmt = stmt.where(EnrichmentJob.entity_type == entity_type)
    if entity_id is not None:
        stmt = stmt.where(EnrichmentJob.entity_id == str(entity_id))
    if job_type:
        stmt = stmt.where(EnrichmentJob.job_type == job_type)
    return [j.to_dict() for j in db.session.execute(stmt).scalars().all()]


# ═════════════════════════════════════════════════════════════════════════════
# Generation
# ═════════════════════════════════════════════════════════════════════════════


def incident_input(inc: Incident) -> dict:
    """Projection of the incident facts a generation job reads."""
    return {
        "incident_id": inc.id,
        "title": inc.title,
        "severity": inc.severity,
        "impact": inc.impact,
        "status": inc.status,
        "service": inc.service_name,
        "started_at": iso_utc(inc.started_at),
        "detected_at": iso_utc(inc.detected_at),
        "root_cause": inc.root_cause or "",
        "resolution": inc.resolution or "",
        "lessons_learned": inc.lessons_learned or "",
        "notes": inc.notes or "",
        "reopen_count": inc.reopen_count or 0,
    }


def model_and_prompt(job_type: str, generator: TextGenerator) -> tuple[str, str]:
    if job_type == "factor_categorization":
        return "", COMPUTED_PROMPT_VERSION
    return generator.primary_model, PROMPT_VERSION


def _factor_lines(incident_id: int) -> list[str]:
    stmt = (
        select(ContributingFactor)
        .where(ContributingFactor.incident_id == incident_id)
        .order_by(ContributingFactor.id)
    )
    return [f"[{f.category}] {f.description}" for f in db.session.execute(stmt).scalars().all()]


def _computed_factors(inp: dict) -> dict:
    root_cause = inp["root_cause"]
    if not root_cause.strip():
        return {"factors": []}
    return {"factors": [{"category": "Process", "description": root_cause, "is_root": True}]}


def _generate_output(
    job_type: str, inp: dict, factor_lines: list[str],
    generator: TextGenerator, model_id: str, available: bool,
) -> dict:
    if job_type == "factor_categorization":
        return _computed_factors(inp)
    if not available:
        raise ValidationError(AI_UNAVAILABLE)

    if job_type == "incident_executive_summary":
        prompt = summarize_prompt(
            inp["title"], inp["severity"], inp["status"], inp["service"],
            inp["root_cause"], inp["resolution"], inp["notes"],
        )
        return {"summary": generator.generate(model_id, prompt, SUMMARIZE_SYSTEM)}
    if job_type == "stakeholder_update":
        prompt = stakeholder_prompt(
            inp["title"], inp["severity"], inp["status"], inp["service"],
            inp["impact"], inp["notes"],
        )
        return {
            "content": generator.generate(model_id, prompt, STAKEHOLDER_SYSTEM),
            "update_type": "status",
        }
    if job_type == "postmortem_draft":
        prompt = postmortem_prompt(
            inp["title"], inp["severity"], inp["service"], inp["root_cause"],
            inp["resolution"], inp["lessons_learned"], factor_lines,
        )
        return {"markdown": generator.generate(model_id, prompt, POSTMORTEM_SYSTEM)}
    raise ValidationError(f"Unknown job_type '{job_type}'", details={"job_type": job_type})


def run_incident_enrichment(
    job_type: str,
    incident_id: int,
    generator: TextGenerator,
    availability: GeneratorAvailability,
) -> dict:
    """Create a job for ``incident_id``, generate its output and record the outcome.

    Raises (before any job row exists):
        ValidationError: Unknown job_type.
        NotFoundError: Incident missing or soft-deleted.
    """
    if job_type not in JOB_TYPES:
        raise ValidationError(
            f"Unknown job_type '{job_type}'. Must be one of: {', '.join(sorted(JOB_TYPES))}",
            details={"job_type": job_type},
        )
    inc = db.session.get(Incident, incident_id)
    if not inc or inc.is_deleted:
        raise NotFoundError(resource="Incident", resource_id=incident_id)

    inp = incident_input(inc)
    factor_lines = _factor_lines(inc.id) if job_type == "postmortem_draft" else []
    model_id, prompt_version = model_and_prompt(job_type, generator)
    job = create_job_running(
        job_type, "incident", inc.id, hash_json(inp), model_id, prompt_version,
    )
    job_id = job.id

    try:
        output = _generate_output(
            job_type, inp, factor_lines, generator, model_id, availability.available,
        )
    except (GeneratorError, ValidationError) as exc:
        return complete_job_failure(job_id, str(exc)).to_dict()
    return complete_job_success(job_id, output).to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Accept
# ═════════════════════════════════════════════════════════════════════════════


def _accept_summary(job: EnrichmentJob, out: ExecutiveSummaryOutput, incident_id: int) -> tuple:
    row = db.session.get(IncidentEnrichment, incident_id)
    if row is None:
        row = IncidentEnrichment(incident_id=incident_id)
        db.session.add(row)
    row.executive_summary = out.summary
    row.last_job_id = job.id
    row.generated_by = "ai"
    return "incident", incident_id, "executive_summary", "ai"


def _accept_stakeholder(job: EnrichmentJob, out: StakeholderUpdateOutput, incident_id: int) -> tuple:
    if not out.content.strip():
        raise ValidationError("Stakeholder update content is empty", details={"job_id": job.id})
    row = StakeholderUpdate(
        incident_id=incident_id,
        content=out.content,
        update_type=out.update_type,
        generated_by="ai",
    )
    db.session.add(row)
    db.session.flush()
    return "stakeholder_update", row.id, "content", "ai"


def _accept_postmortem(job: EnrichmentJob, out: PostmortemDraftOutput, incident_id: int) -> tuple:
    stmt = select(Postmortem).where(Postmortem.incident_id == incident_id)
    pm = db.session.execute(stmt).scalars().first()
    if pm is None:
        pm = Postmortem(incident_id=incident_id, status="draft")
        db.session.add(pm)
    content = pm.content
    content["markdown"] = out.markdown
    pm.content_json = json.dumps(content, sort_keys=True)
    db.session.flush()
    return "postmortem", pm.id, "content", "ai"


def _accept_factors(job: EnrichmentJob, out: FactorCategorizationOutput, incident_id: int) -> tuple:
    for factor in out.factors:
        if not factor.description.strip():
            continue
        db.session.add(ContributingFactor(
            incident_id=incident_id,
            category=factor.category,
            description=factor.description,
            is_root=factor.is_root,
        ))
    source_type = "computed" if not job.model_id.strip() else "ai"
    return "incident", incident_id, "contributing_factors", source_type


_ACCEPTORS = {
    ExecutiveSummaryOutput: _accept_summary,
    StakeholderUpdateOutput: _accept_stakeholder,
    PostmortemDraftOutput: _accept_postmortem,
    FactorCategorizationOutput: _accept_factors,
}


def accept_job(job_id: int, actor: str = "system") -> dict:
    """Apply a succeeded incident job's output to the narrative tables.

    Returns ``{"job": ..., "provenance": ...}``.

    Raises:
        NotFoundError: Job or its incident does not exist.
        ValidationError: Job not succeeded, not an incident job, or malformed output.
    """
    job = _get_job(job_id)
    if job.status != "succeeded":
        raise ValidationError(
            f"Only succeeded jobs can be accepted (job {job_id} is {job.status})",
            details={"job_id": job_id, "status": job.status},
        )
    if job.entity_type != "incident":
        raise ValidationError(
            f"Unsupported entity_type '{job.entity_type}' for accept",
            details={"job_id": job_id, "entity_type": job.entity_type},
        )
    try:
        incident_id = int(job.entity_id)
    except ValueError as exc:
        raise ValidationError("Job entity_id is not an incident id") from exc
    inc = db.session.get(Incident, incident_id)
    if not inc or inc.is_deleted:
        raise NotFoundError(resource="Incident", resource_id=incident_id)

    output = parse_output(job.job_type, job.output)
    try:
        entity_type, entity_id, field_name, source_type = _ACCEPTORS[type(output)](
            job, output, incident_id,
        )
        prov = record_provenance(
            entity_type=entity_type,
            entity_id=entity_id,
            field_name=field_name,
            source_type=source_type,
            source_ref=job.model_id,
            source_version=job.prompt_version,
            input_hash=job.input_hash,
            meta={
                "job_id": job.id,
                "model_id": job.model_id,
                "prompt_version": job.prompt_version,
                "job_type": job.job_type,
            },
        )
        write_audit(
            entity_type="enrichment_job", entity_id=job.id, action="enrichment.accept",
            actor=actor, diff={"incident_id": incident_id, "field_name": field_name},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Enrichment job accepted",
        extra={"job_id": job.id, "incident_id": incident_id, "job_type": job.job_type},
    )
    return {"job": job.to_dict(), "provenance": prov.to_dict()}
