"""
Prompt templates for generator-backed enrichment jobs.

Each job type has a fixed system prompt and a builder that fills the user
prompt from the incident's input projection. Bump PROMPT_VERSION whenever
the wording changes; it is recorded on every job and provenance row.
"""

PROMPT_VERSION = "v1"

SUMMARIZE_SYSTEM = (
    "You are an incident management expert. Generate concise, professional incident "
    "summaries suitable for executive briefings. Focus on impact, timeline, and resolution."
)

STAKEHOLDER_SYSTEM = (
    "You are drafting a stakeholder communication about an incident. Be professional, "
    "clear, and avoid jargon. Include what happened, current status, impact, and next steps."
)

POSTMORTEM_SYSTEM = (
    "You are an expert in writing post-mortem documents for production incidents. "
    "Create thorough, blameless post-mortems that focus on systems improvements."
)


def _or(value: str | None, default: str) -> str:
    return value if value else default


def summarize_prompt(
    title: str, severity: str, status: str, service: str,
    root_cause: str, resolution: str, notes: str,
) -> str:
    return (
        "Summarize this incident for an executive audience:\n\n"
        f"Title: {title}\n"
        f"Severity: {severity}\n"
        f"Status: {status}\n"
        f"Service: {service}\n"
        f"Root Cause: {_or(root_cause, 'Not yet determined')}\n"
        f"Resolution: {_or(resolution, 'In progress')}\n"
        f"Notes: {_or(notes, 'None')}\n\n"
        "Provide a 2-3 paragraph executive summary covering impact, root cause, "
        "and current status/resolution."
    )


def stakeholder_prompt(
    title: str, severity: str, status: str, service: str, impact: str, notes: str,
) -> str:
    return (
        "Draft a stakeholder update email for this incident:\n\n"
        f"Title: {title}\n"
        f"Severity: {severity}\n"
        f"Status: {status}\n"
        f"Service: {service}\n"
        f"Impact Level: {impact}\n"
        f"Notes: {_or(notes, 'None')}\n\n"
        "Write a professional, empathetic update suitable for sending to affected stakeholders."
    )


def postmortem_prompt(
    title: str, severity: str, service: str, root_cause: str,
    resolution: str, lessons: str, contributing_factors: list[str],
) -> str:
    factors = "\n- ".join(contributing_factors) if contributing_factors else "None documented"
    return (
        "Generate a comprehensive post-mortem document for this incident:\n\n"
        f"Title: {title}\n"
        f"Severity: {severity}\n"
        f"Service: {service}\n"
        f"Root Cause: {_or(root_cause, 'Not yet determined')}\n"
        f"Resolution: {_or(resolution, 'In progress')}\n"
        f"Lessons Learned: {_or(lessons, 'None documented')}\n"
        f"Contributing Factors:\n- {factors}\n\n"
        "Structure the post-mortem with these sections:\n"
        "1. Executive Summary\n"
        "2. Impact Analysis\n"
        "3. Timeline\n"
        "4. Root Cause Analysis\n"
        "5. Contributing Factors\n"
        "6. Action Items\n"
        "7. Lessons Learned\n\n"
        "Use blameless language. Focus on system improvements."
    )
