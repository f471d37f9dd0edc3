"""
Incident Ledger
Quarter Service — fiscal quarter configuration.

Quarters only bound date-range queries; they hold no incident data. A
finalized quarter cannot be deleted until it is unfinalized.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.quarter import QuarterConfig, QuarterFinalization
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

MIN_FISCAL_YEAR = 2000
MAX_FISCAL_YEAR = 2100


def _get_quarter(quarter_id: int) -> QuarterConfig:
    quarter = db.session.get(QuarterConfig, quarter_id)
    if not quarter:
        raise NotFoundError(resource="Quarter", resource_id=quarter_id)
    return quarter


def _validate(values: dict) -> None:
    year = values.get("fiscal_year")
    if not isinstance(year, int) or isinstance(year, bool) or not MIN_FISCAL_YEAR <= year <= MAX_FISCAL_YEAR:
        raise ValidationError(
            f"Fiscal year must be between {MIN_FISCAL_YEAR} and {MAX_FISCAL_YEAR}",
            details={"fiscal_year": year},
        )
    number = values.get("quarter_number")
    if not isinstance(number, int) or isinstance(number, bool) or not 1 <= number <= 4:
        raise ValidationError(
            "Quarter number must be between 1 and 4",
            details={"quarter_number": number},
        )
    if values.get("start_date") is None:
        raise ValidationError("Start date is required", details={"start_date": "required"})
    if values.get("end_date") is None:
        raise ValidationError("End date is required", details={"end_date": "required"})
    if values["end_date"] <= values["start_date"]:
        raise ValidationError(
            "End date must be after start date",
            details={
                "start_date": values["start_date"].isoformat(),
                "end_date": values["end_date"].isoformat(),
            },
        )
    if not (values.get("label") or "").strip():
        raise ValidationError("Label is required", details={"label": "required"})


def _parse_dates(data: dict) -> dict:
    out = {}
    for field in ("start_date", "end_date"):
        if field in data:
            raw = data.get(field)
            parsed = parse_date(raw)
            if raw and parsed is None:
                raise ValidationError(f"Invalid {field} {raw!r}", details={field: raw})
            out[field] = parsed
    return out


def _ensure_unique(fiscal_year: int, quarter_number: int, exclude_id: int | None = None) -> None:
    stmt = select(QuarterConfig.id).where(
        QuarterConfig.fiscal_year == fiscal_year,
        QuarterConfig.quarter_number == quarter_number,
    )
    if exclude_id is not None:
        stmt = stmt.where(QuarterConfig.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError(
            resource="Quarter", field="fiscal_year/quarter_number",
            value=f"FY{fiscal_year} Q{quarter_number}",
        )


def is_finalized(quarter_id: int) -> bool:
    stmt = select(QuarterFinalization.id).where(QuarterFinalization.quarter_id == quarter_id)
    return db.session.execute(stmt).first() is not None


def create_quarter(data: dict) -> dict:
    """Create a quarter.

    Label defaults to ``FY{year} Q{n}`` when omitted.

    Raises:
        ValidationError: Bad year/number/dates/label.
        ConflictError: (fiscal_year, quarter_number) already configured.
    """
    values = {
        "fiscal_year": data.get("fiscal_year"),
        "quarter_number": data.get("quarter_number"),
        **_parse_dates(data),
    }
    label = data.get("label")
    if label is None and values["fiscal_year"] and values["quarter_number"]:
        label = f"FY{values['fiscal_year']} Q{values['quarter_number']}"
    values["label"] = (label or "").strip()
    _validate(values)
    _ensure_unique(values["fiscal_year"], values["quarter_number"])

    quarter = QuarterConfig(**values)
    db.session.add(quarter)
    db.session.commit()
    logger.info("Quarter created", extra={"quarter_id": quarter.id, "label": quarter.label})
    return quarter.to_dict()


def update_quarter(quarter_id: int, data: dict) -> dict:
    quarter = _get_quarter(quarter_id)
    values = {
        "fiscal_year": data.get("fiscal_year", quarter.fiscal_year),
        "quarter_number": data.get("quarter_number", quarter.quarter_number),
        "start_date": quarter.start_date,
        "end_date": quarter.end_date,
        "label": (data.get("label", quarter.label) or "").strip(),
    }
    values.update(_parse_dates(data))
    _validate(values)
    _ensure_unique(values["fiscal_year"], values["quarter_number"], exclude_id=quarter.id)

    for field, value in values.items():
        setattr(quarter, field, value)
    db.session.commit()
    logger.info("Quarter updated", extra={"quarter_id": quarter.id})
    return quarter.to_dict()


def get_quarter(quarter_id: int) -> dict:
    quarter = _get_quarter(quarter_id)
    out = quarter.to_dict()
    out["finalized"] = is_finalized(quarter_id)
    return out


def list_quarters() -> list[dict]:
    stmt = select(QuarterConfig).order_by(
        QuarterConfig.fiscal_year.desc(), QuarterConfig.quarter_number.desc(),
    )
    finalized = set(db.session.execute(select(QuarterFinalization.quarter_id)).scalars().all())
    out = []
    for quarter in db.session.execute(stmt).scalars().all():
        row = quarter.to_dict()
        row["finalized"] = quarter.id in finalized
        out.append(row)
    return out


def delete_quarter(quarter_id: int) -> None:
    """Delete a quarter with its overrides and snapshot.

    Raises:
        ValidationError: The quarter is finalized.
    """
    quarter = _get_quarter(quarter_id)
    if is_finalized(quarter_id):
        raise ValidationError(
            "Quarter is finalized; unfinalize it before deleting",
            details={"quarter_id": quarter_id},
        )
    db.session.delete(quarter)
    db.session.commit()
    logger.info("Quarter deleted", extra={"quarter_id": quarter_id})
