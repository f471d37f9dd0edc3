"""
Tests: Quarter configuration and the service catalog (CRUD, uniqueness, API).
"""

from __future__ import annotations

import pytest

import app.services.quarter_service as quarters
import app.services.service_catalog as catalog
from app.core.exceptions import ConflictError, NotFoundError, ValidationError


def _q(**overrides) -> dict:
    data = {
        "fiscal_year": 2025,
        "quarter_number": 2,
        "start_date": "2025-04-01",
        "end_date": "2025-06-30",
    }
    data.update(overrides)
    return data


# ── Quarters ──────────────────────────────────────────────────────────────────


def test_create_quarter_defaults_label():
    q = quarters.create_quarter(_q())
    assert q["label"] == "FY2025 Q2"
    assert q["start_date"] == "2025-04-01"


def test_duplicate_year_and_number_conflicts():
    quarters.create_quarter(_q())
    with pytest.raises(ConflictError):
        quarters.create_quarter(_q(label="Another Q2"))


@pytest.mark.parametrize("overrides,message", [
    ({"quarter_number": 5}, "Quarter number"),
    ({"fiscal_year": 1999}, "Fiscal year"),
    ({"end_date": "2025-03-01"}, "End date must be after"),
    ({"start_date": "not-a-date"}, "Invalid start_date"),
    ({"label": "   "}, "Label is required"),
])
def test_create_quarter_validation(overrides, message):
    with pytest.raises(ValidationError, match=message):
        quarters.create_quarter(_q(**overrides))


def test_update_quarter_revalidates_dates():
    q = quarters.create_quarter(_q())
    with pytest.raises(ValidationError):
        quarters.update_quarter(q["id"], {"end_date": "2025-01-01"})
    updated = quarters.update_quarter(q["id"], {"label": "Spring"})
    assert updated["label"] == "Spring"


def test_list_quarters_newest_first():
    quarters.create_quarter(_q(quarter_number=1, start_date="2025-01-01", end_date="2025-03-31"))
    quarters.create_quarter(_q())
    labels = [q["label"] for q in quarters.list_quarters()]
    assert labels == ["FY2025 Q2", "FY2025 Q1"]


def test_delete_quarter():
    q = quarters.create_quarter(_q())
    quarters.delete_quarter(q["id"])
    with pytest.raises(NotFoundError):
        quarters.get_quarter(q["id"])


def test_quarter_api(client, quarter):
    res = client.get(f"/api/v1/quarters/{quarter['id']}")
    assert res.status_code == 200
    assert res.get_json()["finalized"] is False

    res = client.post("/api/v1/quarters", json={
        "fiscal_year": 2026, "quarter_number": 1,
        "start_date": "2026-01-01", "end_date": "2026-03-31",
    })
    assert res.status_code == 409

    res = client.get("/api/v1/quarters/9999")
    assert res.status_code == 404


# ── Service catalog ───────────────────────────────────────────────────────────


def test_service_name_unique_case_insensitive():
    catalog.create_service({"name": "Ledger"})
    with pytest.raises(ConflictError):
        catalog.create_service({"name": "LEDGER"})


def test_service_defaults():
    s = catalog.create_service({"name": "Ledger"})
    assert s["category"] == "Other"
    assert s["tier"] == "T3"
    assert s["is_active"] is True


def test_service_rejects_unknown_tier():
    with pytest.raises(ValidationError, match="Invalid tier"):
        catalog.create_service({"name": "Ledger", "tier": "Gold"})


def test_deactivated_service_hidden_from_active_list():
    s = catalog.create_service({"name": "Ledger"})
    catalog.update_service(s["id"], {"is_active": False})
    assert catalog.list_services(active_only=True) == []
    assert len(catalog.list_services()) == 1


def test_service_api(client, service):
    res = client.get("/api/v1/services")
    assert res.status_code == 200
    assert res.get_json()["total"] == 1

    res = client.put(f"/api/v1/services/{service['id']}", json={"owner": "sre-team"})
    assert res.status_code == 200
    assert res.get_json()["owner"] == "sre-team"

    res = client.post("/api/v1/services", json={"name": "payments api"})
    assert res.status_code == 409
