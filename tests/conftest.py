"""
Shared pytest fixtures for the Incident Ledger test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - service: Pre-created Service entity
    - quarter: Pre-created Q1 2026 QuarterConfig
"""

import pytest

from app import create_app
from app.models import db as _db
from app.services.sla_service import seed_defaults


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Tables are recreated per test; the default SLA rows go with them.
        seed_defaults()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def service(client):
    """Create and return a test Service via the API."""
    res = client.post(
        "/api/v1/services",
        json={"name": "Payments API", "category": "Application", "tier": "T1"},
    )
    assert res.status_code == 201
    return res.get_json()


@pytest.fixture()
def quarter(client):
    """Create and return FY2026 Q1 (Jan 1 to Mar 31 inclusive) via the API."""
    res = client.post(
        "/api/v1/quarters",
        json={
            "fiscal_year": 2026,
            "quarter_number": 1,
            "start_date": "2026-01-01",
            "end_date": "2026-03-31",
        },
    )
    assert res.status_code == 201
    return res.get_json()
