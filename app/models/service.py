"""
Incident Ledger
Service catalog model.

Models:
    - Service: a monitored system that incidents are raised against.
"""

from datetime import datetime, timezone

from app.models import db
from app.utils.helpers import iso_utc

SERVICE_CATEGORIES = {
    "Infrastructure", "Application", "Database", "Network",
    "Security", "Third-Party", "Other",
}

SERVICE_TIERS = {"T1", "T2", "T3", "T4"}


class Service(db.Model):
    """A monitored service. Incidents reference it by id."""

    __tablename__ = "services"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    category = db.Column(db.String(30), nullable=False, default="Other")
    tier = db.Column(db.String(5), nullable=False, default="T3")
    owner = db.Column(db.String(200), default="")
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "tier": self.tier,
            "owner": self.owner,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<Service {self.id}: {self.name}>"
