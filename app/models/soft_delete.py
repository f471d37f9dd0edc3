"""
Soft delete mixin for incident-side records.

Adds a ``deleted_at`` timestamp and query helpers. Soft-deleted rows stay in
the table until an explicit purge removes them.

Usage:
    class Incident(SoftDeleteMixin, db.Model):
        ...

    incident.soft_delete()
    db.session.commit()

    db.session.execute(Incident.select_active()).scalars().all()
"""

from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to a SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def select_active(cls):
        """Return a ``select()`` that excludes soft-deleted records."""
        return select(cls).where(cls.deleted_at.is_(None))

    @classmethod
    def select_deleted(cls):
        """Return a ``select()`` over soft-deleted records only."""
        return select(cls).where(cls.deleted_at.isnot(None))
