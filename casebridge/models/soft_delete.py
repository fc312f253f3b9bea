"""
Soft Delete Mixin.

Adds a ``deleted_at`` timestamp column and query helpers. Models that include
this mixin are marked as deleted rather than physically removed; normal reads
go through ``query_active()``.

Usage:
    class Transfer(SoftDeleteMixin, db.Model):
        ...

    transfer.soft_delete()
    db.session.commit()

    Transfer.query_active().all()
"""

from datetime import datetime, timezone

from casebridge.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
