"""
Learner directory model.

A Learner is the case record for one neurodiverse learner. The record is
owned by its current institution; other institutions may read it when listed
in ``authorized_institutions`` (granted, for example, to the receiving side of
a transfer).

``institution_history`` is a JSON array of past enrolments:
    [{institution_id, institution_name, start_date, end_date, reason}]
Entries are only ever appended.
"""

import uuid
from datetime import datetime, timezone

from casebridge.models import db
from casebridge.models.soft_delete import SoftDeleteMixin

# ── Constants ─────────────────────────────────────────────────────────────────

LEARNER_ACTIVE = "active"
LEARNER_TRANSITIONING = "transitioning"
LEARNER_COMPLETED = "completed"
LEARNER_INACTIVE = "inactive"

LEARNER_STATUSES = {LEARNER_ACTIVE, LEARNER_TRANSITIONING, LEARNER_COMPLETED, LEARNER_INACTIVE}

# Statuses that close the current enrolment
EXIT_STATUSES = {LEARNER_COMPLETED, LEARNER_INACTIVE}


def _uuid():
    return str(uuid.uuid4())


class Learner(SoftDeleteMixin, db.Model):
    """Learner case record (limited PII)."""

    __tablename__ = "learners"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    case_number = db.Column(db.String(32), nullable=False, unique=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)

    status = db.Column(
        db.String(20),
        nullable=False,
        default=LEARNER_ACTIVE,
        comment="active | transitioning | completed | inactive",
    )

    current_institution_id = db.Column(
        db.String(36),
        db.ForeignKey("institutions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    enrollment_date = db.Column(db.Date, nullable=False)
    exit_date = db.Column(db.Date, nullable=True)

    institution_history = db.Column(db.JSON, nullable=False, default=list)
    authorized_institutions = db.Column(db.JSON, nullable=False, default=list)

    last_modified_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    current_institution = db.relationship("Institution", lazy="joined")

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('active','transitioning','completed','inactive')",
            name="ck_learner_status",
        ),
        db.Index("ix_learners_institution_status", "current_institution_id", "status"),
    )

    def is_readable_by(self, institution_id: str | None) -> bool:
        """True if ``institution_id`` owns the record or was granted access."""
        if institution_id is None:
            return False
        return (
            self.current_institution_id == institution_id
            or institution_id in (self.authorized_institutions or [])
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "case_number": self.case_number,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "status": self.status,
            "current_institution_id": self.current_institution_id,
            "enrollment_date": self.enrollment_date.isoformat() if self.enrollment_date else None,
            "exit_date": self.exit_date.isoformat() if self.exit_date else None,
            "institution_history": list(self.institution_history or []),
            "authorized_institutions": list(self.authorized_institutions or []),
        }

    def __repr__(self) -> str:
        return f"<Learner {self.id}: {self.case_number} ({self.status})>"
