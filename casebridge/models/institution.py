"""
Institution directory model.

Institutions are the schools and tutor centres that exchange learner cases.
The transfer engine only needs existence and display name; the remaining
columns are what the directory stores about each participant.
"""

import uuid
from datetime import datetime, timezone

from casebridge.models import db
from casebridge.models.soft_delete import SoftDeleteMixin

# ── Constants ─────────────────────────────────────────────────────────────────

INSTITUTION_TYPES = {"school", "tutor_centre"}


def _uuid():
    return str(uuid.uuid4())


class Institution(SoftDeleteMixin, db.Model):
    """A school or tutor centre participating in learner case sharing."""

    __tablename__ = "institutions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(255), nullable=False)
    institution_type = db.Column(
        db.String(20),
        nullable=False,
        default="school",
        comment="school | tutor_centre",
    )
    email = db.Column(db.String(255), nullable=True, unique=True)
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

    __table_args__ = (
        db.CheckConstraint(
            "institution_type IN ('school','tutor_centre')",
            name="ck_institution_type",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "institution_type": self.institution_type,
            "email": self.email,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Institution {self.id}: {self.name}>"
