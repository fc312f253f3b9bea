"""
Learner Transfer domain models.

Models:
    - Transfer:          Workflow aggregate for one learner hand-off between
                         a sending and a receiving institution
    - TransferTimeline:  Append-only event log owned by a Transfer

Architecture:
    Learner ──1:N──▶ Transfer ──1:N──▶ TransferTimeline
    Institution ──1:N──▶ Transfer (as sender and as receiver)

State machine:
    pending  ──▶ approved | rejected | cancelled
    approved ──▶ completed | cancelled
    rejected, completed, cancelled are terminal

Transfer number format: TR-<year>-<8 upper-case hex> (e.g. TR-2026-1A2B3C4D)
"""

import re
import secrets
import uuid
from datetime import datetime, timezone

from casebridge.models import db
from casebridge.models.soft_delete import SoftDeleteMixin

# ── Constants ─────────────────────────────────────────────────────────────────

TRANSFER_NUMBER_RE = re.compile(r"^TR-\d{4}-[0-9A-F]{8}$")

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

TRANSFER_STATUSES = {
    STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_COMPLETED, STATUS_CANCELLED,
}

# Statuses that count as "in flight" for the one-active-transfer-per-learner rule
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_APPROVED)

REVIEW_OUTCOMES = {STATUS_APPROVED, STATUS_REJECTED}

TRANSFER_PRIORITIES = {"low", "normal", "high", "urgent"}

TRANSFER_REASONS = {
    "program_completion",
    "geographical_relocation",
    "specialized_support_needed",
    "capacity_constraints",
    "family_request",
    "improved_fit",
    "other",
}

COMPLETION_CHECKLIST_ITEMS = (
    "documents_transferred",
    "case_notes_shared",
    "parent_notified",
    "enrollment_completed",
    "previous_institution_notified",
    "transition_plan_created",
)

HANDOVER_SUMMARY_FIELDS = (
    "current_status",
    "key_achievements",
    "ongoing_challenges",
    "recommended_strategies",
    "special_considerations",
)

# Timeline event types
EVENT_INITIATED = "transfer_initiated"
EVENT_DOCUMENTS_SHARED = "documents_shared"
EVENT_CASE_NOTES_SHARED = "case_notes_shared"
EVENT_COMMUNICATION_SENT = "communication_sent"
EVENT_MEETING_SCHEDULED = "meeting_scheduled"
EVENT_MEETING_COMPLETED = "meeting_completed"
EVENT_APPROVED = "approved"
EVENT_REJECTED = "rejected"
EVENT_ACKNOWLEDGED = "acknowledged"
EVENT_COMPLETED = "completed"
EVENT_CANCELLED = "cancelled"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_COMMENT_ADDED = "comment_added"

TIMELINE_EVENT_TYPES = {
    EVENT_INITIATED,
    EVENT_DOCUMENTS_SHARED,
    EVENT_CASE_NOTES_SHARED,
    EVENT_COMMUNICATION_SENT,
    EVENT_MEETING_SCHEDULED,
    EVENT_MEETING_COMPLETED,
    EVENT_APPROVED,
    EVENT_REJECTED,
    EVENT_ACKNOWLEDGED,
    EVENT_COMPLETED,
    EVENT_CANCELLED,
    EVENT_STATUS_CHANGED,
    EVENT_COMMENT_ADDED,
}


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def generate_transfer_number(now: datetime | None = None) -> str:
    """Return a new human-readable transfer code, e.g. ``TR-2026-1A2B3C4D``."""
    year = (now or _utcnow()).year
    return f"TR-{year}-{secrets.token_hex(4).upper()}"


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Transfer
# ═════════════════════════════════════════════════════════════════════════════


class Transfer(SoftDeleteMixin, db.Model):
    """
    Learner hand-off request between two institutions.

    JSON columns (handover_summary, shared_documents, shared_case_notes,
    communications, completion_checklist, metadata_json) are replaced, never
    mutated in place, so SQLAlchemy change tracking sees every write.

    Business rules:
    - transfer_number, learner_id, from/to institution, reason and
      reason_details never change after creation.
    - shared_documents and communications are append-only.
    - At most one pending/approved transfer per learner
      (uq_transfers_learner_active).
    """

    __tablename__ = "transfers"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    transfer_number = db.Column(db.String(20), nullable=False, unique=True)

    # Participants
    learner_id = db.Column(
        db.String(36),
        db.ForeignKey("learners.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    from_institution_id = db.Column(
        db.String(36),
        db.ForeignKey("institutions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    to_institution_id = db.Column(
        db.String(36),
        db.ForeignKey("institutions.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # Workflow
    status = db.Column(
        db.String(20),
        nullable=False,
        default=STATUS_PENDING,
        comment="pending | approved | rejected | completed | cancelled",
    )
    priority = db.Column(
        db.String(10),
        nullable=False,
        default="normal",
        comment="low | normal | high | urgent",
    )
    reason = db.Column(db.String(40), nullable=False)
    reason_details = db.Column(db.Text, nullable=False)

    # Scheduling
    proposed_transfer_date = db.Column(db.Date, nullable=False)
    actual_transfer_date = db.Column(db.Date, nullable=True)

    # Provenance
    initiated_by = db.Column(db.String(36), nullable=False)
    reviewed_by = db.Column(db.String(36), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_notes = db.Column(db.Text, nullable=True)

    # Handover payload
    handover_summary = db.Column(db.JSON, nullable=True)
    shared_documents = db.Column(db.JSON, nullable=False, default=list)
    shared_case_notes = db.Column(db.JSON, nullable=False, default=list)
    communications = db.Column(db.JSON, nullable=False, default=list)

    # Coordination
    coordination_meeting_required = db.Column(db.Boolean, nullable=False, default=False)
    coordination_meeting_date = db.Column(db.DateTime(timezone=True), nullable=True)
    coordination_meeting_notes = db.Column(db.Text, nullable=True)

    # Receiving institution acknowledgment
    receiving_institution_acknowledged = db.Column(db.Boolean, nullable=False, default=False)
    acknowledged_by = db.Column(db.String(36), nullable=True)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Completion
    completion_checklist = db.Column(db.JSON, nullable=True)

    # Follow-up (informational)
    requires_follow_up = db.Column(db.Boolean, nullable=False, default=False)
    follow_up_date = db.Column(db.Date, nullable=True)
    follow_up_notes = db.Column(db.Text, nullable=True)
    follow_up_completed = db.Column(db.Boolean, nullable=False, default=False)

    metadata_json = db.Column(
        "metadata",
        db.JSON,
        nullable=False,
        default=dict,
        comment="Acknowledgment notes, cancellation details",
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    # ── Relationships ────────────────────────────────────────────────────
    learner = db.relationship("Learner", lazy="select")
    from_institution = db.relationship(
        "Institution", foreign_keys=[from_institution_id], lazy="joined",
    )
    to_institution = db.relationship(
        "Institution", foreign_keys=[to_institution_id], lazy="joined",
    )
    timeline = db.relationship(
        "TransferTimeline",
        backref="transfer",
        lazy="select",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TransferTimeline.id",
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','approved','rejected','completed','cancelled')",
            name="ck_transfer_status",
        ),
        db.CheckConstraint(
            "priority IN ('low','normal','high','urgent')",
            name="ck_transfer_priority",
        ),
        db.Index("ix_transfers_status_created", "status", "created_at"),
        db.Index("ix_transfers_from_to", "from_institution_id", "to_institution_id"),
        db.Index(
            "uq_transfers_learner_active",
            "learner_id",
            unique=True,
            postgresql_where=db.text(
                "status IN ('pending', 'approved') AND deleted_at IS NULL"
            ),
            sqlite_where=db.text(
                "status IN ('pending', 'approved') AND deleted_at IS NULL"
            ),
        ),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    def involves(self, institution_id: str | None) -> bool:
        """True if ``institution_id`` is the sending or receiving institution."""
        return institution_id is not None and institution_id in (
            self.from_institution_id,
            self.to_institution_id,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_number": self.transfer_number,
            "learner_id": self.learner_id,
            "from_institution_id": self.from_institution_id,
            "from_institution_name": self.from_institution.name if self.from_institution else None,
            "to_institution_id": self.to_institution_id,
            "to_institution_name": self.to_institution.name if self.to_institution else None,
            "status": self.status,
            "priority": self.priority,
            "reason": self.reason,
            "reason_details": self.reason_details,
            "proposed_transfer_date": _iso(self.proposed_transfer_date),
            "actual_transfer_date": _iso(self.actual_transfer_date),
            "initiated_by": self.initiated_by,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "review_notes": self.review_notes,
            "handover_summary": self.handover_summary,
            "shared_documents": list(self.shared_documents or []),
            "shared_case_notes": list(self.shared_case_notes or []),
            "communications": list(self.communications or []),
            "coordination_meeting_required": self.coordination_meeting_required,
            "coordination_meeting_date": _iso(self.coordination_meeting_date),
            "coordination_meeting_notes": self.coordination_meeting_notes,
            "receiving_institution_acknowledged": self.receiving_institution_acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "completion_checklist": self.completion_checklist,
            "requires_follow_up": self.requires_follow_up,
            "follow_up_date": _iso(self.follow_up_date),
            "follow_up_notes": self.follow_up_notes,
            "follow_up_completed": self.follow_up_completed,
            "metadata": dict(self.metadata_json or {}),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "deleted_at": _iso(self.deleted_at),
        }

    def __repr__(self) -> str:
        return f"<Transfer {self.transfer_number} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# TransferTimeline
# ═════════════════════════════════════════════════════════════════════════════


class TransferTimeline(db.Model):
    """
    Immutable timeline entry for a Transfer.

    Business rules:
    - Rows are NEVER updated or deleted by application code; they go away only
      through ON DELETE CASCADE when the parent Transfer row is hard-deleted.
    - Ordering is (created_at, id) ascending.
    - Exactly one row is appended per successful engine operation.
    """

    __tablename__ = "transfer_timeline"

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(
        db.String(36),
        db.ForeignKey("transfers.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type = db.Column(
        db.String(30),
        nullable=False,
        comment="transfer_initiated | approved | rejected | acknowledged | completed | …",
    )
    description = db.Column(db.String(500), nullable=False)
    performed_by = db.Column(db.String(36), nullable=True)
    event_data = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.Index("ix_transfer_timeline_transfer_created", "transfer_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "event_type": self.event_type,
            "description": self.description,
            "performed_by": self.performed_by,
            "event_data": self.event_data or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<TransferTimeline #{self.id} {self.transfer_id} {self.event_type}>"
