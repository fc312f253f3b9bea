"""
CaseBridge — Learner Transfer Service
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import UTC, datetime

from casebridge.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"transfer", "learner"}

AUDIT_ACTIONS = {
    # Transfer lifecycle
    "transfer_initiated",
    "transfer_updated",
    "transfer_approved",
    "transfer_rejected",
    "transfer_acknowledged",
    "transfer_completed",
    "transfer_cancelled",
    "transfer_deleted",
    "transfer_communication_added",
    # Transfer handover
    "transfer_documents_shared",
    "transfer_case_notes_shared",
    "transfer_meeting_scheduled",
    "transfer_meeting_completed",
    "transfer_comment_added",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. ``metadata_json`` carries the action-specific payload
    (transfer number, participant ids, new status, ...).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    institution_id = db.Column(db.String(36), nullable=True, index=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="transfer | learner",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="transfer_initiated | transfer_completed | …",
    )
    actor_user_id = db.Column(db.String(36), nullable=True)

    metadata_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def event_metadata(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "institution_id": self.institution_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "metadata": self.event_metadata,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_user_id: str | None = None,
    institution_id: str | None = None,
    metadata: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.

    Raises:
        ValueError: Unknown entity type or action.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type '{entity_type}'")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action '{action}'")
    log = AuditLog(
        institution_id=institution_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
