"""
Learner Transfer Service — workflow engine for learner hand-offs.

All ORM writes and db.session.commit() for transfers live here — blueprints
parse input, call these functions with an explicit IdentityContext and return
JSON responses.

Functions:
    - create_transfer:       Start a hand-off (learner → transitioning)
    - list_transfers:        Filtered, paginated listing scoped to the caller
    - get_transfer:          Single transfer (access-checked)
    - get_timeline:          Ordered event log of a transfer
    - update_transfer:       Edit free fields while pending/cancelled
    - review_transfer:       Approve or reject (receiving side)
    - acknowledge_transfer:  Receiving side confirms the approved hand-off
    - complete_transfer:     Move the learner to the receiving institution
    - add_communication:     Append a message between the two institutions
    - cancel_transfer:       Withdraw the hand-off (learner → active)
    - delete_transfer:       Soft delete (super-admin)
    - get_statistics:        Per-status counts
    - share_documents, share_case_notes, schedule_meeting,
      complete_meeting, add_comment:  handover coordination actions

Transaction model:
    Every write runs inside _unit_of_work(): the transfer row, learner
    side effects and the single timeline event are flushed together and
    committed once; any exception rolls all of them back. The audit event
    is emitted after the commit and is best-effort.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from casebridge.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from casebridge.core.identity import IdentityContext
from casebridge.models import db
from casebridge.models.learner import LEARNER_ACTIVE, LEARNER_TRANSITIONING, Learner
from casebridge.models.transfer import (
    ACTIVE_STATUSES,
    COMPLETION_CHECKLIST_ITEMS,
    EVENT_ACKNOWLEDGED,
    EVENT_APPROVED,
    EVENT_CANCELLED,
    EVENT_CASE_NOTES_SHARED,
    EVENT_COMMENT_ADDED,
    EVENT_COMMUNICATION_SENT,
    EVENT_COMPLETED,
    EVENT_DOCUMENTS_SHARED,
    EVENT_INITIATED,
    EVENT_MEETING_COMPLETED,
    EVENT_MEETING_SCHEDULED,
    EVENT_REJECTED,
    EVENT_STATUS_CHANGED,
    HANDOVER_SUMMARY_FIELDS,
    REVIEW_OUTCOMES,
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_REJECTED,
    TRANSFER_PRIORITIES,
    TRANSFER_REASONS,
    TRANSFER_STATUSES,
    Transfer,
    generate_transfer_number,
)
from casebridge.services import audit_sink, institution_directory, learner_directory, transfer_timeline
from casebridge.utils.helpers import parse_bool, parse_date_input, parse_datetime_input

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
MESSAGE_PREVIEW_LENGTH = 100

# Fields update_transfer may change
EDITABLE_FIELDS = {
    "priority",
    "proposed_transfer_date",
    "handover_summary",
    "coordination_meeting_required",
    "coordination_meeting_date",
    "coordination_meeting_notes",
    "requires_follow_up",
    "follow_up_date",
    "follow_up_notes",
    "follow_up_completed",
}

IMMUTABLE_FIELDS = {
    "id",
    "transfer_number",
    "learner_id",
    "from_institution_id",
    "to_institution_id",
    "reason",
    "reason_details",
    "initiated_by",
    "status",
}

# Handover actions are only meaningful while the hand-off is in flight
_HANDOVER_STATUSES = ACTIVE_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Private helpers ────────────────────────────────────────────────────────────


@contextmanager
def _unit_of_work():
    """Commit on success, roll back everything flushed so far on any error."""
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _check_access(transfer: Transfer, identity: IdentityContext) -> None:
    """Non-super-admins may only see transfers that involve their institution."""
    if identity.is_super_admin:
        return
    if not transfer.involves(identity.institution_id):
        raise ForbiddenError("You do not have access to this transfer")


def _require_sender(transfer: Transfer, identity: IdentityContext, action: str) -> None:
    if not identity.belongs_to(transfer.from_institution_id):
        raise ForbiddenError(f"Only the initiating institution can {action} this transfer")


def _require_receiver(transfer: Transfer, identity: IdentityContext, action: str) -> None:
    if not identity.belongs_to(transfer.to_institution_id):
        raise ForbiddenError(f"Only the receiving institution can {action} this transfer")


def _require_status(transfer: Transfer, allowed, action: str, reason: str | None = None) -> None:
    if transfer.status not in allowed:
        raise InvalidStateError(
            "Transfer",
            action,
            transfer.status,
            reason or f"allowed from: {', '.join(sorted(allowed))}",
        )


def _get_transfer_for_caller(transfer_id: str, identity: IdentityContext) -> Transfer:
    """Load a live (not soft-deleted) transfer and apply the access rule."""
    transfer = db.session.execute(
        select(Transfer).where(
            Transfer.id == transfer_id,
            Transfer.deleted_at.is_(None),
        )
    ).scalar_one_or_none()
    if transfer is None:
        raise NotFoundError(resource="Transfer", resource_id=transfer_id)
    _check_access(transfer, identity)
    return transfer


def _audit(action: str, transfer: Transfer, identity: IdentityContext, **metadata) -> None:
    audit_sink.record_event(
        action=action,
        entity_type="transfer",
        entity_id=transfer.id,
        actor_id=identity.user_id,
        metadata={"transfer_number": transfer.transfer_number, **metadata},
        institution_id=identity.institution_id,
    )


def _log_transition(message: str, transfer: Transfer, identity: IdentityContext, event_type: str) -> None:
    logger.info(
        message,
        extra={
            "transfer_id": transfer.id,
            "institution_id": identity.institution_id,
            "event_type": event_type,
        },
    )


def _date_field(data: dict, name: str, *, required: bool = False) -> date | None:
    value = data.get(name)
    if value in (None, ""):
        if required:
            raise ValidationError(f"{name} is required.", details={name: "required"})
        return None
    try:
        return parse_date_input(value)
    except ValueError as exc:
        raise ValidationError(str(exc), details={name: "invalid date"}) from exc


def _datetime_field(data: dict, name: str) -> datetime | None:
    value = data.get(name)
    if value in (None, ""):
        return None
    try:
        return parse_datetime_input(value)
    except ValueError as exc:
        raise ValidationError(str(exc), details={name: "invalid datetime"}) from exc


def _required_text(data: dict, name: str) -> str:
    value = (data.get(name) or "").strip() if isinstance(data.get(name), str) else ""
    if not value:
        raise ValidationError(f"{name} is required.", details={name: "required"})
    return value


def _choice(value: str | None, allowed: set, name: str) -> str:
    if value not in allowed:
        raise ValidationError(
            f"Invalid {name} '{value}'.",
            details={name: f"Allowed: {', '.join(sorted(allowed))}"},
        )
    return value


def _normalize_handover_summary(summary) -> dict | None:
    """Validate the handover summary shape: current_status text + string lists."""
    if summary is None:
        return None
    if not isinstance(summary, dict):
        raise ValidationError("handover_summary must be an object.", details={"handover_summary": "invalid"})
    unknown = set(summary) - set(HANDOVER_SUMMARY_FIELDS)
    if unknown:
        raise ValidationError(
            "Unknown handover_summary fields.",
            details={name: "unknown field" for name in sorted(unknown)},
        )
    current_status = summary.get("current_status")
    if not isinstance(current_status, str) or not current_status.strip():
        raise ValidationError(
            "handover_summary.current_status is required.",
            details={"current_status": "required"},
        )
    normalized = {"current_status": current_status.strip()}
    for name in HANDOVER_SUMMARY_FIELDS[1:]:
        items = summary.get(name) or []
        if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
            raise ValidationError(
                f"handover_summary.{name} must be a list of strings.",
                details={name: "invalid"},
            )
        normalized[name] = items
    return normalized


def _string_list(value, name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(i, str) and i.strip() for i in value):
        raise ValidationError(f"{name} must be a list of non-empty strings.", details={name: "invalid"})
    return [i.strip() for i in value]


def _serialize_change(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


# ── Create ─────────────────────────────────────────────────────────────────────


def create_transfer(identity: IdentityContext, data: dict) -> dict:
    """Initiate a transfer of a learner from the caller's institution.

    Business rules:
    - The learner must be readable by the caller and, for non-super-admins,
      currently enrolled at the caller's institution.
    - The destination institution must exist and differ from the source.
    - At most one pending/approved transfer per learner (ConflictError).

    Side effects (single transaction): learner status → transitioning,
    destination institution granted read access to the learner record,
    one ``transfer_initiated`` timeline event.

    Args:
        identity: Caller identity.
        data: learner_id, to_institution_id, reason, reason_details,
              proposed_transfer_date and optional priority, handover_summary,
              shared_case_notes, coordination_meeting_required.

    Returns:
        Serialized Transfer dict.

    Raises:
        ValidationError, NotFoundError, ForbiddenError, ConflictError.
    """
    learner_id = _required_text(data, "learner_id")
    to_institution_id = _required_text(data, "to_institution_id")
    reason = _choice(data.get("reason"), TRANSFER_REASONS, "reason")
    reason_details = _required_text(data, "reason_details")
    proposed_date = _date_field(data, "proposed_transfer_date", required=True)
    priority = _choice(data.get("priority") or "normal", TRANSFER_PRIORITIES, "priority")
    handover_summary = _normalize_handover_summary(data.get("handover_summary"))
    shared_case_notes = list(dict.fromkeys(_string_list(data.get("shared_case_notes"), "shared_case_notes")))

    learner = learner_directory.get_learner(learner_id, identity)
    if not identity.is_super_admin and learner.current_institution_id != identity.institution_id:
        raise ForbiddenError("You can only transfer learners from your institution")

    to_institution = institution_directory.get_institution(to_institution_id)
    from_institution_id = learner.current_institution_id
    if to_institution.id == from_institution_id:
        raise ValidationError(
            "A learner cannot be transferred to their current institution.",
            details={"to_institution_id": "same as current institution"},
        )

    existing = db.session.execute(
        select(Transfer.id).where(
            Transfer.learner_id == learner_id,
            Transfer.status.in_(ACTIVE_STATUSES),
            Transfer.deleted_at.is_(None),
        )
    ).first()
    if existing:
        raise ConflictError("Active transfer", "learner_id", learner_id)

    transfer = Transfer(
        transfer_number=generate_transfer_number(),
        learner_id=learner_id,
        from_institution_id=from_institution_id,
        to_institution_id=to_institution.id,
        status=STATUS_PENDING,
        priority=priority,
        reason=reason,
        reason_details=reason_details,
        proposed_transfer_date=proposed_date,
        initiated_by=identity.user_id,
        handover_summary=handover_summary,
        shared_documents=[],
        shared_case_notes=shared_case_notes,
        communications=[],
        coordination_meeting_required=parse_bool(data.get("coordination_meeting_required")),
        metadata_json={},
    )

    try:
        with _unit_of_work():
            db.session.add(transfer)
            db.session.flush()
            learner_directory.set_learner_status(learner_id, LEARNER_TRANSITIONING, identity)
            learner_directory.grant_institution_access(learner_id, to_institution.id)
            transfer_timeline.record_event(
                transfer.id,
                EVENT_INITIATED,
                f"Transfer initiated to {to_institution.name}",
                identity.user_id,
                {"to_institution_id": to_institution.id, "reason": reason},
            )
    except IntegrityError as exc:
        # Concurrent creator won the partial unique index on learner_id
        raise ConflictError("Active transfer", "learner_id", learner_id) from exc

    _log_transition("Transfer created", transfer, identity, EVENT_INITIATED)
    _audit(
        "transfer_initiated",
        transfer,
        identity,
        learner_id=learner_id,
        from_institution_id=from_institution_id,
        to_institution_id=to_institution.id,
    )
    return transfer.to_dict()


# ── Reads ──────────────────────────────────────────────────────────────────────


def get_transfer(identity: IdentityContext, transfer_id: str) -> dict:
    """Return one transfer visible to the caller.

    Raises:
        NotFoundError: Unknown or soft-deleted.
        ForbiddenError: Caller's institution is neither sender nor receiver.
    """
    return _get_transfer_for_caller(transfer_id, identity).to_dict()


def get_timeline(identity: IdentityContext, transfer_id: str) -> list[dict]:
    """Return the transfer's timeline, oldest first.

    The timeline outlives a soft delete of its transfer: it stays readable by
    id for the same audience as the transfer itself.
    """
    transfer = db.session.get(Transfer, transfer_id)
    if transfer is None:
        raise NotFoundError(resource="Transfer", resource_id=transfer_id)
    _check_access(transfer, identity)
    return [event.to_dict() for event in transfer_timeline.list_events(transfer.id)]


def list_transfers(identity: IdentityContext, filters: dict | None = None) -> dict:
    """List transfers with optional filters and page/limit pagination.

    Non-super-admin callers are always restricted to transfers where their
    institution is the sender or the receiver, on top of any filter given.

    Args:
        filters: learner_id, from_institution_id, to_institution_id, status,
                 priority, page (1-based, default 1), limit (default 10, max 100).

    Returns:
        {"data": [transfer dicts], "meta": {page, limit, total_items,
         total_pages, has_next_page, has_previous_page}}
    """
    filters = filters or {}
    page = _positive_int(filters.get("page"), 1, "page")
    limit = min(_positive_int(filters.get("limit"), DEFAULT_PAGE_SIZE, "limit"), MAX_PAGE_SIZE)

    stmt = select(Transfer).where(Transfer.deleted_at.is_(None))
    if not identity.is_super_admin:
        stmt = stmt.where(or_(
            Transfer.from_institution_id == identity.institution_id,
            Transfer.to_institution_id == identity.institution_id,
        ))
    if filters.get("learner_id"):
        stmt = stmt.where(Transfer.learner_id == filters["learner_id"])
    if filters.get("from_institution_id"):
        stmt = stmt.where(Transfer.from_institution_id == filters["from_institution_id"])
    if filters.get("to_institution_id"):
        stmt = stmt.where(Transfer.to_institution_id == filters["to_institution_id"])
    if filters.get("status"):
        stmt = stmt.where(Transfer.status == _choice(filters["status"], TRANSFER_STATUSES, "status"))
    if filters.get("priority"):
        stmt = stmt.where(Transfer.priority == _choice(filters["priority"], TRANSFER_PRIORITIES, "priority"))

    total_items = db.session.execute(
        select(func.count()).select_from(stmt.subquery())
    ).scalar_one()
    items = db.session.execute(
        stmt.order_by(Transfer.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()

    total_pages = -(-total_items // limit)
    return {
        "data": [t.to_dict() for t in items],
        "meta": {
            "page": page,
            "limit": limit,
            "total_items": total_items,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_previous_page": page > 1,
        },
    }


def _positive_int(value, default: int, name: str) -> int:
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer.", details={name: "invalid"}) from exc
    if number < 1:
        raise ValidationError(f"{name} must be >= 1.", details={name: "invalid"})
    return number


def get_statistics(identity: IdentityContext, institution_id: str | None = None) -> dict:
    """Return per-status transfer counts.

    Scoped to transfers where the institution is sender or receiver.
    Non-super-admins are always scoped to their own institution; asking for
    another institution raises ForbiddenError. Super-admins may pass any
    institution or none (platform-wide).

    Returns:
        {"total", "pending", "approved", "completed", "rejected"}
    """
    if not identity.is_super_admin:
        if not identity.institution_id:
            raise ForbiddenError("Statistics require an institution")
        if institution_id and institution_id != identity.institution_id:
            raise ForbiddenError("You can only view statistics for your institution")
        institution_id = identity.institution_id

    base = select(func.count(Transfer.id)).where(Transfer.deleted_at.is_(None))
    if institution_id:
        base = base.where(or_(
            Transfer.from_institution_id == institution_id,
            Transfer.to_institution_id == institution_id,
        ))

    def _count(status: str | None = None) -> int:
        stmt = base if status is None else base.where(Transfer.status == status)
        return db.session.execute(stmt).scalar_one()

    return {
        "total": _count(),
        "pending": _count(STATUS_PENDING),
        "approved": _count(STATUS_APPROVED),
        "completed": _count(STATUS_COMPLETED),
        "rejected": _count(STATUS_REJECTED),
    }


# ── Update ─────────────────────────────────────────────────────────────────────


def update_transfer(identity: IdentityContext, transfer_id: str, data: dict) -> dict:
    """Edit free fields of a transfer that has not been reviewed.

    Business rules:
    - Only the initiating institution (or super-admin) may edit.
    - Only while status is pending or cancelled.
    - Immutable fields and unknown fields are rejected; a payload that
      changes nothing is rejected too.

    Emits one ``status_changed`` timeline event carrying the field diff.
    """
    touched_immutable = sorted(set(data) & IMMUTABLE_FIELDS)
    if touched_immutable:
        raise ValidationError(
            "Immutable transfer fields cannot be changed.",
            details={name: "immutable" for name in touched_immutable},
        )
    unknown = sorted(set(data) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(
            "Unknown transfer fields.",
            details={name: "not editable" for name in unknown},
        )

    transfer = _get_transfer_for_caller(transfer_id, identity)
    _require_sender(transfer, identity, "update")
    _require_status(
        transfer, {STATUS_PENDING, STATUS_CANCELLED}, "update",
        "transfer can only be edited before review",
    )

    new_values = {}
    for name in data:
        if name == "priority":
            new_values[name] = _choice(data[name], TRANSFER_PRIORITIES, "priority")
        elif name in ("proposed_transfer_date", "follow_up_date"):
            new_values[name] = _date_field(data, name, required=name == "proposed_transfer_date")
        elif name == "coordination_meeting_date":
            new_values[name] = _datetime_field(data, name)
        elif name == "handover_summary":
            new_values[name] = _normalize_handover_summary(data[name])
        elif name in ("coordination_meeting_required", "requires_follow_up", "follow_up_completed"):
            new_values[name] = parse_bool(data[name])
        else:
            new_values[name] = data[name]

    changes = {}
    for name, value in new_values.items():
        old = getattr(transfer, name)
        if _serialize_change(old) != _serialize_change(value):
            changes[name] = {"old": _serialize_change(old), "new": _serialize_change(value)}
    if not changes:
        raise ValidationError("No changes supplied.")

    with _unit_of_work():
        for name in changes:
            setattr(transfer, name, new_values[name])
        transfer_timeline.record_event(
            transfer.id,
            EVENT_STATUS_CHANGED,
            f"Transfer details updated: {', '.join(sorted(changes))}",
            identity.user_id,
            {"changes": changes},
        )

    _log_transition("Transfer updated", transfer, identity, EVENT_STATUS_CHANGED)
    _audit("transfer_updated", transfer, identity, changes=changes)
    return transfer.to_dict()


# ── Review / acknowledge / complete ────────────────────────────────────────────


def review_transfer(identity: IdentityContext, transfer_id: str, data: dict) -> dict:
    """Approve or reject a pending transfer (receiving institution).

    Rejection does not touch the learner's status.

    Args:
        data: status ("approved" | "rejected"), review_notes?, actual_transfer_date?
    """
    outcome = _choice(data.get("status"), REVIEW_OUTCOMES, "status")
    review_notes = data.get("review_notes")
    actual_date = _date_field(data, "actual_transfer_date")

    transfer = _get_transfer_for_caller(transfer_id, identity)
    _require_receiver(transfer, identity, "review")
    _require_status(transfer, {STATUS_PENDING}, "review", "transfer must be pending to review")

    event_type = EVENT_APPROVED if outcome == STATUS_APPROVED else EVENT_REJECTED
    with _unit_of_work():
        transfer.status = outcome
        transfer.reviewed_by = identity.user_id
        transfer.reviewed_at = _utcnow()
        transfer.review_notes = review_notes
        if actual_date:
            transfer.actual_transfer_date = actual_date
        transfer_timeline.record_event(
            transfer.id,
            event_type,
            f"Transfer {outcome} by receiving institution",
            identity.user_id,
            {"review_notes": review_notes},
        )

    _log_transition(f"Transfer {outcome}", transfer, identity, event_type)
    _audit(f"transfer_{outcome}", transfer, identity, status=outcome)
    return transfer.to_dict()


def acknowledge_transfer(identity: IdentityContext, transfer_id: str, data: dict | None = None) -> dict:
    """Receiving institution confirms an approved transfer.

    Acknowledgment is recorded exactly once and does not change status.

    Args:
        data: notes?, documents_received?, ready_for_enrollment?
    """
    data = data or {}
    transfer = _get_transfer_for_caller(transfer_id, identity)
    _require_receiver(transfer, identity, "acknowledge")
    _require_status(transfer, {STATUS_APPROVED}, "acknowledge", "transfer must be approved before acknowledgment")
    if transfer.receiving_institution_acknowledged:
        raise InvalidStateError("Transfer", "acknowledge", transfer.status, "transfer is already acknowledged")

    ack = {}
    if data.get("notes"):
        ack["acknowledgment_notes"] = data["notes"]
    if "documents_received" in data:
        ack["documents_received"] = parse_bool(data["documents_received"])
    if "ready_for_enrollment" in data:
        ack["ready_for_enrollment"] = parse_bool(data["ready_for_enrollment"])

    with _unit_of_work():
        transfer.receiving_institution_acknowledged = True
        transfer.acknowledged_by = identity.user_id
        transfer.acknowledged_at = _utcnow()
        if ack:
            transfer.metadata_json = {**(transfer.metadata_json or {}), **ack}
        transfer_timeline.record_event(
            transfer.id,
            EVENT_ACKNOWLEDGED,
            "Transfer acknowledged by receiving institution",
            identity.user_id,
            ack,
        )

    _log_transition("Transfer acknowledged", transfer, identity, EVENT_ACKNOWLEDGED)
    _audit("transfer_acknowledged", transfer, identity)
    return transfer.to_dict()


def complete_transfer(identity: IdentityContext, transfer_id: str, data: dict) -> dict:
    """Finish an approved, acknowledged transfer and move the learner.

    Business rules:
    - Receiving institution (or super-admin) only.
    - Status approved AND acknowledged, else InvalidStateError.
    - All six completion_checklist items must be present and True, else
      InvalidStateError listing the failing items; nothing is persisted.

    Side effects (single transaction): learner institution history gains the
    sending enrolment, learner moves to the receiving institution with
    enrollment_date = actual transfer date, learner status → active,
    one ``completed`` timeline event.

    Args:
        data: completion_checklist (dict of six booleans), actual_transfer_date?
    """
    checklist = data.get("completion_checklist")
    if not isinstance(checklist, dict):
        raise ValidationError(
            "completion_checklist is required.",
            details={"completion_checklist": "required"},
        )
    actual_date = _date_field(data, "actual_transfer_date")

    transfer = _get_transfer_for_caller(transfer_id, identity)
    _require_receiver(transfer, identity, "complete")
    _require_status(transfer, {STATUS_APPROVED}, "complete", "transfer must be approved to complete")
    if not transfer.receiving_institution_acknowledged:
        raise InvalidStateError(
            "Transfer", "complete", transfer.status,
            "transfer must be acknowledged before completion",
        )

    incomplete = [item for item in COMPLETION_CHECKLIST_ITEMS if checklist.get(item) is not True]
    if incomplete:
        raise InvalidStateError(
            "Transfer", "complete", transfer.status,
            "all checklist items must be completed",
            details={item: "must be true" for item in incomplete},
        )
    stored_checklist = {item: True for item in COMPLETION_CHECKLIST_ITEMS}
    actual_date = actual_date or date.today()

    with _unit_of_work():
        transfer.status = STATUS_COMPLETED
        transfer.completion_checklist = stored_checklist
        transfer.actual_transfer_date = actual_date

        learner = learner_directory.get_learner(transfer.learner_id, identity)
        learner_directory.append_institution_history(
            learner.id,
            {
                "institution_id": transfer.from_institution_id,
                "institution_name": transfer.from_institution.name,
                "start_date": learner.enrollment_date,
                "end_date": actual_date,
                "reason": transfer.reason,
            },
        )
        learner_directory.update_learner(
            learner.id,
            {
                "current_institution_id": transfer.to_institution_id,
                "enrollment_date": actual_date,
            },
            identity,
        )
        learner_directory.set_learner_status(learner.id, LEARNER_ACTIVE, identity)
        transfer_timeline.record_event(
            transfer.id,
            EVENT_COMPLETED,
            "Transfer completed successfully",
            identity.user_id,
            {"completion_checklist": stored_checklist},
        )

    _log_transition("Transfer completed", transfer, identity, EVENT_COMPLETED)
    _audit(
        "transfer_completed",
        transfer,
        identity,
        learner_id=transfer.learner_id,
        new_institution_id=transfer.to_institution_id,
    )
    return transfer.to_dict()


# ── Communication / cancel / delete ────────────────────────────────────────────


def add_communication(identity: IdentityContext, transfer_id: str, data: dict) -> dict:
    """Append a message from the caller's institution to the other party.

    Allowed in any state. ``to_institution_id`` defaults to the other
    participant and must be one of the two participants. The timeline event
    carries only a preview of the message.
    """
    message = _required_text(data, "message")
    transfer = _get_transfer_for_caller(transfer_id, identity)
    if not (identity.belongs_to(transfer.from_institution_id) or identity.belongs_to(transfer.to_institution_id)):
        raise ForbiddenError("You cannot add communication to this transfer")

    sender = identity.institution_id
    default_recipient = (
        transfer.from_institution_id if sender == transfer.to_institution_id
        else transfer.to_institution_id
    )
    recipient = data.get("to_institution_id") or default_recipient
    if recipient not in (transfer.from_institution_id, transfer.to_institution_id):
        raise ValidationError(
            "to_institution_id must be a participant of this transfer.",
            details={"to_institution_id": "not a participant"},
        )

    communication = {
        "id": str(uuid.uuid4()),
        "from": sender,
        "to": recipient,
        "message": message,
        "sent_at": _utcnow().isoformat(),
    }
    with _unit_of_work():
        transfer.communications = [*(transfer.communications or []), communication]
        transfer_timeline.record_event(
            transfer.id,
            EVENT_COMMUNICATION_SENT,
            "Communication added",
            identity.user_id,
            {
                "communication_id": communication["id"],
                "message_preview": message[:MESSAGE_PREVIEW_LENGTH],
            },
        )

    _log_transition("Transfer communication added", transfer, identity, EVENT_COMMUNICATION_SENT)
    _audit("transfer_communication_added", transfer, identity, communication_id=communication["id"])
    return transfer.to_dict()


def cancel_transfer(identity: IdentityContext, transfer_id: str, reason: str) -> dict:
    """Cancel a transfer that has not completed (initiating institution).

    Cancelling an already rejected or cancelled transfer is tolerated and
    recorded again. The learner returns to active unless another transfer
    for the learner is still in flight or the learner has already moved to
    another institution.
    """
    reason = (reason or "").strip() if isinstance(reason, str) else ""
    if not reason:
        raise ValidationError("reason is required.", details={"reason": "required"})

    transfer = _get_transfer_for_caller(transfer_id, identity)
    _require_sender(transfer, identity, "cancel")
    if transfer.status == STATUS_COMPLETED:
        raise InvalidStateError("Transfer", "cancel", transfer.status, "cannot cancel a completed transfer")

    previous_status = transfer.status
    cancelled_at = _utcnow()
    with _unit_of_work():
        transfer.status = STATUS_CANCELLED
        transfer.metadata_json = {
            **(transfer.metadata_json or {}),
            "cancellation_reason": reason,
            "cancelled_by": identity.user_id,
            "cancelled_at": cancelled_at.isoformat(),
        }
        db.session.flush()
        other_active = db.session.execute(
            select(Transfer.id).where(
                Transfer.learner_id == transfer.learner_id,
                Transfer.id != transfer.id,
                Transfer.status.in_(ACTIVE_STATUSES),
                Transfer.deleted_at.is_(None),
            )
        ).first()
        learner = db.session.get(Learner, transfer.learner_id)
        # The learner may have since moved on through a later completed transfer
        still_at_source = learner is not None and learner.current_institution_id == transfer.from_institution_id
        if other_active is None and still_at_source:
            learner_directory.set_learner_status(transfer.learner_id, LEARNER_ACTIVE, identity)
        transfer_timeline.record_event(
            transfer.id,
            EVENT_CANCELLED,
            f"Transfer cancelled: {reason}",
            identity.user_id,
            {"reason": reason, "previous_status": previous_status},
        )

    _log_transition("Transfer cancelled", transfer, identity, EVENT_CANCELLED)
    _audit("transfer_cancelled", transfer, identity, reason=reason, previous_status=previous_status)
    return transfer.to_dict()


def delete_transfer(identity: IdentityContext, transfer_id: str) -> None:
    """Soft-delete a transfer (super-admin only, any state).

    The timeline is kept and stays readable by transfer id.
    """
    transfer = _get_transfer_for_caller(transfer_id, identity)
    if not identity.is_super_admin:
        raise ForbiddenError("Only super admin can delete transfers")

    with _unit_of_work():
        transfer.soft_delete()

    logger.info(
        "Transfer soft-deleted",
        extra={"transfer_id": transfer.id, "institution_id": identity.institution_id},
    )
    _audit("transfer_deleted", transfer, identity, status=transfer.status)


# ── Handover coordination ──────────────────────────────────────────────────────


def share_documents(identity: IdentityContext, transfer_id: str, documents: list) -> dict:
    """Append document descriptors ``{name, type, url}`` to shared_documents.

    Sending institution only, while the transfer is pending or approved.
    """
    if not isinstance(documents, list) or not documents:
        raise ValidationError("documents must be a non-empty list.", details={"documents": "required"})

    transfer = _get_transfer_for_caller(transfer_id, identity)
    _require_sender(transfer, identity, "share documents on")
    _require_status(transfer, _HANDOVER_STATUSES, "share documents")

    shared_at = _utcnow().isoformat()
    new_docs = []
    for index, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise ValidationError("Each document must be an object.", details={f"documents[{index}]": "invalid"})
        missing = [f for f in ("name", "type", "url") if not (doc.get(f) or "").strip()]
        if missing:
            raise ValidationError(
                "Document descriptor is incomplete.",
                details={f"documents[{index}].{f}": "required" for f in missing},
            )
        new_docs.append({
            "id": str(uuid.uuid4()),
            "name": doc["name"].strip(),
            "type": doc["type"].strip(),
            "url": doc["url"].strip(),
            "shared_at": shared_at,
            "shared_by": identity.user_id,
        })

    with _unit_of_work():
        transfer.shared_documents = [*(transfer.shared_documents or []), *new_docs]
        transfer_timeline.record_event(
            transfer.id,
            EVENT_DOCUMENTS_SHARED,
            f"{len(new_docs)} document(s) shared",
            identity.user_id,
            {"document_ids": [d["id"] for d in new_docs], "names": [d["name"] for d in new_docs]},
        )

    _log_transition("Transfer documents shared", transfer, identity, EVENT_DOCUMENTS_SHARED)
    _audit("transfer_documents_shared", transfer, identity, count=len(new_docs))
    return transfer.to_dict()


def share_case_notes(identity: IdentityContext, transfer_id: str, case_note_ids: list) -> dict:
    """Share additional case notes; ids already shared are skipped."""
    note_ids = _string_list(case_note_ids, "case_note_ids")
    if not note_ids:
        raise ValidationError("case_note_ids must not be empty.", details={"case_note_ids": "required"})

    transfer = _get_transfer_for_caller(transfer_id, identity)
    _require_sender(transfer, identity, "share case notes on")
    _require_status(transfer, _HANDOVER_STATUSES, "share case notes")

    already = set(transfer.shared_case_notes or [])
    added = [nid for nid in dict.fromkeys(note_ids) if nid not in already]
    if not added:
        raise ValidationError("All case notes are already shared.", details={"case_note_ids": "duplicate"})

    with _unit_of_work():
        transfer.shared_case_notes = [*(transfer.shared_case_notes or []), *added]
        transfer_timeline.record_event(
            transfer.id,
            EVENT_CASE_NOTES_SHARED,
            f"{len(added)} case note(s) shared",
            identity.user_id,
            {"case_note_ids": added},
        )

    _log_transition("Transfer case notes shared", transfer, identity, EVENT_CASE_NOTES_SHARED)
    _audit("transfer_case_notes_shared", transfer, identity, case_note_ids=added)
    return transfer.to_dict()


def schedule_meeting(identity: IdentityContext, transfer_id: str, data: dict) -> dict:
    """Schedule (or reschedule) the coordination meeting between both institutions."""
    meeting_date = _datetime_field(data, "meeting_date")
    if meeting_date is None:
        raise ValidationError("meeting_date is required.", details={"meeting_date": "required"})

    transfer = _get_transfer_for_caller(transfer_id, identity)
    _require_status(transfer, _HANDOVER_STATUSES, "schedule meeting")

    with _unit_of_work():
        transfer.coordination_meeting_required = True
        transfer.coordination_meeting_date = meeting_date
        if data.get("notes"):
            transfer.coordination_meeting_notes = data["notes"]
        transfer_timeline.record_event(
            transfer.id,
            EVENT_MEETING_SCHEDULED,
            f"Coordination meeting scheduled for {meeting_date.isoformat()}",
            identity.user_id,
            {"meeting_date": meeting_date.isoformat(), "notes": data.get("notes")},
        )

    _log_transition("Transfer meeting scheduled", transfer, identity, EVENT_MEETING_SCHEDULED)
    _audit("transfer_meeting_scheduled", transfer, identity, meeting_date=meeting_date.isoformat())
    return transfer.to_dict()


def complete_meeting(identity: IdentityContext, transfer_id: str, data: dict) -> dict:
    """Record the outcome of the scheduled coordination meeting."""
    outcome = _required_text(data, "notes")
    transfer = _get_transfer_for_caller(transfer_id, identity)
    if transfer.coordination_meeting_date is None:
        raise InvalidStateError(
            "Transfer", "complete meeting", transfer.status,
            "no coordination meeting has been scheduled",
        )

    with _unit_of_work():
        previous = transfer.coordination_meeting_notes
        transfer.coordination_meeting_notes = f"{previous}\n{outcome}" if previous else outcome
        transfer_timeline.record_event(
            transfer.id,
            EVENT_MEETING_COMPLETED,
            "Coordination meeting completed",
            identity.user_id,
            {"notes": outcome},
        )

    _log_transition("Transfer meeting completed", transfer, identity, EVENT_MEETING_COMPLETED)
    _audit("transfer_meeting_completed", transfer, identity)
    return transfer.to_dict()


def add_comment(identity: IdentityContext, transfer_id: str, comment: str) -> list[dict]:
    """Add a free-text comment to the timeline (either participant, any state).

    Returns the updated timeline.
    """
    text = (comment or "").strip() if isinstance(comment, str) else ""
    if not text:
        raise ValidationError("comment is required.", details={"comment": "required"})

    transfer = _get_transfer_for_caller(transfer_id, identity)
    with _unit_of_work():
        transfer_timeline.record_event(
            transfer.id,
            EVENT_COMMENT_ADDED,
            "Comment added",
            identity.user_id,
            {"comment": text},
        )

    _log_transition("Transfer comment added", transfer, identity, EVENT_COMMENT_ADDED)
    _audit("transfer_comment_added", transfer, identity)
    return [event.to_dict() for event in transfer_timeline.list_events(transfer.id)]
