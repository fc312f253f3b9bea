"""
Transfer timeline recorder.

The timeline is an append-only log. No update or delete function exists;
``record_event`` flushes into the caller's transaction so
the event commits (or rolls back) together with the transition it describes.
"""

from sqlalchemy import select

from casebridge.models import db
from casebridge.models.transfer import TIMELINE_EVENT_TYPES, TransferTimeline


def record_event(
    transfer_id: str,
    event_type: str,
    description: str,
    performed_by: str | None,
    event_data: dict | None = None,
) -> TransferTimeline:
    """Append one timeline row for ``transfer_id``.

    Raises:
        ValueError: If ``event_type`` is not a known timeline event.
    """
    if event_type not in TIMELINE_EVENT_TYPES:
        raise ValueError(f"Unknown timeline event type '{event_type}'")
    event = TransferTimeline(
        transfer_id=transfer_id,
        event_type=event_type,
        description=description[:500],
        performed_by=performed_by,
        event_data=event_data or {},
    )
    db.session.add(event)
    db.session.flush()
    return event


def list_events(transfer_id: str) -> list[TransferTimeline]:
    """Return every event of a transfer, oldest first.

    Independent of the parent's soft-delete state; access checks belong to
    the caller.
    """
    return db.session.execute(
        select(TransferTimeline)
        .where(TransferTimeline.transfer_id == transfer_id)
        .order_by(TransferTimeline.created_at.asc(), TransferTimeline.id.asc())
    ).scalars().all()
