"""
Audit sink — best-effort writer for lifecycle audit events.

Called by services AFTER their own transaction has committed. A failure to
record the audit row is logged and swallowed: it must never fail or undo the
business operation that triggered it.
"""

import logging

from casebridge.models import db
from casebridge.models.audit import write_audit

logger = logging.getLogger(__name__)


def record_event(
    action: str,
    entity_type: str,
    entity_id: str,
    actor_id: str | None,
    metadata: dict | None = None,
    institution_id: str | None = None,
) -> None:
    """Persist one audit event; never raises."""
    try:
        write_audit(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_user_id=actor_id,
            institution_id=institution_id,
            metadata=metadata,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.warning(
            "Audit event %s for %s/%s could not be recorded",
            action,
            entity_type,
            entity_id,
            exc_info=True,
            extra={"event_type": action, "institution_id": institution_id},
        )
