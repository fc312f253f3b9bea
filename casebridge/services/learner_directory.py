"""
Learner directory service.

Narrow interface over the ``learners`` table consumed by the transfer engine:

    - get_learner:                Load a learner the caller may read
    - set_learner_status:         Change lifecycle status (exit date on exit statuses)
    - update_learner:             Merge enrolment fields
    - append_institution_history: Append one past-enrolment entry
    - grant_institution_access:   Let another institution read the record

Rules:
  - Functions flush but never commit; the calling service owns the transaction.
  - NotFoundError / ForbiddenError raised here are meant to propagate unchanged.
"""

import logging
from datetime import date

from sqlalchemy import select

from casebridge.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from casebridge.core.identity import IdentityContext
from casebridge.models import db
from casebridge.models.learner import EXIT_STATUSES, LEARNER_STATUSES, Learner

logger = logging.getLogger(__name__)

# Fields update_learner is allowed to touch
_UPDATABLE_FIELDS = {"current_institution_id", "enrollment_date", "exit_date"}


def _load(learner_id: str) -> Learner:
    learner = db.session.execute(
        select(Learner).where(
            Learner.id == learner_id,
            Learner.deleted_at.is_(None),
        )
    ).scalar_one_or_none()
    if learner is None:
        raise NotFoundError(resource="Learner", resource_id=learner_id)
    return learner


def get_learner(learner_id: str, identity: IdentityContext) -> Learner:
    """Return the learner if the caller's institution may read it.

    Super-admins read every record. Other callers need to be the current
    institution or be listed in ``authorized_institutions``.

    Raises:
        NotFoundError: Unknown or soft-deleted learner.
        ForbiddenError: Caller's institution has no access.
    """
    learner = _load(learner_id)
    if not identity.is_super_admin and not learner.is_readable_by(identity.institution_id):
        raise ForbiddenError("You do not have access to this learner record")
    return learner


def set_learner_status(learner_id: str, status: str, identity: IdentityContext) -> Learner:
    """Set the learner's lifecycle status.

    Moving to ``completed`` or ``inactive`` stamps ``exit_date`` with today.
    """
    if status not in LEARNER_STATUSES:
        raise ValidationError(
            f"Invalid learner status '{status}'.",
            details={"status": f"Allowed: {', '.join(sorted(LEARNER_STATUSES))}"},
        )
    learner = get_learner(learner_id, identity)
    previous = learner.status
    learner.status = status
    learner.last_modified_by = identity.user_id
    if status in EXIT_STATUSES:
        learner.exit_date = date.today()
    db.session.flush()
    logger.info(
        "Learner status changed %s -> %s",
        previous,
        status,
        extra={"learner_id": learner_id, "institution_id": identity.institution_id},
    )
    return learner


def update_learner(learner_id: str, fields: dict, identity: IdentityContext) -> Learner:
    """Merge enrolment fields into the learner record.

    Only ``current_institution_id``, ``enrollment_date`` and ``exit_date`` are
    accepted; anything else raises ValidationError.
    """
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            "Unsupported learner fields.",
            details={name: "not updatable" for name in sorted(unknown)},
        )
    learner = get_learner(learner_id, identity)
    for name, value in fields.items():
        setattr(learner, name, value)
    learner.last_modified_by = identity.user_id
    db.session.flush()
    return learner


def append_institution_history(learner_id: str, entry: dict) -> Learner:
    """Append one ``{institution_id, institution_name, start_date, end_date, reason}`` entry.

    Dates are stored as ISO strings. The list is replaced rather than
    mutated so the JSON column change is tracked.
    """
    learner = _load(learner_id)
    record = {
        "institution_id": entry.get("institution_id"),
        "institution_name": entry.get("institution_name"),
        "start_date": _iso(entry.get("start_date")),
        "end_date": _iso(entry.get("end_date")),
        "reason": entry.get("reason"),
    }
    learner.institution_history = [*(learner.institution_history or []), record]
    db.session.flush()
    return learner


def grant_institution_access(learner_id: str, institution_id: str) -> Learner:
    """Add ``institution_id`` to the learner's authorized institutions (idempotent)."""
    learner = _load(learner_id)
    authorized = list(learner.authorized_institutions or [])
    if institution_id != learner.current_institution_id and institution_id not in authorized:
        learner.authorized_institutions = [*authorized, institution_id]
        db.session.flush()
    return learner


def _iso(value):
    if isinstance(value, date):
        return value.isoformat()
    return value
