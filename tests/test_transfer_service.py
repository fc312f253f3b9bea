"""
Tests for the learner transfer workflow engine (transfer_service).

Covers:
  - A → B happy path: 4 ordered timeline events, learner moved and active
  - create → cancel path: 2 events, learner back to active
  - single active transfer per learner (ConflictError)
  - review only from pending; review/acknowledge/complete are receiver-only
  - complete requires approval, acknowledgment and a full checklist;
    nothing is persisted on failure; second complete is rejected
  - uninvolved institution gets ForbiddenError on every read and write
  - earlier timeline entries never change
  - update: sender-only, pending/cancelled only, immutable fields rejected
  - soft delete: super-admin only, hides the transfer, keeps the timeline
  - unit of work: learner-directory failure leaves no transfer or timeline row

Marker: unit (service layer, no HTTP).
"""

import pytest

from casebridge.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from casebridge.models import db
from casebridge.models.learner import Learner
from casebridge.models.transfer import TRANSFER_NUMBER_RE, Transfer, TransferTimeline
from casebridge.services import learner_directory, transfer_service


# ── Helpers ──────────────────────────────────────────────────────────────────


def _event_types(identity, transfer_id):
    return [e["event_type"] for e in transfer_service.get_timeline(identity, transfer_id)]


def _reload_learner(learner_id):
    db.session.expire_all()
    return db.session.get(Learner, learner_id)


@pytest.fixture()
def pending(identity_a, learner, inst_b, transfer_payload):
    """A pending transfer of ``learner`` from A to B."""
    return transfer_service.create_transfer(identity_a, transfer_payload(learner.id, inst_b.id))


@pytest.fixture()
def approved(pending, identity_b):
    return transfer_service.review_transfer(identity_b, pending["id"], {"status": "approved"})


@pytest.fixture()
def acknowledged(approved, identity_b):
    return transfer_service.acknowledge_transfer(identity_b, approved["id"], {})


# ── Create ───────────────────────────────────────────────────────────────────


def test_create_transfer_sets_pending_and_learner_transitioning(pending, learner, inst_a, inst_b):
    """Create: status pending, from = learner's institution, learner → transitioning."""
    assert pending["status"] == "pending"
    assert pending["from_institution_id"] == inst_a.id
    assert pending["to_institution_id"] == inst_b.id
    assert pending["initiated_by"] == "user-a"
    assert pending["priority"] == "normal"
    assert TRANSFER_NUMBER_RE.match(pending["transfer_number"])

    reloaded = _reload_learner(learner.id)
    assert reloaded.status == "transitioning"
    assert inst_b.id in reloaded.authorized_institutions


def test_create_records_single_initiated_event(pending, identity_a):
    events = transfer_service.get_timeline(identity_a, pending["id"])
    assert len(events) == 1
    assert events[0]["event_type"] == "transfer_initiated"
    assert events[0]["performed_by"] == "user-a"


def test_second_active_transfer_for_learner_conflicts(pending, identity_a, learner, inst_c, transfer_payload):
    """Only one pending/approved transfer per learner."""
    with pytest.raises(ConflictError):
        transfer_service.create_transfer(identity_a, transfer_payload(learner.id, inst_c.id))
    assert Transfer.query.filter_by(learner_id=learner.id).count() == 1


def test_new_transfer_allowed_after_rejection(pending, identity_a, identity_b, learner, inst_c, transfer_payload):
    transfer_service.review_transfer(identity_b, pending["id"], {"status": "rejected"})
    second = transfer_service.create_transfer(identity_a, transfer_payload(learner.id, inst_c.id))
    assert second["status"] == "pending"


def test_create_rejects_same_source_and_destination(identity_a, learner, inst_a, transfer_payload):
    with pytest.raises(ValidationError):
        transfer_service.create_transfer(identity_a, transfer_payload(learner.id, inst_a.id))


def test_create_rejects_unknown_destination(identity_a, learner, transfer_payload):
    with pytest.raises(NotFoundError):
        transfer_service.create_transfer(identity_a, transfer_payload(learner.id, "missing-inst"))


def test_create_rejects_invalid_reason(identity_a, learner, inst_b, transfer_payload):
    with pytest.raises(ValidationError):
        transfer_service.create_transfer(
            identity_a, transfer_payload(learner.id, inst_b.id, reason="boredom"),
        )


def test_create_by_other_institution_is_forbidden(identity_c, learner, inst_b, transfer_payload):
    """Learner directory access errors propagate unchanged."""
    with pytest.raises(ForbiddenError):
        transfer_service.create_transfer(identity_c, transfer_payload(learner.id, inst_b.id))


def test_create_unknown_learner_not_found(identity_a, inst_b, transfer_payload):
    with pytest.raises(NotFoundError):
        transfer_service.create_transfer(identity_a, transfer_payload("no-such-learner", inst_b.id))


def test_super_admin_can_create_for_any_learner(super_admin, learner, inst_a, inst_b, transfer_payload):
    result = transfer_service.create_transfer(super_admin, transfer_payload(learner.id, inst_b.id))
    assert result["from_institution_id"] == inst_a.id
    assert result["initiated_by"] == "platform-1"


def test_create_validates_handover_summary(identity_a, learner, inst_b, transfer_payload):
    with pytest.raises(ValidationError):
        transfer_service.create_transfer(
            identity_a,
            transfer_payload(learner.id, inst_b.id, handover_summary={"key_achievements": ["reading"]}),
        )

    result = transfer_service.create_transfer(
        identity_a,
        transfer_payload(
            learner.id,
            inst_b.id,
            handover_summary={"current_status": "Settled", "key_achievements": ["reading"]},
            shared_case_notes=["note-1", "note-1", "note-2"],
        ),
    )
    assert result["handover_summary"]["current_status"] == "Settled"
    assert result["handover_summary"]["ongoing_challenges"] == []
    assert result["shared_case_notes"] == ["note-1", "note-2"]


# ── Happy path & cancel path ─────────────────────────────────────────────────


def test_full_transfer_happy_path(acknowledged, identity_a, identity_b, learner, inst_a, inst_b, full_checklist):
    """A creates, B approves, B acknowledges, B completes → learner moved to B."""
    result = transfer_service.complete_transfer(
        identity_b,
        acknowledged["id"],
        {"completion_checklist": full_checklist, "actual_transfer_date": "2026-11-02"},
    )

    assert result["status"] == "completed"
    assert result["actual_transfer_date"] == "2026-11-02"
    assert result["completion_checklist"] == full_checklist

    reloaded = _reload_learner(learner.id)
    assert reloaded.current_institution_id == inst_b.id
    assert reloaded.status == "active"
    assert reloaded.enrollment_date.isoformat() == "2026-11-02"
    assert reloaded.institution_history == [{
        "institution_id": inst_a.id,
        "institution_name": "Riverside School",
        "start_date": "2024-09-01",
        "end_date": "2026-11-02",
        "reason": "specialized_support_needed",
    }]

    assert _event_types(identity_a, result["id"]) == [
        "transfer_initiated", "approved", "acknowledged", "completed",
    ]


def test_create_then_cancel_restores_learner(pending, identity_a, learner):
    result = transfer_service.cancel_transfer(identity_a, pending["id"], "Family changed plans")

    assert result["status"] == "cancelled"
    assert result["metadata"]["cancellation_reason"] == "Family changed plans"
    assert result["metadata"]["cancelled_by"] == "user-a"
    assert _reload_learner(learner.id).status == "active"
    assert _event_types(identity_a, pending["id"]) == ["transfer_initiated", "cancelled"]


# ── Review / acknowledge ─────────────────────────────────────────────────────


def test_review_only_from_pending(approved, identity_b):
    with pytest.raises(InvalidStateError):
        transfer_service.review_transfer(identity_b, approved["id"], {"status": "rejected"})


def test_review_by_sender_is_forbidden(pending, identity_a):
    with pytest.raises(ForbiddenError):
        transfer_service.review_transfer(identity_a, pending["id"], {"status": "approved"})


def test_review_rejects_unknown_outcome(pending, identity_b):
    with pytest.raises(ValidationError):
        transfer_service.review_transfer(identity_b, pending["id"], {"status": "completed"})


def test_reject_keeps_learner_transitioning(pending, identity_b, learner):
    result = transfer_service.review_transfer(
        identity_b, pending["id"], {"status": "rejected", "review_notes": "No capacity"},
    )
    assert result["status"] == "rejected"
    assert result["reviewed_by"] == "user-b"
    assert result["review_notes"] == "No capacity"
    assert _reload_learner(learner.id).status == "transitioning"


def test_acknowledge_requires_approved(pending, identity_b):
    with pytest.raises(InvalidStateError):
        transfer_service.acknowledge_transfer(identity_b, pending["id"], {})


def test_acknowledge_only_once(acknowledged, identity_b):
    assert acknowledged["receiving_institution_acknowledged"] is True
    with pytest.raises(InvalidStateError):
        transfer_service.acknowledge_transfer(identity_b, acknowledged["id"], {})


def test_acknowledge_merges_notes_into_metadata(approved, identity_b):
    result = transfer_service.acknowledge_transfer(
        identity_b,
        approved["id"],
        {"notes": "Files received", "documents_received": True, "ready_for_enrollment": "false"},
    )
    assert result["status"] == "approved"
    assert result["acknowledged_by"] == "user-b"
    assert result["metadata"] == {
        "acknowledgment_notes": "Files received",
        "documents_received": True,
        "ready_for_enrollment": False,
    }


# ── Complete ─────────────────────────────────────────────────────────────────


def test_complete_requires_acknowledgment(approved, identity_b, full_checklist):
    with pytest.raises(InvalidStateError):
        transfer_service.complete_transfer(identity_b, approved["id"], {"completion_checklist": full_checklist})


def test_complete_with_partial_checklist_persists_nothing(acknowledged, identity_b, learner, inst_a, full_checklist):
    """A single false checklist item blocks completion and leaves no trace."""
    full_checklist["parent_notified"] = False
    del full_checklist["transition_plan_created"]

    with pytest.raises(InvalidStateError) as exc_info:
        transfer_service.complete_transfer(
            identity_b, acknowledged["id"], {"completion_checklist": full_checklist},
        )
    assert set(exc_info.value.details) == {"parent_notified", "transition_plan_created"}

    current = transfer_service.get_transfer(identity_b, acknowledged["id"])
    assert current["status"] == "approved"
    assert current["completion_checklist"] is None
    reloaded = _reload_learner(learner.id)
    assert reloaded.current_institution_id == inst_a.id
    assert reloaded.institution_history == []
    assert len(transfer_service.get_timeline(identity_b, acknowledged["id"])) == 3


def test_second_complete_is_rejected_without_duplicate_history(acknowledged, identity_b, learner, full_checklist):
    transfer_service.complete_transfer(identity_b, acknowledged["id"], {"completion_checklist": full_checklist})

    with pytest.raises(InvalidStateError):
        transfer_service.complete_transfer(identity_b, acknowledged["id"], {"completion_checklist": full_checklist})

    assert len(_reload_learner(learner.id).institution_history) == 1
    assert len(transfer_service.get_timeline(identity_b, acknowledged["id"])) == 4


def test_complete_by_sender_is_forbidden(acknowledged, identity_a, full_checklist):
    with pytest.raises(ForbiddenError):
        transfer_service.complete_transfer(identity_a, acknowledged["id"], {"completion_checklist": full_checklist})


# ── Access control ───────────────────────────────────────────────────────────


def test_uninvolved_institution_is_forbidden_everywhere(pending, identity_c):
    tid = pending["id"]
    calls = [
        lambda: transfer_service.get_transfer(identity_c, tid),
        lambda: transfer_service.get_timeline(identity_c, tid),
        lambda: transfer_service.review_transfer(identity_c, tid, {"status": "approved"}),
        lambda: transfer_service.acknowledge_transfer(identity_c, tid, {}),
        lambda: transfer_service.add_communication(identity_c, tid, {"message": "hello"}),
        lambda: transfer_service.cancel_transfer(identity_c, tid, "not mine"),
        lambda: transfer_service.update_transfer(identity_c, tid, {"priority": "high"}),
    ]
    for call in calls:
        with pytest.raises(ForbiddenError):
            call()


def test_unknown_transfer_not_found(identity_a):
    with pytest.raises(NotFoundError):
        transfer_service.get_transfer(identity_a, "does-not-exist")
    with pytest.raises(NotFoundError):
        transfer_service.get_timeline(identity_a, "does-not-exist")


# ── Timeline ─────────────────────────────────────────────────────────────────


def test_earlier_timeline_entries_never_change(pending, identity_a, identity_b, full_checklist):
    before = transfer_service.get_timeline(identity_a, pending["id"])

    transfer_service.add_communication(identity_a, pending["id"], {"message": "Welcome pack attached"})
    transfer_service.review_transfer(identity_b, pending["id"], {"status": "approved"})
    transfer_service.acknowledge_transfer(identity_b, pending["id"], {})
    transfer_service.complete_transfer(identity_b, pending["id"], {"completion_checklist": full_checklist})

    after = transfer_service.get_timeline(identity_a, pending["id"])
    assert len(after) == len(before) + 4
    assert after[: len(before)] == before


# ── Update ───────────────────────────────────────────────────────────────────


def test_update_records_field_diff(pending, identity_a):
    result = transfer_service.update_transfer(
        identity_a, pending["id"], {"priority": "urgent", "follow_up_notes": "Check in after a month"},
    )
    assert result["priority"] == "urgent"

    event = transfer_service.get_timeline(identity_a, pending["id"])[-1]
    assert event["event_type"] == "status_changed"
    assert event["event_data"]["changes"]["priority"] == {"old": "normal", "new": "urgent"}
    assert event["event_data"]["changes"]["follow_up_notes"]["new"] == "Check in after a month"


def test_update_rejects_immutable_fields(pending, identity_a):
    with pytest.raises(ValidationError) as exc_info:
        transfer_service.update_transfer(identity_a, pending["id"], {"reason": "other", "priority": "high"})
    assert "reason" in exc_info.value.details


def test_update_rejects_empty_diff(pending, identity_a):
    with pytest.raises(ValidationError):
        transfer_service.update_transfer(identity_a, pending["id"], {"priority": "normal"})
    assert len(transfer_service.get_timeline(identity_a, pending["id"])) == 1


def test_update_after_review_is_invalid_state(approved, identity_a):
    with pytest.raises(InvalidStateError):
        transfer_service.update_transfer(identity_a, approved["id"], {"priority": "high"})


def test_update_by_receiver_is_forbidden(pending, identity_b):
    with pytest.raises(ForbiddenError):
        transfer_service.update_transfer(identity_b, pending["id"], {"priority": "high"})


def test_update_allowed_on_cancelled_transfer(pending, identity_a):
    transfer_service.cancel_transfer(identity_a, pending["id"], "Paused")
    result = transfer_service.update_transfer(identity_a, pending["id"], {"requires_follow_up": True})
    assert result["requires_follow_up"] is True
    assert result["status"] == "cancelled"


# ── Cancel ───────────────────────────────────────────────────────────────────


def test_cancel_completed_transfer_is_invalid(acknowledged, identity_a, identity_b, full_checklist):
    transfer_service.complete_transfer(identity_b, acknowledged["id"], {"completion_checklist": full_checklist})
    with pytest.raises(InvalidStateError):
        transfer_service.cancel_transfer(identity_a, acknowledged["id"], "Too late")


def test_cancel_by_receiver_is_forbidden(pending, identity_b):
    with pytest.raises(ForbiddenError):
        transfer_service.cancel_transfer(identity_b, pending["id"], "Not ours to cancel")


def test_cancel_requires_reason(pending, identity_a):
    with pytest.raises(ValidationError):
        transfer_service.cancel_transfer(identity_a, pending["id"], "   ")


def test_cancel_rejected_keeps_learner_in_other_active_transfer(
    pending, identity_a, identity_b, learner, inst_c, transfer_payload,
):
    """Re-cancelling an old transfer must not reset a learner who is in a newer one."""
    transfer_service.review_transfer(identity_b, pending["id"], {"status": "rejected"})
    transfer_service.create_transfer(identity_a, transfer_payload(learner.id, inst_c.id))

    result = transfer_service.cancel_transfer(identity_a, pending["id"], "Closing out")

    assert result["status"] == "cancelled"
    assert _reload_learner(learner.id).status == "transitioning"


def test_recancel_after_learner_moved_leaves_learner_alone(
    pending, identity_a, identity_b, learner, inst_b, transfer_payload, full_checklist,
):
    transfer_service.review_transfer(identity_b, pending["id"], {"status": "rejected"})
    second = transfer_service.create_transfer(identity_a, transfer_payload(learner.id, inst_b.id))
    transfer_service.review_transfer(identity_b, second["id"], {"status": "approved"})
    transfer_service.acknowledge_transfer(identity_b, second["id"])
    transfer_service.complete_transfer(identity_b, second["id"], {"completion_checklist": full_checklist})
    status_after_move = _reload_learner(learner.id).status

    result = transfer_service.cancel_transfer(identity_a, pending["id"], "Closing out")

    assert result["status"] == "cancelled"
    reloaded = _reload_learner(learner.id)
    assert reloaded.current_institution_id == inst_b.id
    assert reloaded.status == status_after_move


# ── Delete ───────────────────────────────────────────────────────────────────


def test_delete_requires_super_admin(pending, identity_a):
    with pytest.raises(ForbiddenError):
        transfer_service.delete_transfer(identity_a, pending["id"])


def test_soft_delete_hides_transfer_but_keeps_timeline(pending, identity_a, super_admin):
    transfer_service.delete_transfer(super_admin, pending["id"])

    with pytest.raises(NotFoundError):
        transfer_service.get_transfer(identity_a, pending["id"])
    assert transfer_service.list_transfers(identity_a)["meta"]["total_items"] == 0

    assert _event_types(identity_a, pending["id"]) == ["transfer_initiated"]
    assert TransferTimeline.query.filter_by(transfer_id=pending["id"]).count() == 1


def test_soft_delete_frees_learner_for_new_transfer(pending, identity_a, super_admin, learner, inst_c, transfer_payload):
    transfer_service.delete_transfer(super_admin, pending["id"])
    result = transfer_service.create_transfer(identity_a, transfer_payload(learner.id, inst_c.id))
    assert result["status"] == "pending"


# ── Unit of work ─────────────────────────────────────────────────────────────


def test_learner_directory_failure_rolls_back_create(monkeypatch, identity_a, learner, inst_b, transfer_payload):
    """A failing learner update leaves no transfer row and no timeline row."""

    def _boom(*args, **kwargs):
        raise RuntimeError("learner store unavailable")

    monkeypatch.setattr(learner_directory, "set_learner_status", _boom)

    with pytest.raises(RuntimeError):
        transfer_service.create_transfer(identity_a, transfer_payload(learner.id, inst_b.id))

    assert Transfer.query.count() == 0
    assert TransferTimeline.query.count() == 0
    reloaded = _reload_learner(learner.id)
    assert reloaded.status == "active"
    assert reloaded.authorized_institutions == []


def test_learner_directory_failure_rolls_back_complete(monkeypatch, acknowledged, identity_b, learner, inst_a, full_checklist):
    def _boom(*args, **kwargs):
        raise RuntimeError("learner store unavailable")

    monkeypatch.setattr(learner_directory, "update_learner", _boom)

    with pytest.raises(RuntimeError):
        transfer_service.complete_transfer(identity_b, acknowledged["id"], {"completion_checklist": full_checklist})

    assert transfer_service.get_transfer(identity_b, acknowledged["id"])["status"] == "approved"
    reloaded = _reload_learner(learner.id)
    assert reloaded.current_institution_id == inst_a.id
    assert reloaded.institution_history == []
    assert len(transfer_service.get_timeline(identity_b, acknowledged["id"])) == 3


def test_learner_directory_failure_rolls_back_cancel(monkeypatch, pending, identity_a, learner):
    def _boom(*args, **kwargs):
        raise RuntimeError("learner store unavailable")

    monkeypatch.setattr(learner_directory, "set_learner_status", _boom)

    with pytest.raises(RuntimeError):
        transfer_service.cancel_transfer(identity_a, pending["id"], "Family changed plans")

    reloaded = transfer_service.get_transfer(identity_a, pending["id"])
    assert reloaded["status"] == "pending"
    assert "cancellation_reason" not in (reloaded["metadata"] or {})
    assert _event_types(identity_a, pending["id"]) == ["transfer_initiated"]
    assert _reload_learner(learner.id).status == "transitioning"
