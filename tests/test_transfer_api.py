"""
Tests: Learner Transfer HTTP API (/api/v1/transfers).

Covers:
  - identity middleware: missing, invalid and expired bearer tokens → 401
  - create → review → acknowledge → complete over HTTP
  - error mapping: 404 / 403 / 409 Conflict / 409 InvalidState / 422 / 400
  - listing with query params, statistics, timeline, delete
  - handover routes (documents, case notes, meeting, comments)
  - response headers from the timing middleware
"""

from datetime import timedelta

BASE = "/api/v1/transfers"


# ── Helpers ──────────────────────────────────────────────────────────────────


def _create(client, headers, payload):
    res = client.post(BASE, json=payload, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


# ── Auth ─────────────────────────────────────────────────────────────────────


def test_missing_token_returns_401(client):
    res = client.get(BASE)
    assert res.status_code == 401
    assert res.get_json()["code"] == "ERR_UNAUTHORIZED"


def test_invalid_token_returns_401(client):
    res = client.get(BASE, headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_expired_token_returns_401(client, auth_headers, identity_a):
    from datetime import datetime, timezone

    past = datetime.now(timezone.utc) - timedelta(hours=1)
    res = client.get(BASE, headers=auth_headers(identity_a, exp=past))
    assert res.status_code == 401


def test_unknown_role_returns_401(client, auth_headers, identity_a):
    res = client.get(BASE, headers=auth_headers(identity_a, role="janitor"))
    assert res.status_code == 401


def test_health_needs_no_token(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


# ── Workflow ─────────────────────────────────────────────────────────────────


def test_full_workflow_over_http(client, auth_headers, identity_a, identity_b, learner, inst_b,
                                 transfer_payload, full_checklist):
    ha, hb = auth_headers(identity_a), auth_headers(identity_b)
    created = _create(client, ha, transfer_payload(learner.id, inst_b.id))
    tid = created["id"]
    assert created["to_institution_name"] == "Harbour Tutor Centre"

    res = client.patch(f"{BASE}/{tid}/review", json={"status": "approved"}, headers=hb)
    assert res.status_code == 200
    assert res.get_json()["status"] == "approved"

    res = client.patch(f"{BASE}/{tid}/acknowledge", json={"notes": "All good"}, headers=hb)
    assert res.status_code == 200
    assert res.get_json()["receiving_institution_acknowledged"] is True

    res = client.patch(f"{BASE}/{tid}/complete", json={"completion_checklist": full_checklist}, headers=hb)
    assert res.status_code == 200
    assert res.get_json()["status"] == "completed"

    res = client.get(f"{BASE}/{tid}/timeline", headers=ha)
    assert res.status_code == 200
    assert [e["event_type"] for e in res.get_json()] == [
        "transfer_initiated", "approved", "acknowledged", "completed",
    ]


def test_cancel_over_http(client, auth_headers, identity_a, learner, inst_b, transfer_payload):
    ha = auth_headers(identity_a)
    tid = _create(client, ha, transfer_payload(learner.id, inst_b.id))["id"]

    res = client.patch(f"{BASE}/{tid}/cancel", json={}, headers=ha)
    assert res.status_code == 400

    res = client.patch(f"{BASE}/{tid}/cancel", json={"reason": "Family moved again"}, headers=ha)
    assert res.status_code == 200
    assert res.get_json()["status"] == "cancelled"


# ── Error mapping ────────────────────────────────────────────────────────────


def test_create_missing_fields_returns_400(client, auth_headers, identity_a):
    res = client.post(BASE, json={"learner_id": "x"}, headers=auth_headers(identity_a))
    assert res.status_code == 400
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_REQUIRED"
    assert "to_institution_id" in body["details"]


def test_non_json_body_returns_400(client, auth_headers, identity_a):
    res = client.post(BASE, data="[1, 2]", content_type="application/json", headers=auth_headers(identity_a))
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"


def test_business_validation_returns_422(client, auth_headers, identity_a, learner, inst_a, transfer_payload):
    res = client.post(BASE, json=transfer_payload(learner.id, inst_a.id), headers=auth_headers(identity_a))
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_VALIDATION_RULE"


def test_duplicate_active_transfer_returns_409(client, auth_headers, identity_a, learner, inst_b, inst_c,
                                               transfer_payload):
    ha = auth_headers(identity_a)
    _create(client, ha, transfer_payload(learner.id, inst_b.id))
    res = client.post(BASE, json=transfer_payload(learner.id, inst_c.id), headers=ha)
    assert res.status_code == 409
    assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"


def test_invalid_state_returns_409_with_details(client, auth_headers, identity_a, identity_b, learner, inst_b,
                                                transfer_payload, full_checklist):
    hb = auth_headers(identity_b)
    tid = _create(client, auth_headers(identity_a), transfer_payload(learner.id, inst_b.id))["id"]
    client.patch(f"{BASE}/{tid}/review", json={"status": "approved"}, headers=hb)
    client.patch(f"{BASE}/{tid}/acknowledge", headers=hb)

    full_checklist["enrollment_completed"] = False
    res = client.patch(f"{BASE}/{tid}/complete", json={"completion_checklist": full_checklist}, headers=hb)
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "ERR_CONFLICT_STATE"
    assert body["details"]["current_status"] == "approved"
    assert body["details"]["enrollment_completed"] == "must be true"


def test_uninvolved_institution_gets_403(client, auth_headers, identity_a, identity_c, learner, inst_b,
                                         transfer_payload):
    tid = _create(client, auth_headers(identity_a), transfer_payload(learner.id, inst_b.id))["id"]
    res = client.get(f"{BASE}/{tid}", headers=auth_headers(identity_c))
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN"


def test_unknown_transfer_returns_404(client, auth_headers, identity_a):
    res = client.get(f"{BASE}/nope", headers=auth_headers(identity_a))
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ── Listing / statistics / delete ────────────────────────────────────────────


def test_list_with_query_params(client, auth_headers, identity_a, learner, inst_b, transfer_payload):
    ha = auth_headers(identity_a)
    _create(client, ha, transfer_payload(learner.id, inst_b.id))

    res = client.get(f"{BASE}?status=pending&limit=5", headers=ha)
    assert res.status_code == 200
    body = res.get_json()
    assert body["meta"]["total_items"] == 1
    assert body["meta"]["limit"] == 5

    res = client.get(f"{BASE}?status=approved", headers=ha)
    assert res.get_json()["data"] == []


def test_statistics_route(client, auth_headers, identity_a, identity_b, learner, inst_b, inst_c,
                          transfer_payload):
    _create(client, auth_headers(identity_a), transfer_payload(learner.id, inst_b.id))

    res = client.get(f"{BASE}/statistics", headers=auth_headers(identity_b))
    assert res.status_code == 200
    assert res.get_json()["pending"] == 1

    res = client.get(f"{BASE}/statistics?institution_id={inst_c.id}", headers=auth_headers(identity_b))
    assert res.status_code == 403


def test_delete_route(client, auth_headers, identity_a, super_admin, learner, inst_b, transfer_payload):
    ha = auth_headers(identity_a)
    tid = _create(client, ha, transfer_payload(learner.id, inst_b.id))["id"]

    assert client.delete(f"{BASE}/{tid}", headers=ha).status_code == 403
    assert client.delete(f"{BASE}/{tid}", headers=auth_headers(super_admin)).status_code == 204
    assert client.get(f"{BASE}/{tid}", headers=ha).status_code == 404
    assert client.get(f"{BASE}/{tid}/timeline", headers=ha).status_code == 200


def test_update_route(client, auth_headers, identity_a, learner, inst_b, transfer_payload):
    ha = auth_headers(identity_a)
    tid = _create(client, ha, transfer_payload(learner.id, inst_b.id))["id"]

    res = client.patch(f"{BASE}/{tid}", json={"priority": "high"}, headers=ha)
    assert res.status_code == 200
    assert res.get_json()["priority"] == "high"

    res = client.patch(f"{BASE}/{tid}", json={"learner_id": "someone-else"}, headers=ha)
    assert res.status_code == 422

    res = client.patch(f"{BASE}/{tid}", json={}, headers=ha)
    assert res.status_code == 400


# ── Handover routes ──────────────────────────────────────────────────────────


def test_handover_routes(client, auth_headers, identity_a, identity_b, learner, inst_b, transfer_payload):
    ha, hb = auth_headers(identity_a), auth_headers(identity_b)
    tid = _create(client, ha, transfer_payload(learner.id, inst_b.id))["id"]

    res = client.post(f"{BASE}/{tid}/communications", json={"message": "Hi"}, headers=ha)
    assert res.status_code == 201

    res = client.post(
        f"{BASE}/{tid}/documents",
        json={"documents": [{"name": "IEP", "type": "iep", "url": "https://files.example.org/iep.pdf"}]},
        headers=ha,
    )
    assert res.status_code == 201
    assert len(res.get_json()["shared_documents"]) == 1

    res = client.post(f"{BASE}/{tid}/case-notes", json={"case_note_ids": ["n-1"]}, headers=ha)
    assert res.status_code == 201

    res = client.post(f"{BASE}/{tid}/meeting", json={"meeting_date": "2026-11-20T10:00:00"}, headers=hb)
    assert res.status_code == 201

    res = client.patch(f"{BASE}/{tid}/meeting/complete", json={"notes": "Agreed plan"}, headers=hb)
    assert res.status_code == 200

    res = client.post(f"{BASE}/{tid}/comments", json={"comment": "Thanks"}, headers=hb)
    assert res.status_code == 201
    assert [e["event_type"] for e in res.get_json()] == [
        "transfer_initiated",
        "communication_sent",
        "documents_shared",
        "case_notes_shared",
        "meeting_scheduled",
        "meeting_completed",
        "comment_added",
    ]


def test_response_carries_request_headers(client, auth_headers, identity_a):
    res = client.get(BASE, headers={**auth_headers(identity_a), "X-Request-ID": "req-123"})
    assert res.headers["X-Request-ID"] == "req-123"
    assert "X-Request-Duration-Ms" in res.headers
