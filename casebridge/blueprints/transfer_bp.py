"""
Learner Transfer Blueprint.

HTTP endpoints for the learner hand-off workflow between institutions.

Endpoints:
    POST   /api/v1/transfers                               create
    GET    /api/v1/transfers                               list (filters + page/limit)
    GET    /api/v1/transfers/statistics                    per-status counts
    GET    /api/v1/transfers/<id>                          detail
    GET    /api/v1/transfers/<id>/timeline                 ordered event log
    PATCH  /api/v1/transfers/<id>                          edit free fields
    PATCH  /api/v1/transfers/<id>/review                   approve / reject
    PATCH  /api/v1/transfers/<id>/acknowledge              receiving side confirms
    PATCH  /api/v1/transfers/<id>/complete                 finish with checklist
    POST   /api/v1/transfers/<id>/communications           add message
    PATCH  /api/v1/transfers/<id>/cancel                   cancel with reason
    DELETE /api/v1/transfers/<id>                          soft delete (super-admin)
    POST   /api/v1/transfers/<id>/documents                share documents
    POST   /api/v1/transfers/<id>/case-notes               share case notes
    POST   /api/v1/transfers/<id>/meeting                  schedule coordination meeting
    PATCH  /api/v1/transfers/<id>/meeting/complete         record meeting outcome
    POST   /api/v1/transfers/<id>/comments                 add timeline comment

Layer contract:
    - Blueprint: resolve identity, check payload shape, call service, return JSON.
    - NO db.session calls here — all writes owned by transfer_service.
    - Business and access rules live in the service; their exceptions are
      mapped to responses by the error handlers below.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from casebridge.blueprints import pagination_params
from casebridge.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from casebridge.services import transfer_service
from casebridge.utils.errors import E, api_error

logger = logging.getLogger(__name__)

transfer_bp = Blueprint("transfers", __name__, url_prefix="/api/v1/transfers")

_LIST_FILTERS = ("learner_id", "from_institution_id", "to_institution_id", "status", "priority")


# ── Request hooks / helpers ────────────────────────────────────────────────────


@transfer_bp.before_request
def _require_identity():
    if getattr(g, "identity", None) is None:
        return api_error(E.UNAUTHORIZED, "Authentication required")
    return None


def _json_body():
    """Return the JSON object body, or (None, error_response) when malformed."""
    data = request.get_json(silent=True)
    if data is None:
        return None, api_error(E.VALIDATION_REQUIRED, "Request body must be JSON")
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


def _missing(data: dict, *fields):
    missing = [f for f in fields if data.get(f) in (None, "", [], {})]
    if missing:
        return api_error(
            E.VALIDATION_REQUIRED,
            f"Missing required field(s): {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
    return None


# ── Error handlers ─────────────────────────────────────────────────────────────


@transfer_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@transfer_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error))


@transfer_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})


@transfer_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    details = {"current_status": error.current_status, **error.details}
    return api_error(E.CONFLICT_STATE, str(error), details=details)


@transfer_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@transfer_bp.errorhandler(HTTPException)
def _handle_http(error: HTTPException):
    if error.code == 429:
        code = E.RATE_LIMITED
    elif error.code and error.code < 500:
        code = E.VALIDATION_INVALID
    else:
        code = E.INTERNAL
    return api_error(code, error.description or error.name, status=error.code)


@transfer_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in transfer_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Collection routes ──────────────────────────────────────────────────────────


@transfer_bp.route("", methods=["POST"])
def create_transfer():
    """Initiate a transfer. Returns 201 with the new transfer."""
    data, err = _json_body()
    if err:
        return err
    err = _missing(data, "learner_id", "to_institution_id", "reason", "reason_details", "proposed_transfer_date")
    if err:
        return err
    transfer = transfer_service.create_transfer(g.identity, data)
    return jsonify(transfer), 201


@transfer_bp.route("", methods=["GET"])
def list_transfers():
    page, limit = pagination_params(
        default_limit=current_app.config["TRANSFER_PAGE_SIZE_DEFAULT"],
        max_limit=current_app.config["TRANSFER_PAGE_SIZE_MAX"],
    )
    filters = {name: request.args[name] for name in _LIST_FILTERS if request.args.get(name)}
    filters.update(page=page, limit=limit)
    return jsonify(transfer_service.list_transfers(g.identity, filters))


@transfer_bp.route("/statistics", methods=["GET"])
def transfer_statistics():
    stats = transfer_service.get_statistics(g.identity, request.args.get("institution_id") or None)
    return jsonify(stats)


# ── Item routes ────────────────────────────────────────────────────────────────


@transfer_bp.route("/<transfer_id>", methods=["GET"])
def get_transfer(transfer_id):
    return jsonify(transfer_service.get_transfer(g.identity, transfer_id))


@transfer_bp.route("/<transfer_id>/timeline", methods=["GET"])
def get_timeline(transfer_id):
    return jsonify(transfer_service.get_timeline(g.identity, transfer_id))


@transfer_bp.route("/<transfer_id>", methods=["PATCH"])
def update_transfer(transfer_id):
    data, err = _json_body()
    if err:
        return err
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "No fields supplied")
    return jsonify(transfer_service.update_transfer(g.identity, transfer_id, data))


@transfer_bp.route("/<transfer_id>/review", methods=["PATCH"])
def review_transfer(transfer_id):
    data, err = _json_body()
    if err:
        return err
    err = _missing(data, "status")
    if err:
        return err
    return jsonify(transfer_service.review_transfer(g.identity, transfer_id, data))


@transfer_bp.route("/<transfer_id>/acknowledge", methods=["PATCH"])
def acknowledge_transfer(transfer_id):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return jsonify(transfer_service.acknowledge_transfer(g.identity, transfer_id, data))


@transfer_bp.route("/<transfer_id>/complete", methods=["PATCH"])
def complete_transfer(transfer_id):
    data, err = _json_body()
    if err:
        return err
    if not isinstance(data.get("completion_checklist"), dict):
        return api_error(
            E.VALIDATION_REQUIRED,
            "Field 'completion_checklist' must be an object.",
            details={"completion_checklist": "required"},
        )
    return jsonify(transfer_service.complete_transfer(g.identity, transfer_id, data))


@transfer_bp.route("/<transfer_id>/communications", methods=["POST"])
def add_communication(transfer_id):
    data, err = _json_body()
    if err:
        return err
    err = _missing(data, "message")
    if err:
        return err
    return jsonify(transfer_service.add_communication(g.identity, transfer_id, data)), 201


@transfer_bp.route("/<transfer_id>/cancel", methods=["PATCH"])
def cancel_transfer(transfer_id):
    data, err = _json_body()
    if err:
        return err
    err = _missing(data, "reason")
    if err:
        return err
    return jsonify(transfer_service.cancel_transfer(g.identity, transfer_id, data["reason"]))


@transfer_bp.route("/<transfer_id>", methods=["DELETE"])
def delete_transfer(transfer_id):
    transfer_service.delete_transfer(g.identity, transfer_id)
    return "", 204


# ── Handover coordination routes ───────────────────────────────────────────────


@transfer_bp.route("/<transfer_id>/documents", methods=["POST"])
def share_documents(transfer_id):
    data, err = _json_body()
    if err:
        return err
    if not isinstance(data.get("documents"), list):
        return api_error(E.VALIDATION_REQUIRED, "Field 'documents' must be a list.")
    return jsonify(transfer_service.share_documents(g.identity, transfer_id, data["documents"])), 201


@transfer_bp.route("/<transfer_id>/case-notes", methods=["POST"])
def share_case_notes(transfer_id):
    data, err = _json_body()
    if err:
        return err
    if not isinstance(data.get("case_note_ids"), list):
        return api_error(E.VALIDATION_REQUIRED, "Field 'case_note_ids' must be a list.")
    return jsonify(transfer_service.share_case_notes(g.identity, transfer_id, data["case_note_ids"])), 201


@transfer_bp.route("/<transfer_id>/meeting", methods=["POST"])
def schedule_meeting(transfer_id):
    data, err = _json_body()
    if err:
        return err
    err = _missing(data, "meeting_date")
    if err:
        return err
    return jsonify(transfer_service.schedule_meeting(g.identity, transfer_id, data)), 201


@transfer_bp.route("/<transfer_id>/meeting/complete", methods=["PATCH"])
def complete_meeting(transfer_id):
    data, err = _json_body()
    if err:
        return err
    err = _missing(data, "notes")
    if err:
        return err
    return jsonify(transfer_service.complete_meeting(g.identity, transfer_id, data))


@transfer_bp.route("/<transfer_id>/comments", methods=["POST"])
def add_comment(transfer_id):
    data, err = _json_body()
    if err:
        return err
    err = _missing(data, "comment")
    if err:
        return err
    return jsonify(transfer_service.add_comment(g.identity, transfer_id, data["comment"])), 201
