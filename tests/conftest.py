"""
Shared pytest fixtures for the CaseBridge test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - inst_a / inst_b / inst_c: sending, receiving and uninvolved institutions
    - learner: Learner enrolled at inst_a
    - identity_a / identity_b / identity_c / super_admin: caller identities
    - auth_headers: builds a Bearer header for an identity
"""

from datetime import date, datetime, timedelta, timezone

import jwt
import pytest

from casebridge import create_app
from casebridge.core.identity import (
    ROLE_SCHOOL_ADMIN,
    ROLE_SUPER_ADMIN,
    ROLE_TUTOR_CENTRE_ADMIN,
    IdentityContext,
)
from casebridge.models import db as _db
from casebridge.models.institution import Institution
from casebridge.models.learner import Learner


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain helpers ───────────────────────────────────────────────────────


def _make_institution(name: str, institution_type: str = "school") -> Institution:
    inst = Institution(
        name=name,
        institution_type=institution_type,
        email=f"{name.lower().replace(' ', '.')}@example.org",
    )
    _db.session.add(inst)
    _db.session.commit()
    return inst


def _make_learner(institution: Institution, case_number: str = "CASE-0001", **kwargs) -> Learner:
    learner = Learner(
        case_number=case_number,
        first_name=kwargs.pop("first_name", "Ada"),
        last_name=kwargs.pop("last_name", "Lovelace"),
        current_institution_id=institution.id,
        enrollment_date=kwargs.pop("enrollment_date", date(2024, 9, 1)),
        **kwargs,
    )
    _db.session.add(learner)
    _db.session.commit()
    return learner


def _transfer_payload(learner_id: str, to_institution_id: str, **overrides) -> dict:
    """Minimal valid create-transfer payload."""
    payload = {
        "learner_id": learner_id,
        "to_institution_id": to_institution_id,
        "reason": "specialized_support_needed",
        "reason_details": "Needs a specialist literacy programme.",
        "proposed_transfer_date": (date.today() + timedelta(days=30)).isoformat(),
    }
    payload.update(overrides)
    return payload


_FULL_CHECKLIST = {
    "documents_transferred": True,
    "case_notes_shared": True,
    "parent_notified": True,
    "enrollment_completed": True,
    "previous_institution_notified": True,
    "transition_plan_created": True,
}


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def inst_a():
    """Sending school."""
    return _make_institution("Riverside School")


@pytest.fixture()
def inst_b():
    """Receiving tutor centre."""
    return _make_institution("Harbour Tutor Centre", "tutor_centre")


@pytest.fixture()
def inst_c():
    """Institution not involved in any transfer."""
    return _make_institution("Hilltop School")


@pytest.fixture()
def learner(inst_a):
    return _make_learner(inst_a)


@pytest.fixture()
def identity_a(inst_a):
    return IdentityContext(user_id="user-a", institution_id=inst_a.id, role=ROLE_SCHOOL_ADMIN)


@pytest.fixture()
def identity_b(inst_b):
    return IdentityContext(user_id="user-b", institution_id=inst_b.id, role=ROLE_TUTOR_CENTRE_ADMIN)


@pytest.fixture()
def identity_c(inst_c):
    return IdentityContext(user_id="user-c", institution_id=inst_c.id, role=ROLE_SCHOOL_ADMIN)


@pytest.fixture()
def super_admin():
    return IdentityContext(user_id="platform-1", institution_id=None, role=ROLE_SUPER_ADMIN)


@pytest.fixture()
def auth_headers(app):
    """Return a callable that mints a Bearer header for an IdentityContext."""

    def _headers(identity: IdentityContext, **claims) -> dict:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": identity.user_id,
            "institution_id": identity.institution_id,
            "role": identity.role,
            "type": "access",
            "iat": now,
            "exp": now + timedelta(minutes=15),
        }
        payload.update(claims)
        token = jwt.encode(payload, app.config["SECRET_KEY"], algorithm=app.config["JWT_ALGORITHM"])
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def transfer_payload():
    """Return a builder for a minimal valid create-transfer payload."""
    return _transfer_payload


@pytest.fixture()
def full_checklist():
    """All six completion checklist items set to True."""
    return dict(_FULL_CHECKLIST)


@pytest.fixture()
def make_learner():
    """Return a builder for additional learners."""
    return _make_learner
