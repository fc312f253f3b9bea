"""
Identity middleware — resolves the caller from a bearer JWT into g.identity.

Tokens are issued elsewhere; this hook only verifies them. Expected claims:

{
    "sub": <user_id>,
    "institution_id": <institution_id or null for platform staff>,
    "role": "super_admin" | "school_admin" | "tutor_centre_admin",
    "type": "access",
    "exp": <expires_at>
}

A missing or invalid token leaves g.identity = None; protected blueprints
answer 401 themselves.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from casebridge.core.identity import IdentityContext

logger = logging.getLogger(__name__)

# Paths that never carry an identity
IDENTITY_SKIP_PREFIXES = (
    "/api/v1/health",
)


def decode_access_token(token: str) -> dict:
    """Verify signature, expiry and token type; return the claims.

    Raises pyjwt.InvalidTokenError (or a subclass) on failure.
    """
    payload = pyjwt.decode(
        token,
        current_app.config["SECRET_KEY"],
        algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
    )
    if payload.get("type", "access") != "access":
        raise pyjwt.InvalidTokenError(f"Expected access token, got {payload.get('type')}")
    return payload


def identity_from_claims(payload: dict) -> IdentityContext:
    """Build an IdentityContext from verified token claims.

    Raises ValueError for a missing subject, an unknown role or an
    institution-scoped role without an institution.
    """
    user_id = payload.get("sub")
    if not user_id:
        raise ValueError("Token has no subject")
    return IdentityContext(
        user_id=str(user_id),
        institution_id=payload.get("institution_id"),
        role=payload.get("role", ""),
    )


def init_identity_middleware(app):
    """Register the identity resolver as a before_request hook."""

    @app.before_request
    def _resolve_identity():
        g.identity = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in IDENTITY_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]
        try:
            g.identity = identity_from_claims(decode_access_token(token))
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired bearer token", extra={"path": path})
        except (pyjwt.InvalidTokenError, ValueError) as exc:
            logger.warning("Rejected bearer token: %s", exc, extra={"path": path})
