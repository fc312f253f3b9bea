"""
Rate limiting configuration.

The Limiter instance is created in casebridge/__init__.py with no default
limits; this module applies limits to the transfer API, keyed by the
caller's institution when an identity is present and by remote IP otherwise.

Usage:
    from casebridge.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

TRANSFER_RATE_LIMIT = "120/minute"


def rate_limit_key():
    """Institution id if the caller is identified, else remote IP."""
    identity = getattr(g, "identity", None)
    if identity is not None and identity.institution_id:
        return f"institution:{identity.institution_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """Apply limits to the transfer blueprint. Disabled in testing mode."""
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    limit = app.config.get("TRANSFER_RATE_LIMIT", TRANSFER_RATE_LIMIT)
    bp = app.blueprints.get("transfers")
    if bp:
        limiter.limit(limit, key_func=rate_limit_key)(bp)

    app.logger.info("Rate limiter configured — transfers: %s per institution", limit)
