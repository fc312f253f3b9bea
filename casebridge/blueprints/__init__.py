"""
CaseBridge
Blueprint registry.
"""

from flask import request


def pagination_params(default_limit=10, max_limit=100):
    """Read page/limit query parameters.

    Query params:
        page  — 1-based page number (default 1)
        limit — page size (default ``default_limit``, capped at ``max_limit``)

    Returns:
        (page, limit)
    """
    try:
        page = max(int(request.args.get("page", 1)), 1)
    except (ValueError, TypeError):
        page = 1
    try:
        limit = min(max(int(request.args.get("limit", default_limit)), 1), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    return page, limit
