"""Shared parsing helpers for services and blueprints.

parse_date_input:      raises ValueError on bad input (YYYY-MM-DD, DD.MM.YYYY, date)
parse_datetime_input:  raises ValueError on bad input (ISO 8601, naive → UTC)
parse_bool:            lenient boolean coercion for query strings and JSON
"""
from datetime import date, datetime, timezone


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS (→ date part), DD.MM.YYYY,
    date and datetime objects. Empty input returns None.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_datetime_input(value):
    """Parse an ISO 8601 datetime string, raising ValueError on bad input.

    Naive values are interpreted as UTC. Empty input returns None.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(
                "Invalid datetime format. Use ISO 8601 (YYYY-MM-DDTHH:MM:SS)."
            ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_bool(value, default=False):
    """Coerce common truthy/falsy spellings to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in ("1", "true", "yes", "on")
