"""
Boundary validation for externally supplied values.

Command-line values pass through here before they reach the engines, and
the HTTP request schemas share the patterns below. Checks that need the
baseline, such as known state codes, live here for both. Failures raise
ValidationError naming the offending field.
"""

import math
import re
from datetime import datetime

from .clock.clock import parse_game_time
from .errors import InvalidTimeError, ValidationError


PLAYER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
STATE_CODE_PATTERN = re.compile(r"^[A-Za-z]{2}$")
ACTION_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")

MAX_MODIFIER_MAGNITUDE = 100.0


def validate_player_id(value) -> str:
    if not isinstance(value, str) or not PLAYER_ID_PATTERN.match(value):
        raise ValidationError(
            "player_id",
            "expected 1-64 letters, digits, '-' or '_'",
        )
    return value


def validate_state_code(value, known: set[str] | None = None) -> str:
    """Two-letter postal code, upper-cased. Optionally checked against a known set."""
    if not isinstance(value, str) or not STATE_CODE_PATTERN.match(value):
        raise ValidationError("state_code", f"expected a two-letter code, got {value!r}")
    code = value.upper()
    if known is not None and code not in known:
        raise ValidationError("state_code", f"unknown state '{code}'")
    return code


def validate_action(value) -> str:
    if not isinstance(value, str) or not ACTION_PATTERN.match(value):
        raise ValidationError("action", f"expected a snake_case action name, got {value!r}")
    return value


def validate_hours(value, field: str = "hours", maximum: int | None = None) -> int:
    """
    Positive whole number of hours.

    Accepts ints and digit strings (query parameters). Rejects booleans,
    fractional values and anything above ``maximum``.
    """
    if isinstance(value, bool):
        raise ValidationError(field, "must be a whole number of hours")
    if isinstance(value, str):
        if not value.strip().isdigit():
            raise ValidationError(field, f"must be a whole number of hours, got {value!r}")
        value = int(value.strip())
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError(field, "must be a whole number of hours")
    if value <= 0:
        raise ValidationError(field, "must be positive")
    if maximum is not None and value > maximum:
        raise ValidationError(field, f"must be at most {maximum}")
    return value


def validate_magnitude(value) -> float:
    """Signed percentage-point adjustment for one activity."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("magnitude", "must be a number")
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError("magnitude", "must be finite")
    if abs(value) > MAX_MODIFIER_MAGNITUDE:
        raise ValidationError("magnitude", f"must be within +/-{MAX_MODIFIER_MAGNITUDE:g} points")
    return value


def parse_timestamp(value, field: str = "time") -> datetime:
    """ISO-8601 timestamp to aware UTC datetime."""
    try:
        return parse_game_time(value)
    except InvalidTimeError as e:
        raise ValidationError(field, str(e)) from e
