"""
Game clock value and time parsing.

All game times are timezone-aware UTC datetimes. Naive datetimes are
treated as UTC; ISO-8601 strings may use a trailing "Z".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ..errors import InvalidTimeError


GAME_EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


def parse_game_time(value: datetime | str) -> datetime:
    """
    Normalise a datetime or ISO-8601 string to an aware UTC datetime.

    Raises:
        InvalidTimeError: If the value cannot be parsed.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidTimeError(f"Cannot parse game time {value!r}: {e}") from e
    else:
        raise InvalidTimeError(
            f"Game time must be a datetime or ISO string, got {type(value).__name__}"
        )

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_game_time(value: datetime) -> str:
    """Render as ISO-8601 with a trailing Z."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class GameClock:
    """
    The authoritative game time value.

    Only TimeEngine mutates this. current_time never decreases except
    through an explicit administrative set.
    """
    current_time: datetime = field(default=GAME_EPOCH)
    paused: bool = False

    def __post_init__(self):
        self.current_time = parse_game_time(self.current_time)

    def advance(self, hours: int) -> datetime:
        """Move forward by whole hours. Returns the new time."""
        if hours < 0:
            raise InvalidTimeError("Clock cannot advance by a negative amount")
        self.current_time = self.current_time + timedelta(hours=hours)
        return self.current_time
