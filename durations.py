"""
Duration parsing and formatting.

Durations are used for signature windows and block lengths. They are either a
positive integer number of seconds or a string such as "30s", "5m", "6h",
"2d" or "1w".
"""

import re
from typing import Union

from blocklist_errors import ConfigurationError

DURATION_PATTERN = re.compile(r"^\s*([0-9]+)\s*([smhdw]?)\s*$", re.IGNORECASE)

UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 3600 * 24,
    "w": 3600 * 24 * 7,
}


def parse_duration(value: Union[int, str]) -> int:
    """
    Returns an integer number of seconds for an integer or a duration string.

    Args:
        value: Seconds as an int (must be >= 1), or a string like "5m", "2h",
               "1d". A string without a unit is read as seconds.

    Raises:
        ConfigurationError: If the value is not a positive int or a valid
                            duration string.
    """
    # bool is an int subclass; True must not become a one second window
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")

    if isinstance(value, int):
        if value < 1:
            raise ConfigurationError(
                f"Duration must be a positive integer number of seconds, got {value}"
            )
        return value

    if not isinstance(value, str):
        raise ConfigurationError(
            f"Duration must be an integer or a string like '5m', '2h', '1d', got {value!r}"
        )

    match = DURATION_PATTERN.match(value)
    if not match:
        raise ConfigurationError(
            f"Invalid duration '{value}'. Use an integer or a string like '5m', '2h', '1d'."
        )

    amount, unit = int(match.group(1)), match.group(2).lower()
    return amount * UNIT_SECONDS.get(unit, 1)


def format_duration(seconds: int) -> str:
    """Formats a number of seconds for log lines, e.g. '90 seconds', '6 hours'."""
    seconds = int(seconds)
    if seconds < 120:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{round(seconds / 60)} minutes"
    if seconds < 3600 * 48:
        return f"{round(seconds / 3600, 1):g} hours"
    return f"{round(seconds / (3600 * 24), 1):g} days"
