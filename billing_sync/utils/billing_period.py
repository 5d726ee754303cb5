"""ISO 8601 duration parsing for billing periods and lifecycle windows.

Plan billing periods, trial lengths, the past_due grace period, checkout
intent TTL and idempotency retention are all configured as ISO 8601
durations and converted to milliseconds here. Only single-unit durations
are accepted (P14D, P1M, PT12H); combined forms like P1M2D are not.
"""

import re

MILLIS_PER_SECOND = 1000
MILLIS_PER_MINUTE = 60 * MILLIS_PER_SECOND
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR
MILLIS_PER_WEEK = 7 * MILLIS_PER_DAY
MILLIS_PER_MONTH = 30 * MILLIS_PER_DAY  # Billing month
MILLIS_PER_YEAR = 365 * MILLIS_PER_DAY

# (time part?, unit letter) -> millis. "M" is months before T, minutes after.
_UNIT_MILLIS = {
    (False, "D"): MILLIS_PER_DAY,
    (False, "W"): MILLIS_PER_WEEK,
    (False, "M"): MILLIS_PER_MONTH,
    (False, "Y"): MILLIS_PER_YEAR,
    (True, "H"): MILLIS_PER_HOUR,
    (True, "M"): MILLIS_PER_MINUTE,
    (True, "S"): MILLIS_PER_SECOND,
}

_DURATION_RE = re.compile(r"^P(?P<time>T)?(?P<count>\d*)(?P<unit>[A-Z])$")

_SUPPORTED = "P[n]D, P[n]W, P[n]M, P[n]Y, PT[n]H, PT[n]M, PT[n]S"


def parse_billing_period(period: str) -> int:
    """Convert an ISO 8601 duration to milliseconds.

    Months count as 30 days and years as 365. A missing count means one
    (``PM`` == ``P1M``). Case and surrounding whitespace are ignored.

    Raises:
        ValueError: If the string is empty, malformed or uses an unsupported unit

    Examples:
        >>> parse_billing_period("P7D")
        604800000

        >>> parse_billing_period("PT1H")
        3600000
    """
    if not isinstance(period, str) or not period.strip():
        raise ValueError("Period must be a non-empty string")

    text = period.strip().upper()
    if text[0] != "P":
        raise ValueError(f"Invalid period format: '{text}'. Must start with 'P'")
    if text in ("P", "PT"):
        raise ValueError(f"Invalid period format: '{text}'. No duration specified")

    match = _DURATION_RE.match(text)
    key = (match.group("time") is not None, match.group("unit")) if match else None
    if key not in _UNIT_MILLIS:
        raise ValueError(f"Unsupported period format: '{text}'. Supported formats: {_SUPPORTED}")

    count = int(match.group("count") or 1)
    if count <= 0:
        raise ValueError(f"Period count must be positive, got: {count}")
    return count * _UNIT_MILLIS[key]


def validate_billing_period(period: str) -> bool:
    """True if ``period`` parses; config validation uses this."""
    try:
        parse_billing_period(period)
    except ValueError:
        return False
    return True


def add_billing_period(start_millis: int, period: str) -> int:
    """Return the timestamp one period after start_millis."""
    return start_millis + parse_billing_period(period)
