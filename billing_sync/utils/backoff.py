"""Exponential backoff for event retries."""

from random import SystemRandom

_rng = SystemRandom()


def backoff_delay(
    attempt: int,
    base_delay: float = 0.5,
    factor: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.25,
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based).

    Grows as base_delay * factor ** (attempt - 1), plus up to ``jitter``
    of itself, capped at max_delay.

    Raises:
        ValueError: On out-of-range arguments
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if base_delay <= 0:
        raise ValueError("base_delay must be > 0")
    if factor < 1:
        raise ValueError("factor must be >= 1")
    if max_delay <= 0:
        raise ValueError("max_delay must be > 0")
    if jitter < 0:
        raise ValueError("jitter must be >= 0")

    delay = min(base_delay * factor ** (attempt - 1), max_delay)
    jitter_offset = _rng.uniform(0, delay * jitter) if jitter > 0 else 0.0
    return min(delay + jitter_offset, max_delay)
