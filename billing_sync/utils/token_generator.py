"""Identifier generation utilities.

Generates unique identifiers for checkout intents, subscriptions and
locally synthesized events.
"""

import re
import time
import uuid
from typing import Optional

_ID_PATTERN = re.compile(r"^[a-z]+_[a-f0-9]{16}_\d{13}$")


def _generate(kind: str, now_millis: Optional[int] = None) -> str:
    """Format: {kind}_{uuid hex[:16]}_{millis}."""
    token_id = uuid.uuid4().hex[:16]
    timestamp = now_millis if now_millis is not None else int(time.time() * 1000)
    return f"{kind}_{token_id}_{timestamp:013d}"


def generate_intent_id(now_millis: Optional[int] = None) -> str:
    """Generate a checkout intent ID.

    Example: intent_a1b2c3d4e5f60718_1700000000000
    """
    return _generate("intent", now_millis)


def generate_subscription_id(now_millis: Optional[int] = None) -> str:
    """Generate a local subscription ID.

    Example: sub_a1b2c3d4e5f60718_1700000000000
    """
    return _generate("sub", now_millis)


def generate_internal_event_id(kind: str, now_millis: Optional[int] = None) -> str:
    """Generate an ID for a locally synthesized event.

    Example: resync_a1b2c3d4e5f60718_1700000000000
    """
    return _generate(kind, now_millis)


def validate_generated_id(value: str, kind: Optional[str] = None) -> bool:
    """Check that value looks like an ID produced by this module.

    Args:
        value: Identifier to validate
        kind: Expected prefix ("intent", "sub", "resync", ...), or None for any

    Returns:
        True if the format matches
    """
    if not value or not isinstance(value, str):
        return False
    if not _ID_PATTERN.match(value):
        return False
    if kind is not None and not value.startswith(f"{kind}_"):
        return False
    return True
