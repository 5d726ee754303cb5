"""State change logging for subscriptions, inbound events and reconciliation.

Tracks transitions with before/after values for debugging and auditing.
"""

from typing import Any, Optional

from billing_sync.logging_config import get_logger

logger = get_logger(__name__)


def _value(state: Any) -> Any:
    """Unwrap enum members to their raw value."""
    return getattr(state, "value", state)


def log_subscription_state_change(
    subscription_id: str,
    customer_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        subscription_id: Local subscription ID
        customer_id: Owning customer
        old_status: Previous status value (None for a new subscription)
        new_status: New status value
        reason: Event type or other cause of the change
        **extra_context: Additional context (sequence, provider_event_id, etc.)
    """
    logger.info(
        "subscription_state_changed",
        subscription_id=subscription_id,
        customer_id=customer_id,
        old_status=_value(old_status),
        new_status=_value(new_status),
        reason=reason,
        **extra_context,
    )


def log_event_outcome(
    provider_event_id: str,
    event_type: str,
    outcome: Any,
    detail: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log the processing outcome recorded for an inbound event.

    Args:
        provider_event_id: Provider event ID
        event_type: Event type string
        outcome: EventOutcome value
        detail: Rejection reason or error message
        **extra_context: Additional context
    """
    log = logger.warning if _value(outcome) == "failed" else logger.info
    log(
        "event_outcome_recorded",
        provider_event_id=provider_event_id,
        event_type=event_type,
        outcome=_value(outcome),
        detail=detail,
        **extra_context,
    )


def log_reconciliation_correction(
    provider_subscription_id: str,
    customer_id: str,
    before: Optional[dict],
    after: dict,
    **extra_context: Any,
) -> None:
    """Log a corrective transition produced by reconciliation.

    Args:
        provider_subscription_id: Provider subscription ID
        customer_id: Owning customer
        before: Local projection before the correction (None if missing locally)
        after: Local projection after the correction
        **extra_context: Additional context (resync event id, sequence)
    """
    logger.warning(
        "reconciliation_correction_applied",
        reconciliation=True,
        provider_subscription_id=provider_subscription_id,
        customer_id=customer_id,
        before=before,
        after=after,
        **extra_context,
    )


def log_intent_status_change(
    intent_id: str,
    customer_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
) -> None:
    """Log checkout intent status change."""
    logger.info(
        "checkout_intent_status_changed",
        intent_id=intent_id,
        customer_id=customer_id,
        old_status=_value(old_status),
        new_status=_value(new_status),
        reason=reason,
    )
