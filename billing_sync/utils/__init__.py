"""Utility functions and helpers for the billing service."""

from billing_sync.utils.backoff import backoff_delay
from billing_sync.utils.billing_period import (
    add_billing_period,
    parse_billing_period,
    validate_billing_period,
)
from billing_sync.utils.keyed_lock import KeyedLock, customer_key
from billing_sync.utils.signature import (
    SignatureVerificationError,
    build_signature_header,
    compute_signature,
    verify_signature,
)
from billing_sync.utils.token_generator import (
    generate_intent_id,
    generate_internal_event_id,
    generate_subscription_id,
    validate_generated_id,
)

__all__ = [
    # Identifiers
    "generate_intent_id",
    "generate_subscription_id",
    "generate_internal_event_id",
    "validate_generated_id",
    # Durations
    "parse_billing_period",
    "validate_billing_period",
    "add_billing_period",
    # Signatures
    "SignatureVerificationError",
    "compute_signature",
    "build_signature_header",
    "verify_signature",
    # Concurrency
    "KeyedLock",
    "customer_key",
    "backoff_delay",
]
