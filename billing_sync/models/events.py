"""Inbound provider event models.

Covers the webhook envelope, the typed payload variants recognized by the
state machine, the inbound event log row and its audit/dead-letter records.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .subscription import SubscriptionStatus


class EventType(str, Enum):
    """Event types the state machine has transitions for."""

    CHECKOUT_COMPLETED = "checkout.completed"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"

    # Synthesized locally, never accepted from the webhook endpoint
    GRACE_PERIOD_EXPIRED = "grace_period.expired"
    SUBSCRIPTION_RESYNC = "subscription.resync"


INTERNAL_EVENT_TYPES = frozenset({EventType.GRACE_PERIOD_EXPIRED, EventType.SUBSCRIPTION_RESYNC})


class EventSource(str, Enum):
    """Where an inbound event came from."""

    PROVIDER = "provider"
    INTERNAL = "internal"


class EventOutcome(str, Enum):
    """Processing outcome recorded on the inbound event log."""

    PENDING = "pending"
    APPLIED = "applied"
    IGNORED_DUPLICATE = "ignored_duplicate"
    IGNORED_STALE = "ignored_stale"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self != EventOutcome.PENDING


class EventEnvelope(BaseModel):
    """Webhook body as sent by the provider: {id, type, created, data}."""

    id: str = Field(..., min_length=1, description="Provider event ID")
    type: str = Field(..., min_length=1, description="Provider event type")
    created: int = Field(..., ge=0, description="Event creation time (Unix millis)")
    data: dict[str, Any] = Field(..., description="Type-specific payload")
    sequence: Optional[int] = Field(None, ge=0, description="Provider ordering hint")

    @property
    def effective_sequence(self) -> int:
        """Ordering key; the creation time stands in when no sequence is sent."""
        return self.sequence if self.sequence is not None else self.created

    class Config:
        json_schema_extra = {
            "example": {
                "id": "evt_1a2b3c",
                "type": "invoice.payment_failed",
                "created": 1700000000000,
                "data": {"customer_id": "42", "provider_subscription_id": "psub_123"},
            }
        }


class SubscriptionEventData(BaseModel):
    """Fields every subscription-scoped payload carries."""

    customer_id: str = Field(..., min_length=1)
    provider_subscription_id: str = Field(..., min_length=1)


class CheckoutCompletedData(SubscriptionEventData):
    intent_id: str = Field(..., min_length=1, description="Checkout intent the provider was given")
    plan_id: str = Field(..., min_length=1)
    current_period_start_millis: Optional[int] = None
    current_period_end_millis: Optional[int] = None


class InvoiceEventData(SubscriptionEventData):
    invoice_id: Optional[str] = None
    period_start_millis: Optional[int] = None
    period_end_millis: Optional[int] = None


class SubscriptionUpdatedData(SubscriptionEventData):
    status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    current_period_start_millis: Optional[int] = None
    current_period_end_millis: Optional[int] = None


class SubscriptionDeletedData(SubscriptionEventData):
    canceled_at_millis: Optional[int] = None


class GracePeriodExpiredData(SubscriptionEventData):
    grace_period_end_millis: int


class ProviderSubscription(SubscriptionEventData):
    """Canonical subscription state reported by the provider.

    Doubles as the payload of a synthetic subscription.resync event.
    """

    plan_id: str = Field(..., min_length=1)
    status: SubscriptionStatus
    current_period_start_millis: Optional[int] = None
    current_period_end_millis: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at_millis: Optional[int] = None
    intent_id: Optional[str] = None
    sequence: int = Field(default=0, ge=0, description="Provider's latest applied event ordering key")


EVENT_DATA_MODELS: dict[EventType, type[SubscriptionEventData]] = {
    EventType.CHECKOUT_COMPLETED: CheckoutCompletedData,
    EventType.INVOICE_PAYMENT_FAILED: InvoiceEventData,
    EventType.INVOICE_PAYMENT_SUCCEEDED: InvoiceEventData,
    EventType.SUBSCRIPTION_UPDATED: SubscriptionUpdatedData,
    EventType.SUBSCRIPTION_DELETED: SubscriptionDeletedData,
    EventType.GRACE_PERIOD_EXPIRED: GracePeriodExpiredData,
    EventType.SUBSCRIPTION_RESYNC: ProviderSubscription,
}


class SubscriptionEvent(BaseModel):
    """Typed event handed to the state machine."""

    provider_event_id: str
    type: EventType
    sequence: int
    created_millis: int
    source: EventSource = EventSource.PROVIDER
    data: SubscriptionEventData

    @property
    def customer_id(self) -> str:
        return self.data.customer_id

    @property
    def provider_subscription_id(self) -> str:
        return self.data.provider_subscription_id


class InboundEvent(BaseModel):
    """Append-only inbound event log row; doubles as the idempotency ledger."""

    provider_event_id: str = Field(..., description="Provider event ID (unique)")
    type: str = Field(..., description="Event type as received")
    payload: dict[str, Any] = Field(..., description="Full envelope as received")
    sequence: int = Field(..., description="Ordering key used for staleness checks")
    source: EventSource = Field(default=EventSource.PROVIDER)
    received_at_millis: int = Field(..., description="Receipt time (Unix millis)")
    processed_at_millis: Optional[int] = Field(None, description="Time a terminal outcome was set")
    outcome: EventOutcome = Field(default=EventOutcome.PENDING)
    attempts: int = Field(default=0, description="Processing attempts that hit a transient failure")
    last_error: Optional[str] = Field(None, description="Most recent failure message")


class AuditEntry(BaseModel):
    """One decision recorded against an inbound event."""

    provider_event_id: str
    outcome: EventOutcome
    detail: Optional[str] = None
    recorded_at_millis: int

    model_config = {"frozen": True}


class DeadLetterRecord(BaseModel):
    """Event that exhausted retries or failed permanently."""

    provider_event_id: str
    event_type: str
    reason: str = Field(..., description="Failure category (e.g. invalid_transition, retries_exhausted)")
    error: Optional[str] = None
    attempts: int = 0
    dead_lettered_at_millis: int

    model_config = {"frozen": True}
