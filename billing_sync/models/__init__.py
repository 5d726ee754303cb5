"""Pydantic models for API requests, responses, and domain objects."""

# Catalog and settings models
from .plan import (
    PlanDefinition,
    BillingSettings,
    WebhookSettings,
    WorkerSettings,
    ReconciliationSettings,
    ProviderSettings,
    DeadLetterSettings,
    BillingConfig,
)

# Subscription models
from .subscription import (
    SubscriptionStatus,
    IntentStatus,
    Customer,
    SubscriptionRecord,
    CheckoutIntent,
)

# Event models
from .events import (
    EVENT_DATA_MODELS,
    INTERNAL_EVENT_TYPES,
    EventType,
    EventSource,
    EventOutcome,
    EventEnvelope,
    SubscriptionEventData,
    CheckoutCompletedData,
    InvoiceEventData,
    SubscriptionUpdatedData,
    SubscriptionDeletedData,
    GracePeriodExpiredData,
    ProviderSubscription,
    SubscriptionEvent,
    InboundEvent,
    AuditEntry,
    DeadLetterRecord,
)

# API models
from .api_request import (
    CreateCheckoutRequest,
    CreateCheckoutResponse,
    WebhookAck,
    ReconcileResponse,
    ErrorResponse,
)
from .api_response import SubscriptionProjection

__all__ = [
    # Catalog and settings
    "PlanDefinition",
    "BillingSettings",
    "WebhookSettings",
    "WorkerSettings",
    "ReconciliationSettings",
    "ProviderSettings",
    "DeadLetterSettings",
    "BillingConfig",
    # Subscription
    "SubscriptionStatus",
    "IntentStatus",
    "Customer",
    "SubscriptionRecord",
    "CheckoutIntent",
    # Events
    "EVENT_DATA_MODELS",
    "INTERNAL_EVENT_TYPES",
    "EventType",
    "EventSource",
    "EventOutcome",
    "EventEnvelope",
    "SubscriptionEventData",
    "CheckoutCompletedData",
    "InvoiceEventData",
    "SubscriptionUpdatedData",
    "SubscriptionDeletedData",
    "GracePeriodExpiredData",
    "ProviderSubscription",
    "SubscriptionEvent",
    "InboundEvent",
    "AuditEntry",
    "DeadLetterRecord",
    # API
    "CreateCheckoutRequest",
    "CreateCheckoutResponse",
    "WebhookAck",
    "ReconcileResponse",
    "ErrorResponse",
    "SubscriptionProjection",
]
