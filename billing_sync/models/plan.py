"""Plan catalog and service settings models.

Models from the billing.yaml configuration.
"""

from typing import Optional

from pydantic import BaseModel, Field


class PlanDefinition(BaseModel):
    """Plan definition from the catalog configuration."""

    id: str = Field(..., description="Plan ID (e.g., pro.monthly)")
    family: str = Field(..., description="Plan family; one live subscription per customer and family")
    title: str = Field(..., description="Human-readable title")
    price_micros: int = Field(..., description="Price in micros (1,000,000 = $1.00)")
    currency: str = Field(default="USD", description="ISO 4217 currency code")
    billing_period: str = Field(..., description="ISO 8601 duration (e.g., P1M, P1Y)")
    trial_period: Optional[str] = Field(None, description="ISO 8601 trial duration (e.g., P14D)")
    features: list[str] = Field(default_factory=list, description="Features unlocked by the plan")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "pro.monthly",
                "family": "pro",
                "title": "Pro Monthly",
                "price_micros": 9990000,
                "currency": "USD",
                "billing_period": "P1M",
                "trial_period": "P14D",
                "features": ["Unlimited projects"],
            }
        }


class BillingSettings(BaseModel):
    """Subscription lifecycle windows."""

    grace_period: str = Field(
        default="P7D",
        description="How long a past_due subscription keeps access before auto-cancel",
    )
    checkout_intent_ttl: str = Field(
        default="P1D",
        description="How long a checkout intent waits for its completion event",
    )
    idempotency_retention: str = Field(
        default="P30D",
        description="How long completed idempotency claims are retained",
    )


class WebhookSettings(BaseModel):
    """Inbound webhook verification settings."""

    secret: str = Field(default="", description="Shared HMAC secret (WEBHOOK_SECRET overrides)")
    signature_tolerance_seconds: int = Field(
        default=300, ge=0, description="Maximum age of a signed timestamp"
    )


class WorkerSettings(BaseModel):
    """Event processing worker pool settings."""

    pool_size: int = Field(default=4, ge=1, description="Number of worker threads")
    max_attempts: int = Field(default=5, ge=1, description="Attempts before dead-lettering")
    backoff_base_seconds: float = Field(default=0.5, gt=0, description="First retry delay")
    backoff_max_seconds: float = Field(default=30.0, gt=0, description="Retry delay cap")
    lock_timeout_seconds: float = Field(default=5.0, gt=0, description="Per-customer lock wait")
    claim_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Age after which an unfinished claim is released"
    )


class ReconciliationSettings(BaseModel):
    """Reconciliation loop settings."""

    enabled: bool = Field(default=True, description="Run the periodic reconciliation loop")
    interval_seconds: float = Field(default=300.0, gt=0, description="Seconds between sweeps")


class ProviderSettings(BaseModel):
    """Payment provider API settings."""

    base_url: str = Field(default="http://localhost:12111", description="Provider API base URL")
    api_key: str = Field(default="", description="Provider API key (PROVIDER_API_KEY overrides)")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Per-call timeout")


class DeadLetterSettings(BaseModel):
    """Dead-letter channel settings."""

    pubsub_enabled: bool = Field(default=False, description="Publish dead letters to Pub/Sub")
    project_id: str = Field(default="billing-local", description="GCP project ID")
    topic: str = Field(default="billing-dead-letters", description="Pub/Sub topic name")


class BillingConfig(BaseModel):
    """Complete billing.yaml configuration."""

    plans: list[PlanDefinition] = Field(default_factory=list, description="Plan catalog")
    billing: BillingSettings = Field(default_factory=BillingSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    dead_letter: DeadLetterSettings = Field(default_factory=DeadLetterSettings)
