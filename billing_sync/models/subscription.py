"""Subscription, checkout intent and customer models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Subscription status as exposed to feature gating."""

    PENDING = "pending"  # Provider has not confirmed the first payment
    TRIALING = "trialing"  # In free trial
    ACTIVE = "active"  # Paid and current
    PAST_DUE = "past_due"  # Payment failed, inside grace period
    CANCELED = "canceled"  # Terminal
    UNPAID = "unpaid"  # Provider stopped retrying, access revoked

    @property
    def grants_access(self) -> bool:
        return self in (
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
        )


class IntentStatus(str, Enum):
    """Checkout intent lifecycle."""

    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Customer(BaseModel):
    """Paying principal, one-to-one with a provider customer record."""

    customer_id: str = Field(..., description="Stable local customer identifier")
    provider_customer_id: str = Field(..., description="Customer ID at the payment provider")
    created_at_millis: int = Field(..., description="Creation time (Unix millis)")

    model_config = {"frozen": True}


class SubscriptionRecord(BaseModel):
    """Local subscription record, owned by the state machine."""

    id: str = Field(..., description="Local subscription ID")
    customer_id: str = Field(..., description="Owning customer")
    plan_id: str = Field(..., description="Catalog plan ID")
    plan_family: str = Field(..., description="Catalog plan family")
    status: SubscriptionStatus = Field(..., description="Current status")
    provider_subscription_id: str = Field(..., description="Subscription ID at the provider")

    current_period_start_millis: Optional[int] = Field(None, description="Billing period start")
    current_period_end_millis: Optional[int] = Field(None, description="Billing period end")
    cancel_at_period_end: bool = Field(default=False, description="Cancels when the period ends")

    last_applied_sequence: int = Field(default=0, description="Sequence of the last applied event")

    payment_failure_count: int = Field(default=0, description="Consecutive failed payments")
    grace_period_end_millis: Optional[int] = Field(None, description="Auto-cancel deadline when past_due")
    canceled_at_millis: Optional[int] = Field(None, description="When the subscription was canceled")

    created_at_millis: int = Field(..., description="Creation time (Unix millis)")
    updated_at_millis: int = Field(..., description="Last mutation time (Unix millis)")

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    def audit_view(self) -> dict:
        """Compact projection used in before/after audit logs."""
        return {
            "status": self.status.value,
            "plan_id": self.plan_id,
            "cancel_at_period_end": self.cancel_at_period_end,
            "current_period_end_millis": self.current_period_end_millis,
            "last_applied_sequence": self.last_applied_sequence,
        }

    class Config:
        json_schema_extra = {
            "example": {
                "id": "sub_3f2a9c0b1d4e5f60_1700000000000",
                "customer_id": "42",
                "plan_id": "pro.monthly",
                "plan_family": "pro",
                "status": "active",
                "provider_subscription_id": "psub_123",
                "current_period_start_millis": 1700000000000,
                "current_period_end_millis": 1702592000000,
                "cancel_at_period_end": False,
                "last_applied_sequence": 1700000000000,
                "payment_failure_count": 0,
                "created_at_millis": 1700000000000,
                "updated_at_millis": 1700000000000,
            }
        }


class CheckoutIntent(BaseModel):
    """Provisional record created before redirecting to provider-hosted checkout."""

    intent_id: str = Field(..., description="Public intent identifier sent to the provider")
    customer_id: str = Field(..., description="Purchasing customer")
    plan_id: str = Field(..., description="Plan being purchased")
    idempotency_key: str = Field(..., description="Caller-supplied deduplication key")
    checkout_url: str = Field(..., description="Provider-hosted checkout URL")
    provider_session_id: Optional[str] = Field(None, description="Checkout session ID at the provider")
    status: IntentStatus = Field(default=IntentStatus.PENDING, description="Intent status")
    created_at_millis: int = Field(..., description="Creation time (Unix millis)")
    expires_at_millis: int = Field(..., description="Expiry deadline (Unix millis)")
    completed_at_millis: Optional[int] = Field(None, description="Completion time")
    subscription_id: Optional[str] = Field(None, description="Subscription created on completion")

    def is_expired(self, now_millis: int) -> bool:
        """True once the intent expired or its window elapsed without completion."""
        if self.status == IntentStatus.EXPIRED:
            return True
        return self.status == IntentStatus.PENDING and now_millis >= self.expires_at_millis
