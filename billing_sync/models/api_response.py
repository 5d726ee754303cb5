"""Subscription projection returned to the presentation layer for feature gating."""

from typing import Optional

from pydantic import BaseModel, Field

from .subscription import SubscriptionRecord


class SubscriptionProjection(BaseModel):
    """Response for GET /subscription/{customerId}."""

    id: str = Field(..., description="Local subscription ID")
    customerId: str = Field(..., description="Owning customer")
    planId: str = Field(..., description="Catalog plan ID")
    status: str = Field(..., description="pending, trialing, active, past_due, canceled or unpaid")
    hasAccess: bool = Field(..., description="Whether the status unlocks paid features")
    currentPeriodStart: Optional[int] = Field(None, description="Period start (Unix millis)")
    currentPeriodEnd: Optional[int] = Field(None, description="Period end (Unix millis)")
    cancelAtPeriodEnd: bool = Field(..., description="Cancels when the period ends")
    providerSubscriptionId: str = Field(..., description="Subscription ID at the provider")
    lastAppliedSequence: int = Field(..., description="Sequence of the last applied event")

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "SubscriptionProjection":
        return cls(
            id=record.id,
            customerId=record.customer_id,
            planId=record.plan_id,
            status=record.status.value,
            hasAccess=record.status.grants_access,
            currentPeriodStart=record.current_period_start_millis,
            currentPeriodEnd=record.current_period_end_millis,
            cancelAtPeriodEnd=record.cancel_at_period_end,
            providerSubscriptionId=record.provider_subscription_id,
            lastAppliedSequence=record.last_applied_sequence,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "id": "sub_3f2a9c0b1d4e5f60_1700000000000",
                "customerId": "42",
                "planId": "pro.monthly",
                "status": "active",
                "hasAccess": True,
                "currentPeriodStart": 1700000000000,
                "currentPeriodEnd": 1702592000000,
                "cancelAtPeriodEnd": False,
                "providerSubscriptionId": "psub_123",
                "lastAppliedSequence": 1700000000000,
            }
        }
