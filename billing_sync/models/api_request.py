"""API request and response models for the checkout and webhook endpoints."""

from typing import Optional

from pydantic import BaseModel, Field


class CreateCheckoutRequest(BaseModel):
    """Request to open a provider-hosted checkout."""

    customerId: str = Field(..., min_length=1, description="Authenticated customer ID")
    planId: str = Field(..., min_length=1, description="Catalog plan ID")
    idempotencyKey: str = Field(..., min_length=1, description="Deduplicates repeated submissions")

    class Config:
        json_schema_extra = {
            "example": {
                "customerId": "42",
                "planId": "pro.monthly",
                "idempotencyKey": "click-7f3e",
            }
        }


class CreateCheckoutResponse(BaseModel):
    """Checkout URL and the intent that will correlate its completion."""

    checkoutUrl: str = Field(..., description="Provider-hosted checkout URL")
    intentId: str = Field(..., description="Checkout intent ID")
    expiresAtMillis: int = Field(..., description="Intent expiry (Unix millis)")

    class Config:
        json_schema_extra = {
            "example": {
                "checkoutUrl": "https://pay.example.com/c/cs_123",
                "intentId": "intent_3f2a9c0b1d4e5f60_1700000000000",
                "expiresAtMillis": 1700086400000,
            }
        }


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider."""

    received: bool = Field(default=True, description="Event durably accepted")
    duplicate: bool = Field(default=False, description="Event ID was already on record")


class ReconcileResponse(BaseModel):
    """Result of an on-demand reconciliation."""

    customerId: str
    checked: int = Field(..., description="Subscriptions compared with the provider")
    corrected: int = Field(..., description="Corrective transitions applied")


class ErrorResponse(BaseModel):
    """Error body used in HTTPException details."""

    error: str = Field(..., description="Error code")
    message: Optional[str] = Field(None, description="Human-readable explanation")
