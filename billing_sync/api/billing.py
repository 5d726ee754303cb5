"""Checkout, subscription status and reconciliation endpoints.

Implements:
- POST /checkout
- GET /subscription/{customerId}
- POST /reconcile/{customerId}
"""

from fastapi import APIRouter, Depends, HTTPException, Path

from billing_sync.errors import TransientError
from billing_sync.logging_config import get_logger
from billing_sync.models.api_request import (
    CreateCheckoutRequest,
    CreateCheckoutResponse,
    ReconcileResponse,
)
from billing_sync.models.api_response import SubscriptionProjection
from billing_sync.runtime import BillingRuntime, get_runtime
from billing_sync.services.checkout_issuer import (
    ActiveSubscriptionExistsError,
    CheckoutError,
    IdempotencyKeyConflictError,
    PlanNotFoundError,
)

logger = get_logger(__name__)
router = APIRouter(tags=["Billing"])


@router.post("/checkout", response_model=CreateCheckoutResponse)
def create_checkout(
    request: CreateCheckoutRequest,
    runtime: BillingRuntime = Depends(get_runtime),
) -> CreateCheckoutResponse:
    """Open a provider-hosted checkout for a plan.

    Repeating the call with the same idempotency key returns the same intent.
    """
    logger.info(
        "create_checkout_request",
        customer_id=request.customerId,
        plan_id=request.planId,
    )
    try:
        session = runtime.checkout.create_intent(
            request.customerId, request.planId, request.idempotencyKey
        )
    except PlanNotFoundError:
        raise HTTPException(
            status_code=404,
            detail={"error": "plan_not_found", "message": f"Plan {request.planId} does not exist"},
        )
    except IdempotencyKeyConflictError as e:
        raise HTTPException(status_code=409, detail={"error": "idempotency_key_conflict", "message": str(e)})
    except ActiveSubscriptionExistsError as e:
        raise HTTPException(status_code=409, detail={"error": "active_subscription_exists", "message": str(e)})
    except CheckoutError as e:
        raise HTTPException(status_code=502, detail={"error": "provider_error", "message": str(e)})
    except TransientError as e:
        logger.warning("create_checkout_busy", customer_id=request.customerId, error=str(e))
        raise HTTPException(status_code=503, detail={"error": "customer_busy", "message": str(e)})

    return CreateCheckoutResponse(
        checkoutUrl=session.checkout_url,
        intentId=session.intent_id,
        expiresAtMillis=session.expires_at_millis,
    )


@router.get("/subscription/{customerId}", response_model=SubscriptionProjection)
def get_subscription(
    customerId: str = Path(...),
    runtime: BillingRuntime = Depends(get_runtime),
) -> SubscriptionProjection:
    """Current subscription of a customer, used for feature gating."""
    record = runtime.repository.subscriptions.current_for_customer(customerId)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "subscription_not_found", "message": f"No subscription for customer {customerId}"},
        )
    return SubscriptionProjection.from_record(record)


@router.post("/reconcile/{customerId}", response_model=ReconcileResponse)
def reconcile_customer(
    customerId: str = Path(...),
    runtime: BillingRuntime = Depends(get_runtime),
) -> ReconcileResponse:
    """Compare the customer's subscriptions with the provider now."""
    try:
        results = runtime.reconciliation.reconcile_customer(customerId)
    except TransientError as e:
        logger.warning("reconcile_request_failed", customer_id=customerId, error=str(e))
        raise HTTPException(status_code=503, detail={"error": "provider_unavailable", "message": str(e)})

    return ReconcileResponse(
        customerId=customerId,
        checked=len(results),
        corrected=sum(1 for r in results if r.corrected),
    )
