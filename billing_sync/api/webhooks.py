"""Payment provider webhook endpoint.

Implements:
- POST /webhooks/payment
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from billing_sync.logging_config import get_logger
from billing_sync.models.api_request import WebhookAck
from billing_sync.runtime import BillingRuntime, get_runtime
from billing_sync.services.webhook_receiver import AuthenticationFailed, MalformedEvent

logger = get_logger(__name__)
router = APIRouter(tags=["Webhooks"])


@router.post("/webhooks/payment", response_model=WebhookAck)
async def receive_payment_webhook(
    request: Request,
    payment_signature: Optional[str] = Header(None, alias="Payment-Signature"),
    runtime: BillingRuntime = Depends(get_runtime),
) -> WebhookAck:
    """Accept a provider notification.

    Returns 200 once the event is durably recorded (duplicates included) and
    400 on a bad signature or body, so the provider retries only on failure.
    The receiver takes repository locks, so it runs in the threadpool.
    """
    payload = await request.body()
    try:
        receipt = await run_in_threadpool(runtime.receiver.receive, payload, payment_signature)
    except AuthenticationFailed:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_signature", "message": "Webhook signature verification failed"},
        )
    except MalformedEvent as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "malformed_event", "message": str(e)},
        )

    return WebhookAck(received=True, duplicate=receipt.duplicate)
