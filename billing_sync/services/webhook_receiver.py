"""Webhook receiver - authenticates, validates and records provider events.

Receipt does no business logic: a verified, well-formed event is appended to
the inbound event log as pending and handed to the worker queue.
"""

import json
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError

from billing_sync.errors import BillingError
from billing_sync.logging_config import get_logger, short_id
from billing_sync.models import EventEnvelope, EventOutcome, EventSource, InboundEvent
from billing_sync.repositories.billing_repository import BillingRepository
from billing_sync.services.clock import Clock
from billing_sync.services.state_machine import MalformedEvent
from billing_sync.utils.signature import SignatureVerificationError, verify_signature

logger = get_logger(__name__)

__all__ = ["AuthenticationFailed", "MalformedEvent", "WebhookReceipt", "WebhookReceiver"]


class AuthenticationFailed(BillingError):
    """Raised when a webhook signature does not verify."""

    pass


@dataclass(frozen=True)
class WebhookReceipt:
    """Result of accepting a webhook."""

    provider_event_id: str
    event_type: str
    duplicate: bool = False


class WebhookReceiver:
    """Entry point for provider notifications.

    Args:
        repository: Repository holding the inbound event log
        clock: Time source for receipt timestamps and replay checks
        secret: Shared webhook signing secret
        tolerance_seconds: Maximum age of a signed timestamp
        on_accepted: Called with the event ID of every newly recorded event
    """

    def __init__(
        self,
        repository: BillingRepository,
        clock: Clock,
        secret: str,
        tolerance_seconds: int = 300,
        on_accepted: Optional[Callable[[str], None]] = None,
    ):
        self.repository = repository
        self.clock = clock
        self._secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.on_accepted = on_accepted
        self._rejections = 0
        self._rejections_lock = threading.Lock()

    @property
    def rejection_count(self) -> int:
        """Signature rejections since startup."""
        with self._rejections_lock:
            return self._rejections

    def receive(self, payload: bytes, signature_header: Optional[str]) -> WebhookReceipt:
        """Accept one webhook delivery.

        Args:
            payload: Raw request body
            signature_header: Value of the signature header

        Returns:
            WebhookReceipt, with duplicate=True if the event ID was already logged

        Raises:
            AuthenticationFailed: Signature missing, expired or wrong
            MalformedEvent: Body is not a valid event envelope
        """
        try:
            verify_signature(
                payload,
                signature_header,
                self._secret,
                now_seconds=self.clock.now_seconds(),
                tolerance_seconds=self.tolerance_seconds,
            )
        except SignatureVerificationError as e:
            with self._rejections_lock:
                self._rejections += 1
                rejections = self._rejections
            logger.warning("webhook_signature_rejected", reason=str(e), rejection_count=rejections)
            raise AuthenticationFailed(str(e)) from e

        try:
            envelope = EventEnvelope.model_validate(json.loads(payload))
        except (ValueError, ValidationError) as e:
            logger.warning("webhook_malformed", error=str(e)[:200])
            raise MalformedEvent("Webhook body is not a valid event envelope") from e

        now = self.clock.now_millis()
        row = InboundEvent(
            provider_event_id=envelope.id,
            type=envelope.type,
            payload=envelope.model_dump(),
            sequence=envelope.effective_sequence,
            source=EventSource.PROVIDER,
            received_at_millis=now,
        )

        if not self.repository.events.append(row):
            self.repository.events.add_audit(
                envelope.id, EventOutcome.IGNORED_DUPLICATE, now, detail="redelivered to webhook"
            )
            logger.info(
                "webhook_duplicate",
                provider_event_id=short_id(envelope.id),
                event_type=envelope.type,
            )
            return WebhookReceipt(provider_event_id=envelope.id, event_type=envelope.type, duplicate=True)

        logger.info(
            "webhook_accepted",
            provider_event_id=short_id(envelope.id),
            event_type=envelope.type,
            sequence=row.sequence,
        )
        if self.on_accepted is not None:
            self.on_accepted(envelope.id)
        return WebhookReceipt(provider_event_id=envelope.id, event_type=envelope.type)
