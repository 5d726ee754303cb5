"""Checkout session issuer.

Creates provider-hosted checkout sessions and the pending intents that
later correlate a checkout.completed event with the customer and plan.
"""

from dataclasses import dataclass
from typing import Optional

from billing_sync.errors import BillingError, ProviderRequestError, ProviderUnavailableError
from billing_sync.logging_config import get_logger
from billing_sync.models import CheckoutIntent, Customer, IntentStatus
from billing_sync.repositories.billing_repository import BillingRepository
from billing_sync.repositories.plan_repository import PlanNotFoundError, PlanRepository
from billing_sync.services.clock import Clock
from billing_sync.services.provider_client import PaymentProviderClient
from billing_sync.state_logger import log_intent_status_change
from billing_sync.utils.billing_period import parse_billing_period
from billing_sync.utils.keyed_lock import KeyedLock, customer_key
from billing_sync.utils.token_generator import generate_intent_id

logger = get_logger(__name__)

__all__ = [
    "ActiveSubscriptionExistsError",
    "CheckoutError",
    "CheckoutIssuer",
    "CheckoutSession",
    "IdempotencyKeyConflictError",
    "PlanNotFoundError",
]


class CheckoutError(BillingError):
    """Raised when a checkout session cannot be created."""

    pass


class IdempotencyKeyConflictError(CheckoutError):
    """Raised when an idempotency key is reused for a different customer or plan."""

    pass


class ActiveSubscriptionExistsError(CheckoutError):
    """Raised when the customer already has a live subscription in the plan family."""

    pass


@dataclass(frozen=True)
class CheckoutSession:
    """Where to send the customer, and the intent that tracks the checkout."""

    checkout_url: str
    intent_id: str
    expires_at_millis: int

    @classmethod
    def from_intent(cls, intent: CheckoutIntent) -> "CheckoutSession":
        return cls(
            checkout_url=intent.checkout_url,
            intent_id=intent.intent_id,
            expires_at_millis=intent.expires_at_millis,
        )


class CheckoutIssuer:
    """Opens checkout sessions at the provider.

    Args:
        repository: Stores for customers, intents and subscriptions
        plans: Plan catalog
        provider: Payment provider client
        clock: Time source
        intent_ttl: ISO 8601 duration after which a pending intent expires
        locks: Serialization locks, shared with event processing. The
            idempotency key is always taken before the customer key.
    """

    def __init__(
        self,
        repository: BillingRepository,
        plans: PlanRepository,
        provider: PaymentProviderClient,
        clock: Clock,
        intent_ttl: str = "P1D",
        locks: Optional[KeyedLock] = None,
    ):
        self.repository = repository
        self.plans = plans
        self.provider = provider
        self.clock = clock
        self.intent_ttl = intent_ttl
        self.intent_ttl_millis = parse_billing_period(intent_ttl)
        self.locks = locks or KeyedLock()

    def create_intent(self, customer_id: str, plan_id: str, idempotency_key: str) -> CheckoutSession:
        """Create (or return the existing) checkout intent for an idempotency key.

        Args:
            customer_id: Authenticated customer
            plan_id: Plan being purchased
            idempotency_key: Caller-supplied key, e.g. tied to one button click

        Returns:
            CheckoutSession

        Raises:
            IdempotencyKeyConflictError: Key already used for another customer or plan
            PlanNotFoundError: Unknown plan
            ActiveSubscriptionExistsError: Customer already subscribed in the family
            CheckoutError: Provider call failed; nothing was stored
            LockTimeoutError: Customer is busy with another checkout or event
        """
        with self.locks.hold(f"idempotency:{idempotency_key}"):
            existing = self.repository.intents.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                if existing.customer_id != customer_id or existing.plan_id != plan_id:
                    raise IdempotencyKeyConflictError(
                        f"Idempotency key {idempotency_key} was used for a different checkout"
                    )
                logger.info(
                    "checkout_intent_reused",
                    intent_id=existing.intent_id,
                    customer_id=customer_id,
                    status=existing.status.value,
                )
                return CheckoutSession.from_intent(existing)

            plan = self.plans.get_by_id(plan_id)
            with self.locks.hold(customer_key(customer_id)):
                live = self.repository.subscriptions.find_live_for_family(customer_id, plan.family)
                if live is not None:
                    raise ActiveSubscriptionExistsError(
                        f"Customer {customer_id} already has subscription {live.id} in family {plan.family}"
                    )

                now = self.clock.now_millis()
                customer = self.repository.customers.find(customer_id)
                intent_id = generate_intent_id(now)
                try:
                    if customer is None:
                        provider_customer_id = self.provider.create_customer(customer_id)
                    else:
                        provider_customer_id = customer.provider_customer_id
                    session = self.provider.create_checkout_session(
                        provider_customer_id, plan.id, intent_id, idempotency_key
                    )
                except (ProviderUnavailableError, ProviderRequestError) as e:
                    logger.error(
                        "checkout_provider_failed",
                        customer_id=customer_id,
                        plan_id=plan_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise CheckoutError(f"Payment provider could not open checkout: {e}") from e

                intent = CheckoutIntent(
                    intent_id=intent_id,
                    customer_id=customer_id,
                    plan_id=plan.id,
                    idempotency_key=idempotency_key,
                    checkout_url=session.url,
                    provider_session_id=session.session_id,
                    status=IntentStatus.PENDING,
                    created_at_millis=now,
                    expires_at_millis=now + self.intent_ttl_millis,
                )
                with self.repository.transaction():
                    if customer is None:
                        self.repository.customers.ensure(
                            Customer(
                                customer_id=customer_id,
                                provider_customer_id=provider_customer_id,
                                created_at_millis=now,
                            )
                        )
                    self.repository.intents.add(intent)

        logger.info(
            "checkout_intent_created",
            intent_id=intent_id,
            customer_id=customer_id,
            plan_id=plan.id,
            expires_at_millis=intent.expires_at_millis,
        )
        return CheckoutSession.from_intent(intent)

    def expire_stale(self, now_millis: Optional[int] = None) -> int:
        """Expire pending intents whose window has elapsed.

        Returns:
            Number of intents expired
        """
        now = now_millis if now_millis is not None else self.clock.now_millis()
        expired = 0
        with self.repository.transaction():
            for intent in self.repository.intents.get_pending_past_deadline(now):
                intent.status = IntentStatus.EXPIRED
                self.repository.intents.update(intent)
                log_intent_status_change(
                    intent.intent_id, intent.customer_id, IntentStatus.PENDING, IntentStatus.EXPIRED, reason="ttl"
                )
                expired += 1
        return expired
