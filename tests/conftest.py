"""Shared fixtures: a fake payment provider and a fully wired billing harness."""

import json
from typing import Optional

import pytest

from billing_sync.errors import ProviderUnavailableError
from billing_sync.models import PlanDefinition, ProviderSubscription
from billing_sync.models.plan import ReconciliationSettings, WorkerSettings
from billing_sync.repositories.billing_repository import BillingRepository
from billing_sync.repositories.plan_repository import PlanRepository
from billing_sync.services.checkout_issuer import CheckoutIssuer
from billing_sync.services.clock import Clock
from billing_sync.services.dead_letter import DeadLetterPublisher
from billing_sync.services.event_processor import EventProcessor
from billing_sync.services.provider_client import CheckoutSessionResult, PaymentProviderClient
from billing_sync.services.reconciliation import ReconciliationWorker
from billing_sync.services.state_machine import StateMachine
from billing_sync.services.webhook_receiver import WebhookReceiver
from billing_sync.utils.keyed_lock import KeyedLock
from billing_sync.utils.signature import build_signature_header

START_MILLIS = 1_700_000_000_000
TEST_SECRET = "test-webhook-secret"
DAY_MILLIS = 24 * 60 * 60 * 1000

TEST_PLANS = [
    PlanDefinition(id="basic.monthly", family="basic", title="Basic", price_micros=4990000, billing_period="P1M"),
    PlanDefinition(
        id="pro.monthly",
        family="pro",
        title="Pro Monthly",
        price_micros=9990000,
        billing_period="P1M",
        trial_period="P14D",
    ),
    PlanDefinition(id="pro.yearly", family="pro", title="Pro Yearly", price_micros=99990000, billing_period="P1Y"),
    PlanDefinition(id="pro", family="pro", title="Pro", price_micros=9990000, billing_period="P1M"),
]


class FakeProvider(PaymentProviderClient):
    """In-memory stand-in for the payment provider API."""

    def __init__(self):
        self.customers: dict[str, str] = {}
        self.sessions: list[dict] = []
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.unavailable = False
        self.lookups: list[str] = []

    def _check(self) -> None:
        if self.unavailable:
            raise ProviderUnavailableError("provider down")

    def create_customer(self, customer_id: str) -> str:
        self._check()
        provider_customer_id = f"pcus_{customer_id}"
        self.customers[customer_id] = provider_customer_id
        return provider_customer_id

    def create_checkout_session(self, provider_customer_id, plan_id, intent_id, idempotency_key):
        self._check()
        session_id = f"cs_{len(self.sessions) + 1}"
        self.sessions.append(
            {
                "id": session_id,
                "customer": provider_customer_id,
                "plan": plan_id,
                "intent_id": intent_id,
                "idempotency_key": idempotency_key,
            }
        )
        return CheckoutSessionResult(session_id=session_id, url=f"https://pay.example.test/c/{session_id}")

    def get_subscription(self, provider_subscription_id: str) -> Optional[ProviderSubscription]:
        self._check()
        self.lookups.append(provider_subscription_id)
        return self.subscriptions.get(provider_subscription_id)

    def set_subscription(self, **fields) -> ProviderSubscription:
        snapshot = ProviderSubscription(**fields)
        self.subscriptions[snapshot.provider_subscription_id] = snapshot
        return snapshot


class BillingHarness:
    """Every component wired against in-memory stores, a manual clock and a fake provider."""

    def __init__(self, clock: Clock, provider: FakeProvider, max_attempts: int = 3):
        self.clock = clock
        self.provider = provider
        self.repository = BillingRepository()
        self.plans = PlanRepository(plans=TEST_PLANS)
        self.locks = KeyedLock()
        self.settings = WorkerSettings(
            max_attempts=max_attempts,
            backoff_base_seconds=0.01,
            backoff_max_seconds=0.05,
            lock_timeout_seconds=1.0,
        )
        self.dead_letters = DeadLetterPublisher(self.repository.events, clock)
        self.state_machine = StateMachine(self.plans, grace_period="P7D")
        self.processor = EventProcessor(
            repository=self.repository,
            state_machine=self.state_machine,
            plans=self.plans,
            clock=clock,
            dead_letters=self.dead_letters,
            locks=self.locks,
            settings=self.settings,
            on_invalid_transition=self._request_reconciliation,
        )
        self.receiver = WebhookReceiver(self.repository, clock, secret=TEST_SECRET, tolerance_seconds=300)
        self.checkout = CheckoutIssuer(
            self.repository, self.plans, provider, clock, intent_ttl="P1D", locks=self.locks
        )
        self.reconciliation = ReconciliationWorker(
            self.repository,
            self.processor,
            provider,
            clock,
            settings=ReconciliationSettings(enabled=False),
            checkout_issuer=self.checkout,
            claim_timeout_seconds=300,
            idempotency_retention="P30D",
        )

    def _request_reconciliation(self, customer_id: str, provider_subscription_id: str) -> None:
        self.reconciliation.request(customer_id, provider_subscription_id)

    def body(self, event_id: str, event_type: str, data: dict, sequence=None, created=None) -> bytes:
        envelope = {
            "id": event_id,
            "type": event_type,
            "created": created if created is not None else self.clock.now_millis(),
            "data": data,
        }
        if sequence is not None:
            envelope["sequence"] = sequence
        return json.dumps(envelope).encode("utf-8")

    def sign(self, body: bytes) -> str:
        return build_signature_header(body, TEST_SECRET, self.clock.now_seconds())

    def deliver(self, event_id: str, event_type: str, data: dict, sequence=None, created=None):
        """Send a signed webhook to the receiver."""
        body = self.body(event_id, event_type, data, sequence=sequence, created=created)
        return self.receiver.receive(body, self.sign(body))

    def deliver_and_process(self, event_id: str, event_type: str, data: dict, sequence=None, created=None):
        """Send a signed webhook and process it synchronously."""
        self.deliver(event_id, event_type, data, sequence=sequence, created=created)
        return self.processor.process(event_id)

    def subscribe(
        self,
        customer_id: str = "42",
        plan_id: str = "pro",
        provider_subscription_id: str = "psub_1",
        sequence: int = 1,
        event_id: Optional[str] = None,
    ):
        """Run a checkout through to an applied checkout.completed event."""
        session = self.checkout.create_intent(customer_id, plan_id, f"key-{provider_subscription_id}")
        result = self.deliver_and_process(
            event_id or f"evt_checkout_{provider_subscription_id}",
            "checkout.completed",
            {
                "customer_id": customer_id,
                "provider_subscription_id": provider_subscription_id,
                "intent_id": session.intent_id,
                "plan_id": plan_id,
            },
            sequence=sequence,
        )
        return session, result

    def subscription(self, provider_subscription_id: str = "psub_1"):
        return self.repository.subscriptions.find_by_provider_id(provider_subscription_id)


@pytest.fixture
def clock():
    """Manual clock frozen at a fixed start time."""
    return Clock(start_millis=START_MILLIS)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def plans():
    return PlanRepository(plans=TEST_PLANS)


@pytest.fixture
def harness(clock, provider):
    return BillingHarness(clock, provider)
