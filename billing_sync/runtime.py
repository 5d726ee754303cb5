"""Component wiring.

Builds every service from configuration with explicit collaborators, so
tests can swap the provider client, clock or repository.
"""

import threading
from typing import Optional

from billing_sync.config import Config, get_config
from billing_sync.logging_config import get_logger
from billing_sync.repositories.billing_repository import BillingRepository
from billing_sync.repositories.plan_repository import PlanRepository
from billing_sync.services.checkout_issuer import CheckoutIssuer
from billing_sync.services.clock import Clock, get_clock
from billing_sync.services.dead_letter import DeadLetterPublisher
from billing_sync.services.event_processor import EventProcessor, EventWorkerPool
from billing_sync.services.provider_client import HttpPaymentProviderClient, PaymentProviderClient
from billing_sync.services.reconciliation import ReconciliationWorker
from billing_sync.services.state_machine import StateMachine
from billing_sync.services.webhook_receiver import WebhookReceiver
from billing_sync.utils.keyed_lock import KeyedLock

logger = get_logger(__name__)


class BillingRuntime:
    """All billing services, wired together.

    Args:
        config: Configuration (defaults to global config)
        provider: Payment provider client (defaults to the HTTP client)
        clock: Time source (defaults to the system clock)
        repository: Repository (defaults to a fresh in-memory one)
        dead_letters: Dead-letter publisher (defaults to one built from config)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        provider: Optional[PaymentProviderClient] = None,
        clock: Optional[Clock] = None,
        repository: Optional[BillingRepository] = None,
        dead_letters: Optional[DeadLetterPublisher] = None,
    ):
        self.config = config or get_config()
        self.clock = clock or get_clock()
        self.repository = repository or BillingRepository()
        self.plans = PlanRepository(config=self.config)

        worker = self.config.worker_settings
        provider_settings = self.config.provider_settings
        webhook = self.config.settings.webhook

        self.provider = provider or HttpPaymentProviderClient(
            base_url=provider_settings.base_url,
            api_key=provider_settings.api_key,
            timeout_seconds=provider_settings.timeout_seconds,
        )
        self.locks = KeyedLock(default_timeout=worker.lock_timeout_seconds)
        self.state_machine = StateMachine(self.plans, grace_period=self.config.grace_period)
        self.dead_letters = dead_letters or DeadLetterPublisher(
            self.repository.events, self.clock, self.config.dead_letter_settings
        )
        self.processor = EventProcessor(
            repository=self.repository,
            state_machine=self.state_machine,
            plans=self.plans,
            clock=self.clock,
            dead_letters=self.dead_letters,
            locks=self.locks,
            settings=worker,
            on_invalid_transition=self._request_reconciliation,
        )
        self.worker_pool = EventWorkerPool(self.processor, self.repository, pool_size=worker.pool_size)
        self.receiver = WebhookReceiver(
            self.repository,
            self.clock,
            secret=webhook.secret,
            tolerance_seconds=webhook.signature_tolerance_seconds,
            on_accepted=self.worker_pool.submit,
        )
        self.checkout = CheckoutIssuer(
            self.repository,
            self.plans,
            self.provider,
            self.clock,
            intent_ttl=self.config.checkout_intent_ttl,
            locks=self.locks,
        )
        self.reconciliation = ReconciliationWorker(
            self.repository,
            self.processor,
            self.provider,
            self.clock,
            settings=self.config.reconciliation_settings,
            checkout_issuer=self.checkout,
            claim_timeout_seconds=worker.claim_timeout_seconds,
            idempotency_retention=self.config.idempotency_retention,
            on_pending=self.worker_pool.submit_after,
        )

    def _request_reconciliation(self, customer_id: str, provider_subscription_id: str) -> None:
        self.reconciliation.request(customer_id, provider_subscription_id)

    def start(self) -> None:
        """Start the worker pool (recovering pending events) and the reconciliation loop."""
        self.worker_pool.start(recover=True)
        self.reconciliation.start()
        logger.info("billing_runtime_started", plans=self.plans.count())

    def stop(self) -> None:
        """Stop background work; unfinished events stay pending."""
        self.reconciliation.stop()
        self.worker_pool.stop()
        self.dead_letters.shutdown()
        logger.info("billing_runtime_stopped")

    def health(self) -> dict:
        stats = self.repository.get_statistics()
        return {
            "status": "healthy",
            "workers": "running" if self.worker_pool.is_running else "stopped",
            "plans": self.plans.count(),
            "pending_events": stats["events"]["pending"],
            "dead_letters": stats["dead_letters"],
            "signature_rejections": self.receiver.rejection_count,
            "dead_letter_pubsub": "enabled" if self.dead_letters.is_enabled() else "disabled",
        }


_runtime_instance: Optional[BillingRuntime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> BillingRuntime:
    """Get global runtime instance (singleton)."""
    global _runtime_instance
    if _runtime_instance is None:
        with _runtime_lock:
            if _runtime_instance is None:
                _runtime_instance = BillingRuntime()
    return _runtime_instance


def reset_runtime() -> None:
    """Stop and drop the global runtime (mainly for testing)."""
    global _runtime_instance
    with _runtime_lock:
        if _runtime_instance is not None:
            _runtime_instance.stop()
        _runtime_instance = None
