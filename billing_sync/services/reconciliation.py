"""Reconciliation - heals local subscriptions that drifted from the provider.

Corrections are never written directly: a synthetic subscription.resync
event is recorded and processed through the event processor, under the
same customer lock and with the same audit trail as provider events.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from billing_sync.errors import TransientError
from billing_sync.logging_config import get_logger
from billing_sync.models import EventType, ProviderSubscription, SubscriptionRecord
from billing_sync.models.plan import ReconciliationSettings
from billing_sync.repositories.billing_repository import BillingRepository
from billing_sync.services.checkout_issuer import CheckoutIssuer
from billing_sync.services.clock import Clock
from billing_sync.services.event_processor import EventProcessor
from billing_sync.services.provider_client import PaymentProviderClient
from billing_sync.state_logger import log_reconciliation_correction
from billing_sync.utils.billing_period import parse_billing_period
from billing_sync.utils.keyed_lock import customer_key

logger = get_logger(__name__)

_COMPARED_FIELDS = (
    "status",
    "plan_id",
    "cancel_at_period_end",
    "current_period_start_millis",
    "current_period_end_millis",
)


def diff_subscription(local: Optional[SubscriptionRecord], remote: ProviderSubscription) -> dict:
    """Fields where the local record disagrees with the provider.

    Period fields are only compared when the provider reports them.

    Returns:
        Mapping of field name to (local value, provider value); a missing
        local record is reported under ``subscription``
    """
    if local is None:
        return {"subscription": (None, remote.provider_subscription_id)}

    differences = {}
    for name in _COMPARED_FIELDS:
        remote_value = getattr(remote, name)
        if remote_value is None:
            continue
        local_value = getattr(local, name)
        if local_value != remote_value:
            differences[name] = (getattr(local_value, "value", local_value), getattr(remote_value, "value", remote_value))
    return differences


@dataclass
class ReconciliationResult:
    """Outcome of reconciling one subscription."""

    provider_subscription_id: str
    customer_id: str
    corrected: bool = False
    differences: dict = field(default_factory=dict)
    resync_event_id: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class ReconciliationRun:
    """Counters for one pass of ``run_once``."""

    checked: int = 0
    corrected: int = 0
    errors: int = 0
    grace_periods_expired: int = 0
    intents_expired: int = 0
    claims_released: int = 0
    claims_purged: int = 0


class ReconciliationWorker:
    """Periodic and on-demand cross-check against the provider.

    Args:
        repository: Stores (subscriptions, claims)
        processor: Event processor that applies resync and grace-period events
        provider: Payment provider client
        clock: Time source
        settings: Interval and enable flag
        checkout_issuer: Used to expire stale checkout intents on each pass
        claim_timeout_seconds: In-flight claims older than this are released
        idempotency_retention: ISO 8601 duration completed claims are kept
        on_pending: Called with (provider_event_id, delay_seconds) for events
            left pending: internal events that hit a transient error and events
            whose stale claims were released. Usually the worker pool's
            ``submit_after``.
    """

    def __init__(
        self,
        repository: BillingRepository,
        processor: EventProcessor,
        provider: PaymentProviderClient,
        clock: Clock,
        settings: Optional[ReconciliationSettings] = None,
        checkout_issuer: Optional[CheckoutIssuer] = None,
        claim_timeout_seconds: float = 300,
        idempotency_retention: str = "P30D",
        on_pending: Optional[Callable[[str, float], Any]] = None,
    ):
        self.repository = repository
        self.processor = processor
        self.provider = provider
        self.clock = clock
        self.settings = settings or ReconciliationSettings()
        self.checkout_issuer = checkout_issuer
        self.claim_timeout_millis = int(claim_timeout_seconds * 1000)
        self.retention_millis = parse_billing_period(idempotency_retention)
        self.on_pending = on_pending

        self._requests: dict[str, str] = {}
        self._requests_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def request(self, customer_id: str, provider_subscription_id: str) -> None:
        """Queue a subscription for reconciliation on the next pass."""
        with self._requests_lock:
            self._requests[provider_subscription_id] = customer_id
        logger.info(
            "reconciliation_requested",
            customer_id=customer_id,
            provider_subscription_id=provider_subscription_id,
        )
        self._wake.set()

    def pending_requests(self) -> dict[str, str]:
        with self._requests_lock:
            return dict(self._requests)

    def _drain_requests(self) -> dict[str, str]:
        with self._requests_lock:
            requests, self._requests = self._requests, {}
            return requests

    def _requeue(self, provider_event_id: str, delay: float) -> None:
        if self.on_pending is None:
            logger.warning("pending_event_not_requeued", provider_event_id=provider_event_id)
            return
        self.on_pending(provider_event_id, delay)
        logger.info("pending_event_requeued", provider_event_id=provider_event_id, delay_seconds=round(delay, 3))

    def reconcile_subscription(self, provider_subscription_id: str, customer_id: str) -> ReconciliationResult:
        """Compare one subscription with the provider and correct it if needed.

        Raises:
            ProviderUnavailableError: Provider could not be reached
            LockTimeoutError: Customer lock not acquired in time
        """
        result = ReconciliationResult(provider_subscription_id, customer_id)
        remote = self.provider.get_subscription(provider_subscription_id)
        if remote is None:
            logger.warning(
                "reconciliation_provider_subscription_missing",
                provider_subscription_id=provider_subscription_id,
                customer_id=customer_id,
            )
            result.detail = "missing_at_provider"
            return result
        if remote.customer_id != customer_id:
            logger.error(
                "reconciliation_customer_mismatch",
                provider_subscription_id=provider_subscription_id,
                customer_id=customer_id,
                provider_customer_id=remote.customer_id,
            )
            result.detail = "customer_mismatch"
            return result

        with self.processor.locks.hold(
            customer_key(customer_id), timeout=self.processor.settings.lock_timeout_seconds
        ):
            local = self.repository.subscriptions.find_by_provider_id(provider_subscription_id)
            result.differences = diff_subscription(local, remote)
            if not result.differences:
                logger.debug("reconciliation_in_sync", provider_subscription_id=provider_subscription_id)
                return result
            if local is not None and local.is_canceled:
                logger.warning(
                    "reconciliation_canceled_divergence",
                    provider_subscription_id=provider_subscription_id,
                    customer_id=customer_id,
                    differences=result.differences,
                )
                result.detail = "local_canceled"
                return result

            sequence = max((local.last_applied_sequence if local else 0) + 1, remote.sequence)
            event_id = self.processor.record_internal_event(
                EventType.SUBSCRIPTION_RESYNC, remote.model_dump(mode="json"), sequence
            )
            result.resync_event_id = event_id
            processed = self.processor.process(event_id)

        result.detail = processed.detail
        if processed.retry_delay is not None:
            self._requeue(event_id, processed.retry_delay)
        if processed.applied:
            result.corrected = True
            log_reconciliation_correction(
                provider_subscription_id,
                customer_id,
                before=local.audit_view() if local else None,
                after=processed.subscription.audit_view(),
                provider_event_id=event_id,
                differences=sorted(result.differences),
            )
        else:
            logger.warning(
                "reconciliation_correction_not_applied",
                reconciliation=True,
                provider_subscription_id=provider_subscription_id,
                customer_id=customer_id,
                outcome=processed.outcome.value,
                detail=processed.detail,
            )
        return result

    def reconcile_customer(self, customer_id: str) -> list[ReconciliationResult]:
        """Reconcile every live subscription of a customer, plus queued requests for them.

        Raises:
            ProviderUnavailableError: Provider could not be reached
        """
        targets = {
            s.provider_subscription_id: customer_id
            for s in self.repository.subscriptions.get_by_customer(customer_id)
            if not s.is_canceled
        }
        with self._requests_lock:
            for psid, owner in list(self._requests.items()):
                if owner == customer_id:
                    targets[psid] = owner
                    del self._requests[psid]

        results = [self.reconcile_subscription(psid, owner) for psid, owner in targets.items()]
        logger.info(
            "customer_reconciled",
            customer_id=customer_id,
            checked=len(results),
            corrected=sum(1 for r in results if r.corrected),
        )
        return results

    def _reconcile_all(self, targets: dict[str, str], run: ReconciliationRun, requeue: bool) -> None:
        for psid, customer_id in targets.items():
            try:
                result = self.reconcile_subscription(psid, customer_id)
            except TransientError as e:
                run.errors += 1
                logger.warning(
                    "reconciliation_failed",
                    provider_subscription_id=psid,
                    customer_id=customer_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if requeue:
                    with self._requests_lock:
                        self._requests.setdefault(psid, customer_id)
                continue
            run.checked += 1
            if result.corrected:
                run.corrected += 1

    def run_requests(self) -> ReconciliationRun:
        """Reconcile only the subscriptions queued with ``request``."""
        run = ReconciliationRun()
        self._reconcile_all(self._drain_requests(), run, requeue=False)
        return run

    def expire_grace_periods(self, now_millis: int) -> int:
        """Cancel past_due subscriptions whose grace period has elapsed.

        Returns:
            Number of subscriptions canceled
        """
        expired = 0
        for subscription in self.repository.subscriptions.get_grace_period_expired(now_millis):
            with self.processor.locks.hold(
                customer_key(subscription.customer_id), timeout=self.processor.settings.lock_timeout_seconds
            ):
                current = self.repository.subscriptions.find(subscription.id)
                if current is None or current.grace_period_end_millis != subscription.grace_period_end_millis:
                    continue
                event_id = self.processor.record_internal_event(
                    EventType.GRACE_PERIOD_EXPIRED,
                    {
                        "customer_id": current.customer_id,
                        "provider_subscription_id": current.provider_subscription_id,
                        "grace_period_end_millis": current.grace_period_end_millis,
                    },
                    current.last_applied_sequence + 1,
                )
                processed = self.processor.process(event_id)
                if processed.applied:
                    expired += 1
                elif processed.retry_delay is not None:
                    self._requeue(event_id, processed.retry_delay)
        if expired:
            logger.info("grace_periods_expired", count=expired)
        return expired

    def run_once(self, now_millis: Optional[int] = None) -> ReconciliationRun:
        """One full pass: queued requests, every live subscription, then housekeeping."""
        now = now_millis if now_millis is not None else self.clock.now_millis()
        run = ReconciliationRun()

        targets = {s.provider_subscription_id: s.customer_id for s in self.repository.subscriptions.get_live()}
        targets.update(self._drain_requests())
        self._reconcile_all(targets, run, requeue=True)

        try:
            run.grace_periods_expired = self.expire_grace_periods(now)
        except TransientError as e:
            run.errors += 1
            logger.warning("grace_period_sweep_failed", error=str(e))

        if self.checkout_issuer is not None:
            run.intents_expired = self.checkout_issuer.expire_stale(now)
        released = self.repository.idempotency.release_stale(now - self.claim_timeout_millis)
        for provider_event_id in released:
            self._requeue(provider_event_id, 0.0)
        run.claims_released = len(released)
        run.claims_purged = self.repository.idempotency.purge_expired(now, self.retention_millis)

        logger.info(
            "reconciliation_pass_completed",
            checked=run.checked,
            corrected=run.corrected,
            errors=run.errors,
            grace_periods_expired=run.grace_periods_expired,
            intents_expired=run.intents_expired,
            claims_released=run.claims_released,
            claims_purged=run.claims_purged,
        )
        return run

    def start(self) -> None:
        """Start the background reconciliation loop."""
        if not self.settings.enabled:
            logger.info("reconciliation_disabled")
            return
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reconciliation", daemon=True)
        self._thread.start()
        logger.info("reconciliation_started", interval_seconds=self.settings.interval_seconds)

    def _loop(self) -> None:
        while not self._stop.is_set():
            woken = self._wake.wait(self.settings.interval_seconds)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                if woken:
                    self.run_requests()
                else:
                    self.run_once()
            except Exception as e:
                logger.error(
                    "reconciliation_loop_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background loop."""
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("reconciliation_stopped")
