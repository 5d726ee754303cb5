"""Event processing - applies inbound events to subscriptions.

Responsibilities:
- Claim each event exactly once through the idempotency store
- Serialize all work on a customer's subscriptions
- Run the state machine and persist its result atomically
- Retry transient failures with backoff, dead-letter everything else
"""

import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from billing_sync.errors import TransientError
from billing_sync.logging_config import event_context, get_logger, short_id
from billing_sync.models import (
    EventEnvelope,
    EventOutcome,
    EventSource,
    EventType,
    InboundEvent,
    IntentStatus,
    SubscriptionEvent,
    SubscriptionRecord,
    SubscriptionStatus,
)
from billing_sync.models.plan import WorkerSettings
from billing_sync.repositories.billing_repository import BillingRepository
from billing_sync.repositories.idempotency_store import ClaimResult
from billing_sync.repositories.plan_repository import PlanRepository
from billing_sync.repositories.subscription_store import (
    DuplicateActiveSubscriptionError,
    SequenceRegressionError,
)
from billing_sync.services.clock import Clock
from billing_sync.services.dead_letter import DeadLetterPublisher
from billing_sync.services.state_machine import (
    InvalidTransition,
    SideEffect,
    SideEffectKind,
    StateMachine,
    Transition,
    TransitionRejected,
    parse_inbound_event,
)
from billing_sync.state_logger import (
    log_event_outcome,
    log_intent_status_change,
    log_subscription_state_change,
)
from billing_sync.utils.backoff import backoff_delay
from billing_sync.utils.keyed_lock import KeyedLock, customer_key
from billing_sync.utils.token_generator import generate_internal_event_id

logger = get_logger(__name__)


@dataclass
class ProcessingResult:
    """What happened to one processing attempt.

    ``outcome`` stays PENDING when the event will be retried after
    ``retry_delay`` seconds.
    """

    provider_event_id: str
    outcome: EventOutcome
    detail: Optional[str] = None
    retry_delay: Optional[float] = None
    subscription: Optional[SubscriptionRecord] = None
    previous_status: Optional[SubscriptionStatus] = None

    @property
    def applied(self) -> bool:
        return self.outcome == EventOutcome.APPLIED


class EventProcessor:
    """Processes one inbound event at a time.

    Args:
        repository: Stores for subscriptions, intents, events and claims
        state_machine: Transition logic
        plans: Plan catalog, used to find a customer's subscription in a family
        clock: Time source
        dead_letters: Dead-letter channel for failed events
        locks: Per-customer serialization locks (shared with reconciliation)
        settings: Retry and lock timeout settings
        on_invalid_transition: Called with (customer_id, provider_subscription_id)
            when an event is rejected as an invalid transition
    """

    def __init__(
        self,
        repository: BillingRepository,
        state_machine: StateMachine,
        plans: PlanRepository,
        clock: Clock,
        dead_letters: DeadLetterPublisher,
        locks: Optional[KeyedLock] = None,
        settings: Optional[WorkerSettings] = None,
        on_invalid_transition: Optional[Callable[[str, str], None]] = None,
    ):
        self.repository = repository
        self.state_machine = state_machine
        self.plans = plans
        self.clock = clock
        self.dead_letters = dead_letters
        self.locks = locks or KeyedLock()
        self.settings = settings or WorkerSettings()
        self.on_invalid_transition = on_invalid_transition

    def record_internal_event(
        self,
        event_type: EventType,
        data: dict[str, Any],
        sequence: int,
    ) -> str:
        """Append a synthetic event to the inbound log.

        Internal events go through ``process`` like provider events, so they
        share the same claim, lock and audit path.

        Returns:
            The generated event ID
        """
        now = self.clock.now_millis()
        event_id = generate_internal_event_id(event_type.value.replace(".", "_"), now)
        envelope = EventEnvelope(id=event_id, type=event_type.value, created=now, data=data, sequence=sequence)
        self.repository.events.append(
            InboundEvent(
                provider_event_id=event_id,
                type=event_type.value,
                payload=envelope.model_dump(),
                sequence=sequence,
                source=EventSource.INTERNAL,
                received_at_millis=now,
            )
        )
        logger.info("internal_event_recorded", provider_event_id=event_id, event_type=event_type.value, sequence=sequence)
        return event_id

    def process(self, provider_event_id: str, attempt: int = 1) -> ProcessingResult:
        """Process one inbound event.

        Args:
            provider_event_id: Event to process
            attempt: Delivery attempt number, for logging

        Returns:
            ProcessingResult

        Raises:
            EventNotFoundError: If the event is not in the inbound log
        """
        now = self.clock.now_millis()
        row = self.repository.events.get(provider_event_id)

        claim = self.repository.idempotency.try_claim(provider_event_id, now)
        if claim != ClaimResult.CLAIMED:
            self.repository.events.add_audit(
                provider_event_id, EventOutcome.IGNORED_DUPLICATE, now, detail=claim.value
            )
            log_event_outcome(provider_event_id, row.type, EventOutcome.IGNORED_DUPLICATE, detail=claim.value)
            return ProcessingResult(provider_event_id, EventOutcome.IGNORED_DUPLICATE, detail=claim.value)

        event: Optional[SubscriptionEvent] = None
        try:
            event = parse_inbound_event(row)
            with self.locks.hold(customer_key(event.customer_id), timeout=self.settings.lock_timeout_seconds):
                return self._apply(row, event)
        except TransitionRejected as e:
            return self._reject(row, event, e)
        except TransientError as e:
            return self._retry(row, e, attempt)
        except Exception as e:
            logger.error(
                "event_processing_error",
                provider_event_id=provider_event_id,
                event_type=row.type,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return self._fail(row, "unexpected_error", f"{type(e).__name__}: {e}")

    def _load_current(self, event: SubscriptionEvent) -> Optional[SubscriptionRecord]:
        subscription = self.repository.subscriptions.find_by_provider_id(event.provider_subscription_id)
        if subscription is None and event.type in (EventType.CHECKOUT_COMPLETED, EventType.SUBSCRIPTION_RESYNC):
            plan = self.plans.find_by_id(event.data.plan_id)
            if plan is not None:
                subscription = self.repository.subscriptions.find_live_for_family(event.customer_id, plan.family)
        return subscription

    def _load_intent(self, event: SubscriptionEvent):
        intent_id = getattr(event.data, "intent_id", None)
        if not intent_id:
            return None
        return self.repository.intents.find_by_intent_id(intent_id)

    def _apply(self, row: InboundEvent, event: SubscriptionEvent) -> ProcessingResult:
        now = self.clock.now_millis()
        current = self._load_current(event)
        transition = self.state_machine.apply(current, event, now, intent=self._load_intent(event))

        try:
            with self.repository.transaction():
                saved = self.repository.subscriptions.save(transition.subscription)
                for effect in transition.side_effects:
                    self._execute(effect, now)
                self.repository.idempotency.mark_outcome(
                    row.provider_event_id, EventOutcome.APPLIED, now, detail=event.type.value
                )
        except (DuplicateActiveSubscriptionError, SequenceRegressionError) as e:
            raise InvalidTransition(str(e)) from e

        self._log_applied(row, event, transition, saved)
        return ProcessingResult(
            row.provider_event_id,
            EventOutcome.APPLIED,
            detail=event.type.value,
            subscription=saved,
            previous_status=transition.previous_status,
        )

    def _execute(self, effect: SideEffect, now_millis: int) -> None:
        if effect.kind == SideEffectKind.COMPLETE_INTENT:
            intent = self.repository.intents.find_by_intent_id(effect.intent_id)
            if intent is None:
                raise InvalidTransition(f"Checkout intent {effect.intent_id} disappeared")
            old_status = intent.status
            intent.status = IntentStatus.COMPLETED
            intent.completed_at_millis = now_millis
            intent.subscription_id = effect.subscription_id
            self.repository.intents.update(intent)
            log_intent_status_change(
                intent.intent_id, intent.customer_id, old_status, intent.status, reason="checkout_completed"
            )

    def _log_applied(
        self,
        row: InboundEvent,
        event: SubscriptionEvent,
        transition: Transition,
        saved: SubscriptionRecord,
    ) -> None:
        if transition.previous_status != saved.status:
            log_subscription_state_change(
                saved.id,
                saved.customer_id,
                transition.previous_status,
                saved.status,
                reason=event.type.value,
                provider_event_id=row.provider_event_id,
                sequence=event.sequence,
            )
        log_event_outcome(
            row.provider_event_id,
            row.type,
            EventOutcome.APPLIED,
            subscription_id=saved.id,
            sequence=event.sequence,
        )

    def _reject(
        self,
        row: InboundEvent,
        event: Optional[SubscriptionEvent],
        error: TransitionRejected,
    ) -> ProcessingResult:
        if error.outcome != EventOutcome.FAILED:
            now = self.clock.now_millis()
            self.repository.idempotency.mark_outcome(row.provider_event_id, error.outcome, now, detail=error.message)
            log_event_outcome(row.provider_event_id, row.type, error.outcome, detail=error.message)
            return ProcessingResult(row.provider_event_id, error.outcome, detail=error.message)

        result = self._fail(row, error.reason, error.message)
        if (
            isinstance(error, InvalidTransition)
            and event is not None
            and event.type != EventType.SUBSCRIPTION_RESYNC
            and self.on_invalid_transition is not None
        ):
            self.on_invalid_transition(event.customer_id, event.provider_subscription_id)
        return result

    def _fail(self, row: InboundEvent, reason: str, error: str, attempts: Optional[int] = None) -> ProcessingResult:
        now = self.clock.now_millis()
        self.repository.idempotency.mark_outcome(
            row.provider_event_id, EventOutcome.FAILED, now, detail=reason, error=error
        )
        log_event_outcome(row.provider_event_id, row.type, EventOutcome.FAILED, detail=reason, error=error)
        self.dead_letters.dead_letter(
            row.provider_event_id,
            row.type,
            reason,
            error=error,
            attempts=attempts if attempts is not None else row.attempts,
        )
        return ProcessingResult(row.provider_event_id, EventOutcome.FAILED, detail=reason)

    def _retry(self, row: InboundEvent, error: Exception, attempt: int) -> ProcessingResult:
        self.repository.idempotency.release(row.provider_event_id)
        attempts = self.repository.events.record_failure(row.provider_event_id, str(error))

        if attempts >= self.settings.max_attempts:
            logger.error(
                "event_retries_exhausted",
                provider_event_id=row.provider_event_id,
                event_type=row.type,
                attempts=attempts,
                error=str(error),
            )
            return self._fail(row, "retries_exhausted", str(error), attempts=attempts)

        delay = backoff_delay(
            attempts,
            base_delay=self.settings.backoff_base_seconds,
            max_delay=self.settings.backoff_max_seconds,
        )
        logger.warning(
            "event_processing_retry_scheduled",
            provider_event_id=short_id(row.provider_event_id),
            event_type=row.type,
            attempt=attempt,
            attempts=attempts,
            retry_in_seconds=round(delay, 3),
            error=str(error),
            error_type=type(error).__name__,
        )
        return ProcessingResult(row.provider_event_id, EventOutcome.PENDING, detail=str(error), retry_delay=delay)


class EventWorkerPool:
    """Bounded pool of worker threads draining the event queue.

    Retries are scheduled with timers and re-enter the same queue. Stopping
    the pool abandons queued and scheduled work; those events stay pending
    in the inbound log, unclaimed, and ``recover_pending`` picks them up on
    the next start.
    """

    def __init__(self, processor: EventProcessor, repository: BillingRepository, pool_size: int = 4):
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        self.processor = processor
        self.repository = repository
        self.pool_size = pool_size
        self._queue: "queue.Queue[Optional[tuple[str, int]]]" = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._timers: dict[str, threading.Timer] = {}
        self._cond = threading.Condition()
        self._outstanding = 0
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, recover: bool = True) -> None:
        """Start the worker threads.

        Args:
            recover: Re-enqueue every pending event from the inbound log
        """
        with self._cond:
            if self._running:
                return
            self._running = True
            self._queue = queue.Queue()
            self._threads = [
                threading.Thread(target=self._run, name=f"event-worker-{i}", daemon=True)
                for i in range(self.pool_size)
            ]
        for thread in self._threads:
            thread.start()
        logger.info("event_worker_pool_started", pool_size=self.pool_size)
        if recover:
            self.recover_pending()

    def submit(self, provider_event_id: str, attempt: int = 1) -> bool:
        """Queue an event for processing.

        Returns:
            False if the pool is not running (the event stays pending)
        """
        with self._cond:
            if not self._running:
                logger.debug("event_worker_pool_not_running", provider_event_id=provider_event_id)
                return False
            self._outstanding += 1
        self._queue.put((provider_event_id, attempt))
        return True

    def submit_after(self, provider_event_id: str, delay: float, attempt: int = 1) -> bool:
        """Queue an event once ``delay`` seconds have passed.

        Used for events processed outside the pool (reconciliation's
        internal events) or freed from a stuck worker's claim.

        Returns:
            False if the pool is not running (the event stays pending)
        """
        if delay <= 0:
            return self.submit(provider_event_id, attempt)
        return self._schedule_retry(provider_event_id, attempt, delay)

    def recover_pending(self) -> int:
        """Queue every event still pending in the inbound log.

        Returns:
            Number of events queued
        """
        count = 0
        for row in self.repository.events.get_pending():
            if self.repository.idempotency.is_claimed(row.provider_event_id):
                continue
            if self.submit(row.provider_event_id):
                count += 1
        logger.info("pending_events_recovered", count=count)
        return count

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            provider_event_id, attempt = item
            try:
                if self._running:
                    with event_context(provider_event_id=provider_event_id, attempt=attempt):
                        result = self.processor.process(provider_event_id, attempt)
                    if result.retry_delay is not None:
                        self._schedule_retry(provider_event_id, attempt + 1, result.retry_delay)
            except Exception as e:
                logger.error(
                    "event_worker_error",
                    provider_event_id=provider_event_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            finally:
                self._done()

    def _done(self) -> None:
        with self._cond:
            self._outstanding -= 1
            if self._outstanding <= 0:
                self._outstanding = 0
                self._cond.notify_all()

    def _schedule_retry(self, provider_event_id: str, attempt: int, delay: float) -> bool:
        with self._cond:
            if not self._running:
                return False
            if provider_event_id in self._timers:
                return True
            timer = threading.Timer(delay, self._fire_retry, args=(provider_event_id, attempt))
            timer.daemon = True
            self._timers[provider_event_id] = timer
            self._outstanding += 1
        timer.start()
        return True

    def _fire_retry(self, provider_event_id: str, attempt: int) -> None:
        with self._cond:
            if self._timers.pop(provider_event_id, None) is None:
                return
            if not self._running:
                self._outstanding -= 1
                self._cond.notify_all()
                return
        self._queue.put((provider_event_id, attempt))

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued, running or scheduled for retry.

        Returns:
            True if the pool went idle before the timeout
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._outstanding == 0, timeout)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the workers.

        Events that are queued or waiting for a retry are left pending.
        """
        with self._cond:
            if not self._running:
                return
            self._running = False
            timers = list(self._timers.values())
            self._timers.clear()
            self._outstanding -= len(timers)
        for timer in timers:
            timer.cancel()

        for _ in self._threads:
            self._queue.put(None)
        for thread in self._threads:
            thread.join(timeout)

        abandoned = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                abandoned += 1
                self._done()

        with self._cond:
            self._outstanding = 0
            self._cond.notify_all()
        self._threads = []
        logger.info("event_worker_pool_stopped", abandoned=abandoned, cancelled_retries=len(timers))
