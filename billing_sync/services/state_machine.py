"""Subscription state machine.

Maps (current subscription, event) to a new subscription record plus the
side effects the caller must carry out. Nothing here touches storage; the
event worker persists the result.

Transitions:
- checkout.completed: no live subscription in the family -> active / trialing
- invoice.payment_failed: active, trialing -> past_due (grace period starts);
  past_due, unpaid -> unchanged, failure count + 1
- invoice.payment_succeeded: past_due, unpaid, trialing -> active;
  active -> active with the billing period rolled forward
- subscription.updated: any non-canceled -> fields from the payload
- subscription.deleted: any non-canceled -> canceled
- grace_period.expired (internal): past_due with elapsed grace -> canceled
- subscription.resync (internal): none or non-canceled -> provider snapshot
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from billing_sync.errors import BillingError
from billing_sync.models import (
    EVENT_DATA_MODELS,
    INTERNAL_EVENT_TYPES,
    CheckoutCompletedData,
    CheckoutIntent,
    EventEnvelope,
    EventOutcome,
    EventSource,
    EventType,
    GracePeriodExpiredData,
    InboundEvent,
    IntentStatus,
    InvoiceEventData,
    ProviderSubscription,
    SubscriptionDeletedData,
    SubscriptionEvent,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionUpdatedData,
)
from billing_sync.repositories.plan_repository import PlanRepository
from billing_sync.utils.billing_period import add_billing_period, parse_billing_period
from billing_sync.utils.token_generator import generate_subscription_id


class TransitionRejected(BillingError):
    """Base class for events the state machine refuses to apply."""

    reason = "rejected"
    outcome = EventOutcome.FAILED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StaleEvent(TransitionRejected):
    """Event is older than the last one applied; recorded, not an error."""

    reason = "stale"
    outcome = EventOutcome.IGNORED_STALE


class UnknownEventType(TransitionRejected):
    reason = "unknown_event_type"


class MalformedEvent(TransitionRejected):
    reason = "malformed_event"


class InvalidTransition(TransitionRejected):
    """No transition exists for the event in the current status.

    Points at a provider bug or a missed event, so it also triggers
    reconciliation of the subscription.
    """

    reason = "invalid_transition"


class UnknownIntent(TransitionRejected):
    reason = "unknown_intent"


class SideEffectKind(str, Enum):
    COMPLETE_INTENT = "complete_intent"


@dataclass(frozen=True)
class SideEffect:
    """Work the caller performs in the same transaction as the state change."""

    kind: SideEffectKind
    intent_id: str
    subscription_id: str


@dataclass
class Transition:
    """Accepted state change."""

    subscription: SubscriptionRecord
    previous_status: Optional[SubscriptionStatus]
    side_effects: list[SideEffect] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.previous_status is None


# Status changes a subscription.updated payload may request. Moving to the
# current status or to canceled is always allowed; resync bypasses this table.
ALLOWED_STATUS_CHANGES: dict[SubscriptionStatus, frozenset] = {
    SubscriptionStatus.PENDING: frozenset(
        {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.UNPAID}
    ),
    SubscriptionStatus.TRIALING: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID}),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.UNPAID}),
    SubscriptionStatus.UNPAID: frozenset({SubscriptionStatus.ACTIVE}),
}


def parse_event(
    provider_event_id: str,
    event_type: str,
    data: dict[str, Any],
    sequence: int,
    created_millis: int,
    source: EventSource = EventSource.PROVIDER,
) -> SubscriptionEvent:
    """Turn a raw event into one of the typed variants.

    Raises:
        UnknownEventType: If the type is outside the closed event set, or an
            internal type arrived from the provider
        MalformedEvent: If the payload does not match the type's schema
    """
    try:
        typed = EventType(event_type)
    except ValueError:
        raise UnknownEventType(f"Unknown event type: {event_type}")

    if typed in INTERNAL_EVENT_TYPES and source != EventSource.INTERNAL:
        raise UnknownEventType(f"Event type {event_type} is internal only")

    try:
        payload = EVENT_DATA_MODELS[typed].model_validate(data)
    except ValidationError as e:
        raise MalformedEvent(f"Invalid {event_type} payload: {e.error_count()} error(s)") from e

    return SubscriptionEvent(
        provider_event_id=provider_event_id,
        type=typed,
        sequence=sequence,
        created_millis=created_millis,
        source=source,
        data=payload,
    )


def parse_inbound_event(row: InboundEvent) -> SubscriptionEvent:
    """Parse a stored inbound event row.

    Raises:
        UnknownEventType: see parse_event
        MalformedEvent: If the stored envelope or payload is invalid
    """
    try:
        envelope = EventEnvelope.model_validate(row.payload)
    except ValidationError as e:
        raise MalformedEvent(f"Invalid envelope for {row.provider_event_id}") from e
    return parse_event(
        provider_event_id=row.provider_event_id,
        event_type=envelope.type,
        data=envelope.data,
        sequence=row.sequence,
        created_millis=envelope.created,
        source=row.source,
    )


class StateMachine:
    """Transition logic for subscriptions.

    Args:
        plans: Plan catalog (trial periods, billing periods, families)
        grace_period: ISO 8601 duration a past_due subscription keeps access
    """

    def __init__(self, plans: PlanRepository, grace_period: str = "P7D"):
        self.plans = plans
        self.grace_period = grace_period
        self.grace_period_millis = parse_billing_period(grace_period)
        self._handlers: dict[EventType, Callable[..., Transition]] = {
            EventType.CHECKOUT_COMPLETED: self._checkout_completed,
            EventType.INVOICE_PAYMENT_FAILED: self._payment_failed,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self._payment_succeeded,
            EventType.SUBSCRIPTION_UPDATED: self._subscription_updated,
            EventType.SUBSCRIPTION_DELETED: self._subscription_deleted,
            EventType.GRACE_PERIOD_EXPIRED: self._grace_period_expired,
            EventType.SUBSCRIPTION_RESYNC: self._resync,
        }

    def apply(
        self,
        subscription: Optional[SubscriptionRecord],
        event: SubscriptionEvent,
        now_millis: int,
        intent: Optional[CheckoutIntent] = None,
    ) -> Transition:
        """Compute the result of applying an event.

        Args:
            subscription: The event's subscription, or for checkout.completed
                and resync the customer's live subscription in the plan family
                (None if there is none)
            event: Typed event
            now_millis: Current time
            intent: Checkout intent named by the event, if any was found

        Returns:
            Transition holding a new record; the input record is not modified

        Raises:
            TransitionRejected: StaleEvent, UnknownEventType, InvalidTransition
                or UnknownIntent
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            raise UnknownEventType(f"No transition for event type {event.type}")

        targets_event = (
            subscription is not None
            and subscription.provider_subscription_id == event.provider_subscription_id
        )
        if targets_event:
            if event.sequence <= subscription.last_applied_sequence:
                raise StaleEvent(
                    f"Event sequence {event.sequence} <= last applied "
                    f"{subscription.last_applied_sequence}"
                )
            if subscription.customer_id != event.customer_id:
                raise InvalidTransition(
                    f"Subscription {subscription.id} belongs to customer {subscription.customer_id}"
                )

        transition = handler(subscription, event, now_millis, intent)
        record = transition.subscription
        record.last_applied_sequence = event.sequence
        record.updated_at_millis = now_millis
        return transition

    @staticmethod
    def _require_live(subscription: Optional[SubscriptionRecord], event: SubscriptionEvent) -> SubscriptionRecord:
        if subscription is None:
            raise InvalidTransition(
                f"{event.type.value} for unknown subscription {event.provider_subscription_id}"
            )
        if subscription.is_canceled:
            raise InvalidTransition(f"Subscription {subscription.id} is canceled")
        return subscription

    def _check_intent(self, intent: Optional[CheckoutIntent], intent_id: str, event: SubscriptionEvent) -> CheckoutIntent:
        if intent is None:
            raise UnknownIntent(f"Unknown checkout intent {intent_id}")
        if event.created_millis >= intent.expires_at_millis:
            raise StaleEvent(f"Checkout intent {intent_id} expired before completion")
        if intent.status == IntentStatus.COMPLETED:
            raise InvalidTransition(f"Checkout intent {intent_id} is already completed")
        if intent.customer_id != event.customer_id:
            raise InvalidTransition(f"Checkout intent {intent_id} belongs to another customer")
        return intent

    def _new_record(
        self,
        event: SubscriptionEvent,
        plan_id: str,
        status: SubscriptionStatus,
        now_millis: int,
    ) -> SubscriptionRecord:
        plan = self.plans.find_by_id(plan_id)
        if plan is None:
            raise InvalidTransition(f"Unknown plan {plan_id}")
        return SubscriptionRecord(
            id=generate_subscription_id(now_millis),
            customer_id=event.customer_id,
            plan_id=plan.id,
            plan_family=plan.family,
            status=status,
            provider_subscription_id=event.provider_subscription_id,
            created_at_millis=now_millis,
            updated_at_millis=now_millis,
        )

    def _checkout_completed(self, subscription, event, now_millis, intent) -> Transition:
        data: CheckoutCompletedData = event.data
        if subscription is not None and not subscription.is_canceled:
            raise InvalidTransition(
                f"Customer {event.customer_id} already has subscription {subscription.id} "
                f"in family {subscription.plan_family}"
            )
        if subscription is not None:
            raise InvalidTransition(f"Subscription {subscription.id} is canceled")

        intent = self._check_intent(intent, data.intent_id, event)
        if intent.plan_id != data.plan_id:
            raise InvalidTransition(f"Checkout intent {intent.intent_id} was for plan {intent.plan_id}")

        plan = self.plans.find_by_id(data.plan_id)
        status = SubscriptionStatus.TRIALING if plan and plan.trial_period else SubscriptionStatus.ACTIVE
        record = self._new_record(event, data.plan_id, status, now_millis)

        start = data.current_period_start_millis or event.created_millis
        record.current_period_start_millis = start
        record.current_period_end_millis = data.current_period_end_millis or add_billing_period(
            start, plan.trial_period or plan.billing_period
        )

        return Transition(
            subscription=record,
            previous_status=None,
            side_effects=[SideEffect(SideEffectKind.COMPLETE_INTENT, intent.intent_id, record.id)],
        )

    def _payment_failed(self, subscription, event, now_millis, intent) -> Transition:
        current = self._require_live(subscription, event)
        record = current.model_copy(deep=True)

        if current.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            record.status = SubscriptionStatus.PAST_DUE
            record.payment_failure_count = 1
            record.grace_period_end_millis = event.created_millis + self.grace_period_millis
        elif current.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
            record.payment_failure_count = current.payment_failure_count + 1
        else:
            raise InvalidTransition(f"Payment failure for {current.status.value} subscription {current.id}")

        return Transition(subscription=record, previous_status=current.status)

    def _payment_succeeded(self, subscription, event, now_millis, intent) -> Transition:
        current = self._require_live(subscription, event)
        data: InvoiceEventData = event.data
        record = current.model_copy(deep=True)

        if current.status in (
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.TRIALING,
        ):
            record.status = SubscriptionStatus.ACTIVE
            record.payment_failure_count = 0
            record.grace_period_end_millis = None
            if current.status == SubscriptionStatus.TRIALING or data.period_start_millis is not None:
                self._roll_period(record, data)
        elif current.status == SubscriptionStatus.ACTIVE:
            self._roll_period(record, data)
        else:
            raise InvalidTransition(f"Payment success for {current.status.value} subscription {current.id}")

        return Transition(subscription=record, previous_status=current.status)

    def _roll_period(self, record: SubscriptionRecord, data: InvoiceEventData) -> None:
        if data.period_start_millis is not None:
            start = data.period_start_millis
        else:
            start = record.current_period_end_millis or record.current_period_start_millis
        if start is None:
            return
        plan = self.plans.find_by_id(record.plan_id)
        if data.period_end_millis is not None:
            end = data.period_end_millis
        elif plan is not None:
            end = add_billing_period(start, plan.billing_period)
        else:
            end = record.current_period_end_millis
        record.current_period_start_millis = start
        record.current_period_end_millis = end

    def _change_status(
        self,
        record: SubscriptionRecord,
        current: SubscriptionStatus,
        target: SubscriptionStatus,
        event: SubscriptionEvent,
        canceled_at_millis: Optional[int] = None,
        enforce: bool = True,
    ) -> None:
        if enforce and target != current and target != SubscriptionStatus.CANCELED:
            if target not in ALLOWED_STATUS_CHANGES.get(current, frozenset()):
                raise InvalidTransition(f"Status change {current.value} -> {target.value} not allowed")

        record.status = target
        if target in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            record.payment_failure_count = 0
            record.grace_period_end_millis = None
        elif target == SubscriptionStatus.PAST_DUE and record.grace_period_end_millis is None:
            record.grace_period_end_millis = event.created_millis + self.grace_period_millis
        elif target == SubscriptionStatus.CANCELED:
            record.canceled_at_millis = canceled_at_millis or event.created_millis
            record.grace_period_end_millis = None

    def _change_plan(self, record: SubscriptionRecord, plan_id: str) -> None:
        plan = self.plans.find_by_id(plan_id)
        if plan is None:
            raise InvalidTransition(f"Unknown plan {plan_id}")
        if plan.family != record.plan_family:
            raise InvalidTransition(
                f"Plan {plan_id} is in family {plan.family}, subscription is {record.plan_family}"
            )
        record.plan_id = plan.id

    def _subscription_updated(self, subscription, event, now_millis, intent) -> Transition:
        current = self._require_live(subscription, event)
        data: SubscriptionUpdatedData = event.data
        record = current.model_copy(deep=True)

        if data.plan_id is not None and data.plan_id != current.plan_id:
            self._change_plan(record, data.plan_id)
        if data.status is not None:
            self._change_status(record, current.status, data.status, event)
        if data.cancel_at_period_end is not None:
            record.cancel_at_period_end = data.cancel_at_period_end
        if data.current_period_start_millis is not None:
            record.current_period_start_millis = data.current_period_start_millis
        if data.current_period_end_millis is not None:
            record.current_period_end_millis = data.current_period_end_millis

        return Transition(subscription=record, previous_status=current.status)

    def _subscription_deleted(self, subscription, event, now_millis, intent) -> Transition:
        current = self._require_live(subscription, event)
        data: SubscriptionDeletedData = event.data
        record = current.model_copy(deep=True)
        self._change_status(
            record, current.status, SubscriptionStatus.CANCELED, event, data.canceled_at_millis
        )
        return Transition(subscription=record, previous_status=current.status)

    def _grace_period_expired(self, subscription, event, now_millis, intent) -> Transition:
        current = self._require_live(subscription, event)
        data: GracePeriodExpiredData = event.data
        if current.status != SubscriptionStatus.PAST_DUE:
            raise InvalidTransition(f"Grace period expiry for {current.status.value} subscription {current.id}")
        if current.grace_period_end_millis is None or current.grace_period_end_millis > now_millis:
            raise InvalidTransition(f"Grace period of {current.id} has not elapsed")
        if data.grace_period_end_millis != current.grace_period_end_millis:
            raise StaleEvent(f"Grace period of {current.id} was restarted")

        record = current.model_copy(deep=True)
        self._change_status(
            record, current.status, SubscriptionStatus.CANCELED, event, current.grace_period_end_millis
        )
        return Transition(subscription=record, previous_status=current.status)

    def _resync(self, subscription, event, now_millis, intent) -> Transition:
        snapshot: ProviderSubscription = event.data
        side_effects: list[SideEffect] = []

        if subscription is not None and subscription.provider_subscription_id != snapshot.provider_subscription_id:
            if not subscription.is_canceled:
                raise InvalidTransition(
                    f"Customer {event.customer_id} already has subscription {subscription.id} "
                    f"in family {subscription.plan_family}"
                )
            subscription = None

        if subscription is None:
            record = self._new_record(event, snapshot.plan_id, snapshot.status, now_millis)
            previous_status = None
            if snapshot.status == SubscriptionStatus.CANCELED:
                record.canceled_at_millis = snapshot.canceled_at_millis or event.created_millis
            elif snapshot.status == SubscriptionStatus.PAST_DUE:
                record.grace_period_end_millis = event.created_millis + self.grace_period_millis
        else:
            current = self._require_live(subscription, event)
            record = current.model_copy(deep=True)
            previous_status = current.status
            if snapshot.plan_id != current.plan_id:
                self._change_plan(record, snapshot.plan_id)
            if snapshot.status != current.status:
                self._change_status(
                    record, current.status, snapshot.status, event, snapshot.canceled_at_millis, enforce=False
                )

        record.cancel_at_period_end = snapshot.cancel_at_period_end
        if snapshot.current_period_start_millis is not None:
            record.current_period_start_millis = snapshot.current_period_start_millis
        if snapshot.current_period_end_millis is not None:
            record.current_period_end_millis = snapshot.current_period_end_millis

        if (
            snapshot.intent_id
            and intent is not None
            and intent.status != IntentStatus.COMPLETED
            and intent.customer_id == event.customer_id
        ):
            side_effects.append(SideEffect(SideEffectKind.COMPLETE_INTENT, intent.intent_id, record.id))

        return Transition(subscription=record, previous_status=previous_status, side_effects=side_effects)
