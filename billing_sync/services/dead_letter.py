"""Dead-letter channel for events that could not be applied.

Responsibilities:
- Keep a local record of every dead-lettered event
- Raise an alert log for manual inspection
- Optionally publish the record to a Google Cloud Pub/Sub topic
"""

from threading import RLock
from typing import Optional

from google.api_core.exceptions import NotFound
from google.cloud import pubsub_v1

from billing_sync.logging_config import get_logger
from billing_sync.models import DeadLetterRecord
from billing_sync.models.plan import DeadLetterSettings
from billing_sync.repositories.event_store import EventStore
from billing_sync.services.clock import Clock

logger = get_logger(__name__)


class DeadLetterPublisher:
    """Routes failed events to the dead-letter channel.

    The local record is the source of truth; a Pub/Sub failure is logged and
    never propagated to the worker.
    """

    def __init__(
        self,
        events: EventStore,
        clock: Clock,
        settings: Optional[DeadLetterSettings] = None,
        publisher: Optional[pubsub_v1.PublisherClient] = None,
    ):
        """Initialize dead-letter publisher.

        Args:
            events: Event store that keeps dead-letter records
            clock: Time source for the dead-letter timestamp
            settings: Pub/Sub settings (publishing is off when omitted)
            publisher: Pub/Sub client, created from settings when not given
        """
        self._lock = RLock()
        self._events = events
        self._clock = clock
        self._settings = settings or DeadLetterSettings()
        self._publisher: Optional[pubsub_v1.PublisherClient] = publisher
        self._topic_path: Optional[str] = None
        self._enabled = self._settings.pubsub_enabled

        if self._enabled:
            self._initialize()

    def _initialize(self) -> None:
        """Init pub/sub publisher from settings"""
        try:
            if self._publisher is None:
                self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(self._settings.project_id, self._settings.topic)
            self._ensure_topic_exists()
            logger.info(
                "dead_letter_publisher_initialized",
                project_id=self._settings.project_id,
                topic=self._settings.topic,
            )
        except Exception as e:
            logger.error(
                "dead_letter_publisher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
        except NotFound:
            self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic_path=self._topic_path)

    def is_enabled(self) -> bool:
        """True if dead letters are also published to Pub/Sub."""
        return self._enabled and self._publisher is not None

    def dead_letter(
        self,
        provider_event_id: str,
        event_type: str,
        reason: str,
        error: Optional[str] = None,
        attempts: int = 0,
    ) -> DeadLetterRecord:
        """Dead-letter an event.

        Args:
            provider_event_id: Failed event
            event_type: Event type as received
            reason: Failure category (e.g. invalid_transition, retries_exhausted)
            error: Last error message
            attempts: Processing attempts made

        Returns:
            The stored dead-letter record
        """
        record = DeadLetterRecord(
            provider_event_id=provider_event_id,
            event_type=event_type,
            reason=reason,
            error=error,
            attempts=attempts,
            dead_lettered_at_millis=self._clock.now_millis(),
        )
        self._events.add_dead_letter(record)

        logger.error(
            "dead_letter_alert",
            provider_event_id=provider_event_id,
            event_type=event_type,
            reason=reason,
            error=error,
            attempts=attempts,
        )

        if self.is_enabled():
            self._publish(record)
        return record

    def _publish(self, record: DeadLetterRecord) -> bool:
        with self._lock:
            try:
                future = self._publisher.publish(
                    self._topic_path,
                    record.model_dump_json().encode("utf-8"),
                    reason=record.reason,
                    event_type=record.event_type,
                )
                message_id = future.result(timeout=5.0)
                logger.debug("pubsub_message_published", message_id=message_id)
                return True
            except Exception as e:
                logger.error(
                    "dead_letter_publish_failed",
                    provider_event_id=record.provider_event_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return False

    def shutdown(self) -> None:
        """Release the Pub/Sub client."""
        with self._lock:
            if self._publisher:
                logger.info("dead_letter_publisher_shutting_down")
                self._publisher = None
                self._topic_path = None
