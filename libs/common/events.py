"""Event system for retrieval components.

This module defines a compact eventing contract using Redis pub/sub.
Producers publish JSON payloads on namespaced channels derived from
``EventType``; consumers subscribe and register Python callbacks.

Key concepts
- "EventType" stable identifiers are versioned (``.v1`` suffix)
- ``EventPublisher`` composes channel names as ``{prefix}:{event_type}``
- ``EventSubscriber`` manages a map of event handlers and message dispatch

The drift monitor announces blend weight changes here; the search service
listens so it can adopt the new default and drop stale cached blends.
"""

import asyncio
import json
import time
from typing import Any, Dict, List, Callable
from dataclasses import dataclass, asdict
from enum import Enum
import redis.asyncio as redis_async
import structlog

logger = structlog.get_logger("events")


class EventType(Enum):
    """Event types for the retrieval engine."""
    QUALITY_DRIFT = "retrieval.quality.drift.v1"
    CACHE_INVALIDATED = "retrieval.cache.invalidated.v1"


@dataclass
class BaseEvent:
    """Base event class.

    Child events set their ``event_type`` in ``__post_init__`` and extend the
    payload with the fields relevant to the domain.
    """
    timestamp: int
    event_type: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict())


@dataclass
class QualityDriftEvent(BaseEvent):
    """Emitted when a drift cycle changes the default blend weight."""
    ragas_score: float
    alpha_before: float
    alpha_after: float
    action: str

    def __post_init__(self):
        self.event_type = EventType.QUALITY_DRIFT.value
        if not self.timestamp:
            self.timestamp = int(time.time() * 1000)


@dataclass
class CacheInvalidatedEvent(BaseEvent):
    """Emitted after cached search results were invalidated by pattern."""
    pattern: str
    deleted: int

    def __post_init__(self):
        self.event_type = EventType.CACHE_INVALIDATED.value
        if not self.timestamp:
            self.timestamp = int(time.time() * 1000)


class EventPublisher:
    """Publishes events to Redis.

    Notes
    - Failures are retried with exponential backoff, then logged and re-raised.
    - Messages are serialized as JSON to keep consumers language-agnostic.
    """

    def __init__(
        self,
        redis_client: redis_async.Redis,
        channel_prefix: str = "retrieval_events",
        max_retries: int = 3,
        base_delay: float = 0.5
    ):
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def publish(self, event: BaseEvent) -> None:
        """Publish an event with retry logic.

        The channel is derived from the event's type to allow subscribers to
        filter efficiently without payload inspection.
        """
        channel = f"{self.channel_prefix}:{event.event_type}"
        message = event.to_json()

        for attempt in range(self.max_retries):
            try:
                await self.redis_client.publish(channel, message)
                logger.info(
                    "Event published",
                    event_type=event.event_type,
                    channel=channel
                )
                return
            except Exception as e:
                if attempt == self.max_retries - 1:
                    logger.error(
                        "Failed to publish event after all retries",
                        event_type=event.event_type,
                        error=str(e)
                    )
                    raise

                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    "Event publish failed, retrying",
                    event_type=event.event_type,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                    error=str(e)
                )
                await asyncio.sleep(delay)

    async def publish_quality_drift(
        self,
        ragas_score: float,
        alpha_before: float,
        alpha_after: float,
        action: str
    ) -> None:
        """Publish a quality drift event."""
        event = QualityDriftEvent(
            timestamp=int(time.time() * 1000),
            event_type=EventType.QUALITY_DRIFT.value,
            ragas_score=ragas_score,
            alpha_before=alpha_before,
            alpha_after=alpha_after,
            action=action
        )
        await self.publish(event)

    async def publish_cache_invalidated(self, pattern: str, deleted: int) -> None:
        """Publish a cache invalidated event."""
        event = CacheInvalidatedEvent(
            timestamp=int(time.time() * 1000),
            event_type=EventType.CACHE_INVALIDATED.value,
            pattern=pattern,
            deleted=deleted
        )
        await self.publish(event)


class EventSubscriber:
    """Subscribes to events from Redis.

    Maintains a mapping of ``event_type -> List[callables]``. When a message
    arrives, ``handle_message`` decodes JSON and invokes each registered
    handler with the raw dictionary payload.
    """

    def __init__(self, redis_client: redis_async.Redis, channel_prefix: str = "retrieval_events"):
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix
        self.handlers: Dict[str, List[Callable[[Dict[str, Any]], None]]] = {}

    def subscribe(self, event_type: EventType, handler: Callable[[Dict[str, Any]], None]) -> None:
        """Subscribe to an event type."""
        self.handlers.setdefault(event_type.value, []).append(handler)
        logger.info(
            "Subscribed to event",
            event_type=event_type.value,
            handler=getattr(handler, "__name__", repr(handler))
        )

    async def start_listening(self) -> None:
        """Listen for events until cancelled.

        Meant to run as a background task. Transient errors inside the loop
        are logged and the loop keeps going.
        """
        pubsub = self.redis_client.pubsub()

        try:
            channels = [
                f"{self.channel_prefix}:{event_type}"
                for event_type in self.handlers
            ]
            if not channels:
                logger.info("No event handlers registered, listener idle")
                return
            await pubsub.subscribe(*channels)

            logger.info("Started listening for events", channels=channels)

            while True:
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=1.0
                    )
                    if message and message.get("type") == "message":
                        self.handle_message(message)

                    await asyncio.sleep(0.01)

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Error in event listener loop", error=str(e))
                    await asyncio.sleep(1.0)

        except asyncio.CancelledError:
            logger.info("Event listener cancelled")
            raise
        finally:
            try:
                await pubsub.aclose()
                logger.info("Event listener stopped")
            except Exception as e:
                logger.warning("Error closing pubsub", error=str(e))

    def handle_message(self, message: Dict[str, Any]) -> None:
        """Dispatch one pub/sub message.

        Errors from individual handlers are logged and do not prevent other
        handlers from executing.
        """
        try:
            channel_raw = message.get('channel')
            data_raw = message.get('data')

            if isinstance(channel_raw, (bytes, bytearray)):
                channel = channel_raw.decode('utf-8')
            else:
                channel = str(channel_raw)

            if isinstance(data_raw, (bytes, bytearray)):
                payload = json.loads(data_raw.decode('utf-8'))
            else:
                payload = json.loads(data_raw)

            event_type = channel.split(':')[-1]

            for handler in self.handlers.get(event_type, []):
                try:
                    handler(payload)
                except Exception as e:
                    logger.error(
                        "Error handling event",
                        event_type=event_type,
                        handler=getattr(handler, "__name__", repr(handler)),
                        error=str(e)
                    )

        except Exception as e:
            logger.error(
                "Error processing event message",
                error=str(e)
            )
