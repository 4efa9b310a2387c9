"""Best-effort progress pub/sub.

Publishing is fire-and-forget: it never blocks on absent subscribers and
never raises on broker failure. Events published while nobody listens are
lost. Subscribers that need durability persist events themselves.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import redis

from .models import ProgressEvent

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "video_transcoding_progress"

Handler = Callable[[ProgressEvent], None]


def _dispatch(handler: Handler, event: ProgressEvent) -> None:
    try:
        handler(event)
    except Exception:
        logger.exception("Progress subscriber %r raised; event dropped for it", handler)


class Subscription:
    """Handle returned by ``subscribe``; ``close()`` unsubscribes."""

    def __init__(self, on_close: Callable[[], None]):
        self._on_close = on_close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._on_close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class ProgressBus(ABC):
    """Channel-based publish/subscribe of ProgressEvents."""

    @abstractmethod
    def publish(self, channel: str, event: ProgressEvent) -> None:
        """Deliver ``event`` to every current subscriber of ``channel``."""

    @abstractmethod
    def subscribe(self, channel: str, handler: Handler) -> Subscription:
        """Call ``handler`` for every event published on ``channel`` from now on."""

    def close(self) -> None:
        """Release broker connections."""


class InMemoryProgressBus(ProgressBus):
    """Single-process bus; handlers run synchronously in the publisher's thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Handler]] = {}

    def publish(self, channel: str, event: ProgressEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(channel, ()))
        for handler in handlers:
            _dispatch(handler, event)

    def subscribe(self, channel: str, handler: Handler) -> Subscription:
        with self._lock:
            self._handlers.setdefault(channel, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(channel, [])
                if handler in handlers:
                    handlers.remove(handler)

        return Subscription(unsubscribe)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._handlers.get(channel, ()))


class RedisProgressBus(ProgressBus):
    """Redis pub/sub bus; events travel as JSON payloads."""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None and not url:
            raise ValueError("RedisProgressBus needs a redis url or client")
        self._client = client or redis.Redis.from_url(url, decode_responses=True)

    def publish(self, channel: str, event: ProgressEvent) -> None:
        try:
            self._client.publish(channel, json.dumps(event.to_payload()))
        except redis.RedisError as e:
            logger.warning(
                "Dropping progress event for %s (%s): %s", event.video_id, event.status, e
            )

    def subscribe(self, channel: str, handler: Handler) -> Subscription:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)

        def on_message(message: dict) -> None:
            try:
                event = ProgressEvent.from_payload(json.loads(message["data"]))
            except ValueError as e:
                logger.warning("Ignoring malformed progress payload on %s: %s", channel, e)
                return
            _dispatch(handler, event)

        pubsub.subscribe(**{channel: on_message})
        thread = pubsub.run_in_thread(sleep_time=0.1, daemon=True)

        def unsubscribe():
            thread.stop()
            pubsub.close()

        return Subscription(unsubscribe)

    def close(self) -> None:
        self._client.close()
