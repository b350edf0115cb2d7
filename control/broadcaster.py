"""Fire-and-forget event publishing for terminal output and status changes."""

import logging
import os
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Callable

import httpx

from common.events import EventType
from common.models import to_iso, utcnow

logger = logging.getLogger(__name__)

# Environment variable configuration
GLOBAL_WEBHOOK_URL = os.environ.get("FLEETDECK_WEBHOOK_URL", "")
WEBHOOK_TIMEOUT = float(os.environ.get("FLEETDECK_WEBHOOK_TIMEOUT", "10.0"))
WEBHOOK_MAX_RETRIES = int(os.environ.get("FLEETDECK_WEBHOOK_MAX_RETRIES", "3"))
HISTORY_SIZE = 500


@dataclass
class BroadcastEvent:
    event: str
    channel: str
    timestamp: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


Subscriber = Callable[[BroadcastEvent], None]


class EventBroadcaster:
    """
    Publishes events to in-process subscribers and an optional webhook.

    ``publish`` never blocks on delivery and never raises: subscriber errors
    are logged, and webhook posts run on a small thread pool with retries.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        history_size: int = HISTORY_SIZE,
    ):
        """
        Initialize the broadcaster.

        Args:
            webhook_url: URL receiving every event as JSON (falls back to env var)
            timeout: HTTP request timeout in seconds
            max_retries: Maximum attempts per webhook delivery
            history_size: Number of recent events kept for inspection
        """
        self.webhook_url = webhook_url if webhook_url is not None else GLOBAL_WEBHOOK_URL
        self.timeout = timeout if timeout is not None else WEBHOOK_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else WEBHOOK_MAX_RETRIES
        self._history: deque[BroadcastEvent] = deque(maxlen=history_size)
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()
        self._client: httpx.Client | None = None
        self._executor: ThreadPoolExecutor | None = None

    def start(self) -> None:
        """Create the HTTP client and delivery pool when a webhook is configured."""
        if not self.webhook_url or self._client is not None:
            logger.debug("Event broadcaster started (no webhook URL configured)")
            return
        self._client = httpx.Client(timeout=self.timeout)
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="webhook")
        logger.info(f"Event broadcaster started (webhook_url={self.webhook_url})")

    def stop(self) -> None:
        """Wait for in-flight webhook deliveries, then close the client."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._client is not None:
            self._client.close()
            self._client = None
        logger.debug("Event broadcaster stopped")

    def subscribe(self, channel: str, callback: Subscriber) -> None:
        """Register a callback for every event on a channel ("*" for all)."""
        with self._lock:
            self._subscribers[channel].append(callback)

    def unsubscribe(self, channel: str, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers.get(channel, []):
                self._subscribers[channel].remove(callback)

    def publish(
        self, event: EventType | str, channel: str, data: dict | None = None
    ) -> BroadcastEvent:
        """
        Publish an event without waiting for delivery.

        Args:
            event: Event name
            channel: Channel the event belongs to
            data: Event payload
        """
        name = event.value if isinstance(event, EventType) else event
        message = BroadcastEvent(
            event=name,
            channel=channel,
            timestamp=to_iso(utcnow()),
            data=data or {},
        )

        with self._lock:
            self._history.append(message)
            subscribers = list(self._subscribers.get(channel, [])) + list(
                self._subscribers.get("*", [])
            )

        for callback in subscribers:
            try:
                callback(message)
            except Exception as e:
                logger.warning(f"Subscriber error for {name} on {channel}: {e}")

        if self._executor is not None:
            self._executor.submit(self._send_webhook, message)
        return message

    def history(self, channel: str | None = None) -> list[BroadcastEvent]:
        """Recently published events, oldest first."""
        with self._lock:
            events = list(self._history)
        if channel is not None:
            events = [e for e in events if e.channel == channel]
        return events

    def _send_webhook(self, message: BroadcastEvent) -> None:
        """Send one event with retry and exponential backoff."""
        client = self._client
        if client is None:
            logger.warning("Event broadcaster not started, dropping webhook delivery")
            return

        for attempt in range(self.max_retries):
            try:
                response = client.post(self.webhook_url, json=message.to_dict())
                if response.status_code < 400:
                    logger.debug(f"Webhook sent: {message.event} -> {self.webhook_url}")
                    return
                logger.warning(
                    f"Webhook failed: {message.event} -> {self.webhook_url}, "
                    f"status={response.status_code}, attempt={attempt + 1}"
                )
            except Exception as e:
                logger.warning(
                    f"Webhook error: {message.event} -> {self.webhook_url}, "
                    f"error={e}, attempt={attempt + 1}"
                )

            if attempt < self.max_retries - 1:
                time.sleep(2**attempt)

        logger.error(f"Webhook failed after {self.max_retries} attempts: {message.event}")
