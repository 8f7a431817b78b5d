"""
Display sinks for surfaced feeds

The update loop hands every surfaced feed to a Notifier. LogNotifier writes
the update to the structured log; KafkaNotifier publishes it to a Kafka
topic for downstream consumers.
"""

import json
import time
import uuid
from typing import Any, Dict, Optional, Protocol, Tuple

import structlog
from kafka import KafkaProducer
from kafka.errors import KafkaError, KafkaTimeoutError

from shared.models import SurfacedFeed

from .config import KafkaSettings
from .errors import ConfigError


class Notifier(Protocol):
    def notify(self, feed: SurfacedFeed) -> None:
        ...

    def notify_error(self, message: str) -> None:
        ...


def format_update(feed: SurfacedFeed) -> Tuple[str, str]:
    """Render the title and body shown for a surfaced feed."""
    title = f"Broadcastify Update ({feed.rank} of {feed.total})"

    lines = [
        f"Name: {feed.name}",
        f"Listeners: {feed.listeners} (^{feed.jump})",
    ]
    if feed.alert:
        lines.append(f"Alert: {feed.alert}")
    lines.append(f"Link: {feed.url}")

    return title, "\n".join(lines)


class LogNotifier:
    """Writes surfaced feeds and errors to the structured log."""

    def __init__(self) -> None:
        self.logger = structlog.get_logger(__name__)

    def notify(self, feed: SurfacedFeed) -> None:
        title, body = format_update(feed)
        self.logger.info(title, feed_id=feed.feed_id, body=body)

    def notify_error(self, message: str) -> None:
        self.logger.error("Broadcastify Update Error", error=message)


class KafkaNotifier:
    """
    Publishes surfaced feeds to a Kafka topic as JSON.

    Messages are keyed by feed id so updates for one feed stay ordered
    within a partition. Failed sends are retried with exponential backoff.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        topic_name: str = "feed-spikes",
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        backoff_multiplier: float = 2.0,
        send_timeout: float = 30.0,
    ) -> None:
        """
        Initialize the notifier.

        Args:
            bootstrap_servers: Comma-separated list of Kafka broker addresses
            topic_name: Name of the Kafka topic to publish to
            max_retries: Maximum number of retry attempts for failed sends
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Multiplier for exponential backoff
            send_timeout: Seconds to wait for a broker acknowledgment
        """
        self.bootstrap_servers = bootstrap_servers
        self.topic_name = topic_name
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self.send_timeout = send_timeout

        self.logger = structlog.get_logger(__name__)
        self._correlation_id = str(uuid.uuid4())

        self._sent = 0
        self._failed = 0

        self._producer_config = {
            "bootstrap_servers": bootstrap_servers.split(","),
            "value_serializer": self._serialize_value,
            "key_serializer": self._serialize_key,
            "acks": "all",
            "retries": 3,
            "request_timeout_ms": 30000,
        }
        self._producer: Optional[KafkaProducer] = None

    @classmethod
    def from_settings(cls, settings: KafkaSettings) -> "KafkaNotifier":
        return cls(
            bootstrap_servers=settings.bootstrap_servers,
            topic_name=settings.topic,
            max_retries=settings.max_retries,
        )

    @staticmethod
    def _serialize_value(value: Dict[str, Any]) -> bytes:
        return json.dumps(value, ensure_ascii=False).encode("utf-8")

    @staticmethod
    def _serialize_key(key: Optional[int]) -> Optional[bytes]:
        return str(key).encode("utf-8") if key is not None else None

    def connect(self) -> None:
        """
        Create the underlying Kafka producer.

        Raises:
            KafkaError: If the producer cannot be created
        """
        log = self.logger.bind(
            correlation_id=self._correlation_id,
            bootstrap_servers=self.bootstrap_servers,
            topic=self.topic_name,
        )
        try:
            self._producer = KafkaProducer(**self._producer_config)
        except KafkaError as e:
            log.error("Failed to connect to Kafka", error=str(e))
            raise
        log.info("Connected to Kafka cluster")

    def _send(self, key: Optional[int], value: Dict[str, Any]) -> bool:
        log = self.logger.bind(correlation_id=self._correlation_id, topic=self.topic_name, key=key)

        attempt = 0
        while True:
            try:
                if self._producer is None:
                    self.connect()
                future = self._producer.send(self.topic_name, key=key, value=value)
                metadata = future.get(timeout=self.send_timeout)
                self._sent += 1
                log.debug("Message sent", partition=metadata.partition, offset=metadata.offset)
                return True
            except (KafkaTimeoutError, KafkaError) as e:
                attempt += 1
                if attempt > self.max_retries:
                    self._failed += 1
                    log.error("Message send failed after all retries", error=str(e), retry_count=attempt)
                    return False

                backoff_delay = min(
                    self.initial_backoff * (self.backoff_multiplier ** (attempt - 1)),
                    self.max_backoff,
                )
                log.warning("Message send failed, retrying", error=str(e), retry_count=attempt,
                            backoff_delay=backoff_delay)
                time.sleep(backoff_delay)

    def notify(self, feed: SurfacedFeed) -> None:
        self._send(feed.feed_id, {"type": "update", **feed.to_dict()})

    def notify_error(self, message: str) -> None:
        self._send(None, {"type": "error", "error": message})

    def close(self) -> None:
        if self._producer is not None:
            self._producer.flush()
            self._producer.close()
            self._producer = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "topic": self.topic_name,
            "connected": self._producer is not None,
            "messages_sent": self._sent,
            "messages_failed": self._failed,
        }


def create_notifier(kind: str, kafka: KafkaSettings) -> Notifier:
    if kind == "kafka":
        return KafkaNotifier.from_settings(kafka)
    if kind == "log":
        return LogNotifier()
    raise ConfigError(f"Unknown notifier type: {kind!r}")
