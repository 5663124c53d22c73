"""
RabbitMQ plumbing shared by the scanners (producers) and the delivery worker
"""
import logging
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Deque, Optional

from kombu import Connection, Consumer, Exchange, Producer, Queue
from kombu.message import Message

from .config import NotificationSettings
from .exceptions import BrokerUnavailableError
from .metrics import broker_connect_attempts_total, broker_connect_failures_total
from .schemas import OutboundMessage

logger = logging.getLogger(__name__)

ATTEMPTS_HEADER = "x-delivery-attempts"
FAILURE_REASON_HEADER = "x-failure-reason"
FAILED_AT_HEADER = "x-failed-at"

PERSISTENT = 2


def build_exchange(settings: NotificationSettings) -> Exchange:
    return Exchange(settings.RABBITMQ_EXCHANGE, type="direct", durable=True)


def build_email_queue(settings: NotificationSettings) -> Queue:
    return Queue(
        settings.EMAIL_QUEUE,
        exchange=build_exchange(settings),
        routing_key=settings.EMAIL_QUEUE,
        durable=True,
        exclusive=False,
        auto_delete=False,
    )


def build_failed_queue(settings: NotificationSettings) -> Queue:
    return Queue(
        settings.EMAIL_FAILED_QUEUE,
        exchange=build_exchange(settings),
        routing_key=settings.EMAIL_FAILED_QUEUE,
        durable=True,
        exclusive=False,
        auto_delete=False,
    )


def open_connection(settings: NotificationSettings) -> Connection:
    return Connection(settings.broker_url, connect_timeout=5, heartbeat=30)


def delivery_attempts(message: Message) -> int:
    """Attempt number of this delivery; 1 for a message never retried."""
    try:
        return max(1, int((message.headers or {}).get(ATTEMPTS_HEADER, 1)))
    except (TypeError, ValueError):
        return 1


class QueuePublisher:
    """Fire-and-forget publisher used by the scanners.

    Holds one lazily opened connection; kombu's retry policy re-establishes
    it when the broker drops, and a publish that still fails raises so the
    caller can leave the reminder for the next cycle.
    """

    def __init__(
        self,
        settings: NotificationSettings,
        connection_factory: Optional[Callable[[], Connection]] = None,
    ):
        self.settings = settings
        self.queue = build_email_queue(settings)
        self._connection_factory = connection_factory or (lambda: open_connection(settings))
        self._connection: Optional[Connection] = None
        self._producer: Optional[Producer] = None
        self._lock = threading.Lock()

    def _ensure_producer(self) -> Producer:
        if self._producer is None:
            self._connection = self._connection_factory()
            self._producer = self._connection.Producer(serializer="json")
        return self._producer

    def publish(self, message: OutboundMessage) -> None:
        with self._lock:
            producer = self._ensure_producer()
            producer.publish(
                message.to_wire(),
                exchange=self.queue.exchange,
                routing_key=self.queue.routing_key,
                declare=[self.queue],
                delivery_mode=PERSISTENT,
                retry=True,
                retry_policy={
                    "max_retries": self.settings.PUBLISH_MAX_RETRIES,
                    "interval_start": 1,
                    "interval_step": 2,
                    "interval_max": 10,
                },
            )

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.release()
            self._connection = None
            self._producer = None


class QueueSubscription:
    """Pull-style consumer with an explicit in-flight window.

    basic.qos is applied before basic.consume, so the broker never hands
    this consumer more than `prefetch_count` unacknowledged messages and
    the local buffer never grows past that.
    """

    def __init__(self, connection: Connection, channel, queue: Queue, prefetch_count: int = 1):
        self._connection = connection
        self._pending: Deque[Message] = deque()
        self._consumer = Consumer(
            channel,
            queues=[queue],
            on_message=self._pending.append,
            no_ack=False,
            auto_declare=True,
        )
        self._consumer.qos(prefetch_count=prefetch_count)
        self._consumer.consume()

    def get(self, timeout: float) -> Optional[Message]:
        if not self._pending:
            try:
                self._connection.drain_events(timeout=timeout)
            except socket.timeout:
                return None
        return self._pending.popleft() if self._pending else None

    def cancel(self) -> None:
        self._consumer.cancel()


@dataclass
class BrokerSession:
    """Everything the worker loop needs from one live broker connection."""
    connection: Connection
    channel: object
    queue: Queue
    failed_queue: Queue
    producer: Producer
    subscription: QueueSubscription

    @classmethod
    def open(cls, connection: Connection, settings: NotificationSettings) -> "BrokerSession":
        channel = connection.channel()
        queue = build_email_queue(settings).bind(channel)
        failed_queue = build_failed_queue(settings).bind(channel)
        queue.declare()
        failed_queue.declare()
        producer = Producer(channel, exchange=queue.exchange, serializer="json", auto_declare=False)
        subscription = QueueSubscription(connection, channel, queue, settings.WORKER_PREFETCH_COUNT)
        return cls(
            connection=connection,
            channel=channel,
            queue=queue,
            failed_queue=failed_queue,
            producer=producer,
            subscription=subscription,
        )

    @property
    def recoverable_errors(self) -> tuple:
        return tuple(self.connection.connection_errors) + tuple(self.connection.channel_errors)

    def republish(self, message: Message, queue: Queue, headers: dict) -> None:
        """Publish a copy of a received message (raw body) with new headers."""
        self.producer.publish(
            message.body,
            exchange=queue.exchange,
            routing_key=queue.routing_key,
            headers=headers,
            content_type=message.content_type or "application/json",
            content_encoding=message.content_encoding or "utf-8",
            delivery_mode=PERSISTENT,
        )

    def close(self) -> None:
        try:
            self.subscription.cancel()
        except Exception as e:
            logger.debug(f"[Broker] Ignoring error while cancelling consumer: {e!r}")
        try:
            self.channel.close()
        except Exception as e:
            logger.debug(f"[Broker] Ignoring error while closing channel: {e!r}")
        try:
            self.connection.release()
        except Exception as e:
            logger.debug(f"[Broker] Ignoring error while closing connection: {e!r}")


class BrokerConnectionManager:
    """Connects with bounded retries and linear backoff (attempt x unit seconds)."""

    def __init__(
        self,
        settings: NotificationSettings,
        connection_factory: Optional[Callable[[], Connection]] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.settings = settings
        self.attempts = settings.BROKER_CONNECT_ATTEMPTS
        self.backoff = settings.BROKER_RETRY_BACKOFF_SECONDS
        self._connection_factory = connection_factory or (lambda: open_connection(settings))
        self._stop_event = stop_event
        self._sleep = sleep or time.sleep

    def _wait(self, seconds: float) -> bool:
        """Sleep between attempts; True means shutdown was requested meanwhile."""
        if self._stop_event is not None:
            return self._stop_event.wait(seconds)
        self._sleep(seconds)
        return False

    def connect(self) -> Optional[BrokerSession]:
        """Open a session, or None if shutdown was requested while retrying.

        Raises BrokerUnavailableError once every attempt has failed.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            broker_connect_attempts_total.inc()
            connection = self._connection_factory()
            try:
                connection.connect()
                session = BrokerSession.open(connection, self.settings)
            except Exception as e:
                last_error = e
                broker_connect_failures_total.inc()
                connection.release()
                logger.warning(
                    f"[Broker] Failed to connect to RabbitMQ (attempt {attempt}/{self.attempts}): {e}"
                )
                if attempt < self.attempts and self._wait(attempt * self.backoff):
                    return None
                continue

            logger.info(
                f"[Broker] Connected to {connection.as_uri()} - queue '{session.queue.name}', "
                f"prefetch={self.settings.WORKER_PREFETCH_COUNT}"
            )
            return session

        logger.error(f"[Broker] Could not connect to RabbitMQ after {self.attempts} attempts")
        raise BrokerUnavailableError(self.attempts, last_error)


def replay_failed_messages(
    settings: NotificationSettings,
    limit: Optional[int] = None,
    connection_factory: Optional[Callable[[], Connection]] = None,
) -> int:
    """Move messages from the failed queue back onto the email queue.

    The attempt counter is reset and failure headers dropped. Returns the
    number of messages moved.
    """
    factory = connection_factory or (lambda: open_connection(settings))
    moved = 0
    with factory() as connection:
        channel = connection.channel()
        try:
            queue = build_email_queue(settings).bind(channel)
            failed_queue = build_failed_queue(settings).bind(channel)
            queue.declare()
            failed_queue.declare()
            producer = Producer(channel, exchange=queue.exchange, auto_declare=False)
            while limit is None or moved < limit:
                message = failed_queue.get(no_ack=False)
                if message is None:
                    break
                headers = {
                    k: v
                    for k, v in (message.headers or {}).items()
                    if k not in (ATTEMPTS_HEADER, FAILURE_REASON_HEADER, FAILED_AT_HEADER)
                }
                headers[ATTEMPTS_HEADER] = 1
                producer.publish(
                    message.body,
                    exchange=queue.exchange,
                    routing_key=queue.routing_key,
                    headers=headers,
                    content_type=message.content_type or "application/json",
                    content_encoding=message.content_encoding or "utf-8",
                    delivery_mode=PERSISTENT,
                )
                message.ack()
                moved += 1
        finally:
            channel.close()
    logger.info(f"[Broker] Replayed {moved} message(s) from '{settings.EMAIL_FAILED_QUEUE}'")
    return moved


def failure_headers(message: Message, attempts: int, reason: str) -> dict:
    headers = dict(message.headers or {})
    headers[ATTEMPTS_HEADER] = attempts
    headers[FAILURE_REASON_HEADER] = reason[:500]
    headers[FAILED_AT_HEADER] = datetime.now(dt_timezone.utc).isoformat()
    return headers
