#!/usr/bin/env python3
"""
Email delivery worker - consumes the email queue and hands messages to SMTP

Single consumer, explicit pull loop, at most WORKER_PREFETCH_COUNT messages
in flight. Run with:

    python -m stronghold.notifications.worker

SIGTERM/SIGINT stop the loop once the in-flight message is settled.
"""

import logging
import signal
import sys
import threading
from enum import Enum
from typing import Optional

from kombu.message import Message
from pydantic import ValidationError

from stronghold.core.config import settings as core_settings
from .broker import (
    ATTEMPTS_HEADER,
    BrokerConnectionManager,
    BrokerSession,
    delivery_attempts,
    failure_headers,
)
from .config import NotificationSettings, get_notification_settings, get_smtp_settings
from .exceptions import BrokerUnavailableError, MalformedMessageError, PermanentDeliveryError
from .metrics import (
    worker_dead_lettered_total,
    worker_delivered_total,
    worker_malformed_total,
    worker_retried_total,
)
from .schemas import OutboundMessage
from .transport import EmailTransport, SmtpEmailTransport

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    RETRIED = "retried"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    DROPPED = "dropped"


def _truncate(body, limit: int = 200) -> str:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    text = str(body)
    return text if len(text) <= limit else text[:limit] + "..."


class DeliveryWorker:
    """Pulls one message at a time and settles it exactly once.

    - delivered: ack
    - transient failure below the attempt limit: republish with the counter
      incremented, then ack (falls back to reject+requeue if the republish fails)
    - permanent failure or attempts exhausted: copy to the failed queue, then ack
    - unparseable payload: reject without requeue
    """

    def __init__(
        self,
        settings: NotificationSettings,
        transport: EmailTransport,
        connection_manager: Optional[BrokerConnectionManager] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.settings = settings
        self.transport = transport
        self.stop_event = stop_event or threading.Event()
        self.connection_manager = connection_manager or BrokerConnectionManager(
            settings, stop_event=self.stop_event
        )
        self.session: Optional[BrokerSession] = None
        self.processed_count = 0

    def start(self) -> bool:
        """Wait out the startup delay and connect. False if stopped meanwhile.

        Raises BrokerUnavailableError when the broker stays unreachable.
        """
        delay = self.settings.WORKER_STARTUP_DELAY_SECONDS
        if delay > 0:
            logger.info(f"[DeliveryWorker] Waiting {delay}s before connecting to RabbitMQ")
            if self.stop_event.wait(delay):
                return False
        self.session = self.connection_manager.connect()
        return self.session is not None

    def run(self) -> None:
        if self.session is None and not self.start():
            logger.info("[DeliveryWorker] Stopped before the first connection")
            return

        logger.info(f"[DeliveryWorker] Waiting for messages on '{self.session.queue.name}'")
        while not self.stop_event.is_set():
            session = self.session
            try:
                message = session.subscription.get(timeout=self.settings.WORKER_POLL_TIMEOUT_SECONDS)
                if message is None:
                    continue
                self.handle(message)
            except session.recoverable_errors as e:
                logger.warning(f"[DeliveryWorker] Lost connection to RabbitMQ: {e!r}; reconnecting")
                session.close()
                self.session = None
                self.session = self.connection_manager.connect()
                if self.session is None:
                    break

        logger.info(f"[DeliveryWorker] Stopping after {self.processed_count} message(s)")

    def handle(self, message: Message) -> DeliveryOutcome:
        self.processed_count += 1
        attempts = delivery_attempts(message)

        try:
            outbound = OutboundMessage.from_wire(message.body)
        except MalformedMessageError as e:
            worker_malformed_total.inc()
            logger.error(
                f"[DeliveryWorker] Dropping malformed message {_truncate(message.body)!r}: {e}"
            )
            message.reject(requeue=False)
            return DeliveryOutcome.DROPPED

        logger.info(
            f"[DeliveryWorker] Sending '{outbound.subject}' to {outbound.recipient_address} "
            f"(attempt {attempts})"
        )
        try:
            self.transport.send(outbound.recipient_address, outbound.subject, outbound.body)
        except PermanentDeliveryError as e:
            logger.error(f"[DeliveryWorker] Permanent failure for {outbound.recipient_address}: {e}")
            return self._dead_letter(message, attempts, f"permanent: {e}", "permanent")
        except Exception as e:
            if attempts >= self.settings.MAX_DELIVERY_ATTEMPTS:
                logger.error(
                    f"[DeliveryWorker] Giving up on {outbound.recipient_address} after "
                    f"{attempts} attempt(s): {e}"
                )
                return self._dead_letter(message, attempts, f"exhausted: {e}", "exhausted")
            logger.warning(
                f"[DeliveryWorker] Transient failure for {outbound.recipient_address} "
                f"(attempt {attempts}/{self.settings.MAX_DELIVERY_ATTEMPTS}): {e}"
            )
            return self._retry(message, attempts)

        message.ack()
        worker_delivered_total.inc()
        logger.info(f"[DeliveryWorker] Email sent to {outbound.recipient_address}")
        return DeliveryOutcome.DELIVERED

    def _retry(self, message: Message, attempts: int) -> DeliveryOutcome:
        headers = dict(message.headers or {})
        headers[ATTEMPTS_HEADER] = attempts + 1
        try:
            self.session.republish(message, self.session.queue, headers)
        except Exception as e:
            logger.warning(f"[DeliveryWorker] Republish failed ({e!r}); requeueing original")
            message.reject(requeue=True)
            return DeliveryOutcome.REQUEUED
        message.ack()
        worker_retried_total.inc()
        return DeliveryOutcome.RETRIED

    def _dead_letter(self, message: Message, attempts: int, reason: str, label: str) -> DeliveryOutcome:
        try:
            self.session.republish(
                message,
                self.session.failed_queue,
                failure_headers(message, attempts, reason),
            )
        except Exception as e:
            logger.warning(f"[DeliveryWorker] Could not move message to failed queue ({e!r}); requeueing")
            message.reject(requeue=True)
            return DeliveryOutcome.REQUEUED
        message.ack()
        worker_dead_lettered_total.labels(reason=label).inc()
        return DeliveryOutcome.DEAD_LETTERED

    def stop(self) -> None:
        self.stop_event.set()

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None


def main() -> int:
    logging.basicConfig(
        level=core_settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        smtp_settings = get_smtp_settings()
    except ValidationError as e:
        logger.critical(f"[DeliveryWorker] SMTP configuration is missing or invalid: {e}")
        return 1

    worker = DeliveryWorker(get_notification_settings(), SmtpEmailTransport(smtp_settings))

    def signal_handler(signum, frame):
        logger.info(f"[DeliveryWorker] Received signal {signum}, initiating graceful shutdown...")
        worker.stop()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        worker.run()
    except BrokerUnavailableError as e:
        logger.critical(f"[DeliveryWorker] {e}")
        return 1
    finally:
        worker.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
