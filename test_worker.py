import threading
import time

import pytest
from amqp.exceptions import ConnectionForced
from kombu import Producer

from conftest import FakeTransport, memory_connection
from stronghold.notifications import worker as worker_module
from stronghold.notifications.broker import (
    ATTEMPTS_HEADER,
    FAILURE_REASON_HEADER,
    BrokerConnectionManager,
    QueuePublisher,
    build_email_queue,
    build_failed_queue,
    delivery_attempts,
)
from stronghold.notifications.exceptions import BrokerUnavailableError, TransientDeliveryError
from stronghold.notifications.schemas import OutboundMessage
from stronghold.notifications.worker import DeliveryOutcome, DeliveryWorker


def _message(to="amra@example.com"):
    return OutboundMessage(recipient_address=to, subject="Vas termin je sutra!", body="<p>Termin</p>")


def _enqueue(settings, *messages):
    publisher = QueuePublisher(settings, connection_factory=memory_connection)
    for message in messages:
        publisher.publish(message)
    publisher.close()


def _enqueue_raw(settings, body):
    with memory_connection() as connection:
        queue = build_email_queue(settings)
        producer = Producer(connection.channel())
        producer.publish(
            body,
            exchange=queue.exchange,
            routing_key=queue.routing_key,
            declare=[queue],
            content_type="application/json",
            content_encoding="utf-8",
        )


def _drain_failed(settings):
    messages = []
    with memory_connection() as connection:
        queue = build_failed_queue(settings).bind(connection.channel())
        queue.declare()
        while True:
            message = queue.get(no_ack=True)
            if message is None:
                return messages
            messages.append(message)


def _started_worker(settings, transport):
    manager = BrokerConnectionManager(settings, connection_factory=memory_connection)
    worker = DeliveryWorker(settings, transport, connection_manager=manager)
    assert worker.start()
    return worker


def _next(worker, timeout=1.0):
    message = worker.session.subscription.get(timeout=timeout)
    assert message is not None, "expected a message on the queue"
    return message


@pytest.fixture
def started(notification_settings):
    workers = []

    def _start(transport):
        worker = _started_worker(notification_settings, transport)
        workers.append(worker)
        return worker

    yield _start
    for worker in workers:
        worker.close()


def test_delivered_message_is_acked(notification_settings, started):
    _enqueue(notification_settings, _message())
    transport = FakeTransport()
    worker = started(transport)

    outcome = worker.handle(_next(worker))

    assert outcome == DeliveryOutcome.DELIVERED
    assert transport.sent == [("amra@example.com", "Vas termin je sutra!", "<p>Termin</p>")]
    assert worker.session.subscription.get(timeout=0.1) is None


def test_messages_are_delivered_in_publish_order(notification_settings, started):
    _enqueue(notification_settings, _message("a@example.com"), _message("b@example.com"))
    transport = FakeTransport()
    worker = started(transport)

    worker.handle(_next(worker))
    worker.handle(_next(worker))

    assert [sent[0] for sent in transport.sent] == ["a@example.com", "b@example.com"]


@pytest.mark.parametrize("body", ["not json at all", '{"Subject": "missing recipient"}', '{"ToEmail": ""}'])
def test_malformed_payload_is_dropped(notification_settings, started, body):
    _enqueue_raw(notification_settings, body)
    transport = FakeTransport()
    worker = started(transport)

    outcome = worker.handle(_next(worker))

    assert outcome == DeliveryOutcome.DROPPED
    assert transport.calls == 0
    assert worker.session.subscription.get(timeout=0.1) is None
    assert _drain_failed(notification_settings) == []


def test_transient_failure_is_retried_then_delivered_once(notification_settings, started, transient_error):
    _enqueue(notification_settings, _message())
    transport = FakeTransport(script=[transient_error])
    worker = started(transport)

    first = _next(worker)
    assert delivery_attempts(first) == 1
    assert worker.handle(first) == DeliveryOutcome.RETRIED

    second = _next(worker)
    assert second.headers[ATTEMPTS_HEADER] == 2
    assert worker.handle(second) == DeliveryOutcome.DELIVERED

    assert transport.calls == 2
    assert len(transport.sent) == 1
    assert worker.session.subscription.get(timeout=0.1) is None


def test_unexpected_transport_error_counts_as_transient(notification_settings, started):
    _enqueue(notification_settings, _message())
    worker = started(FakeTransport(script=[RuntimeError("socket closed")]))

    assert worker.handle(_next(worker)) == DeliveryOutcome.RETRIED
    assert worker.handle(_next(worker)) == DeliveryOutcome.DELIVERED


def test_permanent_failure_goes_to_failed_queue(notification_settings, started, permanent_error):
    _enqueue(notification_settings, _message())
    transport = FakeTransport(script=[permanent_error])
    worker = started(transport)

    assert worker.handle(_next(worker)) == DeliveryOutcome.DEAD_LETTERED
    assert worker.session.subscription.get(timeout=0.1) is None

    failed = _drain_failed(notification_settings)
    assert len(failed) == 1
    assert failed[0].headers[FAILURE_REASON_HEADER].startswith("permanent")
    assert OutboundMessage.from_wire(failed[0].body) == _message()


def test_retries_stop_at_max_delivery_attempts(notification_settings, started):
    _enqueue(notification_settings, _message())
    transport = FakeTransport(script=[TransientDeliveryError("timeout")] * 5)
    worker = started(transport)

    outcomes = [worker.handle(_next(worker)) for _ in range(notification_settings.MAX_DELIVERY_ATTEMPTS)]

    assert outcomes == [
        DeliveryOutcome.RETRIED,
        DeliveryOutcome.RETRIED,
        DeliveryOutcome.DEAD_LETTERED,
    ]
    assert transport.calls == 3
    assert worker.session.subscription.get(timeout=0.1) is None

    failed = _drain_failed(notification_settings)
    assert len(failed) == 1
    assert failed[0].headers[ATTEMPTS_HEADER] == 3
    assert failed[0].headers[FAILURE_REASON_HEADER].startswith("exhausted")


def test_failed_republish_falls_back_to_requeue(notification_settings, started, transient_error, monkeypatch):
    _enqueue(notification_settings, _message())
    transport = FakeTransport(script=[transient_error])
    worker = started(transport)

    def broken_republish(message, queue, headers):
        raise ConnectionError("channel closed")

    monkeypatch.setattr(worker.session, "republish", broken_republish)
    assert worker.handle(_next(worker)) == DeliveryOutcome.REQUEUED

    monkeypatch.undo()
    redelivered = _next(worker)
    assert worker.handle(redelivered) == DeliveryOutcome.DELIVERED
    assert len(transport.sent) == 1


def test_prefetch_limits_messages_in_flight(notification_settings, started):
    _enqueue(notification_settings, _message("a@example.com"), _message("b@example.com"))
    worker = started(FakeTransport())

    first = _next(worker)
    # The second message stays on the broker until the first is settled
    assert worker.session.subscription.get(timeout=0.1) is None

    worker.handle(first)
    assert _next(worker) is not None


def test_competing_workers_each_settle_a_message_exactly_once(notification_settings, started):
    recipients = ["a@example.com", "b@example.com", "c@example.com", "d@example.com"]
    _enqueue(notification_settings, *(_message(to) for to in recipients))
    first_transport, second_transport = FakeTransport(), FakeTransport()
    first, second = started(first_transport), started(second_transport)

    for _ in range(2):
        # Each worker holds one unacked message, so the other gets the next one
        first_message = _next(first)
        second_message = _next(second)
        assert first.handle(first_message) == DeliveryOutcome.DELIVERED
        assert second.handle(second_message) == DeliveryOutcome.DELIVERED

    assert len(first_transport.sent) == 2
    assert len(second_transport.sent) == 2
    delivered = [sent[0] for sent in first_transport.sent + second_transport.sent]
    assert sorted(delivered) == recipients
    assert first.session.subscription.get(timeout=0.1) is None
    assert second.session.subscription.get(timeout=0.1) is None
    assert _drain_failed(notification_settings) == []


def test_run_loop_delivers_until_stopped(notification_settings):
    _enqueue(notification_settings, _message("a@example.com"), _message("b@example.com"))
    transport = FakeTransport()
    worker = _started_worker(notification_settings, transport)

    thread = threading.Thread(target=worker.run)
    thread.start()
    deadline = time.monotonic() + 5
    while len(transport.sent) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    worker.stop()
    thread.join(timeout=5)
    worker.close()

    assert not thread.is_alive()
    assert [sent[0] for sent in transport.sent] == ["a@example.com", "b@example.com"]


def test_run_loop_reconnects_after_connection_loss(notification_settings, monkeypatch):
    _enqueue(notification_settings, _message())
    transport = FakeTransport()
    worker = _started_worker(notification_settings, transport)
    first_session = worker.session

    def lost_connection(timeout):
        raise ConnectionForced("connection reset by peer")

    monkeypatch.setattr(first_session.subscription, "get", lost_connection)

    thread = threading.Thread(target=worker.run)
    thread.start()
    deadline = time.monotonic() + 5
    while not transport.sent and time.monotonic() < deadline:
        time.sleep(0.01)
    worker.stop()
    thread.join(timeout=5)
    worker.close()

    assert worker.session is None
    assert [sent[0] for sent in transport.sent] == ["amra@example.com"]


class RefusingConnection:
    def connect(self):
        raise ConnectionRefusedError("[Errno 111] Connection refused")

    def release(self):
        pass


def test_connect_uses_linear_backoff_then_gives_up(notification_settings):
    delays = []
    settings = notification_settings.model_copy(
        update={"BROKER_CONNECT_ATTEMPTS": 4, "BROKER_RETRY_BACKOFF_SECONDS": 3}
    )
    manager = BrokerConnectionManager(settings, connection_factory=RefusingConnection, sleep=delays.append)

    with pytest.raises(BrokerUnavailableError) as exc_info:
        manager.connect()

    assert delays == [3, 6, 9]
    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.last_error, ConnectionRefusedError)


def test_worker_start_fails_closed_when_broker_unreachable(notification_settings):
    manager = BrokerConnectionManager(
        notification_settings, connection_factory=RefusingConnection, sleep=lambda seconds: None
    )
    transport = FakeTransport()
    worker = DeliveryWorker(notification_settings, transport, connection_manager=manager)

    with pytest.raises(BrokerUnavailableError):
        worker.run()
    assert transport.calls == 0


def test_stop_during_backoff_abandons_connect(notification_settings):
    stop_event = threading.Event()
    stop_event.set()
    manager = BrokerConnectionManager(
        notification_settings, connection_factory=RefusingConnection, stop_event=stop_event
    )

    assert manager.connect() is None


def test_main_exits_when_smtp_settings_missing(monkeypatch):
    for name in ("SMTP_HOST", "SMTP_PORT", "SMTP_USERNAME", "SMTP_PASSWORD", "SMTP_USE_SSL"):
        monkeypatch.delenv(name, raising=False)
    assert worker_module.main() == 1


def test_main_exits_when_broker_unreachable(monkeypatch, notification_settings):
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("SMTP_PORT", "587")
    monkeypatch.setenv("SMTP_USERNAME", "noreply@example.com")
    monkeypatch.setenv("SMTP_PASSWORD", "secret")
    monkeypatch.setenv("SMTP_USE_SSL", "true")
    monkeypatch.setattr(worker_module, "get_notification_settings", lambda: notification_settings)
    monkeypatch.setattr(worker_module.signal, "signal", lambda signum, handler: None)

    def unreachable(self):
        raise BrokerUnavailableError(3, ConnectionRefusedError("refused"))

    monkeypatch.setattr(DeliveryWorker, "run", unreachable)
    assert worker_module.main() == 1
