import os
import uuid
from datetime import date, datetime

# Point the application settings at throwaway backends before anything is imported
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite://")
os.environ.setdefault("METRICS_ENABLED", "false")
os.environ.setdefault("DEFAULT_TIMEZONE", "UTC")

import pytest
from kombu import Connection
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stronghold.db.base import Base
from stronghold.models import Appointment, Membership, MembershipPackage, Nutritionist, Trainer, User
from stronghold.notifications.config import NotificationSettings
from stronghold.notifications.exceptions import PermanentDeliveryError, TransientDeliveryError

TODAY = date(2026, 3, 10)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_member(db):
    def _make(first_name="Amra", email=None, is_deleted=False):
        user = User(
            first_name=first_name,
            last_name="Hodzic",
            email=email or f"{first_name.lower()}@example.com",
            is_deleted=is_deleted,
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def make_membership(db):
    def _make(user, end_date: datetime, package_name="Premium", package_deleted=False):
        package = MembershipPackage(package_name=package_name, package_price=50, is_deleted=package_deleted)
        db.add(package)
        db.flush()
        membership = Membership(
            user_id=user.id,
            membership_package_id=package.id,
            start_date=datetime(2026, 1, 1),
            end_date=end_date,
        )
        db.add(membership)
        db.commit()
        return membership
    return _make


@pytest.fixture
def make_appointment(db):
    def _make(user, appointment_date: datetime, trainer=None, nutritionist=None):
        appointment = Appointment(
            user_id=user.id,
            trainer_id=trainer.id if trainer else None,
            nutritionist_id=nutritionist.id if nutritionist else None,
            appointment_date=appointment_date,
        )
        db.add(appointment)
        db.commit()
        return appointment
    return _make


@pytest.fixture
def make_trainer(db):
    def _make(first_name="Edin", last_name="Kovac", is_deleted=False):
        trainer = Trainer(first_name=first_name, last_name=last_name, is_deleted=is_deleted)
        db.add(trainer)
        db.commit()
        return trainer
    return _make


@pytest.fixture
def make_nutritionist(db):
    def _make(first_name="Lejla", last_name="Begic", is_deleted=False):
        nutritionist = Nutritionist(first_name=first_name, last_name=last_name, is_deleted=is_deleted)
        db.add(nutritionist)
        db.commit()
        return nutritionist
    return _make


class FakePublisher:
    """Records published messages; recipients in `fail_for` raise on publish."""

    def __init__(self, fail_for=()):
        self.published = []
        self.fail_for = set(fail_for)
        self.closed = False
        self.close_calls = 0

    def publish(self, message):
        if message.recipient_address in self.fail_for:
            raise ConnectionError(f"broker refused message for {message.recipient_address}")
        self.published.append(message)

    def close(self):
        self.closed = True
        self.close_calls += 1


@pytest.fixture
def publisher():
    return FakePublisher()


class FakeTransport:
    """Email transport double driven by a script of outcomes.

    Each entry in `script` is consumed by one send() call: None means
    success, an exception instance is raised. Calls past the end succeed.
    """

    def __init__(self, script=()):
        self.script = list(script)
        self.sent = []
        self.calls = 0

    def send(self, recipient_address, subject, html_body):
        self.calls += 1
        outcome = self.script.pop(0) if self.script else None
        if outcome is not None:
            raise outcome
        self.sent.append((recipient_address, subject, html_body))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def transient_error():
    return TransientDeliveryError("421 try again later")


@pytest.fixture
def permanent_error():
    return PermanentDeliveryError("550 mailbox unavailable")


def memory_connection():
    return Connection("memory://", transport_options={"polling_interval": 0.01})


@pytest.fixture
def connection_factory():
    return memory_connection


@pytest.fixture
def notification_settings():
    # The in-memory broker is process global, so every test gets its own queues
    suffix = uuid.uuid4().hex[:8]
    return NotificationSettings(
        _env_file=None,
        BROKER_URL="memory://",
        RABBITMQ_EXCHANGE=f"test.notifications.{suffix}",
        EMAIL_QUEUE=f"email_queue.{suffix}",
        EMAIL_FAILED_QUEUE=f"email_queue.{suffix}.failed",
        WORKER_STARTUP_DELAY_SECONDS=0,
        BROKER_CONNECT_ATTEMPTS=3,
        BROKER_RETRY_BACKOFF_SECONDS=0,
        WORKER_POLL_TIMEOUT_SECONDS=0.05,
        MAX_DELIVERY_ATTEMPTS=3,
        PUBLISH_MAX_RETRIES=0,
    )
