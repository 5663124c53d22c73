from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from stronghold.core.config import running_in_container


def _default_broker_host() -> str:
    return "rabbitmq" if running_in_container() else "localhost"


class NotificationSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # RabbitMQ configuration
    RABBITMQ_HOST: str = Field(default_factory=_default_broker_host)
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "stronghold.notifications"
    EMAIL_QUEUE: str = "email_queue"
    EMAIL_FAILED_QUEUE: str = "email_queue.failed"
    # Overrides the host/port/credentials above when set (e.g. memory:// in tests)
    BROKER_URL: Optional[str] = None

    # Scanners
    SCANNER_ENABLED: bool = True
    SCANNER_STARTUP_DELAY_SECONDS: float = 30
    SCANNER_INTERVAL_SECONDS: float = 24 * 60 * 60
    PUBLISH_MAX_RETRIES: int = 3

    # Delivery worker
    WORKER_STARTUP_DELAY_SECONDS: float = 10
    BROKER_CONNECT_ATTEMPTS: int = Field(default=10, ge=1)
    BROKER_RETRY_BACKOFF_SECONDS: float = 3
    WORKER_PREFETCH_COUNT: int = Field(default=1, ge=1)
    WORKER_POLL_TIMEOUT_SECONDS: float = 1.0
    MAX_DELIVERY_ATTEMPTS: int = Field(default=5, ge=1)

    @property
    def broker_url(self) -> str:
        if self.BROKER_URL:
            return self.BROKER_URL
        vhost = self.RABBITMQ_VHOST.lstrip("/")
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/{vhost}"
        )


class SmtpSettings(BaseSettings):
    """SMTP credentials for the delivery worker.

    There are deliberately no defaults for the connection fields: a worker
    started without them fails validation and exits instead of consuming
    messages it cannot deliver.
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    SMTP_HOST: str
    SMTP_PORT: int
    SMTP_USERNAME: str
    SMTP_PASSWORD: str
    SMTP_USE_SSL: bool
    SMTP_FROM: Optional[str] = None
    SMTP_TIMEOUT_SECONDS: float = 30

    @property
    def from_address(self) -> str:
        return self.SMTP_FROM or self.SMTP_USERNAME


def get_notification_settings() -> NotificationSettings:
    if running_in_container():
        return NotificationSettings(_env_file=None)
    return NotificationSettings()


def get_smtp_settings() -> SmtpSettings:
    if running_in_container():
        return SmtpSettings(_env_file=None)
    return SmtpSettings()
