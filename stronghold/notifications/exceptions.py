class NotificationError(Exception):
    """Base class for notification pipeline errors."""


class BrokerUnavailableError(NotificationError):
    """The broker could not be reached within the configured attempts."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Could not connect to RabbitMQ after {attempts} attempts: {last_error!r}")


class MalformedMessageError(NotificationError):
    """A queued payload is not a valid outbound email message."""


class DeliveryError(NotificationError):
    """The transport failed to hand the message over."""


class TransientDeliveryError(DeliveryError):
    """Worth retrying: timeouts, connection drops, 4xx SMTP replies."""


class PermanentDeliveryError(DeliveryError):
    """Will fail again on retry: refused recipient, 5xx SMTP replies."""
