"""Error kinds raised across the event pipeline.

Each kind carries a categorized ``reason`` suitable for the delivery log.
Exception messages may mention URLs; they never carry secrets.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for pipeline errors."""

    reason = "error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message)
        if reason:
            self.reason = reason


class DecodeError(RelayError):
    """Malformed event bytes. The message is acked and dropped."""

    reason = "decode_error"


class RegistryError(RelayError):
    """Subscription store or delivery log unavailable. The message is nacked."""

    reason = "registry_unavailable"


class TransportError(RelayError):
    """HTTP, TLS, DNS or timeout failure talking to an endpoint. Retryable."""

    reason = "transport_error"

    def __init__(self, message: str = "", reason: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, reason)
        self.status = status


class RejectError(RelayError):
    """Endpoint answered with a non-retryable status."""

    reason = "client_reject"

    def __init__(self, message: str = "", reason: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, reason)
        self.status = status


class GoneError(RejectError):
    """Endpoint answered 410 Gone."""

    reason = "endpoint_retired"


class BusError(RelayError):
    """Publish, pull, ack or lease extension failed."""

    reason = "bus_error"


class InternalError(RelayError):
    """Unexpected exception inside a delivery."""

    reason = "internal_error"


class SubscriptionNotFound(RelayError):
    reason = "subscription_gone"


class InvalidSubscription(RelayError, ValueError):
    reason = "invalid_subscription"
