"""Error taxonomy for the AMQP pub/sub engine.

Callers of ``subscribe``/``publish`` see ``TopologyError`` and
``BrokerConnectionError`` as raised exceptions. ``PayloadDecodeError`` is
never raised out of the engine; it is handed to the affected subscriber's
callback as the error argument.
"""

from __future__ import annotations

from typing import Optional


class PubSubError(Exception):
    """Base class for every error raised or reported by the engine."""


class TopologyError(PubSubError):
    """The broker refused an exchange/queue declaration or binding.

    Attributes:
        channel_name: Channel whose topology could not be provisioned.
    """

    def __init__(self, channel_name: str, message: str) -> None:
        super().__init__(f"{channel_name}: {message}")
        self.channel_name = channel_name


class UnknownSubscriptionError(PubSubError, KeyError):
    """``unsubscribe`` was called with an id that is not registered."""

    def __init__(self, subscriber_id: object) -> None:
        super().__init__(subscriber_id)
        self.subscriber_id = subscriber_id

    def __str__(self) -> str:
        return f"unknown subscription id: {self.subscriber_id!r}"


class PayloadDecodeError(PubSubError, ValueError):
    """A delivered message body could not be decoded.

    Attributes:
        body: The raw message body.
        content_type: Content type announced by the publisher, if any.
    """

    def __init__(self, message: str, body: bytes, content_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.body = body
        self.content_type = content_type


class BrokerConnectionError(PubSubError, ConnectionError):
    """The broker connection is unavailable (not yet recovered, or closed)."""
