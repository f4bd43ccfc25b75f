"""amqp-pubsub — trigger-based publish/subscribe over RabbitMQ."""

from __future__ import annotations

from amqp_pubsub.broker import AioPikaConnectionFactory, ConnectionFactory, ConnectionState
from amqp_pubsub.config import Settings
from amqp_pubsub.core.naming import ChannelOptions, default_trigger_transform, resolve_channel
from amqp_pubsub.errors import (
    BrokerConnectionError,
    PayloadDecodeError,
    PubSubError,
    TopologyError,
    UnknownSubscriptionError,
)
from amqp_pubsub.logging_setup import configure_logging, create_child_logger
from amqp_pubsub.manager import SKIP, SubscriptionManager, TriggerSpec
from amqp_pubsub.pubsub import AmqpPubSub

__all__ = [
    "AmqpPubSub",
    "SubscriptionManager",
    "TriggerSpec",
    "SKIP",
    "ChannelOptions",
    "default_trigger_transform",
    "resolve_channel",
    "Settings",
    "ConnectionFactory",
    "AioPikaConnectionFactory",
    "ConnectionState",
    "PubSubError",
    "TopologyError",
    "UnknownSubscriptionError",
    "PayloadDecodeError",
    "BrokerConnectionError",
    "configure_logging",
    "create_child_logger",
]
