"""Broker-independent parts — naming, wire codec, subscription registry."""

from amqp_pubsub.core.codec import decode_payload, encode_payload
from amqp_pubsub.core.naming import (
    ChannelOptions,
    TriggerTransform,
    dead_letter_exchange_name,
    dead_letter_queue_name,
    default_trigger_transform,
    resolve_channel,
)
from amqp_pubsub.core.registry import Subscription, SubscriptionRegistry

__all__ = [
    "ChannelOptions",
    "TriggerTransform",
    "default_trigger_transform",
    "resolve_channel",
    "dead_letter_exchange_name",
    "dead_letter_queue_name",
    "encode_payload",
    "decode_payload",
    "Subscription",
    "SubscriptionRegistry",
]
