"""Broker side — connection lifecycle, topology, delivery."""

from amqp_pubsub.broker.connection import ConnectionManager, ConnectionState
from amqp_pubsub.broker.delivery import DeliveryPipeline, SubscriberConsumer
from amqp_pubsub.broker.factory import AioPikaConnectionFactory, ConnectionFactory
from amqp_pubsub.broker.topology import TopologyHandle, TopologyManager

__all__ = [
    "AioPikaConnectionFactory",
    "ConnectionFactory",
    "ConnectionManager",
    "ConnectionState",
    "DeliveryPipeline",
    "SubscriberConsumer",
    "TopologyHandle",
    "TopologyManager",
]
