"""AmqpPubSub — trigger-based publish/subscribe over an AMQP broker.

Example:
    pubsub = AmqpPubSub()
    sub_id = await pubsub.subscribe("Trigger1", on_event)
    await pubsub.publish("Trigger1", {"id": 7})
    await pubsub.unsubscribe(sub_id)
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional, Union

import aio_pika
from aio_pika.exceptions import AMQPChannelError

from amqp_pubsub.broker.connection import ConnectionManager
from amqp_pubsub.broker.delivery import DeliveryPipeline, SubscriberConsumer
from amqp_pubsub.broker.factory import AioPikaConnectionFactory, ConnectionFactory
from amqp_pubsub.broker.topology import CONNECTION_ERRORS, TopologyManager
from amqp_pubsub.config import Settings
from amqp_pubsub.core.codec import encode_payload
from amqp_pubsub.core.naming import ChannelOptions, TriggerTransform, coerce_options, resolve_channel
from amqp_pubsub.core.registry import SubscriberCallback, SubscriptionRegistry
from amqp_pubsub.errors import BrokerConnectionError, TopologyError
from amqp_pubsub.logging_setup import create_child_logger

ChannelOptionsLike = Union[ChannelOptions, Iterable[str], None]


class AmqpPubSub:
    """Publish/subscribe engine bridging named triggers to AMQP exchanges.

    Args:
        connection_factory: Opens broker connections; defaults to aio-pika
            against ``settings.amqp_url``.
        logger: structlog logger to derive component loggers from.
        trigger_transform: ``(trigger, options) -> channel name``; must be
            pure and the same on the publishing and the subscribing side.
        settings: Engine settings; read from the environment when omitted.
    """

    def __init__(
        self,
        connection_factory: Optional[ConnectionFactory] = None,
        logger: Any = None,
        trigger_transform: Optional[TriggerTransform] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or Settings()
        self._logger = create_child_logger(logger, "AmqpPubSub")
        self._transform = trigger_transform

        factory = connection_factory or AioPikaConnectionFactory(self._settings.amqp_url)
        self._connection = ConnectionManager(factory, self._settings, logger)
        self._topology = TopologyManager(self._connection, self._settings, logger)
        self._registry = SubscriptionRegistry(logger)
        self._delivery = DeliveryPipeline(self._registry, self._settings, logger)
        self._teardowns: set[asyncio.Task[None]] = set()

        self._connection.add_recovery_hook(self._recover_subscriptions)

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    def channel_name(self, trigger_name: str, channel_options: ChannelOptionsLike = None) -> str:
        """Resolve a trigger the way publish and subscribe do."""
        return resolve_channel(trigger_name, channel_options, self._transform)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def publish(
        self,
        trigger_name: str,
        payload: Any,
        channel_options: ChannelOptionsLike = None,
    ) -> None:
        """Publish a payload to every subscriber of the resolved channel.

        Raises:
            TopologyError: The channel's exchange could not be provisioned.
            BrokerConnectionError: No usable broker session.
            TypeError: The payload is neither a string nor JSON-encodable.
        """
        channel_name = self.channel_name(trigger_name, channel_options)
        encoded = encode_payload(payload)
        exchange = await self._topology.ensure_exchange(channel_name)

        message = aio_pika.Message(
            body=encoded.body,
            content_type=encoded.content_type,
            content_encoding=encoded.content_encoding,
        )
        try:
            await exchange.publish(message, routing_key=channel_name)
        except CONNECTION_ERRORS as exc:
            raise BrokerConnectionError(f"publish to {channel_name} failed: {exc}") from exc
        except AMQPChannelError as exc:
            raise TopologyError(channel_name, f"publish rejected: {exc}") from exc

        self._logger.debug(
            "message_published",
            trigger=trigger_name,
            channel=channel_name,
            body_length=len(encoded.body),
        )

    async def subscribe(
        self,
        trigger_name: str,
        callback: SubscriberCallback,
        channel_options: ChannelOptionsLike = None,
    ) -> int:
        """Subscribe ``callback(error, payload)`` to a trigger.

        Topology is provisioned before the subscription is registered, so a
        failed subscribe leaves nothing behind. Cancelling a pending
        subscribe rolls it back the same way.

        Returns:
            The new subscriber id.

        Raises:
            TopologyError: The broker refused the channel's topology.
            BrokerConnectionError: No usable broker session.
        """
        options = coerce_options(channel_options)
        channel_name = self.channel_name(trigger_name, options)
        handle = await self._topology.ensure_topology(channel_name)

        sub_id: Optional[int] = None
        try:
            sub_id = self._registry.register(trigger_name, options, channel_name, callback)
            subscription = self._registry[sub_id]
            await self._delivery.attach(subscription, handle)
        except BaseException:
            consumer: Optional[SubscriberConsumer] = None
            if sub_id is not None and sub_id in self._registry:
                consumer = self._delivery.stop(self._registry.remove(sub_id))
            self._schedule_teardown(consumer, handle)
            raise

        self._logger.info(
            "subscribed",
            subscriber_id=sub_id,
            trigger=trigger_name,
            channel=channel_name,
            queue=handle.queue.name,
        )
        return sub_id

    def unsubscribe(self, sub_id: int) -> "asyncio.Future[None]":
        """Remove a subscription.

        The registry entry is removed and the callback silenced immediately;
        the broker-side teardown (consumer cancel, queue delete) runs in a
        background task. The returned future may be awaited; cancelling the
        awaiting caller (even the subscription's own callback) does not
        cancel the teardown.

        Raises:
            UnknownSubscriptionError: ``sub_id`` is not registered.
        """
        subscription = self._registry.remove(sub_id)
        consumer = self._delivery.stop(subscription)
        self._logger.info("unsubscribed", subscriber_id=sub_id, channel=subscription.channel_name)
        task = self._schedule_teardown(consumer, consumer.handle if consumer is not None else None)
        return asyncio.shield(task)

    async def close(self) -> None:
        """Drop every subscription and close the broker session."""
        for subscription in self._registry.clear():
            self._schedule_teardown(self._delivery.stop(subscription), None)
        if self._teardowns:
            await asyncio.gather(*self._teardowns, return_exceptions=True)
        await self._connection.close()
        self._logger.info("pubsub_closed")

    async def __aenter__(self) -> "AmqpPubSub":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule_teardown(self, consumer: Optional[SubscriberConsumer], handle: Any) -> "asyncio.Task[None]":
        if handle is None and consumer is not None:
            handle = consumer.handle
        task = asyncio.get_running_loop().create_task(self._teardown(consumer, handle))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)
        return task

    async def _teardown(self, consumer: Optional[SubscriberConsumer], handle: Any) -> None:
        if consumer is not None:
            await self._delivery.cancel_consumer(consumer)
        if handle is not None:
            await self._topology.teardown_subscriber_queue(handle)

    async def _recover_subscriptions(self) -> None:
        """Re-provision and re-attach every live subscription, in order.

        Subscriptions already attached in the current session (subscribed
        while recovery was running) are skipped. A subscription whose
        topology the broker now refuses is told through its callback and
        kept registered; a lost session aborts recovery so it is retried.
        """
        generation = self._connection.generation
        recovered = 0
        for subscription in self._registry.snapshot():
            consumer = subscription.consumer
            if consumer is not None and consumer.generation == generation:
                continue
            if subscription.id not in self._registry:
                continue
            try:
                handle = await self._topology.ensure_topology(subscription.channel_name)
            except TopologyError as exc:
                self._logger.error(
                    "subscription_recovery_failed",
                    subscriber_id=subscription.id,
                    channel=subscription.channel_name,
                    error=str(exc),
                )
                self._delivery.report_error(subscription, exc)
                continue

            if subscription.id not in self._registry:
                # Unsubscribed while its queue was being declared
                await self._topology.teardown_subscriber_queue(handle)
                continue
            await self._delivery.attach(subscription, handle)
            recovered += 1

        self._logger.info("subscriptions_recovered", count=recovered, generation=generation)
