"""Delivery pipeline — broker messages in, ``callback(error, payload)`` out.

Each subscription gets one ``SubscriberConsumer``: the broker consumer on
its queue feeds an in-process ``asyncio.Queue`` and a worker task drains it,
invoking the callback one item at a time. Messages are settled as soon as
they are decoded, before the callback runs, so a message reaches a callback
at most once and a slow or failing callback never holds the broker queue.
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Optional

from aio_pika.abc import AbstractIncomingMessage
from aio_pika.exceptions import AMQPChannelError, AMQPError, ChannelInvalidStateError

from amqp_pubsub.broker.topology import CONNECTION_ERRORS, TopologyHandle
from amqp_pubsub.config import Settings
from amqp_pubsub.core.callbacks import maybe_await
from amqp_pubsub.core.codec import decode_payload
from amqp_pubsub.core.registry import Subscription, SubscriptionRegistry
from amqp_pubsub.errors import BrokerConnectionError, PayloadDecodeError, TopologyError
from amqp_pubsub.logging_setup import create_child_logger


@dataclass(eq=False)
class SubscriberConsumer:
    """Consumer state of one subscription.

    ``handle`` and ``consumer_tag`` are replaced after a reconnect; the inbox
    and the worker survive it, so undelivered items are not lost.
    """

    subscription_id: int
    inbox: asyncio.Queue
    handle: Optional[TopologyHandle] = None
    consumer_tag: Optional[str] = None
    worker: Optional[asyncio.Task] = field(default=None, repr=False)
    stopped: bool = False

    @property
    def generation(self) -> Optional[int]:
        return self.handle.generation if self.handle is not None else None


class DeliveryPipeline:
    """Attaches consumers to subscriber queues and dispatches deliveries."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        settings: Optional[Settings] = None,
        logger: Any = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or Settings()
        self._logger = create_child_logger(logger, "DeliveryPipeline")

    async def attach(self, subscription: Subscription, handle: TopologyHandle) -> SubscriberConsumer:
        """Start consuming ``handle.queue`` on behalf of ``subscription``.

        On first attach the consumer and its worker are created; on later
        attaches (recovery) only the broker side is replaced.
        """
        consumer = subscription.consumer
        if consumer is None:
            consumer = SubscriberConsumer(
                subscription_id=subscription.id,
                inbox=asyncio.Queue(maxsize=self._settings.subscriber_buffer_size),
            )
            consumer.worker = asyncio.get_running_loop().create_task(
                self._run_worker(subscription, consumer),
                name=f"amqp-pubsub-subscriber-{subscription.id}",
            )
            subscription.consumer = consumer

        consumer.handle = handle
        consumer.consumer_tag = None
        try:
            consumer.consumer_tag = await handle.queue.consume(
                functools.partial(self._on_message, consumer),
                no_ack=False,
            )
        except CONNECTION_ERRORS as exc:
            raise BrokerConnectionError(f"{handle.channel_name}: consume failed: {exc}") from exc
        except AMQPChannelError as exc:
            raise TopologyError(handle.channel_name, f"consume rejected: {exc}") from exc
        self._logger.debug(
            "consumer_attached",
            subscriber_id=subscription.id,
            queue=handle.queue.name,
            generation=handle.generation,
        )
        return consumer

    def stop(self, subscription: Subscription) -> Optional[SubscriberConsumer]:
        """Stop dispatching for a subscription; pending items are dropped.

        Called from the subscription's own callback, the worker is left to
        finish that callback and leaves its loop afterwards.
        """
        consumer = subscription.consumer
        if consumer is None:
            return None
        consumer.stopped = True
        worker = consumer.worker
        if worker is not None and not worker.done() and worker is not asyncio.current_task():
            worker.cancel()
        return consumer

    async def cancel_consumer(self, consumer: SubscriberConsumer) -> None:
        """Cancel the broker consumer. Best effort: failures are logged."""
        handle = consumer.handle
        if handle is None or consumer.consumer_tag is None:
            return
        try:
            await handle.queue.cancel(consumer.consumer_tag)
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as exc:
            self._logger.debug(
                "consumer_cancel_failed",
                subscriber_id=consumer.subscription_id,
                error=str(exc),
            )

    def report_error(self, subscription: Subscription, error: BaseException) -> None:
        """Hand an error to the subscription's callback through its inbox."""
        consumer = subscription.consumer
        if consumer is None or consumer.stopped:
            return
        try:
            consumer.inbox.put_nowait((error, None))
        except asyncio.QueueFull:
            self._logger.warning("subscriber_inbox_full", subscriber_id=subscription.id, dropped="error")

    async def _on_message(self, consumer: SubscriberConsumer, message: AbstractIncomingMessage) -> None:
        if consumer.stopped or consumer.subscription_id not in self._registry:
            # Arrived after unsubscribe: park it in the dead-letter queue
            self._logger.debug("message_dead_lettered", subscriber_id=consumer.subscription_id, reason="unsubscribed")
            await self._settle(consumer, message, reject=True)
            return

        try:
            payload = decode_payload(message.body, message.content_type)
        except PayloadDecodeError as exc:
            self._logger.warning(
                "payload_decode_failed",
                subscriber_id=consumer.subscription_id,
                content_type=message.content_type,
                error=str(exc),
            )
            if await self._settle(consumer, message, reject=self._settings.dead_letter_undecodable):
                await consumer.inbox.put((exc, None))
            return

        if await self._settle(consumer, message, reject=False):
            self._logger.debug("message_received", subscriber_id=consumer.subscription_id)
            await consumer.inbox.put((None, payload))

    async def _settle(self, consumer: SubscriberConsumer, message: AbstractIncomingMessage, reject: bool) -> bool:
        """Ack or reject (without requeue) exactly once.

        Returns False when the broker could not be told; the message will
        then not be dispatched, keeping delivery at most once.
        """
        try:
            if reject:
                await message.reject(requeue=False)
            else:
                await message.ack()
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as exc:
            self._logger.warning(
                "message_settle_failed",
                subscriber_id=consumer.subscription_id,
                error=str(exc),
            )
            return False
        return True

    async def _run_worker(self, subscription: Subscription, consumer: SubscriberConsumer) -> None:
        while not consumer.stopped:
            error, payload = await consumer.inbox.get()
            try:
                if not consumer.stopped:
                    await maybe_await(subscription.callback, error, payload)
            except Exception:
                # The subscriber owns its callback's failures
                self._logger.exception("subscriber_callback_failed", subscriber_id=subscription.id)
            finally:
                consumer.inbox.task_done()
