"""Broker topology manager — exchanges, subscriber queues, dead-lettering.

For a channel name ``C`` the broker carries:

    exchange  C                (publish exchange, shared by all subscribers)
    exchange  C.DLQ.Exchange   (dead-letter exchange)
    queue     C.DLQ            (bound to C.DLQ.Exchange)
    queue     <server-named>   (one per subscriber: exclusive, auto-delete,
                                bound to C, dead-lettering to C.DLQ.Exchange)

The shared part is provisioned once per channel name per session by a
single in-flight task that concurrent callers share. Every routing key is
the channel name itself, so the same layout works for fanout, direct and
topic exchanges.
"""

from __future__ import annotations

import asyncio
import functools
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

import aio_pika
from aio_pika.abc import AbstractExchange, AbstractQueue
from aio_pika.exceptions import AMQPChannelError, AMQPConnectionError, ChannelInvalidStateError

from amqp_pubsub.broker.connection import ConnectionManager
from amqp_pubsub.config import Settings
from amqp_pubsub.core.naming import dead_letter_exchange_name, dead_letter_queue_name
from amqp_pubsub.errors import BrokerConnectionError, TopologyError
from amqp_pubsub.logging_setup import create_child_logger

# Errors meaning "the session is gone", as opposed to "the broker said no"
CONNECTION_ERRORS = (ChannelInvalidStateError, AMQPConnectionError, ConnectionError)

# Provisioned channel names remembered per session; older ones are redeclared
# (idempotently) on next use
PROVISIONED_CACHE_SIZE = 1024


@dataclass
class TopologyHandle:
    """A subscriber's slice of the topology.

    Attributes:
        channel_name: Channel the queue is bound to.
        queue: The subscriber's exclusive queue.
        generation: Connection generation the queue was declared in.
    """

    channel_name: str
    queue: AbstractQueue
    generation: int


class TopologyManager:
    """Provisions and tears down broker-side resources for channels."""

    def __init__(
        self,
        connection: ConnectionManager,
        settings: Optional[Settings] = None,
        logger: Any = None,
    ) -> None:
        self._connection = connection
        self._settings = settings or Settings()
        self._exchange_type = aio_pika.ExchangeType(self._settings.exchange_type)
        self._logger = create_child_logger(logger, "TopologyManager")

        self._inflight: dict[str, asyncio.Task[None]] = {}
        # Channel names provisioned in the session identified by _generation,
        # least recently used first
        self._provisioned: OrderedDict[str, None] = OrderedDict()
        self._generation = -1

    def is_provisioned(self, channel_name: str) -> bool:
        if self._generation != self._connection.generation or channel_name not in self._provisioned:
            return False
        self._provisioned.move_to_end(channel_name)
        return True

    async def ensure_exchange(self, channel_name: str) -> AbstractExchange:
        """Make sure the channel's exchange and dead-letter pair exist.

        Safe to call concurrently: one provisioning task runs per channel
        name and every caller waits on it. A cancelled caller does not
        cancel the task others are waiting on.

        Raises:
            TopologyError: The broker refused a declaration or binding.
            BrokerConnectionError: No usable session.
        """
        if not self.is_provisioned(channel_name):
            task = self._inflight.get(channel_name)
            if task is None:
                task = asyncio.get_running_loop().create_task(self._provision(channel_name))
                self._inflight[channel_name] = task
                task.add_done_callback(functools.partial(self._provision_done, channel_name))
            await asyncio.shield(task)

        channel = await self._connection.channel()
        return await channel.get_exchange(channel_name, ensure=False)

    async def ensure_topology(self, channel_name: str) -> TopologyHandle:
        """Provision the channel and a fresh subscriber queue bound to it.

        Raises:
            TopologyError: The broker refused a declaration or binding.
            BrokerConnectionError: No usable session.
        """
        exchange = await self.ensure_exchange(channel_name)
        channel = await self._connection.channel()
        generation = self._connection.generation
        try:
            queue = await channel.declare_queue(
                exclusive=True,
                auto_delete=True,
                arguments={"x-dead-letter-exchange": dead_letter_exchange_name(channel_name)},
            )
            await queue.bind(exchange, routing_key=channel_name)
        except CONNECTION_ERRORS as exc:
            raise BrokerConnectionError(f"{channel_name}: {exc}") from exc
        except AMQPChannelError as exc:
            raise TopologyError(channel_name, f"subscriber queue rejected: {exc}") from exc

        self._logger.info("subscriber_queue_declared", channel=channel_name, queue=queue.name)
        return TopologyHandle(channel_name=channel_name, queue=queue, generation=generation)

    async def teardown_subscriber_queue(self, handle: TopologyHandle) -> None:
        """Delete a subscriber's queue. Best effort: failures are logged.

        Queues from an earlier session are already gone (they are exclusive
        to the connection that declared them) and are skipped.
        """
        if handle.generation != self._connection.generation or not self._connection.is_connected:
            self._logger.debug("subscriber_queue_teardown_skipped", queue=handle.queue.name)
            return
        try:
            await handle.queue.delete(if_unused=False, if_empty=False)
        except (AMQPChannelError, *CONNECTION_ERRORS) as exc:
            self._logger.warning(
                "subscriber_queue_teardown_failed",
                channel=handle.channel_name,
                queue=handle.queue.name,
                error=str(exc),
            )
            return
        self._logger.info("subscriber_queue_deleted", channel=handle.channel_name, queue=handle.queue.name)

    async def _provision(self, channel_name: str) -> None:
        generation = await self._declare_shared(channel_name)
        if self._generation != generation:
            self._provisioned.clear()
            self._generation = generation
        self._provisioned[channel_name] = None
        self._provisioned.move_to_end(channel_name)
        while len(self._provisioned) > PROVISIONED_CACHE_SIZE:
            self._provisioned.popitem(last=False)

    def _provision_done(self, channel_name: str, task: "asyncio.Task[None]") -> None:
        if self._inflight.get(channel_name) is task:
            del self._inflight[channel_name]
        if not task.cancelled() and task.exception() is not None:
            # Retrieve it so a failure nobody awaited is not reported as lost
            self._logger.debug("channel_provision_failed", channel=channel_name, error=str(task.exception()))

    async def _declare_shared(self, channel_name: str) -> int:
        """Declare the exchange and dead-letter pair; return the session generation."""
        dlx_name = dead_letter_exchange_name(channel_name)
        dlq_name = dead_letter_queue_name(channel_name)

        async with self._connection.scratch_channel() as channel:
            generation = self._connection.generation
            try:
                await channel.declare_exchange(channel_name, self._exchange_type, durable=False)
                dlx = await channel.declare_exchange(dlx_name, self._exchange_type, durable=True)
                dlq = await channel.declare_queue(dlq_name, durable=True)
                await dlq.bind(dlx, routing_key=channel_name)
            except CONNECTION_ERRORS as exc:
                raise BrokerConnectionError(f"{channel_name}: {exc}") from exc
            except AMQPChannelError as exc:
                self._logger.error("topology_declare_rejected", channel=channel_name, error=str(exc))
                raise TopologyError(channel_name, f"declaration rejected: {exc}") from exc

        self._logger.info(
            "channel_topology_declared",
            channel=channel_name,
            exchange_type=self._exchange_type.value,
            dead_letter_exchange=dlx_name,
            dead_letter_queue=dlq_name,
        )
        return generation
