"""SubscriptionManager — puts a subscription execution engine in front of callbacks.

The engine itself only delivers ``(error, payload)``. Deciding whether a
payload is relevant to a subscriber, and what result to hand over, belongs
to a query/filter engine plugged in here as ``resolve_and_filter``. One
manager handle may cover several triggers, all routed to one callback.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from amqp_pubsub.core.callbacks import maybe_await
from amqp_pubsub.core.naming import ChannelOptions
from amqp_pubsub.core.registry import SubscriberCallback
from amqp_pubsub.errors import UnknownSubscriptionError
from amqp_pubsub.logging_setup import create_child_logger
from amqp_pubsub.pubsub import AmqpPubSub


class _Skip:
    def __repr__(self) -> str:
        return "SKIP"


# Returned by resolve_and_filter to drop a delivery
SKIP: Any = _Skip()

# (trigger_name, payload, context) -> result | SKIP; sync or async
ResolveAndFilter = Callable[[str, Any, Any], Any]


@dataclass(frozen=True)
class TriggerSpec:
    """How one trigger of a manager subscription is routed and filtered.

    Attributes:
        channel_options: Routing qualifiers for the trigger.
        filter: Predicate on the raw payload; false drops the delivery
                before it reaches ``resolve_and_filter``.
    """

    channel_options: Optional[ChannelOptions] = None
    filter: Optional[Callable[[Any], bool]] = None


class SubscriptionManager:
    """Groups trigger subscriptions under one handle and resolves payloads."""

    def __init__(
        self,
        pubsub: AmqpPubSub,
        resolve_and_filter: Optional[ResolveAndFilter] = None,
        logger: Any = None,
    ) -> None:
        self._pubsub = pubsub
        self._resolve = resolve_and_filter
        self._handles: dict[int, list[int]] = {}
        self._ids = itertools.count(1)
        self._logger = create_child_logger(logger, "SubscriptionManager")

    async def subscribe(
        self,
        triggers: Mapping[str, Optional[TriggerSpec]],
        callback: SubscriberCallback,
        context: Any = None,
    ) -> int:
        """Subscribe ``callback`` to every trigger in ``triggers``.

        Either all triggers are subscribed or none: a failure part-way
        unsubscribes what was already set up and re-raises.
        """
        sub_ids: list[int] = []
        try:
            for trigger_name, spec in triggers.items():
                spec = spec or TriggerSpec()
                sub_ids.append(
                    await self._pubsub.subscribe(
                        trigger_name,
                        self._make_delivery(trigger_name, spec, callback, context),
                        spec.channel_options,
                    )
                )
        except BaseException:
            for sub_id in sub_ids:
                self._pubsub.unsubscribe(sub_id)
            raise

        handle = next(self._ids)
        self._handles[handle] = sub_ids
        self._logger.info("manager_subscribed", handle=handle, triggers=list(triggers))
        return handle

    def unsubscribe(self, handle: int) -> "asyncio.Future[list[None]]":
        """Remove every subscription behind ``handle``.

        Raises:
            UnknownSubscriptionError: ``handle`` is not live.
        """
        sub_ids = self._handles.pop(handle, None)
        if sub_ids is None:
            raise UnknownSubscriptionError(handle)
        self._logger.info("manager_unsubscribed", handle=handle)
        return asyncio.gather(*(self._pubsub.unsubscribe(sub_id) for sub_id in sub_ids))

    async def publish(
        self,
        trigger_name: str,
        payload: Any,
        channel_options: Optional[ChannelOptions] = None,
    ) -> None:
        await self._pubsub.publish(trigger_name, payload, channel_options)

    def _make_delivery(
        self,
        trigger_name: str,
        spec: TriggerSpec,
        callback: SubscriberCallback,
        context: Any,
    ) -> Callable[[Optional[BaseException], Any], Any]:
        async def deliver(error: Optional[BaseException], payload: Any) -> None:
            if error is not None:
                await maybe_await(callback, error, None)
                return
            if spec.filter is not None and not spec.filter(payload):
                return

            result = payload
            if self._resolve is not None:
                try:
                    result = await maybe_await(self._resolve, trigger_name, payload, context)
                except Exception as exc:
                    self._logger.warning("resolve_failed", trigger=trigger_name, error=str(exc))
                    await maybe_await(callback, exc, None)
                    return
            if result is SKIP:
                return
            await maybe_await(callback, None, result)

        return deliver
