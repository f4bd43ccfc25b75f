"""In-memory subscription registry.

The registry is the single source of truth for "is this subscriber id
live". It uses atomic dict replacement so that recovery can iterate a
consistent snapshot while subscribe/unsubscribe keep mutating it.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from amqp_pubsub.core.naming import ChannelOptions
from amqp_pubsub.errors import UnknownSubscriptionError
from amqp_pubsub.logging_setup import create_child_logger

# (error, payload) -> None, or an awaitable for async callbacks
SubscriberCallback = Callable[[Optional[BaseException], Any], Any]


@dataclass(eq=False)
class Subscription:
    """One registered subscriber.

    Attributes:
        id: Unique id, monotonically assigned, never reused.
        trigger_name: Logical event name subscribed to.
        channel_options: Routing qualifiers supplied at subscribe time.
        channel_name: Resolved broker channel name.
        callback: Called with ``(error, payload)`` per delivery.
        consumer: Broker-side consumer state; replaced after every reconnect.
    """

    id: int
    trigger_name: str
    channel_options: ChannelOptions
    channel_name: str
    callback: SubscriberCallback
    consumer: Any = field(default=None, repr=False)


class SubscriptionRegistry:
    """Maps subscriber ids to subscriptions, in registration order."""

    def __init__(self, logger: Any = None) -> None:
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._logger = create_child_logger(logger, "SubscriptionRegistry")

    def register(
        self,
        trigger_name: str,
        channel_options: ChannelOptions,
        channel_name: str,
        callback: SubscriberCallback,
        consumer: Any = None,
    ) -> int:
        """Register a subscription and return its new id."""
        sub_id = next(self._ids)
        subscription = Subscription(
            id=sub_id,
            trigger_name=trigger_name,
            channel_options=channel_options,
            channel_name=channel_name,
            callback=callback,
            consumer=consumer,
        )

        # Atomic replacement
        new_subscriptions = self._subscriptions.copy()
        new_subscriptions[sub_id] = subscription
        self._subscriptions = new_subscriptions

        self._logger.debug(
            "subscription_registered",
            subscriber_id=sub_id,
            trigger=trigger_name,
            channel=channel_name,
        )
        return sub_id

    def get(self, sub_id: int) -> Optional[Subscription]:
        return self._subscriptions.get(sub_id)

    def __getitem__(self, sub_id: int) -> Subscription:
        try:
            return self._subscriptions[sub_id]
        except KeyError:
            raise UnknownSubscriptionError(sub_id) from None

    def remove(self, sub_id: int) -> Subscription:
        """Remove and return a subscription.

        Raises:
            UnknownSubscriptionError: If the id was never issued or was
                already removed.
        """
        subscription = self._subscriptions.get(sub_id)
        if subscription is None:
            self._logger.warning("subscription_remove_failed", subscriber_id=sub_id, reason="not_found")
            raise UnknownSubscriptionError(sub_id)

        new_subscriptions = self._subscriptions.copy()
        del new_subscriptions[sub_id]
        self._subscriptions = new_subscriptions

        self._logger.debug("subscription_removed", subscriber_id=sub_id)
        return subscription

    def for_each(self, fn: Callable[[Subscription], Any]) -> None:
        """Call ``fn`` for every subscription, in registration order."""
        for subscription in self.snapshot():
            fn(subscription)

    def snapshot(self) -> list[Subscription]:
        """Return the live subscriptions at this moment, in registration order."""
        return list(self._subscriptions.values())

    def clear(self) -> list[Subscription]:
        """Drop every subscription and return what was registered."""
        removed = list(self._subscriptions.values())
        self._subscriptions = {}
        return removed

    def __contains__(self, sub_id: object) -> bool:
        return sub_id in self._subscriptions

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __iter__(self) -> Iterator[Subscription]:
        return iter(self.snapshot())
