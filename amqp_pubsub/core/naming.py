"""Trigger → channel name resolution and broker resource naming.

A channel name is the broker address of a trigger: it names the publish
exchange directly and is the stem of the dead-letter exchange and queue.
Publishers and subscribers must resolve names with the same transform,
otherwise they address different exchanges.

Examples (default transform):
    ("Trigger1", ChannelOptions())                    → "Trigger1"
    ("comments", ChannelOptions(path=("repo",)))      → "comments.repo"
    dead_letter_exchange_name("comments.repo")        → "comments.repo.DLQ.Exchange"
    dead_letter_queue_name("comments.repo")           → "comments.repo.DLQ"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

SEPARATOR = "."
DLQ_SUFFIX = ".DLQ"
DLQ_EXCHANGE_SUFFIX = ".DLQ.Exchange"


@dataclass(frozen=True)
class ChannelOptions:
    """Per-subscription routing qualifiers.

    Attributes:
        path: Ordered path segments appended to the trigger name by the
              default transform (e.g. a repository name).
    """

    path: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Accept any iterable of strings, store an immutable tuple
        object.__setattr__(self, "path", tuple(self.path))

    @classmethod
    def of(cls, *path: str) -> "ChannelOptions":
        return cls(path=path)


TriggerTransform = Callable[[str, ChannelOptions], str]


def default_trigger_transform(trigger_name: str, options: ChannelOptions) -> str:
    """Join the trigger name and the path segments with ``.``."""
    return SEPARATOR.join([trigger_name, *options.path])


def coerce_options(options: Optional[ChannelOptions | Iterable[str]]) -> ChannelOptions:
    """Normalise ``None``, a ChannelOptions or a bare path sequence."""
    if options is None:
        return ChannelOptions()
    if isinstance(options, ChannelOptions):
        return options
    if isinstance(options, str):
        return ChannelOptions(path=(options,))
    return ChannelOptions(path=tuple(options))


def resolve_channel(
    trigger_name: str,
    options: Optional[ChannelOptions | Iterable[str]] = None,
    transform: Optional[TriggerTransform] = None,
) -> str:
    """Resolve the channel name for a trigger.

    Args:
        trigger_name: Logical event name.
        options: Channel options; absent means no path segments.
        transform: Caller-supplied transform; the default joins with ``.``.

    Returns:
        The channel name. Exceptions raised by a custom transform propagate
        unchanged.
    """
    if transform is None:
        transform = default_trigger_transform
    return transform(trigger_name, coerce_options(options))


def dead_letter_exchange_name(channel_name: str) -> str:
    return channel_name + DLQ_EXCHANGE_SUFFIX


def dead_letter_queue_name(channel_name: str) -> str:
    return channel_name + DLQ_SUFFIX
