"""Connection factory capability.

The engine never opens sockets itself: it asks a factory for a connection
and talks to it through the aio-pika connection/channel API. Tests plug in
an in-memory factory with the same shape.
"""

from __future__ import annotations

from typing import Protocol

import aio_pika
import structlog
from aio_pika.abc import AbstractConnection

logger = structlog.get_logger()


class ConnectionFactory(Protocol):
    async def create(self) -> AbstractConnection:
        """Open a new broker connection."""
        ...


class AioPikaConnectionFactory:
    """Opens plain (non-robust) aio-pika connections.

    Reconnection is driven by ``ConnectionManager``, which must observe every
    connection loss; a robust connection would hide them.
    """

    def __init__(self, url: str, **connect_kwargs: object) -> None:
        self._url = url
        self._connect_kwargs = connect_kwargs

    async def create(self) -> AbstractConnection:
        connection = await aio_pika.connect(self._url, **self._connect_kwargs)
        logger.info("amqp_connection_opened", url=_redact(self._url))
        return connection


def _redact(url: str) -> str:
    """Hide the password part of an AMQP URL."""
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest:
        return url
    credentials, _, host = rest.rpartition("@")
    user = credentials.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"
