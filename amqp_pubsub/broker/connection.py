"""Connection lifecycle manager — the one broker connection and its channel.

State machine:

    DISCONNECTED → CONNECTING → CONNECTED
    CONNECTED → DISCONNECTED → RECONNECTING → CONNECTED   (connection lost)
    RECONNECTING → CLOSED                                 (attempts exhausted)
    any → CLOSED                                          (close())

The first ``connect()``/``channel()`` call opens the connection lazily. Once a
session has been lost, operations fail fast with ``BrokerConnectionError``
until recovery has opened a new one; recovery hooks then rebuild whatever
the lost session carried (topology, consumers).
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from aio_pika.abc import AbstractChannel, AbstractConnection

from amqp_pubsub.broker.factory import ConnectionFactory
from amqp_pubsub.config import Settings
from amqp_pubsub.core.callbacks import maybe_await
from amqp_pubsub.errors import BrokerConnectionError
from amqp_pubsub.logging_setup import create_child_logger

StateListener = Callable[["ConnectionState", "ConnectionState"], Any]
RecoveryHook = Callable[[], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class ConnectionManager:
    """Owns the process-wide broker connection.

    No other component touches the connection object: they ask for the
    shared channel (``channel()``) or a short-lived one
    (``scratch_channel()``), and observe the lifecycle through listeners.

    Attributes:
        generation: Incremented every time a new session is opened; consumers
                    and queues remember the generation they were created in.
    """

    def __init__(
        self,
        factory: ConnectionFactory,
        settings: Optional[Settings] = None,
        logger: Any = None,
    ) -> None:
        self._factory = factory
        self._settings = settings or Settings()
        self._logger = create_child_logger(logger, "ConnectionManager")

        self._state = ConnectionState.DISCONNECTED
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._lock = asyncio.Lock()
        self._ever_connected = False
        self._closing = False
        self._generation = 0

        self._listeners: list[StateListener] = []
        self._recovery_hooks: list[RecoveryHook] = []
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_listener(self, listener: StateListener) -> None:
        """Register ``listener(old_state, new_state)`` (sync or async)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        self._listeners.remove(listener)

    def add_recovery_hook(self, hook: RecoveryHook) -> None:
        """Register a coroutine function run after every reconnect.

        Hooks run in registration order once the new session is open and
        before the state becomes CONNECTED. A hook raising aborts the
        attempt; the session is discarded and retried after back-off.
        """
        self._recovery_hooks.append(hook)

    # ------------------------------------------------------------------
    # Channel access
    # ------------------------------------------------------------------

    async def connect(self) -> AbstractChannel:
        """Open the first session, or return the live channel.

        Raises:
            BrokerConnectionError: If the broker cannot be reached, a lost
                session has not been recovered yet, or the manager is closed.
        """
        async with self._lock:
            if self._channel_usable():
                return self._channel  # type: ignore[return-value]
            self._raise_if_unavailable()

            await self._transition(ConnectionState.CONNECTING)
            try:
                await self._open()
            except Exception as exc:
                await self._transition(ConnectionState.DISCONNECTED)
                self._logger.error("amqp_connect_failed", error=str(exc))
                raise BrokerConnectionError(f"cannot connect to broker: {exc}") from exc

            self._ever_connected = True
            await self._transition(ConnectionState.CONNECTED)
            return self._channel  # type: ignore[return-value]

    async def channel(self) -> AbstractChannel:
        """Return the shared channel, connecting lazily on first use."""
        if self._channel_usable():
            return self._channel  # type: ignore[return-value]
        self._raise_if_unavailable()
        return await self.connect()

    @contextlib.asynccontextmanager
    async def scratch_channel(self) -> AsyncIterator[AbstractChannel]:
        """Yield a short-lived channel on the current connection.

        Declarations that the broker may refuse run here: a refusal closes
        only this channel, not the one carrying every consumer.
        """
        await self.channel()
        connection = self._connection
        if connection is None or connection.is_closed:
            raise BrokerConnectionError("broker connection lost")
        try:
            channel = await connection.channel()
        except Exception as exc:
            raise BrokerConnectionError(f"cannot open channel: {exc}") from exc
        try:
            yield channel
        finally:
            if not channel.is_closed:
                with contextlib.suppress(Exception):
                    await channel.close()

    def _channel_usable(self) -> bool:
        return (
            self._channel is not None
            and not self._channel.is_closed
            and self._connection is not None
            and not self._connection.is_closed
        )

    def _raise_if_unavailable(self) -> None:
        if self._state is ConnectionState.CLOSED or self._closing:
            raise BrokerConnectionError("connection manager is closed")
        if self._ever_connected:
            raise BrokerConnectionError(
                f"broker connection lost; recovery in progress (state={self._state.value})"
            )

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    async def _open(self) -> None:
        connection = await self._factory.create()
        try:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._settings.prefetch_count)
        except Exception:
            with contextlib.suppress(Exception):
                await connection.close()
            raise

        connection.close_callbacks.add(self._on_connection_closed)
        channel.close_callbacks.add(self._on_channel_closed)
        self._connection = connection
        self._channel = channel
        self._generation += 1
        self._logger.info("amqp_session_opened", generation=self._generation)

    def _on_connection_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if sender is not self._connection or self._closing:
            return

        self._connection = None
        self._channel = None
        self._logger.warning(
            "amqp_connection_lost",
            generation=self._generation,
            error=str(exc) if exc is not None else None,
        )
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    def _on_channel_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if sender is not self._channel or self._closing:
            return
        connection = self._connection
        if connection is None or connection.is_closed:
            return  # connection close handler takes over

        # Consumers died with the channel: drop the whole session so that
        # recovery rebuilds it.
        self._logger.warning(
            "amqp_channel_lost",
            generation=self._generation,
            error=str(exc) if exc is not None else None,
        )
        self._channel = None
        self._spawn(connection.close())

    async def _reconnect(self) -> None:
        await self._transition(ConnectionState.DISCONNECTED)
        await self._transition(ConnectionState.RECONNECTING)

        delay = self._settings.reconnect_delay_sec
        attempt = 0
        while not self._closing:
            attempt += 1
            try:
                async with self._lock:
                    await self._open()
                for hook in self._recovery_hooks:
                    await hook()
                if not self._channel_usable():
                    raise BrokerConnectionError("connection lost during recovery")
            except Exception as exc:
                self._logger.warning(
                    "amqp_reconnect_failed",
                    attempt=attempt,
                    retry_in_sec=delay,
                    error=str(exc),
                )
                await self._discard_session()
                max_attempts = self._settings.max_reconnect_attempts
                if max_attempts and attempt >= max_attempts:
                    self._logger.error("amqp_reconnect_gave_up", attempts=attempt)
                    await self._transition(ConnectionState.CLOSED)
                    return
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._settings.max_reconnect_delay_sec)
                continue

            self._logger.info("amqp_reconnected", attempt=attempt, generation=self._generation)
            await self._transition(ConnectionState.CONNECTED)
            return

    async def _discard_session(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except Exception as exc:
                self._logger.debug("amqp_discard_failed", error=str(exc))

    async def _transition(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        self._logger.info("amqp_connection_state", old=old_state.value, new=new_state.value)
        for listener in list(self._listeners):
            try:
                await maybe_await(listener, old_state, new_state)
            except Exception:
                self._logger.exception("connection_listener_failed", new=new_state.value)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def close(self) -> None:
        """Close the session and stop reconnecting. Idempotent."""
        self._closing = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task

        connection = self._connection
        self._connection = None
        self._channel = None
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except Exception as exc:
                self._logger.warning("amqp_close_failed", error=str(exc))

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._transition(ConnectionState.CLOSED)
