"""Receive-only Socket.IO channel delivering inbox push events.

One channel is live per authenticated session. The channel owns its
reconnect policy: a bounded number of attempts with capped exponential
backoff. When the attempts run out it flags ``live_updates_paused`` and
tells its status listeners.

Listeners are registered with ``subscribe`` (or ``on``), which returns a
disposer. Views should collect their disposers in a ``SubscriptionScope``
and close it on teardown. Every listener must tolerate redelivery of the
same event after a reconnect.
"""

import asyncio
import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import socketio
from socketio import exceptions as socketio_exceptions

from inbox_sync.config import config
from inbox_sync.utils.exceptions import RealtimeError, RetryExhaustedError
from inbox_sync.utils.logger import logger


EVENT_NEW_MESSAGE = "new_message"
EVENT_CONVERSATION_UPDATED = "conversation_updated"
EVENT_NEW_CONVERSATION = "new_conversation"
EVENT_CUSTOMER_UPDATED = "customer_updated"
EVENT_TYPING_INDICATOR = "typing_indicator"
EVENT_MESSAGES_READ = "messages_read"
EVENT_CONVERSATION_ESCALATED = "conversation_escalated"

CATALOGUE_EVENTS = (
    EVENT_NEW_MESSAGE,
    EVENT_CONVERSATION_UPDATED,
    EVENT_NEW_CONVERSATION,
    EVENT_CUSTOMER_UPDATED,
    EVENT_TYPING_INDICATOR,
    EVENT_MESSAGES_READ,
    EVENT_CONVERSATION_ESCALATED,
)

# Reconnect policy (not user-configurable)
RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 1.0
RECONNECT_DELAY_MAX = 5.0
CONNECT_TIMEOUT = 10

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]
Disposer = Callable[[], None]


class ChannelStatus(str, Enum):
    LIVE = "live"
    PAUSED = "paused"


def backoff_delay(attempt: int) -> float:
    """Delay before reconnect attempt ``attempt`` (1-based)."""
    return min(RECONNECT_DELAY * (2 ** (attempt - 1)), RECONNECT_DELAY_MAX)


class SubscriptionScope:
    """Collects channel subscriptions and disposes them together.

    Usage:
        with channel.scope() as scope:
            scope.on("new_message", handle_message)
            ...
        # all handlers removed here

    or keep the scope on a view and call ``close()`` on teardown.
    """

    def __init__(self, channel: "RealtimeChannel"):
        self._channel = channel
        self._disposers: List[Disposer] = []

    def on(self, event: str, handler: EventHandler) -> "SubscriptionScope":
        self._disposers.append(self._channel.subscribe(event, handler))
        return self

    def __len__(self) -> int:
        return len(self._disposers)

    def close(self) -> None:
        disposers, self._disposers = self._disposers, []
        for dispose in disposers:
            dispose()

    def __enter__(self) -> "SubscriptionScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class RealtimeChannel:
    """Authenticated Socket.IO connection to the messaging namespace."""

    def __init__(
        self,
        url: Optional[str] = None,
        namespace: Optional[str] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        reconnect_attempts: int = RECONNECT_ATTEMPTS,
    ):
        self.url = url or config.socket_url
        self.namespace = namespace or config.socket_namespace
        self._client_factory = client_factory or (
            lambda: socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        )
        self._sleep = sleep
        self.reconnect_attempts = reconnect_attempts

        self._sio: Any = None
        self._token: Optional[str] = None
        self._closing = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._listeners: Dict[str, List[EventHandler]] = defaultdict(list)
        self._status_listeners: List[Callable[[ChannelStatus], None]] = []
        self.live_updates_paused = False

    @property
    def connected(self) -> bool:
        return self._sio is not None and bool(self._sio.connected)

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def _ensure_client(self) -> Any:
        if self._sio is None:
            self._sio = self._client_factory()
            ns = self.namespace
            self._sio.on("connect", self._on_connect, namespace=ns)
            self._sio.on("disconnect", self._on_disconnect, namespace=ns)
            self._sio.on("connect_error", self._on_connect_error, namespace=ns)
            self._sio.on("connected", self._on_server_ack, namespace=ns)
            for event in CATALOGUE_EVENTS:
                self._sio.on(event, self._make_dispatcher(event), namespace=ns)
        return self._sio

    async def connect(self, auth_token: str) -> bool:
        """Open the channel. A call while connected or reconnecting is a no-op.

        Returns:
            True if the channel is connected when the call returns. On failure
            the reconnect loop is started and False is returned.

        Raises:
            RealtimeError: If no token is given
        """
        if not auth_token:
            raise RealtimeError("Realtime channel requires an auth token")
        if self.connected:
            logger.debug("Socket already connected")
            return True
        if self.reconnecting:
            logger.debug("Socket reconnect already in progress")
            return False

        self._token = auth_token
        self._closing = False
        self._ensure_client()

        if await self._attempt_connect():
            self._mark_live()
            return True

        self._start_reconnect()
        return False

    async def _attempt_connect(self) -> bool:
        try:
            await self._sio.connect(
                self.url,
                namespaces=[self.namespace],
                auth={"token": self._token},
                transports=["websocket", "polling"],
                wait_timeout=CONNECT_TIMEOUT,
            )
        except (socketio_exceptions.SocketIOError, OSError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Socket connection error: {e}")
            return False
        return self.connected

    def _start_reconnect(self) -> None:
        if self._closing or self.reconnecting:
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        for attempt in range(1, self.reconnect_attempts + 1):
            delay = backoff_delay(attempt)
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt}/{self.reconnect_attempts})")
            await self._sleep(delay)
            if self._closing:
                return
            if await self._attempt_connect():
                logger.info(f"Socket reconnected after {attempt} attempt(s)")
                self._mark_live()
                return

        error = RetryExhaustedError("realtime reconnect", self.reconnect_attempts)
        logger.error(f"{error}; live updates paused")
        self.live_updates_paused = True
        self._notify_status(ChannelStatus.PAUSED)

    def _mark_live(self) -> None:
        if self.live_updates_paused:
            self.live_updates_paused = False
            self._notify_status(ChannelStatus.LIVE)

    async def disconnect(self) -> None:
        """Close the channel and stop any reconnect in progress."""
        self._closing = True
        if self.reconnecting:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        if self.connected:
            await self._sio.disconnect()
            logger.info("Socket disconnected")

    # -------------------------------------------------------------------------
    # Socket.IO callbacks
    # -------------------------------------------------------------------------

    async def _on_connect(self) -> None:
        logger.info(f"Socket connected to {self.url}{self.namespace}")

    async def _on_disconnect(self, *args) -> None:
        reason = args[0] if args else "unknown"
        logger.warning(f"Socket disconnected: {reason}")
        if not self._closing:
            self._start_reconnect()

    async def _on_connect_error(self, data: Any = None) -> None:
        logger.error(f"Socket connection error: {data}")

    async def _on_server_ack(self, data: Any = None) -> None:
        logger.info(f"Socket authenticated: {data}")

    def _make_dispatcher(self, event: str) -> Callable[[Any], Awaitable[None]]:
        async def dispatch(data: Any = None) -> None:
            await self.dispatch(event, data)
        return dispatch

    async def dispatch(self, event: str, data: Any) -> None:
        """Deliver one event to every listener, isolating listener failures."""
        for handler in list(self._listeners.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener {getattr(handler, '__qualname__', handler)} failed on {event}: {e}")

    # -------------------------------------------------------------------------
    # Listener registration
    # -------------------------------------------------------------------------

    def subscribe(self, event: str, handler: EventHandler) -> Disposer:
        """Register a listener and return a function that removes it."""
        if event not in CATALOGUE_EVENTS:
            raise ValueError(f"Unknown realtime event: {event}")
        self._listeners[event].append(handler)
        disposed = False

        def dispose() -> None:
            nonlocal disposed
            if disposed:
                return
            disposed = True
            handlers = self._listeners.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return dispose

    on = subscribe

    def off(self, event: str, handler: Optional[EventHandler] = None) -> None:
        """Remove one listener, or every listener for the event."""
        if handler is None:
            self._listeners.pop(event, None)
            return
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def scope(self) -> SubscriptionScope:
        return SubscriptionScope(self)

    def on_status(self, handler: Callable[[ChannelStatus], None]) -> Disposer:
        """Register for LIVE/PAUSED changes (paused = reconnect attempts exhausted)."""
        self._status_listeners.append(handler)

        def dispose() -> None:
            if handler in self._status_listeners:
                self._status_listeners.remove(handler)

        return dispose

    def _notify_status(self, status: ChannelStatus) -> None:
        for handler in list(self._status_listeners):
            try:
                handler(status)
            except Exception as e:
                logger.error(f"Status listener failed on {status.value}: {e}")


# Session-wide channel
_channel: Optional[RealtimeChannel] = None


def get_realtime_channel() -> RealtimeChannel:
    """Get the shared RealtimeChannel singleton."""
    global _channel
    if _channel is None:
        _channel = RealtimeChannel()
    return _channel
