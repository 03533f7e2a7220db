import websockets
import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from websockets.exceptions import ConnectionClosed, WebSocketException

from ..exceptions import (
    AuthError,
    ConnectionLost,
    DeribitError,
    NotConnected,
    TransportError,
)
from ..logger_config import BaseLogger


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"


S = ConnectionState
ALLOWED_TRANSITIONS = {
    S.DISCONNECTED: {S.CONNECTING},
    S.CONNECTING: {S.AUTHENTICATING, S.READY, S.CLOSING},
    S.AUTHENTICATING: {S.READY, S.RECONNECTING, S.CLOSING},
    S.READY: {S.RECONNECTING, S.CLOSING},
    S.RECONNECTING: {S.AUTHENTICATING, S.READY, S.CLOSING},
    S.CLOSING: {S.DISCONNECTED},
}
SENDABLE_STATES = (S.AUTHENTICATING, S.READY)


@dataclass
class BackoffPolicy:
    """Exponential backoff with full jitter: ``uniform(0, min(cap, base * 2**attempt))``."""

    base: float = 1.0
    cap: float = 30.0
    max_attempts: Optional[int] = None

    def delay(self, attempt: int) -> float:
        return random.uniform(0, min(self.cap, self.base * (2 ** attempt)))

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


async def default_connect(uri: str):
    return await websockets.connect(uri, max_size=None)


def _noop(*args, **kwargs) -> None:
    return None


class WSConnectionManager(BaseLogger):
    """
    Owns the single WebSocket transport of a session.

    Every opened transport starts a new epoch with its own reader task. When
    a transport drops unexpectedly the manager reports the loss, then
    reconnects with exponential backoff and runs the handshake hook again
    before the state returns to READY. ``close()`` always ends in
    DISCONNECTED, whatever fails on the way.
    """

    def __init__(
        self,
        uri: str,
        on_frame: Callable[[Any], None] = _noop,
        on_handshake: Optional[Callable[[], Awaitable[None]]] = None,
        on_lost: Callable[[str], None] = _noop,
        on_closed: Callable[[], None] = _noop,
        on_fatal: Callable[[Exception], None] = _noop,
        backoff: Optional[BackoffPolicy] = None,
        connect_factory: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        """
        Args:
            uri: WebSocket endpoint.
            on_frame: Called with every inbound frame, in order of arrival.
            on_handshake: Coroutine run on each new transport while AUTHENTICATING.
            on_lost: Called with a reason when a transport drops unexpectedly.
            on_closed: Called once the session is closed, on every exit path.
            on_fatal: Called when reconnecting stops for good (auth failure, attempts exhausted).
            backoff: Reconnect delay policy.
            connect_factory: Coroutine function opening a transport for a URI.
        """
        super().__init__()
        self.uri = uri
        self.on_frame = on_frame
        self.on_handshake = on_handshake
        self.on_lost = on_lost
        self.on_closed = on_closed
        self.on_fatal = on_fatal
        self.backoff = backoff or BackoffPolicy()
        self._connect_factory = connect_factory or default_connect

        self.connection: Optional[Any] = None
        self.epoch = 0
        self.reconnect_attempts = 0
        self._state = ConnectionState.DISCONNECTED
        self._state_listeners: List[Callable[[ConnectionState, ConnectionState], None]] = []
        self._keep_running = False
        self._reader: Optional[asyncio.Task] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._lost: Optional[asyncio.Event] = None
        self._closed: Optional[asyncio.Event] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def add_state_listener(
        self, listener: Callable[[ConnectionState, ConnectionState], None]
    ) -> None:
        """Registers ``listener(old_state, new_state)`` for every transition."""
        self._state_listeners.append(listener)

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if new_state is old_state:
            return
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(
                f"Invalid connection state transition {old_state.value} -> {new_state.value}"
            )
        self._state = new_state
        self.log.info("Connection state changed", old=old_state.value, new=new_state.value)
        for listener in list(self._state_listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                self.log.exception("State listener failed", new=new_state.value)

    async def connect(self) -> None:
        """
        Opens the transport and runs the handshake.

        Raises:
            TransportError: The transport could not be opened.
            AuthError: Authentication failed during the handshake.
            NotConnected: ``close()`` was called before the connection became usable.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise RuntimeError(f"connect() called while {self._state.value}")
        self._lost = asyncio.Event()
        self._closed = asyncio.Event()
        self._keep_running = True
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open_epoch()
        except BaseException:
            await self.close()
            raise
        self._supervisor = asyncio.create_task(
            self._supervise(), name="WSConnectionSupervisor"
        )

    async def _open_transport(self):
        self.log.info("Connecting to WebSocket", uri=self.uri)
        try:
            return await self._connect_factory(self.uri)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            self.log.warning("Failed to connect to WebSocket", uri=self.uri, error=str(exc))
            raise TransportError(f"Could not connect to {self.uri}: {exc}") from exc

    async def _open_epoch(self) -> None:
        connection = await self._open_transport()
        if not self._keep_running:
            await self._discard(connection)
            raise NotConnected("Session closed while connecting")
        self.connection = connection
        self.epoch += 1
        self._lost.clear()
        self._reader = asyncio.create_task(
            self._read_frames(connection, self.epoch), name=f"WSReader-{self.epoch}"
        )
        self.log.info("Connected to WebSocket", epoch=self.epoch)
        if self.on_handshake is None:
            self._set_state(ConnectionState.READY)
            return
        self._set_state(ConnectionState.AUTHENTICATING)
        try:
            await self.on_handshake()
        except BaseException:
            await self._drop_transport()
            raise
        if not self._keep_running:
            raise NotConnected("Session closed during handshake")
        if not self._lost.is_set():
            self._set_state(ConnectionState.READY)

    async def _read_frames(self, connection, epoch: int) -> None:
        try:
            async for frame in connection:
                try:
                    self.on_frame(frame)
                except Exception:
                    self.log.exception("Frame handler failed", epoch=epoch)
            reason = "connection closed by server"
        except ConnectionClosed as exc:
            reason = f"connection closed: {exc}"
        except (OSError, WebSocketException) as exc:
            reason = f"transport error: {exc}"

        if not self._keep_running or epoch != self.epoch:
            return
        self.log.warning("WebSocket connection lost", epoch=epoch, reason=reason)
        self._lost.set()
        self.on_lost(reason)

    async def _drop_transport(self) -> None:
        reader, self._reader = self._reader, None
        connection, self.connection = self.connection, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if connection is not None:
            await self._discard(connection)

    async def _discard(self, connection) -> None:
        try:
            await connection.close()
        except Exception as exc:
            self.log.warning("Error while closing WebSocket", error=str(exc))

    async def _supervise(self) -> None:
        while self._keep_running:
            await self._lost.wait()
            if not self._keep_running:
                break
            await self._reconnect()

    async def _reconnect(self) -> None:
        self._set_state(ConnectionState.RECONNECTING)
        await self._drop_transport()
        self.reconnect_attempts = 0
        while self._keep_running:
            if self.backoff.exhausted(self.reconnect_attempts):
                self.log.error("Giving up reconnecting", attempts=self.reconnect_attempts)
                await self._fatal(
                    TransportError(f"Reconnect failed after {self.reconnect_attempts} attempts")
                )
                return
            delay = self.backoff.delay(self.reconnect_attempts)
            self.reconnect_attempts += 1
            self.log.info(
                "Reconnecting", attempt=self.reconnect_attempts, delay=round(delay, 3)
            )
            await asyncio.sleep(delay)
            if not self._keep_running:
                return
            try:
                await self._open_epoch()
            except AuthError as exc:
                self.log.error("Authentication failed after reconnect", error=str(exc))
                await self._fatal(exc)
                return
            except DeribitError as exc:
                self.log.warning(
                    "Reconnect attempt failed", attempt=self.reconnect_attempts, error=str(exc)
                )
                if not self._keep_running:
                    return
                if self._state is not ConnectionState.RECONNECTING:
                    self._set_state(ConnectionState.RECONNECTING)
                continue
            if self._state is ConnectionState.READY:
                self.log.info("Reconnected", epoch=self.epoch, attempts=self.reconnect_attempts)
                self.reconnect_attempts = 0
                return
            # Dropped again during the handshake.
            await self._drop_transport()
            self._set_state(ConnectionState.RECONNECTING)

    async def _fatal(self, exc: Exception) -> None:
        try:
            self.on_fatal(exc)
        finally:
            await self.close()

    async def send(self, frame: str) -> None:
        """
        Writes one serialized frame.

        Raises:
            NotConnected: The state is neither AUTHENTICATING nor READY.
            ConnectionLost: The transport closed while sending.
            TransportError: Any other write failure.
        """
        if self._state not in SENDABLE_STATES or self.connection is None:
            raise NotConnected(f"Cannot send while {self._state.value}")
        try:
            await self.connection.send(frame)
        except ConnectionClosed as exc:
            raise ConnectionLost(f"Connection closed while sending: {exc}") from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Failed to send frame: {exc}") from exc

    async def close(self) -> None:
        """Closes the transport and ends in DISCONNECTED on every exit path."""
        if self._state is ConnectionState.DISCONNECTED:
            return
        if self._state is ConnectionState.CLOSING:
            await self._closed.wait()
            return
        self._keep_running = False
        self._set_state(ConnectionState.CLOSING)
        try:
            supervisor, self._supervisor = self._supervisor, None
            if supervisor is not None and supervisor is not asyncio.current_task():
                supervisor.cancel()
                await asyncio.gather(supervisor, return_exceptions=True)
            await self._drop_transport()
            self.log.info("WebSocket connection closed")
        finally:
            try:
                self.on_closed()
            finally:
                self._set_state(ConnectionState.DISCONNECTED)
                self._closed.set()

    def is_connected(self) -> bool:
        return self._state is ConnectionState.READY
