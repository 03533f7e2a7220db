import asyncio
import time
from typing import Any, Callable, Dict, Optional, Set

from .. import config as cfg
from ..exceptions import (
    AuthError,
    ConnectionLost,
    DeribitError,
    NotConnected,
    RequestCancelled,
    RequestTimeoutError,
)
from ..logger_config import BaseLogger
from ..scope import Scope
from .WSAuth import AccessToken, AuthManager, Credentials
from .WSCodec import DERIBIT_SCHEMA, Heartbeat, WireCodec, WireSchema
from .WSConnection import BackoffPolicy, ConnectionState, WSConnectionManager
from .WSCorrelator import RequestCorrelator
from .WSMessage_Processor import MessageProcessor
from .WSSubscription import Listener, SubscriptionHandle, SubscriptionRegistry

PRIVATE_METHOD_PREFIX = "private/"
SET_HEARTBEAT_METHOD = "public/set_heartbeat"
DISABLE_HEARTBEAT_METHOD = "public/disable_heartbeat"
TEST_METHOD = "public/test"


class WebSocketClient(BaseLogger):
    """
    Main WebSocket client orchestrator for Deribit.

    Owns one connection and composes the request correlator, the auth
    lifecycle manager and the subscription registry on top of it. Public
    methods wait until the connection is READY (within their timeout), so
    requests made while the session re-authenticates or re-subscribes after
    a reconnect are queued rather than dropped.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        credentials: Optional[Credentials] = None,
        connect_factory: Optional[Callable] = None,
        schema: WireSchema = DERIBIT_SCHEMA,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initializes the WebSocket client.

        Args:
            config (dict): Configuration as returned by ``config.load_config()``.
                           Missing keys take their defaults.
            credentials (Credentials): Overrides the client id/secret of ``config``.
                                       Without credentials the client is public-only.
            connect_factory: Coroutine function opening a transport, for tests or proxies.
            schema (WireSchema): Field names of the JSON-RPC envelopes.
            clock: Monotonic clock used for token expiry.
        """
        super().__init__()
        self.config = cfg.resolve_config(config)

        ws_uri = self.config[cfg.WS_URI]
        if not ws_uri:
            self.log.error("WebSocket URI is missing in configuration.")
            raise ValueError(f"WebSocket URI ({cfg.WS_URI}) not found in configuration.")

        client_id = self.config[cfg.CLIENT_ID]
        client_secret = self.config[cfg.CLIENT_SECRET]
        if credentials is None and client_id and client_secret:
            credentials = Credentials(client_id, client_secret)
        elif credentials is None and (client_id or client_secret):
            self.log.warning("Client id or secret missing. Running in public-only mode.")

        self.default_timeout = float(self.config[cfg.REQUEST_TIMEOUT])
        self.heartbeat_interval: Optional[int] = self.config[cfg.HEARTBEAT_INTERVAL]
        scope_str = self.config[cfg.AUTH_SCOPE]

        codec = WireCodec(schema)
        self.manager = WSConnectionManager(
            ws_uri,
            on_handshake=self._handshake,
            on_lost=self._on_lost,
            on_closed=self._on_closed,
            on_fatal=self._on_fatal,
            backoff=BackoffPolicy(
                base=float(self.config[cfg.RECONNECT_BASE]),
                cap=float(self.config[cfg.RECONNECT_CAP]),
                max_attempts=self.config[cfg.RECONNECT_MAX_ATTEMPTS],
            ),
            connect_factory=connect_factory,
        )
        self.correlator = RequestCorrelator(self.manager.send, codec, self.default_timeout)
        self.auth = AuthManager(
            self.correlator,
            credentials,
            safety_margin=float(self.config[cfg.TOKEN_SAFETY_MARGIN]),
            scope=Scope.parse(scope_str) if scope_str else None,
            clock=clock,
        )
        self.subscriptions = SubscriptionRegistry(
            self._call_now, queue_size=int(self.config[cfg.LISTENER_QUEUE_SIZE])
        )
        self.message_processor = MessageProcessor(
            on_response=self.correlator.resolve,
            on_notification=self.subscriptions.dispatch,
            on_heartbeat=self._on_heartbeat,
            codec=codec,
        )
        self.manager.on_frame = self.message_processor.process_frame
        self.manager.add_state_listener(self.auth.on_state_change)
        self.manager.add_state_listener(self.subscriptions.on_state_change)
        self.manager.add_state_listener(self._on_state_change)

        self._ready = asyncio.Event()
        self._stopped = asyncio.Event()
        self._fatal_error: Optional[Exception] = None
        self._background: Set[asyncio.Task] = set()

        self.log.info(
            "WebSocketClient initialized",
            uri=ws_uri,
            mode="public" if self.auth.is_public else "authenticated",
        )

    @classmethod
    def from_env(cls, **kwargs) -> "WebSocketClient":
        """Builds a client from environment variables (and a ``.env`` file)."""
        return cls(cfg.load_config(), **kwargs)

    # --- Lifecycle ---

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    @property
    def scope(self) -> Optional[Scope]:
        return self.auth.scope

    def is_connected(self) -> bool:
        return self.manager.is_connected()

    async def connect(self) -> None:
        """
        Connects, authenticates (if credentials were given) and returns once READY.

        Raises:
            TransportError: The WebSocket could not be opened.
            AuthError: The credentials were rejected.
        """
        self._fatal_error = None
        self.auth.reset_failure()
        self._stopped.clear()
        await self.manager.connect()

    start = connect

    async def close(self) -> None:
        """Closes the session; outstanding requests fail with ``RequestCancelled``."""
        self.log.info("Closing WebSocket client")
        await self.manager.close()

    stop = close

    async def __aenter__(self) -> "WebSocketClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --- Connection hooks ---

    async def _handshake(self) -> None:
        self.correlator.reset_epoch()
        await self.auth.handshake()
        if self.heartbeat_interval:
            await self.correlator.call(SET_HEARTBEAT_METHOD, {"interval": self.heartbeat_interval})
        await self.subscriptions.resubscribe_all()

    def _on_lost(self, reason: str) -> None:
        self.correlator.fail_all(ConnectionLost, reason=reason)

    def _on_closed(self) -> None:
        for task in list(self._background):
            task.cancel()
        self.correlator.fail_all(RequestCancelled, reason="session closed")
        self.subscriptions.close()
        self.auth.close()
        self._stopped.set()

    def _on_fatal(self, exc: Exception) -> None:
        self._fatal_error = exc
        self.log.error("Session stopped", error=str(exc))

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.READY:
            self._ready.set()
        else:
            self._ready.clear()

    def _on_heartbeat(self, heartbeat: Heartbeat) -> None:
        if not heartbeat.needs_reply:
            self.log.debug("Heartbeat received")
            return
        task = asyncio.create_task(self._answer_test_request(), name="HeartbeatReply")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _answer_test_request(self) -> None:
        try:
            await self.correlator.call(TEST_METHOD, {})
        except DeribitError as exc:
            self.log.warning("Heartbeat reply failed", error=str(exc))

    # --- Request path ---

    def _check_usable(self) -> None:
        if self._fatal_error is not None:
            raise self._fatal_error
        if self.auth.failure is not None:
            raise self.auth.failure
        if self.manager.state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSING):
            raise NotConnected(f"Client is {self.manager.state.value}")

    async def _wait_ready(self, timeout: float) -> None:
        self._check_usable()
        if self._ready.is_set():
            return
        ready = asyncio.ensure_future(self._ready.wait())
        stopped = asyncio.ensure_future(self._stopped.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, stopped}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            ready.cancel()
            stopped.cancel()
        if not done:
            raise RequestTimeoutError(f"Connection not ready within {timeout}s")
        self._check_usable()

    async def _call_now(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        if method.startswith(PRIVATE_METHOD_PREFIX):
            await self.auth.ensure_authenticated()
            params = self.auth.authorize(params)
        return await self.correlator.call(method, params, timeout)

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Sends a JSON-RPC request and returns its ``result``.

        ``private/`` methods are authenticated transparently: the token is
        obtained or refreshed first if it is missing or close to expiry.

        Raises:
            ApiError: The exchange answered with an error.
            RequestTimeoutError: No response within ``timeout`` seconds.
            ConnectionLost: The connection dropped before the response arrived.
            RequestCancelled: The client was closed meanwhile.
            AuthError: The session's credentials were rejected.
            NotConnected: The client is not connected.
        """
        timeout = self.default_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        await self._wait_ready(timeout)
        return await self._call_now(method, params, max(deadline - time.monotonic(), 0.0))

    async def subscribe(
        self, channel: str, listener: Listener, timeout: Optional[float] = None
    ) -> SubscriptionHandle:
        """
        Subscribes ``listener`` (a callable or a bounded ``asyncio.Queue``) to ``channel``.

        Channels starting with ``user.`` are private and need credentials.
        The subscription is restored automatically after every reconnect.
        """
        timeout = self.default_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        await self._wait_ready(timeout)
        return await self.subscriptions.subscribe(
            channel, listener, timeout=max(deadline - time.monotonic(), 0.0)
        )

    async def unsubscribe(
        self, handle: SubscriptionHandle, timeout: Optional[float] = None
    ) -> bool:
        """Removes a subscription. Returns False if it was already inactive."""
        return await self.subscriptions.unsubscribe(handle, timeout=timeout)

    # --- Session features ---

    async def authenticate(self) -> Optional[Scope]:
        """Logs in now instead of on the first ``private/`` request."""
        await self._wait_ready(self.default_timeout)
        await self.auth.ensure_authenticated()
        return self.auth.scope

    async def set_heartbeat(self, interval: int) -> Any:
        """Enables server heartbeats every ``interval`` seconds, also after reconnects."""
        result = await self.call(SET_HEARTBEAT_METHOD, {"interval": interval})
        self.heartbeat_interval = interval
        return result

    async def disable_heartbeat(self) -> Any:
        result = await self.call(DISABLE_HEARTBEAT_METHOD, {})
        self.heartbeat_interval = None
        return result

    async def exchange_token(self, subject_id: int) -> AccessToken:
        """Returns a token for subaccount ``subject_id`` without switching to it."""
        await self._wait_ready(self.default_timeout)
        return await self.auth.exchange_token(subject_id)

    async def switch_subaccount(self, subject_id: int) -> Scope:
        """Makes subaccount ``subject_id`` the authentication context of this session."""
        await self._wait_ready(self.default_timeout)
        return await self.auth.switch_subaccount(subject_id)

    async def logout(self, invalidate_token: bool = True) -> None:
        """Logs out (the server does not reply) and closes the session."""
        if self.auth.is_public:
            raise AuthError("Cannot log out of a public-only session")
        try:
            await self._wait_ready(self.default_timeout)
            await self.auth.logout(invalidate_token)
        finally:
            await self.close()
