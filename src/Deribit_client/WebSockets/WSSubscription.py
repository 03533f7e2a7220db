import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..exceptions import (
    ApiError,
    ConnectionLost,
    NotConnected,
    SubscriptionError,
)
from ..logger_config import BaseLogger
from .WSCodec import Notification
from .WSConnection import ConnectionState

PUBLIC_SUBSCRIBE = "public/subscribe"
PUBLIC_UNSUBSCRIBE = "public/unsubscribe"
PRIVATE_SUBSCRIBE = "private/subscribe"
PRIVATE_UNSUBSCRIBE = "private/unsubscribe"
PRIVATE_CHANNEL_PREFIX = "user."

Listener = Union[Callable[[Any], Any], asyncio.Queue]
CallFunc = Callable[..., Awaitable[Any]]


def is_private_channel(channel: str) -> bool:
    return channel.startswith(PRIVATE_CHANNEL_PREFIX)


@dataclass(frozen=True)
class SubscriptionHandle:
    """Returned by ``subscribe``; pass it to ``unsubscribe``."""

    id: int
    channel: str


@dataclass(eq=False)
class Subscription:
    """
    One listener registered for one channel.

    Push data is buffered in a bounded queue; when it is full the oldest
    item is dropped. A callable listener is fed from that queue by its own
    task, so the frame reader never waits on user code.
    """

    id: int
    channel: str
    listener: Listener
    queue_size: int = 1000
    active: bool = True
    live: bool = False
    dropped: int = 0
    buffer: Optional[asyncio.Queue] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def handle(self) -> SubscriptionHandle:
        return SubscriptionHandle(self.id, self.channel)

    def start(self, log) -> None:
        if isinstance(self.listener, asyncio.Queue):
            self.buffer = self.listener
            return
        self.buffer = asyncio.Queue(maxsize=self.queue_size)
        self.task = asyncio.create_task(
            self._pump(log), name=f"Listener-{self.channel}-{self.id}"
        )

    def deliver(self, data: Any) -> bool:
        """Queues ``data`` without blocking. Returns False if an old item had to be dropped."""
        try:
            self.buffer.put_nowait(data)
            return True
        except asyncio.QueueFull:
            pass
        try:
            self.buffer.get_nowait()
        except asyncio.QueueEmpty:
            pass
        self.dropped += 1
        self.buffer.put_nowait(data)
        return False

    async def _pump(self, log) -> None:
        while True:
            data = await self.buffer.get()
            try:
                result = self.listener(data)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Listener raised", channel=self.channel, subscription_id=self.id)

    def stop(self) -> None:
        self.active = False
        self.live = False
        if self.task is not None and not self.task.done():
            self.task.cancel()


class SubscriptionRegistry(BaseLogger):
    """
    Tracks channel subscriptions and routes push notifications to listeners.

    Channels are kept in the order they were first subscribed. After a
    reconnect every active channel is subscribed again, in that order,
    before the connection is handed back to callers. Several listeners may
    share a channel; the server subscription exists while at least one of
    them is active.
    """

    def __init__(self, call: CallFunc, queue_size: int = 1000):
        """
        Args:
            call: Coroutine function ``call(method, params, timeout=None)`` used for
                  (un)subscribe requests.
            queue_size: Buffer size of each callable listener.
        """
        super().__init__()
        self._call = call
        self.queue_size = queue_size
        self._subscriptions: Dict[int, Subscription] = {}
        self._channels: Dict[str, List[Subscription]] = {}
        self._lock = asyncio.Lock()
        self._last_id = 0

    def channels(self) -> List[str]:
        """Active channels in original subscription order."""
        return [channel for channel, subs in self._channels.items() if subs]

    def get(self, handle: SubscriptionHandle) -> Optional[Subscription]:
        return self._subscriptions.get(handle.id)

    async def _server_request(
        self, channel: str, subscribe: bool, timeout: Optional[float] = None
    ) -> None:
        if subscribe:
            method = PRIVATE_SUBSCRIBE if is_private_channel(channel) else PUBLIC_SUBSCRIBE
        else:
            method = PRIVATE_UNSUBSCRIBE if is_private_channel(channel) else PUBLIC_UNSUBSCRIBE
        result = await self._call(method, {"channels": [channel]}, timeout=timeout)
        if subscribe and channel not in (result or []):
            raise SubscriptionError(f"Server did not accept channel {channel}", data=result)

    def _add(self, channel: str, listener: Listener) -> Subscription:
        self._last_id += 1
        subscription = Subscription(
            id=self._last_id, channel=channel, listener=listener, queue_size=self.queue_size
        )
        subscription.start(self.log)
        self._subscriptions[subscription.id] = subscription
        self._channels.setdefault(channel, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> bool:
        """Drops a subscription locally. Returns True if its channel has no listener left."""
        subscription.stop()
        self._subscriptions.pop(subscription.id, None)
        subs = self._channels.get(subscription.channel, [])
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._channels.pop(subscription.channel, None)
            return True
        return False

    async def subscribe(
        self, channel: str, listener: Listener, timeout: Optional[float] = None
    ) -> SubscriptionHandle:
        """
        Registers ``listener`` for ``channel`` and subscribes on the server if needed.

        The listener is registered before the request goes out so that no push
        message sent right after the server's acknowledgement is lost.
        An ``asyncio.Queue`` listener is used as the buffer itself and must be
        bounded; drop-oldest applies at its ``maxsize``.

        Raises:
            SubscriptionError: The server did not accept the channel.
            ValueError: An unbounded queue was given as listener.
            ApiError: The server rejected the request.
        """
        if not (callable(listener) or isinstance(listener, asyncio.Queue)):
            raise TypeError("listener must be a callable or an asyncio.Queue")
        if isinstance(listener, asyncio.Queue) and listener.maxsize <= 0:
            raise ValueError("queue listener must be bounded (maxsize > 0)")
        async with self._lock:
            first = not self._channels.get(channel)
            subscription = self._add(channel, listener)
            if not first:
                subscription.live = any(s.live for s in self._channels[channel])
                self.log.info("Listener added to subscribed channel", channel=channel)
                return subscription.handle
            try:
                await self._server_request(channel, subscribe=True, timeout=timeout)
            except BaseException:
                self._remove(subscription)
                raise
            subscription.live = True
            self.log.info("Subscribed", channel=channel, subscription_id=subscription.id)
            return subscription.handle

    async def unsubscribe(
        self, handle: SubscriptionHandle, timeout: Optional[float] = None
    ) -> bool:
        """
        Deactivates a subscription. Idempotent: returns False if it is already inactive.

        The server unsubscribe is issued when the last listener of a channel goes,
        and the subscription is only removed once the server confirmed it. If
        the server rejects the request or it times out, the error propagates and
        the subscription stays active so the call can be retried. A transport
        that is down already dropped the server side, so that case only updates
        local state.
        """
        async with self._lock:
            subscription = self._subscriptions.get(handle.id)
            if subscription is None or not subscription.active:
                return False
            others = [s for s in self._channels.get(handle.channel, []) if s is not subscription]
            if not others and subscription.live:
                try:
                    await self._server_request(handle.channel, subscribe=False, timeout=timeout)
                except (NotConnected, ConnectionLost) as exc:
                    self.log.info(
                        "Channel dropped locally, transport is down",
                        channel=handle.channel,
                        error=str(exc),
                    )
            self._remove(subscription)
            self.log.info("Unsubscribed listener", channel=handle.channel, subscription_id=handle.id)
            return True

    def dispatch(self, notification: Notification) -> int:
        """
        Hands a push notification to every listener of its channel, without blocking.

        Returns:
            int: The number of listeners the data was queued for.
        """
        subs = self._channels.get(notification.channel)
        if not subs:
            self.log.warning("Dropping notification for unknown channel", channel=notification.channel)
            return 0
        delivered = 0
        for subscription in subs:
            if not subscription.active:
                continue
            if not subscription.deliver(notification.data):
                self.log.warning(
                    "Listener buffer full, dropped oldest message",
                    channel=notification.channel,
                    subscription_id=subscription.id,
                    dropped=subscription.dropped,
                )
            delivered += 1
        return delivered

    def on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        """Connection state listener: nothing is live on the server once the transport drops."""
        if new in (ConnectionState.RECONNECTING, ConnectionState.CLOSING):
            for subscription in self._subscriptions.values():
                subscription.live = False

    async def resubscribe_all(self) -> int:
        """
        Subscribes every active channel again, in original subscription order.

        Holds the registry lock throughout, so subscribe/unsubscribe calls made
        meanwhile wait until re-subscription is complete. A channel the server
        now refuses is deactivated and logged; transport errors propagate so the
        reconnect is retried.

        Returns:
            int: The number of channels re-subscribed.
        """
        async with self._lock:
            count = 0
            for channel, subs in list(self._channels.items()):
                active = [s for s in subs if s.active]
                if not active:
                    continue
                try:
                    await self._server_request(channel, subscribe=True)
                except (ApiError, SubscriptionError) as exc:
                    self.log.error("Re-subscribe refused, dropping channel", channel=channel, error=str(exc))
                    for subscription in active:
                        self._remove(subscription)
                    continue
                for subscription in active:
                    subscription.live = True
                count += 1
            if count:
                self.log.info("Re-subscribed channels", count=count)
            return count

    def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.stop()
        self._subscriptions.clear()
        self._channels.clear()
