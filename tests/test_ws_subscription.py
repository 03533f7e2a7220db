import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import wait_until
from Deribit_client import ApiError, NotConnected, SubscriptionError
from Deribit_client.WebSockets import ConnectionState, Notification, SubscriptionRegistry


async def echo_channels(method, params, timeout=None):
    return list(params["channels"])


# --- Fixtures ---


@pytest.fixture
def call():
    return AsyncMock(side_effect=echo_channels)


@pytest.fixture
def registry(call):
    registry = SubscriptionRegistry(call, queue_size=10)
    yield registry
    registry.close()


# --- Test Cases ---


@pytest.mark.asyncio
async def test_public_and_private_channels_use_matching_methods(registry, call):
    await registry.subscribe("ticker.BTC-PERPETUAL.raw", lambda data: None)
    await registry.subscribe("user.orders.any.any.raw", lambda data: None)

    methods = [c.args[0] for c in call.await_args_list]
    assert methods == ["public/subscribe", "private/subscribe"]
    assert call.await_args_list[0].args[1] == {"channels": ["ticker.BTC-PERPETUAL.raw"]}


@pytest.mark.asyncio
async def test_refused_channel_is_not_registered(registry, call):
    call.side_effect = None
    call.return_value = []

    with pytest.raises(SubscriptionError):
        await registry.subscribe("ticker.NOPE.raw", lambda data: None)
    assert registry.channels() == []


@pytest.mark.asyncio
async def test_callable_listener_receives_data_in_order(registry):
    received = []
    await registry.subscribe("trades.BTC-PERPETUAL.raw", received.append)

    for i in range(3):
        assert registry.dispatch(Notification("trades.BTC-PERPETUAL.raw", i)) == 1
    await wait_until(lambda: len(received) == 3)

    assert received == [0, 1, 2]


@pytest.mark.asyncio
async def test_async_listener_is_awaited(registry):
    received = []

    async def listener(data):
        await asyncio.sleep(0)
        received.append(data)

    await registry.subscribe("book.BTC-PERPETUAL.100ms", listener)
    registry.dispatch(Notification("book.BTC-PERPETUAL.100ms", {"bids": []}))
    await wait_until(lambda: received)

    assert received == [{"bids": []}]


@pytest.mark.asyncio
async def test_queue_listener_is_fed_directly(registry):
    queue = asyncio.Queue(maxsize=100)
    await registry.subscribe("deribit_price_index.btc_usd", queue)

    registry.dispatch(Notification("deribit_price_index.btc_usd", {"price": 1.0}))

    assert queue.get_nowait() == {"price": 1.0}


@pytest.mark.asyncio
async def test_bad_listener_is_rejected(registry, call):
    with pytest.raises(TypeError):
        await registry.subscribe("ticker.BTC-PERPETUAL.raw", "not a listener")
    call.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_channel_is_dropped(registry):
    assert registry.dispatch(Notification("ticker.UNKNOWN.raw", 1)) == 0


@pytest.mark.asyncio
async def test_shared_channel_subscribes_once(registry, call):
    first = await registry.subscribe("ticker.ETH-PERPETUAL.raw", lambda data: None)
    second = await registry.subscribe("ticker.ETH-PERPETUAL.raw", lambda data: None)

    assert first != second
    assert call.await_count == 1
    assert registry.get(second).live

    assert await registry.unsubscribe(first) is True
    assert call.await_count == 1
    assert await registry.unsubscribe(second) is True
    assert call.await_args.args[0] == "public/unsubscribe"
    assert registry.channels() == []


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(registry, call):
    handle = await registry.subscribe("ticker.BTC-PERPETUAL.raw", lambda data: None)

    assert await registry.unsubscribe(handle) is True
    assert await registry.unsubscribe(handle) is False
    assert call.await_count == 2


@pytest.mark.asyncio
async def test_unsubscribe_while_disconnected_is_local(registry, call):
    handle = await registry.subscribe("ticker.BTC-PERPETUAL.raw", lambda data: None)
    call.side_effect = NotConnected("down")

    assert await registry.unsubscribe(handle) is True
    assert registry.channels() == []


@pytest.mark.asyncio
async def test_resubscribe_keeps_original_order(registry, call):
    channels = ["ticker.A.raw", "ticker.B.raw", "user.trades.any.any.raw", "ticker.C.raw"]
    handles = [await registry.subscribe(channel, lambda data: None) for channel in channels]
    await registry.unsubscribe(handles[1])

    registry.on_state_change(ConnectionState.READY, ConnectionState.RECONNECTING)
    assert not any(registry.get(h).live for h in handles if registry.get(h))
    call.reset_mock()

    assert await registry.resubscribe_all() == 3
    resubscribed = [c.args[1]["channels"][0] for c in call.await_args_list]
    assert resubscribed == ["ticker.A.raw", "user.trades.any.any.raw", "ticker.C.raw"]
    assert registry.get(handles[0]).live


@pytest.mark.asyncio
async def test_resubscribe_drops_refused_channel(registry, call):
    await registry.subscribe("ticker.A.raw", lambda data: None)
    await registry.subscribe("ticker.GONE.raw", lambda data: None)

    async def refuse_gone(method, params, timeout=None):
        if params["channels"] == ["ticker.GONE.raw"]:
            raise ApiError(11050, "bad_request")
        return list(params["channels"])

    call.side_effect = refuse_gone
    assert await registry.resubscribe_all() == 1
    assert registry.channels() == ["ticker.A.raw"]


@pytest.mark.asyncio
async def test_full_buffer_drops_oldest(call):
    registry = SubscriptionRegistry(call, queue_size=2)
    queue = asyncio.Queue(maxsize=2)
    handle = await registry.subscribe("ticker.BTC-PERPETUAL.raw", queue)

    for i in range(4):
        registry.dispatch(Notification("ticker.BTC-PERPETUAL.raw", i))

    assert [queue.get_nowait(), queue.get_nowait()] == [2, 3]
    assert registry.get(handle).dropped == 2
    registry.close()


@pytest.mark.asyncio
async def test_slow_listener_does_not_block_others(registry):
    release = asyncio.Event()
    fast = []

    async def slow(data):
        await release.wait()

    await registry.subscribe("ticker.BTC-PERPETUAL.raw", slow)
    await registry.subscribe("ticker.BTC-PERPETUAL.raw", fast.append)

    for i in range(5):
        registry.dispatch(Notification("ticker.BTC-PERPETUAL.raw", i))
    await wait_until(lambda: len(fast) == 5)

    assert fast == [0, 1, 2, 3, 4]
    release.set()


@pytest.mark.asyncio
async def test_listener_exception_keeps_subscription(registry):
    received = []

    def flaky(data):
        if data == 0:
            raise ValueError("boom")
        received.append(data)

    await registry.subscribe("ticker.BTC-PERPETUAL.raw", flaky)
    registry.dispatch(Notification("ticker.BTC-PERPETUAL.raw", 0))
    registry.dispatch(Notification("ticker.BTC-PERPETUAL.raw", 1))
    await wait_until(lambda: received)

    assert received == [1]


@pytest.mark.asyncio
async def test_rejected_unsubscribe_keeps_subscription_for_retry(registry, call):
    received = []
    handle = await registry.subscribe("book.BTC-PERPETUAL.100ms", received.append)
    call.side_effect = ApiError(11050, "bad_request")

    with pytest.raises(ApiError):
        await registry.unsubscribe(handle)
    assert registry.channels() == ["book.BTC-PERPETUAL.100ms"]
    assert registry.dispatch(Notification("book.BTC-PERPETUAL.100ms", 1)) == 1
    await wait_until(lambda: received)

    call.side_effect = echo_channels
    assert await registry.unsubscribe(handle) is True
    methods = [c.args[0] for c in call.await_args_list]
    assert methods == ["public/subscribe", "public/unsubscribe", "public/unsubscribe"]
    assert registry.channels() == []


@pytest.mark.asyncio
async def test_unbounded_queue_listener_is_rejected(registry, call):
    with pytest.raises(ValueError):
        await registry.subscribe("ticker.BTC-PERPETUAL.raw", asyncio.Queue())
    call.assert_not_called()
