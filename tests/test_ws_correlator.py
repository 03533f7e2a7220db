import asyncio
import json
import time

import pytest

from Deribit_client import ApiError, ConnectionLost, RequestCancelled, RequestTimeoutError
from Deribit_client.WebSockets import RequestCorrelator, Response


class RecordingTransport:
    def __init__(self):
        self.frames = []

    async def send(self, frame):
        self.frames.append(json.loads(frame))

    def ids(self):
        return [frame["id"] for frame in self.frames]


# --- Fixtures ---


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def correlator(transport):
    return RequestCorrelator(transport.send, default_timeout=1.0)


async def _sent(transport, count):
    while len(transport.frames) < count:
        await asyncio.sleep(0)


# --- Test Cases ---


@pytest.mark.asyncio
async def test_out_of_order_responses_reach_their_callers(correlator, transport):
    """Each concurrent caller gets exactly its own result."""
    calls = [asyncio.create_task(correlator.call("public/echo", {"n": n})) for n in range(20)]
    await _sent(transport, 20)

    assert len(set(transport.ids())) == 20
    for frame in reversed(transport.frames):
        correlator.resolve(Response(id=frame["id"], result=frame["params"]["n"]))

    assert await asyncio.gather(*calls) == list(range(20))
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_duplicate_response_is_discarded(correlator, transport):
    call = asyncio.create_task(correlator.call("public/get_time"))
    await _sent(transport, 1)
    request_id = transport.frames[0]["id"]

    assert correlator.resolve(Response(id=request_id, result=1)) is True
    assert correlator.resolve(Response(id=request_id, result=2)) is False
    assert await call == 1


@pytest.mark.asyncio
async def test_timeout_resolves_once(correlator, transport):
    started = time.monotonic()
    with pytest.raises(RequestTimeoutError):
        await correlator.call("public/get_time", timeout=0.05)
    elapsed = time.monotonic() - started

    assert 0.04 <= elapsed < 0.5
    assert correlator.pending_count == 0
    # A late response for the retired id is dropped.
    assert correlator.resolve(Response(id=transport.frames[0]["id"], result=1)) is False


@pytest.mark.asyncio
async def test_timeout_is_a_builtin_timeout_error(correlator):
    with pytest.raises(TimeoutError):
        await correlator.call("public/get_time", timeout=0.01)


@pytest.mark.asyncio
async def test_server_error_is_raised_as_api_error(correlator, transport):
    call = asyncio.create_task(correlator.call("private/buy", {"amount": -1}))
    await _sent(transport, 1)
    correlator.resolve(
        Response(id=transport.frames[0]["id"], error={"code": 10009, "message": "not_enough_funds"})
    )

    with pytest.raises(ApiError) as excinfo:
        await call
    assert excinfo.value.code == 10009
    assert excinfo.value.method == "private/buy"


@pytest.mark.asyncio
async def test_fail_all_resolves_every_pending_call(correlator, transport):
    calls = [asyncio.create_task(correlator.call("public/get_time")) for _ in range(5)]
    await _sent(transport, 5)

    assert correlator.fail_all(ConnectionLost) == 5
    results = await asyncio.gather(*calls, return_exceptions=True)

    assert all(isinstance(r, ConnectionLost) for r in results)
    assert correlator.fail_all(ConnectionLost) == 0


@pytest.mark.asyncio
async def test_cancelling_the_caller_retires_the_request(correlator, transport):
    call = asyncio.create_task(correlator.call("public/get_time"))
    await _sent(transport, 1)
    assert correlator.pending_count == 1

    call.cancel()
    with pytest.raises(asyncio.CancelledError):
        await call
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_cancel_by_id(correlator, transport):
    call = asyncio.create_task(correlator.call("public/get_time"))
    await _sent(transport, 1)
    request_id = transport.frames[0]["id"]

    assert correlator.cancel(request_id) is True
    assert correlator.cancel(request_id) is False
    with pytest.raises(RequestCancelled):
        await call


@pytest.mark.asyncio
async def test_epoch_reset_restarts_ids(correlator, transport):
    first = asyncio.create_task(correlator.call("public/get_time"))
    await _sent(transport, 1)

    correlator.reset_epoch()
    with pytest.raises(ConnectionLost):
        await first

    second = asyncio.create_task(correlator.call("public/get_time"))
    await _sent(transport, 2)
    assert transport.ids() == [1, 1]
    assert correlator.epoch == 1
    correlator.resolve(Response(id=1, result="ok"))
    assert await second == "ok"


@pytest.mark.asyncio
async def test_failed_send_retires_the_request(transport):
    async def broken_send(frame):
        raise ConnectionLost("gone")

    correlator = RequestCorrelator(broken_send)
    with pytest.raises(ConnectionLost):
        await correlator.call("public/get_time")
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_notify_does_not_wait(correlator, transport):
    request_id = await correlator.notify("private/logout", {"invalidate_token": True})

    assert transport.frames[0]["id"] == request_id
    assert correlator.pending_count == 0
