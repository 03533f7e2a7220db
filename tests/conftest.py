import asyncio
import json
import time

import pytest
from websockets.exceptions import ConnectionClosedError

from Deribit_client import config as cfg
from Deribit_client.WebSockets import WebSocketClient

_DROP = object()
_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, server):
        self.server = server
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, frame):
        if self.closed:
            raise ConnectionClosedError(None, None)
        request = json.loads(frame)
        self.sent.append(request)
        self.server.handle(self, request)

    def push(self, payload):
        self.incoming.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self):
        """Simulates an abnormal disconnect seen by the reader."""
        self.incoming.put_nowait(_DROP)

    def methods(self):
        return [request["method"] for request in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is _DROP:
            self.closed = True
            raise ConnectionClosedError(None, None)
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(_CLOSE)


class FakeServer:
    """
    Scripted Deribit server.

    Handlers map a method to ``handler(params)`` returning a response fragment
    (``{"result": ...}`` or ``{"error": {...}}``) or None for no reply.
    """

    def __init__(self):
        self.connections = []
        self.handlers = {}
        self.fail_connects = 0
        self.tokens_issued = 0

    async def connect(self, uri):
        if self.fail_connects:
            self.fail_connects -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(self)
        self.connections.append(ws)
        return ws

    @property
    def ws(self):
        return self.connections[-1]

    def on(self, method, handler):
        self.handlers[method] = handler

    def reply(self, method, result):
        self.handlers[method] = lambda params: {"result": result}

    def fail(self, method, code, message):
        self.handlers[method] = lambda params: {"error": {"code": code, "message": message}}

    def silence(self, method):
        self.handlers[method] = lambda params: None

    def requests(self):
        return [request for ws in self.connections for request in ws.sent]

    def _default(self, method, params):
        if method == "public/auth":
            self.tokens_issued += 1
            return {
                "result": {
                    "access_token": f"access-{self.tokens_issued}",
                    "refresh_token": f"refresh-{self.tokens_issued}",
                    "expires_in": 900,
                    "scope": "connection mainaccount session:default trade:read_write",
                    "token_type": "bearer",
                }
            }
        if method.endswith("/subscribe") or method.endswith("/unsubscribe"):
            return {"result": list(params.get("channels", []))}
        if method == "public/test":
            return {"result": {"version": "1.2.26"}}
        if method == "public/set_heartbeat":
            return {"result": "ok"}
        if method == "private/logout":
            return None
        return {"error": {"code": -32601, "message": "Method not found"}}

    def handle(self, ws, request):
        method = request["method"]
        params = request.get("params") or {}
        handler = self.handlers.get(method)
        fragment = handler(params) if handler else self._default(method, params)
        if fragment is not None:
            ws.push({"jsonrpc": "2.0", "id": request["id"], **fragment})


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


async def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# --- Fixtures ---


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def make_client(server):
    """Builds clients wired to the fake server with fast reconnects."""

    def factory(credentials=True, **overrides):
        config = {
            cfg.WS_URI: "wss://test.invalid/ws/api/v2",
            cfg.REQUEST_TIMEOUT: 1.0,
            cfg.RECONNECT_BASE: 0.01,
            cfg.RECONNECT_CAP: 0.02,
        }
        if credentials:
            config[cfg.CLIENT_ID] = "test-id"
            config[cfg.CLIENT_SECRET] = "test-secret"
        clock = overrides.pop("clock", time.monotonic)
        config.update(overrides)
        return WebSocketClient(config, connect_factory=server.connect, clock=clock)

    return factory
