import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..exceptions import (
    ConnectionLost,
    DeribitError,
    RequestCancelled,
    RequestTimeoutError,
)
from ..logger_config import BaseLogger, mask_secrets
from .WSCodec import Response, WireCodec


@dataclass
class PendingRequest:
    """One in-flight request waiting for its response."""

    id: int
    method: str
    params: Optional[Dict[str, Any]]
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    deadline: float = 0.0

    @property
    def resolved(self) -> bool:
        return self.future.done()


class RequestCorrelator(BaseLogger):
    """
    Turns the asynchronous frame exchange into request/response calls.

    Every request gets a fresh integer id and an entry in the correlation
    table; the matching response resolves that entry exactly once. Late or
    duplicate responses are logged and discarded.

    The table is only touched from the event loop thread and none of the
    methods that mutate it await in between reading and writing it, so each
    mutation runs to completion before any other caller is scheduled.
    """

    def __init__(
        self,
        send: Callable[[str], Awaitable[None]],
        codec: Optional[WireCodec] = None,
        default_timeout: float = 10.0,
    ):
        """
        Args:
            send: Coroutine function writing one serialized frame to the transport.
            codec: Codec used to serialize requests.
            default_timeout: Timeout in seconds for calls that do not give one.
        """
        super().__init__()
        self._send = send
        self.codec = codec or WireCodec()
        self.default_timeout = default_timeout
        self._pending: Dict[int, PendingRequest] = {}
        self._last_id = 0
        self.epoch = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def outstanding(self) -> List[int]:
        return list(self._pending)

    def _allocate_id(self) -> int:
        self._last_id += 1
        while self._last_id in self._pending:
            self._last_id += 1
        return self._last_id

    def _register(
        self, method: str, params: Optional[Dict[str, Any]], timeout: float
    ) -> PendingRequest:
        loop = asyncio.get_running_loop()
        request_id = self._allocate_id()
        pending = PendingRequest(
            id=request_id,
            method=method,
            params=params,
            future=loop.create_future(),
        )
        pending.deadline = pending.created_at + timeout
        self._pending[request_id] = pending
        return pending

    def _retire(self, pending: PendingRequest) -> None:
        # Identity check: the id may already belong to a newer epoch.
        if self._pending.get(pending.id) is pending:
            del self._pending[pending.id]

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Sends a request and waits for its result.

        Only the calling task is suspended; other callers keep running.
        Cancelling the calling task removes the request from the table.

        Raises:
            ApiError: The server answered with an error object.
            RequestTimeoutError: No response within ``timeout`` seconds.
            ConnectionLost: The transport dropped before the response arrived.
            RequestCancelled: The session was closed or the request cancelled.
            NotConnected: There was no transport to send the request on.
        """
        timeout = self.default_timeout if timeout is None else timeout
        pending = self._register(method, params, timeout)
        self.log.debug(
            "Sending request",
            request_id=pending.id,
            method=method,
            params=mask_secrets(params),
        )
        try:
            await self._send(self.codec.encode_request(pending.id, method, params))
            remaining = max(pending.deadline - time.monotonic(), 0.0)
            try:
                return await asyncio.wait_for(pending.future, remaining)
            except asyncio.TimeoutError:
                if pending.future.done() and not pending.future.cancelled():
                    # Resolved in the same loop iteration as the timeout fired.
                    return pending.future.result()
                self.log.warning(
                    "Request timed out", request_id=pending.id, method=method, timeout=timeout
                )
                raise RequestTimeoutError(
                    f"No response to {method} within {timeout}s", data=pending.id
                ) from None
        finally:
            self._retire(pending)
            if pending.future.done() and not pending.future.cancelled():
                # Mark the outcome as retrieved when the send itself failed.
                pending.future.exception()

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Sends a request without waiting for a reply. Any reply is discarded."""
        request_id = self._allocate_id()
        self.log.debug("Sending request without reply", request_id=request_id, method=method)
        await self._send(self.codec.encode_request(request_id, method, params))
        return request_id

    def resolve(self, response: Response) -> bool:
        """
        Delivers a response to the request with the same id.

        Returns:
            bool: False when no unresolved request has that id (late or duplicate response).
        """
        pending = self._pending.pop(response.id, None)
        if pending is None or pending.resolved:
            self.log.warning(
                "Discarding response for unknown or already resolved request",
                request_id=response.id,
            )
            return False
        try:
            pending.future.set_result(response.value(pending.method))
        except DeribitError as exc:
            pending.future.set_exception(exc)
        self.log.debug(
            "Request resolved",
            request_id=response.id,
            method=pending.method,
            error=response.is_error,
            elapsed=round(time.monotonic() - pending.created_at, 4),
        )
        return True

    def cancel(self, request_id: int) -> bool:
        """Cancels one pending request; a no-op if it is already resolved."""
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.resolved:
            return False
        pending.future.set_exception(
            RequestCancelled(f"Request {pending.method} was cancelled", data=request_id)
        )
        return True

    def fail_all(self, error_type=ConnectionLost, reason: str = "connection lost") -> int:
        """
        Resolves every outstanding request with an error of ``error_type``.

        Returns:
            int: The number of requests that were failed.
        """
        pending_requests = list(self._pending.values())
        self._pending.clear()
        failed = 0
        for pending in pending_requests:
            if pending.resolved:
                continue
            pending.future.set_exception(
                error_type(f"{pending.method} aborted: {reason}", data=pending.id)
            )
            failed += 1
        if failed:
            self.log.warning(
                "Failed outstanding requests",
                count=failed,
                error=error_type.__name__,
                reason=reason,
            )
        return failed

    def reset_epoch(self) -> None:
        """Starts a new connection epoch; ids restart once the table is empty."""
        self.fail_all(ConnectionLost, reason="new connection epoch")
        self._last_id = 0
        self.epoch += 1
        self.log.debug("Correlation epoch reset", epoch=self.epoch)
