from typing import Any, Dict, Optional


class DeribitError(Exception):
    """
    Base class for every error raised by the Deribit WebSocket client.

    Attributes:
        message (str): The error message.
        code (Optional[int]): A numeric error code, when one is known.
        data (Optional[Any]): Extra payload attached to the error, if any.
    """

    def __init__(
        self, message: str, code: Optional[int] = None, data: Optional[Any] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    def __str__(self) -> str:
        name = self.__class__.__name__
        if self.code is not None:
            return f"{name}(code={self.code}): {self.message}"
        return f"{name}: {self.message}"


class TransportError(DeribitError):
    """Opening or writing to the WebSocket transport failed (network, TLS, handshake)."""


class NotConnected(DeribitError):
    """A frame was sent while the session has no usable transport."""


class ConnectionLost(DeribitError):
    """The transport dropped while the request was still waiting for its response."""


class RequestTimeoutError(DeribitError, TimeoutError):
    """No response arrived for a request within its timeout."""


class RequestCancelled(DeribitError):
    """The request was abandoned because the session was closed."""


class AuthError(DeribitError):
    """
    Authentication with the exchange failed.

    This error is fatal for the session: it is raised to the caller and
    never retried automatically.
    """


class ProtocolError(DeribitError):
    """A frame could not be decoded or did not follow the JSON-RPC schema."""


class SubscriptionError(DeribitError):
    """The server refused to (un)subscribe a channel."""


class ApiError(DeribitError):
    """
    An error reported by the exchange in a JSON-RPC response.

    Raised verbatim to the caller; the core never recovers these locally.

    Attributes:
        code (int): The exchange error code.
        message (str): The exchange error message.
        data (Optional[Any]): The optional ``data`` member of the error object.
        method (Optional[str]): The method of the request that failed.
    """

    def __init__(
        self,
        code: int,
        message: str,
        data: Optional[Any] = None,
        method: Optional[str] = None,
    ):
        super().__init__(message, code=code, data=data)
        self.method = method

    @classmethod
    def from_payload(
        cls, payload: Dict[str, Any], method: Optional[str] = None
    ) -> "ApiError":
        """Builds an ApiError from a JSON-RPC ``error`` object."""
        return cls(
            code=payload.get("code", 0),
            message=payload.get("message", "Unknown error"),
            data=payload.get("data"),
            method=method,
        )

    def __str__(self) -> str:
        base_msg = f"ApiError(code={self.code}): {self.message}"
        if self.method:
            base_msg += f" | Method: {self.method}"
        if self.data is not None:
            # Long data payloads are truncated; inspect the attribute for details.
            data_summary = str(self.data)[:100]
            if len(str(self.data)) > 100:
                data_summary += "..."
            base_msg += f" | Data (summary): {data_summary}"
        return base_msg
