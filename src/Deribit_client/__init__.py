from .config import MAINNET, TESTNET, load_config
from .exceptions import (
    ApiError,
    AuthError,
    ConnectionLost,
    DeribitError,
    NotConnected,
    ProtocolError,
    RequestCancelled,
    RequestTimeoutError,
    SubscriptionError,
    TransportError,
)
from .logger_config import BaseLogger, configure_logging
from .scope import Access, Scope
from .WebSockets import (
    ConnectionState,
    Credentials,
    SubscriptionHandle,
    WebSocketClient,
)

__all__ = [
    "MAINNET",
    "TESTNET",
    "load_config",
    "ApiError",
    "AuthError",
    "ConnectionLost",
    "DeribitError",
    "NotConnected",
    "ProtocolError",
    "RequestCancelled",
    "RequestTimeoutError",
    "SubscriptionError",
    "TransportError",
    "BaseLogger",
    "configure_logging",
    "Access",
    "Scope",
    "ConnectionState",
    "Credentials",
    "SubscriptionHandle",
    "WebSocketClient",
]
