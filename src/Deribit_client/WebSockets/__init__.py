# Expose the primary client orchestrator
from .WSClient import WebSocketClient

# Session components, for callers composing their own client
from .WSAuth import AccessToken, AuthManager, Credentials
from .WSCodec import DERIBIT_SCHEMA, Heartbeat, Notification, Response, WireCodec, WireSchema
from .WSConnection import BackoffPolicy, ConnectionState, WSConnectionManager
from .WSCorrelator import PendingRequest, RequestCorrelator
from .WSMessage_Processor import MessageProcessor, WSMessageProcessor
from .WSSubscription import Subscription, SubscriptionHandle, SubscriptionRegistry

__all__ = [
    "WebSocketClient",
    "AccessToken",
    "AuthManager",
    "Credentials",
    "DERIBIT_SCHEMA",
    "Heartbeat",
    "Notification",
    "Response",
    "WireCodec",
    "WireSchema",
    "BackoffPolicy",
    "ConnectionState",
    "WSConnectionManager",
    "PendingRequest",
    "RequestCorrelator",
    "MessageProcessor",
    "WSMessageProcessor",
    "Subscription",
    "SubscriptionHandle",
    "SubscriptionRegistry",
]
