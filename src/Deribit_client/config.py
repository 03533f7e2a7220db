import os
from dotenv import load_dotenv
from typing import Any, Callable, Dict, Optional

# Constants for configuration keys
CLIENT_ID = "DERIBIT_CLIENT_ID"
CLIENT_SECRET = "DERIBIT_CLIENT_SECRET"
WS_URI = "DERIBIT_WS_URI"
REQUEST_TIMEOUT = "DERIBIT_REQUEST_TIMEOUT"
TOKEN_SAFETY_MARGIN = "DERIBIT_TOKEN_SAFETY_MARGIN"
HEARTBEAT_INTERVAL = "DERIBIT_HEARTBEAT_INTERVAL"
RECONNECT_BASE = "DERIBIT_RECONNECT_BASE"
RECONNECT_CAP = "DERIBIT_RECONNECT_CAP"
RECONNECT_MAX_ATTEMPTS = "DERIBIT_RECONNECT_MAX_ATTEMPTS"
LISTENER_QUEUE_SIZE = "DERIBIT_LISTENER_QUEUE_SIZE"
AUTH_SCOPE = "DERIBIT_AUTH_SCOPE"

MAINNET = "wss://www.deribit.com/ws/api/v2"
TESTNET = "wss://test.deribit.com/ws/api/v2"

# Defaults used when a key is absent from the environment
DEFAULTS: Dict[str, Any] = {
    CLIENT_ID: None,
    CLIENT_SECRET: None,
    WS_URI: TESTNET,
    REQUEST_TIMEOUT: 10.0,
    TOKEN_SAFETY_MARGIN: 30.0,
    HEARTBEAT_INTERVAL: None,
    RECONNECT_BASE: 1.0,
    RECONNECT_CAP: 30.0,
    RECONNECT_MAX_ATTEMPTS: None,
    LISTENER_QUEUE_SIZE: 1000,
    AUTH_SCOPE: None,
}

_PARSERS: Dict[str, Callable[[str], Any]] = {
    REQUEST_TIMEOUT: float,
    TOKEN_SAFETY_MARGIN: float,
    HEARTBEAT_INTERVAL: int,
    RECONNECT_BASE: float,
    RECONNECT_CAP: float,
    RECONNECT_MAX_ATTEMPTS: int,
    LISTENER_QUEUE_SIZE: int,
}

_SECRET_KEYS = (CLIENT_SECRET,)


def _parse(key: str, raw: Optional[str]) -> Any:
    if raw is None or raw == "":
        return DEFAULTS[key]
    parser = _PARSERS.get(key)
    if parser is None:
        return raw
    try:
        return parser(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: {raw!r}") from exc


def load_config(env: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Loads the client configuration from environment variables.

    Values from a ``.env`` file are loaded first with python-dotenv. Numeric
    settings are parsed; missing settings fall back to :data:`DEFAULTS`.
    Without a client id and secret the client runs in public-only mode.

    Args:
        env (Optional[Dict[str, str]]): Mapping to read instead of ``os.environ``.
            When given, no ``.env`` file is loaded.

    Returns:
        Dict[str, Any]: The configuration, keyed by the constants of this module.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    return {key: _parse(key, env.get(key)) for key in DEFAULTS}


def resolve_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fills the keys missing from ``config`` with their defaults."""
    resolved = dict(DEFAULTS)
    if config:
        resolved.update({key: value for key, value in config.items() if value is not None})
    return resolved


def describe_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Returns a copy of ``config`` that is safe to print or log."""
    return {
        key: ("*" * len(str(value)) if key in _SECRET_KEYS and value else value)
        for key, value in config.items()
    }
