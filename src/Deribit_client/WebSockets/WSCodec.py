import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..exceptions import ApiError, ProtocolError


@dataclass(frozen=True)
class WireSchema:
    """
    Field names of the JSON-RPC envelopes exchanged with the server.

    The defaults describe Deribit's API v2. Every envelope built or parsed by
    :class:`WireCodec` goes through one of these names.
    """

    jsonrpc: str = "2.0"
    id_field: str = "id"
    method_field: str = "method"
    params_field: str = "params"
    result_field: str = "result"
    error_field: str = "error"
    notification_method: str = "subscription"
    heartbeat_method: str = "heartbeat"
    channel_field: str = "channel"
    data_field: str = "data"
    heartbeat_type_field: str = "type"
    test_request: str = "test_request"


DERIBIT_SCHEMA = WireSchema()


@dataclass
class Response:
    """A decoded reply to a request, carrying either ``result`` or ``error``."""

    id: int
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    malformed: bool = False

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def value(self, method: Optional[str] = None) -> Any:
        """Returns the result, or raises the server error as :class:`ApiError`."""
        if self.malformed:
            raise ProtocolError("Response must contain either result or error", data=method)
        if self.error is not None:
            raise ApiError.from_payload(self.error, method=method)
        return self.result


@dataclass
class Notification:
    """A push message delivered for a subscribed channel."""

    channel: str
    data: Any


@dataclass
class Heartbeat:
    """A heartbeat sent by the server; ``test_request`` ones must be answered."""

    type: str
    needs_reply: bool = False


Message = Union[Response, Notification, Heartbeat]


class WireCodec:
    """Serializes requests and parses inbound frames according to a :class:`WireSchema`."""

    def __init__(self, schema: WireSchema = DERIBIT_SCHEMA):
        self.schema = schema

    def encode_request(self, request_id: int, method: str, params: Optional[Dict[str, Any]]) -> str:
        s = self.schema
        return json.dumps(
            {
                "jsonrpc": s.jsonrpc,
                s.id_field: request_id,
                s.method_field: method,
                s.params_field: params or {},
            }
        )

    def decode(self, frame: Union[str, bytes]) -> Message:
        """
        Parses one inbound text frame.

        Raises:
            ProtocolError: If the frame is not JSON or matches no known envelope.
        """
        try:
            payload = json.loads(frame)
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"Frame is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ProtocolError("Frame is not a JSON object", data=payload)

        s = self.schema
        request_id = payload.get(s.id_field)
        if request_id is not None:
            if s.result_field in payload:
                return Response(id=request_id, result=payload[s.result_field])
            error = payload.get(s.error_field)
            if isinstance(error, dict):
                return Response(id=request_id, error=error)
            return Response(id=request_id, malformed=True)

        method = payload.get(s.method_field)
        params = payload.get(s.params_field)
        if not isinstance(params, dict):
            params = {}
        if method == s.notification_method and s.channel_field in params:
            return Notification(channel=params[s.channel_field], data=params.get(s.data_field))
        if method == s.heartbeat_method:
            beat_type = params.get(s.heartbeat_type_field, "")
            return Heartbeat(type=beat_type, needs_reply=beat_type == s.test_request)
        raise ProtocolError("Unrecognized frame", data=payload)
