from typing import Any, Callable, Dict, Optional, Type

from ..exceptions import ProtocolError
from ..logger_config import BaseLogger
from .WSCodec import Heartbeat, Message, Notification, Response, WireCodec


class WSMessageProcessor(BaseLogger):
    """
    Generic inbound frame dispatcher.

    Frames are decoded with a :class:`WireCodec` and handed to the handler
    registered for the decoded message class. Handlers are plain callables
    and must not block: this runs on the frame reading path.
    """

    def __init__(self, codec: Optional[WireCodec] = None):
        super().__init__()
        self.codec = codec or WireCodec()
        self.handlers: Dict[Type, Callable[[Any], Any]] = {}
        self.frames_processed = 0
        self.frames_dropped = 0

    def register_handler(self, message_type: Type, handler: Callable[[Any], Any]) -> None:
        """Register a handler for a decoded message class."""
        self.handlers[message_type] = handler
        self.log.debug(f"Handler registered for message type: {message_type.__name__}")

    def process_frame(self, frame) -> None:
        """Decodes one frame and dispatches it. Bad frames are logged and dropped."""
        try:
            message = self.codec.decode(frame)
        except ProtocolError as exc:
            self.frames_dropped += 1
            self.log.error("Dropping undecodable frame", error=str(exc), frame=str(frame)[:200])
            return
        self.frames_processed += 1
        self.dispatch(message)

    def dispatch(self, message: Message) -> None:
        handler = self.handlers.get(type(message))
        if handler is None:
            self.log.warning(
                f"No handler registered for message type: '{type(message).__name__}'."
            )
            return
        handler(message)


class MessageProcessor(WSMessageProcessor):
    """
    Routes Deribit frames to the session components.

    Responses go to the request correlator, push notifications to the
    subscription registry, and heartbeats to the heartbeat callback.
    """

    def __init__(
        self,
        on_response: Callable[[Response], Any],
        on_notification: Callable[[Notification], Any],
        on_heartbeat: Optional[Callable[[Heartbeat], Any]] = None,
        codec: Optional[WireCodec] = None,
    ):
        super().__init__(codec)
        self.register_handler(Response, on_response)
        self.register_handler(Notification, on_notification)
        self.register_handler(Heartbeat, on_heartbeat or self._log_heartbeat)

    def _log_heartbeat(self, heartbeat: Heartbeat) -> None:
        self.log.debug("Heartbeat received", type=heartbeat.type)
