from unittest.mock import MagicMock

import pytest

from Deribit_client.WebSockets import Heartbeat, MessageProcessor, Notification, Response


# --- Fixtures ---


@pytest.fixture
def handlers():
    return MagicMock()


@pytest.fixture
def processor(handlers):
    return MessageProcessor(
        on_response=handlers.response,
        on_notification=handlers.notification,
        on_heartbeat=handlers.heartbeat,
    )


# --- Test Cases ---


def test_response_goes_to_correlator(processor, handlers):
    processor.process_frame('{"jsonrpc": "2.0", "id": 1, "result": "ok"}')

    handlers.response.assert_called_once_with(Response(id=1, result="ok"))
    handlers.notification.assert_not_called()
    assert processor.frames_processed == 1


def test_notification_goes_to_registry(processor, handlers):
    processor.process_frame(
        '{"jsonrpc": "2.0", "method": "subscription", "params": {"channel": "c", "data": 1}}'
    )
    handlers.notification.assert_called_once_with(Notification(channel="c", data=1))


def test_heartbeat_goes_to_callback(processor, handlers):
    processor.process_frame(
        '{"jsonrpc": "2.0", "method": "heartbeat", "params": {"type": "test_request"}}'
    )
    handlers.heartbeat.assert_called_once_with(Heartbeat(type="test_request", needs_reply=True))


def test_undecodable_frame_is_dropped(processor, handlers):
    processor.process_frame("{broken")

    assert processor.frames_dropped == 1
    assert processor.frames_processed == 0
    handlers.response.assert_not_called()


def test_default_heartbeat_handler_only_logs(handlers):
    processor = MessageProcessor(handlers.response, handlers.notification)
    processor.process_frame(
        '{"jsonrpc": "2.0", "method": "heartbeat", "params": {"type": "heartbeat"}}'
    )
    assert processor.frames_processed == 1
