"""Tests for progress events and the client message protocol."""

import pytest
from pydantic import ValidationError

from repolens.events import (
    ConnectionState,
    EventType,
    PingMessage,
    ProgressSession,
    ProtocolError,
    SubscribeMessage,
    UnsubscribeMessage,
    completed,
    parse_client_message,
    progress,
)


class TestProgressEvent:
    def test_progress_payload(self):
        event = progress("a1", "walking", "Analyzing repository structure")
        data = event.to_dict()
        assert data["type"] == "progress"
        assert data["analysisId"] == "a1"
        assert data["payload"] == {
            "status": "analyzing",
            "stage": "walking",
            "percent": 30,
            "message": "Analyzing repository structure",
        }
        assert "T" in data["timestamp"]
        assert not event.is_terminal

    def test_terminal(self):
        assert completed("a1", {}).is_terminal
        assert completed("a1", {}).type == EventType.COMPLETED


class TestParseClientMessage:
    def test_subscribe(self):
        message = parse_client_message('{"type": "subscribe", "analysisId": "abc"}')
        assert isinstance(message, SubscribeMessage)
        assert message.analysis_id == "abc"

    def test_unsubscribe_and_ping(self):
        assert isinstance(parse_client_message('{"type": "unsubscribe"}'), UnsubscribeMessage)
        assert isinstance(parse_client_message('{"type": "ping"}'), PingMessage)

    @pytest.mark.parametrize("raw", [
        '{"type": "shutdown"}',
        '{"type": "subscribe"}',
        '{"type": "subscribe", "analysisId": ""}',
        '{"analysisId": "abc"}',
        "not json",
        "[]",
    ])
    def test_rejected(self, raw):
        with pytest.raises(ValidationError):
            parse_client_message(raw)


class TestProgressSession:
    def test_lifecycle(self):
        session = ProgressSession()
        assert session.state == ConnectionState.UNSUBSCRIBED
        session.subscribe("a1")
        assert session.state == ConnectionState.SUBSCRIBED
        session.receiving()
        assert session.state == ConnectionState.RECEIVING
        session.receiving()
        assert session.state == ConnectionState.RECEIVING
        session.unsubscribe()
        assert session.state == ConnectionState.UNSUBSCRIBED
        assert session.analysis_id is None
        session.close()
        assert session.state == ConnectionState.CLOSED

    def test_double_subscribe(self):
        session = ProgressSession()
        session.subscribe("a1")
        with pytest.raises(ProtocolError):
            session.subscribe("a2")

    def test_unsubscribe_without_subscription(self):
        with pytest.raises(ProtocolError):
            ProgressSession().unsubscribe()

    def test_closed_is_final(self):
        session = ProgressSession()
        session.close()
        session.close()
        with pytest.raises(ProtocolError):
            session.subscribe("a1")
