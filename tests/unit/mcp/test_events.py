"""Tests for the lifecycle event emitter."""

from __future__ import annotations

import logging

import pytest

from mcp_guard.mcp.events import SERVER_EVENTS, SERVER_STARTED, SERVER_STOPPED, EventEmitter


class TestEventEmitter:
    def test_known_events(self):
        assert SERVER_EVENTS == {
            "server-started",
            "server-stopped",
            "server-failed",
            "server-auto-disabled",
            "server-retry",
        }

    def test_emit_in_registration_order(self):
        emitter = EventEmitter()
        calls = []
        emitter.on(SERVER_STARTED, lambda p: calls.append(("first", p["server_id"])))
        emitter.on(SERVER_STARTED, lambda p: calls.append(("second", p["server_id"])))

        emitter.emit(SERVER_STARTED, {"server_id": "weather"})

        assert calls == [("first", "weather"), ("second", "weather")]

    def test_only_matching_event_handlers_called(self):
        emitter = EventEmitter()
        calls = []
        emitter.on(SERVER_STOPPED, calls.append)

        emitter.emit(SERVER_STARTED, {"server_id": "weather"})

        assert calls == []

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError, match="Unknown event"):
            EventEmitter().on("server-exploded", lambda p: None)

    def test_coroutine_handler_rejected(self):
        async def handler(payload):
            return None

        with pytest.raises(TypeError):
            EventEmitter().on(SERVER_STARTED, handler)

    def test_unsubscribe(self):
        emitter = EventEmitter()
        calls = []
        unsubscribe = emitter.on(SERVER_STARTED, calls.append)
        assert emitter.listener_count(SERVER_STARTED) == 1

        assert unsubscribe() is True
        assert unsubscribe() is False
        emitter.emit(SERVER_STARTED, {"server_id": "weather"})

        assert calls == []
        assert emitter.listener_count(SERVER_STARTED) == 0

    def test_off_unknown_handler(self):
        assert EventEmitter().off(SERVER_STARTED, print) is False

    def test_raising_handler_is_logged_and_skipped(self, caplog):
        emitter = EventEmitter()
        calls = []

        def broken(payload):
            raise RuntimeError("listener bug")

        emitter.on(SERVER_STARTED, broken)
        emitter.on(SERVER_STARTED, calls.append)

        with caplog.at_level(logging.ERROR, logger="mcp_guard.mcp.events"):
            emitter.emit(SERVER_STARTED, {"server_id": "weather"})

        assert calls == [{"server_id": "weather"}]
        assert "Event handler for 'server-started' raised" in caplog.text
