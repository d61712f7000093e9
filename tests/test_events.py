"""Tests for the event emitter and configuration validation."""

import pytest

from ev3_firmware_flasher.config import FlasherConfig
from ev3_firmware_flasher.events import ProgressEvent, session_events, transfer_events


class TestEventEmitter:

    def test_listeners_called_in_registration_order(self):
        events = transfer_events()
        calls = []
        events.on("progress", lambda stage, *args: calls.append(("a", stage)))
        events.on("progress", lambda stage, *args: calls.append(("b", stage)))
        events.emit("progress", "write/start")
        assert calls == [("a", "write/start"), ("b", "write/start")]

    def test_unsubscribe(self):
        events = session_events()
        calls = []
        unsubscribe = events.on("connect", lambda: calls.append(1))
        unsubscribe()
        events.emit("connect")
        assert calls == []
        assert events.listener_count("connect") == 0

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            session_events().on("progress", lambda *args: None)
        with pytest.raises(ValueError):
            transfer_events().emit("connect")

    def test_listener_exception_propagates(self):
        events = transfer_events()

        def boom():
            raise RuntimeError("listener failed")

        events.on("start", boom)
        with pytest.raises(RuntimeError):
            events.emit("start")


def test_progress_event_fraction() -> None:
    assert ProgressEvent("write/process", 509, 1018).fraction == 0.5
    assert ProgressEvent("verify/start").fraction is None


class TestFlasherConfig:

    def test_defaults(self):
        config = FlasherConfig()
        assert config.report_id == 0
        assert config.report_size == 1024
        assert config.reply_timeout == 5.0
        assert config.erase_timeout == 60.0
        assert config.chunk_size == 1018
        assert config.strict_checksum

    @pytest.mark.parametrize("changes", [
        {"chunk_size": 0},
        {"chunk_size": 1019},
        {"reply_timeout": 0},
        {"report_id": 256},
        {"read_size": 0},
    ])
    def test_invalid_values(self, changes):
        with pytest.raises(ValueError):
            FlasherConfig(**changes)

    def test_replace_validates(self):
        config = FlasherConfig().replace(strict_checksum=False)
        assert not config.strict_checksum
        with pytest.raises(ValueError):
            config.replace(erase_timeout=-1)
