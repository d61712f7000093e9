"""
Observer registration for upgrader and transfer notifications.

Two fixed event vocabularies exist:

Session events (FirmwareUpgrader.events):
    init()                       upgrader initialized
    connect()                    device opened
    disconnect(error=None)       device closed, or open failed with error
    message(count, in_flight)    request sent (in_flight=True) / finished (False)

Transfer events (one emitter per firmware write):
    start()
    progress(stage, bytes_sent=None, expected_size=None)
    end()
    error(error)

Listeners run synchronously on the emitting thread, in registration order.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional

logger = logging.getLogger(__name__)

SESSION_EVENTS: FrozenSet[str] = frozenset({"init", "connect", "disconnect", "message"})
TRANSFER_EVENTS: FrozenSet[str] = frozenset({"start", "progress", "end", "error"})

# Progress stages in emission order
STAGE_ENTER_FW_UPDATE_START = "enter_fw_update/start"
STAGE_ENTER_FW_UPDATE_END = "enter_fw_update/end"
STAGE_ERASE_START = "download_with_erase/start"
STAGE_ERASE_END = "download_with_erase/end"
STAGE_WRITE_START = "write/start"
STAGE_WRITE_PROCESS = "write/process"
STAGE_WRITE_END = "write/end"
STAGE_VERIFY_START = "verify/start"
STAGE_VERIFY_END = "verify/end"
STAGE_RESTART_START = "restart/start"
STAGE_RESTART_END = "restart/end"


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot of one progress notification (used by recorders and the CLI)."""
    stage: str
    bytes_sent: Optional[int] = None
    expected_size: Optional[int] = None

    @property
    def fraction(self) -> Optional[float]:
        if self.bytes_sent is None or not self.expected_size:
            return None
        return self.bytes_sent / self.expected_size


class EventEmitter:
    """
    Minimal named-event emitter.

    Example:
        events = EventEmitter(TRANSFER_EVENTS)
        unsubscribe = events.on("progress", lambda stage, *args: print(stage))
        ...
        unsubscribe()
    """

    def __init__(self, names: FrozenSet[str]):
        self.names = names
        self._listeners: Dict[str, List[Callable]] = {name: [] for name in names}
        self._lock = threading.Lock()

    def _check(self, event: str) -> None:
        if event not in self.names:
            raise ValueError(
                f"Unknown event '{event}'. Expected one of: {', '.join(sorted(self.names))}"
            )

    def on(self, event: str, callback: Callable) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._check(event)
        with self._lock:
            self._listeners[event].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners[event]:
                    self._listeners[event].remove(callback)

        return unsubscribe

    def emit(self, event: str, *args) -> None:
        """Call every listener for ``event`` with ``args``."""
        self._check(event)
        with self._lock:
            listeners = list(self._listeners[event])
        for callback in listeners:
            callback(*args)

    def listener_count(self, event: str) -> int:
        self._check(event)
        with self._lock:
            return len(self._listeners[event])


def session_events() -> EventEmitter:
    return EventEmitter(SESSION_EVENTS)


def transfer_events() -> EventEmitter:
    return EventEmitter(TRANSFER_EVENTS)
