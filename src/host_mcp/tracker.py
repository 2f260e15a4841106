"""Single-slot record of the most recent tool call.

Only one call is tracked at a time. Concurrent calls from different
connections overwrite each other and the last transition wins.
"""

from __future__ import annotations

import enum
import threading
import time
from typing import Optional

from .shared.logging import get_logger

logger = get_logger(__name__)

DONE_HOLD_SECONDS = 3.0
ERROR_HOLD_SECONDS = 5.0


class CallState(enum.Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    DONE = "done"
    ERROR = "error"


class CallActivityTracker:
    def __init__(self) -> None:
        # guards the state/timestamp pair; reads are lock-free
        self._lock = threading.Lock()
        self._state = CallState.IDLE
        self._tool_name: Optional[str] = None
        self._started_at = 0.0
        self._completed_at = 0.0
        self._dirty = False

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def tool_name(self) -> Optional[str]:
        return self._tool_name

    @property
    def started_at(self) -> float:
        return self._started_at

    @property
    def completed_at(self) -> float:
        return self._completed_at

    @property
    def dirty(self) -> bool:
        return self._dirty

    def on_call_started(self, tool_name: str) -> None:
        with self._lock:
            self._tool_name = tool_name
            self._started_at = time.monotonic()
            self._completed_at = 0.0
            self._state = CallState.EXECUTING
            self._dirty = True

    def on_call_completed(self, success: bool) -> None:
        with self._lock:
            self._completed_at = time.monotonic()
            self._state = CallState.DONE if success else CallState.ERROR
            self._dirty = True

    def reset(self) -> None:
        with self._lock:
            self._state = CallState.IDLE
            self._tool_name = None
            self._started_at = 0.0
            self._completed_at = 0.0
            self._dirty = True

    def consume_dirty(self) -> bool:
        with self._lock:
            dirty = self._dirty
            self._dirty = False
        return dirty

    def elapsed_seconds(self, now: Optional[float] = None) -> float:
        if self._started_at == 0.0:
            return 0.0
        if self._state is CallState.EXECUTING:
            end = time.monotonic() if now is None else now
        else:
            end = self._completed_at or self._started_at
        return max(0.0, end - self._started_at)


class ActivityMonitor:
    """The one consumer of the tracker's dirty flag.

    Holds a finished call on display for a few seconds, then resets the
    tracker back to idle.
    """

    def __init__(
        self,
        tracker: CallActivityTracker,
        done_hold: float = DONE_HOLD_SECONDS,
        error_hold: float = ERROR_HOLD_SECONDS,
    ) -> None:
        self.tracker = tracker
        self.done_hold = done_hold
        self.error_hold = error_hold
        self.label: Optional[str] = None

    def poll(self, now: Optional[float] = None) -> Optional[str]:
        now = time.monotonic() if now is None else now
        tracker = self.tracker
        state = tracker.state

        if state in (CallState.DONE, CallState.ERROR):
            hold = self.done_hold if state is CallState.DONE else self.error_hold
            if now - tracker.completed_at >= hold:
                tracker.reset()
                state = CallState.IDLE

        if tracker.consume_dirty() or state is CallState.EXECUTING:
            self.label = self._render(state, now)
            if state is not CallState.EXECUTING:
                logger.debug("Activity: %s", self.label or "idle")
        return self.label

    def _render(self, state: CallState, now: float) -> Optional[str]:
        tracker = self.tracker
        if state is CallState.EXECUTING:
            return f"{tracker.tool_name} ({tracker.elapsed_seconds(now):.1f}s)"
        if state is CallState.DONE:
            return f"✓ {tracker.tool_name}"
        if state is CallState.ERROR:
            return f"✗ {tracker.tool_name}"
        return None
