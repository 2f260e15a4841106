"""Headless stand-in for the host application.

``HostLoop`` is a cooperative single-threaded main loop. Everything that
mutates host state (the simulation, tool bodies) runs inside ``tick()`` on
the thread that calls ``run()``.
"""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .shared.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Any]

_current: Optional["HostLoop"] = None


class SimulationState:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.playing = False
        self.paused = False
        self.time_scale = 1.0
        self.time = 0.0
        self.frame_count = 0

    @property
    def mode(self) -> str:
        if not self.playing:
            return "stopped"
        return "paused" if self.paused else "playing"

    def advance(self, delta: float) -> None:
        if not self.playing or self.paused:
            return
        self.time += delta * self.time_scale
        self.frame_count += 1

    def snapshot(self) -> Dict[str, Any]:
        return {
            "is_playing": self.playing,
            "is_paused": self.paused,
            "time_scale": self.time_scale,
            "time": round(self.time, 6),
            "frame_count": self.frame_count,
            "mode": self.mode,
        }


class HostLoop:
    def __init__(self, project_path: Optional[str] = None, tick_interval: float = 0.02) -> None:
        self.project_path = Path(project_path or os.getcwd()).resolve()
        self.tick_interval = tick_interval
        self.simulation = SimulationState()
        self.tick_count = 0
        self.started_at = time.monotonic()
        self.before_reload: List[Callback] = []
        self.after_reload: List[Callback] = []
        self.quitting: List[Callback] = []
        self._updates: List[Callback] = []
        self._stop = threading.Event()
        self._running = False
        self._reload_requested = threading.Event()
        self._last_tick: Optional[float] = None
        self.activate()

    def activate(self) -> None:
        global _current
        _current = self

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def running(self) -> bool:
        return self._running

    def register_update(self, callback: Callback) -> None:
        if callback not in self._updates:
            self._updates.append(callback)

    def unregister_update(self, callback: Callback) -> None:
        if callback in self._updates:
            self._updates.remove(callback)

    def tick(self) -> None:
        now = time.monotonic()
        delta = self.tick_interval if self._last_tick is None else now - self._last_tick
        self._last_tick = now
        self.tick_count += 1
        self.simulation.advance(delta)

        for callback in list(self._updates):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                logger.error("Host: update callback failed (kept registered): %s", exc, exc_info=True)

        if self._reload_requested.is_set():
            self._reload_requested.clear()
            self.reload()

    def run(self, duration: Optional[float] = None) -> None:
        deadline = None if duration is None else time.monotonic() + duration
        self._running = True
        try:
            while not self._stop.is_set():
                self.tick()
                if deadline is not None and time.monotonic() >= deadline:
                    break
                self._stop.wait(self.tick_interval)
        finally:
            self._running = False
            self._stop.clear()

    def stop(self) -> None:
        self._stop.set()

    def request_reload(self) -> None:
        """Ask for a reload at the end of the next tick. Safe from any thread."""
        self._reload_requested.set()

    def reload(self) -> None:
        logger.info("Host: reloading")
        _fire(self.before_reload, "before_reload")
        _fire(self.after_reload, "after_reload")

    def quit(self) -> None:
        _fire(self.quitting, "quitting")
        self.stop()


def _fire(listeners: List[Callback], event: str) -> None:
    for listener in list(listeners):
        try:
            listener()
        except Exception as exc:  # noqa: BLE001
            logger.error("Host: %s listener failed: %s", event, exc, exc_info=True)


def current_host() -> HostLoop:
    if _current is None:
        return HostLoop()
    return _current
