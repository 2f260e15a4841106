"""Simulation playback control."""

from __future__ import annotations

import json
from typing import Annotated

from ..host import current_host
from ..tools import McpParam, mcp_tool


def _result(status: str, message: str) -> str:
    return json.dumps({"status": status, "message": message})


@mcp_tool("Start simulation")
def sim_play() -> str:
    sim = current_host().simulation
    if sim.playing and not sim.paused:
        return _result("playing", "Simulation already running")
    sim.playing = True
    sim.paused = False
    return _result("playing", "Simulation started")


@mcp_tool("Pause simulation")
def sim_pause() -> str:
    sim = current_host().simulation
    if not sim.playing:
        return _result("stopped", "Simulation not running")
    sim.paused = True
    return _result("paused", "Simulation paused")


@mcp_tool("Resume simulation")
def sim_resume() -> str:
    sim = current_host().simulation
    sim.paused = False
    sim.playing = True
    return _result("playing", "Simulation resumed")


@mcp_tool("Stop simulation")
def sim_stop() -> str:
    sim = current_host().simulation
    if not sim.playing:
        return _result("stopped", "Simulation not running")
    sim.playing = False
    sim.paused = False
    return _result("stopped", "Simulation stopped")


@mcp_tool("Set simulation speed")
def sim_set_speed(speed: Annotated[float, McpParam("Speed multiplier (1.0 = normal)")]) -> str:
    if speed < 0:
        return json.dumps({"error": "Speed must be positive"})
    current_host().simulation.time_scale = speed
    return json.dumps({"status": "ok", "speed": speed, "message": f"Time scale set to {speed}"})


@mcp_tool("Get simulation status")
def sim_status() -> str:
    return json.dumps(current_host().simulation.snapshot())


@mcp_tool("Reset simulation time and restart playback")
def sim_reset() -> str:
    sim = current_host().simulation
    time_scale = sim.time_scale
    sim.reset()
    sim.time_scale = time_scale
    sim.playing = True
    return _result("reset", "Simulation restarted")
