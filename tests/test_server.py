import json
import threading
import time

import pytest
from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.sync.client import connect

from host_mcp.dispatcher import MainThreadDispatcher
from host_mcp.server import Connection, ConnectionHandler, ServerState
from host_mcp.shared.config import ServerConfig
from host_mcp.shared.errors import PortUnavailable
from host_mcp.tools import ToolRegistry
from host_mcp.tracker import CallActivityTracker, CallState

from conftest import hold_ports, release_ports, wait_for


@pytest.fixture
def registry():
    reg = ToolRegistry(entry_point_group=None)
    reg.discover()
    return reg


def _handler(registry, dispatcher=None, **config):
    config.setdefault("port", 0)
    return ConnectionHandler(
        registry,
        dispatcher if dispatcher is not None else MainThreadDispatcher(),
        CallActivityTracker(),
        ServerConfig(**config),
    )


def _rpc(ws, payload):
    ws.send(json.dumps(payload))
    return json.loads(ws.recv(timeout=5))


def test_heartbeat_reports_tool_count(registry):
    handler = _handler(registry)
    reply = json.loads(handler.process_message('{"command": "__heartbeat__"}'))
    assert reply == {"status": "ok", "tools_count": registry.tool_count}


def test_unknown_and_malformed_messages(registry):
    handler = _handler(registry)
    assert json.loads(handler.process_message('{"command": "teleport"}')) == {"error": "Unknown command"}
    assert json.loads(handler.process_message("{oops"))["error"] == "Invalid JSON"


def test_discover_uses_cache(registry):
    handler = _handler(registry)
    first = handler.process_message('{"command": "discover"}')
    assert json.loads(first)["schema_version"] == "1.0.0"
    assert handler.handle_discover() is first


def test_call_wraps_tool_output_and_tracks_activity(registry):
    handler = _handler(registry)
    reply = json.loads(handler.process_message('{"command": "call", "tool": "echo", "arguments": {"text": "hi"}}'))
    assert reply == {"result": {"text": "hi"}}
    assert handler.tracker.state is CallState.DONE
    assert handler.tracker.tool_name == "echo"


def test_call_errors_are_structured(registry):
    handler = _handler(registry)
    reply = json.loads(handler.process_message('{"command": "call", "tool": "bogus_tool_name"}'))
    assert reply == {"error": "Tool 'bogus_tool_name' not found"}
    assert handler.tracker.state is CallState.ERROR

    reply = json.loads(handler.process_message('{"command": "call", "tool": "sim_set_speed", "arguments": {}}'))
    assert reply == {"error": "Missing required argument 'speed'"}


def test_tool_reported_error_counts_as_failure(registry):
    handler = _handler(registry)
    reply = json.loads(
        handler.process_message('{"command": "call", "tool": "sim_set_speed", "arguments": {"kwargs": "speed=-1"}}')
    )
    assert reply == {"result": {"error": "Speed must be positive"}}
    assert handler.tracker.state is CallState.ERROR


def test_auth(registry):
    handler = _handler(registry)
    assert json.loads(handler.handle_auth("anything")) == {"status": "ok"}

    handler.set_auth_token("secret")
    assert json.loads(handler.handle_auth("wrong")) == {"error": "invalid token"}
    session = Connection(id="s1")
    assert json.loads(handler.handle_auth("secret", session)) == {"status": "ok"}
    assert session.authenticated


def test_require_auth_blocks_unauthenticated_sessions(registry):
    handler = _handler(registry, require_auth=True)
    handler.set_auth_token("secret")
    session = Connection(id="s1", authenticated=False)
    reply = json.loads(handler.process_message('{"command": "discover"}', session))
    assert reply == {"error": "authentication required"}
    handler.process_message('{"command": "auth", "token": "secret"}', session)
    assert "tools" in json.loads(handler.process_message('{"command": "discover"}', session))


def test_reloading_fails_fast(registry):
    handler = _handler(registry)
    handler.reloading.set()
    started = time.monotonic()
    reply = json.loads(handler.process_message('{"command": "call", "tool": "sim_status"}'))
    assert "reloading" in reply["error"]
    assert time.monotonic() - started < 1.0


def test_stalled_dispatcher_fails_fast(registry, monkeypatch):
    dispatcher = MainThreadDispatcher()
    monkeypatch.setattr(dispatcher, "seconds_since_last_drain", lambda: 20.0)
    handler = _handler(registry, dispatcher)
    reply = json.loads(handler.process_message('{"command": "call", "tool": "sim_status"}'))
    assert reply["error"].startswith("Host is busy")
    assert "20s" in reply["error"]


def test_dispatch_timeout_names_the_tool(registry):
    dispatcher = MainThreadDispatcher()
    owner = threading.Thread(target=dispatcher.bind_current_thread)
    owner.start()
    owner.join()
    handler = _handler(registry, dispatcher, call_timeout=0.3)
    reply = json.loads(handler.process_message('{"command": "call", "tool": "sim_status"}'))
    assert reply["error"].startswith("Main thread dispatch timeout for sim_status")
    # the abandoned closure never runs
    assert dispatcher.pending == 1
    dispatcher.bind_current_thread()
    dispatcher.drain()
    assert dispatcher.stats["executed"] == 0


def test_port_retry_and_exhaustion(registry):
    first = _handler(registry)
    port = first.start()
    try:
        second = _handler(registry, port=port, max_port_retries=5)
        try:
            second_port = second.start()
            assert port < second_port <= port + 5
            assert second.state is ServerState.LISTENING
        finally:
            second.stop()
    finally:
        first.stop()
    assert first.state is ServerState.STOPPED


def test_single_retry_tries_two_ports(registry):
    base, held = hold_ports(2)
    try:
        handler = _handler(registry, port=base, max_port_retries=1)
        with pytest.raises(PortUnavailable) as excinfo:
            handler.start()
        assert excinfo.value.base_port == base
        assert excinfo.value.last_port == base + 1
        assert handler.state is ServerState.STOPPED
    finally:
        release_ports(held)


def test_retries_reach_the_tenth_port(registry):
    base, held = hold_ports(11)
    held.pop().close()
    try:
        handler = _handler(registry, port=base, max_port_retries=10)
        try:
            assert handler.start() == base + 10
        finally:
            handler.stop()
    finally:
        release_ports(held)


def test_wrong_path_is_rejected(running_bridge):
    with pytest.raises(InvalidHandshake):
        with connect(f"ws://127.0.0.1:{running_bridge.port}/other"):
            pass


def test_end_to_end_discover_and_call(running_bridge):
    with connect(running_bridge.handler.url) as ws:
        discovered = _rpc(ws, {"command": "__discover__"})
        names = {tool["name"] for tool in discovered["tools"]}
        assert {"sim_status", "sim_play", "echo"} <= names

        status = _rpc(ws, {"command": "__call__", "tool": "sim_status"})
        assert "error" not in status
        assert set(status["result"]) >= {"is_playing", "is_paused", "time_scale", "time", "frame_count", "mode"}

        assert _rpc(ws, {"command": "call", "tool": "bogus_tool_name"}) == {
            "error": "Tool 'bogus_tool_name' not found"
        }

        speed = _rpc(ws, {"command": "call", "tool": "sim_set_speed", "arguments": {"kwargs": "speed=2.5"}})
        assert speed["result"]["speed"] == 2.5
        assert running_bridge.host.simulation.time_scale == 2.5

        heartbeat = _rpc(ws, {"command": "heartbeat"})
        assert heartbeat == {"status": "ok", "tools_count": running_bridge.tool_count}


def test_auth_with_saved_token(running_bridge):
    token = running_bridge.token_path.read_text(encoding="utf-8")
    with connect(running_bridge.handler.url) as ws:
        assert _rpc(ws, {"command": "auth", "token": "nope"}) == {"error": "invalid token"}
        assert _rpc(ws, {"command": "auth", "token": token}) == {"status": "ok"}


def test_connection_count_and_close_reason(running_bridge):
    handler = running_bridge.handler
    with connect(handler.url) as ws:
        _rpc(ws, {"command": "heartbeat"})
        assert handler.connected_clients == 1
        handler.stop("shutdown")
        with pytest.raises(ConnectionClosed) as excinfo:
            ws.recv(timeout=5)
        assert excinfo.value.rcvd.reason == "shutdown"
    assert handler.connected_clients == 0
    assert wait_for(lambda: handler.state is ServerState.STOPPED)


def test_connected_count_drops_after_client_close(running_bridge):
    handler = running_bridge.handler
    with connect(handler.url) as ws:
        _rpc(ws, {"command": "heartbeat"})
    assert wait_for(lambda: handler.connected_clients == 0)
