import json

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect

from host_mcp.bridge import HostBridge
from host_mcp.host import HostLoop
from host_mcp.server import ConnectionHandler
from host_mcp.shared.errors import PortUnavailable

from conftest import hold_ports, release_ports, wait_for


def _read_status(bridge):
    return json.loads(bridge.discovery.status_path.read_text(encoding="utf-8"))


def test_start_and_stop_lifecycle(make_config):
    config = make_config()
    host = HostLoop(project_path=config.discovery.project_path)
    bridge = HostBridge(config, host)

    port = bridge.start()
    assert bridge.is_running
    assert bridge.start() == port
    assert bridge.token_path.read_text(encoding="utf-8") == bridge.auth_token
    assert _read_status(bridge)["ws_port"] == port
    assert bridge.update in host._updates  # noqa: SLF001
    assert bridge.before_reload in host.before_reload

    snapshot = bridge.status()
    assert snapshot["running"] is True
    assert snapshot["port"] == port
    assert snapshot["tool_count"] == bridge.registry.tool_count > 0
    assert snapshot["auth"] is True

    bridge.stop()
    assert not bridge.is_running
    assert not bridge.discovery.status_path.exists()
    assert bridge.update not in host._updates  # noqa: SLF001
    assert bridge.before_reload not in host.before_reload
    bridge.stop()


def test_no_auth_token(make_config):
    config = make_config(use_auth_token=False)
    bridge = HostBridge(config, HostLoop(project_path=config.discovery.project_path))
    bridge.start()
    try:
        assert bridge.auth_token is None
        assert not bridge.token_path.exists()
        assert json.loads(bridge.handler.handle_auth(None)) == {"status": "ok"}
    finally:
        bridge.stop()


def test_update_drains_and_heartbeats(make_config, monkeypatch):
    config = make_config()
    host = HostLoop(project_path=config.discovery.project_path)
    bridge = HostBridge(config, host)
    bridge.start()
    try:
        beats = []
        monkeypatch.setattr(bridge.discovery, "heartbeat", lambda port: beats.append(port))
        bridge._last_heartbeat = 0.0  # noqa: SLF001
        host.tick()
        assert beats == [bridge.port]
        assert bridge.dispatcher.seconds_since_last_drain() >= 0.0
        host.tick()
        assert beats == [bridge.port]
    finally:
        bridge.stop()


def test_reload_closes_clients_and_restarts(running_bridge):
    old_token = running_bridge.auth_token
    with connect(running_bridge.handler.url) as ws:
        ws.send(json.dumps({"command": "heartbeat"}))
        ws.recv(timeout=5)
        running_bridge.host.request_reload()
        with pytest.raises(ConnectionClosed) as excinfo:
            ws.recv(timeout=5)
        assert excinfo.value.rcvd.reason == "reload"

    assert wait_for(lambda: running_bridge.is_running and not running_bridge.reloading.is_set())
    assert running_bridge.port is not None
    assert running_bridge.auth_token != old_token
    assert _read_status(running_bridge)["reloading"] is False

    with connect(running_bridge.handler.url) as ws:
        ws.send(json.dumps({"command": "call", "tool": "sim_status"}))
        assert "result" in json.loads(ws.recv(timeout=5))


def test_before_reload_marks_discovery_file(make_config):
    config = make_config()
    bridge = HostBridge(config, HostLoop(project_path=config.discovery.project_path))
    port = bridge.start()
    try:
        bridge.before_reload()
        assert bridge.reloading.is_set()
        assert not bridge.is_running
        status = _read_status(bridge)
        assert status["reloading"] is True
        assert status["ws_port"] == port
        handler = ConnectionHandler(
            bridge.registry, bridge.dispatcher, bridge.tracker, config.server, reloading=bridge.reloading
        )
        reply = json.loads(handler.process_message('{"command": "call", "tool": "sim_status"}'))
        assert "reloading" in reply["error"]

        bridge.after_reload()
        assert bridge.is_running
        assert _read_status(bridge)["reloading"] is False
    finally:
        bridge.stop()


def test_restart_client_sends_shutdown(running_bridge):
    with connect(running_bridge.handler.url) as ws:
        ws.send(json.dumps({"command": "heartbeat"}))
        ws.recv(timeout=5)
        new_port = running_bridge.restart_client()
        with pytest.raises(ConnectionClosed) as excinfo:
            ws.recv(timeout=5)
        assert excinfo.value.rcvd.reason == "shutdown"
    assert running_bridge.is_running
    assert running_bridge.port == new_port


def test_refresh_tools_recaches_schemas(running_bridge):
    count = running_bridge.refresh_tools()
    assert count == running_bridge.tool_count
    cached = running_bridge.handler.handle_discover()
    assert len(json.loads(cached)["tools"]) == count


def test_port_exhaustion_is_surfaced(make_config):
    base, held = hold_ports(2)
    try:
        config = make_config(port=base, max_port_retries=1)
        host = HostLoop(project_path=config.discovery.project_path)
        bridge = HostBridge(config, host)
        with pytest.raises(PortUnavailable):
            bridge.start()
        assert not bridge.is_running
        assert bridge.update not in host._updates  # noqa: SLF001
        assert bridge.before_reload not in host.before_reload
        assert bridge.after_reload not in host.after_reload
        assert bridge.stop not in host.quitting
        assert not bridge.token_path.exists()
        assert bridge.auth_token is None
        assert not bridge.discovery.status_path.exists()
    finally:
        release_ports(held)
