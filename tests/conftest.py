import socket
import threading
import time

import pytest

from host_mcp.bridge import HostBridge
from host_mcp.host import HostLoop
from host_mcp.shared.config import AppConfig, DiscoveryConfig, HostConfig, ServerConfig


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path, monkeypatch):
    # keep discovery files and config lookups out of the real home directory
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("HOST_MCP_CONFIG", raising=False)


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def hold_ports(count, attempts=50):
    """Bind ``count`` consecutive listening sockets; return the first port and the sockets."""
    for _ in range(attempts):
        first = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        first.bind(("127.0.0.1", 0))
        first.listen()
        base = first.getsockname()[1]
        held = [first]
        try:
            for port in range(base + 1, base + count):
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                held.append(sock)
                sock.bind(("127.0.0.1", port))
                sock.listen()
        except OSError:
            for sock in held:
                sock.close()
            continue
        return base, held
    raise RuntimeError(f"could not reserve {count} consecutive ports")


def release_ports(held):
    for sock in held:
        sock.close()


@pytest.fixture
def make_config(tmp_path):
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)

    def _make(**server_overrides):
        server = {"port": 0, "call_timeout": 5.0}
        server.update(server_overrides)
        return AppConfig(
            server=ServerConfig(**server),
            discovery=DiscoveryConfig(
                directory=str(tmp_path / "discovery"),
                project_path=str(project),
                heartbeat_interval=0.1,
            ),
            host=HostConfig(tick_interval=0.01),
        )

    return _make


@pytest.fixture
def running_bridge(make_config):
    """A started bridge whose host loop pumps on a background thread."""
    config = make_config()
    host = HostLoop(project_path=config.discovery.project_path, tick_interval=0.01)
    bridge = HostBridge(config, host)
    bridge.start()
    thread = threading.Thread(target=host.run, name="host-main", daemon=True)
    thread.start()
    try:
        yield bridge
    finally:
        host.stop()
        thread.join(timeout=5)
        bridge.stop()
