"""Instance discovery files.

Each running host writes ``host-mcp-status-<hash>.json`` into a shared
directory so companion clients can find the port of the right instance. The
hash is derived from the project path, so restarts of the same project
reuse the same file.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .shared.config import DiscoveryConfig
from .shared.logging import get_logger

logger = get_logger(__name__)

STATUS_PREFIX = "host-mcp-status-"
STATUS_SUFFIX = ".json"

PathLike = Union[str, "os.PathLike[str]"]


def compute_instance_hash(project_path: PathLike) -> str:
    digest = hashlib.sha256(str(project_path).encode("utf-8")).digest()
    return digest[:4].hex()


def status_filename(instance_hash: str) -> str:
    return f"{STATUS_PREFIX}{instance_hash}{STATUS_SUFFIX}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InstanceStatus:
    ws_port: int
    project_path: str
    reloading: bool = False
    last_heartbeat: str = ""
    pid: int = 0
    instance_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ws_port": self.ws_port,
            "project_path": self.project_path,
            "reloading": self.reloading,
            "last_heartbeat": self.last_heartbeat,
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], instance_hash: str = "") -> "InstanceStatus":
        return cls(
            ws_port=int(data["ws_port"]),
            project_path=str(data.get("project_path", "")),
            reloading=bool(data.get("reloading", False)),
            last_heartbeat=str(data.get("last_heartbeat", "")),
            pid=int(data.get("pid", 0)),
            instance_hash=instance_hash,
        )

    @classmethod
    def from_file(cls, path: PathLike) -> "InstanceStatus":
        path = Path(path)
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"{path.name}: status file must contain a JSON object")
        instance_hash = path.name[len(STATUS_PREFIX) : -len(STATUS_SUFFIX)]
        return cls.from_dict(data, instance_hash)

    def heartbeat_at(self) -> Optional[datetime]:
        if not self.last_heartbeat:
            return None
        try:
            stamp = datetime.fromisoformat(self.last_heartbeat.replace("Z", "+00:00"))
        except ValueError:
            return None
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return stamp

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        stamp = self.heartbeat_at()
        if stamp is None:
            return float("inf")
        now = now or _utcnow()
        return max(0.0, (now - stamp).total_seconds())

    def is_stale(self, threshold: float, now: Optional[datetime] = None) -> bool:
        """A stale heartbeat means the process may be dead; the file alone proves nothing."""
        return self.age_seconds(now) > threshold


class InstanceDiscovery:
    def __init__(self, config: Optional[DiscoveryConfig] = None, *, project_path: Optional[PathLike] = None) -> None:
        self.config = config or DiscoveryConfig()
        self.project_path = Path(project_path).resolve() if project_path else self.config.resolved_project_path()
        self.directory = self.config.resolved_directory()
        self.instance_hash: Optional[str] = None
        self.status_path: Optional[Path] = None

    def initialize(self) -> None:
        self.instance_hash = compute_instance_hash(self.project_path)
        self.status_path = self.directory / status_filename(self.instance_hash)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Discovery: Could not create discovery directory: %s", exc)

    def write_status(self, port: int, reloading: bool = False) -> Optional[InstanceStatus]:
        if self.status_path is None:
            self.initialize()
        assert self.status_path is not None

        status = InstanceStatus(
            ws_port=port,
            project_path=str(self.project_path),
            reloading=reloading,
            last_heartbeat=_utcnow().isoformat(),
            pid=os.getpid(),
            instance_hash=self.instance_hash or "",
        )
        tmp_path = self.status_path.with_name(self.status_path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(status.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp_path, self.status_path)
        except OSError as exc:
            logger.debug("Discovery: Could not write status file: %s", exc)
            return None
        return status

    def heartbeat(self, port: int) -> Optional[InstanceStatus]:
        return self.write_status(port, reloading=False)

    def mark_reloading(self, port: int) -> Optional[InstanceStatus]:
        return self.write_status(port, reloading=True)

    def read_status(self) -> Optional[InstanceStatus]:
        if self.status_path is None or not self.status_path.exists():
            return None
        return InstanceStatus.from_file(self.status_path)

    def cleanup(self) -> None:
        if self.status_path is None:
            return
        try:
            self.status_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Discovery: Could not cleanup files: %s", exc)


def list_instances(directory: PathLike) -> List[InstanceStatus]:
    """Read every status file in ``directory``, freshest heartbeat first."""
    root = Path(directory).expanduser()
    if not root.is_dir():
        return []
    instances: List[InstanceStatus] = []
    for path in sorted(root.glob(f"{STATUS_PREFIX}*{STATUS_SUFFIX}")):
        try:
            instances.append(InstanceStatus.from_file(path))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.debug("Discovery: Skipping unreadable status file %s: %s", path.name, exc)
    now = _utcnow()
    instances.sort(key=lambda status: status.age_seconds(now))
    return instances


def find_instance(
    directory: PathLike,
    project_path: Optional[PathLike] = None,
    stale_after: float = 15.0,
) -> Optional[InstanceStatus]:
    if project_path is not None:
        wanted = Path(directory).expanduser() / status_filename(compute_instance_hash(Path(project_path).resolve()))
        if wanted.exists():
            try:
                status = InstanceStatus.from_file(wanted)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.debug("Discovery: Could not read %s: %s", wanted.name, exc)
            else:
                if not status.is_stale(stale_after):
                    return status
                logger.debug(
                    "Discovery: Ignoring %s, last heartbeat %.0fs ago", wanted.name, status.age_seconds()
                )

    for status in list_instances(directory):
        if not status.is_stale(stale_after):
            return status
    return None
