"""Host configuration store: the core's view of the configuration layer.

The core reads hosts by id and writes back the pid/log path of a service
after start/stop/refresh.  Everything handed out is a copy.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from .models import ConnectionDescriptor, ForwardRule, HostConfig, ServiceDescriptor

log = logging.getLogger(__name__)


class HostStore:
    """In-memory host store."""

    def __init__(self, hosts: Iterable[HostConfig] = ()) -> None:
        self._hosts: dict[str, HostConfig] = {h.id: copy.deepcopy(h) for h in hosts}

    def list_hosts(self) -> list[HostConfig]:
        return [copy.deepcopy(h) for h in self._hosts.values()]

    def get_host(self, host_id: str) -> HostConfig | None:
        host = self._hosts.get(host_id)
        return copy.deepcopy(host) if host is not None else None

    def upsert_host(self, host: HostConfig) -> None:
        self._hosts[host.id] = copy.deepcopy(host)
        self._persist()

    def update_service(self, host_id: str, service_id: str, **changes: Any) -> None:
        """Write back runtime fields (``pid``, ``log_path``) of one service."""
        host = self._hosts.get(host_id)
        service = host.find_service(service_id) if host else None
        if service is None:
            log.debug("update_service: %s/%s no longer exists", host_id, service_id)
            return
        for name, value in changes.items():
            if name not in ("pid", "log_path"):
                raise ValueError(f"Field {name!r} is not writable by the runtime")
            setattr(service, name, value)
        self._persist()

    def remove_host(self, host_id: str) -> None:
        if self._hosts.pop(host_id, None) is not None:
            self._persist()

    def remove_service(self, host_id: str, service_id: str) -> None:
        host = self._hosts.get(host_id)
        if host is None:
            return
        host.services = [s for s in host.services if s.id != service_id]
        self._persist()

    def remove_forward(self, host_id: str, forward_id: str) -> None:
        host = self._hosts.get(host_id)
        if host is None:
            return
        host.forwards = [f for f in host.forwards if f.id != forward_id]
        self._persist()

    def _persist(self) -> None:
        pass


class JsonHostStore(HostStore):
    """Hosts kept in a JSON file (a list of host records).

    Malformed records are dropped while loading instead of failing the load.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)

    def load(self) -> None:
        if not self.path.exists():
            log.warning("No hosts file at %s; starting with no hosts", self.path)
            self._hosts = {}
            return
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        hosts = normalize_hosts(data)
        self._hosts = {h.id: h for h in hosts}
        log.info("Loaded %d host(s) from %s", len(self._hosts), self.path)

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([host_to_dict(h) for h in self._hosts.values()], f, indent=2)
        os.replace(tmp, self.path)


# ---------------------------------------------------------------------------
# Record normalization
# ---------------------------------------------------------------------------

def _port(value: Any, allow_zero: bool = False) -> int | None:
    try:
        port = int(value)
    except (TypeError, ValueError):
        return None
    lowest = 0 if allow_zero else 1
    return port if lowest <= port <= 65535 else None


def _text(record: dict[str, Any], key: str) -> str:
    value = record.get(key)
    return value.strip() if isinstance(value, str) else ""


def _connection(record: dict[str, Any], allow_jump: bool = True) -> ConnectionDescriptor | None:
    host = _text(record, "host")
    username = _text(record, "username")
    port = _port(record.get("port", 22) or 22)
    if not host or not username or port is None:
        return None

    jump = None
    if allow_jump and isinstance(record.get("jump"), dict):
        # Only one hop is supported, so the hop itself never gets a jump
        jump = _connection(record["jump"], allow_jump=False)

    if record.get("auth_type") == "password":
        return ConnectionDescriptor(
            host=host, port=port, username=username,
            password=record.get("password") or "", jump=jump,
        )
    return ConnectionDescriptor(
        host=host,
        port=port,
        username=username,
        private_key=record.get("private_key") or None,
        private_key_path=_text(record, "private_key_path") or None,
        passphrase=record.get("passphrase") or None,
        jump=jump,
    )


def _forward(record: Any) -> ForwardRule | None:
    if not isinstance(record, dict):
        return None
    local_port = _port(record.get("local_port"))
    remote_port = _port(record.get("remote_port"))
    local_host = _text(record, "local_host") or "127.0.0.1"
    remote_host = _text(record, "remote_host")
    if local_port is None or remote_port is None or not remote_host:
        return None
    return ForwardRule(
        id=_text(record, "id") or str(uuid.uuid4()),
        local_host=local_host,
        local_port=local_port,
        remote_host=remote_host,
        remote_port=remote_port,
        auto_start=bool(record.get("auto_start")),
    )


def _service(record: Any) -> ServiceDescriptor | None:
    if not isinstance(record, dict):
        return None
    name = _text(record, "name")
    start_command = _text(record, "start_command")
    # 0 means the service has no port to probe
    exposed_port = _port(record.get("exposed_port"), allow_zero=True)
    if not name or not start_command or exposed_port is None:
        return None

    forward_local_port = None
    if record.get("forward_local_port"):
        forward_local_port = _port(record["forward_local_port"])
        if forward_local_port is None:
            return None

    pid = record.get("pid")
    return ServiceDescriptor(
        id=_text(record, "id") or str(uuid.uuid4()),
        name=name,
        start_command=start_command,
        exposed_port=exposed_port,
        forward_local_port=forward_local_port,
        pid=pid if isinstance(pid, int) and pid > 0 else None,
        log_path=_text(record, "log_path") or None,
    )


def normalize_host(record: Any) -> HostConfig | None:
    if not isinstance(record, dict):
        return None
    name = _text(record, "name")
    connection = _connection(record)
    if not name or connection is None:
        return None

    forwards = [f for f in map(_forward, record.get("forwards") or []) if f is not None]
    services = [s for s in map(_service, record.get("services") or []) if s is not None]
    return HostConfig(
        id=_text(record, "id") or str(uuid.uuid4()),
        name=name,
        connection=connection,
        forwards=forwards,
        services=services,
    )


def normalize_hosts(data: Any) -> list[HostConfig]:
    if not isinstance(data, list):
        log.warning("Hosts file does not contain a list; ignoring it")
        return []
    hosts = []
    for record in data:
        host = normalize_host(record)
        if host is None:
            log.warning("Skipping malformed host record: %r", _redact(record))
            continue
        hosts.append(host)
    return hosts


def _connection_to_dict(conn: ConnectionDescriptor) -> dict[str, Any]:
    out: dict[str, Any] = {
        "host": conn.host,
        "port": conn.port,
        "username": conn.username,
        "auth_type": "password" if conn.uses_password else "private_key",
    }
    if conn.uses_password:
        out["password"] = conn.password
    else:
        out.update({
            "private_key": conn.private_key,
            "private_key_path": conn.private_key_path,
            "passphrase": conn.passphrase,
        })
    if conn.jump is not None:
        out["jump"] = _connection_to_dict(conn.jump)
    return out


def host_to_dict(host: HostConfig) -> dict[str, Any]:
    return {
        "id": host.id,
        "name": host.name,
        **_connection_to_dict(host.connection),
        "forwards": [
            {
                "id": f.id,
                "local_host": f.local_host,
                "local_port": f.local_port,
                "remote_host": f.remote_host,
                "remote_port": f.remote_port,
                "auto_start": f.auto_start,
            }
            for f in host.forwards
        ],
        "services": [
            {
                "id": s.id,
                "name": s.name,
                "start_command": s.start_command,
                "exposed_port": s.exposed_port,
                "forward_local_port": s.forward_local_port,
                "pid": s.pid,
                "log_path": s.log_path,
            }
            for s in host.services
        ],
    }


def _redact(record: Any) -> Any:
    if not isinstance(record, dict):
        return record
    return {
        k: ("***" if k in ("password", "private_key", "passphrase") else v)
        for k, v in record.items()
        if k not in ("forwards", "services")
    }
