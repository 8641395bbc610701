from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------------

class TunnelStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class ServiceStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    STARTING = "starting"
    STOPPING = "stopping"
    ERROR = "error"


class ForwardState(str, Enum):
    NONE = "none"
    OK = "ok"
    ERROR = "error"


class SessionPurpose(str, Enum):
    COMMAND = "command"  # one-shot exec
    TUNNEL = "tunnel"    # long-lived forwarding session


# ---------------------------------------------------------------------------
# Configuration records (owned by the store, read-only to the core)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConnectionDescriptor:
    """Everything needed to authenticate one SSH session.

    Exactly one of ``password``, ``private_key`` (key text) or
    ``private_key_path`` is used; ``jump`` names at most one intermediate hop.
    """

    host: str
    username: str
    port: int = 22
    password: str | None = None
    private_key: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None
    jump: ConnectionDescriptor | None = None

    @property
    def uses_password(self) -> bool:
        return self.password is not None and not (
            self.private_key or self.private_key_path
        )

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ForwardRule:
    id: str
    local_port: int
    remote_port: int
    local_host: str = "127.0.0.1"
    remote_host: str = "127.0.0.1"
    auto_start: bool = False


@dataclass
class ServiceDescriptor:
    id: str
    name: str
    start_command: str
    exposed_port: int
    forward_local_port: int | None = None
    pid: int | None = None  # hint only, see ServiceLifecycleController.status
    log_path: str | None = None


@dataclass
class HostConfig:
    id: str
    name: str
    connection: ConnectionDescriptor
    forwards: list[ForwardRule] = field(default_factory=list)
    services: list[ServiceDescriptor] = field(default_factory=list)

    def find_service(self, service_id: str) -> ServiceDescriptor | None:
        return next((s for s in self.services if s.id == service_id), None)

    def find_forward(self, forward_id: str) -> ForwardRule | None:
        return next((f for f in self.forwards if f.id == forward_id), None)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = -1

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class StartResult:
    pid: int
    log_path: str


@dataclass
class ServiceProbe:
    status: ServiceStatus
    pid: int | None = None
    error: str | None = None


@dataclass
class ServiceLogs:
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"stdout": self.stdout, "stderr": self.stderr}


# ---------------------------------------------------------------------------
# Runtime state (memory only, never persisted)
# ---------------------------------------------------------------------------

@dataclass
class TunnelState:
    status: TunnelStatus = TunnelStatus.STOPPED
    error: str | None = None
    reconnect_at: int | None = None  # epoch ms, only while status is ERROR


@dataclass
class ServiceRuntimeState:
    status: ServiceStatus = ServiceStatus.STOPPED
    pid: int | None = None
    error: str | None = None
    updated_at: str | None = None
    forward_state: ForwardState = ForwardState.NONE
    forward_error: str | None = None


# ---------------------------------------------------------------------------
# Status-change events
#
# to_dict() keys are part of the control contract and must stay camelCase.
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def epoch_ms(ts: float | None = None) -> int:
    return int((time.time() if ts is None else ts) * 1000)


def _compact(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class ServiceStatusChange:
    host_id: str
    service_id: str
    status: ServiceStatus
    pid: int | None = None
    error: str | None = None
    updated_at: str | None = None
    forward_state: ForwardState | None = None
    forward_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "hostId": self.host_id,
            "serviceId": self.service_id,
            "status": self.status.value,
            "pid": self.pid,
            "error": self.error,
            "updatedAt": self.updated_at,
            "forwardState": self.forward_state.value if self.forward_state else None,
            "forwardError": self.forward_error,
        })


@dataclass(frozen=True)
class TunnelStatusChange:
    host_id: str
    forward_id: str
    status: TunnelStatus
    error: str | None = None
    reconnect_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "hostId": self.host_id,
            "forwardId": self.forward_id,
            "status": self.status.value,
            "error": self.error,
            "reconnectAt": self.reconnect_at,
        })


StatusChange = ServiceStatusChange | TunnelStatusChange
