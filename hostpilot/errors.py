"""Error taxonomy for transport, tunnel and service operations."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import CommandResult


class HostPilotError(Exception):
    """Base class for every error raised by hostpilot."""


class AuthError(HostPilotError):
    """Bad credentials, unreadable key or wrong passphrase."""


class NetworkError(HostPilotError):
    """Host unreachable, connection refused or dropped during handshake."""


class ConnectTimeoutError(NetworkError, TimeoutError):
    """The SSH session did not become ready within its readiness timeout."""


class TunnelConnectError(NetworkError):
    """Remote session establishment failed while starting a tunnel."""


class LocalBindError(HostPilotError):
    IN_USE = "in_use"
    PERMISSION = "permission"
    OTHER = "other"

    def __init__(self, message: str, reason: str = OTHER) -> None:
        super().__init__(message)
        self.reason = reason


class RemoteExecError(HostPilotError):
    """A remote command failed to run or exited nonzero.

    ``result`` always carries whatever stdout/stderr was captured.
    """

    def __init__(self, message: str, result: CommandResult) -> None:
        super().__init__(message)
        self.result = result


class CommandTimeoutError(RemoteExecError, TimeoutError):
    pass


class ServiceStartError(HostPilotError):
    pass


class ServiceStopError(HostPilotError):
    pass


class ProcessNotFoundError(HostPilotError):
    """The pid no longer exists; callers treat this as "stopped"."""


class ProtocolError(HostPilotError):
    pass


class ForwardChannelError(ProtocolError):
    """The SSH server refused or mangled a forward-out channel request."""


class NotFoundError(HostPilotError, KeyError):
    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0]) if self.args else ""
