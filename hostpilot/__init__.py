"""hostpilot: SSH tunnels and remote service lifecycle from one control point."""

from hostpilot.broadcaster import EventLog, StatusBroadcaster
from hostpilot.config import Settings
from hostpilot.manager import HostManager
from hostpilot.runner import RemoteCommandRunner
from hostpilot.services import ServiceLifecycleController
from hostpilot.store import HostStore, JsonHostStore
from hostpilot.transport import TransportFactory
from hostpilot.tunnels import TunnelSupervisor

__all__ = [
    "EventLog",
    "HostManager",
    "HostStore",
    "JsonHostStore",
    "RemoteCommandRunner",
    "ServiceLifecycleController",
    "Settings",
    "StatusBroadcaster",
    "TransportFactory",
    "TunnelSupervisor",
]
