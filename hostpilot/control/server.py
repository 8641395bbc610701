"""MCP server exposing host/service/tunnel commands over HTTP."""

from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from hostpilot.broadcaster import EventLog
from hostpilot.config import DEFAULT_CONTROL_PORT
from hostpilot.errors import HostPilotError, NotFoundError
from hostpilot.manager import HostManager
from hostpilot.models import ServiceRuntimeState, TunnelState

DEFAULT_PORT = DEFAULT_CONTROL_PORT


def _service_view(host_id: str, service_id: str, state: ServiceRuntimeState) -> dict[str, Any]:
    return {
        "hostId": host_id,
        "serviceId": service_id,
        "status": state.status.value,
        "pid": state.pid,
        "error": state.error,
        "updatedAt": state.updated_at,
        "forwardState": state.forward_state.value,
        "forwardError": state.forward_error,
    }


def _tunnel_view(host_id: str, forward_id: str, state: TunnelState) -> dict[str, Any]:
    return {
        "hostId": host_id,
        "forwardId": forward_id,
        "status": state.status.value,
        "error": state.error,
        "reconnectAt": state.reconnect_at,
    }


def _not_found(exc: NotFoundError, **ids: str) -> dict[str, Any]:
    return {**ids, "status": "not_found", "error": str(exc)}


def _error(exc: Exception, **ids: str) -> dict[str, Any]:
    return {**ids, "status": "error", "error": str(exc)}


def create_server(
    manager: HostManager,
    event_log: EventLog | None = None,
    port: int = DEFAULT_PORT,
) -> FastMCP:
    """Create and configure the hostpilot control server."""

    events = event_log or EventLog()
    if event_log is None:
        manager.broadcaster.subscribe(events)

    mcp = FastMCP(
        name="hostpilot",
        instructions=(
            "Manages services and SSH port-forwards on remote hosts. "
            "Use list_hosts for the current picture, start_service / "
            "stop_service / refresh_service for remote processes, "
            "start_forward / stop_forward for tunnels, and get_events to "
            "poll status changes since a sequence number."
        ),
        host="127.0.0.1",
        port=port,
        stateless_http=True,
    )

    # ------------------------------------------------------------------
    # Tool: list_hosts
    # ------------------------------------------------------------------
    @mcp.tool()
    async def list_hosts() -> dict:
        """List every host with its forward rules and services.

        Each forward carries its tunnel status (and reconnectAt while in
        error); each service carries its last known status, pid and
        port-forward state. Credentials are never included.
        """
        hosts = manager.list_hosts()
        return {"count": len(hosts), "hosts": hosts, "seq": events.seq}

    # ------------------------------------------------------------------
    # Tool: start_service
    # ------------------------------------------------------------------
    @mcp.tool()
    async def start_service(host_id: str, service_id: str) -> dict:
        """Launch a service's start command detached on its host.

        Returns as soon as the remote pid is known; the service may still be
        warming up. Output goes to the service's remote log file.

        Args:
            host_id: Id of the host.
            service_id: Id of the service on that host.
        """
        ids = {"hostId": host_id, "serviceId": service_id}
        try:
            state = await manager.start_service(host_id, service_id)
            return _service_view(host_id, service_id, state)
        except NotFoundError as exc:
            return _not_found(exc, **ids)
        except Exception as exc:
            return _error(exc, **ids)

    # ------------------------------------------------------------------
    # Tool: stop_service
    # ------------------------------------------------------------------
    @mcp.tool()
    async def stop_service(host_id: str, service_id: str) -> dict:
        """Stop a service by sending SIGTERM to its process group.

        Args:
            host_id: Id of the host.
            service_id: Id of the service on that host.
        """
        ids = {"hostId": host_id, "serviceId": service_id}
        try:
            state = await manager.stop_service(host_id, service_id)
            return _service_view(host_id, service_id, state)
        except NotFoundError as exc:
            return _not_found(exc, **ids)
        except Exception as exc:
            return _error(exc, **ids)

    # ------------------------------------------------------------------
    # Tool: refresh_service
    # ------------------------------------------------------------------
    @mcp.tool()
    async def refresh_service(host_id: str, service_id: str) -> dict:
        """Probe the host for the service's real status.

        Whatever listens on the exposed port wins over the stored pid.

        Args:
            host_id: Id of the host.
            service_id: Id of the service on that host.
        """
        ids = {"hostId": host_id, "serviceId": service_id}
        try:
            state = await manager.refresh_service(host_id, service_id)
            return _service_view(host_id, service_id, state)
        except NotFoundError as exc:
            return _not_found(exc, **ids)
        except Exception as exc:
            return _error(exc, **ids)

    # ------------------------------------------------------------------
    # Tool: get_service_logs
    # ------------------------------------------------------------------
    @mcp.tool()
    async def get_service_logs(host_id: str, service_id: str) -> dict:
        """Get the tail of a service's remote log file.

        Empty until the service has been started at least once.

        Args:
            host_id: Id of the host.
            service_id: Id of the service on that host.
        """
        ids = {"hostId": host_id, "serviceId": service_id}
        try:
            logs = await manager.get_service_logs(host_id, service_id)
            return {**ids, **logs.to_dict()}
        except NotFoundError as exc:
            return _not_found(exc, **ids)
        except HostPilotError as exc:
            return _error(exc, **ids)

    # ------------------------------------------------------------------
    # Tool: start_forward
    # ------------------------------------------------------------------
    @mcp.tool()
    async def start_forward(host_id: str, forward_id: str) -> dict:
        """Bring a forward rule up.

        On failure the rule goes to error and is retried automatically
        after the reconnect delay; reconnectAt says when (epoch ms).

        Args:
            host_id: Id of the host.
            forward_id: Id of the forward rule on that host.
        """
        ids = {"hostId": host_id, "forwardId": forward_id}
        try:
            state = await manager.start_forward(host_id, forward_id)
            return _tunnel_view(host_id, forward_id, state)
        except NotFoundError as exc:
            return _not_found(exc, **ids)
        except HostPilotError:
            # Already recorded as an error transition with a reconnect time
            return _tunnel_view(host_id, forward_id, manager.tunnels.get_state(host_id, forward_id))
        except Exception as exc:
            return _error(exc, **ids)

    # ------------------------------------------------------------------
    # Tool: stop_forward
    # ------------------------------------------------------------------
    @mcp.tool()
    async def stop_forward(host_id: str, forward_id: str) -> dict:
        """Tear a forward rule down and cancel any pending reconnect.

        Args:
            host_id: Id of the host.
            forward_id: Id of the forward rule on that host.
        """
        ids = {"hostId": host_id, "forwardId": forward_id}
        try:
            state = await manager.stop_forward(host_id, forward_id)
            return _tunnel_view(host_id, forward_id, state)
        except NotFoundError as exc:
            return _not_found(exc, **ids)
        except Exception as exc:
            return _error(exc, **ids)

    # ------------------------------------------------------------------
    # Tool: get_events
    # ------------------------------------------------------------------
    @mcp.tool()
    async def get_events(since: int = 0) -> dict:
        """Get status-change events published after sequence number ``since``.

        Pass the returned ``seq`` back as ``since`` on the next call. Only
        the most recent events are kept.

        Args:
            since: Last sequence number already seen (0 for everything kept).
        """
        batch = events.since(since)
        return {"seq": events.seq, "count": len(batch), "events": batch}

    return mcp
