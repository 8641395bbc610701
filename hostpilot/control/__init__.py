"""hostpilot control surface: MCP tools over streamable HTTP.

Exposes eight MCP tools:
  - list_hosts:        Hosts with forward and service runtime state
  - start_service:     Launch a service detached on its host
  - stop_service:      SIGTERM the service's process group
  - refresh_service:   Probe the host for the service's real status
  - get_service_logs:  Tail of the service's remote log file
  - start_forward:     Bring a forward rule up (auto-reconnects on failure)
  - stop_forward:      Tear a forward rule down
  - get_events:        Status changes since a sequence number

Can run standalone:
    python -m hostpilot.control
"""

from hostpilot.control.server import DEFAULT_PORT, create_server

__all__ = ["DEFAULT_PORT", "create_server"]
