"""Run the hostpilot control daemon over HTTP.

Loads the hosts file, starts every auto-start forward and serves the MCP
control tools.

Usage:
    python -m hostpilot.control [--port PORT] [--hosts FILE]

Tunnels and service forwards live as long as the daemon does; on
SIGINT/SIGTERM every tunnel is stopped before exiting.
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path

import uvicorn

from hostpilot.broadcaster import EventLog
from hostpilot.config import Settings
from hostpilot.control.server import create_server
from hostpilot.manager import HostManager
from hostpilot.store import JsonHostStore

log = logging.getLogger(__name__)


async def _run(settings: Settings, port: int, hosts_path: Path) -> None:
    store = JsonHostStore(hosts_path)
    store.load()

    manager = HostManager.from_settings(settings, store)
    events = EventLog()
    manager.broadcaster.subscribe(events)
    server = create_server(manager, event_log=events, port=port)

    await manager.bootstrap()

    uvi = uvicorn.Server(uvicorn.Config(
        server.streamable_http_app(),
        host="127.0.0.1", port=port, log_level=settings.log_level.lower(),
    ))

    # _serve() skips uvicorn's capture_signals(), so the loop owns the signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, setattr, uvi, "should_exit", True)

    try:
        await uvi._serve()
    finally:
        log.info("Stopping all tunnels and service forwards")
        await manager.shutdown()


def main() -> None:
    settings = Settings.from_env()

    parser = argparse.ArgumentParser(description="hostpilot control daemon")
    parser.add_argument(
        "--port", type=int, default=settings.control_port,
        help=f"Port to listen on (default: {settings.control_port})",
    )
    parser.add_argument(
        "--hosts", type=Path, default=Path(settings.hosts_file),
        help=f"Hosts file (default: {settings.hosts_file})",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [hostpilot] %(levelname)s %(message)s",
    )
    # asyncssh logs every channel open/close at INFO
    logging.getLogger("asyncssh").setLevel(logging.WARNING)

    log.info("Starting hostpilot on http://127.0.0.1:%d/mcp", args.port)
    asyncio.run(_run(settings, args.port, args.hosts))


if __name__ == "__main__":
    main()
