"""Local TCP listeners relayed through an SSH session.

Every accepted client gets its own forward-out channel.  A failure on one
relayed connection only closes that client and its channel; the listener and
the session stay up.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from collections.abc import Callable

import asyncssh

from .errors import HostPilotError, LocalBindError
from .transport import Session

log = logging.getLogger(__name__)

RELAY_CHUNK = 64 * 1024


def bind_error(host: str, port: int, exc: OSError) -> LocalBindError:
    """Classify a failed local bind."""
    if exc.errno == errno.EADDRINUSE:
        return LocalBindError(
            f"Local port {port} on {host} is already in use.", LocalBindError.IN_USE
        )
    if exc.errno in (errno.EACCES, errno.EPERM):
        return LocalBindError(
            f"Permission denied when binding {host}:{port}.", LocalBindError.PERMISSION
        )
    reason = exc.strerror or str(exc)
    return LocalBindError(f"Failed to bind local listener on {host}:{port}: {reason}")


def check_local_bind(host: str, port: int) -> None:
    """Bind host:port once and release it; raise LocalBindError if we can't."""
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
        family, socktype, proto, _, address = infos[0]
        with socket.socket(family, socktype, proto) as probe:
            probe.bind(address)
            probe.listen(1)
    except OSError as exc:
        raise bind_error(host, port, exc) from exc


async def _pipe(src: asyncio.StreamReader | asyncssh.SSHReader,
                dst: asyncio.StreamWriter | asyncssh.SSHWriter) -> None:
    """Copy src into dst until EOF, then half-close dst."""
    try:
        while True:
            data = await src.read(RELAY_CHUNK)
            if not data:
                break
            dst.write(data)
            await dst.drain()
        if dst.can_write_eof():
            dst.write_eof()
    except (OSError, asyncssh.Error) as exc:
        log.debug("Relay stream ended with error: %s", exc)
        dst.close()


class LocalForward:
    """Listen on local_host:local_port and relay to remote_host:remote_port."""

    def __init__(
        self,
        session: Session,
        local_host: str,
        local_port: int,
        remote_host: str,
        remote_port: int,
        on_error: Callable[[LocalForward, Exception], None] | None = None,
    ) -> None:
        self.session = session
        self.local_host = local_host
        self.local_port = local_port
        self.remote_host = remote_host
        self.remote_port = remote_port
        self._on_error = on_error
        self._server: asyncio.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._clients: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def active_connections(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        try:
            self._server = await asyncio.start_server(
                self._handle_client, self.local_host, self.local_port
            )
        except OSError as exc:
            raise bind_error(self.local_host, self.local_port, exc) from exc

        self._serve_task = asyncio.create_task(
            self._server.serve_forever(),
            name=f"listener-{self.local_host}:{self.local_port}",
        )
        self._serve_task.add_done_callback(self._serve_done)
        log.debug("Listening on %s:%d -> %s:%d", self.local_host, self.local_port,
                  self.remote_host, self.remote_port)

    def close(self) -> None:
        """Stop accepting and drop every relayed connection."""
        if self._closed:
            return
        self._closed = True
        if self._server is not None:
            self._server.close()
        if self._serve_task is not None:
            self._serve_task.cancel()
        for task in list(self._clients):
            task.cancel()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _serve_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or self._closed:
            return
        exc = task.exception()
        if exc is not None and self._on_error is not None:
            self._on_error(self, exc)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._clients.add(task)
        peer = writer.get_extra_info("peername")
        channel_writer = None
        try:
            try:
                channel_reader, channel_writer = await self.session.open_connection(
                    self.remote_host, self.remote_port
                )
            except (HostPilotError, asyncssh.Error, OSError) as exc:
                log.debug("Forward for %s to %s:%d failed: %s",
                          peer, self.remote_host, self.remote_port, exc)
                return
            await asyncio.gather(
                _pipe(reader, channel_writer),
                _pipe(channel_reader, writer),
            )
        finally:
            if channel_writer is not None:
                channel_writer.close()
            writer.close()
            if task is not None:
                self._clients.discard(task)
