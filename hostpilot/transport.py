"""SSH session factory: authenticates sessions, optionally via one jump host.

All SSH protocol work is done by asyncssh.  This module only decides *how*
to connect (auth material, timeouts, keepalive, jump relay) and translates
asyncssh/socket failures into the hostpilot error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import asyncssh

from .errors import AuthError, ConnectTimeoutError, ForwardChannelError, NetworkError
from .models import ConnectionDescriptor, SessionPurpose

log = logging.getLogger(__name__)

CloseHandler = Callable[[Exception | None], None]

CLOSED_UNEXPECTEDLY = "SSH connection closed unexpectedly."


def describe_close(exc: Exception | None) -> str:
    """Message for a session that went away without being asked to.

    asyncssh reports a peer that simply hangs up as ``ConnectionLost``;
    anything else is a real error and keeps its cause.
    """
    if exc is None or isinstance(exc, asyncssh.ConnectionLost):
        return CLOSED_UNEXPECTEDLY
    return f"SSH error: {exc}"


@dataclass(frozen=True)
class SessionProfile:
    ready_timeout: float       # seconds until the session must be authenticated
    keepalive_interval: float  # seconds between keepalive probes
    keepalive_count_max: int   # missed probes tolerated before dropping


PROFILES: dict[SessionPurpose, SessionProfile] = {
    SessionPurpose.COMMAND: SessionProfile(10.0, 5.0, 2),
    SessionPurpose.TUNNEL: SessionProfile(20.0, 10.0, 6),
}


class _SessionWatcher(asyncssh.SSHClient):
    """Records connection loss and forwards it to registered handlers."""

    def __init__(self) -> None:
        self.closed = False
        self.close_exc: Exception | None = None
        self._handlers: list[CloseHandler] = []

    def add_handler(self, handler: CloseHandler) -> None:
        self._handlers.append(handler)

    def connection_lost(self, exc: Exception | None) -> None:
        self.closed = True
        self.close_exc = exc
        for handler in list(self._handlers):
            try:
                handler(exc)
            except Exception:
                log.exception("SSH close handler failed")


class JumpRelay:
    """Turns (jump session, destination) into a raw relayed byte stream.

    asyncssh runs the target handshake over whatever ``create_connection``
    returns, so passing an instance as ``tunnel=`` composes the jump with
    the target handshake without the callers knowing about it.
    """

    def __init__(self, jump_conn: asyncssh.SSHClientConnection, label: str) -> None:
        self._conn = jump_conn
        self._label = label

    @property
    def logger(self) -> Any:
        return self._conn.logger

    async def create_connection(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return await self._conn.create_connection(*args, **kwargs)
        except asyncssh.ChannelOpenError as exc:
            raise ForwardChannelError(
                f"Jump host {self._label} refused to relay: {exc.reason}"
            ) from exc

    def __str__(self) -> str:
        return self._label


class Session:
    """An authenticated SSH session (plus the jump session carrying it)."""

    def __init__(
        self,
        conn: asyncssh.SSHClientConnection,
        watcher: _SessionWatcher,
        descriptor: ConnectionDescriptor,
        jump: asyncssh.SSHClientConnection | None = None,
    ) -> None:
        self._conn = conn
        self._watcher = watcher
        self._jump = jump
        self.descriptor = descriptor
        if jump is not None:
            # The jump hop only exists to carry this session
            watcher.add_handler(lambda _exc: jump.close())

    @property
    def closed(self) -> bool:
        return self._watcher.closed

    def add_close_handler(self, handler: CloseHandler) -> None:
        """Call ``handler(exc)`` once the session goes away.

        ``exc`` is None for an orderly close.  Fires on the next loop
        iteration if the session is already gone.
        """
        if self._watcher.closed:
            asyncio.get_running_loop().call_soon(handler, self._watcher.close_exc)
            return
        self._watcher.add_handler(handler)

    async def create_process(self, command: str) -> asyncssh.SSHClientProcess:
        return await self._conn.create_process(command)

    async def open_connection(
        self, host: str, port: int
    ) -> tuple[asyncssh.SSHReader, asyncssh.SSHWriter]:
        """Open a forward-out (direct-tcpip) channel to host:port."""
        try:
            return await self._conn.open_connection(host, port)
        except asyncssh.ChannelOpenError as exc:
            raise ForwardChannelError(
                f"Remote refused forward to {host}:{port}: {exc.reason}"
            ) from exc

    def close(self) -> None:
        self._conn.close()
        if self._jump is not None:
            self._jump.close()

    async def wait_closed(self) -> None:
        await self._conn.wait_closed()
        if self._jump is not None:
            await self._jump.wait_closed()


class TransportFactory:
    """Creates authenticated sessions for a ConnectionDescriptor."""

    def __init__(self, known_hosts: str | None = None) -> None:
        self._known_hosts = known_hosts

    async def connect(
        self,
        descriptor: ConnectionDescriptor,
        purpose: SessionPurpose = SessionPurpose.COMMAND,
    ) -> Session:
        profile = PROFILES[purpose]
        try:
            return await asyncio.wait_for(
                self._establish(descriptor, profile), timeout=profile.ready_timeout
            )
        except asyncio.TimeoutError:
            raise ConnectTimeoutError(
                f"Timed out after {profile.ready_timeout:g}s waiting for "
                f"SSH session to {descriptor.address}"
            ) from None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _establish(
        self, descriptor: ConnectionDescriptor, profile: SessionProfile
    ) -> Session:
        jump_conn = None
        relay = None
        if descriptor.jump is not None:
            hop = descriptor.jump
            if hop.jump is not None:
                log.warning(
                    "Ignoring nested jump host %s; only one hop is supported",
                    hop.jump.address,
                )
            jump_conn = await self._open(hop, profile)
            relay = JumpRelay(jump_conn, hop.address)
            log.debug("Jump session to %s ready", hop.address)

        watcher = _SessionWatcher()
        try:
            conn = await self._open(
                descriptor, profile, tunnel=relay, client_factory=lambda: watcher
            )
        except BaseException:
            if jump_conn is not None:
                jump_conn.close()
            raise
        return Session(conn, watcher, descriptor, jump=jump_conn)

    async def _open(
        self,
        descriptor: ConnectionDescriptor,
        profile: SessionProfile,
        tunnel: JumpRelay | None = None,
        client_factory: Callable[[], asyncssh.SSHClient] | None = None,
    ) -> asyncssh.SSHClientConnection:
        options = self._auth_options(descriptor)
        if tunnel is not None:
            options["tunnel"] = tunnel
        if client_factory is not None:
            options["client_factory"] = client_factory

        target = f"{descriptor.username}@{descriptor.address}"
        try:
            return await asyncssh.connect(
                descriptor.host,
                descriptor.port,
                username=descriptor.username,
                known_hosts=self._known_hosts,
                keepalive_interval=profile.keepalive_interval,
                keepalive_count_max=profile.keepalive_count_max,
                **options,
            )
        except asyncssh.PermissionDenied as exc:
            raise AuthError(f"Authentication failed for {target}: {exc.reason}") from exc
        except asyncssh.ConnectionLost as exc:
            raise NetworkError("SSH connection closed before ready.") from exc
        except asyncssh.Error as exc:
            raise NetworkError(f"SSH handshake with {descriptor.address} failed: {exc.reason}") from exc
        except OSError as exc:
            raise NetworkError(f"Cannot reach {descriptor.address}: {exc.strerror or exc}") from exc

    @staticmethod
    def _auth_options(descriptor: ConnectionDescriptor) -> dict[str, Any]:
        """Build asyncssh auth kwargs; only the configured method is tried."""
        if descriptor.uses_password:
            return {"password": descriptor.password, "client_keys": None, "agent_path": None}

        try:
            if descriptor.private_key and descriptor.private_key.strip():
                key = asyncssh.import_private_key(descriptor.private_key, descriptor.passphrase)
            elif descriptor.private_key_path:
                key = asyncssh.read_private_key(descriptor.private_key_path, descriptor.passphrase)
            else:
                raise AuthError("Private key is required for private key authentication.")
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as exc:
            raise AuthError(f"Unable to load private key: {exc}") from exc
        except OSError as exc:
            raise AuthError(
                f"Unable to read private key {descriptor.private_key_path}: {exc.strerror or exc}"
            ) from exc

        return {"client_keys": [key], "password": None, "agent_path": None}
