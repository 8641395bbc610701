"""One-shot remote command execution with a hard wall-clock timeout."""

from __future__ import annotations

import asyncio
import logging

import asyncssh

from .errors import CommandTimeoutError, HostPilotError, RemoteExecError
from .models import CommandResult, ConnectionDescriptor, SessionPurpose
from .transport import Session, TransportFactory

log = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 20.0
TIMEOUT_MARKER = "SSH command timeout"


class RemoteCommandRunner:
    """Runs a shell command over a fresh session and captures its output.

    Sessions are never reused: each call connects, opens one exec channel,
    and tears everything down again.
    """

    def __init__(
        self,
        transport: TransportFactory,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self._transport = transport
        self.timeout = timeout

    async def exec(self, descriptor: ConnectionDescriptor, command: str) -> CommandResult:
        """Run ``command`` on the remote host.

        Returns the result when the command exits 0.  Raises RemoteExecError
        (nonzero exit or session/channel setup failure) or CommandTimeoutError;
        both carry the captured streams in ``exc.result``.
        """
        stdout: list[str] = []
        stderr: list[str] = []
        holder: dict[str, Session] = {}

        try:
            code = await asyncio.wait_for(
                self._run(descriptor, command, stdout, stderr, holder),
                timeout=self.timeout,
            )
        except HostPilotError as exc:
            # Connect failures, including the session readiness timeout
            result = CommandResult("".join(stdout), str(exc) or "SSH connection failed", -1)
            raise RemoteExecError(str(exc), result) from exc
        except asyncio.TimeoutError:
            captured = "".join(stderr)
            result = CommandResult(
                stdout="".join(stdout),
                stderr=f"{captured}\n{TIMEOUT_MARKER}" if captured else TIMEOUT_MARKER,
                exit_code=-1,
            )
            log.warning("Command on %s timed out after %gs", descriptor.address, self.timeout)
            raise CommandTimeoutError(
                f"Command timed out after {self.timeout:g}s", result
            ) from None
        except (asyncssh.Error, OSError) as exc:
            message = getattr(exc, "reason", "") or str(exc) or "SSH exec failed"
            result = CommandResult("".join(stdout), message, -1)
            raise RemoteExecError(message, result) from exc
        finally:
            session = holder.get("session")
            if session is not None:
                session.close()

        result = CommandResult("".join(stdout), "".join(stderr), code)
        if not result.ok:
            raise RemoteExecError(
                f"Remote command exited with code {code}", result
            )
        return result

    async def _run(
        self,
        descriptor: ConnectionDescriptor,
        command: str,
        stdout: list[str],
        stderr: list[str],
        holder: dict[str, Session],
    ) -> int:
        session = await self._transport.connect(descriptor, SessionPurpose.COMMAND)
        holder["session"] = session
        log.debug("[ssh %s] $ %s", descriptor.address, command)

        process = await session.create_process(command)
        await asyncio.gather(
            _drain(process.stdout, stdout),
            _drain(process.stderr, stderr),
        )
        completed = await process.wait()
        status = completed.exit_status
        # None means the remote side died from a signal or never reported
        return -1 if status is None else int(status)


async def _drain(stream: asyncssh.SSHReader, sink: list[str]) -> None:
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        sink.append(chunk)
