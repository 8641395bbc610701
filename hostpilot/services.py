"""Remote service lifecycle: detached start, process-group stop, probing, logs.

Nothing here keeps per-service state.  Every answer is recomputed from the
remote host; callers do the transition bookkeeping (emitting "starting",
"stopping", "error") around these calls.
"""

from __future__ import annotations

import logging
import re
import shlex

from .errors import ProcessNotFoundError, RemoteExecError, ServiceStartError, ServiceStopError
from .models import (
    CommandResult,
    ConnectionDescriptor,
    ServiceDescriptor,
    ServiceLogs,
    ServiceProbe,
    ServiceStatus,
    StartResult,
)
from .runner import RemoteCommandRunner

log = logging.getLogger(__name__)

DEFAULT_LOG_DIR = "/tmp/service-manager"
DEFAULT_TAIL_LINES = 200
PID_SENTINEL = "__PID:"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def safe_file_fragment(raw: str) -> str:
    return _UNSAFE_CHARS.sub("_", raw)


def _diagnostic(prefix: str, result: CommandResult) -> str:
    return (
        f"{prefix}\nstdout:\n{result.stdout or '(empty)'}"
        f"\nstderr:\n{result.stderr or '(empty)'}"
    )


def parse_pid_sentinel(stdout: str) -> int | None:
    """Return the pid from the ``__PID:<n>`` line, or None if absent/invalid."""
    for line in stdout.splitlines():
        line = line.strip()
        if line.startswith(PID_SENTINEL):
            raw = line[len(PID_SENTINEL):].strip()
            if raw.isdigit() and int(raw) > 0:
                return int(raw)
            return None
    return None


def _first_pid(stdout: str) -> int | None:
    raw = stdout.strip().splitlines()[0].strip() if stdout.strip() else ""
    return int(raw) if raw.isdigit() and int(raw) > 0 else None


class ServiceLifecycleController:
    def __init__(
        self,
        runner: RemoteCommandRunner,
        log_dir: str = DEFAULT_LOG_DIR,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ) -> None:
        self._runner = runner
        self.log_dir = log_dir.rstrip("/") or "/"
        self.tail_lines = tail_lines

    # ------------------------------------------------------------------
    # Command builders
    # ------------------------------------------------------------------

    def log_path(self, host_name: str, service_name: str) -> str:
        """Merged stdout/stderr log path for a service on a host."""
        return f"{self.log_dir}/{safe_file_fragment(host_name)}_{safe_file_fragment(service_name)}.log"

    def build_start_command(self, log_path: str, start_command: str) -> str:
        """Shell line that detaches ``start_command`` and reports its pid.

        The command runs under ``setsid`` in its own session/process group so
        it survives the SSH session, with both streams appended in emission
        order to one file.
        """
        out = shlex.quote(log_path)
        inner = (
            f"mkdir -p {shlex.quote(self.log_dir)} && : > {out} && "
            f'{{ setsid "${{SHELL:-/bin/bash}}" -ilc {shlex.quote(start_command)} '
            f"> {out} 2>&1 < /dev/null & }} && "
            f'echo "{PID_SENTINEL}$!"'
        )
        return f"bash -lc {shlex.quote(inner)}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(
        self,
        descriptor: ConnectionDescriptor,
        host_name: str,
        service: ServiceDescriptor,
    ) -> StartResult:
        """Launch the service detached and return its pid immediately.

        Does not wait for the service to bind its port; the next status
        refresh confirms that.
        """
        path = self.log_path(host_name, service.name)
        command = self.build_start_command(path, service.start_command)

        try:
            result = await self._runner.exec(descriptor, command)
            failed = False
        except RemoteExecError as exc:
            result = exc.result
            failed = True

        pid = parse_pid_sentinel(result.stdout)
        if pid is None:
            prefix = "start command failed" if failed else "Failed to capture started PID."
            raise ServiceStartError(_diagnostic(prefix, result))

        log.info("Started service %r on %s (pid=%d, log=%s)",
                 service.name, descriptor.address, pid, path)
        return StartResult(pid=pid, log_path=path)

    async def stop(self, descriptor: ConnectionDescriptor, pid: int | None) -> None:
        """SIGTERM the process group of ``pid``, or ``pid`` alone if it has none."""
        if not pid:
            raise ServiceStopError("PID is empty; cannot stop service.")

        pgid = await self._resolve_process_group(descriptor, pid)
        if pgid is not None:
            command = f"kill -TERM -- -{pgid}"
        else:
            log.info("No process group found for pid %d; signalling it directly", pid)
            command = f"kill -TERM {pid}"

        try:
            await self._runner.exec(descriptor, command)
        except RemoteExecError as exc:
            raise ServiceStopError(
                exc.result.stderr.strip() or f"kill {pid} (process group) failed"
            ) from exc
        log.info("Sent SIGTERM to %s %d on %s",
                 "process group" if pgid is not None else "pid",
                 pgid if pgid is not None else pid, descriptor.address)

    async def status(
        self, descriptor: ConnectionDescriptor, service: ServiceDescriptor
    ) -> ServiceProbe:
        """Probe remote ground truth for a service.

        A listener on the exposed port wins over the stored pid, so services
        respawned by a supervisor under a new pid are tracked correctly.
        """
        port_pid = await self._pid_listening_on(descriptor, service.exposed_port)
        if port_pid is not None:
            return ServiceProbe(ServiceStatus.RUNNING, pid=port_pid)

        if not service.pid:
            return ServiceProbe(ServiceStatus.STOPPED)

        try:
            await self._check_alive(descriptor, service.pid)
        except ProcessNotFoundError:
            return ServiceProbe(ServiceStatus.STOPPED)
        except RemoteExecError as exc:
            return ServiceProbe(
                ServiceStatus.ERROR,
                pid=service.pid,
                error=exc.result.stderr.strip() or "status check failed",
            )
        return ServiceProbe(ServiceStatus.RUNNING, pid=service.pid)

    async def logs(
        self, descriptor: ConnectionDescriptor, service: ServiceDescriptor
    ) -> ServiceLogs:
        if not service.pid or not service.log_path:
            return ServiceLogs()

        command = f"tail -n {int(self.tail_lines)} {shlex.quote(service.log_path)}"
        try:
            result = await self._runner.exec(descriptor, command)
        except RemoteExecError as exc:
            # Surface tail's complaint (e.g. missing file) in place of content
            return ServiceLogs(stdout=exc.result.stdout or exc.result.stderr)
        # stdout and stderr share one file, so everything arrives as stdout
        return ServiceLogs(stdout=result.stdout)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _pid_listening_on(
        self, descriptor: ConnectionDescriptor, port: int
    ) -> int | None:
        if port <= 0:
            return None
        command = f'bash -lc "lsof -tiTCP:{int(port)} -sTCP:LISTEN 2>/dev/null | head -n 1"'
        try:
            result = await self._runner.exec(descriptor, command)
        except RemoteExecError as exc:
            # Inconclusive; fall back to the pid check
            log.debug("Port probe for %d failed: %s", port, exc.result.stderr.strip())
            return None
        return _first_pid(result.stdout)

    async def _resolve_process_group(
        self, descriptor: ConnectionDescriptor, pid: int
    ) -> int | None:
        try:
            result = await self._runner.exec(descriptor, f"ps -o pgid= -p {int(pid)}")
        except RemoteExecError:
            return None
        return _first_pid(result.stdout)

    async def _check_alive(self, descriptor: ConnectionDescriptor, pid: int) -> None:
        try:
            await self._runner.exec(descriptor, f"kill -0 {int(pid)} >/dev/null 2>&1")
        except RemoteExecError as exc:
            if exc.result.exit_code == 1:
                raise ProcessNotFoundError(f"No such process: {pid}") from exc
            raise
