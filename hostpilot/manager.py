"""Host manager: routes control commands to the core and publishes results.

This is the bookkeeping layer around ServiceLifecycleController and
TunnelSupervisor: it resolves ids against the store, emits the
starting/stopping/error transitions, writes back pids and keeps the
last-broadcast service status table.
"""

from __future__ import annotations

import logging
from typing import Any

from .broadcaster import StatusBroadcaster
from .config import Settings
from .errors import HostPilotError, NotFoundError
from .models import (
    ForwardRule,
    ForwardState,
    HostConfig,
    ServiceDescriptor,
    ServiceLogs,
    ServiceRuntimeState,
    ServiceStatus,
    ServiceStatusChange,
    TunnelState,
    utc_now_iso,
)
from .runner import RemoteCommandRunner
from .service_forwards import ServiceForwards
from .services import ServiceLifecycleController
from .store import HostStore
from .transport import TransportFactory
from .tunnels import TunnelSupervisor

log = logging.getLogger(__name__)

Key = tuple[str, str]  # (host_id, service_id)


class HostManager:
    def __init__(
        self,
        store: HostStore,
        controller: ServiceLifecycleController,
        tunnels: TunnelSupervisor,
        forwards: ServiceForwards,
        broadcaster: StatusBroadcaster,
    ) -> None:
        self.store = store
        self.controller = controller
        self.tunnels = tunnels
        self.forwards = forwards
        self.broadcaster = broadcaster
        self._service_states: dict[Key, ServiceRuntimeState] = {}
        self._forward_health: dict[Key, tuple[ForwardState, str | None]] = {}
        self._busy: set[Key] = set()
        self.forwards.on_lost = self._service_forward_lost

    @classmethod
    def from_settings(cls, settings: Settings, store: HostStore) -> HostManager:
        broadcaster = StatusBroadcaster()
        transport = TransportFactory(known_hosts=settings.known_hosts)
        runner = RemoteCommandRunner(transport, timeout=settings.command_timeout)
        controller = ServiceLifecycleController(
            runner, log_dir=settings.log_dir, tail_lines=settings.log_tail_lines
        )
        tunnels = TunnelSupervisor(
            transport, broadcaster, reconnect_delay=settings.reconnect_delay
        )
        forwards = ServiceForwards(transport)
        return cls(store, controller, tunnels, forwards, broadcaster)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _host(self, host_id: str) -> HostConfig:
        host = self.store.get_host(host_id)
        if host is None:
            raise NotFoundError("Host not found.")
        return host

    def _service(self, host_id: str, service_id: str) -> tuple[HostConfig, ServiceDescriptor]:
        host = self._host(host_id)
        service = host.find_service(service_id)
        if service is None:
            raise NotFoundError("Service not found.")
        return host, service

    def _forward(self, host_id: str, forward_id: str) -> tuple[HostConfig, ForwardRule]:
        host = self._host(host_id)
        rule = host.find_forward(forward_id)
        if rule is None:
            raise NotFoundError("Forward rule not found.")
        return host, rule

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def start_service(self, host_id: str, service_id: str) -> ServiceRuntimeState:
        host, service = self._service(host_id, service_id)
        key = (host.id, service.id)
        self._busy.add(key)
        try:
            self._emit(host.id, service, ServiceStatus.STARTING)
            try:
                started = await self.controller.start(host.connection, host.name, service)
            except HostPilotError as exc:
                log.warning("Start of %s/%s failed: %s", host.id, service.id, exc)
                self._emit(host.id, service, ServiceStatus.ERROR, error=str(exc))
                raise

            service.pid = started.pid
            service.log_path = started.log_path
            self.store.update_service(host.id, service.id, pid=started.pid, log_path=started.log_path)
            await self._sync_forward(host, service)
            return self._emit(host.id, service, ServiceStatus.RUNNING, pid=started.pid)
        finally:
            self._busy.discard(key)

    async def stop_service(self, host_id: str, service_id: str) -> ServiceRuntimeState:
        host, service = self._service(host_id, service_id)
        key = (host.id, service.id)
        self._busy.add(key)
        try:
            self._emit(host.id, service, ServiceStatus.STOPPING, pid=service.pid)
            try:
                await self.controller.stop(host.connection, service.pid)
            except HostPilotError as exc:
                log.warning("Stop of %s/%s failed: %s", host.id, service.id, exc)
                self._emit(host.id, service, ServiceStatus.ERROR, pid=service.pid, error=str(exc))
                raise

            self._drop_forward(host.id, service.id)
            service.pid = None
            self.store.update_service(host.id, service.id, pid=None)
            return self._emit(host.id, service, ServiceStatus.STOPPED)
        finally:
            self._busy.discard(key)

    async def refresh_service(self, host_id: str, service_id: str) -> ServiceRuntimeState:
        """Re-probe the remote host; publish only if something changed."""
        host, service = self._service(host_id, service_id)
        key = (host.id, service.id)
        if key in self._busy:
            # A start/stop is in flight; its own transitions win
            return self.service_state(host.id, service.id)

        probe = await self.controller.status(host.connection, service)
        if probe.status == ServiceStatus.RUNNING:
            if probe.pid and probe.pid != service.pid:
                log.info("Service %s/%s now listening under pid %d (was %s)",
                         host.id, service.id, probe.pid, service.pid)
                service.pid = probe.pid
                self.store.update_service(host.id, service.id, pid=probe.pid)
            await self._sync_forward(host, service)
        elif probe.status == ServiceStatus.STOPPED:
            self._drop_forward(host.id, service.id)
            if service.pid:
                service.pid = None
                self.store.update_service(host.id, service.id, pid=None)

        return self._emit(host.id, service, probe.status, pid=probe.pid, error=probe.error)

    async def get_service_logs(self, host_id: str, service_id: str) -> ServiceLogs:
        host, service = self._service(host_id, service_id)
        return await self.controller.logs(host.connection, service)

    def service_state(self, host_id: str, service_id: str) -> ServiceRuntimeState:
        state = self._service_states.get((host_id, service_id))
        if state is not None:
            return state
        host = self.store.get_host(host_id)
        service = host.find_service(service_id) if host else None
        return ServiceRuntimeState(pid=service.pid if service else None)

    async def delete_service(self, host_id: str, service_id: str) -> None:
        self._drop_forward(host_id, service_id)
        self._service_states.pop((host_id, service_id), None)
        self.store.remove_service(host_id, service_id)

    # ------------------------------------------------------------------
    # Forward rules
    # ------------------------------------------------------------------

    async def start_forward(self, host_id: str, forward_id: str) -> TunnelState:
        host, rule = self._forward(host_id, forward_id)
        await self.tunnels.start(host.id, rule, host.connection)
        return self.tunnels.get_state(host.id, rule.id)

    async def stop_forward(self, host_id: str, forward_id: str) -> TunnelState:
        self._host(host_id)
        await self.tunnels.stop(host_id, forward_id)
        return self.tunnels.get_state(host_id, forward_id)

    async def delete_forward(self, host_id: str, forward_id: str) -> None:
        await self.tunnels.forget(host_id, forward_id)
        self.store.remove_forward(host_id, forward_id)

    # ------------------------------------------------------------------
    # Hosts
    # ------------------------------------------------------------------

    async def delete_host(self, host_id: str) -> None:
        host = self.store.get_host(host_id)
        if host is not None:
            for rule in host.forwards:
                await self.tunnels.forget(host.id, rule.id)
            for service in host.services:
                self._drop_forward(host.id, service.id)
                self._service_states.pop((host.id, service.id), None)
        self.store.remove_host(host_id)

    def list_hosts(self) -> list[dict[str, Any]]:
        """Config merged with runtime state; secrets are never included."""
        views = []
        for host in self.store.list_hosts():
            forwards = []
            for rule in host.forwards:
                state = self.tunnels.get_state(host.id, rule.id)
                forwards.append({
                    "id": rule.id,
                    "localHost": rule.local_host,
                    "localPort": rule.local_port,
                    "remoteHost": rule.remote_host,
                    "remotePort": rule.remote_port,
                    "autoStart": rule.auto_start,
                    "status": state.status.value,
                    "error": state.error,
                    "reconnectAt": state.reconnect_at,
                })
            services = []
            for service in host.services:
                state = self.service_state(host.id, service.id)
                services.append({
                    "id": service.id,
                    "name": service.name,
                    "startCommand": service.start_command,
                    "port": service.exposed_port,
                    "forwardLocalPort": service.forward_local_port,
                    "pid": state.pid if state.pid is not None else service.pid,
                    "status": state.status.value,
                    "error": state.error,
                    "updatedAt": state.updated_at,
                    "forwardState": state.forward_state.value,
                    "forwardError": state.forward_error,
                })
            views.append({
                "id": host.id,
                "name": host.name,
                "sshHost": host.connection.host,
                "sshPort": host.connection.port,
                "username": host.connection.username,
                "jumpHost": host.connection.jump.address if host.connection.jump else None,
                "forwards": forwards,
                "services": services,
            })
        return views

    async def bootstrap(self, refresh_services: bool = True) -> None:
        """Start auto-start forwards and re-probe services with a known pid."""
        for host in self.store.list_hosts():
            for rule in host.forwards:
                if not rule.auto_start:
                    continue
                try:
                    await self.tunnels.start(host.id, rule, host.connection)
                    log.info("Auto-started forward %s on host %s", rule.id, host.name)
                except HostPilotError as exc:
                    # Supervisor keeps retrying on its own
                    log.warning("Auto-start of forward %s failed: %s", rule.id, exc)
            if not refresh_services:
                continue
            for service in host.services:
                if not service.pid:
                    continue
                try:
                    await self.refresh_service(host.id, service.id)
                except Exception:
                    log.exception("Failed to refresh service '%s'", service.name)

    async def shutdown(self) -> None:
        await self.tunnels.stop_all()
        self.forwards.close_all()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _sync_forward(self, host: HostConfig, service: ServiceDescriptor) -> None:
        key = (host.id, service.id)
        state, error = await self.forwards.ensure(host.id, host.connection, service)
        if state == ForwardState.NONE:
            self._forward_health.pop(key, None)
        else:
            self._forward_health[key] = (state, error)

    def _drop_forward(self, host_id: str, service_id: str) -> None:
        self.forwards.close(host_id, service_id)
        self._forward_health.pop((host_id, service_id), None)

    def _service_forward_lost(self, host_id: str, service_id: str, message: str) -> None:
        key = (host_id, service_id)
        self._forward_health[key] = (ForwardState.ERROR, message)
        prev = self._service_states.get(key)
        host = self.store.get_host(host_id)
        service = host.find_service(service_id) if host else None
        if prev is None or service is None:
            return
        self._emit(host_id, service, prev.status, pid=prev.pid, error=prev.error)

    def _emit(
        self,
        host_id: str,
        service: ServiceDescriptor,
        status: ServiceStatus,
        pid: int | None = None,
        error: str | None = None,
    ) -> ServiceRuntimeState:
        key = (host_id, service.id)
        if service.forward_local_port:
            forward_state, forward_error = self._forward_health.get(key, (ForwardState.NONE, None))
        else:
            forward_state, forward_error = ForwardState.NONE, None

        prev = self._service_states.get(key)
        if prev is not None and (prev.status, prev.pid, prev.error, prev.forward_state,
                                 prev.forward_error) == (status, pid, error, forward_state,
                                                         forward_error):
            return prev

        state = ServiceRuntimeState(
            status=status,
            pid=pid,
            error=error,
            updated_at=utc_now_iso(),
            forward_state=forward_state,
            forward_error=forward_error,
        )
        self._service_states[key] = state
        log.info("Service %s/%s -> %s", host_id, service.id, status.value)
        self.broadcaster.publish(ServiceStatusChange(
            host_id=host_id,
            service_id=service.id,
            status=status,
            pid=pid,
            error=error,
            updated_at=state.updated_at,
            forward_state=forward_state,
            forward_error=forward_error,
        ))
        return state
