"""Optional local port-forward attached to a running service.

Unlike forward rules these are not supervised: a lost session only flips the
service's forward state to ``error``; the next status refresh re-opens it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .errors import HostPilotError
from .models import ConnectionDescriptor, ForwardState, ServiceDescriptor, SessionPurpose
from .relay import LocalForward
from .transport import Session, TransportFactory, describe_close

log = logging.getLogger(__name__)

FORWARD_BIND_HOST = "127.0.0.1"

Key = tuple[str, str]  # (host_id, service_id)
LostHandler = Callable[[str, str, str], None]


@dataclass
class _ServiceForward:
    session: Session
    forward: LocalForward

    def close(self) -> None:
        self.forward.close()
        self.session.close()


class ServiceForwards:
    def __init__(self, transport: TransportFactory, on_lost: LostHandler | None = None) -> None:
        self._transport = transport
        self.on_lost = on_lost
        self._live: dict[Key, _ServiceForward] = {}
        self._pending: dict[Key, asyncio.Task[tuple[ForwardState, str | None]]] = {}

    def is_active(self, host_id: str, service_id: str) -> bool:
        return (host_id, service_id) in self._live

    async def ensure(
        self,
        host_id: str,
        descriptor: ConnectionDescriptor,
        service: ServiceDescriptor,
    ) -> tuple[ForwardState, str | None]:
        """Make sure the service's forward is listening; report its health."""
        key = (host_id, service.id)
        if not service.forward_local_port:
            self.close(host_id, service.id)
            return ForwardState.NONE, None

        existing = self._live.get(key)
        if existing is not None:
            fwd = existing.forward
            if (fwd.local_port == service.forward_local_port
                    and fwd.remote_port == service.exposed_port
                    and not existing.session.closed):
                return ForwardState.OK, None
            self.close(host_id, service.id)

        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.create_task(self._open(key, descriptor, service))
            self._pending[key] = pending
            pending.add_done_callback(lambda t: self._pending.pop(key, None))
        return await asyncio.shield(pending)

    def close(self, host_id: str, service_id: str) -> None:
        live = self._live.pop((host_id, service_id), None)
        if live is not None:
            log.info("Closing forward for service %s/%s", host_id, service_id)
            live.close()

    def close_all(self) -> None:
        for host_id, service_id in list(self._live):
            self.close(host_id, service_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _open(
        self, key: Key, descriptor: ConnectionDescriptor, service: ServiceDescriptor
    ) -> tuple[ForwardState, str | None]:
        session: Session | None = None
        try:
            session = await self._transport.connect(descriptor, SessionPurpose.TUNNEL)
            forward = LocalForward(
                session,
                FORWARD_BIND_HOST,
                service.forward_local_port,
                FORWARD_BIND_HOST,
                service.exposed_port,
                on_error=lambda _fwd, exc: self._lost(key, live, f"Local listener error: {exc}"),
            )
            await forward.start()
        except HostPilotError as exc:
            if session is not None:
                session.close()
            log.warning("Port forward %d -> %d for service %s failed: %s",
                        service.forward_local_port, service.exposed_port, service.id, exc)
            return ForwardState.ERROR, str(exc)

        live = _ServiceForward(session, forward)
        self._live[key] = live
        session.add_close_handler(lambda exc: self._lost(key, live, describe_close(exc)))
        log.info("Forwarding 127.0.0.1:%d -> %s:%d for service %s",
                 service.forward_local_port, descriptor.host, service.exposed_port, service.id)
        return ForwardState.OK, None

    def _lost(self, key: Key, live: _ServiceForward, message: str) -> None:
        if self._live.get(key) is not live:
            return
        del self._live[key]
        live.close()
        log.warning("Forward for service %s/%s lost: %s", key[0], key[1], message)
        if self.on_lost is not None:
            self.on_lost(key[0], key[1], message)
