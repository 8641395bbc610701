"""Tunnel supervisor: per-rule state machine with fixed-delay reconnect.

    stopped -> starting -> running -> stopping -> stopped
    starting | running -> error -> (after reconnect_delay) starting

Each rule is an independent asyncio task; the tables below are only touched
from the event loop, so no locking is needed.  Stop is cooperative: every
attempt re-checks its rule's generation after each await and discards its
result if the rule was stopped in the meantime.

Rule ids are only unique within their host, so every table is keyed by
``(host_id, rule_id)``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from .broadcaster import StatusBroadcaster
from .errors import HostPilotError, TunnelConnectError
from .models import (
    ConnectionDescriptor,
    ForwardRule,
    SessionPurpose,
    TunnelState,
    TunnelStatus,
    TunnelStatusChange,
    epoch_ms,
)
from .relay import LocalForward, check_local_bind
from .transport import CLOSED_UNEXPECTEDLY, Session, TransportFactory, describe_close

log = logging.getLogger(__name__)

RECONNECT_DELAY = 5.0  # seconds

Key = tuple[str, str]  # (host_id, rule_id)

__all__ = ["CLOSED_UNEXPECTEDLY", "RECONNECT_DELAY", "TunnelSupervisor"]


@dataclass(frozen=True)
class _TunnelConfig:
    host_id: str
    rule: ForwardRule
    descriptor: ConnectionDescriptor


@dataclass
class _LiveTunnel:
    session: Session
    forward: LocalForward


class TunnelSupervisor:
    """Keeps forward rules connected and reports every transition."""

    def __init__(
        self,
        transport: TransportFactory,
        broadcaster: StatusBroadcaster,
        reconnect_delay: float = RECONNECT_DELAY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._broadcaster = broadcaster
        self.reconnect_delay = reconnect_delay
        self._clock = clock

        self._configs: dict[Key, _TunnelConfig] = {}
        self._states: dict[Key, TunnelState] = {}
        self._live: dict[Key, _LiveTunnel] = {}
        self._attempts: dict[Key, asyncio.Task[None]] = {}
        self._timers: dict[Key, asyncio.TimerHandle] = {}
        self._generations: dict[Key, int] = {}
        self._generation_seq = itertools.count(1)
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_state(self, host_id: str, rule_id: str) -> TunnelState:
        return replace(self._states.get((host_id, rule_id)) or TunnelState())

    def is_active(self, host_id: str, rule_id: str) -> bool:
        return (host_id, rule_id) in self._live

    def has_pending_reconnect(self, host_id: str, rule_id: str) -> bool:
        return (host_id, rule_id) in self._timers

    async def start(
        self, host_id: str, rule: ForwardRule, descriptor: ConnectionDescriptor
    ) -> None:
        """Bring the rule up, or remember its config if it is already up.

        Raises the classified start error after recording it as an ``error``
        transition with a scheduled reconnect.
        """
        key = (host_id, rule.id)
        self._configs[key] = _TunnelConfig(host_id, rule, descriptor)
        self._cancel_timer(key)

        if key in self._live:
            # Keep the live connection; new parameters apply on next connect
            return

        attempt = self._attempts.get(key)
        if attempt is None:
            generation = self._generations.setdefault(key, next(self._generation_seq))
            attempt = asyncio.create_task(
                self._attempt(key, generation), name=f"tunnel-{host_id}-{rule.id}"
            )
            self._attempts[key] = attempt
            attempt.add_done_callback(lambda t, k=key: self._attempt_done(k, t))
        await asyncio.shield(attempt)

    async def stop(self, host_id: str, rule_id: str) -> None:
        """Tear the rule down; no reconnect is scheduled afterwards."""
        key = (host_id, rule_id)
        self._cancel_timer(key)
        self._generations[key] = next(self._generation_seq)
        attempt = self._attempts.pop(key, None)
        live = self._live.pop(key, None)

        state = self._states.get(key)
        if live is None and attempt is None and (
            state is None or state.status == TunnelStatus.STOPPED
        ):
            return

        self._set_state(key, TunnelStatus.STOPPING)
        if live is not None:
            _close_live(live)
        self._set_state(key, TunnelStatus.STOPPED)

    async def forget(self, host_id: str, rule_id: str) -> None:
        """Stop the rule and drop every runtime entry kept for it."""
        key = (host_id, rule_id)
        await self.stop(host_id, rule_id)
        self._configs.pop(key, None)
        self._states.pop(key, None)
        self._generations.pop(key, None)

    async def stop_all(self) -> None:
        keys = set(self._configs) | set(self._live) | set(self._timers)
        for host_id, rule_id in keys:
            await self.stop(host_id, rule_id)

    # ------------------------------------------------------------------
    # Start sequence
    # ------------------------------------------------------------------

    def _stale(self, key: Key, generation: int) -> bool:
        return self._generations.get(key) != generation

    async def _attempt(self, key: Key, generation: int) -> None:
        if self._stale(key, generation):
            return
        config = self._configs.get(key)
        if config is None:
            return
        rule = config.rule
        self._set_state(key, TunnelStatus.STARTING)

        session: Session | None = None
        forward: LocalForward | None = None
        try:
            # 1. local bind pre-check (raises LocalBindError)
            check_local_bind(rule.local_host, rule.local_port)

            # 2. remote session
            try:
                session = await self._transport.connect(
                    config.descriptor, SessionPurpose.TUNNEL
                )
            except HostPilotError as exc:
                raise TunnelConnectError(
                    f"Unable to connect SSH {config.descriptor.address}. {exc}"
                ) from exc
            if self._stale(key, generation):
                session.close()
                return

            # 3. real listener (raises LocalBindError)
            forward = LocalForward(
                session,
                rule.local_host,
                rule.local_port,
                rule.remote_host,
                rule.remote_port,
                on_error=lambda fwd, exc: self._listener_failed(key, fwd, exc),
            )
            await forward.start()
            if self._stale(key, generation):
                forward.close()
                session.close()
                return
        except HostPilotError as exc:
            if forward is not None:
                forward.close()
            if session is not None:
                session.close()
            if self._stale(key, generation):
                return
            log.warning("Tunnel %s/%s failed to start: %s", key[0], key[1], exc)
            self._fail(key, str(exc))
            raise
        except BaseException:
            if forward is not None:
                forward.close()
            if session is not None:
                session.close()
            raise

        live = _LiveTunnel(session, forward)
        self._live[key] = live
        session.add_close_handler(lambda exc: self._session_lost(key, live, exc))
        self._set_state(key, TunnelStatus.RUNNING)

    def _attempt_done(self, key: Key, task: asyncio.Task[None]) -> None:
        if self._attempts.get(key) is task:
            del self._attempts[key]
        if not task.cancelled():
            # Callers awaiting start() see the error; mark it retrieved here
            task.exception()

    # ------------------------------------------------------------------
    # Runtime failures & reconnect
    # ------------------------------------------------------------------

    def _session_lost(self, key: Key, live: _LiveTunnel, exc: Exception | None) -> None:
        if self._live.get(key) is not live:
            return
        self._runtime_failure(key, describe_close(exc))

    def _listener_failed(self, key: Key, forward: LocalForward, exc: Exception) -> None:
        live = self._live.get(key)
        if live is None or live.forward is not forward:
            return
        self._runtime_failure(key, f"Local listener error: {exc}")

    def _runtime_failure(self, key: Key, message: str) -> None:
        live = self._live.pop(key, None)
        if live is not None:
            _close_live(live)
        log.warning("Tunnel %s/%s dropped: %s", key[0], key[1], message)
        self._fail(key, message)

    def _fail(self, key: Key, message: str) -> None:
        reconnect_at = epoch_ms(self._clock() + self.reconnect_delay)
        self._set_state(key, TunnelStatus.ERROR, error=message, reconnect_at=reconnect_at)
        self._schedule_reconnect(key)

    def _schedule_reconnect(self, key: Key) -> None:
        if key not in self._configs:
            return
        self._cancel_timer(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.reconnect_delay, self._reconnect, key)

    def _reconnect(self, key: Key) -> None:
        self._timers.pop(key, None)
        state = self._states.get(key)
        if state is not None and state.status in (TunnelStatus.STOPPED, TunnelStatus.STOPPING):
            return
        config = self._configs.get(key)
        if config is None:
            return
        log.info("Reconnecting tunnel %s/%s", key[0], key[1])
        task = asyncio.create_task(
            self.start(config.host_id, config.rule, config.descriptor),
            name=f"reconnect-{key[0]}-{key[1]}",
        )
        self._background.add(task)
        task.add_done_callback(self._reconnect_done)

    def _reconnect_done(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            # Already logged and reported as an error transition
            log.debug("Reconnect attempt failed: %s", task.exception())

    def _cancel_timer(self, key: Key) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(
        self,
        key: Key,
        status: TunnelStatus,
        error: str | None = None,
        reconnect_at: int | None = None,
    ) -> None:
        host_id, rule_id = key
        self._states[key] = TunnelState(status, error, reconnect_at)
        log.info("Tunnel %s/%s -> %s%s", host_id, rule_id, status.value,
                 f" ({error})" if error else "")
        self._broadcaster.publish(TunnelStatusChange(
            host_id=host_id,
            forward_id=rule_id,
            status=status,
            error=error,
            reconnect_at=reconnect_at,
        ))


def _close_live(live: _LiveTunnel) -> None:
    live.forward.close()
    live.session.close()
