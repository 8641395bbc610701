"""Pytest fixtures and fakes for hostpilot tests."""

from __future__ import annotations

import asyncio
import socket
from typing import Any

import asyncssh
import pytest

from hostpilot.broadcaster import StatusBroadcaster
from hostpilot.models import (
    ConnectionDescriptor,
    ForwardRule,
    HostConfig,
    ServiceDescriptor,
    SessionPurpose,
)


def free_port() -> int:
    """A loopback port that nothing listens on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_for_condition(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeSession:
    """Stands in for transport.Session.

    ``open_connection`` dials the real loopback address unless a
    ``channel_error`` is set, so relays can be exercised end to end.
    """

    def __init__(self, descriptor: ConnectionDescriptor | None = None) -> None:
        self.descriptor = descriptor
        self.closed = False
        self.channel_error: Exception | None = None
        self.opened: list[tuple[str, int]] = []
        self._handlers: list[Any] = []

    def add_close_handler(self, handler) -> None:
        if self.closed:
            asyncio.get_running_loop().call_soon(handler, None)
            return
        self._handlers.append(handler)

    async def open_connection(self, host: str, port: int):
        self.opened.append((host, port))
        if self.channel_error is not None:
            raise self.channel_error
        return await asyncio.open_connection(host, port)

    def close(self) -> None:
        self._finish(None)

    def drop(self, exc: Exception | None = None) -> None:
        """Simulate the peer going away.

        Without ``exc`` this is what asyncssh reports for a remote hang-up.
        """
        self._finish(exc or asyncssh.ConnectionLost("Connection lost"))

    def _finish(self, exc: Exception | None) -> None:
        if self.closed:
            return
        self.closed = True
        for handler in list(self._handlers):
            handler(exc)


class FakeTransport:
    """Stands in for TransportFactory.

    Each connect() consumes the next entry of ``outcomes`` (an exception to
    raise or None for success); once exhausted every connect succeeds.
    Clearing ``gate`` holds connects until it is set again.
    """

    def __init__(self, outcomes: list[Exception | None] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple[ConnectionDescriptor, SessionPurpose]] = []
        self.sessions: list[FakeSession] = []
        self.gate = asyncio.Event()
        self.gate.set()

    async def connect(
        self, descriptor: ConnectionDescriptor, purpose: SessionPurpose = SessionPurpose.COMMAND
    ) -> FakeSession:
        self.calls.append((descriptor, purpose))
        await self.gate.wait()
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome is not None:
                raise outcome
        session = FakeSession(descriptor)
        self.sessions.append(session)
        return session


class EventRecorder:
    """Broadcaster subscriber that keeps events with their loop timestamps."""

    def __init__(self) -> None:
        self.events: list[Any] = []
        self.times: list[float] = []

    def __call__(self, event) -> None:
        self.events.append(event)
        self.times.append(asyncio.get_running_loop().time())

    def statuses(self) -> list[str]:
        return [e.status.value for e in self.events]


@pytest.fixture
def descriptor() -> ConnectionDescriptor:
    return ConnectionDescriptor(host="db.internal", username="deploy", port=22, password="secret")


@pytest.fixture
def broadcaster() -> StatusBroadcaster:
    return StatusBroadcaster()


@pytest.fixture
def recorder(broadcaster: StatusBroadcaster) -> EventRecorder:
    rec = EventRecorder()
    broadcaster.subscribe(rec)
    return rec


@pytest.fixture
def sample_host(descriptor: ConnectionDescriptor) -> HostConfig:
    return HostConfig(
        id="h1",
        name="staging box",
        connection=descriptor,
        forwards=[
            ForwardRule(id="f1", local_port=15432, remote_port=5432, auto_start=True),
            ForwardRule(id="f2", local_port=16379, remote_port=6379),
        ],
        services=[
            ServiceDescriptor(id="s1", name="api", start_command="npm run dev", exposed_port=3000),
            ServiceDescriptor(id="s2", name="sleeper", start_command="sleep 5", exposed_port=0),
        ],
    )
