"""Status broadcaster: fans state transitions out to subscribers."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .models import StatusChange, TunnelStatusChange

log = logging.getLogger(__name__)

Handler = Callable[[StatusChange], None]


class StatusBroadcaster:
    """Publish/subscribe surface shared by the tunnel and service sides.

    One event is published per actual transition; there is no buffering for
    late subscribers (see EventLog for that).
    """

    def __init__(self) -> None:
        self._handlers: dict[int, Handler] = {}
        self._next_token = 0

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Attach ``handler``; the returned callable detaches it again."""
        token = self._next_token
        self._next_token += 1
        self._handlers[token] = handler

        def unsubscribe() -> None:
            self._handlers.pop(token, None)

        return unsubscribe

    def publish(self, event: StatusChange) -> None:
        # Snapshot so handlers may (un)subscribe while we iterate
        for handler in list(self._handlers.values()):
            try:
                handler(event)
            except Exception:
                log.exception("Status handler %r failed for %s", handler, event)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)


@dataclass
class EventLog:
    """Bounded ring buffer of published events, tracked by sequence number.

    Lets a polling client ask for "everything after seq N".
    """

    max_events: int = 1000
    _buf: deque[tuple[int, StatusChange]] = field(default_factory=deque)
    _seq: int = 0  # monotonic, one per event

    def __call__(self, event: StatusChange) -> None:
        self._seq += 1
        self._buf.append((self._seq, event))
        while len(self._buf) > self.max_events:
            self._buf.popleft()

    @property
    def seq(self) -> int:
        return self._seq

    def since(self, seq: int = 0) -> list[dict[str, Any]]:
        out = []
        for n, event in self._buf:
            if n > seq:
                out.append({"seq": n, "kind": _kind(event), **event.to_dict()})
        return out


def _kind(event: StatusChange) -> str:
    return "tunnel" if isinstance(event, TunnelStatusChange) else "service"
