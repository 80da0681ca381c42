from __future__ import annotations

import logging
import queue
import secrets
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field

from codecraft.models import StreamEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class EventChannel:
    """Single-producer/single-consumer FIFO of stream events for one run.

    The producer calls ``put`` and finally ``close``; the consumer iterates.
    Cancelling stops the producer from starting new work and drops anything
    it puts afterwards. Events queued before cancellation may still drain.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[object] = queue.Queue()
        self._cancelled = threading.Event()
        self._closed = False

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def put(self, event: StreamEvent) -> bool:
        if self._closed or self.cancelled:
            return False
        self._queue.put(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_CLOSED)

    def get(self, timeout: float | None = None) -> StreamEvent | None:
        """Next event, or None once the producer has closed the channel."""
        return self._unwrap(self._queue.get(timeout=timeout))

    def get_nowait(self) -> StreamEvent | None:
        """Like ``get`` but raises ``queue.Empty`` instead of waiting."""
        return self._unwrap(self._queue.get_nowait())

    def _unwrap(self, item: object) -> StreamEvent | None:
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[StreamEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


@dataclass
class RunSession:
    run_id: str
    user_id: str
    channel: EventChannel = field(default_factory=EventChannel)
    thread: threading.Thread | None = None
    started_at: float = field(default_factory=time.time)


class SessionRegistry:
    """Live runs keyed by run id, owned by the transport layer."""

    def __init__(self) -> None:
        self._sessions: dict[str, RunSession] = {}
        self._lock = threading.Lock()

    def _make_id(self) -> str:
        return f"run-{secrets.token_urlsafe(9)}"

    def open(self, user_id: str) -> RunSession:
        session = RunSession(run_id=self._make_id(), user_id=user_id)
        with self._lock:
            self._sessions[session.run_id] = session
        logger.debug("Opened run %s for %s", session.run_id, user_id)
        return session

    def get(self, run_id: str) -> RunSession | None:
        with self._lock:
            return self._sessions.get(run_id)

    def close(self, run_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(run_id, None)
        if session is not None:
            logger.debug("Closed run %s", run_id)

    def cancel(self, run_id: str, user_id: str | None = None) -> bool:
        session = self.get(run_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            return False
        session.channel.cancel()
        logger.info("Cancelled run %s", run_id)
        return True

    def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.channel.cancel()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)
