"""Cancellation and deadlines for sync runs.

A `RunContext` combines an optional deadline with an optional stop event
(set by signal handlers or callers). Children created with `with_timeout`
share the parent's stop event and never outlive the parent's deadline.
"""

from __future__ import annotations

import threading
from time import monotonic

from ..errors import ContextCancelled, DeadlineExceeded

__all__ = ["RunContext"]


class RunContext:
    def __init__(
        self,
        *,
        timeout: float | None = None,
        stop_event: threading.Event | None = None,
        _deadline: float | None = None,
    ) -> None:
        self._stop = stop_event or threading.Event()
        deadline = _deadline
        if timeout is not None:
            own = monotonic() + timeout
            deadline = own if deadline is None else min(deadline, own)
        self._deadline = deadline

    @classmethod
    def background(cls) -> RunContext:
        return cls()

    def with_timeout(self, seconds: float) -> RunContext:
        return RunContext(timeout=seconds, stop_event=self._stop, _deadline=self._deadline)

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def cancel(self) -> None:
        self._stop.set()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - monotonic())

    def err(self) -> ContextCancelled | None:
        if self._stop.is_set():
            return ContextCancelled("context cancelled")
        if self._deadline is not None and monotonic() >= self._deadline:
            return DeadlineExceeded("context deadline exceeded")
        return None

    def check(self) -> None:
        exc = self.err()
        if exc is not None:
            raise exc

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if the context was cancelled meanwhile."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        return self._stop.wait(seconds)
