"""Cooperative cancellation and deadlines for request execution.

A Context is attached to a builder with ``RequestBuilder.context()``.
httpx has no cancellation token, so the builder checks the context at the
points it controls: before dispatch, between request body chunks, and
between response body chunks. A deadline is also passed to httpx as the
per-request timeout.
"""

from __future__ import annotations

import threading
import time

from http_tester.errors import HttpTesterError


class Cancelled(HttpTesterError):
    """The context was cancelled explicitly."""


class DeadlineExceeded(HttpTesterError):
    """The context deadline passed."""


class Context:
    """Cancellation/deadline handle shared between the caller and a builder.

    ``deadline`` is a ``time.monotonic()`` timestamp. ``cancel()`` may be
    called from any thread.
    """

    def __init__(self, deadline: float | None = None) -> None:
        self._deadline = deadline
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> Context:
        """A context that is never cancelled and has no deadline."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> Context:
        return cls(deadline=time.monotonic() + seconds)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def cancel(self) -> None:
        self._cancelled.set()

    def remaining(self) -> float | None:
        """Seconds until the deadline (never negative), or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def err(self) -> HttpTesterError | None:
        """Return why the context is done, or None while it is still live."""
        if self._cancelled.is_set():
            return Cancelled("context cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return DeadlineExceeded("context deadline exceeded")
        return None

    def done(self) -> bool:
        return self.err() is not None

    def check(self) -> None:
        """Raise the context error if the context is done."""
        error = self.err()
        if error is not None:
            raise error
