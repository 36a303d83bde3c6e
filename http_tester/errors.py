"""Error types and error sinks for http-tester.

Nothing in a builder or response chain raises. Failures are wrapped in one
of the exception types below and handed to the error sink, a plain
``Callable[[Exception], None]`` supplied by the caller (usually a test).
The sink decides whether to record, log, or abort the test.
"""

from __future__ import annotations

from typing import Callable

ErrorSink = Callable[[Exception], None]


class HttpTesterError(Exception):
    """Base class for errors reported to an error sink."""


class RequestBuildError(HttpTesterError):
    """The request could not be built (bad URL, bad method)."""


class EncodeError(HttpTesterError):
    """A request body value could not be serialized."""


class TransportError(HttpTesterError):
    """Dispatch failed: connection, timeout, cancellation, or body stream error."""


class BodyReadError(HttpTesterError):
    """The response body could not be read in full."""


class AssertionFailure(HttpTesterError):
    """A response assertion did not hold."""


class DecodeError(HttpTesterError):
    """The response body could not be decoded into the requested shape."""


class ErrorCollector:
    """Error sink that records every reported error.

    Usage:
        errors = ErrorCollector()
        builder = RequestBuilder(base_url, client, errors)
        builder.get("/").execute().status(200)
        errors.raise_if_errors()

    With ``fail_fast=True`` the first reported error is re-raised
    immediately, which aborts the chain the way a test framework's fatal
    assertion would.
    """

    def __init__(self, fail_fast: bool = False) -> None:
        self.errors: list[Exception] = []
        self._fail_fast = fail_fast

    def __call__(self, error: Exception) -> None:
        self.errors.append(error)
        if self._fail_fast:
            raise error

    def __len__(self) -> int:
        return len(self.errors)

    def __bool__(self) -> bool:
        return bool(self.errors)

    @property
    def messages(self) -> list[str]:
        return [str(e) for e in self.errors]

    def clear(self) -> None:
        self.errors.clear()

    def raise_if_errors(self) -> None:
        """Raise one AssertionError listing every recorded error."""
        if not self.errors:
            return
        lines = "\n".join(f"  - {m}" for m in self.messages)
        raise AssertionError(f"{len(self.errors)} HTTP check(s) failed:\n{lines}")
