"""Streaming multipart/form-data bodies.

A file upload is produced by a background thread that encodes the form
into one end of an in-memory pipe while httpx reads the other end as the
request body. The pipe has no buffer: each ``write`` blocks until the
reader has consumed it, so the file is never held in memory in full.

If the producer fails (a field cannot be written, or the source stream
raises mid-copy) it closes the pipe with that error, and the reader's
next ``read`` raises ``BodyStreamError`` instead of returning a clean EOF.
The transport therefore fails the request rather than sending a truncated
body.
"""

from __future__ import annotations

import io
import logging
import os
import threading
from typing import Any, BinaryIO, Mapping

from http_tester.errors import HttpTesterError

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 64 * 1024


class PipeClosedError(HttpTesterError):
    """Write or read on a pipe whose other side has gone away."""


class BodyStreamError(HttpTesterError):
    """The producer side of a pipe failed; raised to the reader."""


class _PipeState:
    def __init__(self) -> None:
        self.cond = threading.Condition()
        self.pending = b""
        self.write_closed = False
        self.write_error: BaseException | None = None
        self.read_closed = False


class PipeReader:
    """Read end of a pipe. File-like enough for httpx (``read``/``close``)."""

    def __init__(self, state: _PipeState) -> None:
        self._state = state

    def read(self, size: int = -1) -> bytes:
        """Return up to *size* bytes, blocking until the writer supplies some.

        Returns b"" once the writer closed cleanly. Raises BodyStreamError
        if the writer closed with an error.
        """
        state = self._state
        with state.cond:
            while not state.pending:
                if state.read_closed:
                    raise PipeClosedError("read from closed pipe")
                if state.write_closed:
                    if state.write_error is not None:
                        raise BodyStreamError(
                            f"multipart body producer failed: {state.write_error}"
                        ) from state.write_error
                    return b""
                state.cond.wait()

            if size is None or size < 0:
                size = len(state.pending)
            chunk, state.pending = state.pending[:size], state.pending[size:]
            state.cond.notify_all()
            return chunk

    def __iter__(self):
        while True:
            chunk = self.read(COPY_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        """Abandon the read side; a blocked or later ``write`` fails."""
        state = self._state
        with state.cond:
            state.read_closed = True
            state.pending = b""
            state.cond.notify_all()


class PipeWriter:
    """Write end of a pipe."""

    def __init__(self, state: _PipeState) -> None:
        self._state = state

    def write(self, data: bytes) -> int:
        """Hand *data* to the reader and block until it has all been read."""
        if not data:
            return 0
        state = self._state
        with state.cond:
            if state.write_closed:
                raise PipeClosedError("write to closed pipe")
            if state.read_closed:
                raise PipeClosedError("pipe reader closed")
            state.pending = bytes(data)
            state.cond.notify_all()
            while state.pending and not state.read_closed:
                state.cond.wait()
            if state.read_closed:
                raise PipeClosedError("pipe reader closed")
        return len(data)

    def close(self) -> None:
        """Signal a clean end of stream."""
        self.close_with_error(None)

    def close_with_error(self, error: BaseException | None) -> None:
        """Close the write side; the reader sees *error* instead of EOF.

        Only the first close counts.
        """
        state = self._state
        with state.cond:
            if state.write_closed:
                return
            state.write_closed = True
            state.write_error = error
            state.cond.notify_all()


def pipe() -> tuple[PipeReader, PipeWriter]:
    """Create a synchronous in-memory pipe."""
    state = _PipeState()
    return PipeReader(state), PipeWriter(state)


def _escape_quotes(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class MultipartWriter:
    """Incremental multipart/form-data encoder writing to a byte sink.

    Parts are written in order; ``create_form_file`` returns the sink itself
    because the part body is everything written until the next part or
    ``close()``.
    """

    def __init__(self, out: Any, boundary: str | None = None) -> None:
        self._out = out
        self.boundary = boundary or os.urandom(16).hex()
        self._parts = 0
        self._closed = False

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def _begin_part(self, headers: list[str]) -> None:
        if self._closed:
            raise ValueError("multipart writer is closed")
        lead = "\r\n" if self._parts else ""
        self._parts += 1
        head = f"{lead}--{self.boundary}\r\n" + "".join(f"{h}\r\n" for h in headers) + "\r\n"
        self._out.write(head.encode("utf-8"))

    def write_field(self, name: str, value: str) -> None:
        self._begin_part([f'Content-Disposition: form-data; name="{_escape_quotes(name)}"'])
        self._out.write(value.encode("utf-8"))

    def create_form_file(self, field_name: str, file_name: str) -> Any:
        self._begin_part([
            f'Content-Disposition: form-data; name="{_escape_quotes(field_name)}"; '
            f'filename="{_escape_quotes(file_name)}"',
            "Content-Type: application/octet-stream",
        ])
        return self._out

    def close(self) -> None:
        if self._closed:
            return
        lead = "\r\n" if self._parts else ""
        self._out.write(f"{lead}--{self.boundary}--\r\n".encode("utf-8"))
        self._closed = True


def _copy(src: BinaryIO, dst: Any) -> int:
    copied = 0
    while True:
        chunk = src.read(COPY_CHUNK_SIZE)
        if not chunk:
            return copied
        dst.write(chunk)
        copied += len(chunk)


def stream_file_body(
    field_name: str,
    file_name: str,
    content: BinaryIO | bytes,
    extra: Mapping[str, str] | None = None,
) -> tuple[PipeReader, str]:
    """Start a producer thread encoding a file upload into a pipe.

    Extra fields are written first, in mapping order, then the file part.

    Returns:
        The pipe read end, to be used as the request body, and the
        Content-Type header value carrying the boundary.
    """
    if isinstance(content, (bytes, bytearray)):
        content = io.BytesIO(content)

    reader, writer = pipe()
    form = MultipartWriter(writer)
    fields = dict(extra or {})

    def produce() -> None:
        try:
            for name, value in fields.items():
                form.write_field(name, value)
            part = form.create_form_file(field_name, file_name)
            size = _copy(content, part)
            form.close()
        except Exception as e:
            # Propagated to the reader as BodyStreamError.
            logger.debug("multipart producer for %r failed: %s", file_name, e)
            writer.close_with_error(e)
            return
        logger.debug("multipart producer for %r finished, %d file bytes", file_name, size)
        writer.close()

    thread = threading.Thread(
        target=produce, name=f"multipart-{field_name}", daemon=True
    )
    thread.start()
    return reader, form.content_type
