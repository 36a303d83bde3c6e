"""Tests for the streaming multipart body: pipe, encoder and producer thread.

Tests cover:
- Pipe handoff: writes block until read, clean close is EOF, error close
  surfaces to the reader, abandoned reader fails the writer
- MultipartWriter framing
- file() through RequestBuilder: field order, Content-Type boundary,
  and a failing source stream surfacing as a transport error
"""

from __future__ import annotations

import io
import threading

import httpx
import pytest

from http_tester.errors import ErrorCollector, TransportError
from http_tester.multipart import (
    BodyStreamError,
    MultipartWriter,
    PipeClosedError,
    pipe,
    stream_file_body,
)
from http_tester.request import RequestBuilder
from tests.conftest import BASE_URL, Recorder


def _read_all(reader) -> bytes:
    return b"".join(iter(reader))


class TestPipe:
    def test_write_then_read(self) -> None:
        reader, writer = pipe()

        def produce() -> None:
            writer.write(b"hello ")
            writer.write(b"world")
            writer.close()

        thread = threading.Thread(target=produce)
        thread.start()
        assert _read_all(reader) == b"hello world"
        thread.join(timeout=5)

    def test_partial_reads(self) -> None:
        reader, writer = pipe()
        thread = threading.Thread(target=lambda: (writer.write(b"abcdef"), writer.close()))
        thread.start()
        assert reader.read(2) == b"ab"
        assert reader.read(10) == b"cdef"
        assert reader.read(10) == b""
        thread.join(timeout=5)

    def test_write_blocks_until_read(self) -> None:
        reader, writer = pipe()
        written = threading.Event()

        def produce() -> None:
            writer.write(b"data")
            written.set()

        thread = threading.Thread(target=produce, daemon=True)
        thread.start()
        assert not written.wait(timeout=0.2)
        assert reader.read() == b"data"
        assert written.wait(timeout=5)

    def test_close_with_error_reaches_reader(self) -> None:
        reader, writer = pipe()
        cause = OSError("disk gone")
        writer.close_with_error(cause)

        with pytest.raises(BodyStreamError) as exc_info:
            reader.read()
        assert exc_info.value.__cause__ is cause

    def test_first_close_wins(self) -> None:
        reader, writer = pipe()
        writer.close()
        writer.close_with_error(OSError("late"))
        assert reader.read() == b""

    def test_reader_close_fails_blocked_writer(self) -> None:
        reader, writer = pipe()
        failures: list[Exception] = []

        def produce() -> None:
            try:
                writer.write(b"never read")
            except PipeClosedError as e:
                failures.append(e)

        thread = threading.Thread(target=produce)
        thread.start()
        reader.close()
        thread.join(timeout=5)
        assert len(failures) == 1

    def test_write_after_close_fails(self) -> None:
        _, writer = pipe()
        writer.close()
        with pytest.raises(PipeClosedError):
            writer.write(b"x")


class TestMultipartWriter:
    def test_framing(self) -> None:
        out = io.BytesIO()
        form = MultipartWriter(out, boundary="BOUNDARY")
        form.write_field("name", "value")
        part = form.create_form_file("upload", "a.txt")
        part.write(b"file-bytes")
        form.close()

        assert out.getvalue() == (
            b"--BOUNDARY\r\n"
            b'Content-Disposition: form-data; name="name"\r\n'
            b"\r\n"
            b"value"
            b"\r\n--BOUNDARY\r\n"
            b'Content-Disposition: form-data; name="upload"; filename="a.txt"\r\n'
            b"Content-Type: application/octet-stream\r\n"
            b"\r\n"
            b"file-bytes"
            b"\r\n--BOUNDARY--\r\n"
        )

    def test_quotes_escaped(self) -> None:
        out = io.BytesIO()
        form = MultipartWriter(out, boundary="B")
        form.create_form_file("f", 'we"ird.txt')
        assert b'filename="we\\"ird.txt"' in out.getvalue()

    def test_content_type(self) -> None:
        form = MultipartWriter(io.BytesIO(), boundary="xyz")
        assert form.content_type == "multipart/form-data; boundary=xyz"

    def test_random_boundary(self) -> None:
        a = MultipartWriter(io.BytesIO())
        b = MultipartWriter(io.BytesIO())
        assert a.boundary != b.boundary
        assert len(a.boundary) == 32


class TestStreamFileBody:
    def test_fields_then_file(self) -> None:
        reader, content_type = stream_file_body(
            "upload", "data.bin", b"\x00payload", {"first": "1", "second": "2"}
        )
        body = _read_all(reader)
        boundary = content_type.split("boundary=", 1)[1]

        assert content_type.startswith("multipart/form-data; boundary=")
        assert body.startswith(f"--{boundary}\r\n".encode())
        assert body.endswith(f"\r\n--{boundary}--\r\n".encode())
        first = body.index(b'name="first"')
        second = body.index(b'name="second"')
        upload = body.index(b'name="upload"; filename="data.bin"')
        assert first < second < upload
        assert b"\r\n\r\n\x00payload\r\n" in body


class _FailingSource(io.RawIOBase):
    """Yields one chunk, then fails like a broken disk."""

    def __init__(self) -> None:
        self._calls = 0

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        self._calls += 1
        if self._calls == 1:
            return b"first chunk"
        raise OSError("read failed mid-copy")


class TestFileUpload:
    def test_upload_through_builder(self, errors: ErrorCollector) -> None:
        recorder = Recorder()
        with httpx.Client(transport=httpx.MockTransport(recorder)) as client:
            RequestBuilder(BASE_URL, client, errors).post("/upload").file(
                "upload", "a.txt", io.BytesIO(b"contents"), {"kind": "text"}
            ).execute().status(200)

        request = recorder.last
        assert not errors
        assert request.headers["Content-Type"].startswith("multipart/form-data; boundary=")
        assert b'name="kind"\r\n\r\ntext' in request.content
        assert b'filename="a.txt"' in request.content
        assert b"contents" in request.content

    def test_source_failure_surfaces_as_transport_error(self, errors: ErrorCollector) -> None:
        """The transport sees a read error, not a clean EOF."""
        recorder = Recorder()
        with httpx.Client(transport=httpx.MockTransport(recorder)) as client:
            response = RequestBuilder(BASE_URL, client, errors).post("/upload").file(
                "upload", "a.txt", _FailingSource()
            ).execute()

        assert response is None
        assert recorder.requests == []
        assert len(errors) == 1
        error = errors.errors[0]
        assert isinstance(error, TransportError)
        assert isinstance(error.__cause__, BodyStreamError)
        assert "read failed mid-copy" in str(error)
