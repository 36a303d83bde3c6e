"""Response - Buffered HTTP response with chainable assertions.

The body is read once, in full, when the Response is created. Assertions
evaluate against that buffer and report failures to the error sink; they
never raise and always return the Response, so one chain can surface
every violation:

    response.status(200).header_eq("Content-Type", "application/json").contains("id")
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any

import httpx

from http_tester.codec import decode_json, decode_xml
from http_tester.context import Context
from http_tester.errors import (
    AssertionFailure,
    BodyReadError,
    DecodeError,
    ErrorSink,
    HttpTesterError,
)

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 100


class Response:
    """One executed request's response, fully buffered.

    Attributes:
        status_code: HTTP status code.
        headers: Response headers (case-insensitive, multi-valued).
        body: The raw body bytes.
        url: The URL the response came from, after redirects.
        request: The request that was sent; used in error messages.
        raw: The underlying httpx.Response (already read and closed).
    """

    def __init__(
        self,
        raw: httpx.Response,
        request: httpx.Request,
        on_error: ErrorSink,
        body: bytes,
    ) -> None:
        self.raw = raw
        self.request = request
        self.status_code = raw.status_code
        self.headers = raw.headers
        self.body = body
        self.url = raw.url
        self._encoding = raw.encoding or "utf-8"
        self._on_error = on_error

    def __repr__(self) -> str:
        return f"<Response [{self.status_code}] {self.request.method} {self.url}>"

    def _err(
        self,
        message: str,
        kind: type[HttpTesterError] = AssertionFailure,
        cause: Exception | None = None,
    ) -> None:
        error = kind(f"{self.request.method} {self.request.url}: {message}")
        error.__cause__ = cause
        self._on_error(error)

    def body_str(self) -> str:
        return self.body.decode(self._encoding, errors="replace")

    def body_excerpt(self) -> str:
        """First 100 characters of the body, with "..." when there is more."""
        text = self.body_str()
        if len(text) > EXCERPT_LENGTH:
            return text[:EXCERPT_LENGTH] + "..."
        return text

    def _header(self, key: str) -> str:
        values = self.headers.get_list(key)
        return values[0] if values else ""

    # --- assertions --------------------------------------------------------

    def status(self, *statuses: int) -> Response:
        """Check the status is one of *statuses*; no statuses accepts any."""
        if statuses and self.status_code not in statuses:
            self._err(
                f"expected status {list(statuses)} got {self.status_code}: {self.body_excerpt()}"
            )
        return self

    def contains(self, substr: str) -> Response:
        if substr not in self.body_str():
            self._err(
                f"body does not contain {substr}: {self.body_excerpt()}"
            )
        return self

    def eq(self, expected: str) -> Response:
        if self.body_str() != expected:
            self._err(
                f"body does not equal {expected}: {self.body_excerpt()}"
            )
        return self

    def header_eq(self, key: str, value: str) -> Response:
        """Compare the first value of header *key* with *value*."""
        actual = self._header(key)
        if actual != value:
            self._err(
                f"header {key}: expected {actual} to equal {value}"
            )
        return self

    # --- decoding ------------------------------------------------------------

    def json(self, target: Any = None) -> Any:
        """Decode the body as JSON, into *target* when given.

        A Content-Type other than application/json is reported but decoding
        is still attempted. Returns None (after reporting) if decoding fails.
        """
        content_type = self._header("Content-Type")
        if not content_type.startswith("application/json"):
            self._err(
                f"Content-Type is not application/json, got {content_type}: {self.body_excerpt()}"
            )
        try:
            return decode_json(self.body, target)
        except ValueError as e:
            self._err(str(e), DecodeError, e)
            return None

    def xml(self, target: Any = None, force_list: set[str] | None = None) -> Any:
        """Decode the body as XML; same contract as ``json()``.

        Without a target the result is the ``{root_tag: ...}`` dict from
        ``codec.xml_to_dict``.
        """
        content_type = self._header("Content-Type")
        if not (
            content_type.startswith("application/xml")
            or content_type.startswith("text/xml")
        ):
            self._err(
                f"Content-Type is not application/xml or text/xml, got {content_type}: "
                f"{self.body_excerpt()}"
            )
        try:
            return decode_xml(self.body, target, force_list)
        except (ET.ParseError, ValueError) as e:
            self._err(str(e), DecodeError, e)
            return None


def new_response(
    raw: httpx.Response,
    request: httpx.Request,
    on_error: ErrorSink,
    ctx: Context | None = None,
) -> Response | None:
    """Read the whole body of a streamed httpx response and wrap it.

    The httpx response is closed whether or not the read succeeds. Returns
    None (after reporting a BodyReadError) if the body cannot be read.
    """
    ctx = ctx or Context.background()
    chunks: list[bytes] = []
    try:
        for chunk in raw.iter_bytes():
            chunks.append(chunk)
            ctx.check()
    except (httpx.HTTPError, HttpTesterError, OSError) as e:
        wrapped = BodyReadError(f"{request.method} {request.url}: {e}")
        wrapped.__cause__ = e
        on_error(wrapped)
        return None
    finally:
        raw.close()

    body = b"".join(chunks)
    logger.debug(
        "%s %s -> %d (%d bytes)", request.method, request.url, raw.status_code, len(body)
    )
    return Response(raw, request, on_error, body)
