"""RequestBuilder - Declarative HTTP requests for tests.

Usage:
    errors = ErrorCollector()
    (
        RequestBuilder("http://localhost:8000", client, errors)
        .get("/widgets")
        .query("tag", "a", "tag", "b")
        .bearer(token)
        .execute()
        .status(200)
        .contains("widget")
    )

Configuration calls mutate the builder and return it. ``execute()`` builds
an ``httpx.Request``, sends it through the shared ``httpx.Client`` and
wraps the result in a ``Response``. Every failure goes to the error sink;
when no usable response exists ``execute()`` returns None.
"""

from __future__ import annotations

import base64
import logging
import re
import threading
import weakref
from typing import Any, BinaryIO, Callable, Iterator, Mapping

import httpx

from http_tester.codec import encode_json, encode_xml
from http_tester.context import Context
from http_tester.errors import (
    EncodeError,
    ErrorSink,
    HttpTesterError,
    RequestBuildError,
    TransportError,
)
from http_tester.multipart import (
    COPY_CHUNK_SIZE,
    BodyStreamError,
    PipeReader,
    stream_file_body,
)
from http_tester.response import Response, new_response

logger = logging.getLogger(__name__)

BeforeHook = Callable[[httpx.Request], httpx.Request]
AfterHook = Callable[[httpx.Request, httpx.Response | None, Exception | None], None]

# RFC 7230 token
_METHOD_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

# follow_redirects is client-wide state; one lock per shared client
_redirect_locks: weakref.WeakKeyDictionary[httpx.Client, threading.RLock] = (
    weakref.WeakKeyDictionary()
)
_redirect_locks_guard = threading.Lock()


def _redirect_lock(client: httpx.Client) -> threading.RLock:
    with _redirect_locks_guard:
        lock = _redirect_locks.get(client)
        if lock is None:
            lock = threading.RLock()
            _redirect_locks[client] = lock
        return lock


def _pairs(args: tuple[str, ...]) -> Iterator[tuple[str, str]]:
    """Yield (key, value) from alternating arguments; a trailing odd key is ignored."""
    for i in range(len(args) // 2):
        yield args[i * 2], args[i * 2 + 1]


def _stream_body(stream: BinaryIO, ctx: Context) -> Iterator[bytes]:
    """Read a request body stream in chunks, honoring the context.

    The stream is closed when the transport is done with it, including
    when the transport stops reading early.
    """
    try:
        while True:
            ctx.check()
            try:
                chunk = stream.read(COPY_CHUNK_SIZE)
            except BodyStreamError:
                raise
            except Exception as e:
                raise BodyStreamError(f"reading request body: {e}") from e
            if not chunk:
                return
            yield chunk
    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            close()


class RequestBuilder:
    """Accumulates one request and executes it against an httpx.Client.

    The builder can be executed repeatedly; each ``execute()`` resolves the
    URL and query again and reuses headers, body and hooks. Stream bodies
    (``body()`` with a file object, ``file()``) can only be sent once.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.Client,
        on_error: ErrorSink,
    ) -> None:
        self._base_url = base_url
        self._path = ""
        self._method = ""
        self._query: dict[str, list[str]] = {}
        self._headers = httpx.Headers()
        self._no_follow = False
        self._body: bytes | BinaryIO | None = None
        self._client = client
        self._before: BeforeHook | None = None
        self._after: AfterHook | None = None
        self._context: Context | None = None
        self._on_error = on_error

    # --- method and target ---------------------------------------------

    def method(self, method: str, path: str) -> RequestBuilder:
        self._method = method
        self._path = path
        return self

    def get(self, path: str) -> RequestBuilder:
        return self.method("GET", path)

    def post(self, path: str) -> RequestBuilder:
        return self.method("POST", path)

    def put(self, path: str) -> RequestBuilder:
        return self.method("PUT", path)

    def patch(self, path: str) -> RequestBuilder:
        return self.method("PATCH", path)

    def delete(self, path: str) -> RequestBuilder:
        return self.method("DELETE", path)

    def no_follow(self) -> RequestBuilder:
        """Return redirect responses as-is for this builder's requests."""
        self._no_follow = True
        return self

    # --- query and headers ---------------------------------------------

    def query(self, *args: str) -> RequestBuilder:
        """Set query parameters from alternating key/value arguments.

        The first occurrence of a key in a call replaces any earlier value;
        repeats of that key within the same call are appended. A later
        call replaces again:

            query("a", "1", "a", "2")  ->  a=[1, 2]
            query("a", "3")            ->  a=[3]
        """
        seen: set[str] = set()
        for key, value in _pairs(args):
            if key in seen:
                self._query[key].append(value)
            else:
                self._query[key] = [value]
            seen.add(key)
        return self

    def header(self, *args: str) -> RequestBuilder:
        """Set headers from alternating key/value arguments (last value wins)."""
        for key, value in _pairs(args):
            self._headers[key] = value
        return self

    def auth(self, value: str) -> RequestBuilder:
        return self.header("Authorization", value)

    def bearer(self, token: str) -> RequestBuilder:
        return self.auth("Bearer " + token)

    def basic(self, username: str, password: str) -> RequestBuilder:
        credentials = base64.b64encode(f"{username}:{password}".encode("utf-8"))
        return self.auth("Basic " + credentials.decode("ascii"))

    # --- body ------------------------------------------------------------

    def body(self, content: bytes | str | BinaryIO) -> RequestBuilder:
        """Raw body: bytes, text (sent as UTF-8) or a binary file-like object."""
        if isinstance(content, str):
            content = content.encode("utf-8")
        self._body = content
        return self

    def form(self, *args: str) -> RequestBuilder:
        """URL-encoded form body from alternating key/value arguments."""
        fields = dict(_pairs(args))
        encoded = str(httpx.QueryParams(sorted(fields.items())))
        self.header("Content-Type", "application/x-www-form-urlencoded")
        return self.body(encoded.encode("ascii"))

    def json(self, value: Any) -> RequestBuilder:
        """JSON body. On a serialization error the body is left unset."""
        try:
            encoded = encode_json(value)
        except ValueError as e:
            self._on_error(EncodeError(f"JSON body: {e}"))
            return self
        self.header("Content-Type", "application/json")
        return self.body(encoded)

    def xml(self, value: Any, root: str | None = None) -> RequestBuilder:
        """XML body from ``{root_tag: content}`` or a pydantic model."""
        try:
            encoded = encode_xml(value, root)
        except ValueError as e:
            self._on_error(EncodeError(f"XML body: {e}"))
            return self
        self.header("Content-Type", "application/xml")
        return self.body(encoded)

    def file(
        self,
        field_name: str,
        file_name: str,
        reader: BinaryIO | bytes,
        extra: Mapping[str, str] | None = None,
    ) -> RequestBuilder:
        """Multipart file upload, streamed by a background producer thread."""
        stream, content_type = stream_file_body(field_name, file_name, reader, extra)
        self.header("Content-Type", content_type)
        return self.body(stream)

    # --- hooks and context -----------------------------------------------

    def on_error(self, sink: ErrorSink) -> RequestBuilder:
        self._on_error = sink
        return self

    def before_request(self, hook: Callable[[httpx.Request], None]) -> RequestBuilder:
        """Run *hook* on the finalized request just before it is sent."""

        def substitute(request: httpx.Request) -> httpx.Request:
            hook(request)
            return request

        return self.before_with_request(substitute)

    def before_with_request(self, hook: BeforeHook) -> RequestBuilder:
        """Run *hook* before sending; the request it returns is the one sent."""
        self._before = hook
        return self

    def after_request(self, hook: AfterHook) -> RequestBuilder:
        """Run *hook* with (request, response or None, error or None) after sending."""
        self._after = hook
        return self

    def context(self, ctx: Context) -> RequestBuilder:
        self._context = ctx
        return self

    # --- execution -------------------------------------------------------

    def _resolve_url(self) -> httpx.URL:
        url = httpx.URL(self._base_url + self._path)
        if self._query:
            params = list(url.params.multi_items())
            for key, values in self._query.items():
                params.extend((key, value) for value in values)
            params.sort(key=lambda item: item[0])
            url = url.copy_with(params=httpx.QueryParams(params))
        return url

    def _build_request(self, url: httpx.URL, ctx: Context) -> httpx.Request:
        if not self._method:
            raise RequestBuildError("request method is not set")
        if not _METHOD_RE.match(self._method):
            raise RequestBuildError(f"invalid method {self._method!r}")

        content: Any = self._body
        if content is not None and not isinstance(content, (bytes, bytearray)):
            content = _stream_body(content, ctx)

        # A context deadline replaces the client timeout for this request.
        timeout = self._client.timeout
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = httpx.Timeout(remaining)

        request = httpx.Request(
            self._method,
            url,
            content=content,
            extensions={"timeout": timeout.as_dict()},
        )
        # An explicit Host header replaces the one httpx derives from the URL.
        for key, value in self._headers.multi_items():
            request.headers[key] = value
        return request

    def _release_producer(self) -> None:
        # Nothing will read a multipart pipe for a request that was never sent.
        if isinstance(self._body, PipeReader):
            self._body.close()

    def _fail(self, method: str, url: Any, error: Exception, kind: type[HttpTesterError]) -> None:
        wrapped = kind(f"{method} {url}: {error}")
        wrapped.__cause__ = error
        self._on_error(wrapped)

    def execute(self) -> Response | None:
        """Send the request and buffer the response.

        Returns None (after reporting to the error sink) when the URL or
        request cannot be built, dispatch fails, or the body cannot be read.
        """
        try:
            url = self._resolve_url()
        except httpx.InvalidURL as e:
            self._fail(self._method, self._base_url + self._path, e, RequestBuildError)
            self._release_producer()
            return None

        ctx = self._context or Context.background()

        try:
            request = self._build_request(url, ctx)
        except RequestBuildError as e:
            self._on_error(RequestBuildError(f"{self._method} {url}: {e}"))
            self._release_producer()
            return None
        except (httpx.HTTPError, TypeError, ValueError) as e:
            self._fail(self._method, url, e, RequestBuildError)
            self._release_producer()
            return None

        response: httpx.Response | None = None
        error: Exception | None = None

        with _redirect_lock(self._client):
            previous = self._client.follow_redirects
            if self._no_follow:
                logger.debug("redirects disabled for %s %s", request.method, request.url)
                self._client.follow_redirects = False
            try:
                if self._before is not None:
                    request = self._before(request)
                try:
                    ctx.check()
                    logger.debug("%s %s", request.method, request.url)
                    response = self._client.send(request, stream=True)
                except (httpx.HTTPError, HttpTesterError, OSError) as e:
                    error = e
                if self._after is not None:
                    self._after(request, response, error)
            finally:
                if self._client.follow_redirects != previous:
                    logger.debug("redirect policy restored to follow_redirects=%s", previous)
                self._client.follow_redirects = previous

        if error is not None:
            self._fail(request.method, request.url, error, TransportError)
            self._release_producer()
            return None

        return new_response(response, request, self._on_error, ctx)

    do = execute
