"""HttpTester - Shared client and defaults for a set of request builders.

Usage:
    errors = ErrorCollector()
    with HttpTester(TesterConfig(base_url=server_url), errors) as api:
        api.get("/health").execute().status(200)
        created = api.post("/widgets").json({"name": "w"}).execute()
    errors.raise_if_errors()
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx

from http_tester.config_loader import create_client, load_config
from http_tester.errors import ErrorSink
from http_tester.models import TesterConfig
from http_tester.request import RequestBuilder


class HttpTester:
    """Creates RequestBuilders that share one httpx.Client and error sink.

    A client passed in is borrowed and left open by ``close()``; otherwise
    one is created from the config and owned.
    """

    def __init__(
        self,
        config: TesterConfig,
        on_error: ErrorSink,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config
        self.on_error = on_error
        self._owns_client = client is None
        self.client = client if client is not None else create_client(config)

    @classmethod
    def from_file(cls, config_path: Path, on_error: ErrorSink, **kwargs: Any) -> HttpTester:
        """Load a YAML config (see config_loader) and build a tester from it."""
        return cls(load_config(config_path), on_error, **kwargs)

    def __enter__(self) -> HttpTester:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def request(self) -> RequestBuilder:
        """A fresh builder with the configured base URL and default headers."""
        builder = RequestBuilder(self.config.base_url, self.client, self.on_error)
        for key, value in self.config.headers.items():
            builder.header(key, value)
        return builder

    def get(self, path: str) -> RequestBuilder:
        return self.request().get(path)

    def post(self, path: str) -> RequestBuilder:
        return self.request().post(path)

    def put(self, path: str) -> RequestBuilder:
        return self.request().put(path)

    def patch(self, path: str) -> RequestBuilder:
        return self.request().patch(path)

    def delete(self, path: str) -> RequestBuilder:
        return self.request().delete(path)
