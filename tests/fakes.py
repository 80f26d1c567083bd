from __future__ import annotations

import json
from typing import Any, Iterator

import requests


class FakeResponse:
    def __init__(self, url: str, body: bytes | str = b"", status_code: int = 200, headers: dict | None = None):
        self.url = url
        self.content = body.encode("utf-8") if isinstance(body, str) else body
        self.status_code = status_code
        self.headers = dict(headers or {})
        self.headers.setdefault("Content-Length", str(len(self.content)))

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error for url: {self.url}", response=self)

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc: object) -> None:
        return None


class FakeSession:
    """Serves canned responses by URL and records every request."""

    def __init__(self, routes: dict[str, Any] | None = None):
        self.routes: dict[str, Any] = dict(routes or {})
        self.calls: list[str] = []

    def add_json(self, url: str, payload: Any) -> None:
        self.routes[url] = json.dumps(payload)

    def get(self, url: str, timeout: Any = None, **kwargs: Any) -> FakeResponse:
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(url, b"not found", status_code=404)
        if isinstance(route, BaseException):
            raise route
        if isinstance(route, FakeResponse):
            return route
        return FakeResponse(url, route)
