"""Shared fixtures: an in-memory stand-in for the HTTP fetcher."""

from __future__ import annotations

from collections import Counter
from typing import Dict, Tuple, Union

import pytest

from wget_mirror import FetchError, FetchResult

Route = Union[Tuple[int, str, bytes], Exception]


class FakeFetcher:
    """Serves canned responses and counts every fetch."""

    def __init__(self, routes: Dict[str, Route]):
        self.routes = routes
        self.calls: list = []

    def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FetchResult(url=url, status=404, content_type="text/html", body=b"")
        if isinstance(route, Exception):
            raise route
        status, content_type, body = route
        return FetchResult(url=url, status=status, content_type=content_type, body=body)

    def count(self) -> Counter:
        return Counter(self.calls)


def page(body: str) -> Tuple[int, str, bytes]:
    return 200, "text/html; charset=utf-8", body.encode("utf-8")


def asset(body: bytes, content_type: str = "application/octet-stream") -> Tuple[int, str, bytes]:
    return 200, content_type, body


@pytest.fixture
def make_fetcher():
    def _make(routes: Dict[str, Route]) -> FakeFetcher:
        return FakeFetcher(routes)

    return _make


@pytest.fixture
def network_down():
    return FetchError("connection refused")
