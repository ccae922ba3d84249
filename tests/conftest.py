import pytest
import pytest_asyncio
import os
import sys
from typing import Callable, Dict, Union

import httpx

# Add src to python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from siteprobe.config import HttpConfig, PoolConfig, CrawlerConfig
from siteprobe.repository import SQLiteURLRepository

Route = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], Exception]


def html_response(body: str, status: int = 200, **kwargs) -> httpx.Response:
    return httpx.Response(status, text=body, headers={"content-type": "text/html; charset=utf-8"}, **kwargs)


class FakeWeb:
    """Routes (method, url) pairs to canned responses for httpx.MockTransport.

    A route keyed by URL alone answers every method. A route value may be a
    Response, a callable taking the request, or an exception to raise.
    Requests without a route get a 404.
    """

    def __init__(self, routes: Dict = None):
        self.routes = dict(routes or {})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, str(request.url)))
        url = str(request.url)
        route = self.routes.get((request.method, url), self.routes.get(url))
        if route is None:
            return httpx.Response(404)
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(request)
        return route

    def count(self, method: str, url: str) -> int:
        return sum(1 for m, u in self.requests if m == method and u == url)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def http_config():
    return HttpConfig(
        user_agent="TestBot/1.0",
        timeout=5,
        max_redirects=3,
        max_response_size=1024 * 1024,
        enable_http2=False,
        head_timeout=1,
        get_timeout=1,
        probe_concurrency=4,
    )


@pytest.fixture
def pool_config():
    return PoolConfig(workers=2, queue_size=10, job_timeout=5, retry_delay=0.01)


@pytest.fixture
def crawler_config():
    return CrawlerConfig(retry_attempts=0, analysis_timeout=4, db_timeout=5, db_list_timeout=5)


@pytest.fixture
def fake_web():
    return FakeWeb()


@pytest_asyncio.fixture
async def repository(tmp_path):
    repo = SQLiteURLRepository(str(tmp_path / "siteprobe.db"))
    await repo.init()
    return repo
