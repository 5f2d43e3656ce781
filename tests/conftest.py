from typing import Callable, List, Optional

import azure.functions as func
import httpx
import pytest

UPSTREAM_HOST = "music-dl.sayqz.com"


class FakeUpstream:
    """Records outbound requests and answers them with ``handler``."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client_factory(self, **kwargs):
        transport = httpx.MockTransport(self)

        def _client(follow_redirects: bool = True) -> httpx.Client:
            return httpx.Client(transport=transport, follow_redirects=follow_redirects, **kwargs)

        return _client


@pytest.fixture
def upstream(monkeypatch):
    from shared import music_proxy

    fake = FakeUpstream()
    monkeypatch.setattr(music_proxy, "_client", fake.client_factory())
    for var in ("MUSIC_UPSTREAM_BASE", "USER_AGENT", "FORWARD_USER_AGENT", "DEBUG_ERRORS", "DEBUG_REQUEST_LOG"):
        monkeypatch.delenv(var, raising=False)
    return fake


@pytest.fixture
def api(monkeypatch):
    from shared import music_client

    fake = FakeUpstream()
    monkeypatch.setattr(music_client, "_client", fake.client_factory())
    monkeypatch.setenv("MUSIC_API_ORIGIN", "http://testserver")
    monkeypatch.delenv("MUSIC_API_DEV", raising=False)
    monkeypatch.delenv("MUSIC_API_STANDALONE", raising=False)
    return fake


def make_request(method: str = "GET", query: str = "", headers=None) -> func.HttpRequest:
    url = "http://localhost:7071/api/music" + (f"?{query}" if query else "")
    return func.HttpRequest(method=method, url=url, headers=headers or {}, params={}, body=b"")


@pytest.fixture
def music_request():
    return make_request
