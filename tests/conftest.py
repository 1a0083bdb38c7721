"""
Pytest fixtures for the IMDSv2 middleware. A fake adapter stands in for the
metadata service and records every request it is asked to send.
"""

from __future__ import annotations

from urllib.parse import urlsplit

import pytest

from adapters import TransportError
from pipeline import Response


class FakeIMDS:
    """Adapter double routing on URL path.

    ``token`` is returned from the token endpoint; set ``token_error`` to make
    that call raise, or ``token_status`` to answer with another status.
    """

    def __init__(self, token="mock-token", token_error=None, token_status=200, body="mock-data"):
        self.token = token
        self.token_error = token_error
        self.token_status = token_status
        self.body = body
        self.calls = []

    def __call__(self, request):
        url = urlsplit(request.url)
        self.calls.append({
            "method": request.method,
            "scheme": url.scheme,
            "host": url.hostname,
            "port": url.port,
            "path": url.path,
            "headers": dict(request.headers),
        })
        if url.path == "/latest/api/token":
            if self.token_error is not None:
                raise self.token_error
            return Response(status=self.token_status, body=self.token)
        return Response(status=200, body=self.body)

    def token_calls(self):
        return [c for c in self.calls if c["path"] == "/latest/api/token"]

    def main_calls(self):
        return [c for c in self.calls if c["path"] != "/latest/api/token"]


class ListSink:
    def __init__(self):
        self.messages = []

    def warning(self, msg):
        self.messages.append(msg)


@pytest.fixture
def imds():
    return FakeIMDS()


@pytest.fixture
def failing_imds():
    return FakeIMDS(token_error=TransportError("mock-error"))


@pytest.fixture
def sink():
    return ListSink()
