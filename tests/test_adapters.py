"""
Tests for RequestsAdapter with a mocked requests.Session.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

import config
import metadata
import pipeline
from adapters import RequestsAdapter, TransportError
from pipeline import Request


def make_session(status=200, text="ok", headers=None, side_effect=None):
    session = MagicMock(spec=requests.Session)
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.headers = headers or {"Content-Type": "text/plain"}
    session.request.return_value = resp
    session.request.side_effect = side_effect
    return session


def test_sends_request_with_timeout():
    session = make_session()
    adapter = RequestsAdapter(session=session, timeout=1.5)
    request = Request(method="PUT", url="http://localhost:4000/latest/api/token").put_header("A", "1")

    resp = adapter(request)

    session.request.assert_called_once_with(
        "PUT", "http://localhost:4000/latest/api/token", headers={"A": "1"}, data=None, timeout=1.5
    )
    assert resp.status == 200
    assert resp.body == "ok"
    assert resp.headers["content-type"] == "text/plain"


def test_error_status_is_a_response():
    adapter = RequestsAdapter(session=make_session(status=401, text="Unauthorized"))

    resp = adapter(Request(url="http://localhost/"))

    assert resp.status == 401
    assert not resp.ok


@pytest.mark.parametrize("exc", [
    requests.ConnectionError("refused"),
    requests.Timeout("timed out"),
])
def test_requests_errors_become_transport_errors(exc):
    adapter = RequestsAdapter(session=make_session(side_effect=exc))

    with pytest.raises(TransportError) as exc_info:
        adapter(Request(url="http://localhost/"))
    assert exc_info.value.__cause__ is exc


def test_default_timeout_from_config():
    assert RequestsAdapter(session=make_session()).timeout == config.IMDS_TIMEOUT_SECONDS


def test_timeout_during_token_fetch_falls_back(sink):
    session = make_session()

    def respond(method, url, **kwargs):
        if url.endswith("/latest/api/token"):
            raise requests.Timeout("timed out")
        return session.request.return_value

    session.request.side_effect = respond
    request = metadata.attach(
        pipeline.new("http://169.254.169.254/latest/meta-data/", adapter=RequestsAdapter(session=session)),
        fallback_to_imdsv1=True,
        diagnostics=sink,
    )

    resp = pipeline.get(request)

    assert resp.body == "ok"
    assert "Falling back to IMDSv1" in sink.messages[0]
    main_headers = session.request.call_args.kwargs["headers"]
    assert "x-aws-ec2-metadata-token" not in main_headers
