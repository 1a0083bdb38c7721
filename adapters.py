import logging
from typing import Optional, Protocol

import requests
from requests.structures import CaseInsensitiveDict

import config
from pipeline import Request, Response

log = logging.getLogger("imdsv2")


class TransportError(Exception):
    """The request could not be sent or no response came back."""


class Adapter(Protocol):
    def __call__(self, request: Request) -> Response:
        ...


class RequestsAdapter:
    """Sends pipeline requests over a ``requests.Session``.

    Any HTTP status counts as a response. Connection errors, timeouts and
    other ``requests`` failures are raised as ``TransportError``.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = config.IMDS_TIMEOUT_SECONDS):
        self.session = session or requests.Session()
        self.timeout = timeout

    def __call__(self, request: Request) -> Response:
        try:
            resp = self.session.request(
                request.method,
                request.url,
                headers=dict(request.headers),
                data=request.body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.debug("%s %s failed: %s", request.method, request.url, e)
            raise TransportError(str(e)) from e

        return Response(
            status=resp.status_code,
            body=resp.text,
            headers=CaseInsensitiveDict(resp.headers),
        )
