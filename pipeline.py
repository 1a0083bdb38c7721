"""Request/response pipeline that the IMDSv2 middleware plugs into.

A request carries its own adapter, an option store, named request and
response steps, and a ``private`` map for annotations that never go on
the wire.
"""
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urljoin

from requests.structures import CaseInsensitiveDict

import config


class ConfigurationError(ValueError):
    """Unregistered or invalid request options."""


@dataclass
class Response:
    status: int = 200
    body: Any = ""
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    private: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def put_private(self, key: str, value: Any) -> "Response":
        self.private[key] = value
        return self

    def get_private(self, key: str, default: Any = None) -> Any:
        return self.private.get(key, default)


@dataclass
class Proceed:
    """Request step result: keep going with this request."""
    request: "Request"


@dataclass
class Halt:
    """Request step result: stop before sending and raise ``error``."""
    request: "Request"
    error: Exception


StepResult = Union[Proceed, Halt]
RequestStep = Callable[["Request"], StepResult]
ResponseStep = Callable[["Request", Response], Tuple["Request", Response]]


@dataclass
class Request:
    method: str = "GET"
    url: str = ""
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: Any = None
    adapter: Optional[Callable[["Request"], Response]] = None
    options: Dict[str, Any] = field(default_factory=dict)
    registered_options: set = field(default_factory=set)
    request_steps: List[Tuple[str, RequestStep]] = field(default_factory=list)
    response_steps: List[Tuple[str, ResponseStep]] = field(default_factory=list)
    private: Dict[str, Any] = field(default_factory=dict)

    def register_options(self, names: Iterable[str]) -> "Request":
        self.registered_options.update(names)
        return self

    def merge_options(self, options: Dict[str, Any]) -> "Request":
        unknown = sorted(set(options) - self.registered_options)
        if unknown:
            raise ConfigurationError(f"unknown option(s): {', '.join(unknown)}")
        self.options.update(options)
        return self

    def get_option(self, name: str, default: Any = None) -> Any:
        return self.options.get(name, default)

    def put_header(self, name: str, value: str) -> "Request":
        self.headers[name] = value
        return self

    def put_private(self, key: str, value: Any) -> "Request":
        self.private[key] = value
        return self

    def get_private(self, key: str, default: Any = None) -> Any:
        return self.private.get(key, default)

    def prepend_request_steps(self, **steps: RequestStep) -> "Request":
        self.request_steps = _put_steps(self.request_steps, steps, prepend=True)
        return self

    def append_response_steps(self, **steps: ResponseStep) -> "Request":
        self.response_steps = _put_steps(self.response_steps, steps, prepend=False)
        return self


def _put_steps(current, steps, prepend):
    # A step name appears at most once; re-registering replaces it in place.
    current = list(current)
    added = []
    for name, fn in steps.items():
        for i, (existing, _) in enumerate(current):
            if existing == name:
                current[i] = (name, fn)
                break
        else:
            added.append((name, fn))
    return added + current if prepend else current + added


def new(url: str, method: str = "GET", headers=None, body=None, adapter=None) -> Request:
    """Build a request. Relative URLs resolve against ``config.IMDS_ENDPOINT``."""
    if adapter is None:
        from adapters import RequestsAdapter
        adapter = RequestsAdapter()
    if "://" not in url:
        url = urljoin(config.IMDS_ENDPOINT + "/", url.lstrip("/"))
    return Request(
        method=method.upper(),
        url=url,
        headers=CaseInsensitiveDict(headers or {}),
        body=body,
        adapter=adapter,
    )


def run(request: Request) -> Response:
    """Run request steps, send through the adapter, then run response steps.

    Steps work on a copy of headers and private data, so the caller's
    request can be run again unchanged. A ``Halt`` from any request step
    raises its error and nothing is sent. Errors raised by the adapter
    propagate unchanged.
    """
    if request.adapter is None:
        raise ConfigurationError("request has no adapter")

    request = replace(request, headers=CaseInsensitiveDict(request.headers), private=dict(request.private))

    for name, step in request.request_steps:
        result = step(request)
        if isinstance(result, Halt):
            raise result.error
        if not isinstance(result, Proceed):
            raise TypeError(f"request step {name!r} returned {type(result).__name__}")
        request = result.request

    response = request.adapter(request)

    for _, step in request.response_steps:
        request, response = step(request, response)
    return response


def get(request: Request) -> Response:
    request.method = "GET"
    return run(request)


def put(request: Request) -> Response:
    request.method = "PUT"
    return run(request)
