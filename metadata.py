"""Authenticate pipeline requests against the EC2 Instance Metadata Service (IMDSv2).

Before the main request is sent, a token is fetched with a PUT to
``/latest/api/token`` on the same host and attached as
``x-aws-ec2-metadata-token``. The token used is copied onto the response so
it can be reused for later requests::

    req = attach(pipeline.new("http://169.254.169.254/latest/meta-data/instance-id"))
    resp = pipeline.get(req)
    token = get_metadata_token(resp)

    req = attach(pipeline.new("http://169.254.169.254/latest/meta-data/hostname"), metadata_token=token)
    pipeline.get(req).body
"""
import logging
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, ValidationError

from adapters import TransportError
from pipeline import ConfigurationError, Halt, Proceed, Request, Response, StepResult

log = logging.getLogger("imdsv2")

TOKEN_PATH = "/latest/api/token"
TOKEN_HEADER = "x-aws-ec2-metadata-token"
TOKEN_TTL_HEADER = "x-aws-ec2-metadata-token-ttl-seconds"
DEFAULT_TOKEN_TTL_SECONDS = 21600  # max allowed by IMDS (6 hours)

PRIVATE_TOKEN_KEY = "imdsv2_metadata_token"
PRIVATE_DIAGNOSTICS_KEY = "imdsv2_diagnostics"
OPTION_NAMES = ("metadata_token", "metadata_token_ttl_seconds", "fallback_to_imdsv1")


class MetadataTokenError(RuntimeError):
    """A metadata token could not be fetched and fallback was not enabled."""

    def __init__(self, reason: str):
        super().__init__(f"Could not fetch metadata token: {reason}")
        self.reason = reason


class DiagnosticsSink(Protocol):
    def warning(self, msg: str) -> Any:
        ...


class IMDSv2Options(BaseModel):
    """
    Options accepted by ``attach``.

    metadata_token: token to reuse instead of fetching one. Empty means fetch.
    metadata_token_ttl_seconds: TTL requested for a fetched token. IMDS decides what is valid.
    fallback_to_imdsv1: on fetch failure send the request without a token instead of erroring.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    metadata_token: Optional[str] = None
    metadata_token_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS
    fallback_to_imdsv1: bool = False

    @classmethod
    def from_request(cls, request: Request) -> "IMDSv2Options":
        return cls(**{name: request.options[name] for name in OPTION_NAMES if name in request.options})


def attach(request: Request, options: Optional[Dict[str, Any]] = None, *,
           diagnostics: Optional[DiagnosticsSink] = None, **kwargs) -> Request:
    """Attach the IMDSv2 token steps to ``request``.

    Options can be passed as a mapping, as keyword arguments, or both. Unknown
    or invalid options raise ``ConfigurationError``. Nothing is sent until the
    request is run. Attaching again replaces the steps and merges the new
    options over the old ones.
    """
    options = {**(options or {}), **kwargs}
    try:
        validated = IMDSv2Options(**options)
    except ValidationError as e:
        raise ConfigurationError(f"invalid IMDSv2 options: {e}") from e

    if diagnostics is not None:
        request.put_private(PRIVATE_DIAGNOSTICS_KEY, diagnostics)
    return (
        request
        .register_options(OPTION_NAMES)
        .merge_options(validated.model_dump(exclude_unset=True))
        .prepend_request_steps(get_metadata_token=auth_imdsv2)
        .append_response_steps(expose_metadata_token=expose_metadata_token)
    )


def token_url(url: str) -> str:
    """Token endpoint on the same scheme, host and port as ``url``."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, TOKEN_PATH, "", ""))


def auth_imdsv2(request: Request, diagnostics: Optional[DiagnosticsSink] = None) -> StepResult:
    opts = IMDSv2Options.from_request(request)

    if opts.metadata_token:
        # Given a token, so skip the PUT. If it's invalid the request itself will fail.
        log.debug("Reusing supplied metadata token for %s", request.url)
        return Proceed(put_token(request, opts.metadata_token))

    try:
        token = fetch_token(request, opts.metadata_token_ttl_seconds)
    except MetadataTokenError as e:
        if opts.fallback_to_imdsv1:
            # Continue as-is with no token. Fails if the instance requires IMDSv2.
            sink = diagnostics or request.get_private(PRIVATE_DIAGNOSTICS_KEY) or log
            sink.warning(f"{e}. Falling back to IMDSv1")
            return Proceed(request)
        return Halt(request, e)

    return Proceed(put_token(request, token))


def fetch_token(request: Request, ttl_seconds: int) -> str:
    """PUT to the token endpoint through the request's own adapter.

    Raises MetadataTokenError on transport failure, non-2xx status or empty body.
    """
    auth_req = Request(
        method="PUT",
        url=token_url(request.url),
        adapter=request.adapter,
    ).put_header(TOKEN_TTL_HEADER, str(ttl_seconds))
    log.debug("Fetching metadata token from %s", auth_req.url)

    try:
        resp = request.adapter(auth_req)
    except TransportError as e:
        raise MetadataTokenError(repr(e)) from e

    if not resp.ok:
        raise MetadataTokenError(f"token endpoint returned HTTP {resp.status}")

    token = resp.body.decode() if isinstance(resp.body, bytes) else str(resp.body or "")
    if not token:
        raise MetadataTokenError("token endpoint returned an empty token")
    return token


def put_token(request: Request, token: str) -> Request:
    # Header for the wire, private copy so it can be exposed on the response.
    return request.put_header(TOKEN_HEADER, token).put_private(PRIVATE_TOKEN_KEY, token)


def expose_metadata_token(request: Request, response: Response) -> Tuple[Request, Response]:
    token = request.get_private(PRIVATE_TOKEN_KEY)
    if token:
        response.put_private(PRIVATE_TOKEN_KEY, token)
    return request, response


def get_metadata_token(response: Response) -> Optional[str]:
    """
    Token used to make ``response``, for reuse in later requests.

    Returns None if no token was used, e.g. after falling back to IMDSv1.
    """
    return response.get_private(PRIVATE_TOKEN_KEY)
