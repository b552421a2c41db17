"""
Errors of the API client: transport failures, trust failures, watch-stream
decoding failures, and the HTTP-level errors of the Kubernetes API.

The callers never see aiohttp's exceptions as the bases of our errors, so that
the HTTP library remains an implementation detail. Where an aiohttp error is
the reason, it is kept as the ``__cause__`` of our own error.

The most commonly handled HTTP statuses get their own error classes;
all other statuses ≥ 400 are raised as :class:`APIError` with the status
and the server's ``Status`` object (if there was one) as the fields.

The configuration errors live with the configuration itself:
see :class:`kubewire.ConfigurationError`.
"""
import asyncio
import collections.abc
from collections.abc import Collection
from typing import TYPE_CHECKING, Literal

import aiohttp
from typing_extensions import TypedDict

if TYPE_CHECKING:
    from kubewire._cogs.clients import trust


class RawStatusCause(TypedDict, total=False):
    field: str
    reason: str
    message: str


class RawStatusDetails(TypedDict, total=False):
    name: str
    uid: str
    kind: str
    group: str
    retryAfterSeconds: int
    causes: Collection[RawStatusCause]


# The "Status" kind of the core API (meta/v1), as returned with the HTTP errors.
class RawStatus(TypedDict, total=False):
    apiVersion: str
    kind: Literal["Status"]
    status: Literal["Success", "Failure"]
    code: int
    reason: str
    message: str
    details: RawStatusDetails


class TrustRejectedError(Exception):
    """
    Raised when the server's certificate is not trusted by the client.

    The connection is closed before any request is sent through it.
    There are no automatic retries: the same peer will not become trusted.
    """

    def __init__(self, decision: "trust.TrustDecision") -> None:
        super().__init__(f"The server's certificate is rejected: {decision.reason}")
        self.decision = decision


class TransientTransportError(Exception):
    """
    Raised when an ordinary request fails on the network level.

    The original error of the client library is kept as ``__cause__``.
    The client does not retry; the retry policy belongs to the callers.
    """


class WatchDecodeError(ValueError):
    """
    A record of a watch-stream cannot be decoded into an event.

    It is not raised, but delivered inside of an ``ERROR`` event;
    the stream continues with the next records.
    """

    def __init__(self, message: str, *, record: bytes) -> None:
        super().__init__(message)
        self.record = record


class WatchTruncatedError(WatchDecodeError):
    """
    The watch-stream was closed in the middle of a record.

    Delivered inside of the last ``ERROR`` event of the stream.
    """


class APIError(Exception):
    """ An HTTP error of the API server, with its ``Status`` object if any. """

    status: int
    payload: RawStatus | None

    def __init__(self, payload: RawStatus | None, *, status: int) -> None:
        super().__init__(payload.get('message') if payload else None, payload)
        self.status = status
        self.payload = payload

    @property
    def code(self) -> int | None:
        return None if self.payload is None else self.payload.get('code')

    @property
    def message(self) -> str | None:
        return None if self.payload is None else self.payload.get('message')

    @property
    def details(self) -> RawStatusDetails | None:
        return None if self.payload is None else self.payload.get('details')


class APIUnauthorizedError(APIError):
    pass


class APIForbiddenError(APIError):
    pass


class APINotFoundError(APIError):
    pass


class APIConflictError(APIError):
    pass


API_ERRORS: dict[int, type[APIError]] = {
    401: APIUnauthorizedError,
    403: APIForbiddenError,
    404: APINotFoundError,
    409: APIConflictError,
}

# Network-level failures of aiohttp which are reported as transient.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
)


async def check_response(response: aiohttp.ClientResponse) -> None:
    """
    Raise an :class:`APIError` (or a descendant) for the HTTP error statuses.

    The response's body is read (and closed) only for the errors.
    For the successful statuses, the body is left unread for the caller.
    """
    if response.status < 400:
        return

    # Only a Status object is exposed: other bodies can contain the objects' data, e.g. secrets.
    payload: RawStatus | None
    try:
        body = await response.json()
    except (ValueError, aiohttp.ContentTypeError, aiohttp.ClientConnectionError):  # incl. bad UTF-8
        payload = None
    else:
        is_status = isinstance(body, collections.abc.Mapping) and body.get('kind') == 'Status'
        payload = body if is_status else None

    cls = API_ERRORS.get(response.status, APIError)
    try:
        response.raise_for_status()  # also releases the connection
    except aiohttp.ClientResponseError as e:
        raise cls(payload, status=response.status) from e
