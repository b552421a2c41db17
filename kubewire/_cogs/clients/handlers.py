"""
The chain of request-processing stages around the HTTP transport.

Every request goes through all the stages in order, from the outermost
(caller-facing) one to the innermost one, which is always the transport.
Every stage can inspect or modify the request, and inspect, modify or replace
the response returned by the inner stages.

The chain is an ordered list of stage objects rather than a linked list of
stages referring to each other: the stages do not know their neighbours,
they only get a callable for the next inner stage on every call.

New stages are inserted right before the transport, so that they see
the responses closest to the wire -- before any outer stage can read
or transform them. This is essential for the watch-streams: they must be
decoded as the bytes arrive, not after the body is fully read.

Once the client is constructed, the chain is sealed and cannot be modified.
The stages keep no per-request state, so the chain is safe for concurrent use
by multiple tasks.
"""
import dataclasses
import functools
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from typing import Any, ClassVar

import aiohttp

from kubewire._cogs.clients import errors
from kubewire._cogs.configs import configuration

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Request:
    method: str
    url: str  # relative to the server/api root, or absolute.
    payload: object | None = None
    headers: Mapping[str, str] | None = None
    params: Mapping[str, str] | None = None
    timeout: aiohttp.ClientTimeout | None = None
    watch: bool = False


NextHandler = Callable[[Request], Awaitable[Any]]


class Handler:
    """
    A request-processing stage. By default, it passes everything through.

    Descendant classes override :meth:`handle`, and call the ``inner`` callable
    to pass the request further towards the transport (or not call it at all).
    """

    # Only one stage of such a class can be in a chain.
    unique: ClassVar[bool] = False

    async def handle(self, request: Request, inner: NextHandler) -> Any:
        return await inner(request)


class TransportHandler:
    """
    The innermost stage: sends the requests through the aiohttp session.

    The network-level errors are escalated as :class:`TransientTransportError`
    with no retries, the HTTP-level errors as :class:`APIError` and descendants.
    """

    def __init__(
            self,
            session: aiohttp.ClientSession,
            *,
            server: str,
            settings: configuration.ClientSettings,
            headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__()
        self.session = session
        self.server = server
        self.settings = settings
        self._headers = dict(headers or {})

    async def send(self, request: Request) -> aiohttp.ClientResponse:
        url = request.url
        if '://' not in url:
            url = self.server.rstrip('/') + '/' + url.lstrip('/')

        timeout = request.timeout
        if timeout is None:
            timeout = aiohttp.ClientTimeout(
                total=self.settings.networking.request_timeout,
                sock_connect=self.settings.networking.connect_timeout,
            )

        # The credentials are applied to every request, and cannot be overridden by the callers.
        headers = dict(request.headers or {}) | self._headers

        what = f"{request.method.upper()} {url}"
        try:
            response = await self.session.request(
                method=request.method,
                url=url,
                json=request.payload,
                headers=headers,
                params=request.params,
                timeout=timeout,
            )
        except errors.TRANSIENT_ERRORS as e:
            logger.debug(f"Request failed; escalating: {what} -> {e!r}")
            raise errors.TransientTransportError(f"Request failed: {what}") from e

        await errors.check_response(response)  # but do not parse it!
        return response


class HandlerChain:
    """
    An ordered list of stages, with the transport as the last one.
    """

    _stages: list[Handler | TransportHandler]

    def __init__(
            self,
            transport: TransportHandler,
            handlers: Iterable[Handler] = (),
    ) -> None:
        super().__init__()
        self._stages = []
        self._sealed = False
        self._stages.append(transport)
        for handler in handlers:
            self.insert(handler)

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self._stages!r}>'

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Handler | TransportHandler]:
        return iter(self._stages)

    @property
    def transport(self) -> TransportHandler:
        return self._stages[-1]  # type: ignore

    @property
    def handlers(self) -> tuple[Handler, ...]:
        return tuple(self._stages[:-1])  # type: ignore

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        self._sealed = True

    def insert(self, handler: Handler) -> None:
        """
        Put a new stage right before the transport, i.e. after all existing stages.
        """
        if self._sealed:
            raise RuntimeError("The handler chain is sealed and cannot be modified.")
        if handler.unique and any(type(stage) is type(handler) for stage in self._stages):
            raise ValueError(f"Only one {type(handler).__name__} can be in the chain.")
        self._stages.insert(len(self._stages) - 1, handler)

    async def send(self, request: Request) -> Any:
        return await self._dispatch(0, request)

    async def _dispatch(self, index: int, request: Request) -> Any:
        if index == len(self._stages) - 1:
            return await self.transport.send(request)
        handler = self._stages[index]
        return await handler.handle(request, functools.partial(self._dispatch, index + 1))  # type: ignore
