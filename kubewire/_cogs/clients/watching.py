"""
Watching and streaming watch-events.

A watch-request is an HTTP request whose response body remains open for long,
and streams the changes of the resources as newline-delimited JSON records::

    {"type": "ADDED", "object": {...}}
    {"type": "MODIFIED", "object": {...}}

The stream is decoded lazily, record by record, as the bytes arrive:
the caller pulls the events at its own pace, and nothing is read ahead
except for one chunk of the body.

A malformed record does not break the stream: it is reported as an ``ERROR``
event with a :class:`WatchDecodeError`, and the next records are decoded as usual.
A record cut in the middle by the end of the body is reported as a final
``ERROR`` event with a :class:`WatchTruncatedError`.

The stream can be stopped at any time by :meth:`WatchStream.cancel`
(or by the caller's own stopper future): the response is closed, so that
the pending read aborts, and no more events are yielded after that.
The response is closed exactly once regardless of how the stream ends.

Re-connecting is not done here: the callers remember the last seen resource
version (or a bookmark) and start a new watch-request from there.
"""
import asyncio
import dataclasses
import enum
import json
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

import aiohttp

from kubewire._cogs.clients import errors, handlers
from kubewire._cogs.configs import configuration
from kubewire._cogs.helpers import loggers

logger = logging.getLogger(__name__)

RawObject = Mapping[str, Any]

# Network-level failures that end the stream as if the server has closed it.
STREAM_END_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
)


class WatchEventType(str, enum.Enum):
    ADDED = 'ADDED'
    MODIFIED = 'MODIFIED'
    DELETED = 'DELETED'
    ERROR = 'ERROR'
    BOOKMARK = 'BOOKMARK'


@dataclasses.dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    object: RawObject | None = None
    error: Exception | None = None


class WatchStream(AsyncIterator[WatchEvent]):
    """
    A single-pass stream of events decoded from one watch-response.

    Usage::

        async with await client.watch('/api/v1/pods') as stream:
            async for event in stream:
                print(event.type, event.object)

    The ``async with`` is optional, but it guarantees that the response is
    closed when the consumer stops the iteration early (e.g. via ``break``).
    """

    def __init__(
            self,
            response: aiohttp.ClientResponse,
            *,
            settings: configuration.ClientSettings | None = None,
            stopper: asyncio.Future[Any] | None = None,
    ) -> None:
        super().__init__()
        settings = settings if settings is not None else configuration.ClientSettings()
        self.response = response
        self.logger = loggers.RequestLogger(method=response.method, url=str(response.url))
        self._chunk_size = settings.watching.chunk_size
        self._stopper = stopper if stopper is not None else asyncio.get_running_loop().create_future()
        self._stopper.add_done_callback(self._stopped)
        self._released = False
        self._started = False
        self._events = self._iter_events()

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.response.method} {self.response.url}>'

    async def __aenter__(self) -> "WatchStream":
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.aclose()

    def __aiter__(self) -> "WatchStream":
        if self._started:
            raise RuntimeError("The watch-stream is single-pass and cannot be re-iterated.")
        self._started = True
        return self

    async def __anext__(self) -> WatchEvent:
        self._started = True
        return await self._events.__anext__()

    @property
    def cancelled(self) -> bool:
        return self._stopper.done()

    @property
    def released(self) -> bool:
        return self._released

    def cancel(self) -> None:
        """ Stop the stream: the pending read aborts, no more events are yielded. """
        if not self._stopper.done():
            self._stopper.set_result(None)
        self._release()

    async def aclose(self) -> None:
        self.cancel()
        await self._events.aclose()
        self._release()

    def _stopped(self, _: asyncio.Future[Any]) -> None:
        self._release()

    def _release(self) -> None:
        if not self._released:
            self._released = True
            self._stopper.remove_done_callback(self._stopped)
            self.response.close()
            self.logger.debug("Stopped the watch-stream.")

    async def _iter_events(self) -> AsyncIterator[WatchEvent]:

        # Minimize the memory footprint by keeping at most 2 copies of a record in memory
        # (in the buffer and as a decoded value), and at most 1 copy of other records (in the buffer).
        buffer = b''
        self.logger.debug("Started the watch-stream.")
        try:
            if self._stopper.done():
                return
            async for data in self.response.content.iter_chunked(self._chunk_size):
                if self._stopper.done():
                    return

                buffer += data
                del data

                start = 0
                index = buffer.find(b'\n', start)
                while index >= 0:
                    record = buffer[start:index]
                    start = index + 1
                    if record.strip():
                        event = self._decode(record)
                        if self._stopper.done():
                            return
                        yield event
                    del record
                    index = buffer.find(b'\n', start)

                if start > 0:
                    buffer = buffer[start:]

        except STREAM_END_ERRORS as e:
            if self._stopper.done():
                return
            self.logger.debug(f"The watch-stream is disconnected: {e!r}")

        finally:
            self._release()

        # Whatever remains in the buffer was never finished by a record separator.
        if buffer.strip() and not self._stopper.done():
            self.logger.warning(f"The watch-stream is truncated with {len(buffer)} bytes unparsed.")
            yield WatchEvent(
                type=WatchEventType.ERROR,
                error=errors.WatchTruncatedError("The watch-stream ended in the middle of a record.",
                                                 record=buffer),
            )

    def _decode(self, record: bytes) -> WatchEvent:
        try:
            raw = json.loads(record.decode('utf-8'))
        except (ValueError, RecursionError) as e:  # incl. UnicodeDecodeError & json.JSONDecodeError
            return self._failed(f"Cannot decode a watch-record: {e}", record=record)

        if not isinstance(raw, Mapping) or 'type' not in raw or 'object' not in raw:
            return self._failed("A watch-record is not an event with a type & an object.", record=record)

        try:
            type = WatchEventType(str(raw['type']).upper())
        except ValueError:
            return self._failed(f"Unsupported event type: {raw['type']!r}", record=record)

        return WatchEvent(type=type, object=raw['object'])

    def _failed(self, message: str, *, record: bytes) -> WatchEvent:
        self.logger.warning(message)
        return WatchEvent(type=WatchEventType.ERROR, error=errors.WatchDecodeError(message, record=record))


class WatchHandler(handlers.Handler):
    """
    A stage that turns the responses of watch-requests into watch-streams.

    Other requests are passed through as is. It is always placed right before
    the transport, so that no other stage reads the response's body first.
    """
    unique = True

    def __init__(self, *, settings: configuration.ClientSettings | None = None) -> None:
        super().__init__()
        self.settings = settings if settings is not None else configuration.ClientSettings()

    async def handle(self, request: handlers.Request, inner: handlers.NextHandler) -> Any:
        if not request.watch:
            return await inner(request)

        params: dict[str, str] = dict(request.params or {})
        params['watch'] = 'true'
        if self.settings.watching.server_timeout is not None:
            params.setdefault('timeoutSeconds', str(int(self.settings.watching.server_timeout)))

        timeout = request.timeout
        if timeout is None:
            connect_timeout = (
                self.settings.watching.connect_timeout if self.settings.watching.connect_timeout is not None else
                self.settings.networking.connect_timeout if self.settings.networking.connect_timeout is not None else
                self.settings.networking.request_timeout
            )
            timeout = aiohttp.ClientTimeout(
                total=self.settings.watching.client_timeout,
                sock_connect=connect_timeout,
            )

        response = await inner(dataclasses.replace(request, params=params, timeout=timeout))
        return WatchStream(response, settings=self.settings)
