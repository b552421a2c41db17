"""
The API client: the composition of the configuration, transport, and stages.

The client is constructed once, and then used for all requests to the cluster,
including concurrent requests from multiple tasks.
The construction must be finished before any requests are made, and it must
happen inside of a running event loop (aiohttp requires so for its connectors).

The construction goes in a strict order, so that no half-configured client
can ever exist:

* the configuration is validated: nothing is created if it is invalid;
* the credentials are selected and rendered into the auth headers;
* the connector is created with the TLS trust policy installed;
* the session is created on top of the connector;
* the chain of stages is built around the session (the transport),
  with the watch-stage inserted right before the transport,
  and then sealed.
"""
import logging
import urllib.parse
from collections.abc import Mapping
from typing import Any

import aiohttp

from kubewire._cogs.clients import connecting, handlers, watching
from kubewire._cogs.configs import configuration
from kubewire._cogs.structs import credentials

logger = logging.getLogger(__name__)


class Client:
    """
    A cluster API client with the configured trust, credentials, and stages.

    Usage::

        async with Client(config) as client:
            pods = await client.get('/api/v1/pods')
            async with await client.watch('/api/v1/pods') as stream:
                async for event in stream:
                    ...

    Extra stages (:class:`Handler` descendants) are placed in the order given,
    outside of the built-in watch-stage: i.e. they see the watch-streams,
    not the raw responses of the watch-requests.

    A pre-made aiohttp session can be passed as ``session=``: in that case,
    the TLS policy is the caller's concern (the session's connector is used
    as is), but the credentials & stages are still applied on top of it.
    Such a session is not closed when the client is closed.
    """

    config: credentials.ClientConfiguration
    settings: configuration.ClientSettings
    credentials: credentials.CredentialStrategy
    session: aiohttp.ClientSession
    chain: handlers.HandlerChain

    def __init__(
            self,
            config: credentials.ClientConfiguration,
            *extra_handlers: handlers.Handler,
            settings: configuration.ClientSettings | None = None,
            session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__()

        # Fail fast: nothing is created for a bad configuration.
        url = credentials.validate_configuration(config)
        credentials.check_tls_settings(config, url)
        strategy = credentials.select_credentials(config)
        auth_headers = connecting.authorization_headers(strategy)

        self.config = config
        self.settings = settings if settings is not None else configuration.ClientSettings()
        self.credentials = strategy
        self.base_url = url
        self.server = urllib.parse.urlunsplit(url)

        if session is None:
            connector = connecting.make_connector(config, url.scheme, url.hostname or '')
            self.session = connecting.make_session(connector)
            self._owns_session = True
        else:
            self.session = session
            self._owns_session = False

            # A user-provided session gets our User-Agent only if it has none of its own.
            if self.session.headers.get('User-Agent') is None:
                self.session.headers['User-Agent'] = connecting.make_user_agent()

        transport = handlers.TransportHandler(
            self.session,
            server=self.server,
            settings=self.settings,
            headers=auth_headers,
        )
        self.chain = handlers.HandlerChain(transport, extra_handlers)
        self.chain.insert(watching.WatchHandler(settings=self.settings))
        self.chain.seal()

        self._streams: list[watching.WatchStream] = []
        logger.debug(f"The client for {self.server} is ready with {len(self.chain)} stages "
                     f"and {type(strategy).__name__}.")

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.server}>'

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    @property
    def default_namespace(self) -> str | None:
        return self.config.default_namespace

    async def close(self) -> None:

        # Close all streams that are still open and are using this session.
        for stream in self._streams:
            stream.cancel()
        self._streams.clear()

        if self._owns_session:
            await self.session.close()

    async def send(self, request: handlers.Request) -> Any:
        """
        Send a request through all the stages: a response or a watch-stream is returned.
        """
        response = await self.chain.send(request)
        if isinstance(response, watching.WatchStream):
            # There's no point keeping references to already closed streams.
            self._streams[:] = [stream for stream in self._streams if not stream.released]
            self._streams.append(response)
        return response

    async def request(
            self,
            method: str,
            url: str,  # relative to the server/api root.
            *,
            payload: object | None = None,
            headers: Mapping[str, str] | None = None,
            params: Mapping[str, str] | None = None,
            timeout: aiohttp.ClientTimeout | None = None,
    ) -> aiohttp.ClientResponse:
        return await self.send(handlers.Request(
            method=method,
            url=url,
            payload=payload,
            headers=headers,
            params=params,
            timeout=timeout,
        ))

    async def get(self, url: str, **kwargs: Any) -> Any:
        response = await self.request('get', url, **kwargs)
        async with response:
            return await response.json()

    async def post(self, url: str, **kwargs: Any) -> Any:
        response = await self.request('post', url, **kwargs)
        async with response:
            return await response.json()

    async def patch(self, url: str, **kwargs: Any) -> Any:
        response = await self.request('patch', url, **kwargs)
        async with response:
            return await response.json()

    async def delete(self, url: str, **kwargs: Any) -> Any:
        response = await self.request('delete', url, **kwargs)
        async with response:
            return await response.json()

    async def watch(
            self,
            url: str,  # relative to the server/api root.
            *,
            since: str | None = None,
            bookmarks: bool = False,
            params: Mapping[str, str] | None = None,
            headers: Mapping[str, str] | None = None,
            timeout: aiohttp.ClientTimeout | None = None,
    ) -> watching.WatchStream:
        """
        Start a watch-request, optionally from a known resource version.

        Re-connecting is not done here: the caller keeps the last seen
        resource version and starts a new watch from there if needed.
        """
        query: dict[str, str] = dict(params or {})
        if since is not None:
            query['resourceVersion'] = since
        if bookmarks:
            query['allowWatchBookmarks'] = 'true'
        return await self.send(handlers.Request(
            method='get',
            url=url,
            headers=headers,
            params=query,
            timeout=timeout,
            watch=True,
        ))
