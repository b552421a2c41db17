"""
All configuration flags, options, settings to fine-tune the API client.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

These are the *settings* of the client's behaviour (timeouts, buffers),
as opposed to the *configuration* of the cluster connection
(the server, the certificates, the credentials), which is kept in
:class:`kubewire.ClientConfiguration`.

All of the settings have reasonable defaults, so that the client can be
constructed with no settings at all.
"""
import dataclasses


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: float | None = 5 * 60  # == aiohttp.client.DEFAULT_TIMEOUT
    """
    A timeout for the ordinary API calls (in seconds).

    Watch-streams do not use this value, see :class:`WatchingSettings`.
    """

    connect_timeout: float | None = None
    """
    A timeout for establishing the connection (in seconds),
    including the TLS handshake & the certificate trust evaluation.

    If not set, only the overall ``request_timeout`` limits it.
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: float | None = None
    """
    The maximum duration of one watch-request as sent to the server.
    It is passed as ``timeoutSeconds=`` in the query of the watch-requests.
    The server closes the stream gracefully when this time is over.
    """

    client_timeout: float | None = None
    """
    The maximum duration of one watch-request as limited by the client.
    The stream is terminated client-side when this time is over.

    Normally, it is not set: the stream lasts as long as the server keeps it.
    """

    connect_timeout: float | None = None
    """
    The timeout for establishing the connection of a watch-request.
    If not set, ``networking.connect_timeout`` is used.
    """

    chunk_size: int = 1024 * 1024
    """
    The maximum number of bytes read from the response body in one step.

    Kubernetes objects (e.g. secrets) can be MBs in length, so the chunk
    must be big enough to read them without too many iterations; and small
    enough to not keep too much memory per stream.
    """


@dataclasses.dataclass
class ClientSettings:
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
