"""
The HTTP transport: TLS contexts, connectors, sessions, and auth headers.

The TLS handshake itself is done by the standard :mod:`ssl` module, but with
the built-in verification of the server's certificate turned off: Python's
:mod:`ssl` has no callbacks to customise the verification. Instead, the trust
is evaluated by :class:`TrustingConnector` right after every handshake,
before any request is sent through the new connection.
An untrusted connection is closed, and :class:`TrustRejectedError` is raised.

With ``skip_tls_verify``, no evaluation happens at all, and any certificate
is accepted (the traffic is still encrypted, but the server is not verified).

.. note::
    The presented chain of the server (i.e. the intermediate certificates)
    is only available since Python 3.13. On older versions, only the server's
    own certificate is seen, so the intermediate certificates must be added
    to the CA bundle in the configuration.
"""
import asyncio
import base64
import contextlib
import logging
import os
import ssl
import tempfile
from typing import Any

import aiohttp

from kubewire._cogs.clients import errors, trust
from kubewire._cogs.helpers import versions
from kubewire._cogs.structs import credentials

logger = logging.getLogger(__name__)


class TrustingConnector(aiohttp.TCPConnector):
    """
    A TCP connector that evaluates the trust of the peers after the handshakes.
    """

    def __init__(
            self,
            *args: Any,
            evaluator: trust.TrustEvaluator | None = None,
            **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.evaluator = evaluator

    async def _wrap_create_connection(
            self,
            *args: Any,
            **kwargs: Any,
    ) -> tuple[asyncio.Transport, Any]:
        transport, protocol = await super()._wrap_create_connection(*args, **kwargs)
        ssl_object = transport.get_extra_info('ssl_object')
        if self.evaluator is not None and ssl_object is not None:
            certificate, chain = get_peer_chain(ssl_object)
            try:
                self.evaluator.check(certificate, chain)
            except errors.TrustRejectedError as e:
                transport.close()
                log_invisible_chain(ssl_object, e.decision)
                raise
        return transport, protocol


def get_peer_chain(ssl_object: ssl.SSLObject) -> tuple[bytes | None, list[bytes]]:
    certificate = ssl_object.getpeercert(binary_form=True)
    get_unverified_chain = getattr(ssl_object, 'get_unverified_chain', None)  # Python 3.13+
    if get_unverified_chain is None:
        chain = [certificate] if certificate else []
    else:
        chain = list(get_unverified_chain() or [])
    return certificate, chain


def log_invisible_chain(ssl_object: ssl.SSLObject, decision: trust.TrustDecision) -> None:
    """
    Hint on the intermediate certificates if they could be the reason of a rejection.
    """
    if not hasattr(ssl_object, 'get_unverified_chain') and \
            decision.errors & trust.PolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS:
        logger.warning("The server's intermediate certificates are not visible before Python 3.13. "
                       "If the server has any, add them to the CA bundle.")


def make_ssl_context(config: credentials.ClientConfiguration) -> ssl.SSLContext:
    """
    Create an SSL context for the handshakes, with the client certificate if any.
    """

    # ssl loads the client certificate from files only: the in-memory data go to temp files.
    # The temp files are created only for the in-memory data; the filesystem can be read-only.
    with contextlib.ExitStack() as stack:

        cert_path: str | os.PathLike[str] | None
        if config.client_certificate_path:
            cert_path = config.client_certificate_path
        elif config.client_certificate_data:
            cert_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
            cert_file.write(decode_to_pem(config.client_certificate_data).encode('ascii'))
            cert_path = cert_file.name
        else:
            cert_path = None

        pkey_path: str | os.PathLike[str] | None
        if config.client_key_path:
            pkey_path = config.client_key_path
        elif config.client_key_data:
            pkey_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
            pkey_file.write(decode_to_pem(config.client_key_data).encode('ascii'))
            pkey_path = pkey_file.name
        else:
            pkey_path = None

        # The server's certificate is evaluated by our own policy after the handshake.
        context = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        if cert_path and pkey_path:
            try:
                context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)
            except (ssl.SSLError, OSError) as e:
                raise credentials.ConfigurationError("Cannot load the client certificate.") from e

    return context


def make_connector(
        config: credentials.ClientConfiguration,
        url_scheme: str,
        hostname: str,
) -> TrustingConnector:
    """
    Create a connector with the TLS policy as configured (or none for plain HTTP).
    """
    if url_scheme.lower() != 'https':
        return TrustingConnector(limit=0)

    context = make_ssl_context(config)
    if config.skip_tls_verify:
        logger.warning(f"The certificate of {hostname!r} will not be verified (skip-TLS-verify).")
        return TrustingConnector(limit=0, ssl=context)

    evaluator = trust.TrustEvaluator(config.ca_certs or [], hostname)
    return TrustingConnector(limit=0, ssl=context, evaluator=evaluator)


def make_session(
        connector: aiohttp.BaseConnector,
) -> aiohttp.ClientSession:
    return aiohttp.ClientSession(
        connector=connector,
        headers={'User-Agent': make_user_agent()},
    )


def make_user_agent() -> str:
    return f'kubewire/{versions.version or "unknown"}'


def authorization_headers(strategy: credentials.CredentialStrategy) -> dict[str, str]:
    """
    Render the selected credentials as the HTTP headers for every request.
    """
    match strategy:
        case credentials.TokenCredentials(token=token):
            return {'Authorization': f'Bearer {token}'}
        case credentials.BasicCredentials(username=username, password=password):
            try:
                return {'Authorization': aiohttp.BasicAuth(username, password).encode()}
            except ValueError as e:
                raise credentials.ConfigurationError(f"Bad username for the basic auth: {e}") from e
        case credentials.NoCredentials():
            return {}
        case _:
            raise TypeError(f"Unsupported credentials type: {strategy!r}")


def decode_to_pem(data: str | bytes) -> str:
    match data:
        case str() if data.startswith('-----BEGIN '):
            return data
        case bytes() if data.startswith(b'-----BEGIN '):
            return data.decode('ascii')
        case _:
            return base64.b64decode(data).decode('ascii')
