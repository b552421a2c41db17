"""
Connection configuration & credentials of the API client.

A minimally sufficient data structure is introduced to bring all the connection
information together in a structured and type-annotated way. It is usually
produced by a configuration loader (e.g. from a kubeconfig file), which is not
a part of this library.

The information is the one passed to the HTTP protocol and TCP/SSL connection
only, i.e. everything usable in a generic HTTP client, and nothing more:

* TCP server host & port (as a URL).
* SSL verification/ignorance flag.
* SSL certificate authorities (the trust anchors).
* SSL client certificate and its private key.
* HTTP ``Authorization: Bearer token``.
* HTTP ``Authorization: Basic username:password``.
* URL's default namespace for the cases when this is implied.

Both the validation and the credentials selection are pure functions:
they do no I/O and create no network resources, so they can be checked
before anything else is constructed.
"""
import dataclasses
import urllib.parse
from collections.abc import Sequence

SUPPORTED_SCHEMES = frozenset({'http', 'https'})


class ConfigurationError(Exception):
    """ Raised when the client configuration is invalid and cannot work. """


@dataclasses.dataclass(frozen=True)
class ClientConfiguration:
    """
    A single endpoint with specific credentials and connection flags to use.

    The certificates are accepted as PEM (one or several certificates per item),
    as DER, or as base64-encoded PEM (as they are stored in kubeconfigs).
    """
    host: str  # e.g. "https://localhost:6443"
    skip_tls_verify: bool = False
    ca_certs: Sequence[bytes | str] | None = None
    client_certificate_path: str | None = None
    client_certificate_data: bytes | str | None = None
    client_key_path: str | None = None
    client_key_data: bytes | str | None = dataclasses.field(default=None, repr=False)
    access_token: str | None = dataclasses.field(default=None, repr=False)
    username: str | None = None
    password: str | None = dataclasses.field(default=None, repr=False)
    default_namespace: str | None = None


@dataclasses.dataclass(frozen=True)
class TokenCredentials:
    token: str = dataclasses.field(repr=False)


@dataclasses.dataclass(frozen=True)
class BasicCredentials:
    username: str
    password: str = dataclasses.field(default='', repr=False)


@dataclasses.dataclass(frozen=True)
class NoCredentials:
    pass


CredentialStrategy = TokenCredentials | BasicCredentials | NoCredentials


def validate_configuration(
        config: ClientConfiguration | None,
) -> urllib.parse.SplitResult:
    """
    Check the configuration for the basic sanity, and return the parsed host URL.
    """
    if config is None:
        raise ConfigurationError("The client configuration must be provided.")

    if config.host is None or not config.host.strip():
        raise ConfigurationError("The host URL must be set.")

    try:
        url = urllib.parse.urlsplit(config.host.strip())
        url.port  # validates the port, raises ValueError if malformed.
    except ValueError as e:
        raise ConfigurationError(f"Bad host URL: {config.host!r}") from e

    if not url.scheme or not url.hostname:
        raise ConfigurationError(f"Bad host URL: {config.host!r} is not an absolute URL.")
    if url.scheme.lower() not in SUPPORTED_SCHEMES:
        raise ConfigurationError(f"Unsupported scheme of the host URL: {config.host!r}")

    return url


def check_tls_settings(
        config: ClientConfiguration,
        url: urllib.parse.SplitResult,
) -> None:
    """
    Check that the TLS-related fields are consistent for the parsed host URL.

    A secure host needs either a CA bundle to trust the server's certificate,
    or an explicit consent to not verify the certificate -- but not both.
    """
    if url.scheme.lower() == 'https':
        has_ca = bool(config.ca_certs)
        if config.skip_tls_verify and has_ca:
            raise ConfigurationError("Both the CA certificates & skip-TLS-verify are set. Need only one.")
        if not config.skip_tls_verify and not has_ca:
            raise ConfigurationError("The CA certificates must be set when skip-TLS-verify is off.")

    if config.client_certificate_path and config.client_certificate_data:
        raise ConfigurationError("Both client certificate path & data are set. Need only one.")
    if config.client_key_path and config.client_key_data:
        raise ConfigurationError("Both client key path & data are set. Need only one.")

    has_cert = bool(config.client_certificate_path or config.client_certificate_data)
    has_key = bool(config.client_key_path or config.client_key_data)
    if has_cert != has_key:
        raise ConfigurationError("The client certificate & key must be set together.")


def select_credentials(
        config: ClientConfiguration | None,
) -> CredentialStrategy:
    """
    Choose the only credentials to use: the token wins over the username.
    """
    if config is None:
        raise ConfigurationError("The client configuration must be provided.")
    if config.access_token:
        return TokenCredentials(config.access_token)
    elif config.username:
        return BasicCredentials(config.username, config.password or '')
    else:
        return NoCredentials()
