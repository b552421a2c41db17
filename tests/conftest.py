import asyncio
import dataclasses
import datetime
import ipaddress
import logging
import ssl
from collections.abc import Sequence

import aiohttp.web
import pytest
from aiohttp.test_utils import TestServer
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kubewire import ClientConfiguration, ClientSettings


@pytest.fixture()
def settings():
    return ClientSettings()


@pytest.fixture()
def hostname():
    """ A local address to be used in all TLS & aiohttp tests. """
    return '127.0.0.1'


@pytest.fixture(autouse=True)
def _restore_logging():
    logger = logging.getLogger()
    asyncio_logger = logging.getLogger('asyncio')
    original_handlers = logger.handlers[:]
    original_level = logger.level
    original_asyncio_handlers = asyncio_logger.handlers[:]
    original_asyncio_propagate = asyncio_logger.propagate
    yield
    logger.handlers[:] = original_handlers
    logger.setLevel(original_level)
    asyncio_logger.handlers[:] = original_asyncio_handlers
    asyncio_logger.propagate = original_asyncio_propagate


#
# Local HTTP(S) servers instead of the real clusters.
# No external calls must be made under any circumstances.
#

@pytest.fixture()
async def make_server():
    """
    A factory of local aiohttp servers with the given routes, optionally with TLS.

    Sample usage::

        async def test_me(make_server):
            server = await make_server(aiohttp.web.get('/', handler))
            url = str(server.make_url('/'))
    """
    servers: list[TestServer] = []

    async def factory(*routes: aiohttp.web.RouteDef, ssl_context: ssl.SSLContext | None = None) -> TestServer:
        app = aiohttp.web.Application()
        app.add_routes(routes)
        server = TestServer(app)
        await server.start_server(ssl=ssl_context)
        servers.append(server)
        return server

    yield factory

    for server in servers:
        await server.close()


def _streaming_route(
        path: str,
        chunks: Sequence[bytes],
        *,
        hang: bool = False,
        queries: list[dict[str, str]] | None = None,
) -> aiohttp.web.RouteDef:
    """
    A route that streams the chunks one by one, as a watch-request would do.

    With ``hang=True``, the stream is kept open after the chunks until the client
    disconnects -- as the real watch-streams are kept open by the real servers.
    """
    async def handler(request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        if queries is not None:
            queries.append(dict(request.query))
        response = aiohttp.web.StreamResponse()
        response.content_type = 'application/json'
        await response.prepare(request)
        for chunk in chunks:
            await response.write(chunk)
            await asyncio.sleep(0.01)
        if hang:
            # Not cancelled on the client's disconnection, so we poll the connection.
            for _ in range(500):
                if request.transport is None or request.transport.is_closing():
                    break
                await asyncio.sleep(0.01)
        return response
    return aiohttp.web.get(path, handler)


#
# Certificates for the trust evaluation, generated fresh for every test.
#

@dataclasses.dataclass(frozen=True)
class Issued:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    @property
    def pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)

    @property
    def der(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.DER)

    @property
    def key_pem(self) -> bytes:
        return self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


def _issue(
        name: str,
        *,
        issuer: Issued | None = None,
        ca: bool = False,
        hostnames: Sequence[str] = (),
        client: bool = False,
        not_before: datetime.datetime | None = None,
        not_after: datetime.datetime | None = None,
        crl_url: str | None = None,
        legacy: bool = False,
) -> Issued:
    """
    Issue a certificate for tests; ``legacy`` mimics the ad-hoc CAs of ``openssl req -x509``:
    non-critical basic constraints, and neither key usages nor key identifiers.
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
    signing_key = issuer.key if issuer is not None else key
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.cert.subject if issuer is not None else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - datetime.timedelta(days=1))
        .not_valid_after(not_after or now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=not legacy)
    )
    if not legacy:
        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        builder = builder.add_extension(x509.KeyUsage(
            digital_signature=not ca, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=ca, crl_sign=ca,
            encipher_only=False, decipher_only=False,
        ), critical=True)
    if issuer is not None and not legacy:
        builder = builder.add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer.key.public_key()), critical=False)
    if not ca and not legacy:
        usage = ExtendedKeyUsageOID.CLIENT_AUTH if client else ExtendedKeyUsageOID.SERVER_AUTH
        builder = builder.add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
    if hostnames:
        names: list[x509.GeneralName] = []
        for hostname in hostnames:
            try:
                names.append(x509.IPAddress(ipaddress.ip_address(hostname)))
            except ValueError:
                names.append(x509.DNSName(hostname))
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
    if crl_url is not None:
        builder = builder.add_extension(x509.CRLDistributionPoints([
            x509.DistributionPoint([x509.UniformResourceIdentifier(crl_url)], None, None, None),
        ]), critical=False)
    return Issued(cert=builder.sign(signing_key, hashes.SHA256()), key=key)


@pytest.fixture()
def issue():
    return _issue


@pytest.fixture()
def streaming_route():
    return _streaming_route


@pytest.fixture()
def root_ca():
    return _issue('root-ca', ca=True)


@pytest.fixture()
def other_ca():
    return _issue('other-ca', ca=True)


@pytest.fixture()
def intermediate_ca(root_ca):
    return _issue('intermediate-ca', ca=True, issuer=root_ca)


@pytest.fixture()
def server_cert(root_ca, hostname):
    return _issue('server', issuer=root_ca, hostnames=[hostname, 'fake-host'])


@pytest.fixture()
def make_server_ssl_context(tmp_path):
    """ A factory of server-side SSL contexts presenting the given certificate (and chain). """
    def factory(leaf: Issued, *chain: Issued, client_ca: Issued | None = None) -> ssl.SSLContext:
        certfile = tmp_path / f'server-{id(leaf)}.crt'
        keyfile = tmp_path / f'server-{id(leaf)}.key'
        certfile.write_bytes(leaf.pem + b''.join(issued.pem for issued in chain))
        keyfile.write_bytes(leaf.key_pem)
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(certfile=str(certfile), keyfile=str(keyfile))
        if client_ca is not None:
            context.verify_mode = ssl.CERT_REQUIRED
            context.load_verify_locations(cadata=client_ca.pem.decode('ascii'))
        return context
    return factory

