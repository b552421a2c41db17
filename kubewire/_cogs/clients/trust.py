"""
Trust evaluation of the servers' TLS certificates.

Kubernetes clusters usually have their own certificate authority, which is not
known to the platform's trust store. The client trusts the servers' certificates
if they are issued by one of the CA certificates in the client configuration
(the "bundle") -- and only then.

The evaluation happens in two steps, as the TLS libraries of other platforms
do it with their certificate-validation callbacks:

* First, the "default" validation is done as a platform would do it: against
  the platform's default trust store and the requested server name.
  The outcome is a set of :class:`PolicyErrors` flags (empty if all is good).

* Second, :meth:`TrustEvaluator.evaluate` makes the final decision based on
  the default outcome: if only the chain is broken (e.g. because the cluster CA
  is unknown to the platform), the chain is rebuilt with the bundle as the
  trusted material. Other errors (e.g. a name mismatch) are never forgiven.

The rebuilt chain is accepted only if its terminal (root) certificate is
byte-for-byte equal to one of the certificates in the bundle. Chain building
alone is not enough: the server can present its own self-signed root in the
chain, and it is allowed as an unknown root authority during the building.
A server certificate which is itself in the bundle (a pinned self-signed
certificate) needs no chain at all.

There is no revocation checking: the cluster CA rarely has CRL/OCSP endpoints,
and the evaluation must not do any I/O, as it runs right after the handshake
on the connection's critical path. All the certificates are loaded in advance.
"""
import base64
import binascii
import dataclasses
import datetime
import enum
import ipaddress
import logging
import ssl
from collections.abc import Iterable, Sequence

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.verification import Criticality, ExtensionPolicy, Policy, PolicyBuilder, \
                                           Store, VerificationError

from kubewire._cogs.clients import errors
from kubewire._cogs.structs import credentials

logger = logging.getLogger(__name__)


class PolicyErrors(enum.Flag):
    """ The outcome of the default validation: which checks have failed. """
    NONE = 0
    REMOTE_CERTIFICATE_NOT_AVAILABLE = enum.auto()
    REMOTE_CERTIFICATE_NAME_MISMATCH = enum.auto()
    REMOTE_CERTIFICATE_CHAIN_ERRORS = enum.auto()


@dataclasses.dataclass(frozen=True)
class TrustDecision:
    accepted: bool
    errors: PolicyErrors
    reason: str

    def __bool__(self) -> bool:
        return self.accepted


class TrustEvaluator:
    """
    A certificate-acceptance policy for one server and one CA bundle.

    Constructed once per client, and then invoked for every new connection.
    The bundle & the platform roots are parsed at construction, so that
    no I/O happens during the evaluation itself.
    """

    def __init__(
            self,
            ca_certs: Iterable[bytes | str | x509.Certificate],
            server_hostname: str,
            *,
            platform_roots: Iterable[x509.Certificate] | None = None,
    ) -> None:
        super().__init__()
        self._ca_certs = load_certificates(ca_certs)
        self._ca_ders = [cert.public_bytes(Encoding.DER) for cert in self._ca_certs]
        self._hostname = server_hostname
        self._subject = make_subject(server_hostname)
        self._platform_roots = (
            list(platform_roots) if platform_roots is not None else load_platform_roots()
        )

    @property
    def ca_certs(self) -> Sequence[x509.Certificate]:
        return tuple(self._ca_certs)

    def default_errors(
            self,
            certificate: x509.Certificate | None,
            chain: Sequence[x509.Certificate],
    ) -> PolicyErrors:
        """
        Validate the peer's certificate as a platform would do it by default.
        """
        if certificate is None:
            return PolicyErrors.REMOTE_CERTIFICATE_NOT_AVAILABLE

        result = PolicyErrors.NONE
        if not matches_hostname(certificate, self._hostname):
            result |= PolicyErrors.REMOTE_CERTIFICATE_NAME_MISMATCH

        if not self._platform_roots:
            result |= PolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS
        else:
            verifier = PolicyBuilder().store(Store(self._platform_roots)).build_server_verifier(self._subject)
            try:
                verifier.verify(certificate, _intermediates(certificate, chain))
            except VerificationError:
                result |= PolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS
        return result

    def evaluate(
            self,
            certificate: x509.Certificate | None,
            chain: Sequence[x509.Certificate],
            policy_errors: PolicyErrors,
    ) -> TrustDecision:
        """
        Decide on the peer's certificate given the default validation outcome.
        """
        if policy_errors == PolicyErrors.NONE:
            return TrustDecision(True, policy_errors, "valid by the default validation")

        # Only the chain errors can be fixed by our own CA bundle. Never the names, etc.
        if certificate is None or policy_errors & ~PolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS:
            return TrustDecision(False, policy_errors, f"not fixable by the CA bundle: {policy_errors!r}")

        # A certificate pinned in the bundle is a chain of its own, with itself as the root.
        if certificate.public_bytes(Encoding.DER) in self._ca_ders:
            now = datetime.datetime.now(datetime.timezone.utc)
            if not certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc:
                return TrustDecision(False, policy_errors, "the pinned certificate is not valid now")
            return TrustDecision(True, policy_errors, "the certificate itself is in the CA bundle")

        # Unknown root authorities are allowed for building, but checked against the bundle below.
        intermediates = _intermediates(certificate, chain)
        unknown_roots = [cert for cert in intermediates if cert.issuer == cert.subject]
        if not self._ca_certs and not unknown_roots:
            return TrustDecision(False, policy_errors, "the CA bundle is empty")

        store = Store(self._ca_certs + unknown_roots)
        verifier = (
            PolicyBuilder()
            .store(store)
            .extension_policies(ca_policy=make_ca_policy(), ee_policy=make_ee_policy())
            .build_server_verifier(self._subject)
        )
        try:
            built = verifier.verify(certificate, intermediates)
        except VerificationError as e:
            return TrustDecision(False, policy_errors, f"the chain cannot be built: {e}")

        logger.debug(f"Built a chain of {len(built)} certificate(s) for {self._hostname!r}.")
        root_der = built[-1].public_bytes(Encoding.DER)
        if not any(root_der == ca_der for ca_der in self._ca_ders):
            return TrustDecision(False, policy_errors, "the chain's root is not in the CA bundle")

        return TrustDecision(True, policy_errors, "the chain's root is in the CA bundle")

    def check(
            self,
            certificate_der: bytes | None,
            chain_ders: Sequence[bytes],
    ) -> TrustDecision:
        """
        Evaluate the peer's certificate as received, and raise if not trusted.
        """
        try:
            certificate = x509.load_der_x509_certificate(certificate_der) if certificate_der else None
            chain = [x509.load_der_x509_certificate(der) for der in chain_ders]
        except ValueError as e:
            decision = TrustDecision(False, PolicyErrors.REMOTE_CERTIFICATE_NOT_AVAILABLE,
                                     f"the certificate cannot be parsed: {e}")
        else:
            errors_ = self.default_errors(certificate, chain)
            decision = self.evaluate(certificate, chain, errors_)

        if not decision.accepted:
            logger.error(f"Rejecting the certificate of {self._hostname!r}: {decision.reason}")
            raise errors.TrustRejectedError(decision)

        logger.debug(f"Trusting the certificate of {self._hostname!r}: {decision.reason}")
        return decision


def _intermediates(
        certificate: x509.Certificate,
        chain: Sequence[x509.Certificate],
) -> list[x509.Certificate]:
    # The presented chain usually starts with the peer's certificate itself.
    return [cert for cert in chain if cert != certificate]


def _require_ca(policy: Policy, certificate: x509.Certificate, constraints: x509.BasicConstraints) -> None:
    if not constraints.ca:
        raise ValueError(f"not a CA certificate: {certificate.subject.rfc4514_string()}")


def make_ca_policy() -> ExtensionPolicy:
    """
    The issuers' extension policy for building chains to the cluster's own CA.

    Cluster CAs are often generated with ``openssl req -x509`` or similar tools,
    which do not follow the web-PKI profile (e.g. non-critical basic constraints,
    no key usage). Only the CA flag itself is required.
    """
    return ExtensionPolicy.permit_all().require_present(
        x509.BasicConstraints, Criticality.AGNOSTIC, _require_ca)


def make_ee_policy() -> ExtensionPolicy:
    """
    The servers' extension policy for building chains to the cluster's own CA.

    The names are matched by :func:`matches_hostname` before the chain is built.
    """
    return ExtensionPolicy.permit_all().require_present(
        x509.SubjectAlternativeName, Criticality.AGNOSTIC, None)


def make_subject(hostname: str) -> x509.DNSName | x509.IPAddress:
    try:
        return x509.IPAddress(ipaddress.ip_address(hostname.strip('[]')))
    except ValueError:
        return x509.DNSName(hostname)


def matches_hostname(certificate: x509.Certificate, hostname: str) -> bool:
    """
    Check the hostname or IP address against the certificate's alternative names.

    The common name is not used, same as in modern browsers & TLS libraries.
    Wildcards are accepted only as the whole left-most label (``*.example.com``).
    """
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return False

    subject = make_subject(hostname)
    if isinstance(subject, x509.IPAddress):
        return subject.value in san.get_values_for_type(x509.IPAddress)

    wanted = hostname.rstrip('.').lower()
    for pattern in san.get_values_for_type(x509.DNSName):
        pattern = pattern.rstrip('.').lower()
        if pattern == wanted:
            return True
        if pattern.startswith('*.') and '.' in wanted:
            _, wanted_parent = wanted.split('.', 1)
            if pattern[2:] == wanted_parent:
                return True
    return False


def load_certificates(items: Iterable[bytes | str | x509.Certificate]) -> list[x509.Certificate]:
    """
    Parse the certificates from PEM (also multi-certificate), DER, or base64-encoded PEM.
    """
    certs: list[x509.Certificate] = []
    for item in items:
        match item:
            case x509.Certificate():
                certs.append(item)
            case str():
                certs.extend(load_certificates([item.encode('ascii')]))
            case bytes() if not item.strip():
                raise credentials.ConfigurationError("An empty certificate is found.")
            case bytes() if b'-----BEGIN ' in item:
                try:
                    certs.extend(x509.load_pem_x509_certificates(item))
                except ValueError as e:
                    raise credentials.ConfigurationError("Cannot parse a PEM certificate.") from e
            case bytes():
                try:
                    certs.append(x509.load_der_x509_certificate(item))
                except ValueError:
                    try:
                        decoded = base64.b64decode(item.strip(), validate=True)
                    except binascii.Error as e:
                        raise credentials.ConfigurationError("Cannot parse a certificate.") from e
                    certs.extend(load_certificates([decoded]))
            case _:
                raise TypeError(f"Unsupported certificate type: {item!r}")
    return certs


def load_platform_roots() -> list[x509.Certificate]:
    """
    Get the platform's default trust anchors, as far as Python can see them.

    Only the certificates loaded from the default CA file are visible here;
    the lazily loaded CA directories are not listed by OpenSSL.
    """
    context = ssl.create_default_context()
    roots: list[x509.Certificate] = []
    for der in context.get_ca_certs(binary_form=True):
        try:
            roots.append(x509.load_der_x509_certificate(der))
        except ValueError:
            logger.debug("Skipping a platform root which cannot be parsed.")
    return roots
