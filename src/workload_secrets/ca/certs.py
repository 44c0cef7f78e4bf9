"""Certificate request, parsing, and expiry utilities.

This module builds workload identity URIs, generates private keys with
matching certificate signing requests, and decides when an issued
certificate is due for rotation.
"""

import ipaddress
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from workload_secrets import console
from workload_secrets.exceptions import (
    CertificateParsingError,
    ConfigurationError,
    CSRGenerationError,
    RotationRequiredError,
)

IDENTITY_URI_SCHEME = "spiffe"

# The size of a private key for a leaf certificate.
KEY_SIZE = 2048


def identity_uri(namespace: str, service_account: str, trust_domain: str = "cluster.local") -> str:
    """Build the identity URI of a service account.

    Args:
        namespace: The service account namespace.
        service_account: The service account name.
        trust_domain: The trust domain of the mesh.

    Returns:
        The URI, e.g. ``spiffe://cluster.local/ns/default/sa/bookinfo``.

    Raises:
        ConfigurationError: If the trust domain is empty.

    """
    if not trust_domain:
        raise ConfigurationError("trust domain is not configured")
    return f"{IDENTITY_URI_SCHEME}://{trust_domain}/ns/{namespace}/sa/{service_account}"


def san_entry(value: str) -> x509.GeneralName:
    """Convert a subject identity into a subject alternative name.

    Args:
        value: A URI, an IP address, or a DNS name.

    Returns:
        The matching x509 general name.

    """
    if "://" in value:
        return x509.UniformResourceIdentifier(value)
    try:
        return x509.IPAddress(ipaddress.ip_address(value))
    except ValueError:
        return x509.DNSName(value)


def generate_csr(
    hosts: list[str],
    *,
    key_size: int = KEY_SIZE,
    dual_use: bool = False,
    pkcs8_key: bool = False,
) -> tuple[bytes, bytes]:
    """Generate a private key and a signing request for it.

    Args:
        hosts: Subject identities; the first one becomes the CN when
            ``dual_use`` is set.
        key_size: RSA key size in bits.
        dual_use: Whether to also put the identity in the subject CN.
        pkcs8_key: Encode the private key as PKCS#8 instead of PKCS#1.

    Returns:
        A tuple of (csr_pem, key_pem).

    Raises:
        CSRGenerationError: If the key or request cannot be built.

    """
    if not hosts:
        raise CSRGenerationError("at least one subject identity is required")

    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

        subject: list[x509.NameAttribute] = []
        if dual_use:
            subject.append(x509.NameAttribute(NameOID.COMMON_NAME, hosts[0]))

        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name(subject))
            .add_extension(
                x509.SubjectAlternativeName([san_entry(h) for h in hosts]),
                critical=not dual_use,
            )
            .sign(key, hashes.SHA256())
        )
    except ValueError as err:
        raise CSRGenerationError(f"failed to build CSR for {hosts[0]}: {err}") from err

    key_format = serialization.PrivateFormat.PKCS8 if pkcs8_key else serialization.PrivateFormat.TraditionalOpenSSL
    key_pem = key.private_bytes(serialization.Encoding.PEM, key_format, serialization.NoEncryption())
    return csr.public_bytes(serialization.Encoding.PEM), key_pem


def load_certificates(pem: bytes) -> list[x509.Certificate]:
    """Parse every certificate of a PEM bundle.

    Args:
        pem: One or more concatenated PEM certificates.

    Returns:
        The parsed certificates, in bundle order.

    Raises:
        CertificateParsingError: If the bundle is empty or malformed.

    """
    if not pem:
        raise CertificateParsingError("no certificate found in empty PEM data")
    try:
        return x509.load_pem_x509_certificates(pem)
    except ValueError as err:
        raise CertificateParsingError(f"invalid PEM encoded certificate: {err}") from err


def get_wait_time(
    cert_chain_pem: bytes,
    now: datetime,
    *,
    grace_period_ratio: float,
    min_grace_period: timedelta,
) -> timedelta:
    """Compute how long the leaf certificate can be used before rotation.

    The grace period is ``grace_period_ratio`` of the certificate lifetime,
    raised to ``min_grace_period`` when shorter.

    Args:
        cert_chain_pem: The certificate chain; the first entry is the leaf.
        now: The current time (timezone aware).
        grace_period_ratio: Share of the lifetime reserved for rotation.
        min_grace_period: Lower bound of the grace period.

    Returns:
        The time left until the grace period starts.

    Raises:
        CertificateParsingError: If the chain cannot be parsed.
        RotationRequiredError: If the certificate expired or is within its
            grace period.

    """
    cert = load_certificates(cert_chain_pem)[0]
    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    time_to_expire = not_after - now
    if time_to_expire < timedelta(0):
        raise RotationRequiredError(f"certificate already expired at {not_after}, but now is {now}")

    grace_period = (not_after - not_before) * grace_period_ratio
    if grace_period < min_grace_period:
        console.debug(f"grace period {grace_period} is less than the minimum {min_grace_period}, using the minimum")
        grace_period = min_grace_period

    wait_time = time_to_expire - grace_period
    if wait_time <= timedelta(0):
        raise RotationRequiredError(f"certificate expiring at {not_after} should be renewed now")
    return wait_time
