"""Certificate authority capability and its implementations.

This module defines the CertificateAuthority interface the controller
depends on, plus the self-signed and plugged-in variants that sign
workload certificates from a KeyCertBundle.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from icecream import ic
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from workload_secrets import console
from workload_secrets.ca.bundle import KeyCertBundle
from workload_secrets.ca.certs import san_entry
from workload_secrets.exceptions import BundleVerificationError, SigningError, SigningErrorType
from workload_secrets.secrets.builder import decode_value, encode_data

# The secret persisting the self-signed CA key and certificate.
CA_SECRET_NAME = "istio-ca-secret"
CA_CERT_ID = "ca-cert.pem"
CA_PRIVATE_KEY_ID = "ca-key.pem"
CA_SECRET_TYPE = "istio.io/ca-root"

# Backdate issued certificates to tolerate clock skew between nodes.
_CLOCK_SKEW = timedelta(minutes=2)


class CertificateAuthority(Protocol):
    """Signing capability consumed by the controller."""

    def sign(self, csr_pem: bytes, subject_ids: list[str], ttl: timedelta, for_ca: bool) -> bytes:
        """Sign a CSR and return the PEM encoded leaf certificate."""
        ...

    def sign_with_cert_chain(self, csr_pem: bytes, subject_ids: list[str], ttl: timedelta, for_ca: bool) -> bytes:
        """Sign a CSR and return the leaf certificate followed by the CA chain."""
        ...

    def get_ca_key_cert_bundle(self) -> KeyCertBundle:
        """Return the bundle holding the signing material."""
        ...


class KeyCertBundleCA:
    """Certificate authority signing with the material of a KeyCertBundle.

    Attributes:
        bundle: The signing material.
        max_cert_ttl: The largest certificate lifetime this CA accepts.

    """

    def __init__(self, bundle: KeyCertBundle, max_cert_ttl: timedelta = timedelta(days=90)) -> None:
        self.bundle = bundle
        self.max_cert_ttl = max_cert_ttl

    def get_ca_key_cert_bundle(self) -> KeyCertBundle:
        return self.bundle

    def sign(self, csr_pem: bytes, subject_ids: list[str], ttl: timedelta, for_ca: bool) -> bytes:
        """Sign a certificate signing request.

        Args:
            csr_pem: The PEM encoded request.
            subject_ids: Identities written to the subject alternative names.
            ttl: Requested certificate lifetime.
            for_ca: Whether the certificate may sign other certificates.

        Returns:
            The PEM encoded certificate.

        Raises:
            SigningError: If the CA is not ready, the request is invalid,
                the TTL is too long, or the certificate cannot be built.

        """
        ca_cert, ca_key = self.bundle.get_signing_material()
        if ca_cert is None or ca_key is None:
            raise SigningError(SigningErrorType.CA_NOT_READY, "CA signing material is not loaded")

        try:
            csr = x509.load_pem_x509_csr(csr_pem)
        except ValueError as err:
            raise SigningError(SigningErrorType.CSR_ERROR, f"failed to parse CSR: {err}") from err
        if not csr.is_signature_valid:
            raise SigningError(SigningErrorType.CSR_ERROR, "CSR signature is invalid")

        if ttl > self.max_cert_ttl:
            raise SigningError(
                SigningErrorType.TTL_ERROR,
                f"requested TTL {ttl} is greater than the max allowed TTL {self.max_cert_ttl}",
            )
        if not subject_ids:
            raise SigningError(SigningErrorType.CSR_ERROR, "no subject identities requested")

        now = datetime.now(timezone.utc)
        try:
            builder = (
                x509.CertificateBuilder()
                .subject_name(csr.subject)
                .issuer_name(ca_cert.subject)
                .public_key(csr.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - _CLOCK_SKEW)
                .not_valid_after(now + ttl)
                .add_extension(x509.BasicConstraints(ca=for_ca, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=not for_ca,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=for_ca,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.SubjectAlternativeName([san_entry(i) for i in subject_ids]),
                    critical=len(csr.subject) == 0,
                )
            )
            if not for_ca:
                builder = builder.add_extension(
                    x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
                    critical=False,
                )
            cert = builder.sign(ca_key, hashes.SHA256())
        except (ValueError, TypeError) as err:
            raise SigningError(SigningErrorType.CERT_GEN_ERROR, f"failed to build certificate: {err}") from err

        return cert.public_bytes(serialization.Encoding.PEM)

    def sign_with_cert_chain(self, csr_pem: bytes, subject_ids: list[str], ttl: timedelta, for_ca: bool) -> bytes:
        cert_pem = self.sign(csr_pem, subject_ids, ttl, for_ca)
        return cert_pem + self.bundle.cert_chain_pem

    def __repr__(self) -> str:
        """Return a detailed string representation for debugging."""
        return f"{type(self).__name__}(bundle={self.bundle!r}, max_cert_ttl={self.max_cert_ttl!r})"


def generate_self_signed_root(org: str, ttl: timedelta, key_size: int = 2048) -> tuple[bytes, bytes]:
    """Generate a self-signed CA certificate and key.

    Args:
        org: Organization written to the subject.
        ttl: Lifetime of the root certificate.
        key_size: RSA key size in bits.

    Returns:
        A tuple of (cert_pem, key_pem).

    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, org)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - _CLOCK_SKEW)
        .not_valid_after(now + ttl)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert.public_bytes(serialization.Encoding.PEM), key_pem


class SelfSignedCA(KeyCertBundleCA):
    """CA whose root certificate is also its signing certificate.

    The root and CA certificate are identical and the intermediate chain is
    empty.
    """

    @classmethod
    def generate(cls, org: str, ca_ttl: timedelta, max_cert_ttl: timedelta = timedelta(days=90)) -> "SelfSignedCA":
        """Create a CA with a freshly generated root."""
        cert_pem, key_pem = generate_self_signed_root(org, ca_ttl)
        return cls(KeyCertBundle.from_pem(cert_pem, key_pem, b"", cert_pem), max_cert_ttl)

    @classmethod
    def load_or_create(
        cls,
        core_api: client.CoreV1Api,
        namespace: str,
        *,
        org: str,
        ca_ttl: timedelta = timedelta(days=3650),
        max_cert_ttl: timedelta = timedelta(days=90),
    ) -> "SelfSignedCA":
        """Reuse the CA persisted in the cluster, or create and persist one.

        When several replicas start together, only one of them wins the
        create call; the others load the winner's secret.

        Args:
            core_api: Kubernetes core API client.
            namespace: Namespace of the CA secret.
            org: Organization of a newly generated root.
            ca_ttl: Lifetime of a newly generated root.
            max_cert_ttl: The largest certificate lifetime to sign.

        Returns:
            The CA.

        Raises:
            ApiException: If the CA secret cannot be read or created.
            BundleVerificationError: If the persisted material is invalid.

        """
        try:
            existing = core_api.read_namespaced_secret(CA_SECRET_NAME, namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            existing = None

        if existing is None:
            console.info(f"CA secret {namespace}/{CA_SECRET_NAME} not found, generating a self-signed root")
            cert_pem, key_pem = generate_self_signed_root(org, ca_ttl)
            body = client.V1Secret(
                api_version="v1",
                kind="Secret",
                metadata=client.V1ObjectMeta(name=CA_SECRET_NAME, namespace=namespace),
                type=CA_SECRET_TYPE,
                data=encode_data({CA_CERT_ID: cert_pem, CA_PRIVATE_KEY_ID: key_pem}),
            )
            try:
                core_api.create_namespaced_secret(namespace, body)
                console.success(f"CA secret {namespace}/{CA_SECRET_NAME} created")
            except ApiException as e:
                if e.status != 409:
                    raise
                console.info(f"CA secret {namespace}/{CA_SECRET_NAME} was created by another replica, loading it")
                existing = core_api.read_namespaced_secret(CA_SECRET_NAME, namespace)

        if existing is not None:
            cert_pem = decode_value(existing, CA_CERT_ID)
            key_pem = decode_value(existing, CA_PRIVATE_KEY_ID)

        ic(namespace, len(cert_pem))
        try:
            bundle = KeyCertBundle.from_pem(cert_pem, key_pem, b"", cert_pem)
        except BundleVerificationError:
            console.error(f"CA secret {namespace}/{CA_SECRET_NAME} holds invalid material")
            raise
        return cls(bundle, max_cert_ttl)


class PluggedCA(KeyCertBundleCA):
    """CA using an operator supplied signing certificate, key, chain, and root."""

    @classmethod
    def from_files(
        cls,
        cert_file: str | Path,
        key_file: str | Path,
        cert_chain_file: str | Path,
        root_cert_file: str | Path,
        max_cert_ttl: timedelta = timedelta(days=90),
    ) -> "PluggedCA":
        """Load the signing material from PEM files.

        Raises:
            OSError: If a file cannot be read.
            BundleVerificationError: If the material does not verify.

        """
        bundle = KeyCertBundle.from_pem(
            Path(cert_file).read_bytes(),
            Path(key_file).read_bytes(),
            Path(cert_chain_file).read_bytes(),
            Path(root_cert_file).read_bytes(),
        )
        console.info(f"Loaded plugged CA signing material from {cert_file}")
        return cls(bundle, max_cert_ttl)
