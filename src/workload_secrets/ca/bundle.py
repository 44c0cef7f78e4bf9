"""In-memory CA signing material.

This module provides the KeyCertBundle class, the local cache of the
certificate authority's certificate, private key, intermediate chain, and
root certificate.
"""

import threading

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes

from workload_secrets.ca.certs import load_certificates
from workload_secrets.exceptions import BundleVerificationError, CertificateParsingError


def _public_key_bytes(key) -> bytes:
    return key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)


class KeyCertBundle:
    """Thread-safe holder of the CA signing material.

    Every accessor takes ``lock``. Callers that need to read, compare, and
    then replace the material hold ``lock`` for the whole sequence; the lock
    is reentrant so the accessors can be called while it is held.

    Attributes:
        lock: Reentrant lock guarding the bundle contents.

    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._cert_pem = b""
        self._key_pem = b""
        self._cert_chain_pem = b""
        self._root_cert_pem = b""
        self._cert: x509.Certificate | None = None
        self._key: CertificateIssuerPrivateKeyTypes | None = None

    @classmethod
    def from_pem(
        cls,
        cert_pem: bytes,
        key_pem: bytes,
        cert_chain_pem: bytes,
        root_cert_pem: bytes,
    ) -> "KeyCertBundle":
        """Create a verified bundle.

        Raises:
            BundleVerificationError: If the material does not verify.

        """
        bundle = cls()
        bundle.verify_and_set_all(cert_pem, key_pem, cert_chain_pem, root_cert_pem)
        return bundle

    def verify_and_set_all(
        self,
        cert_pem: bytes,
        key_pem: bytes,
        cert_chain_pem: bytes | None,
        root_cert_pem: bytes,
    ) -> None:
        """Verify new signing material and atomically replace the bundle with it.

        The private key must match the certificate, and the certificate must
        chain up to the root through ``cert_chain_pem``. The bundle is left
        untouched when verification fails.

        Args:
            cert_pem: The CA certificate.
            key_pem: The CA private key.
            cert_chain_pem: Intermediate certificates, empty for a self-signed CA.
            root_cert_pem: The root certificate.

        Raises:
            BundleVerificationError: If any part fails to parse or verify.

        """
        cert_chain_pem = cert_chain_pem or b""
        try:
            cert = load_certificates(cert_pem)[0]
            chain = load_certificates(cert_chain_pem) if cert_chain_pem else []
            roots = load_certificates(root_cert_pem)
        except CertificateParsingError as err:
            raise BundleVerificationError(f"failed to parse CA material: {err}") from err

        try:
            key = serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError) as err:
            raise BundleVerificationError(f"failed to parse CA private key: {err}") from err

        if _public_key_bytes(key.public_key()) != _public_key_bytes(cert.public_key()):
            raise BundleVerificationError("the CA private key does not match the CA certificate")

        # Walk up through the intermediates, in any order, until a root issued the current certificate.
        current = cert
        for _ in range(len(chain) + 1):
            if any(self._issued_by(current, root) for root in roots):
                break
            parent = next((c for c in chain if c != current and self._issued_by(current, c)), None)
            if parent is None:
                break
            current = parent
        if not any(self._issued_by(current, root) for root in roots):
            raise BundleVerificationError("the CA certificate does not chain up to the root certificate")

        with self.lock:
            self._cert_pem = cert_pem
            self._key_pem = key_pem
            self._cert_chain_pem = cert_chain_pem
            self._root_cert_pem = root_cert_pem
            self._cert = cert
            self._key = key

    @staticmethod
    def _issued_by(cert: x509.Certificate, root: x509.Certificate) -> bool:
        if cert == root:
            return True
        try:
            cert.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature):
            return False
        return True

    def get_all_pem(self) -> tuple[bytes, bytes, bytes, bytes]:
        """Return (cert, key, chain, root) PEM bytes from a single snapshot."""
        with self.lock:
            return self._cert_pem, self._key_pem, self._cert_chain_pem, self._root_cert_pem

    def get_signing_material(self) -> tuple[x509.Certificate | None, CertificateIssuerPrivateKeyTypes | None]:
        """Return the parsed CA certificate and key, or Nones before the bundle is set."""
        with self.lock:
            return self._cert, self._key

    @property
    def cert_pem(self) -> bytes:
        """The CA certificate."""
        with self.lock:
            return self._cert_pem

    @property
    def cert_chain_pem(self) -> bytes:
        """The intermediate chain appended to issued certificates."""
        with self.lock:
            return self._cert_chain_pem

    @property
    def root_cert_pem(self) -> bytes:
        """The trust root distributed to workloads."""
        with self.lock:
            return self._root_cert_pem

    def __repr__(self) -> str:
        """Return a detailed string representation for debugging."""
        cert, _ = self.get_signing_material()
        subject = cert.subject.rfc4514_string() if cert is not None else None
        return f"KeyCertBundle(subject={subject!r})"
