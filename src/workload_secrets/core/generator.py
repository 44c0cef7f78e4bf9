"""Certificate material generation.

This module turns a service account into a private key and a signed
certificate chain with the service account's identity URI and any
configured DNS names.
"""

from datetime import timedelta

from icecream import ic

from workload_secrets import console
from workload_secrets.ca.authority import CertificateAuthority
from workload_secrets.ca.certs import KEY_SIZE, generate_csr, identity_uri
from workload_secrets.exceptions import CSRGenerationError, SigningError
from workload_secrets.metrics import ControllerMetrics
from workload_secrets.models import DNSNameEntry


class CertificateGenerator:
    """Generates key and certificate material for service accounts.

    Attributes:
        ca: The certificate authority that signs the requests.
        metrics: Counters for CSR and signing failures.

    """

    def __init__(
        self,
        ca: CertificateAuthority,
        metrics: ControllerMetrics,
        *,
        cert_ttl: timedelta,
        dns_names: dict[str, DNSNameEntry] | None = None,
        trust_domain: str = "cluster.local",
        dual_use: bool = False,
        pkcs8_key: bool = False,
        for_ca: bool = False,
        key_size: int = KEY_SIZE,
    ) -> None:
        self.ca = ca
        self.metrics = metrics
        self.cert_ttl = cert_ttl
        self.dns_names = dns_names or {}
        self.trust_domain = trust_domain
        self.dual_use = dual_use
        self.pkcs8_key = pkcs8_key
        self.for_ca = for_ca
        self.key_size = key_size

    def subject_ids(self, service_account: str, namespace: str) -> list[str]:
        """Return the identities to certify, identity URI first.

        Args:
            service_account: The service account name.
            namespace: The service account namespace.

        Returns:
            The identity URI followed by any extra DNS names.

        """
        ids = [identity_uri(namespace, service_account, self.trust_domain)]

        # Control plane services in their own namespace, e.g. istio-pilot.istio-system.svc
        entry = self.dns_names.get(service_account)
        if entry is not None and entry.namespace == namespace:
            ids.append(f"{entry.service_name}.{entry.namespace}.svc")
            ids.append(f"{entry.service_name}.{entry.namespace}")

        custom = self.dns_names.get(f"{service_account}.{namespace}")
        if custom is not None:
            ids.extend(custom.custom_domains)
        return ids

    def generate(self, service_account: str, namespace: str) -> tuple[bytes, bytes]:
        """Generate a private key and a signed certificate chain.

        Signing is attempted once; failures are left to the next event.

        Args:
            service_account: The service account name.
            namespace: The service account namespace.

        Returns:
            A tuple of (cert_chain_pem, key_pem); the chain is the leaf
            certificate followed by the CA chain.

        Raises:
            CSRGenerationError: If the key or CSR cannot be generated.
            SigningError: If the CA refuses or fails to sign.

        """
        ids = self.subject_ids(service_account, namespace)
        ic(ids)

        try:
            csr_pem, key_pem = generate_csr(
                ids,
                key_size=self.key_size,
                dual_use=self.dual_use,
                pkcs8_key=self.pkcs8_key,
            )
        except CSRGenerationError as e:
            console.error(f"CSR generation error ({e})")
            self.metrics.csr_errors.inc()
            raise

        cert_chain_pem = self.ca.get_ca_key_cert_bundle().cert_chain_pem
        try:
            cert_pem = self.ca.sign(csr_pem, ids, self.cert_ttl, self.for_ca)
        except SigningError as e:
            console.error(f"CSR signing error ({e})")
            self.metrics.cert_sign_errors.labels(error_type=e.error_type.value).inc()
            raise

        return cert_pem + cert_chain_pem, key_pem
