"""Data models for workload-secrets.

This module provides the configuration structures consumed by the
controller and its collaborators.
"""

from dataclasses import dataclass, field
from datetime import timedelta

from workload_secrets import console
from workload_secrets.exceptions import ConfigurationError

RECOMMENDED_MIN_GRACE_PERIOD_RATIO = 0.2
RECOMMENDED_MAX_GRACE_PERIOD_RATIO = 0.8

# The namespace sentinel that selects every namespace in the cluster.
NAMESPACE_ALL = ""


@dataclass(frozen=True, slots=True)
class DNSNameEntry:
    """Extra DNS subject alternative names for a service account.

    Entries keyed by the bare service account name add
    ``service_name.namespace.svc`` and ``service_name.namespace`` when the
    namespace matches. Entries keyed by ``name.namespace`` add every custom
    domain.

    Attributes:
        service_name: The service name used to build the DNS names.
        namespace: The namespace the service account must live in.
        custom_domains: User-defined domains appended verbatim.

    """

    service_name: str
    namespace: str
    custom_domains: tuple[str, ...] = ()


@dataclass(slots=True)
class ControllerSettings:
    """Settings for the secret controller.

    Attributes:
        cert_ttl: Lifetime of issued workload certificates.
        max_cert_ttl: Largest lifetime the CA agrees to sign.
        grace_period_ratio: Share of the certificate lifetime before expiry
            during which the certificate gets rotated.
        min_grace_period: Lower bound of the rotation grace period.
        dual_use: Whether certificates carry the identity in the subject CN too.
        pkcs8_key: Whether private keys are encoded as PKCS#8.
        for_ca: Whether issued certificates are CA certificates.
        explicit_opt_in: Whether namespaces must opt in through a label.
        namespaces: Namespaces to watch; ``""`` watches all of them.
        dns_names: Extra DNS names keyed by service account name or
            ``name.namespace``.
        ca_storage_namespace: Namespace holding the shared CA secret.
        trust_domain: Trust domain of the identity URIs.
        resync_period: Interval between full re-lists of watched objects.

    """

    cert_ttl: timedelta = timedelta(days=90)
    max_cert_ttl: timedelta = timedelta(days=90)
    grace_period_ratio: float = 0.5
    min_grace_period: timedelta = timedelta(minutes=10)
    dual_use: bool = False
    pkcs8_key: bool = False
    for_ca: bool = False
    explicit_opt_in: bool = False
    namespaces: list[str] = field(default_factory=lambda: [NAMESPACE_ALL])
    dns_names: dict[str, DNSNameEntry] = field(default_factory=dict)
    ca_storage_namespace: str = "istio-system"
    trust_domain: str = "cluster.local"
    resync_period: timedelta = timedelta(minutes=1)

    def validate(self) -> None:
        """Check the settings before the controller starts.

        Raises:
            ConfigurationError: If a value is outside its valid range.

        """
        if not 0 <= self.grace_period_ratio <= 1:
            raise ConfigurationError(f"grace period ratio {self.grace_period_ratio} should be within [0, 1]")
        if not RECOMMENDED_MIN_GRACE_PERIOD_RATIO <= self.grace_period_ratio <= RECOMMENDED_MAX_GRACE_PERIOD_RATIO:
            console.warning(
                f"grace period ratio {self.grace_period_ratio} is out of the recommended window "
                f"[{RECOMMENDED_MIN_GRACE_PERIOD_RATIO:.2f}, {RECOMMENDED_MAX_GRACE_PERIOD_RATIO:.2f}]"
            )
        if self.cert_ttl <= timedelta(0):
            raise ConfigurationError(f"certificate TTL {self.cert_ttl} must be positive")
        if self.cert_ttl > self.max_cert_ttl:
            raise ConfigurationError(
                f"certificate TTL {self.cert_ttl} is greater than the max allowed TTL {self.max_cert_ttl}"
            )
        if self.resync_period <= timedelta(0):
            raise ConfigurationError(f"resync period {self.resync_period} must be positive")
        if not self.namespaces:
            raise ConfigurationError("at least one namespace must be watched")
        if not self.trust_domain:
            raise ConfigurationError("trust domain cannot be empty")
