"""Prometheus counters for the secret controller."""

from prometheus_client import REGISTRY, CollectorRegistry, Counter, start_http_server


class ControllerMetrics:
    """Counters updated by the controller and its collaborators.

    Args:
        registry: Registry the counters are bound to. Tests pass a fresh
            CollectorRegistry to keep their counts isolated.

    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or REGISTRY

        self.service_account_creation = Counter(
            "workload_secrets_service_account_creations",
            "Service account additions observed by the controller",
            registry=self.registry,
        )
        self.service_account_deletion = Counter(
            "workload_secrets_service_account_deletions",
            "Service account deletions observed by the controller",
            registry=self.registry,
        )
        self.secret_deletion = Counter(
            "workload_secrets_secret_deletions",
            "Managed secret deletions whose service account still exists",
            registry=self.registry,
        )
        self.csr_errors = Counter(
            "workload_secrets_csr_errors",
            "Failures to generate a private key and CSR",
            registry=self.registry,
        )
        self.cert_sign_errors = Counter(
            "workload_secrets_cert_sign_errors",
            "Certificate signing failures",
            ["error_type"],
            registry=self.registry,
        )

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP on the given port."""
        start_http_server(port, registry=self.registry)
