"""workload-secrets: key and certificate secrets for Kubernetes service accounts.

This package provides a controller that keeps one key and certificate
secret per enabled service account, rotates certificates before they
expire, and keeps the distributed trust root in line with the CA secret
shared by all controller replicas.

Example usage:
    from workload_secrets import ControllerSettings, SelfSignedCA, WorkloadSecretController

    ca = SelfSignedCA.load_or_create(core_api, "istio-system", org="cluster.local")
    controller = WorkloadSecretController(ca, core_api, ControllerSettings())
    controller.run()
"""

__version__ = "0.1.0"

from workload_secrets.ca.authority import PluggedCA, SelfSignedCA
from workload_secrets.core.controller import WorkloadSecretController
from workload_secrets.exceptions import (
    BundleVerificationError,
    CASecretLoadError,
    CertificateParsingError,
    ClusterConnectionError,
    ConfigurationError,
    CSRGenerationError,
    RotationRequiredError,
    SigningError,
    SigningErrorType,
    WorkloadSecretsError,
)
from workload_secrets.models import ControllerSettings, DNSNameEntry

__all__ = [
    # Version
    "__version__",
    # Classes
    "WorkloadSecretController",
    "ControllerSettings",
    "DNSNameEntry",
    "SelfSignedCA",
    "PluggedCA",
    # Exceptions
    "WorkloadSecretsError",
    "BundleVerificationError",
    "CASecretLoadError",
    "CertificateParsingError",
    "ClusterConnectionError",
    "ConfigurationError",
    "CSRGenerationError",
    "RotationRequiredError",
    "SigningError",
    "SigningErrorType",
]
