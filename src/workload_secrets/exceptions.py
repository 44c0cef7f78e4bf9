"""Custom exceptions for workload-secrets.

This module defines the exception hierarchy used throughout the controller
to provide meaningful error messages and proper error handling.
"""

from enum import Enum


class WorkloadSecretsError(Exception):
    """Base exception for all workload-secrets errors.

    All custom exceptions in this package inherit from this class,
    allowing event handlers to catch every controller error with a single
    except clause.
    """

    pass


class ConfigurationError(WorkloadSecretsError):
    """Raised when the controller configuration is invalid.

    This can occur when:
    - The grace period ratio is outside [0, 1]
    - The settings file is missing or malformed
    - The identity URI trust domain is empty
    """

    pass


class ClusterConnectionError(WorkloadSecretsError):
    """Raised when connection to the Kubernetes cluster fails.

    This can occur when:
    - The kubeconfig is invalid or missing
    - The in-cluster service account token is unavailable
    - The cluster is unreachable
    """

    pass


class CSRGenerationError(WorkloadSecretsError):
    """Raised when a private key or certificate signing request cannot be built."""

    pass


class SigningErrorType(str, Enum):
    """Categories of certificate signing failures."""

    CA_NOT_READY = "CA_NOT_READY"
    CSR_ERROR = "CSR_ERROR"
    TTL_ERROR = "TTL_ERROR"
    CERT_GEN_ERROR = "CERT_GEN_ERROR"


class SigningError(WorkloadSecretsError):
    """Raised by a certificate authority when it refuses or fails to sign a CSR.

    Attributes:
        error_type: The category of the failure, used for metrics labels.

    """

    def __init__(self, error_type: SigningErrorType, message: str) -> None:
        super().__init__(message)
        self.error_type = error_type

    def __str__(self) -> str:
        return f"{self.error_type.value}: {super().__str__()}"


class CertificateParsingError(WorkloadSecretsError):
    """Raised when PEM encoded certificate or key material cannot be parsed."""

    pass


class RotationRequiredError(WorkloadSecretsError):
    """Raised when a certificate has expired or entered its rotation grace window."""

    pass


class CASecretLoadError(WorkloadSecretsError):
    """Raised when the shared CA secret cannot be read before the load timeout."""

    pass


class BundleVerificationError(WorkloadSecretsError):
    """Raised when CA key and certificate material fails verification.

    This typically means:
    - The private key does not match the CA certificate
    - The CA certificate does not chain up to the root certificate
    - One of the PEM blocks is malformed
    """

    pass
