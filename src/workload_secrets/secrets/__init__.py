"""Managed secrets subpackage.

This package contains the persisted secret layout and the lifecycle
manager that creates, deletes, and refreshes secrets. The lifecycle
manager depends on the CA subpackage, which itself needs the layout, so
only the layout is re-exported here.
"""

from workload_secrets.secrets.builder import (
    CERT_CHAIN_ID,
    MANAGED_SECRET_TYPE,
    PRIVATE_KEY_ID,
    ROOT_CERT_ID,
    SERVICE_ACCOUNT_NAME_ANNOTATION_KEY,
    build_secret,
    secret_name,
)

__all__ = [
    "CERT_CHAIN_ID",
    "PRIVATE_KEY_ID",
    "ROOT_CERT_ID",
    "MANAGED_SECRET_TYPE",
    "SERVICE_ACCOUNT_NAME_ANNOTATION_KEY",
    "build_secret",
    "secret_name",
]
