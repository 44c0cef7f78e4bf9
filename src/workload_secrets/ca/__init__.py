"""Certificate authority subpackage.

This package contains certificate utilities, the in-memory signing
bundle, the CA implementations, and trust root synchronization.
"""

from workload_secrets.ca.authority import CertificateAuthority, KeyCertBundleCA, PluggedCA, SelfSignedCA
from workload_secrets.ca.bundle import KeyCertBundle
from workload_secrets.ca.certs import generate_csr, get_wait_time, identity_uri
from workload_secrets.ca.sync import CABundleSynchronizer, CASecretLoader

__all__ = [
    # authority
    "CertificateAuthority",
    "KeyCertBundleCA",
    "SelfSignedCA",
    "PluggedCA",
    # bundle
    "KeyCertBundle",
    # certs
    "identity_uri",
    "generate_csr",
    "get_wait_time",
    # sync
    "CABundleSynchronizer",
    "CASecretLoader",
]
