"""Managed secret shape and data encoding.

This module defines the persisted layout of the per-service-account
secrets and converts between raw bytes and the base64 strings the
Kubernetes API carries in ``Secret.data``.
"""

import base64
import binascii

from kubernetes import client

# The type marker of secrets managed by this controller.
MANAGED_SECRET_TYPE = "istio.io/key-and-cert"

# Data keys of a managed secret.
CERT_CHAIN_ID = "cert-chain.pem"
PRIVATE_KEY_ID = "key.pem"
ROOT_CERT_ID = "root-cert.pem"

# The annotation recording the owning service account.
SERVICE_ACCOUNT_NAME_ANNOTATION_KEY = "istio.io/service-account.name"

SECRET_NAME_PREFIX = "istio."

# Field selector restricting list and watch calls to managed secrets.
MANAGED_SECRET_FIELD_SELECTOR = f"type={MANAGED_SECRET_TYPE}"


def secret_name(service_account: str) -> str:
    """Return the managed secret name for a service account."""
    return SECRET_NAME_PREFIX + service_account


def encode_data(data: dict[str, bytes]) -> dict[str, str]:
    """Base64 encode secret data for the Kubernetes API."""
    return {key: base64.b64encode(value).decode("ascii") for key, value in data.items()}


def decode_value(secret: client.V1Secret, key: str) -> bytes:
    """Return one decoded data entry of a secret.

    Missing keys and undecodable values yield empty bytes, which never
    compare equal to real PEM material.

    Args:
        secret: The secret as returned by the Kubernetes API.
        key: The data key.

    Returns:
        The decoded bytes.

    """
    encoded = (secret.data or {}).get(key)
    if not encoded:
        return b""
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return b""


def build_secret(
    service_account: str,
    namespace: str,
    *,
    cert_chain: bytes | None = None,
    private_key: bytes | None = None,
    root_cert: bytes | None = None,
) -> client.V1Secret:
    """Build the canonical managed secret of a service account.

    Args:
        service_account: The owning service account name.
        namespace: The namespace of the service account.
        cert_chain: Leaf certificate followed by the CA chain.
        private_key: The leaf private key.
        root_cert: The trust root.

    Returns:
        The secret; ``data`` is None when no material was given.

    """
    data = None
    if cert_chain is not None or private_key is not None or root_cert is not None:
        data = encode_data(
            {
                CERT_CHAIN_ID: cert_chain or b"",
                PRIVATE_KEY_ID: private_key or b"",
                ROOT_CERT_ID: root_cert or b"",
            }
        )

    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=secret_name(service_account),
            namespace=namespace,
            annotations={SERVICE_ACCOUNT_NAME_ANNOTATION_KEY: service_account},
        ),
        type=MANAGED_SECRET_TYPE,
        data=data,
    )


def owning_service_account(secret: client.V1Secret) -> str:
    """Return the service account recorded on a managed secret, or an empty string."""
    annotations = (secret.metadata.annotations if secret.metadata else None) or {}
    return annotations.get(SERVICE_ACCOUNT_NAME_ANNOTATION_KEY, "")
