"""Managed secret lifecycle.

This module creates, deletes, and refreshes the per-service-account
secrets holding key and certificate material.
"""

import copy
import threading
from collections.abc import Callable
from datetime import timedelta
from typing import Any, Protocol

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from workload_secrets import console
from workload_secrets.ca.authority import CertificateAuthority
from workload_secrets.core.generator import CertificateGenerator
from workload_secrets.exceptions import WorkloadSecretsError
from workload_secrets.secrets.builder import (
    CERT_CHAIN_ID,
    PRIVATE_KEY_ID,
    ROOT_CERT_ID,
    build_secret,
    encode_data,
    owning_service_account,
    secret_name,
)

# The number of attempts when creating a secret.
SECRET_CREATION_RETRY = 3
SECRET_CREATION_RETRY_INTERVAL = timedelta(seconds=1)


class SecretLookup(Protocol):
    """Read access to the local cache of managed secrets."""

    def get(self, namespace: str, name: str) -> Any | None: ...


class SecretManager:
    """Creates, deletes, and refreshes managed secrets.

    Args:
        core_api: Kubernetes core API client.
        store: Local cache of managed secrets kept current by the watch.
        generator: Produces key and certificate material.
        ca: Certificate authority providing the current root certificate.
        stop: Shared stop signal, polled between creation attempts.
        retries: Number of creation attempts.
        retry_interval: Delay between creation attempts.
        sleep: Waits for the given number of seconds and returns True when
            the loop must stop. Defaults to waiting on ``stop``.

    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        store: SecretLookup,
        generator: CertificateGenerator,
        ca: CertificateAuthority,
        *,
        stop: threading.Event | None = None,
        retries: int = SECRET_CREATION_RETRY,
        retry_interval: timedelta = SECRET_CREATION_RETRY_INTERVAL,
        sleep: Callable[[float], bool] | None = None,
    ) -> None:
        self.core_api = core_api
        self.store = store
        self.generator = generator
        self.ca = ca
        self.retries = retries
        self.retry_interval = retry_interval
        self._stop = stop or threading.Event()
        self._sleep = sleep or self._stop.wait

    def upsert(self, service_account: str, namespace: str) -> None:
        """Create the managed secret of a service account if it does not exist.

        Existing secrets are left alone; rotation happens on secret updates.
        """
        name = secret_name(service_account)
        if self.store.get(namespace, name) is not None:
            return

        try:
            chain, key = self.generator.generate(service_account, namespace)
        except WorkloadSecretsError as e:
            console.error(f"Failed to generate key/cert for {namespace}/{name} (error {e})")
            return

        secret = build_secret(
            service_account,
            namespace,
            cert_chain=chain,
            private_key=key,
            root_cert=self.ca.get_ca_key_cert_bundle().root_cert_pem,
        )

        # Retry to ride out transient API server and network failures.
        for attempt in range(1, self.retries + 1):
            try:
                self.core_api.create_namespaced_secret(namespace, secret)
                console.success(f"Secret {namespace}/{name} is created successfully")
                return
            except ApiException as e:
                if e.status == 409:
                    console.info(f"Secret {namespace}/{name} already exists, skip")
                    return
                error = f"{e.status} {e.reason}"
            except HTTPError as e:
                error = str(e)

            console.error(
                f"Failed to create secret {namespace}/{name} in attempt {attempt}/{self.retries} (error: {error})"
            )
            if attempt < self.retries and self._sleep(self.retry_interval.total_seconds()):
                console.warning(f"Stopped while creating secret {namespace}/{name}")
                return

        console.error(f"Giving up creating secret {namespace}/{name} after {self.retries} attempts")

    def delete(self, service_account: str, namespace: str) -> bool:
        """Delete the managed secret of a service account.

        A secret that is already gone counts as deleted.

        Returns:
            True if the secret is gone, False if the delete call failed.

        """
        name = secret_name(service_account)
        try:
            self.core_api.delete_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status != 404:
                console.error(f"Failed to delete secret {namespace}/{name} (error: {e.status} {e.reason})")
                return False
        except HTTPError as e:
            console.error(f"Failed to delete secret {namespace}/{name} (error: {e})")
            return False

        console.success(f"Secret {namespace}/{name} deleted successfully")
        return True

    def refresh(self, secret: client.V1Secret) -> client.V1Secret:
        """Replace the key and certificates of an existing managed secret.

        The cached object is not modified; a copy with new data is written.

        Args:
            secret: The managed secret as observed by the watch.

        Returns:
            The secret returned by the API server.

        Raises:
            WorkloadSecretsError: If new material cannot be generated.
            ApiException: If the update call fails.
            HTTPError: If the API server cannot be reached.

        """
        namespace = secret.metadata.namespace
        service_account = owning_service_account(secret)

        chain, key = self.generator.generate(service_account, namespace)

        updated = copy.deepcopy(secret)
        updated.data = {
            **(updated.data or {}),
            **encode_data(
                {
                    CERT_CHAIN_ID: chain,
                    PRIVATE_KEY_ID: key,
                    ROOT_CERT_ID: self.ca.get_ca_key_cert_bundle().root_cert_pem,
                }
            ),
        }
        return self.core_api.replace_namespaced_secret(secret.metadata.name, namespace, updated)
