"""Trust root synchronization across controller replicas.

Several replicas may each generate a self-signed root and race to persist
it. The CA secret stored in the cluster is the source of truth; this
module reloads the local KeyCertBundle from it when the two disagree.
"""

import threading
import time
from collections.abc import Callable
from datetime import timedelta

from icecream import ic
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from workload_secrets import console
from workload_secrets.ca.authority import CA_CERT_ID, CA_PRIVATE_KEY_ID, CA_SECRET_NAME, CertificateAuthority
from workload_secrets.exceptions import BundleVerificationError, CASecretLoadError
from workload_secrets.secrets.builder import decode_value

SYNC_COOLDOWN = timedelta(seconds=30)
CA_SECRET_POLL_INTERVAL = timedelta(milliseconds=100)
CA_SECRET_LOAD_TIMEOUT = timedelta(seconds=5)


class CASecretLoader:
    """Reads the shared CA secret with bounded, fixed-interval retry.

    Args:
        core_api: Kubernetes core API client.
        stop: Shared stop signal; a set signal abandons the retry loop.
        clock: Monotonic clock in seconds.
        sleep: Waits for the given number of seconds and returns True when
            the loop must stop. Defaults to waiting on ``stop``.

    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        *,
        stop: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], bool] | None = None,
    ) -> None:
        self.core_api = core_api
        self._stop = stop or threading.Event()
        self._clock = clock
        self._sleep = sleep or self._stop.wait

    def load_with_retry(
        self,
        name: str,
        namespace: str,
        interval: timedelta = CA_SECRET_POLL_INTERVAL,
        timeout: timedelta = CA_SECRET_LOAD_TIMEOUT,
    ) -> client.V1Secret:
        """Read a secret, retrying until it succeeds or the timeout elapses.

        Args:
            name: Secret name.
            namespace: Secret namespace.
            interval: Delay between attempts.
            timeout: Overall time budget.

        Returns:
            The secret.

        Raises:
            CASecretLoadError: If the timeout elapses or the stop signal is set.

        """
        deadline = self._clock() + timeout.total_seconds()
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.core_api.read_namespaced_secret(name, namespace)
            except (ApiException, HTTPError) as e:
                last_error = e
                console.debug(f"Attempt {attempt} to load secret {namespace}/{name} failed: {e}")

            if self._clock() >= deadline:
                raise CASecretLoadError(
                    f"timed out after {attempt} attempts loading secret {namespace}/{name}: {last_error}"
                )
            if self._sleep(interval.total_seconds()):
                raise CASecretLoadError(f"stopped while loading secret {namespace}/{name}")


class CABundleSynchronizer:
    """Keeps the in-memory KeyCertBundle in line with the shared CA secret.

    The cool-down check, the secret load, the comparison, the reload, and
    the sync clock update all happen while holding the synchronizer lock,
    so concurrent callers never reload twice. The bundle lock is only taken
    by the atomic reload itself; readers of the bundle are never held up by
    the CA secret load.

    Attributes:
        last_sync_time: Monotonic time of the last successful sync, or None.

    """

    def __init__(
        self,
        ca: CertificateAuthority,
        loader: CASecretLoader,
        ca_namespace: str,
        *,
        cooldown: timedelta = SYNC_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ca = ca
        self.loader = loader
        self.ca_namespace = ca_namespace
        self.cooldown = cooldown
        self._clock = clock
        self.last_sync_time: float | None = None
        self._lock = threading.Lock()

    def sync_if_needed(self, root_cert_in_mem: bytes, ca_cert_in_mem: bytes) -> bytes:
        """Reload the bundle from the CA secret if the CA certificates differ.

        Args:
            root_cert_in_mem: The root certificate the caller currently holds.
            ca_cert_in_mem: The CA certificate the caller currently holds.

        Returns:
            The resolved root certificate. Inside the cool-down window this
            is ``root_cert_in_mem`` unchanged.

        Raises:
            CASecretLoadError: If the CA secret cannot be loaded.
            BundleVerificationError: If the CA secret material fails to verify.

        """
        bundle = self.ca.get_ca_key_cert_bundle()
        with self._lock:
            now = self._clock()
            if self.last_sync_time is not None and now - self.last_sync_time < self.cooldown.total_seconds():
                return root_cert_in_mem

            ca_secret = self.loader.load_with_retry(CA_SECRET_NAME, self.ca_namespace)
            ca_cert = decode_value(ca_secret, CA_CERT_ID)
            ic(len(ca_cert), len(ca_cert_in_mem))

            if ca_cert != ca_cert_in_mem:
                console.warning(
                    f"CA cert in KeyCertBundle does not match CA cert in {self.ca_namespace}/{CA_SECRET_NAME}. "
                    "Reloading root cert into KeyCertBundle"
                )
                # With a self-signed CA the root and CA certificates are the same and there is no chain.
                root_cert_in_mem = ca_cert
                try:
                    bundle.verify_and_set_all(ca_cert, decode_value(ca_secret, CA_PRIVATE_KEY_ID), b"", ca_cert)
                except BundleVerificationError as e:
                    raise BundleVerificationError(f"failed to reload root cert into KeyCertBundle: {e}") from e
                console.success("Reloaded root cert into KeyCertBundle")
            else:
                console.info("CA cert in KeyCertBundle matches the CA secret, skip reloading")

            self.last_sync_time = self._clock()
            return root_cert_in_mem
