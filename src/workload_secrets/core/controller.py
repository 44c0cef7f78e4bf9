"""Reconciliation engine.

This module provides the WorkloadSecretController class, which keeps one
valid key and certificate secret per enabled service account by reacting
to service account and managed secret events.
"""

import queue
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from icecream import ic
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from workload_secrets import console
from workload_secrets.ca.authority import CertificateAuthority
from workload_secrets.ca.certs import get_wait_time
from workload_secrets.ca.sync import CABundleSynchronizer, CASecretLoader
from workload_secrets.core.events import (
    ControllerEvent,
    IdentityAdded,
    IdentityDeleted,
    SecretDeleted,
    SecretUpdated,
)
from workload_secrets.core.generator import CertificateGenerator
from workload_secrets.core.informer import Informer
from workload_secrets.core.policy import NamespacePolicy
from workload_secrets.exceptions import WorkloadSecretsError
from workload_secrets.metrics import ControllerMetrics
from workload_secrets.models import ControllerSettings
from workload_secrets.secrets.builder import (
    CERT_CHAIN_ID,
    MANAGED_SECRET_FIELD_SELECTOR,
    ROOT_CERT_ID,
    decode_value,
    owning_service_account,
    secret_name,
)
from workload_secrets.secrets.lifecycle import SecretManager

# How often idle dispatch loops check the stop signal, in seconds.
_POLL_INTERVAL = 0.5


class EventSource(Protocol):
    """A stream of controller events backed by a local object cache."""

    events: queue.Queue
    synced: threading.Event

    def get_store(self) -> Any: ...

    def run(self, stop: threading.Event) -> None: ...


class InformerSource:
    """Adapts an Informer to the EventSource interface."""

    def __init__(self, informer: Informer) -> None:
        self.informer = informer
        self.events = informer.events
        self.synced = informer.synced

    def get_store(self) -> Any:
        return self.informer.store

    def run(self, stop: threading.Event) -> None:
        self.informer.run(stop)


class WorkloadSecretController:
    """Manages the key and certificate secrets of service accounts.

    Service account events and managed secret events are consumed by two
    dispatch loops running on separate threads. Each loop handles its own
    events in order; the loops run concurrently with each other.

    Attributes:
        settings: Controller settings.
        ca: Certificate authority issuing workload certificates.
        core_api: Kubernetes core API client.
        metrics: Controller counters.
        policy: Namespace opt-in policy.
        generator: Key and certificate generator.
        secrets: Secret lifecycle manager.
        synchronizer: Trust root synchronizer.

    """

    def __init__(
        self,
        ca: CertificateAuthority,
        core_api: client.CoreV1Api,
        settings: ControllerSettings,
        *,
        metrics: ControllerMetrics | None = None,
        identity_source: EventSource | None = None,
        secret_source: EventSource | None = None,
        stop: threading.Event | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the controller and its collaborators.

        Args:
            ca: Certificate authority issuing workload certificates.
            core_api: Kubernetes core API client.
            settings: Controller settings.
            metrics: Controller counters; a default registry is used if omitted.
            identity_source: Service account events; built from ``core_api``
                if omitted.
            secret_source: Managed secret events; built from ``core_api``
                if omitted.
            stop: Shared stop signal observed by retry loops.
            now: Wall clock used for expiry checks.
            sleep: Retry delay; returns True when the loop must stop.
            clock: Monotonic clock used by the sync cool-down and CA secret
                load timeout.

        Raises:
            ConfigurationError: If the settings are invalid.

        """
        settings.validate()
        self.settings = settings
        self.ca = ca
        self.core_api = core_api
        self.metrics = metrics or ControllerMetrics()
        self.stop = stop or threading.Event()
        self._now = now

        self.identity_source = identity_source or InformerSource(
            Informer(
                "service account",
                list_namespaced=core_api.list_namespaced_service_account,
                list_all=core_api.list_service_account_for_all_namespaces,
                namespaces=settings.namespaces,
                resync_period=settings.resync_period,
                added=IdentityAdded,
                deleted=IdentityDeleted,
            )
        )
        self.secret_source = secret_source or InformerSource(
            Informer(
                "secret",
                list_namespaced=core_api.list_namespaced_secret,
                list_all=core_api.list_secret_for_all_namespaces,
                namespaces=settings.namespaces,
                resync_period=settings.resync_period,
                field_selector=MANAGED_SECRET_FIELD_SELECTOR,
                updated=SecretUpdated,
                deleted=SecretDeleted,
            )
        )

        self.policy = NamespacePolicy(
            core_api,
            explicit_opt_in=settings.explicit_opt_in,
            namespaces=set(settings.namespaces),
        )
        self.generator = CertificateGenerator(
            ca,
            self.metrics,
            cert_ttl=settings.cert_ttl,
            dns_names=settings.dns_names,
            trust_domain=settings.trust_domain,
            dual_use=settings.dual_use,
            pkcs8_key=settings.pkcs8_key,
            for_ca=settings.for_ca,
        )
        self.secrets = SecretManager(
            core_api,
            self.secret_source.get_store(),
            self.generator,
            ca,
            stop=self.stop,
            sleep=sleep,
        )
        self.synchronizer = CABundleSynchronizer(
            ca,
            CASecretLoader(core_api, stop=self.stop, clock=clock, sleep=sleep),
            settings.ca_storage_namespace,
            clock=clock,
        )

    def handle(self, event: ControllerEvent) -> None:
        """Route one event to its handler. Errors are logged, never raised."""
        try:
            match event:
                case IdentityAdded(obj=obj):
                    self.identity_added(obj)
                case IdentityDeleted(obj=obj):
                    self.identity_deleted(obj)
                case SecretDeleted(obj=obj):
                    self.secret_deleted(obj)
                case SecretUpdated(old=old, new=new):
                    self.secret_updated(old, new)
                case _:
                    console.warning(f"Dropping unknown event: {event!r}")
        except Exception:
            console.exception(f"Unhandled error while processing {type(event).__name__}")

    def identity_added(self, obj: Any) -> None:
        """Create the secret of a new service account if its namespace is enabled."""
        if not isinstance(obj, client.V1ServiceAccount):
            console.warning(f"Failed to convert to service account object: {obj!r}")
            return
        name, namespace = obj.metadata.name, obj.metadata.namespace
        if self.policy.is_enabled(namespace):
            self.secrets.upsert(name, namespace)
        self.metrics.service_account_creation.inc()

    def identity_deleted(self, obj: Any) -> None:
        """Delete the secret of a deleted service account."""
        if not isinstance(obj, client.V1ServiceAccount):
            console.warning(f"Failed to convert to service account object: {obj!r}")
            return
        self.secrets.delete(obj.metadata.name, obj.metadata.namespace)
        self.metrics.service_account_deletion.inc()

    def secret_deleted(self, obj: Any) -> None:
        """Re-create a managed secret deleted while its service account still exists."""
        if not isinstance(obj, client.V1Secret):
            console.warning(f"Failed to convert to secret object: {obj!r}")
            return

        namespace = obj.metadata.namespace
        service_account = owning_service_account(obj)
        if not service_account:
            console.debug(f"Deleted secret {namespace}/{obj.metadata.name} has no service account annotation")
            return

        try:
            self.core_api.read_namespaced_service_account(service_account, namespace)
        except (ApiException, HTTPError):
            # The service account is gone, or unknown; nothing to restore.
            return

        console.info(f"Re-creating deleted secret {namespace}/{secret_name(service_account)}")
        if self.policy.is_enabled(namespace):
            self.secrets.upsert(service_account, namespace)
        self.metrics.secret_deletion.inc()

    def secret_updated(self, old: Any, new: Any) -> None:
        """Refresh a managed secret that is about to expire or carries a stale root."""
        if not isinstance(new, client.V1Secret):
            console.warning(f"Failed to convert to secret object: {new!r}")
            return

        namespace, name = new.metadata.namespace, new.metadata.name
        secret_root = decode_value(new, ROOT_CERT_ID)

        rotation_reason = None
        try:
            get_wait_time(
                decode_value(new, CERT_CHAIN_ID),
                self._now(),
                grace_period_ratio=self.settings.grace_period_ratio,
                min_grace_period=self.settings.min_grace_period,
            )
        except WorkloadSecretsError as e:
            rotation_reason = str(e)

        ca_cert, _, _, root_cert = self.ca.get_ca_key_cert_bundle().get_all_pem()
        if root_cert != secret_root:
            try:
                root_cert = self.synchronizer.sync_if_needed(root_cert, ca_cert)
            except WorkloadSecretsError as e:
                console.error(
                    f"Failed on syncing root cert in KeyCertBundle ({e}), skip updating secret {namespace}/{name}"
                )
                return

        if rotation_reason is None and root_cert == secret_root:
            return

        if rotation_reason is not None:
            console.info(f"Refreshing about to expire secret {namespace}/{name}: {rotation_reason}")
        else:
            console.info(f"Refreshing secret {namespace}/{name} (outdated root cert)")

        try:
            self.secrets.refresh(new)
        except ApiException as e:
            console.error(f"Failed to update secret {namespace}/{name} (error: {e.status} {e.reason})")
        except (WorkloadSecretsError, HTTPError) as e:
            console.error(f"Failed to update secret {namespace}/{name} (error: {e})")
        else:
            console.success(f"Secret {namespace}/{name} refreshed successfully")

    def _dispatch(self, source: EventSource, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                event = source.events.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                ic(event)
                self.handle(event)
            finally:
                source.events.task_done()

    def _start(self, target: Callable[..., None], name: str, *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread

    def run(self) -> None:
        """Run the controller until the stop signal is set.

        The secret cache is synced before service account events are
        consumed, so that secrets which already exist are not created again.
        """
        stop = self.stop

        threads = [
            self._start(self.secret_source.run, "secret-source", stop),
            self._start(self._dispatch, "secret-dispatch", self.secret_source, stop),
        ]

        console.info("Waiting for the secret cache to sync")
        while not self.secret_source.synced.wait(_POLL_INTERVAL):
            if stop.is_set():
                break

        if not stop.is_set():
            threads.append(self._start(self.identity_source.run, "service-account-source", stop))
            threads.append(self._start(self._dispatch, "service-account-dispatch", self.identity_source, stop))
            console.success("Secret controller started")

        stop.wait()
        for thread in threads:
            thread.join(timeout=_POLL_INTERVAL * 4)
        console.info("Secret controller stopped")
