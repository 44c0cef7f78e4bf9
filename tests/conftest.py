"""Shared test fixtures for workload-secrets tests."""

import queue
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from prometheus_client import CollectorRegistry

from workload_secrets.ca.authority import (
    CA_CERT_ID,
    CA_PRIVATE_KEY_ID,
    CA_SECRET_NAME,
    SelfSignedCA,
    generate_self_signed_root,
)
from workload_secrets.core.informer import ObjectStore
from workload_secrets.metrics import ControllerMetrics
from workload_secrets.secrets.builder import encode_data


class FakeSource:
    """Event source fed by the test instead of a watch."""

    def __init__(self) -> None:
        self.events: queue.Queue = queue.Queue()
        self.synced = threading.Event()
        self.store = ObjectStore()
        self.started = threading.Event()

    def get_store(self) -> ObjectStore:
        return self.store

    def run(self, stop: threading.Event) -> None:
        self.started.set()
        self.synced.set()
        stop.wait()


def api_exception(status: int, reason: str = "") -> ApiException:
    """Build an ApiException with the given HTTP status."""
    return ApiException(status=status, reason=reason or f"HTTP {status}")


def make_service_account(name: str, namespace: str) -> client.V1ServiceAccount:
    """Build a service account object."""
    return client.V1ServiceAccount(metadata=client.V1ObjectMeta(name=name, namespace=namespace))


def make_namespace(name: str, labels: dict[str, str] | None = None) -> client.V1Namespace:
    """Build a namespace object."""
    return client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))


def make_ca_secret(cert_pem: bytes, key_pem: bytes, namespace: str = "istio-system") -> client.V1Secret:
    """Build the shared CA secret."""
    return client.V1Secret(
        metadata=client.V1ObjectMeta(name=CA_SECRET_NAME, namespace=namespace),
        data=encode_data({CA_CERT_ID: cert_pem, CA_PRIVATE_KEY_ID: key_pem}),
    )


@pytest.fixture(scope="session")
def other_root():
    """A second self-signed root, as generated by another replica."""
    return generate_self_signed_root("cluster.local", timedelta(days=365))


@pytest.fixture
def ca():
    """A self-signed CA with a fresh root."""
    return SelfSignedCA.generate("cluster.local", timedelta(days=365))


@pytest.fixture
def core_api():
    """Mock CoreV1Api."""
    return MagicMock(spec=client.CoreV1Api)


@pytest.fixture
def metrics():
    """Controller metrics bound to an isolated registry."""
    return ControllerMetrics(registry=CollectorRegistry())


@pytest.fixture
def no_sleep():
    """Retry delay that returns immediately and never requests a stop."""
    return MagicMock(return_value=False)


@pytest.fixture
def secret_source():
    """Fake managed secret source."""
    return FakeSource()


@pytest.fixture
def identity_source():
    """Fake service account source."""
    return FakeSource()


@pytest.fixture
def mock_kube_contexts():
    """Mock kubernetes config contexts."""
    with patch("kubernetes.config.list_kube_config_contexts") as mock:
        mock.return_value = ([{"name": "test-context"}], {"name": "test-context"})
        yield mock


@pytest.fixture
def mock_kube_config():
    """Mock kubernetes config loading."""
    with patch("kubernetes.config.load_kube_config") as mock:
        yield mock
