"""Tests for ca/sync.py module."""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import api_exception, make_ca_secret
from workload_secrets.ca.authority import CA_SECRET_NAME
from workload_secrets.ca.sync import CABundleSynchronizer, CASecretLoader
from workload_secrets.core.generator import CertificateGenerator
from workload_secrets.exceptions import BundleVerificationError, CASecretLoadError


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestCASecretLoader:
    """Tests for loading the CA secret with retry."""

    def test_first_attempt(self, core_api, no_sleep, other_root):
        """Test the secret is returned without retry when available."""
        secret = make_ca_secret(*other_root)
        core_api.read_namespaced_secret.return_value = secret

        loaded = CASecretLoader(core_api, sleep=no_sleep).load_with_retry(CA_SECRET_NAME, "istio-system")

        assert loaded is secret
        core_api.read_namespaced_secret.assert_called_once_with(CA_SECRET_NAME, "istio-system")
        no_sleep.assert_not_called()

    def test_retries_until_available(self, core_api, no_sleep, other_root):
        """Test transient failures are retried at the poll interval."""
        secret = make_ca_secret(*other_root)
        core_api.read_namespaced_secret.side_effect = [api_exception(503), api_exception(404), secret]

        loaded = CASecretLoader(core_api, sleep=no_sleep).load_with_retry(
            CA_SECRET_NAME, "istio-system", interval=timedelta(milliseconds=100)
        )

        assert loaded is secret
        assert no_sleep.call_count == 2
        no_sleep.assert_called_with(0.1)

    def test_timeout(self, core_api, clock):
        """Test the load gives up once the timeout elapses."""
        core_api.read_namespaced_secret.side_effect = api_exception(404)

        def sleep(seconds):
            clock.advance(seconds)
            return False

        loader = CASecretLoader(core_api, clock=clock, sleep=sleep)

        with pytest.raises(CASecretLoadError, match="timed out"):
            loader.load_with_retry(
                CA_SECRET_NAME, "istio-system", interval=timedelta(seconds=1), timeout=timedelta(seconds=5)
            )

        assert core_api.read_namespaced_secret.call_count == 6

    def test_stop_signal(self, core_api):
        """Test a set stop signal abandons the retry loop."""
        core_api.read_namespaced_secret.side_effect = api_exception(500)
        stop = threading.Event()
        stop.set()

        with pytest.raises(CASecretLoadError, match="stopped"):
            CASecretLoader(core_api, stop=stop).load_with_retry(CA_SECRET_NAME, "istio-system")

        core_api.read_namespaced_secret.assert_called_once()


class TestCABundleSynchronizer:
    """Tests for trust root synchronization."""

    def make_synchronizer(self, ca, core_api, clock, no_sleep):
        loader = CASecretLoader(core_api, clock=clock, sleep=no_sleep)
        return CABundleSynchronizer(ca, loader, "istio-system", clock=clock)

    def test_matching_ca_cert(self, ca, core_api, clock, no_sleep):
        """Test nothing is reloaded when the CA secret matches the bundle."""
        cert, key, _, root = ca.get_ca_key_cert_bundle().get_all_pem()
        core_api.read_namespaced_secret.return_value = make_ca_secret(cert, key)
        synchronizer = self.make_synchronizer(ca, core_api, clock, no_sleep)

        assert synchronizer.sync_if_needed(root, cert) == root
        assert ca.get_ca_key_cert_bundle().root_cert_pem == root
        assert synchronizer.last_sync_time == clock.now

    def test_diverged_ca_cert_reloads_bundle(self, ca, core_api, clock, no_sleep, other_root):
        """Test the CA secret wins when it differs from the bundle."""
        cert, _, _, root = ca.get_ca_key_cert_bundle().get_all_pem()
        other_cert, other_key = other_root
        core_api.read_namespaced_secret.return_value = make_ca_secret(other_cert, other_key)
        synchronizer = self.make_synchronizer(ca, core_api, clock, no_sleep)

        resolved = synchronizer.sync_if_needed(root, cert)

        assert resolved == other_cert
        assert ca.get_ca_key_cert_bundle().get_all_pem() == (other_cert, other_key, b"", other_cert)

    def test_cooldown_skips_second_load(self, ca, core_api, clock, no_sleep):
        """Test two syncs within 30 seconds load the CA secret once."""
        cert, key, _, root = ca.get_ca_key_cert_bundle().get_all_pem()
        core_api.read_namespaced_secret.return_value = make_ca_secret(cert, key)
        synchronizer = self.make_synchronizer(ca, core_api, clock, no_sleep)

        synchronizer.sync_if_needed(root, cert)
        clock.advance(29)
        assert synchronizer.sync_if_needed(b"stale root", cert) == b"stale root"

        core_api.read_namespaced_secret.assert_called_once()

    def test_sync_after_cooldown(self, ca, core_api, clock, no_sleep):
        """Test the CA secret is consulted again once the cool-down expires."""
        cert, key, _, root = ca.get_ca_key_cert_bundle().get_all_pem()
        core_api.read_namespaced_secret.return_value = make_ca_secret(cert, key)
        synchronizer = self.make_synchronizer(ca, core_api, clock, no_sleep)

        synchronizer.sync_if_needed(root, cert)
        clock.advance(30)
        synchronizer.sync_if_needed(root, cert)

        assert core_api.read_namespaced_secret.call_count == 2

    def test_load_failure_does_not_advance_clock(self, ca, core_api, clock):
        """Test a failed load is surfaced and retried on the next call."""
        cert, _, _, root = ca.get_ca_key_cert_bundle().get_all_pem()
        core_api.read_namespaced_secret.side_effect = api_exception(404)
        loader = CASecretLoader(core_api, clock=clock, sleep=MagicMock(return_value=True))
        synchronizer = CABundleSynchronizer(ca, loader, "istio-system", clock=clock)

        with pytest.raises(CASecretLoadError):
            synchronizer.sync_if_needed(root, cert)

        assert synchronizer.last_sync_time is None

    def test_verification_failure(self, ca, core_api, clock, no_sleep, other_root):
        """Test invalid CA secret material is a hard error for the attempt."""
        cert, key, _, root = ca.get_ca_key_cert_bundle().get_all_pem()
        other_cert, _ = other_root
        core_api.read_namespaced_secret.return_value = make_ca_secret(other_cert, key)
        synchronizer = self.make_synchronizer(ca, core_api, clock, no_sleep)

        with pytest.raises(BundleVerificationError, match="failed to reload"):
            synchronizer.sync_if_needed(root, cert)

        assert ca.get_ca_key_cert_bundle().root_cert_pem == root
        assert synchronizer.last_sync_time is None

    def test_concurrent_syncs_load_once(self, ca, core_api, clock, no_sleep, other_root):
        """Test concurrent callers reload the bundle only once."""
        cert, _, _, root = ca.get_ca_key_cert_bundle().get_all_pem()
        core_api.read_namespaced_secret.return_value = make_ca_secret(*other_root)
        synchronizer = self.make_synchronizer(ca, core_api, clock, no_sleep)
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            synchronizer.sync_if_needed(root, cert)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        core_api.read_namespaced_secret.assert_called_once()
        assert ca.get_ca_key_cert_bundle().root_cert_pem == other_root[0]

    def test_slow_load_does_not_block_signing(self, ca, core_api, clock, no_sleep, metrics):
        """Test certificates can be issued while the CA secret load is in flight."""
        cert, key, _, root = ca.get_ca_key_cert_bundle().get_all_pem()
        loading = threading.Event()
        release = threading.Event()

        def slow_read(name, namespace):
            loading.set()
            release.wait(10)
            return make_ca_secret(cert, key)

        core_api.read_namespaced_secret.side_effect = slow_read
        synchronizer = self.make_synchronizer(ca, core_api, clock, no_sleep)
        generator = CertificateGenerator(ca, metrics, cert_ttl=timedelta(hours=1))
        issued = []

        sync_thread = threading.Thread(target=synchronizer.sync_if_needed, args=(root, cert))
        sync_thread.start()
        assert loading.wait(5)

        sign_thread = threading.Thread(target=lambda: issued.append(generator.generate("bookinfo", "default")))
        sign_thread.start()
        sign_thread.join(5)
        finished_while_loading = not sign_thread.is_alive()

        release.set()
        sync_thread.join(5)

        assert finished_while_loading
        assert len(issued) == 1
        assert synchronizer.last_sync_time == clock.now
