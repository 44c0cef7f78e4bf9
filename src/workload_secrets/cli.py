#!/usr/bin/env python
"""Command-line interface for workload-secrets.

This module provides the main CLI entry point, which loads settings,
connects to the cluster, sets up the certificate authority, and runs the
secret controller until it is interrupted.
"""

import dataclasses
import signal
import sys
import threading
from datetime import timedelta
from typing import Any

import click
from icecream import ic
from kubernetes.client.exceptions import ApiException

from workload_secrets import __version__, console
from workload_secrets.ca.authority import CertificateAuthority, PluggedCA, SelfSignedCA
from workload_secrets.cluster import Cluster
from workload_secrets.config import load_settings, parse_duration
from workload_secrets.core.controller import WorkloadSecretController
from workload_secrets.exceptions import BundleVerificationError, ClusterConnectionError, ConfigurationError
from workload_secrets.metrics import ControllerMetrics
from workload_secrets.models import ControllerSettings


class DurationType(click.ParamType):
    """Click parameter type for durations such as ``90d`` or ``10m``."""

    name = "duration"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> timedelta:
        if isinstance(value, timedelta):
            return value
        try:
            return parse_duration(value)
        except ConfigurationError as e:
            self.fail(str(e), param, ctx)


DURATION = DurationType()


def build_settings(config_file: str | None, overrides: dict[str, Any]) -> ControllerSettings:
    """Load the settings file and apply command line overrides.

    Args:
        config_file: Optional path to a YAML settings file.
        overrides: Settings given on the command line; None values are ignored.

    Returns:
        The validated settings.

    Raises:
        ConfigurationError: If the file or a value is invalid.

    """
    settings = load_settings(config_file) if config_file else ControllerSettings()
    changes = {key: value for key, value in overrides.items() if value is not None}
    settings = dataclasses.replace(settings, **changes)
    settings.validate()
    return settings


def build_ca(
    core_api: Any,
    settings: ControllerSettings,
    plugged_files: tuple[str | None, str | None, str | None, str | None],
) -> CertificateAuthority:
    """Create the plugged CA if signing files were given, the self-signed CA otherwise.

    Raises:
        click.ClickException: If the plugged files are incomplete or the CA
            material cannot be loaded.

    """
    if any(plugged_files):
        if not all(plugged_files):
            raise click.ClickException(
                "--signing-cert, --signing-key, --cert-chain and --root-cert must be given together"
            )
        cert_file, key_file, chain_file, root_file = plugged_files
        try:
            return PluggedCA.from_files(cert_file, key_file, chain_file, root_file, settings.max_cert_ttl)
        except (OSError, BundleVerificationError) as e:
            raise click.ClickException(f"Failed to load plugged CA material: {e}") from None

    try:
        return SelfSignedCA.load_or_create(
            core_api,
            settings.ca_storage_namespace,
            org=settings.trust_domain,
            max_cert_ttl=settings.max_cert_ttl,
        )
    except ApiException as e:
        raise click.ClickException(f"Failed to load or create the CA secret: {e.status} {e.reason}") from None
    except BundleVerificationError as e:
        raise click.ClickException(str(e)) from None


@click.command(help="Provision and rotate key and certificate secrets for Kubernetes service accounts")
@click.option("--version", "-v", required=False, is_flag=True, help="print version")
@click.option("--debug", required=False, is_flag=True, help="print debug information")
@click.option("--select", required=False, is_flag=True, default=False, help="prompt for context select")
@click.option("--in-cluster", required=False, is_flag=True, default=False, help="use in-cluster credentials")
@click.option("--config", "config_file", required=False, type=click.Path(dir_okay=False), help="YAML settings file")
@click.option("--namespace", "-n", "namespaces", multiple=True, help="namespace to watch (repeatable)")
@click.option("--cert-ttl", type=DURATION, help="workload certificate lifetime")
@click.option("--max-cert-ttl", type=DURATION, help="largest certificate lifetime the CA signs")
@click.option("--grace-period-ratio", type=float, help="share of the lifetime reserved for rotation")
@click.option("--min-grace-period", type=DURATION, help="minimum rotation grace period")
@click.option("--dual-use/--no-dual-use", default=None, help="also put the identity in the subject CN")
@click.option("--pkcs8-key/--no-pkcs8-key", default=None, help="encode private keys as PKCS#8")
@click.option("--explicit-opt-in/--no-explicit-opt-in", default=None, help="require the istio-managed label")
@click.option("--ca-storage-namespace", help="namespace of the CA secret")
@click.option("--trust-domain", help="trust domain of identity URIs")
@click.option("--signing-cert", type=click.Path(exists=True, dir_okay=False), help="plugged CA certificate")
@click.option("--signing-key", type=click.Path(exists=True, dir_okay=False), help="plugged CA private key")
@click.option("--cert-chain", type=click.Path(exists=True, dir_okay=False), help="plugged CA certificate chain")
@click.option("--root-cert", type=click.Path(exists=True, dir_okay=False), help="plugged CA root certificate")
@click.option("--metrics-port", type=int, help="port to expose Prometheus metrics on")
def cli(
    version: bool,
    debug: bool,
    select: bool,
    in_cluster: bool,
    config_file: str | None,
    namespaces: tuple[str, ...],
    cert_ttl: timedelta | None,
    max_cert_ttl: timedelta | None,
    grace_period_ratio: float | None,
    min_grace_period: timedelta | None,
    dual_use: bool | None,
    pkcs8_key: bool | None,
    explicit_opt_in: bool | None,
    ca_storage_namespace: str | None,
    trust_domain: str | None,
    signing_cert: str | None,
    signing_key: str | None,
    cert_chain: str | None,
    root_cert: str | None,
    metrics_port: int | None,
) -> None:
    """Process CLI arguments and run the secret controller.

    Raises:
        click.ClickException: If the settings or CA material are invalid.

    """
    if not debug:
        ic.disable()

    if version:
        click.echo(__version__)
        return

    console.configure(debug=debug)

    try:
        settings = build_settings(
            config_file,
            {
                "namespaces": list(namespaces) or None,
                "cert_ttl": cert_ttl,
                "max_cert_ttl": max_cert_ttl,
                "grace_period_ratio": grace_period_ratio,
                "min_grace_period": min_grace_period,
                "dual_use": dual_use,
                "pkcs8_key": pkcs8_key,
                "explicit_opt_in": explicit_opt_in,
                "ca_storage_namespace": ca_storage_namespace,
                "trust_domain": trust_domain,
            },
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None
    ic(settings)

    try:
        cluster = Cluster(in_cluster=in_cluster, select_context=select)
    except ClusterConnectionError as e:
        console.error(f"Cluster connection failed: {e}")
        sys.exit(1)

    core_api = cluster.core_api()
    ca = build_ca(core_api, settings, (signing_cert, signing_key, cert_chain, root_cert))

    metrics = ControllerMetrics()
    if metrics_port is not None:
        metrics.serve(metrics_port)
        console.info(f"Serving metrics on port {metrics_port}")

    stop = threading.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, lambda *_: stop.set())

    WorkloadSecretController(ca, core_api, settings, metrics=metrics, stop=stop).run()


if __name__ == "__main__":
    cli()
