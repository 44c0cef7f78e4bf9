"""Kubernetes cluster connection utilities.

This module provides the Cluster class, which loads in-cluster or
kubeconfig credentials and hands out API clients.
"""

import click
import questionary
from icecream import ic
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from questionary import Style

from workload_secrets import console
from workload_secrets.exceptions import ClusterConnectionError

PROMPT_STYLE = Style(
    [
        ("qmark", "fg:#af87ff bold"),
        ("question", "bold"),
        ("answer", "fg:#ff87d7 bold"),
        ("pointer", "fg:#ff87d7 bold"),
        ("highlighted", "fg:#1c1c1c bg:#ff87d7 bold"),
    ]
)


class Cluster:
    """Manages the connection to the Kubernetes cluster.

    Attributes:
        context: The active kubeconfig context name, or ``in-cluster``.

    """

    def __init__(self, *, in_cluster: bool = False, select_context: bool = False) -> None:
        """Load cluster credentials.

        Args:
            in_cluster: Use the pod's service account instead of a kubeconfig.
            select_context: Prompt for the kubeconfig context to use.
                           Ignored when ``in_cluster`` is set.

        Raises:
            ClusterConnectionError: If no usable credentials are found.

        """
        if in_cluster:
            try:
                config.load_incluster_config()
            except ConfigException as e:
                raise ClusterConnectionError(f"Invalid in-cluster configuration: {e}") from e
            self.context: str = "in-cluster"
        else:
            self.context = self._resolve_context(select_context=select_context)
            try:
                config.load_kube_config(context=self.context)
            except ConfigException as e:
                raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}") from e
        console.info(f"Working with {self.context} cluster")

    @staticmethod
    def _resolve_context(*, select_context: bool) -> str:
        """Return the kubeconfig context the controller connects with.

        The active context is used as is unless ``select_context`` is set, in
        which case every context is offered with the active one preselected.

        Raises:
            ClusterConnectionError: If the kubeconfig cannot be read.
            click.Abort: If the prompt is dismissed.

        """
        try:
            contexts, active = config.list_kube_config_contexts()
        except ConfigException as e:
            raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}") from e

        chosen = str(active["name"])
        if select_context:
            chosen = questionary.select(
                "Kubeconfig context for the secret controller",
                choices=[entry["name"] for entry in contexts],
                default=chosen,
                style=PROMPT_STYLE,
            ).ask()
            if chosen is None:
                console.warning("Context selection cancelled.")
                raise click.Abort()
        ic(chosen)
        return chosen

    @staticmethod
    def core_api() -> client.CoreV1Api:
        """Return a core API client using the loaded credentials."""
        return client.CoreV1Api()

    def __repr__(self) -> str:
        """Return a detailed string representation for debugging."""
        return f"Cluster(context={self.context!r})"
