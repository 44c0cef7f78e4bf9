"""Namespace opt-in policy.

This module decides whether the service accounts of a namespace get a
managed secret.
"""

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from workload_secrets import console

# The namespace label controlling secret management.
MANAGED_LABEL = "istio-managed"

_ENABLED_VALUES = frozenset({"enabled", "enable", "true", "yes", "y"})
_DISABLED_VALUES = frozenset({"disabled", "disable", "false", "no", "n"})


class NamespacePolicy:
    """Evaluates whether secret management is enabled for a namespace.

    Namespaces listed explicitly on the command line are always enabled,
    as is every namespace when opt-in is not required. Otherwise the
    ``istio-managed`` label of the Namespace object decides, falling back to
    the default when the label is absent, unrecognized, or the Namespace
    cannot be read. This class never raises.

    Attributes:
        core_api: Kubernetes core API client.
        explicit_opt_in: Whether namespaces must opt in through the label.
        namespaces: Namespaces explicitly configured for watching.

    """

    def __init__(self, core_api: client.CoreV1Api, *, explicit_opt_in: bool, namespaces: set[str]) -> None:
        self.core_api = core_api
        self.explicit_opt_in = explicit_opt_in
        self.namespaces = set(namespaces)

    @property
    def default(self) -> bool:
        """The decision used when the label does not settle it."""
        return not self.explicit_opt_in

    def is_enabled(self, namespace: str) -> bool:
        """Return whether service accounts in ``namespace`` are managed."""
        if namespace in self.namespaces or not self.explicit_opt_in:
            return True

        enabled = self.default
        try:
            ns = self.core_api.read_namespace(namespace)
        except (ApiException, HTTPError) as e:
            console.debug(f"Failed to read namespace {namespace}, using default policy {enabled}: {e}")
            return enabled
        if ns is None or ns.metadata is None:
            return enabled

        value = (ns.metadata.labels or {}).get(MANAGED_LABEL)
        if value is None:
            return enabled

        match value.lower():
            case v if v in _ENABLED_VALUES:
                enabled = True
            case v if v in _DISABLED_VALUES:
                enabled = False
            case _:
                console.debug(f"Ignoring unrecognized {MANAGED_LABEL} label value {value!r} on namespace {namespace}")
        return enabled
