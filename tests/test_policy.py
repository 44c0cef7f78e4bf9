"""Tests for core/policy.py module."""

import pytest
from urllib3.exceptions import MaxRetryError

from conftest import api_exception, make_namespace
from workload_secrets.core.policy import MANAGED_LABEL, NamespacePolicy


class TestNamespacePolicyWithoutOptIn:
    """Tests for the default, opt-out policy."""

    def test_enabled_without_reading_namespace(self, core_api):
        """Test every namespace is enabled when opt-in is not required."""
        policy = NamespacePolicy(core_api, explicit_opt_in=False, namespaces={""})

        assert policy.is_enabled("default") is True
        core_api.read_namespace.assert_not_called()

    def test_disabled_label_ignored(self, core_api):
        """Test the label is not consulted when opt-in is not required."""
        core_api.read_namespace.return_value = make_namespace("default", {MANAGED_LABEL: "disabled"})
        policy = NamespacePolicy(core_api, explicit_opt_in=False, namespaces={""})

        assert policy.is_enabled("default") is True


class TestNamespacePolicyWithOptIn:
    """Tests for the explicit opt-in policy."""

    def test_watched_namespace_always_enabled(self, core_api):
        """Test namespaces given explicitly are enabled without a label."""
        policy = NamespacePolicy(core_api, explicit_opt_in=True, namespaces={"default"})

        assert policy.is_enabled("default") is True
        core_api.read_namespace.assert_not_called()

    @pytest.mark.parametrize("value", ["enabled", "enable", "true", "TRUE", "Yes", "y"])
    def test_enabled_values(self, core_api, value):
        """Test the accepted enabled synonyms, case-insensitively."""
        core_api.read_namespace.return_value = make_namespace("bookinfo", {MANAGED_LABEL: value})
        policy = NamespacePolicy(core_api, explicit_opt_in=True, namespaces={""})

        assert policy.is_enabled("bookinfo") is True

    @pytest.mark.parametrize("value", ["disabled", "disable", "false", "No", "N"])
    def test_disabled_values(self, core_api, value):
        """Test the accepted disabled synonyms, case-insensitively."""
        core_api.read_namespace.return_value = make_namespace("bookinfo", {MANAGED_LABEL: value})
        policy = NamespacePolicy(core_api, explicit_opt_in=True, namespaces={""})

        assert policy.is_enabled("bookinfo") is False

    def test_unset_label_is_disabled(self, core_api):
        """Test a namespace without the label falls back to disabled."""
        core_api.read_namespace.return_value = make_namespace("bookinfo", {"team": "books"})
        policy = NamespacePolicy(core_api, explicit_opt_in=True, namespaces={""})

        assert policy.is_enabled("bookinfo") is False

    def test_no_labels_is_disabled(self, core_api):
        """Test a namespace with no labels at all falls back to disabled."""
        core_api.read_namespace.return_value = make_namespace("bookinfo")
        policy = NamespacePolicy(core_api, explicit_opt_in=True, namespaces={""})

        assert policy.is_enabled("bookinfo") is False

    def test_unrecognized_value_keeps_default(self, core_api):
        """Test an unknown label value leaves the default unchanged."""
        core_api.read_namespace.return_value = make_namespace("bookinfo", {MANAGED_LABEL: "maybe"})
        policy = NamespacePolicy(core_api, explicit_opt_in=True, namespaces={""})

        assert policy.is_enabled("bookinfo") is policy.default is False

    def test_namespace_not_found_uses_default(self, core_api):
        """Test a missing namespace falls back to the default."""
        core_api.read_namespace.side_effect = api_exception(404)
        policy = NamespacePolicy(core_api, explicit_opt_in=True, namespaces={""})

        assert policy.is_enabled("bookinfo") is False

    def test_connection_error_uses_default(self, core_api):
        """Test an unreachable API server falls back to the default."""
        core_api.read_namespace.side_effect = MaxRetryError(pool=None, url="/api/v1/namespaces/bookinfo")
        policy = NamespacePolicy(core_api, explicit_opt_in=True, namespaces={""})

        assert policy.is_enabled("bookinfo") is False
