"""Controller core subpackage.

This package contains the namespace policy, certificate generation, event
sources, and the reconciliation engine.
"""
