"""Controller event variants.

Watch sources translate cluster notifications into these messages and
queue them, one queue per watched object type.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class IdentityAdded:
    """A service account appeared."""

    obj: Any


@dataclass(frozen=True, slots=True)
class IdentityDeleted:
    """A service account was deleted."""

    obj: Any


@dataclass(frozen=True, slots=True)
class SecretDeleted:
    """A managed secret was deleted."""

    obj: Any


@dataclass(frozen=True, slots=True)
class SecretUpdated:
    """A managed secret changed, or was re-observed on resync."""

    old: Any
    new: Any


ControllerEvent = IdentityAdded | IdentityDeleted | SecretDeleted | SecretUpdated
