"""Settings file loading.

This module reads controller settings from a YAML file and converts
human readable durations such as ``90d`` or ``1h30m`` into timedeltas.
"""

import re
from dataclasses import fields
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from workload_secrets.exceptions import ConfigurationError
from workload_secrets.models import ControllerSettings, DNSNameEntry

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")

_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

_DURATION_FIELDS = {"cert_ttl", "max_cert_ttl", "min_grace_period", "resync_period"}


def parse_duration(value: str | int | float) -> timedelta:
    """Parse a duration string.

    Bare numbers are read as seconds.

    Args:
        value: A duration such as ``90d``, ``10m``, ``1h30m`` or ``45``.

    Returns:
        The parsed duration.

    Raises:
        ConfigurationError: If the value is not a valid duration.

    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ConfigurationError(f"Invalid duration: {value!r}")

    text = value.strip()
    if not text:
        raise ConfigurationError("Duration cannot be empty")
    if _NUMBER.fullmatch(text):
        return timedelta(seconds=float(text))

    parts = _DURATION_PART.findall(text)
    if not parts or "".join(number + unit for number, unit in parts) != text:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    return sum((float(number) * _UNITS[unit] for number, unit in parts), timedelta(0))


def _parse_dns_names(raw: Any) -> dict[str, DNSNameEntry]:
    if not isinstance(raw, dict):
        raise ConfigurationError("dns_names must be a mapping")

    entries: dict[str, DNSNameEntry] = {}
    for key, entry in raw.items():
        if not isinstance(entry, dict):
            raise ConfigurationError(f"dns_names entry {key!r} must be a mapping")
        entries[str(key)] = DNSNameEntry(
            service_name=str(entry.get("service_name", "")),
            namespace=str(entry.get("namespace", "")),
            custom_domains=tuple(str(d) for d in entry.get("custom_domains") or ()),
        )
    return entries


def settings_from_dict(raw: dict[str, Any]) -> ControllerSettings:
    """Build settings from a parsed mapping.

    Args:
        raw: Mapping whose keys mirror the ControllerSettings fields.

    Returns:
        The settings, with unspecified fields left at their defaults.

    Raises:
        ConfigurationError: If a key is unknown or a value is malformed.

    """
    known = {f.name for f in fields(ControllerSettings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown settings: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key in _DURATION_FIELDS:
            values[key] = parse_duration(value)
        elif key == "dns_names":
            values[key] = _parse_dns_names(value)
        elif key == "namespaces":
            if isinstance(value, str):
                value = [value]
            values[key] = ["" if ns is None else str(ns) for ns in value]
        elif key == "grace_period_ratio":
            try:
                values[key] = float(value)
            except (TypeError, ValueError) as err:
                raise ConfigurationError(f"Invalid grace_period_ratio: {value!r}") from err
        else:
            values[key] = value
    return ControllerSettings(**values)


def load_settings(path: str | Path) -> ControllerSettings:
    """Load controller settings from a YAML file.

    Args:
        path: Path to the settings file.

    Returns:
        The parsed settings. An empty file yields the defaults.

    Raises:
        ConfigurationError: If the file does not exist, is malformed YAML,
            or is not a mapping.

    """
    try:
        with open(path) as stream:
            raw = yaml.safe_load(stream)
    except FileNotFoundError as err:
        raise ConfigurationError(f"Settings file '{path}' does not exist") from err
    except yaml.YAMLError as err:
        raise ConfigurationError(f"Settings file '{path}' contains malformed YAML: {err}") from err

    if raw is None:
        return ControllerSettings()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Settings file '{path}' does not contain a YAML mapping")
    return settings_from_dict(raw)
