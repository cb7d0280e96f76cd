"""
Configuration Loader (``ledger_config.loader``).

Responsibility
--------------
Parses a YAML document into a ``LedgerConfig``.  Runtime callers go
through ``ledger_config.get_active_config()``; tests call
``parse_config`` directly with dicts.

Invariants enforced
-------------------
* Unknown keys are rejected, so a misspelt setting fails loudly instead
  of silently keeping its default.
* Every parse error raises ``ValueError`` naming the offending key.
* Monetary rates are parsed from their string form into ``Decimal``;
  YAML floats are converted via ``str()`` so ``0.1`` stays ``0.1``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Bad values or unknown keys  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import LedgerConfig, NumberingConfig


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML value must be a mapping")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of the raw document."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _parse_rate(key: str, value: Any) -> Decimal:
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{key}: not a number: {value!r}") from None
    if not rate.is_finite() or rate < 0 or rate > 1:
        raise ValueError(f"{key}: must be a fraction between 0 and 1, got {value!r}")
    return rate


def _parse_non_negative_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{key}: must be a non-negative integer, got {value!r}")
    return value


def _parse_numbering(data: dict[str, Any]) -> NumberingConfig:
    known = {f.name for f in fields(NumberingConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"numbering: unknown keys {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key == "number_width":
            width = _parse_non_negative_int("numbering.number_width", value)
            if not 1 <= width <= 12:
                raise ValueError(f"numbering.number_width: must be 1..12, got {width}")
            kwargs[key] = width
        else:
            if not isinstance(value, str) or not value:
                raise ValueError(f"numbering.{key}: must be a non-empty string")
            kwargs[key] = value
    return NumberingConfig(**kwargs)


def parse_config(data: dict[str, Any]) -> LedgerConfig:
    """Build a ``LedgerConfig`` from a parsed YAML mapping."""
    known = {f.name for f in fields(LedgerConfig)} - {"checksum"}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        match key:
            case "sale_tax_rate" | "service_tax_rate":
                kwargs[key] = _parse_rate(key, value)
            case "invoice_due_days" | "max_conflict_retries":
                kwargs[key] = _parse_non_negative_int(key, value)
            case "numbering":
                if not isinstance(value, dict):
                    raise ValueError("numbering: must be a mapping")
                kwargs[key] = _parse_numbering(value)
            case "clamp_stock_at_zero":
                if not isinstance(value, bool):
                    raise ValueError(f"{key}: must be true or false")
                kwargs[key] = value
            case "database_url":
                if not isinstance(value, str) or "://" not in value:
                    raise ValueError(f"{key}: must be a SQLAlchemy URL")
                kwargs[key] = value

    return LedgerConfig(checksum=compute_checksum(data), **kwargs)


def load_config(path: Path | str) -> LedgerConfig:
    """Load and validate a YAML configuration file."""
    return parse_config(load_yaml_file(Path(path)))
