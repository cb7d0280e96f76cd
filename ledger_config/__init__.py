"""
ledger_config -- single public entrypoint for ledger configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration at
    runtime.  It resolves the YAML document to load (explicit path, the
    ``LEDGER_CONFIG`` environment variable, or the packaged
    ``defaults.yaml``), validates it, and applies the
    ``LEDGER_DATABASE_URL`` override.

Architecture position:
    Configuration -- sits above ``ledger_kernel`` and is consumed by
    ``ledger_services``.  The kernel never imports from here; services
    receive the resulting ``LedgerConfig`` by injection.

Failure modes:
    - ``FileNotFoundError`` -- the resolved path does not exist.
    - ``ValueError`` -- validation failed.

Audit relevance:
    Every call emits a ``LEDGER_CONFIG_TRACE`` log record with the source
    path and checksum.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

from ledger_config.loader import load_config, parse_config
from ledger_config.schema import LedgerConfig, NumberingConfig

_logger = logging.getLogger("ledger_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_ENV_VAR = "LEDGER_CONFIG"
DATABASE_URL_ENV_VAR = "LEDGER_DATABASE_URL"


def get_active_config(config_path: Path | str | None = None) -> LedgerConfig:
    """Load the active configuration.

    Resolution order: ``config_path``, then ``$LEDGER_CONFIG``, then the
    packaged defaults.  ``$LEDGER_DATABASE_URL`` overrides
    ``database_url`` whichever document was loaded.
    """
    source = Path(config_path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    config = load_config(source)

    db_override = os.environ.get(DATABASE_URL_ENV_VAR)
    if db_override:
        config = dataclasses.replace(config, database_url=db_override)

    _logger.info(
        "LEDGER_CONFIG_TRACE",
        extra={
            "trace_type": "LEDGER_CONFIG_TRACE",
            "source": str(source),
            "checksum": config.checksum,
            "database_url_overridden": bool(db_override),
        },
    )
    return config


__all__ = [
    "LedgerConfig",
    "NumberingConfig",
    "get_active_config",
    "load_config",
    "parse_config",
]
