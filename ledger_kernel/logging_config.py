"""
ledger_kernel.logging_config -- one JSON object per log line.

Every record under the ``ledger_kernel`` logger carries:

    ts, level, logger, message       the envelope
    <context fields>                 whatever the enclosing unit of work bound
    <extra fields>                   the call site's ``extra={...}``
    exc_* / traceback                when logged with ``exc_info``

Context is the ledger's own vocabulary: which operation is running, for
which actor, against which payment / receipt / target.  The orchestrator
binds it once per unit of work; services add the payment and receipt as
soon as they are known, and every later line in that unit picks them up.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

import json
import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TextIO
from uuid import UUID

LOGGER_NAMESPACE = "ledger_kernel"

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "operation",
    "actor_id",
    "payment_id",
    "receipt_number",
    "target_type",
    "target_id",
)

_context: ContextVar[Mapping[str, str]] = ContextVar("ledger_log_context", default={})


def _stringify(fields: dict[str, Any]) -> dict[str, str]:
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context field(s): {sorted(unknown)}")
    return {
        k: v.value if isinstance(v, Enum) else str(v)
        for k, v in fields.items()
        if v is not None
    }


class LogContext:
    """Fields stamped on every record logged inside a unit of work.

    Backed by a single ContextVar holding an immutable snapshot, so
    threads and tasks each see their own context and ``bind`` restores
    the outer snapshot exactly on exit.
    """

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def update(**fields: Any) -> None:
        """Add fields to the current snapshot; None values are skipped."""
        _context.set({**_context.get(), **_stringify(fields)})

    @staticmethod
    def clear() -> None:
        _context.set({})

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        token = _context.set({**_context.get(), **_stringify(fields)})
        try:
            yield
        finally:
            _context.reset(token)


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # LedgerError subclasses keep their identifiers as public attributes.
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        for name, value in vars(record).items():
            if name not in _RECORD_ATTRS:
                payload.setdefault(name, value)
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """``get_logger("services.payment_ledger")`` -> ``ledger_kernel.services.payment_ledger``."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def _structured_handlers(logger: logging.Logger) -> list[logging.Handler]:
    return [h for h in logger.handlers if isinstance(h.formatter, StructuredFormatter)]


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``ledger_kernel`` logger.

    A no-op when a JSON handler is already attached, so engine
    initialisation can call it unconditionally.  Handlers installed by
    anything else (test capture, an application's own logging) are left
    alone.
    """
    root = logging.getLogger(LOGGER_NAMESPACE)
    if _structured_handlers(root):
        return
    if handler is None:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False


def reset_logging() -> None:
    """Detach the JSON handlers installed by configure_logging. Test support."""
    root = logging.getLogger(LOGGER_NAMESPACE)
    for handler in _structured_handlers(root):
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
    root.propagate = True
