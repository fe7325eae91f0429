"""
Minter Observability

Structured logging for batch runs. Every event carries the run id of the
batch that produced it, so interleaved worker output can be regrouped.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Application Code                      │
    │  logger.info("msg", entry_id=x)  audit.log(...)          │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      MintLogger                          │
    │  run id propagation, layer tagging, structured context  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │              "minter" logger handlers                    │
    │         StructuredHandler (json) │ TextHandler           │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import functools
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

ROOT_LOGGER_NAME = "minter"

# Run-scoped context; copied into every worker thread.
run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")
entry_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("entry_id", default="")

logging.getLogger(ROOT_LOGGER_NAME).addHandler(logging.NullHandler())


class MintLayer(Enum):
    """Minter components for categorization."""
    MANIFEST = "manifest"
    BUILDER = "builder"
    IDENTITY = "identity"
    TRANSPORT = "transport"
    RETRY = "retry"
    LEDGER = "ledger"
    ORCHESTRATOR = "orchestrator"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    run_id: str = ""
    entry_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _event_from_record(record: logging.LogRecord) -> LogEvent:
    event = LogEvent(
        timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        level=record.levelname.lower(),
        logger=record.name,
        message=record.getMessage(),
        run_id=getattr(record, "run_id", "") or run_id_var.get(),
        entry_id=getattr(record, "entry_id", "") or entry_id_var.get(),
        layer=getattr(record, "layer", ""),
        operation=getattr(record, "operation", ""),
        duration_ms=getattr(record, "duration_ms", None),
        error_code=getattr(record, "error_code", ""),
        context=getattr(record, "context", {}),
    )
    if record.exc_info:
        event.exception = "".join(traceback.format_exception(*record.exc_info))
    return event


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(_event_from_record(record).to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.Handler):
    """Human-readable single-line output for interactive use."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = _event_from_record(record)
            parts = [f"{event.level.upper():<7}", event.message]
            if event.entry_id:
                parts.append(f"entry={event.entry_id}")
            parts.extend(f"{k}={v}" for k, v in sorted(event.context.items()))
            self.stream.write(" ".join(parts) + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> logging.Logger:
    """Install a single handler on the `minter` logger, replacing earlier ones."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        if isinstance(handler, (StructuredHandler, TextHandler)):
            root.removeHandler(handler)
    handler = TextHandler(stream) if fmt == "text" else StructuredHandler(stream)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return root


class MintLogger:
    """
    Structured logger for minter components.

    Records go to `minter.<layer>.<name>` and propagate to the handlers
    installed by `configure_logging`.
    """

    def __init__(self, name: str, layer: MintLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "run_id": run_id_var.get(),
            "entry_id": context.pop("entry_id", "") or entry_id_var.get(),
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def get_logger(name: str, layer: MintLayer) -> MintLogger:
    """Get a logger for a minter component."""
    return MintLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: MintLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                logger.operation(operation_name, (time.monotonic() - start) * 1000, success)
        return wrapper
    return decorator


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@dataclass
class AuditEvent:
    """Terminal transition of one manifest entry."""
    event_id: str
    timestamp: str
    actor: str
    action: str
    entry_id: str
    outcome: str  # succeeded, failed
    run_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit trail of terminal entry transitions.

    Each event hash covers the event and the previous hash.
    """

    GENESIS = "genesis"

    def __init__(self, logger: MintLogger):
        self._logger = logger
        self._last_hash: str = self.GENESIS
        self._lock = threading.Lock()

    @property
    def last_hash(self) -> str:
        return self._last_hash

    @staticmethod
    def chain_hash(event: AuditEvent, previous: str) -> str:
        data = json.dumps(event.to_dict(), sort_keys=True, default=str) + previous
        return hashlib.sha256(data.encode()).hexdigest()

    def log(
        self,
        actor: str,
        action: str,
        entry_id: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor=actor,
            action=action,
            entry_id=entry_id,
            outcome=outcome,
            run_id=run_id_var.get(),
            details=details,
        )

        with self._lock:
            event_hash = self.chain_hash(event, self._last_hash)
            self._last_hash = event_hash

        self._logger.info(
            f"AUDIT: {action} {entry_id} {outcome}",
            operation="audit",
            entry_id=entry_id,
            event_hash=event_hash,
            actor=actor,
            **details,
        )
        return event


__all__ = [
    "MintLayer",
    "LogEvent",
    "StructuredHandler",
    "TextHandler",
    "configure_logging",
    "MintLogger",
    "get_logger",
    "generate_run_id",
    "run_id_var",
    "entry_id_var",
    "timed_operation",
    "AuditEvent",
    "AuditLogger",
]
