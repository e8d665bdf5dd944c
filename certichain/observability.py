"""
CERTICHAIN Observability

Structured logging and a tamper-evident audit trail for the lifecycle
engine. Every component logs through a CertichainLogger bound to its layer;
records carry the correlation id of the caller-facing operation that
produced them.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                  Lifecycle / Service                     │
    │  logger.info("msg", lot_number=x)  audit.log(...)        │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                    CertichainLogger                      │
    │  correlation ids, layer, structured context              │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                  StructuredHandler                       │
    │  one JSON object per line (or plain text)                │
    └─────────────────────────────────────────────────────────┘

Private keys and decrypted payloads are never passed to a logger.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
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
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class CertichainLayer(Enum):
    """Engine components, used to categorise log records."""
    ENVELOPE = "envelope"
    CREDENTIALS = "credentials"
    SIGNERS = "signers"
    LIFECYCLE = "lifecycle"
    SEALING = "sealing"
    LEDGER = "ledger"
    ARTIFACTS = "artifacts"
    SERVICE = "service"
    CONFIG = "config"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
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

    def to_text(self) -> str:
        parts = [self.timestamp, self.level.upper(), self.logger, self.message]
        if self.correlation_id:
            parts.append(f"[{self.correlation_id}]")
        for key in sorted(self.context):
            parts.append(f"{key}={self.context[key]}")
        text = " ".join(parts)
        if self.exception:
            text += "\n" + self.exception
        return text


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one structured event per line."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream or sys.stderr
        self.fmt = fmt

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            line = event.to_text() if self.fmt == "text" else event.to_json()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class CertichainLogger:
    """
    Structured logger for engine components.

    Wraps a standard library logger named ``certichain.<layer>.<name>`` and
    passes layer, operation and keyword context through ``extra``.
    """

    def __init__(
        self,
        name: str,
        layer: CertichainLayer,
        level: Optional[LogLevel] = None,
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"certichain.{layer.value}.{name}")
        if level is not None:
            self._logger.setLevel(getattr(logging, level.value.upper()))

    @property
    def logger(self) -> logging.Logger:
        return self._logger

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
            duration_ms=round(duration_ms, 3),
            **context,
        )


def configure_logging(
    level: str = "info",
    fmt: str = "json",
    stream: Any = None,
) -> logging.Handler:
    """
    Attach a StructuredHandler to the ``certichain`` logger tree.

    Replaces a handler installed by an earlier call, so reconfiguring is
    idempotent. Returns the installed handler.
    """
    root = logging.getLogger("certichain")
    for handler in list(root.handlers):
        if isinstance(handler, StructuredHandler):
            root.removeHandler(handler)

    handler = StructuredHandler(stream=stream, fmt=fmt)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))
    return handler


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: CertichainLayer) -> CertichainLogger:
    """Get a logger for an engine component."""
    return CertichainLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: CertichainLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# =============================================================================
# AUDIT TRAIL
# =============================================================================


@dataclass
class AuditEvent:
    """Audit event for one lifecycle transition or refusal."""
    event_id: str
    timestamp: str
    actor: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure, denied
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""
    event_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def hashable(self) -> Dict[str, Any]:
        d = self.to_dict()
        d.pop("event_hash")
        return d


GENESIS_HASH = "genesis"


def _chain_hash(event: AuditEvent) -> str:
    data = json.dumps(event.hashable(), sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()


class AuditLogger:
    """
    Append-only audit trail with hash chaining.

    Each event commits to the hash of its predecessor, so editing or
    dropping an entry breaks ``verify_chain``.
    """

    def __init__(self, logger: CertichainLogger):
        self._logger = logger
        self._last_hash: str = GENESIS_HASH
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    @property
    def head(self) -> str:
        return self._last_hash

    def log(
        self,
        actor: str,
        action: str,
        resource_type: str,
        resource_id: str,
        outcome: str,
        **details: Any,
    ) -> AuditEvent:
        """Record an audit event and emit it through the logger."""
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor=actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            correlation_id=get_correlation_id(),
            details=details,
        )

        with self._lock:
            event.previous_hash = self._last_hash
            event.event_hash = _chain_hash(event)
            self._last_hash = event.event_hash
            self._events.append(event)

        self._logger.info(
            f"AUDIT: {action} on {resource_type}/{resource_id}",
            operation="audit",
            actor=actor,
            outcome=outcome,
            event_hash=event.event_hash,
        )
        return event

    def verify_chain(self) -> bool:
        """Recompute every link; False if any event was altered."""
        previous = GENESIS_HASH
        for event in self.events:
            if event.previous_hash != previous:
                return False
            if _chain_hash(event) != event.event_hash:
                return False
            previous = event.event_hash
        return True
