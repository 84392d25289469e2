"""Structured error logging handler.

- Error logs carry error_code, stack_trace, run_id and free-form context
- Output is a dict under ``extra["structured_error"]`` for JSON log shippers
- Sensitive context keys are redacted before they reach the log record
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import asdict, dataclass, field
from typing import Any

from src.shared.run_context import get_run_id


@dataclass(frozen=True)
class StructuredError:
    """Structured representation of an error for logging."""

    error_code: str
    message: str
    stack_trace: str
    context: dict[str, Any] = field(default_factory=dict)
    run_id: str = ""
    node: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict suitable for JSON logging."""
        d = asdict(self)
        if "context" in d:
            d["context"] = _redact_sensitive(d["context"])
        return d


_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "token",
        "secret",
        "api_key",
        "authorization",
        "cookie",
        "jwt",
        "credential",
        "private_key",
    }
)


def _redact_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Redact values of sensitive keys."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in _SENSITIVE_KEYS:
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = _redact_sensitive(value)
        else:
            result[key] = value
    return result


def create_structured_error(
    exc: BaseException,
    *,
    error_code: str = "",
    run_id: str = "",
    node: str = "",
    context: dict[str, Any] | None = None,
) -> StructuredError:
    """Create a StructuredError from an exception.

    If the exception has a ``.code`` attribute (any GateError subclass),
    it is used as the error_code unless overridden. The run_id falls back
    to the one bound in the current run context.
    """
    code = error_code or getattr(exc, "code", type(exc).__name__)
    stack = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return StructuredError(
        error_code=code,
        message=str(exc),
        stack_trace="".join(stack),
        context=context or {},
        run_id=run_id or get_run_id(),
        node=node,
    )


def log_structured_error(
    logger: logging.Logger,
    exc: BaseException,
    *,
    error_code: str = "",
    run_id: str = "",
    node: str = "",
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> StructuredError:
    """Log an exception as a structured error.

    Returns the StructuredError for further processing (e.g. metrics).
    """
    structured = create_structured_error(
        exc,
        error_code=error_code,
        run_id=run_id,
        node=node,
        context=context,
    )
    logger.log(level, "structured_error", extra={"structured_error": structured.to_dict()})
    return structured
