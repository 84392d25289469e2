"""Unified error hierarchy for the ship gate.

All domain errors inherit from GateError. Layers may define narrower
errors, but anything crossing a layer boundary must use these base types.

Taxonomy:
- Input errors (VALIDATION, CONFIG) are raised before the core runs.
- Evidence errors degrade to "no evidence" and are only raised by ports.
- Timeout errors abort the enclosing orchestration node.
- Tamper errors are reported, never auto-corrected.
"""

from __future__ import annotations


class GateError(Exception):
    """Base error for all ship gate exceptions."""

    def __init__(self, message: str, code: str = "GATE_ERROR") -> None:
        self.code = code
        super().__init__(message)


# -- Input errors --


class InputValidationError(GateError):
    """Input validation failed before any side effect."""

    def __init__(self, message: str, field: str = "") -> None:
        self.field = field
        super().__init__(message, code="VALIDATION")


class ConfigError(GateError):
    """Gate or policy configuration is malformed."""

    def __init__(self, message: str, source: str = "") -> None:
        self.source = source
        super().__init__(message, code="CONFIG")


# -- Budget errors --


class OperationTimeoutError(GateError):
    """An operation exceeded its timeout budget."""

    is_timeout = True

    def __init__(self, operation: str, timeout_ms: int) -> None:
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(
            f"{operation} timed out after {timeout_ms}ms",
            code="TIMEOUT",
        )


class RateLimitExceededError(GateError):
    """A rate limit tier rejected the request."""

    def __init__(self, key: str, retry_after: int) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {key}, retry after {retry_after}s",
            code="RATE_LIMITED",
        )


# -- Evidence errors --


class EvidenceUnavailableError(GateError):
    """A ground-truth or receipt source could not be read."""

    def __init__(self, source: str, message: str = "") -> None:
        self.source = source
        super().__init__(message or f"Evidence source {source} is unavailable", code="EVIDENCE_UNAVAILABLE")


class TamperDetectedError(GateError):
    """A stored record no longer matches its signature."""

    def __init__(self, receipt_id: str, message: str = "") -> None:
        self.receipt_id = receipt_id
        super().__init__(message or f"Signature mismatch for {receipt_id}", code="TAMPER_DETECTED")


class NotFoundError(GateError):
    """Requested resource not found."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            code="NOT_FOUND",
        )


# -- Execution errors --


class GraphExecutionError(GateError):
    """The orchestration graph halted."""

    def __init__(self, node: str, message: str) -> None:
        self.node = node
        super().__init__(f"[{node}] {message}", code="GRAPH_ERROR")


class ToolExecutionError(GateError):
    """A tool call failed after validation."""

    def __init__(self, tool: str, message: str) -> None:
        self.tool = tool
        super().__init__(f"{tool}: {message}", code="TOOL_ERROR")


def is_timeout_error(exc: BaseException) -> bool:
    """True for any error that carries the timeout marker."""
    return getattr(exc, "is_timeout", False) is True


__all__ = [
    "ConfigError",
    "EvidenceUnavailableError",
    "GateError",
    "GraphExecutionError",
    "InputValidationError",
    "NotFoundError",
    "OperationTimeoutError",
    "RateLimitExceededError",
    "TamperDetectedError",
    "ToolExecutionError",
    "is_timeout_error",
]
