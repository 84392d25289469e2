"""Run-id propagation via contextvars.

- The orchestration graph binds a run_id when an evaluation starts
- Logging and metrics read it via get_run_id() for correlation
- contextvars keeps it async-safe without any global registry
"""

from __future__ import annotations

from collections.abc import Generator  # noqa: TC003 -- used at runtime by contextmanager
from contextlib import contextmanager
from contextvars import ContextVar, Token
from uuid import uuid4

# The single ContextVar holding the current run_id string.
current_run_id: ContextVar[str] = ContextVar("current_run_id", default="")


def get_run_id() -> str:
    """Return the current run_id (empty string if not set)."""
    return current_run_id.get()


def set_run_id(run_id: str) -> Token[str]:
    """Set the run_id for the current context. Returns a reset token."""
    return current_run_id.set(run_id)


def new_run_id() -> str:
    return f"run_{uuid4().hex[:12]}"


@contextmanager
def run_context(run_id: str | None = None) -> Generator[str, None, None]:
    """Scoped run_id context manager.

    Binds run_id for the duration of the ``with`` block and restores the
    previous value on exit. An empty or missing run_id gets a fresh one.

    Usage::

        with run_context("run_abc") as rid:
            # get_run_id() == "run_abc"
            ...
    """
    effective_id = run_id if run_id else new_run_id()
    token = current_run_id.set(effective_id)
    try:
        yield effective_id
    finally:
        current_run_id.reset(token)
