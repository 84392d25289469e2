"""Content-addressed identifiers.

Identical inputs always produce identical IDs, so repeated runs over the
same code report the same findings under the same names.
"""

from __future__ import annotations

import hashlib

from src.shared.errors import InputValidationError

_TRUNCATE = 16


def _require(value: str, name: str) -> None:
    if not value or not value.strip():
        raise InputValidationError(f"{name} is required and cannot be empty", field=name)


def hash_content(content: str) -> str:
    """Full sha256 hex digest of text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _short(content: str) -> str:
    return hash_content(content)[:_TRUNCATE]


def generate_finding_id(rule_id: str, file_path: str, line: int, column: int, matched: str) -> str:
    """``finding-`` + sha256(rule:file:line:col:value)[:16]. Positions are 1-indexed."""
    _require(rule_id, "rule_id")
    _require(file_path, "file_path")
    if line < 1:
        raise InputValidationError("line must be a positive integer (1-indexed)", field="line")
    if column < 1:
        raise InputValidationError("column must be a positive integer (1-indexed)", field="column")
    return f"finding-{_short(f'{rule_id}:{file_path}:{line}:{column}:{matched}')}"


def generate_receipt_id(finding_id: str, evidence_hash: str, timestamp: str) -> str:
    _require(finding_id, "finding_id")
    _require(evidence_hash, "evidence_hash")
    _require(timestamp, "timestamp")
    return f"receipt-{_short(f'{finding_id}:{evidence_hash}:{timestamp}')}"


def generate_audit_id(agent_id: str, action: str, target: str, content_hash: str) -> str:
    _require(agent_id, "agent_id")
    _require(action, "action")
    _require(target, "target")
    _require(content_hash, "content_hash")
    return f"audit-{_short(f'{agent_id}:{action}:{target}:{content_hash}')}"


def generate_transaction_id(patches: list[tuple[str, str]]) -> str:
    """ID for a multi-file patch given (file_path, content_hash) pairs.

    Order-independent: the pairs are sorted before hashing.
    """
    if not patches:
        raise InputValidationError("patches is required and cannot be empty", field="patches")
    for i, (path, content_hash) in enumerate(patches):
        _require(path, f"patches[{i}].file_path")
        _require(content_hash, f"patches[{i}].content_hash")
    joined = "|".join(sorted(f"{path}:{content_hash}" for path, content_hash in patches))
    return f"txn-{_short(joined)}"
