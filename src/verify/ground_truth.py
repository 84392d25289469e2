"""Ground-truth accessor.

Reads the truthpack through GroundTruthPort and exposes typed views of
each section. Missing, unreadable or malformed sections degrade to empty.
This biases the detector toward flagging, never toward passing.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.ports.ground_truth_port import SECTIONS, GroundTruthPort

logger = logging.getLogger(__name__)

DEFAULT_TRUTHPACK_DIR = ".vibecheck/truthpack"

_WILDCARD_PREFIXES = (":", "[", "{")


def normalize_path(path: str) -> str:
    """Strip the query string, collapse repeated slashes, drop a trailing slash."""
    path = path.split("?", 1)[0]
    path = re.sub(r"/+", "/", path)
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path


def route_matches(claimed: str, defined: str) -> bool:
    """Segment-wise route comparison.

    A defined segment starting with ``:``, ``[`` or ``{``, or equal to ``*``
    or ``**``, matches any single literal segment. Segment counts must agree,
    so ``/api/users/:id`` matches ``/api/users/42`` but not
    ``/api/users/42/extra``.
    """
    claimed = normalize_path(claimed)
    defined = normalize_path(defined)
    if claimed == defined:
        return True
    claimed_parts = [p for p in claimed.split("/") if p]
    defined_parts = [p for p in defined.split("/") if p]
    if len(claimed_parts) != len(defined_parts):
        return False
    for c, d in zip(claimed_parts, defined_parts, strict=True):
        if d.startswith(_WILDCARD_PREFIXES) or d in ("*", "**"):
            continue
        if c != d:
            return False
    return True


@dataclass(frozen=True)
class RouteDef:
    method: str
    path: str
    auth_required: bool = False
    file: str = ""
    line: int = 0


@dataclass(frozen=True)
class ContractDef:
    path: str
    method: str = ""
    name: str = ""
    request: dict[str, Any] | None = None
    response: dict[str, Any] | None = None


@dataclass(frozen=True)
class GroundTruthSnapshot:
    version: str
    hash: str
    sections: dict[str, Any] = field(default_factory=dict)


def _as_list(doc: Any, key: str) -> list[Any]:
    """Sections are either a bare list or ``{key: [...]}``."""
    if isinstance(doc, list):
        return doc
    if isinstance(doc, dict):
        value = doc.get(key)
        if isinstance(value, list):
            return value
    return []


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class FileTruthpackReader(GroundTruthPort):
    """Reads ``<root>/<truthpack_dir>/<section>.json``.

    The dependencies section falls back to the project's package.json
    (dependencies + devDependencies + peerDependencies) when the truthpack
    does not carry one.
    """

    def __init__(self, project_root: str | Path, truthpack_dir: str = DEFAULT_TRUTHPACK_DIR) -> None:
        self._root = Path(project_root)
        self._dir = self._root / truthpack_dir

    def _read_json(self, path: Path) -> Any | None:
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Ground truth file %s unreadable, treating as empty: %s", path, exc)
            return None

    async def load_section(self, name: str) -> Any | None:
        doc = self._read_json(self._dir / f"{name}.json")
        if doc is None and name == "dependencies":
            manifest = self._read_json(self._root / "package.json")
            if isinstance(manifest, dict):
                deps: dict[str, Any] = {}
                for key in ("dependencies", "devDependencies", "peerDependencies"):
                    section = manifest.get(key)
                    if isinstance(section, dict):
                        deps.update(section)
                return {"dependencies": deps}
        return doc

    async def list_sections(self) -> list[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json"))


class InMemoryTruthpackReader(GroundTruthPort):
    """Dict-backed truthpack for tests and API callers that post one inline."""

    def __init__(self, sections: dict[str, Any] | None = None) -> None:
        self._sections = dict(sections or {})

    async def load_section(self, name: str) -> Any | None:
        return self._sections.get(name)

    async def list_sections(self) -> list[str]:
        return sorted(self._sections)


class GroundTruth:
    """Typed, cached view over a GroundTruthPort.

    One instance per evaluation; ``clear_cache()`` forces a re-read.
    """

    def __init__(self, port: GroundTruthPort) -> None:
        self._port = port
        self._cache: dict[str, Any | None] = {}

    async def section(self, name: str) -> Any | None:
        if name not in self._cache:
            self._cache[name] = await self._port.load_section(name)
        return self._cache[name]

    def clear_cache(self) -> None:
        self._cache.clear()

    async def get_all(self) -> dict[str, Any]:
        """Every known section; missing ones map to None."""
        return {name: await self.section(name) for name in SECTIONS}

    async def routes(self) -> list[RouteDef]:
        result: list[RouteDef] = []
        for item in _as_list(await self.section("routes"), "routes"):
            if not isinstance(item, dict) or not item.get("path"):
                continue
            auth = item.get("auth")
            required = bool(auth.get("required")) if isinstance(auth, dict) else bool(item.get("protected", False))
            result.append(
                RouteDef(
                    method=str(item.get("method", "GET")).upper(),
                    path=str(item["path"]),
                    auth_required=required,
                    file=str(item.get("file", "")),
                    line=_as_int(item.get("line")),
                )
            )
        return result

    async def env_vars(self) -> set[str]:
        doc = await self.section("env")
        if isinstance(doc, dict) and "variables" not in doc:
            # {"NAME": {...}} mapping form
            return {str(k) for k in doc}
        names: set[str] = set()
        for item in _as_list(doc, "variables"):
            if isinstance(item, str):
                names.add(item)
            elif isinstance(item, dict) and item.get("name"):
                names.add(str(item["name"]))
        return names

    async def dependencies(self) -> set[str]:
        doc = await self.section("dependencies")
        if isinstance(doc, list):
            return {str(d) for d in doc}
        names: set[str] = set()
        if isinstance(doc, dict):
            for key in ("dependencies", "devDependencies", "peerDependencies"):
                section = doc.get(key)
                if isinstance(section, dict):
                    names.update(str(k) for k in section)
                elif isinstance(section, list):
                    names.update(str(k) for k in section)
        return names

    async def contracts(self) -> list[ContractDef]:
        result: list[ContractDef] = []
        for item in _as_list(await self.section("contracts"), "contracts"):
            if not isinstance(item, dict) or not item.get("path"):
                continue
            request = item.get("request")
            response = item.get("response")
            result.append(
                ContractDef(
                    path=str(item["path"]),
                    method=str(item.get("method", "")).upper(),
                    name=str(item.get("name", "")),
                    request=request if isinstance(request, dict) else None,
                    response=response if isinstance(response, dict) else None,
                )
            )
        return result

    async def contract_types(self) -> set[str]:
        """Type names declared by contracts (name, request/response type, types list)."""
        doc = await self.section("contracts")
        names: set[str] = set()
        if isinstance(doc, dict):
            names.update(str(t) for t in doc.get("types") or [] if isinstance(t, str))
        for contract in await self.contracts():
            if contract.name:
                names.add(contract.name)
            for part in (contract.request, contract.response):
                if part and isinstance(part.get("type"), str):
                    names.add(part["type"])
        return names

    async def protected_paths(self) -> list[str]:
        """Route patterns that require auth, from the auth section and routes."""
        doc = await self.section("auth")
        patterns: list[str] = []
        if isinstance(doc, dict):
            patterns.extend(str(p) for p in doc.get("protected") or [] if isinstance(p, str))
            for rule in doc.get("rules") or []:
                if isinstance(rule, dict) and rule.get("path") and rule.get("required", True):
                    patterns.append(str(rule["path"]))
        patterns.extend(r.path for r in await self.routes() if r.auth_required)
        return patterns

    async def is_protected(self, path: str) -> bool:
        return any(route_matches(path, pattern) for pattern in await self.protected_paths())

    async def snapshot(self) -> GroundTruthSnapshot:
        """Versioned, content-hashed view of every section."""
        sections = await self.get_all()
        canonical = json.dumps(sections, sort_keys=True, separators=(",", ":"), default=str)
        meta = await self.section("meta")
        version = str(meta.get("version")) if isinstance(meta, dict) and meta.get("version") else "unversioned"
        return GroundTruthSnapshot(
            version=version,
            hash=hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
            sections=sections,
        )
