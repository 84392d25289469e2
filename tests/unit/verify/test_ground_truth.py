"""Tests for the ground-truth accessor and truthpack readers.

Acceptance: pytest tests/unit/verify/test_ground_truth.py -v
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.verify.ground_truth import (
    FileTruthpackReader,
    GroundTruth,
    InMemoryTruthpackReader,
    normalize_path,
    route_matches,
)


class TestRouteMatching:
    def test_param_segment_matches_single_segment(self) -> None:
        assert route_matches("/api/users/42", "/api/users/:id") is True

    def test_extra_segment_does_not_match(self) -> None:
        assert route_matches("/api/users/42/extra", "/api/users/:id") is False

    @pytest.mark.parametrize("defined", ["/api/items/[id]", "/api/items/{id}", "/api/items/*"])
    def test_wildcard_syntaxes(self, defined: str) -> None:
        assert route_matches("/api/items/abc", defined) is True

    def test_literal_mismatch(self) -> None:
        assert route_matches("/api/orders/1", "/api/users/:id") is False

    def test_normalize_path(self) -> None:
        assert normalize_path("/api//users/?page=2") == "/api/users"
        assert normalize_path("/") == "/"


class TestGroundTruthViews:
    @pytest.mark.asyncio
    async def test_routes(self, ground_truth: GroundTruth) -> None:
        routes = await ground_truth.routes()
        assert [(r.method, r.path) for r in routes] == [
            ("GET", "/api/users"),
            ("GET", "/api/users/:id"),
            ("POST", "/api/orders"),
            ("GET", "/api/health"),
        ]
        assert routes[2].auth_required is True
        assert routes[0].auth_required is False

    @pytest.mark.asyncio
    async def test_env_and_dependencies(self, ground_truth: GroundTruth) -> None:
        assert await ground_truth.env_vars() == {"DATABASE_URL", "API_KEY"}
        assert await ground_truth.dependencies() == {"react", "zod"}

    @pytest.mark.asyncio
    async def test_contract_types(self, ground_truth: GroundTruth) -> None:
        assert {"UserList", "User"} <= await ground_truth.contract_types()

    @pytest.mark.asyncio
    async def test_protected_paths(self, ground_truth: GroundTruth) -> None:
        assert await ground_truth.protected_paths() == ["/api/admin/*", "/api/orders"]
        assert await ground_truth.is_protected("/api/admin/settings") is True
        assert await ground_truth.is_protected("/api/users") is False

    @pytest.mark.asyncio
    async def test_missing_sections_are_empty(self) -> None:
        empty = GroundTruth(InMemoryTruthpackReader())
        assert await empty.routes() == []
        assert await empty.env_vars() == set()
        assert await empty.dependencies() == set()

    @pytest.mark.asyncio
    async def test_non_numeric_route_line_defaults_to_zero(self) -> None:
        reader = InMemoryTruthpackReader({"routes": [{"path": "/api/a", "line": "abc"}, {"path": "/api/b", "line": 7}]})
        routes = await GroundTruth(reader).routes()
        assert [(r.path, r.line) for r in routes] == [("/api/a", 0), ("/api/b", 7)]

    @pytest.mark.asyncio
    async def test_null_auth_lists_are_empty(self) -> None:
        reader = InMemoryTruthpackReader({"auth": {"rules": None, "protected": None}})
        gt = GroundTruth(reader)
        assert await gt.protected_paths() == []
        assert await gt.is_protected("/api/anything") is False

    @pytest.mark.asyncio
    async def test_null_contract_types_are_ignored(self) -> None:
        reader = InMemoryTruthpackReader({"contracts": {"types": None, "contracts": []}})
        assert await GroundTruth(reader).contract_types() == set()

    @pytest.mark.asyncio
    async def test_snapshot_is_versioned_and_stable(self, truthpack_sections: dict) -> None:
        a = await GroundTruth(InMemoryTruthpackReader(truthpack_sections)).snapshot()
        b = await GroundTruth(InMemoryTruthpackReader(dict(truthpack_sections))).snapshot()
        assert a.version == "2024.1"
        assert len(a.hash) == 64
        assert a.hash == b.hash

    @pytest.mark.asyncio
    async def test_snapshot_hash_changes_with_content(self, truthpack_sections: dict) -> None:
        before = await GroundTruth(InMemoryTruthpackReader(truthpack_sections)).snapshot()
        changed = {**truthpack_sections, "env": {"variables": ["OTHER"]}}
        after = await GroundTruth(InMemoryTruthpackReader(changed)).snapshot()
        assert before.hash != after.hash


class TestFileTruthpackReader:
    def _write(self, root: Path, name: str, doc: object) -> None:
        target = root / ".vibecheck" / "truthpack"
        target.mkdir(parents=True, exist_ok=True)
        (target / f"{name}.json").write_text(json.dumps(doc), encoding="utf-8")

    @pytest.mark.asyncio
    async def test_reads_sections(self, project_root: Path) -> None:
        self._write(project_root, "routes", [{"method": "get", "path": "/api/ping"}])
        truth = GroundTruth(FileTruthpackReader(project_root))
        routes = await truth.routes()
        assert [(r.method, r.path) for r in routes] == [("GET", "/api/ping")]
        assert await FileTruthpackReader(project_root).list_sections() == ["routes"]

    @pytest.mark.asyncio
    async def test_corrupt_section_degrades_to_empty(self, project_root: Path) -> None:
        target = project_root / ".vibecheck" / "truthpack"
        target.mkdir(parents=True)
        (target / "env.json").write_text("{not json", encoding="utf-8")
        truth = GroundTruth(FileTruthpackReader(project_root))
        assert await truth.env_vars() == set()

    @pytest.mark.asyncio
    async def test_dependencies_fall_back_to_package_json(self, project_root: Path) -> None:
        manifest = {"dependencies": {"express": "^4"}, "devDependencies": {"vitest": "^1"}}
        (project_root / "package.json").write_text(json.dumps(manifest), encoding="utf-8")
        truth = GroundTruth(FileTruthpackReader(project_root))
        assert await truth.dependencies() == {"express", "vitest"}
