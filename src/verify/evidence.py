"""Evidence resolution.

Each Claim type has an ordered chain of sources; the first source that finds
the claim wins. A claim no source can find still gets Evidence with
found=False and confidence 0.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from src.shared.types import Claim, ClaimType, Evidence, EvidenceSource, SourceLocation
from src.verify.ground_truth import route_matches
from src.verify.hallucination import NODE_BUILTINS, package_name

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from src.verify.ground_truth import GroundTruth

logger = logging.getLogger(__name__)

_RESOLVE_EXTENSIONS = ("", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".json", ".py")
_INDEX_FILES = ("index.ts", "index.tsx", "index.js", "__init__.py")


def not_found(claim: Claim) -> Evidence:
    return Evidence(claim_id=claim.id, found=False, source=EvidenceSource.NONE, confidence=0.0)


class EvidenceResolver:
    """Resolves Claims against ground truth and the project tree.

    Results are cached by claim id for the lifetime of the resolver.
    """

    def __init__(self, ground_truth: GroundTruth, project_root: str | Path = ".") -> None:
        self._truth = ground_truth
        self._root = Path(project_root)
        self._cache: dict[str, Evidence] = {}
        self._chains: dict[ClaimType, tuple[Callable[[Claim], Awaitable[Evidence | None]], ...]] = {
            ClaimType.API_ENDPOINT: (self._from_routes,),
            ClaimType.ENV_VARIABLE: (self._from_env,),
            ClaimType.IMPORT: (self._from_filesystem, self._from_manifest),
            ClaimType.PACKAGE_DEPENDENCY: (self._from_manifest,),
            ClaimType.TYPE_REFERENCE: (self._from_contract_types,),
            ClaimType.FILE_REFERENCE: (self._from_filesystem,),
            ClaimType.FUNCTION_CALL: (),
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    async def resolve(self, claim: Claim) -> Evidence:
        cached = self._cache.get(claim.id)
        if cached is not None:
            return cached
        evidence: Evidence | None = None
        for source in self._chains.get(claim.type, ()):
            evidence = await source(claim)
            if evidence is not None:
                break
        result = evidence or not_found(claim)
        self._cache[claim.id] = result
        return result

    async def resolve_all(self, claims: Iterable[Claim]) -> list[Evidence]:
        return [await self.resolve(c) for c in claims]

    # -- sources --

    async def _from_routes(self, claim: Claim) -> Evidence | None:
        for route in await self._truth.routes():
            if not route_matches(claim.value, route.path):
                continue
            details: dict[str, Any] = {
                "matched_route": route.path,
                "method": route.method,
                "exact_match": claim.value == route.path,
                "auth_required": route.auth_required,
            }
            for contract in await self._truth.contracts():
                if route_matches(claim.value, contract.path) and (
                    not contract.method or contract.method == route.method
                ):
                    if contract.method:
                        details["method"] = contract.method
                    if contract.request is not None:
                        details["request"] = contract.request
                    if contract.response is not None:
                        details["response"] = contract.response
                    break
            return Evidence(
                claim_id=claim.id,
                found=True,
                source=EvidenceSource.TRUTHPACK,
                confidence=1.0,
                location=SourceLocation(file=route.file, line=route.line, column=1) if route.file else None,
                details=details,
            )
        return None

    async def _from_env(self, claim: Claim) -> Evidence | None:
        name = claim.value.removeprefix("process.env.")
        if name in await self._truth.env_vars():
            return Evidence(
                claim_id=claim.id,
                found=True,
                source=EvidenceSource.TRUTHPACK,
                confidence=1.0,
                details={"variable_name": name},
            )
        return None

    async def _from_contract_types(self, claim: Claim) -> Evidence | None:
        if claim.value in await self._truth.contract_types():
            return Evidence(
                claim_id=claim.id,
                found=True,
                source=EvidenceSource.TRUTHPACK,
                confidence=0.9,
                details={"type_name": claim.value},
            )
        return None

    async def _from_filesystem(self, claim: Claim) -> Evidence | None:
        spec = claim.value
        if not spec.startswith("."):
            return None
        base = (self._root / Path(claim.location.file).parent / spec).resolve()
        candidates = [base.with_name(base.name + ext) for ext in _RESOLVE_EXTENSIONS]
        candidates.extend(base / index for index in _INDEX_FILES)
        for path in candidates:
            if path.is_file():
                return Evidence(
                    claim_id=claim.id,
                    found=True,
                    source=EvidenceSource.FILESYSTEM,
                    confidence=1.0,
                    location=SourceLocation(file=str(path), line=1, column=1),
                    details={"resolved_path": str(path)},
                )
        logger.debug("Filesystem claim %s unresolved under %s", spec, self._root)
        return None

    async def _from_manifest(self, claim: Claim) -> Evidence | None:
        spec = claim.value
        if spec.startswith((".", "/")):
            return None
        name = package_name(spec.removeprefix("node:"))
        if name in NODE_BUILTINS or spec.startswith("node:"):
            return Evidence(
                claim_id=claim.id,
                found=True,
                source=EvidenceSource.PACKAGE_JSON,
                confidence=1.0,
                details={"package_name": name, "is_builtin": True},
            )
        if name in await self._truth.dependencies():
            return Evidence(
                claim_id=claim.id,
                found=True,
                source=EvidenceSource.PACKAGE_JSON,
                confidence=1.0,
                details={"package_name": name, "is_builtin": False},
            )
        return None
