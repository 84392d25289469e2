"""Git adapter implementing DiffProvider.

Layer: Infrastructure

Runs ``git diff`` as a subprocess (argument list, never a shell) under the
project root. Numstat gives the file list and line counts, the plain diff
gives the text that affected-route detection scans.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from src.ports.repo_port import DiffProvider, DiffResult
from src.shared.errors import EvidenceUnavailableError

logger = logging.getLogger(__name__)


def parse_numstat(output: str) -> tuple[tuple[str, ...], int, int]:
    """Parse ``git diff --numstat`` output. Binary files count zero lines."""
    files: list[str] = []
    added = removed = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        plus, minus, path = parts[0], parts[1], parts[2]
        files.append(path)
        added += int(plus) if plus.isdigit() else 0
        removed += int(minus) if minus.isdigit() else 0
    return tuple(files), added, removed


class GitDiffProvider(DiffProvider):
    def __init__(self, project_root: str | Path = ".", *, git: str = "git") -> None:
        self._root = Path(project_root)
        self._git = git

    async def _run(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            self._git,
            *args,
            cwd=self._root,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise EvidenceUnavailableError("git", f"git {' '.join(args)} failed: {message}")
        return stdout.decode("utf-8", errors="replace")

    async def get_diff(self, base: str = "HEAD", head: str | None = None) -> DiffResult:
        refs = [base] if head is None else [base, head]
        numstat = await self._run("diff", "--numstat", *refs, "--")
        text = await self._run("diff", *refs, "--")
        files, added, removed = parse_numstat(numstat)
        logger.debug("git diff %s: %d files, +%d -%d", " ".join(refs), len(files), added, removed)
        return DiffResult(files=files, lines_added=added, lines_removed=removed, text=text)
