"""Guard for user-supplied regular expressions.

Patterns coming from tool input or config are checked for size and for
shapes that backtrack catastrophically before they are ever compiled.
Matching runs in a child process that is killed at the deadline, so a
pattern that slips past the shape checks cannot pin the interpreter.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from multiprocessing.connection import Connection

logger = logging.getLogger(__name__)

E_REGEX_INVALID = "E_REGEX_INVALID"
E_REGEX_COMPLEXITY_EXCEEDED = "E_REGEX_COMPLEXITY_EXCEEDED"
E_REGEX_TIMEOUT = "E_REGEX_TIMEOUT"

MAX_PATTERN_LENGTH = 1000
MAX_GLOB_WILDCARDS = 10

# (x+)+  (x*)*  (x+)*  (x+){n}  (?:x+)+
_NESTED_QUANTIFIER = re.compile(r"\((?:[^()\\]|\\.)*[+*](?:[^()\\]|\\.)*\)(?:[+*]|\{\d)")
# (a|a)+  (?:a|ab)*  (?P<w>x|xy){2,}
_QUANTIFIED_GROUP = re.compile(r"\((?:\?:|\?P<\w+>)?((?:[^()\\]|\\.)*)\)(?:[+*]|\{\d)")
_ALTERNATIVE_SPLIT = re.compile(r"(?<!\\)\|")
_QUANTIFIER = re.compile(r"[*+?]|\{\d+(?:,\d*)?\}")
_BACKREFERENCE = re.compile(r"\\\d+")


@dataclass(frozen=True)
class RegexLimits:
    max_alternations: int = 10
    max_quantifiers: int = 20
    max_backreferences: int = 5
    max_group_depth: int = 10
    timeout_ms: int = 1000


DEFAULT_REGEX_LIMITS = RegexLimits()


@dataclass(frozen=True)
class RegexValidationResult:
    valid: bool
    error: str | None = None
    error_code: str | None = None
    pattern: str | None = None


@dataclass(frozen=True)
class RegexMatchResult:
    match: bool
    error: str | None = None
    error_code: str | None = None


def _invalid(error: str, code: str = E_REGEX_COMPLEXITY_EXCEEDED) -> RegexValidationResult:
    return RegexValidationResult(valid=False, error=error, error_code=code)


def _overlapping_alternation(pattern: str) -> bool:
    """A repeated group where one alternative is a prefix of another."""
    for group in _QUANTIFIED_GROUP.finditer(pattern):
        alternatives = _ALTERNATIVE_SPLIT.split(group.group(1))
        for i, first in enumerate(alternatives):
            for second in alternatives[i + 1 :]:
                if first.startswith(second) or second.startswith(first):
                    return True
    return False


def _group_depth(pattern: str) -> tuple[int, bool]:
    """Max nesting depth of unescaped parentheses, and whether they balance."""
    depth = max_depth = 0
    escaped = in_class = False
    for ch in pattern:
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif in_class:
            in_class = ch != "]"
        elif ch == "[":
            in_class = True
        elif ch == "(":
            depth += 1
            max_depth = max(max_depth, depth)
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return max_depth, False
    return max_depth, depth == 0


def _search_worker(pattern: str, flags: int, text: str, conn: Connection) -> None:
    try:
        conn.send(re.search(pattern, text, flags) is not None)
    finally:
        conn.close()


def _search_in_child(pattern: str, text: str, flags: int, timeout: float) -> bool | None:
    """Search in a child process; None when it was killed at the deadline."""
    ctx = multiprocessing.get_context()
    receiver, sender = ctx.Pipe(duplex=False)
    process = ctx.Process(target=_search_worker, args=(pattern, flags, text, sender), daemon=True)
    process.start()
    sender.close()
    try:
        if not receiver.poll(timeout):
            return None
        return bool(receiver.recv())
    finally:
        receiver.close()
        if process.is_alive():
            process.kill()
        process.join()


class RegexValidator:
    def __init__(self, limits: RegexLimits = DEFAULT_REGEX_LIMITS) -> None:
        self._limits = limits

    @property
    def limits(self) -> RegexLimits:
        return self._limits

    def validate(self, pattern: str) -> RegexValidationResult:
        if not isinstance(pattern, str):
            return _invalid("Pattern must be a string", E_REGEX_INVALID)
        if len(pattern) > MAX_PATTERN_LENGTH:
            return _invalid("Pattern too long")
        if _NESTED_QUANTIFIER.search(pattern) or _overlapping_alternation(pattern):
            return _invalid("Pattern contains known ReDoS vulnerability")

        limits = self._limits
        alternations = pattern.count("|")
        if alternations > limits.max_alternations:
            return _invalid(f"Too many alternations ({alternations} > {limits.max_alternations})")
        quantifiers = len(_QUANTIFIER.findall(pattern))
        if quantifiers > limits.max_quantifiers:
            return _invalid(f"Too many quantifiers ({quantifiers} > {limits.max_quantifiers})")
        backreferences = len(_BACKREFERENCE.findall(pattern))
        if backreferences > limits.max_backreferences:
            return _invalid(f"Too many backreferences ({backreferences} > {limits.max_backreferences})")

        depth, balanced = _group_depth(pattern)
        if not balanced:
            return _invalid("Unbalanced parentheses", E_REGEX_INVALID)
        if depth > limits.max_group_depth:
            return _invalid(f"Groups nested too deeply ({depth} > {limits.max_group_depth})")

        try:
            re.compile(pattern)
        except re.error as exc:
            return _invalid(str(exc), E_REGEX_INVALID)
        return RegexValidationResult(valid=True, pattern=pattern)

    async def execute(self, pattern: str, text: str, flags: int = 0) -> RegexMatchResult:
        """Validate, then search ``text`` in a child process under the timeout.

        The deadline covers process start-up as well as the search itself. A
        search still running at the deadline is killed, not abandoned.
        """
        validation = self.validate(pattern)
        if not validation.valid:
            return RegexMatchResult(match=False, error=validation.error, error_code=validation.error_code)
        found = await asyncio.to_thread(_search_in_child, pattern, text, flags, self._limits.timeout_ms / 1000)
        if found is None:
            logger.warning("Regex execution exceeded %dms: %.80s", self._limits.timeout_ms, pattern)
            return RegexMatchResult(match=False, error="Regex execution timeout", error_code=E_REGEX_TIMEOUT)
        return RegexMatchResult(match=found)

    def glob_to_regex(self, glob: str) -> RegexValidationResult:
        """``*`` -> ``.*``, ``?`` -> ``.``, everything else literal."""
        if glob.count("*") > MAX_GLOB_WILDCARDS:
            return _invalid("Too many wildcards in glob pattern")
        parts = []
        for ch in glob:
            if ch == "*":
                parts.append(".*")
            elif ch == "?":
                parts.append(".")
            else:
                parts.append(re.escape(ch))
        return self.validate("".join(parts))
