"""Discovery & Planner — Find test files and build the execution plan.

Test files are found by glob under a root directory.  The procedures of
each file are listed by loading the file in a throwaway interpreter (the
worker's ``list`` mode), so no test procedure runs during discovery and
nothing the file does at load time touches this process.

Ordering is deterministic: files sorted by path, then procedures in
declaration order.  Protocol sequence numbers depend on it.

A file that fails to load is reported loudly and skipped; the other files
are still planned.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from clispec.context import RESULTS_END, RESULTS_START
from clispec.session import RunSession

logger = logging.getLogger(__name__)

DEFAULT_PATTERN = "*_test.py"
DEFAULT_PREFIX = "test_"

# Directories never searched for test files
EXCLUDED_DIRS = frozenset({
    ".git",
    "__pycache__",
    ".venv",
    "venv",
    "node_modules",
    ".mypy_cache",
    ".pytest_cache",
    ".tox",
})

_DIRECTIVE_RE = re.compile(r"^\s*#\s*@(SKIP|TODO)\b[ \t]*(.*?)\s*$")
_PREFIX_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DIRECTIVE_NONE = ""
DIRECTIVE_SKIP = "SKIP"
DIRECTIVE_TODO = "TODO"


# ── Exceptions ──


class ConfigError(Exception):
    """Invalid discovery configuration."""


class DiscoveryError(Exception):
    """A test file could not be loaded."""


# ── Data Classes ──


@dataclass(frozen=True)
class Directive:
    """A ``# @SKIP`` or ``# @TODO`` annotation on a test procedure."""

    kind: str = DIRECTIVE_NONE
    reason: str = ""

    @property
    def is_skip(self) -> bool:
        return self.kind == DIRECTIVE_SKIP

    @property
    def is_todo(self) -> bool:
        return self.kind == DIRECTIVE_TODO

    def __str__(self) -> str:
        if not self.kind:
            return ""
        return f"{self.kind} {self.reason}".rstrip()


NO_DIRECTIVE = Directive()


@dataclass(frozen=True)
class TestFile:
    """A discovered test file."""

    __test__ = False  # not a pytest class

    path: Path
    pattern: str = DEFAULT_PATTERN


@dataclass(frozen=True)
class TestCase:
    """One test procedure within a test file."""

    __test__ = False  # not a pytest class

    file: TestFile
    name: str
    directive: Directive = NO_DIRECTIVE
    line: int = 0

    @property
    def path(self) -> Path:
        return self.file.path


@dataclass
class ExecutionPlan:
    """Ordered test cases for one run.

    Attributes:
        cases: Test cases in execution order.
        files: Test files that were found, loadable or not.
        warnings: Diagnostics for files that were skipped.
    """

    cases: list[TestCase] = field(default_factory=list)
    files: list[TestFile] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.cases)

    def __iter__(self):
        return iter(self.cases)

    def __len__(self) -> int:
        return len(self.cases)


# ── Validation ──


def validate_pattern(pattern: str) -> str:
    if not pattern or not pattern.strip():
        raise ConfigError("Test file pattern must not be empty")
    if "/" in pattern or "\\" in pattern:
        raise ConfigError(
            f"Test file pattern must be a file name glob, not a path: {pattern!r}"
        )
    return pattern


def validate_prefix(prefix: str) -> str:
    if not prefix or not _PREFIX_RE.match(prefix):
        raise ConfigError(
            f"Test procedure prefix must be a valid identifier start: {prefix!r}"
        )
    return prefix


# ── Discovery ──


def discover_files(root: str | Path, pattern: str = DEFAULT_PATTERN) -> list[TestFile]:
    """Every file under ``root`` matching ``pattern``, sorted by path."""
    validate_pattern(pattern)
    base = Path(root)
    found = []
    for path in base.rglob(pattern):
        relative_parts = path.relative_to(base).parts[:-1]
        if any(part in EXCLUDED_DIRS for part in relative_parts):
            continue
        if path.is_file():
            found.append(TestFile(path=path, pattern=pattern))
    found.sort(key=lambda f: str(f.path))
    return found


def extract_directive(source_lines: list[str], line: int) -> Directive:
    """Directive from the line immediately above declaration line ``line``.

    ``line`` is 1-based; for decorated procedures it is the first decorator.
    """
    if line <= 1 or line - 2 >= len(source_lines):
        return NO_DIRECTIVE
    match = _DIRECTIVE_RE.match(source_lines[line - 2])
    if not match:
        return NO_DIRECTIVE
    return Directive(kind=match.group(1), reason=match.group(2))


def parse_listing(output: str) -> list[dict]:
    """Extract the procedure listing printed by the worker between markers."""
    start_idx = output.rfind(RESULTS_START)
    end_idx = output.rfind(RESULTS_END)
    if start_idx == -1 or end_idx == -1 or end_idx < start_idx:
        raise DiscoveryError("Worker did not produce a procedure listing")
    json_str = output[start_idx + len(RESULTS_START):end_idx].strip()
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise DiscoveryError(f"Failed to parse procedure listing: {e}") from e
    return list(data.get("procedures", []))


def list_procedures(
    session: RunSession,
    path: str | Path,
    prefix: str = DEFAULT_PREFIX,
) -> list[dict]:
    """Load ``path`` in a throwaway interpreter and list its test procedures."""
    result = session.run_worker(["list", str(path), "--prefix", prefix])
    if result.returncode != 0:
        raise DiscoveryError(
            f"Failed to load {path} (exit code {result.returncode}):\n"
            f"{result.output.strip()}"
        )
    return parse_listing(result.output)


def plan_tests(
    session: RunSession,
    pattern: str = DEFAULT_PATTERN,
    prefix: str = DEFAULT_PREFIX,
    root: Optional[str | Path] = None,
) -> ExecutionPlan:
    """Build the execution plan for every test file under the session root."""
    validate_pattern(pattern)
    validate_prefix(prefix)
    base = Path(root) if root else session.root

    plan = ExecutionPlan()
    plan.files = discover_files(base, pattern)
    logger.info("Discovered %d test files matching %s", len(plan.files), pattern)

    for test_file in plan.files:
        try:
            procedures = list_procedures(session, test_file.path, prefix)
        except DiscoveryError as e:
            message = f"Skipping {test_file.path}: {e}"
            logger.error(message)
            plan.warnings.append(message)
            continue

        try:
            source_lines = test_file.path.read_text(
                encoding="utf-8", errors="replace",
            ).splitlines()
        except OSError as e:
            message = f"Skipping {test_file.path}: {e}"
            logger.error(message)
            plan.warnings.append(message)
            continue

        for proc in procedures:
            line = int(proc.get("line", 0))
            plan.cases.append(TestCase(
                file=test_file,
                name=proc["name"],
                directive=extract_directive(source_lines, line),
                line=line,
            ))

    logger.info("Planned %d tests", plan.total)
    return plan
