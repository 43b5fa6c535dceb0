"""Trace Collector — Line coverage for test runs.

Uses the interpreter's per-line hook (``sys.settrace``) inside each isolated
context.  Every executed ``(absolute path, line)`` pair goes into an append
buffer that is flushed to the test's own record file when it reaches
``TRACE_BATCH_SIZE`` entries and on finalize.

After the run, all record files are merged into one set of covered lines.
Coverage is binary: a line is covered or it is not, hit counts are never
kept.  Statistics classify each physical line with ``executable_lines``,
a heuristic over raw source text.

Known limits: child processes started by a test are not traced,
statements continued across several physical lines count once per line the
classifier accepts, and a test that ends its interpreter without cleanup
(``os._exit``, a fatal signal) loses up to ``TRACE_BATCH_SIZE - 1`` buffered
entries because the collector is never finalized.
"""

import json
import logging
import os
import re
import sys
import sysconfig
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

TRACE_BATCH_SIZE = 50
RECORD_SUFFIX = ".cov"

# Engine sources are never traced
_ENGINE_ROOT = str(Path(__file__).resolve().parent)

_DECLARATION_RE = re.compile(
    r"^(async\s+)?def\s+[A-Za-z_][A-Za-z0-9_]*\s*\(.*$"
)
_BLOCK_KEYWORDS = frozenset({"else:", "try:", "finally:"})
_CLOSING_DELIMITER_RE = re.compile(r"^[\)\]\}]+[,:]?$")
_TRIPLE_QUOTES = ('"""', "'''")
_TRIPLE_QUOTE_START_RE = re.compile(r"^[rRuUbB]{0,2}(\"\"\"|''')")
# A whole line holding one single- or double-quoted literal
_STRING_LINE_RE = re.compile(r"""^[rRuUbB]{0,2}(['"])(?:\\.|(?!\1).)*\1$""")


# ── Data Classes ──


@dataclass
class CoverageStats:
    """Coverage of one file.

    Attributes:
        executable: Lines the classifier counts as executable.
        covered: Executable lines seen by the trace hook.
        percent: ``covered / executable * 100`` rounded to one decimal,
            0 when there are no executable lines.
    """

    executable: int = 0
    covered: int = 0
    percent: float = 0.0

    def as_tokens(self) -> str:
        """Render as ``"<executable> <covered> <percent>"``."""
        if self.executable == 0:
            return f"{self.executable} {self.covered} 0"
        return f"{self.executable} {self.covered} {self.percent:.1f}"


@dataclass
class ThresholdResult:
    """Outcome of a coverage threshold check."""

    passed: bool
    percent: int
    minimum: int
    message: str = ""


@dataclass
class CoverageData:
    """Deduplicated covered lines merged from every test of a run."""

    lines: set[tuple[str, int]] = field(default_factory=set)

    def add(self, path: str, line: int) -> None:
        self.lines.add((path, line))

    def update(self, other: "CoverageData") -> None:
        self.lines |= other.lines

    def is_covered(self, path: str, line: int) -> bool:
        return (path, line) in self.lines

    def files(self) -> list[str]:
        return sorted({path for path, _ in self.lines})

    def __len__(self) -> int:
        return len(self.lines)


# ── Support Check ──


def coverage_supported(allow_active_tracer: bool = False) -> tuple[bool, str]:
    """Whether this interpreter can trace lines here.

    ``allow_active_tracer`` skips the check for a tracer already installed,
    for callers that only launch the interpreters doing the tracing.

    Returns ``(supported, reason)``; ``reason`` is empty when supported.
    """
    if not hasattr(sys, "settrace") or not hasattr(sys, "gettrace"):
        return False, (
            f"{sys.implementation.name} provides no line tracing hook"
        )
    if not allow_active_tracer and sys.gettrace() is not None:
        return False, "another tracer is already active in this interpreter"
    return True, ""


# ── Collector ──


def _default_exclude_roots() -> list[str]:
    roots = {_ENGINE_ROOT}
    for key in ("stdlib", "platstdlib", "purelib", "platlib"):
        path = sysconfig.get_paths().get(key)
        if path:
            roots.add(os.path.realpath(path))
    return sorted(roots)


def _is_under(path: str, roots: Iterable[str]) -> bool:
    for root in roots:
        if path == root or path.startswith(root.rstrip(os.sep) + os.sep):
            return True
    return False


class TraceCollector:
    """Records executed lines of one test to ``record_path``.

    Usage::

        collector = TraceCollector(record_path, include_roots=[project_root])
        collector.start()
        try:
            ...
        finally:
            collector.finalize()
    """

    def __init__(
        self,
        record_path: str | Path,
        include_roots: Optional[Iterable[str | Path]] = None,
        exclude_roots: Optional[Iterable[str | Path]] = None,
        batch_size: int = TRACE_BATCH_SIZE,
    ):
        self.record_path = Path(record_path)
        self.include_roots = [
            os.path.realpath(str(r)) for r in (include_roots or [])
        ]
        excludes = _default_exclude_roots()
        excludes.extend(os.path.realpath(str(r)) for r in (exclude_roots or []))
        self.exclude_roots = excludes
        self.batch_size = max(1, batch_size)

        self._buffer: list[str] = []
        self._seen: set[tuple[str, int]] = set()
        # co_filename -> resolved path, or None when not traced
        self._decisions: dict[str, Optional[str]] = {}
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        if self._active:
            return
        self.record_path.parent.mkdir(parents=True, exist_ok=True)
        self._active = True
        sys.settrace(self._trace_call)

    def stop(self) -> None:
        if self._active:
            sys.settrace(None)
            self._active = False

    def finalize(self) -> None:
        """Stop tracing and write whatever is still buffered."""
        self.stop()
        self.flush()

    def record(self, path: str, line: int) -> None:
        key = (path, line)
        if key in self._seen:
            return
        self._seen.add(key)
        self._buffer.append(f"{path}:{line}")
        if len(self._buffer) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        with open(self.record_path, "a", encoding="utf-8") as fh:
            fh.write("\n".join(self._buffer) + "\n")
        self._buffer = []

    def resolve(self, filename: str) -> Optional[str]:
        """Absolute path to record for ``filename``, or None to skip it."""
        if filename in self._decisions:
            return self._decisions[filename]
        resolved: Optional[str] = None
        if filename and not filename.startswith("<"):
            path = os.path.realpath(filename)
            if not _is_under(path, self.exclude_roots) and (
                not self.include_roots or _is_under(path, self.include_roots)
            ):
                resolved = path
        self._decisions[filename] = resolved
        return resolved

    def _trace_call(self, frame, event, arg):
        if event != "call":
            return None
        path = self.resolve(frame.f_code.co_filename)
        if path is None:
            return None

        def _trace_line(frame, event, arg):
            if event == "line":
                self.record(path, frame.f_lineno)
            return _trace_line

        return _trace_line


# ── Aggregation ──


def read_record(path: str | Path) -> CoverageData:
    data = CoverageData()
    with open(path, encoding="utf-8") as fh:
        for raw in fh:
            entry = raw.strip()
            if not entry:
                continue
            file_part, _, line_part = entry.rpartition(":")
            try:
                data.add(file_part, int(line_part))
            except ValueError:
                logger.warning("Ignoring malformed trace entry in %s: %r", path, entry)
    return data


def merge_records(directory: str | Path) -> CoverageData:
    """Union every record file in ``directory``."""
    merged = CoverageData()
    root = Path(directory)
    if not root.is_dir():
        return merged
    for record in sorted(root.glob(f"*{RECORD_SUFFIX}")):
        try:
            merged.update(read_record(record))
        except OSError as e:
            logger.warning("Failed to read trace record %s: %s", record, e)
    return merged


# ── Line Classification ──


def is_executable_line(line: str) -> bool:
    """Heuristic: does this physical line hold an executable statement?

    Blank lines, comments, shebangs, procedure declarations, decorators,
    bare block keywords or closing delimiters, and lines that are only a
    string literal (docstrings, or the opening line of one) are not
    executable.  Lines opening ``if``/``while``/``for`` blocks are.

    Lines inside or closing a multi-line string need the surrounding
    source; ``executable_lines`` handles those.
    """
    text = line.strip()
    if not text:
        return False
    if text.startswith("#"):
        return False
    if text.startswith("@"):
        return False
    if _DECLARATION_RE.match(text):
        return False
    if text in _BLOCK_KEYWORDS:
        return False
    if _CLOSING_DELIMITER_RE.match(text):
        return False
    if _TRIPLE_QUOTE_START_RE.match(text) or _STRING_LINE_RE.match(text):
        return False
    return True


def _opened_triple_quote(text: str) -> Optional[str]:
    """Triple quote left open at the end of ``text``, if any."""
    if text.lstrip().startswith("#"):
        return None
    positions = [(text.find(q), q) for q in _TRIPLE_QUOTES if q in text]
    if not positions:
        return None
    _, quote = min(positions)
    return quote if text.count(quote) % 2 == 1 else None


def executable_lines(source: list[str]) -> set[int]:
    """1-based numbers of the executable lines of ``source``.

    Applies ``is_executable_line`` and also drops the continuation and
    closing lines of multi-line strings.
    """
    found: set[int] = set()
    open_quote: Optional[str] = None
    for number, line in enumerate(source, start=1):
        if open_quote is not None:
            if line.count(open_quote) % 2 == 1:
                open_quote = None
            continue
        if is_executable_line(line):
            found.add(number)
        open_quote = _opened_triple_quote(line)
    return found


# ── Statistics ──


def _percent(covered: int, executable: int, digits: int = 1) -> float:
    if executable == 0:
        return 0.0
    return round(covered / executable * 100, digits)


def coverage_stats(path: str | Path, data: CoverageData) -> CoverageStats:
    """Executable and covered line counts for one file."""
    resolved = os.path.realpath(str(path))
    try:
        with open(resolved, encoding="utf-8", errors="replace") as fh:
            source = fh.read().splitlines()
    except OSError:
        return CoverageStats()

    executable = 0
    covered = 0
    for number in sorted(executable_lines(source)):
        executable += 1
        if data.is_covered(resolved, number):
            covered += 1
    return CoverageStats(
        executable=executable,
        covered=covered,
        percent=_percent(covered, executable),
    )


def report_files(data: CoverageData, targets: Iterable[str | Path] = ()) -> list[str]:
    """Covered files plus requested targets, sorted, existing files only."""
    files = set(data.files())
    files.update(os.path.realpath(str(t)) for t in targets)
    return sorted(f for f in files if os.path.isfile(f))


def _totals(data: CoverageData, files: Iterable[str]) -> tuple[int, int]:
    total_executable = 0
    total_covered = 0
    for path in files:
        stats = coverage_stats(path, data)
        total_executable += stats.executable
        total_covered += stats.covered
    return total_executable, total_covered


def check_threshold(
    data: CoverageData,
    minimum: int,
    targets: Iterable[str | Path] = (),
) -> ThresholdResult:
    """Compare the aggregate percentage, rounded to an integer, with ``minimum``."""
    executable, covered = _totals(data, report_files(data, targets))
    percent = int(round(covered / executable * 100)) if executable else 0
    if percent < minimum:
        return ThresholdResult(
            passed=False, percent=percent, minimum=minimum,
            message=f"Coverage {percent}% is below threshold {minimum}%",
        )
    return ThresholdResult(
        passed=True, percent=percent, minimum=minimum,
        message=f"Coverage {percent}% meets threshold {minimum}%",
    )


# ── Reports ──


def render_text_report(
    data: CoverageData,
    targets: Iterable[str | Path] = (),
    cwd: Optional[str | Path] = None,
) -> str:
    """Plain-text per-file coverage report with a total line."""
    base = os.path.realpath(str(cwd)) if cwd else None
    lines = ["", "--- Coverage Report ---"]
    total_executable = 0
    total_covered = 0

    for path in report_files(data, targets):
        stats = coverage_stats(path, data)
        total_executable += stats.executable
        total_covered += stats.covered

        display = path
        if base and path.startswith(base + os.sep):
            display = "." + path[len(base):]
        lines.append(f"Coverage: {display}")
        lines.append(
            f"  Lines: {stats.covered}/{stats.executable} ({stats.as_tokens().split()[2]}%)"
        )

    total = _percent(total_covered, total_executable)
    total_text = f"{total:.1f}" if total_executable else "0"
    lines.append("-" * 21)
    lines.append(f"Total: {total_covered}/{total_executable} ({total_text}%)")
    return "\n".join(lines)


def build_json_report(
    data: CoverageData,
    targets: Iterable[str | Path] = (),
) -> dict:
    """Structured coverage report with per-line covered/uncovered status."""
    files: dict[str, dict] = {}
    total_executable = 0
    total_covered = 0

    for path in report_files(data, targets):
        stats = coverage_stats(path, data)
        total_executable += stats.executable
        total_covered += stats.covered

        line_status: dict[str, str] = {}
        try:
            with open(path, encoding="utf-8", errors="replace") as fh:
                source = fh.read().splitlines()
        except OSError:
            source = []
        for number in sorted(executable_lines(source)):
            line_status[str(number)] = (
                "covered" if data.is_covered(path, number) else "uncovered"
            )

        files[path] = {
            "total_lines": stats.executable,
            "covered_lines": stats.covered,
            "coverage_percent": stats.percent,
            "lines": line_status,
        }

    return {
        "files": files,
        "summary": {
            "total_lines": total_executable,
            "covered_lines": total_covered,
            "coverage_percent": _percent(total_covered, total_executable, digits=2),
        },
    }


def write_json_report(
    path: str | Path,
    data: CoverageData,
    targets: Iterable[str | Path] = (),
) -> Path:
    out = Path(path)
    out.write_text(
        json.dumps(build_json_report(data, targets), indent=2) + "\n",
        encoding="utf-8",
    )
    return out
