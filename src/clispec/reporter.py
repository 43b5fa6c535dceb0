"""Result Reporter — TAP version 13 output and the result stream.

TAP grammar produced::

    TAP version 13
    1..N
    ok 1 - test_add
    not ok 2 - test_sub
      ---
      message: 'expected ''3'''
      severity: fail
      file: 'calc_test.py'
      function: 'test_sub'
      duration_ms: 12
      ...
    ok 3 - test_later # SKIP not ready
    not ok 4 - test_bug # TODO known bug

The result stream is one JSON object per test, consumed by reporting tools
outside the engine.
"""

import json
import logging
import re
import sys
from pathlib import Path
from typing import Optional, TextIO

from clispec.executor import (
    STATUS_FAIL,
    STATUS_PASS,
    STATUS_SKIP,
    STATUS_TODO,
    ExecutionResult,
    Outcome,
)

logger = logging.getLogger(__name__)

TAP_VERSION = 13
SEVERITY_FAIL = "fail"

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    """Remove ANSI color and style sequences."""
    return _ANSI_RE.sub("", text)


def yaml_quote(text: str) -> str:
    """Single-quoted YAML scalar: quotes doubled, ANSI removed."""
    return "'" + strip_ansi(text).replace("'", "''") + "'"


# ── TAP ──


class TapReporter:
    """Writes TAP version 13 to a stream, numbering results from 1.

    Usage::

        tap = TapReporter(sys.stdout)
        tap.version()
        tap.plan(plan.total)
        for result in results:
            tap.emit(result)
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream
        self.count = 0

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def _write(self, line: str) -> None:
        self.stream.write(line + "\n")

    def reset(self) -> None:
        self.count = 0

    # ── Headers ──

    def version(self) -> None:
        self.count = 0
        self._write(f"TAP version {TAP_VERSION}")

    def plan(self, total: int) -> None:
        self._write(f"1..{total}")

    def comment(self, text: str) -> None:
        """Free-form human-readable line, ignored by TAP consumers."""
        for line in (text.splitlines() or [""]):
            self._write(f"# {line}".rstrip())

    # ── Results ──

    def _result_line(self, ok: bool, description: str, directive: str) -> int:
        self.count += 1
        status = "ok" if ok else "not ok"
        line = f"{status} {self.count} - {description}"
        if directive:
            line += f" # {directive}"
        self._write(line)
        return self.count

    def ok(self, description: str, directive: str = "") -> int:
        return self._result_line(True, description, directive)

    def not_ok(
        self,
        description: str,
        message: str = "",
        file: str = "",
        function: str = "",
        duration_ms: int = 0,
        directive: str = "",
    ) -> int:
        number = self._result_line(False, description, directive)
        if not directive:
            self._diagnostic(message, file, function, duration_ms)
        return number

    def skip(self, description: str, reason: str = "") -> int:
        return self._result_line(True, description, f"SKIP {reason}".rstrip())

    def todo(self, description: str, passed: bool, reason: str = "") -> int:
        return self._result_line(passed, description, f"TODO {reason}".rstrip())

    def _diagnostic(
        self, message: str, file: str, function: str, duration_ms: int,
    ) -> None:
        quoted = yaml_quote(message)
        # Continuation lines of a multi-line scalar must stay inside the block
        quoted = quoted.replace("\n", "\n    ")
        self._write("  ---")
        self._write(f"  message: {quoted}")
        self._write(f"  severity: {SEVERITY_FAIL}")
        if file:
            self._write(f"  file: {yaml_quote(file)}")
        if function:
            self._write(f"  function: {yaml_quote(function)}")
        self._write(f"  duration_ms: {int(duration_ms)}")
        self._write("  ...")

    def emit(self, result: ExecutionResult) -> int:
        """Write the line(s) for one execution result."""
        case = result.case
        if result.outcome is Outcome.SKIPPED:
            return self.skip(case.name, case.directive.reason)
        if result.outcome is Outcome.EXPECTED_FAIL:
            return self.todo(case.name, False, case.directive.reason)
        if result.outcome is Outcome.UNEXPECTED_PASS:
            return self.todo(case.name, True, case.directive.reason)
        if result.outcome is Outcome.PASSED:
            return self.ok(case.name)
        return self.not_ok(
            case.name,
            message=result.output,
            file=str(case.path),
            function=case.name,
            duration_ms=result.duration_ms,
        )


# ── Result Stream ──


def result_record(result: ExecutionResult) -> dict:
    """Serializable record for one result."""
    status = result.status
    message = ""
    if status in (STATUS_FAIL, STATUS_TODO):
        message = strip_ansi(result.output)
    return {
        "file": str(result.case.path),
        "test": result.case.name,
        "status": status,
        "message": message,
        "duration_ms": int(result.duration_ms),
    }


class ResultStream:
    """Appends one JSON line per result to a staging file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def append(self, result: ExecutionResult) -> dict:
        record = result_record(result)
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(json.dumps(record) + "\n")
        return record

    def records(self) -> list[dict]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return records

    def document(self) -> dict:
        """Summary plus every record, for downstream report generators."""
        records = self.records()
        passed = sum(
            1 for r in records if r["status"] in (STATUS_PASS, STATUS_SKIP, STATUS_TODO)
        )
        failed = sum(1 for r in records if r["status"] == STATUS_FAIL)
        return {
            "summary": {"total": len(records), "passed": passed, "failed": failed},
            "results": records,
        }

    def write_document(self, path: str | Path) -> Path:
        out = Path(path)
        out.write_text(json.dumps(self.document(), indent=2) + "\n", encoding="utf-8")
        return out
