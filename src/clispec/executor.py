"""Isolated Executor — Runs each planned test in a fresh interpreter.

State machine per test::

    Pending -> Running -> Passed | Failed | Skipped
                          | ExpectedFail | UnexpectedPass

``skip`` never starts an interpreter.  ``todo`` runs normally and remaps the
outcome: a failure becomes ExpectedFail, a success UnexpectedPass; both
count as passing.  The only failure signal is a non-zero exit status from
the isolated context; assertion failures and crashes look the same.

Tests run one at a time, in plan order.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

from clispec.discovery import ExecutionPlan, TestCase
from clispec.session import RunSession, SessionResult
from clispec.tracer import coverage_supported

logger = logging.getLogger(__name__)

STATUS_PASS = "PASS"
STATUS_FAIL = "FAIL"
STATUS_SKIP = "SKIP"
STATUS_TODO = "TODO"


class Outcome(str, Enum):
    """Terminal state of one test."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    EXPECTED_FAIL = "expected_fail"
    UNEXPECTED_PASS = "unexpected_pass"


_STATUS_BY_OUTCOME = {
    Outcome.PASSED: STATUS_PASS,
    Outcome.FAILED: STATUS_FAIL,
    Outcome.SKIPPED: STATUS_SKIP,
    Outcome.EXPECTED_FAIL: STATUS_TODO,
    Outcome.UNEXPECTED_PASS: STATUS_PASS,
}


class ExecutorError(Exception):
    """Base exception for executor errors."""


# ── Data Classes ──


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of running one TestCase. Immutable once created.

    Attributes:
        case: The test that ran.
        outcome: Terminal state.
        output: Combined stdout/stderr of the isolated context.
        exit_code: Exit status of the context, None when it never started.
        duration_ms: Wall time in whole milliseconds.
    """

    case: TestCase
    outcome: Outcome
    output: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0

    @property
    def status(self) -> str:
        """Result stream status: PASS, FAIL, SKIP or TODO."""
        return _STATUS_BY_OUTCOME[self.outcome]

    @property
    def counts_as_pass(self) -> bool:
        return self.outcome is not Outcome.FAILED

    @property
    def name(self) -> str:
        return self.case.name


def resolve_outcome(case: TestCase, exit_code: int) -> Outcome:
    """Apply the test's directive to the context's exit status."""
    succeeded = exit_code == 0
    if case.directive.is_todo:
        return Outcome.UNEXPECTED_PASS if succeeded else Outcome.EXPECTED_FAIL
    return Outcome.PASSED if succeeded else Outcome.FAILED


# ── Executor ──


class IsolatedExecutor:
    """Runs test cases one by one, each in its own interpreter.

    Usage::

        executor = IsolatedExecutor(session, coverage=True)
        for result in executor.run_plan(plan):
            reporter.emit(result)
    """

    def __init__(
        self,
        session: RunSession,
        coverage: bool = False,
        timeout_seconds: Optional[float] = None,
        trace_roots: Optional[list[str]] = None,
    ):
        if not session._setup_complete:
            raise ExecutorError(
                "Session must be set up before creating IsolatedExecutor."
            )
        self.session = session
        self.timeout_seconds = timeout_seconds
        self.trace_roots = trace_roots or [str(session.root)]
        self.coverage_reason = ""

        self.coverage = False
        if coverage:
            # Tracing happens in the workers, not in this interpreter
            supported, reason = coverage_supported(allow_active_tracer=True)
            if supported:
                self.coverage = True
            else:
                self.coverage_reason = reason
                logger.warning("Coverage disabled: %s", reason)

    def run_plan(self, plan: ExecutionPlan) -> Iterator[ExecutionResult]:
        """Yield one result per test case, in plan order."""
        for case in plan.cases:
            yield self.run_case(case)

    def run_case(self, case: TestCase) -> ExecutionResult:
        """Run one test case in a fresh, disposable context."""
        if case.directive.is_skip:
            logger.info("Skipping %s (%s)", case.name, case.directive.reason)
            return ExecutionResult(case=case, outcome=Outcome.SKIPPED)

        args = [
            "run", str(case.path), case.name,
            "--scratch", str(self.session.new_scratch_dir(case.name)),
        ]
        if self.coverage:
            args += ["--trace-record", str(self.session.new_trace_record(case.name))]
            for root in self.trace_roots:
                args += ["--trace-root", root]

        logger.info("Running %s in %s", case.name, case.path)
        start = time.perf_counter()
        session_result = self.session.run_worker(args, timeout=self.timeout_seconds)
        duration_ms = int((time.perf_counter() - start) * 1000)

        result = self._build_result(case, session_result, duration_ms)
        logger.debug(
            "%s %s (exit %s, %d ms)",
            case.name, result.outcome.value, result.exit_code, duration_ms,
        )
        return result

    def _build_result(
        self,
        case: TestCase,
        session_result: SessionResult,
        duration_ms: int,
    ) -> ExecutionResult:
        output = session_result.output
        exit_code: Optional[int] = session_result.returncode

        if session_result.timed_out:
            output = (
                output.rstrip("\n")
                + f"\nTest timed out after {self.timeout_seconds}s"
            ).lstrip("\n")
            exit_code = None
            outcome = resolve_outcome(case, 1)
        else:
            outcome = resolve_outcome(case, session_result.returncode)

        return ExecutionResult(
            case=case,
            outcome=outcome,
            output=output.rstrip("\n"),
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
