"""Runner — Orchestrates one complete test run.

Wires Run Session → Discovery & Planner → Isolated Executor → Result
Reporter (TAP or plain text, plus the result stream) → Trace Collector
aggregation into a single entry point, and decides overall success.

Overall success means every test counted as passing (SKIP and TODO
outcomes included) and, when a coverage threshold is set, the threshold
was met.
"""

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, TextIO

from clispec.discovery import (
    DEFAULT_PATTERN,
    DEFAULT_PREFIX,
    ExecutionPlan,
    plan_tests,
    validate_pattern,
    validate_prefix,
)
from clispec.executor import ExecutionResult, IsolatedExecutor, Outcome
from clispec.reporter import ResultStream, TapReporter
from clispec.session import RunSession
from clispec.tracer import (
    CoverageData,
    ThresholdResult,
    check_threshold,
    merge_records,
    render_text_report,
    write_json_report,
)

logger = logging.getLogger(__name__)


# ── Data Classes ──


@dataclass
class RunConfig:
    """Configuration for a test run.

    Attributes:
        root: Directory searched for test files; also the working directory
            of every isolated context.
        pattern: File name glob for test files.
        prefix: Name prefix of test procedures.
        tap: Emit TAP version 13 instead of plain text.
        verbose: Print every result with its captured output.
        coverage: Trace executed lines of files under ``root``.
        coverage_targets: Files reported even when never executed.
        coverage_threshold: Minimum aggregate coverage percent, or None.
        coverage_json: Write the JSON coverage report here.
        results_json: Write the result stream document here.
        timeout_seconds: Per-test limit, None for no limit.
        temp_base: Parent directory of the run workspace.
        python: Interpreter used for isolated contexts.
    """

    root: Path = field(default_factory=Path.cwd)
    pattern: str = DEFAULT_PATTERN
    prefix: str = DEFAULT_PREFIX
    tap: bool = False
    verbose: bool = False
    coverage: bool = False
    coverage_targets: list[Path] = field(default_factory=list)
    coverage_threshold: Optional[int] = None
    coverage_json: Optional[Path] = None
    results_json: Optional[Path] = None
    timeout_seconds: Optional[float] = None
    temp_base: Optional[Path] = None
    python: Optional[str] = None


@dataclass
class RunSummary:
    """Everything a run produced."""

    results: list[ExecutionResult] = field(default_factory=list)
    plan: Optional[ExecutionPlan] = None
    warnings: list[str] = field(default_factory=list)
    coverage: Optional[CoverageData] = None
    threshold: Optional[ThresholdResult] = None
    records: list[dict] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.counts_as_pass)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.counts_as_pass)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def success(self) -> bool:
        if self.failed:
            return False
        if self.threshold is not None and not self.threshold.passed:
            return False
        return True


# ── Console Output ──


class _Console:
    """Plain text output for runs without TAP."""

    def __init__(self, stream: TextIO, verbose: bool):
        self.stream = stream
        self.verbose = verbose

    def line(self, text: str = "") -> None:
        self.stream.write(text + "\n")

    def result(self, result: ExecutionResult) -> None:
        outcome = result.outcome
        if outcome is Outcome.FAILED:
            label = "FAIL"
        elif outcome is Outcome.SKIPPED:
            label = "SKIP"
        elif outcome is Outcome.EXPECTED_FAIL:
            label = "TODO"
        else:
            label = "PASS"

        if not self.verbose and outcome is not Outcome.FAILED:
            return

        note = ""
        if outcome is Outcome.EXPECTED_FAIL:
            note = " [expected failure]"
        elif outcome is Outcome.UNEXPECTED_PASS:
            note = " [TODO - unexpected pass!]"
        elif outcome is Outcome.SKIPPED and result.case.directive.reason:
            note = f" [{result.case.directive.reason}]"

        self.line(
            f"  - {label}: {result.case.name} ({result.duration_ms}ms){note}"
            f" in {result.case.path}"
        )
        if result.output:
            self.line(result.output)

    def summary(self, summary: RunSummary) -> None:
        self.line()
        self.line("--------------------")
        self.line("Test Summary")
        self.line("--------------------")
        self.line(f"Total tests: {summary.total}")
        self.line(f"Passed: {summary.passed}")
        self.line(f"Failed: {summary.failed}")
        skipped = summary.count(Outcome.SKIPPED)
        todo = summary.count(Outcome.EXPECTED_FAIL) + summary.count(Outcome.UNEXPECTED_PASS)
        if skipped or todo:
            self.line(f"  (skipped: {skipped}, todo: {todo})")
        self.line("--------------------")


# ── Run ──


def run_tests(config: RunConfig, out: Optional[TextIO] = None) -> RunSummary:
    """Discover, execute and report every test under ``config.root``.

    Raises ``ConfigError`` for an invalid pattern or prefix and
    ``SessionError`` when the root is not a directory.
    """
    out = out if out is not None else sys.stdout
    validate_pattern(config.pattern)
    validate_prefix(config.prefix)

    RunSession.cleanup_orphans(config.temp_base)
    summary = RunSummary()

    with RunSession(config.root, temp_base=config.temp_base, python=config.python) as session:
        tap = TapReporter(out) if config.tap else None
        console = _Console(out, config.verbose)

        def warn(message: str) -> None:
            summary.warnings.append(message)
            if tap:
                tap.comment(message)
            else:
                print(f"Warning: {message}", file=sys.stderr)

        if tap:
            tap.version()
        elif config.verbose:
            console.line(f"Discovering tests with pattern: {config.pattern}")

        plan = plan_tests(session, config.pattern, config.prefix)
        summary.plan = plan
        for message in plan.warnings:
            warn(message)

        if plan.total == 0:
            if tap:
                tap.plan(0)
                tap.comment("No tests found.")
            else:
                console.line("No tests found.")
            return summary

        if tap:
            tap.plan(plan.total)
        else:
            console.line(f"Found {plan.total} tests.")

        executor = IsolatedExecutor(
            session,
            coverage=config.coverage,
            timeout_seconds=config.timeout_seconds,
        )
        if config.coverage and not executor.coverage:
            warn(f"Coverage unavailable: {executor.coverage_reason}")

        stream = ResultStream(session.results_path)
        for result in executor.run_plan(plan):
            summary.results.append(result)
            stream.append(result)
            if tap:
                tap.emit(result)
            else:
                console.result(result)

        if not tap:
            console.summary(summary)

        if executor.coverage:
            _finish_coverage(config, session, summary, tap, console)

        summary.records = stream.records()
        if config.results_json:
            path = stream.write_document(config.results_json)
            logger.info("Result stream written: %s", path)

    return summary


def _finish_coverage(
    config: RunConfig,
    session: RunSession,
    summary: RunSummary,
    tap: Optional[TapReporter],
    console: _Console,
) -> None:
    data = merge_records(session.coverage_dir)
    summary.coverage = data

    report = render_text_report(data, config.coverage_targets, cwd=session.root)
    if tap:
        tap.comment(report.strip("\n"))
    else:
        console.line(report)

    if config.coverage_json:
        path = write_json_report(config.coverage_json, data, config.coverage_targets)
        logger.info("Coverage report written: %s", path)

    if config.coverage_threshold is not None:
        summary.threshold = check_threshold(
            data, config.coverage_threshold, config.coverage_targets,
        )
        message = summary.threshold.message
        if tap:
            tap.comment(message)
        elif summary.threshold.passed:
            console.line(message)
        else:
            print(message, file=sys.stderr)
