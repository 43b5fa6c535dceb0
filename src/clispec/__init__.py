"""clispec — Test harness for command-line scripts."""

from clispec.assertions import (
    AssertionOutcome,
    Assertions,
    CommandResult,
    exit_status,
)
from clispec.substitution import (
    DuplicateSubstitutionError,
    ForbiddenTargetError,
    InvalidSubstitutionError,
    NotSubstitutedError,
    SubstitutionEntry,
    SubstitutionError,
    SubstitutionRegistry,
)
from clispec.tracer import (
    CoverageData,
    CoverageStats,
    ThresholdResult,
    TraceCollector,
    check_threshold,
    coverage_stats,
    coverage_supported,
    executable_lines,
    is_executable_line,
    merge_records,
)
from clispec.context import IsolatedContext
from clispec.session import RunSession, SessionError, SessionResult
from clispec.discovery import (
    ConfigError,
    Directive,
    DiscoveryError,
    ExecutionPlan,
    TestCase,
    TestFile,
    discover_files,
    plan_tests,
)
from clispec.executor import (
    ExecutionResult,
    ExecutorError,
    IsolatedExecutor,
    Outcome,
)
from clispec.reporter import ResultStream, TapReporter
from clispec.runner import RunConfig, RunSummary, run_tests

__all__ = [
    # Assertion Primitives
    "Assertions",
    "AssertionOutcome",
    "CommandResult",
    "exit_status",
    # Substitution Registry
    "SubstitutionRegistry",
    "SubstitutionEntry",
    "SubstitutionError",
    "InvalidSubstitutionError",
    "ForbiddenTargetError",
    "DuplicateSubstitutionError",
    "NotSubstitutedError",
    # Trace Collector
    "TraceCollector",
    "CoverageData",
    "CoverageStats",
    "ThresholdResult",
    "coverage_supported",
    "coverage_stats",
    "check_threshold",
    "executable_lines",
    "is_executable_line",
    "merge_records",
    # Isolated Context
    "IsolatedContext",
    # Run Session
    "RunSession",
    "SessionResult",
    "SessionError",
    # Discovery & Planner
    "discover_files",
    "plan_tests",
    "TestFile",
    "TestCase",
    "Directive",
    "ExecutionPlan",
    "ConfigError",
    "DiscoveryError",
    # Isolated Executor
    "IsolatedExecutor",
    "ExecutionResult",
    "Outcome",
    "ExecutorError",
    # Result Reporter
    "TapReporter",
    "ResultStream",
    # Runner
    "run_tests",
    "RunConfig",
    "RunSummary",
]
