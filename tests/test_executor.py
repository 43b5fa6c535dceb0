"""Tests for Isolated Executor."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from clispec.discovery import Directive, ExecutionPlan, TestCase, TestFile
from clispec.executor import (
    ExecutionResult,
    ExecutorError,
    IsolatedExecutor,
    Outcome,
    resolve_outcome,
)
from clispec.session import RunSession, SessionResult


# ── Fixtures ──


def _case(name="test_add", directive=None):
    return TestCase(
        file=TestFile(path=Path("/proj/calc_test.py")),
        name=name,
        directive=directive or Directive(),
    )


SKIP = Directive("SKIP", "not ready")
TODO = Directive("TODO", "known bug")


@pytest.fixture
def mock_session(tmp_path):
    """A session whose worker launches are recorded instead of run."""
    session = MagicMock()
    session._setup_complete = True
    session.root = tmp_path
    session.new_scratch_dir.side_effect = lambda name: tmp_path / f"scratch_{name}"
    session.new_trace_record.side_effect = lambda name: tmp_path / f"{name}.cov"
    session.run_worker.return_value = SessionResult(returncode=0, output="  PASS: ok\n")
    return session


# ── Outcome Resolution ──


class TestResolveOutcome:
    def test_plain(self):
        assert resolve_outcome(_case(), 0) is Outcome.PASSED
        assert resolve_outcome(_case(), 1) is Outcome.FAILED
        assert resolve_outcome(_case(), 127) is Outcome.FAILED

    def test_todo_remaps(self):
        assert resolve_outcome(_case(directive=TODO), 1) is Outcome.EXPECTED_FAIL
        assert resolve_outcome(_case(directive=TODO), 0) is Outcome.UNEXPECTED_PASS


class TestExecutionResult:
    def test_status_and_counting(self):
        case = _case()
        assert ExecutionResult(case, Outcome.PASSED).status == "PASS"
        assert ExecutionResult(case, Outcome.UNEXPECTED_PASS).status == "PASS"
        assert ExecutionResult(case, Outcome.EXPECTED_FAIL).status == "TODO"
        assert ExecutionResult(case, Outcome.SKIPPED).status == "SKIP"
        assert ExecutionResult(case, Outcome.FAILED).status == "FAIL"
        assert ExecutionResult(case, Outcome.EXPECTED_FAIL).counts_as_pass
        assert not ExecutionResult(case, Outcome.FAILED).counts_as_pass

    def test_immutable(self):
        result = ExecutionResult(_case(), Outcome.PASSED)
        with pytest.raises(AttributeError):
            result.outcome = Outcome.FAILED


# ── Executor ──


class TestIsolatedExecutor:
    def test_requires_setup(self, tmp_path):
        with pytest.raises(ExecutorError, match="set up"):
            IsolatedExecutor(RunSession(tmp_path))

    def test_passing_test(self, mock_session, tmp_path):
        executor = IsolatedExecutor(mock_session)
        result = executor.run_case(_case())

        assert result.outcome is Outcome.PASSED
        assert result.exit_code == 0
        assert result.output == "  PASS: ok"
        assert result.duration_ms >= 0
        mock_session.run_worker.assert_called_once_with(
            ["run", "/proj/calc_test.py", "test_add",
             "--scratch", str(tmp_path / "scratch_test_add")],
            timeout=None,
        )

    def test_failing_test(self, mock_session):
        mock_session.run_worker.return_value = SessionResult(
            returncode=1, output="  FAIL: nope\n",
        )
        result = IsolatedExecutor(mock_session).run_case(_case())
        assert result.outcome is Outcome.FAILED
        assert result.exit_code == 1
        assert result.output == "  FAIL: nope"

    def test_skip_never_starts_context(self, mock_session):
        result = IsolatedExecutor(mock_session).run_case(_case(directive=SKIP))
        assert result.outcome is Outcome.SKIPPED
        assert result.exit_code is None
        mock_session.run_worker.assert_not_called()
        mock_session.new_scratch_dir.assert_not_called()

    def test_todo_failure_is_expected(self, mock_session):
        mock_session.run_worker.return_value = SessionResult(returncode=1, output="bad")
        result = IsolatedExecutor(mock_session).run_case(_case(directive=TODO))
        assert result.outcome is Outcome.EXPECTED_FAIL
        assert result.counts_as_pass

    def test_todo_success_is_unexpected(self, mock_session):
        result = IsolatedExecutor(mock_session).run_case(_case(directive=TODO))
        assert result.outcome is Outcome.UNEXPECTED_PASS

    def test_timeout_fails(self, mock_session):
        mock_session.run_worker.return_value = SessionResult(
            returncode=-1, output="partial\n", timed_out=True,
        )
        executor = IsolatedExecutor(mock_session, timeout_seconds=2)
        result = executor.run_case(_case())
        assert result.outcome is Outcome.FAILED
        assert result.exit_code is None
        assert result.output == "partial\nTest timed out after 2s"
        assert mock_session.run_worker.call_args.kwargs["timeout"] == 2

    def test_coverage_args(self, mock_session, tmp_path, monkeypatch):
        monkeypatch.setattr(
            "clispec.executor.coverage_supported", lambda **kwargs: (True, ""),
        )
        executor = IsolatedExecutor(mock_session, coverage=True, trace_roots=["/proj"])
        executor.run_case(_case())
        args = mock_session.run_worker.call_args.args[0]
        assert args[args.index("--trace-record") + 1] == str(tmp_path / "test_add.cov")
        assert args[args.index("--trace-root") + 1] == "/proj"

    def test_coverage_unsupported_disables(self, mock_session, monkeypatch):
        monkeypatch.setattr(
            "clispec.executor.coverage_supported",
            lambda **kwargs: (False, "no line tracing hook"),
        )
        executor = IsolatedExecutor(mock_session, coverage=True)
        assert not executor.coverage
        assert executor.coverage_reason == "no line tracing hook"
        executor.run_case(_case())
        assert "--trace-record" not in mock_session.run_worker.call_args.args[0]

    def test_coverage_kept_under_parent_tracer(self, mock_session, monkeypatch):
        monkeypatch.setattr("clispec.tracer.sys.gettrace", lambda: object())
        executor = IsolatedExecutor(mock_session, coverage=True)
        assert executor.coverage
        assert executor.coverage_reason == ""
        executor.run_case(_case())
        assert "--trace-record" in mock_session.run_worker.call_args.args[0]

    def test_run_plan_in_order(self, mock_session):
        mock_session.run_worker.side_effect = [
            SessionResult(returncode=0, output=""),
            SessionResult(returncode=1, output="x"),
        ]
        plan = ExecutionPlan(cases=[
            _case("test_a"), _case("test_b", SKIP), _case("test_c"),
        ])
        results = list(IsolatedExecutor(mock_session).run_plan(plan))
        assert [(r.name, r.outcome) for r in results] == [
            ("test_a", Outcome.PASSED),
            ("test_b", Outcome.SKIPPED),
            ("test_c", Outcome.FAILED),
        ]
