"""Tests for Discovery & Planner."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from clispec.context import RESULTS_END, RESULTS_START
from clispec.discovery import (
    ConfigError,
    Directive,
    DiscoveryError,
    discover_files,
    extract_directive,
    list_procedures,
    parse_listing,
    plan_tests,
    validate_pattern,
    validate_prefix,
)
from clispec.session import RunSession, SessionResult


# ── Fixtures ──


CALC_TEST = """\
import calc

SETUP_RAN = True


def helper():
    return 0


def test_add():
    return assert_equals(3, calc.add(1, 2))


# @SKIP waiting on subtraction
def test_sub():
    return assert_equals(1, calc.sub(2, 1))


# @TODO rounding is off
def test_div():
    return assert_equals(0.5, calc.div(1, 2))


def check_other():
    return 0
"""


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    (root / "tests").mkdir(parents=True)
    (root / "calc.py").write_text(
        "def add(a, b):\n    return a + b\n\n\n"
        "def sub(a, b):\n    return a - b\n\n\n"
        "def div(a, b):\n    return a / b\n"
    )
    (root / "calc_test.py").write_text(CALC_TEST)
    (root / "tests" / "other_test.py").write_text(
        "def test_one():\n    return 0\n"
    )
    (root / "__pycache__").mkdir()
    (root / "__pycache__" / "stale_test.py").write_text("def test_stale():\n    pass\n")
    (root / "calc.py.bak").write_text("")
    return root


@pytest.fixture
def session(project, tmp_path):
    with RunSession(project, temp_base=tmp_path / "tmp") as s:
        yield s


# ── Validation ──


class TestValidation:
    def test_pattern(self):
        assert validate_pattern("*_test.py") == "*_test.py"
        with pytest.raises(ConfigError):
            validate_pattern("")
        with pytest.raises(ConfigError, match="not a path"):
            validate_pattern("tests/*_test.py")

    def test_prefix(self):
        assert validate_prefix("check_") == "check_"
        for bad in ("", "1test", "test-"):
            with pytest.raises(ConfigError):
                validate_prefix(bad)


# ── File Discovery ──


class TestDiscoverFiles:
    def test_finds_matching_files_sorted(self, project):
        files = discover_files(project)
        assert [f.path for f in files] == [
            project / "calc_test.py",
            project / "tests" / "other_test.py",
        ]

    def test_excluded_dirs_skipped(self, project):
        names = [f.path.name for f in discover_files(project)]
        assert "stale_test.py" not in names

    def test_custom_pattern(self, project):
        (project / "test_legacy.py").write_text("")
        files = discover_files(project, "test_*.py")
        assert [f.path.name for f in files] == ["test_legacy.py"]
        assert files[0].pattern == "test_*.py"

    def test_no_matches(self, tmp_path):
        assert discover_files(tmp_path) == []


# ── Directives ──


class TestExtractDirective:
    LINES = [
        "# @SKIP needs network",
        "def test_a():",
        "#   @TODO  flaky on CI  ",
        "def test_b():",
        "# plain comment",
        "def test_c():",
        "# @SKIP",
        "def test_d():",
    ]

    def test_skip(self):
        directive = extract_directive(self.LINES, 2)
        assert directive == Directive("SKIP", "needs network")
        assert directive.is_skip
        assert str(directive) == "SKIP needs network"

    def test_todo_reason_trimmed(self):
        directive = extract_directive(self.LINES, 4)
        assert directive.is_todo
        assert directive.reason == "flaky on CI"

    def test_plain_comment_is_none(self):
        directive = extract_directive(self.LINES, 6)
        assert not directive.is_skip and not directive.is_todo
        assert str(directive) == ""

    def test_empty_reason(self):
        assert extract_directive(self.LINES, 8) == Directive("SKIP", "")

    def test_first_line_has_no_directive(self):
        assert extract_directive(self.LINES, 1) == Directive()


# ── Listing ──


class TestParseListing:
    def test_extracts_between_markers(self):
        output = (
            "noise printed at load\n"
            f"{RESULTS_START}\n"
            '{"file": "x", "procedures": [{"name": "test_a", "line": 3}]}\n'
            f"{RESULTS_END}\n"
        )
        assert parse_listing(output) == [{"name": "test_a", "line": 3}]

    def test_missing_markers(self):
        with pytest.raises(DiscoveryError, match="did not produce"):
            parse_listing("Traceback ...")

    def test_bad_json(self):
        with pytest.raises(DiscoveryError, match="Failed to parse"):
            parse_listing(f"{RESULTS_START}\n{{not json\n{RESULTS_END}\n")


class TestListProcedures:
    def test_worker_failure_raises(self):
        session = MagicMock()
        session.run_worker.return_value = SessionResult(
            returncode=1, output="SyntaxError: invalid syntax\n",
        )
        with pytest.raises(DiscoveryError, match="SyntaxError"):
            list_procedures(session, "broken_test.py")

    def test_passes_prefix(self):
        session = MagicMock()
        session.run_worker.return_value = SessionResult(
            returncode=0, output=f'{RESULTS_START}\n{{"procedures": []}}\n{RESULTS_END}\n',
        )
        assert list_procedures(session, "a_test.py", "check_") == []
        session.run_worker.assert_called_once_with(
            ["list", "a_test.py", "--prefix", "check_"],
        )


# ── Planning ──


class TestPlanTests:
    def test_plan_order_and_directives(self, session, project):
        plan = plan_tests(session)
        assert [c.name for c in plan] == ["test_add", "test_sub", "test_div", "test_one"]
        assert plan.total == 4
        assert plan.warnings == []

        by_name = {c.name: c for c in plan}
        assert by_name["test_sub"].directive == Directive("SKIP", "waiting on subtraction")
        assert by_name["test_div"].directive == Directive("TODO", "rounding is off")
        assert by_name["test_add"].directive == Directive()
        assert by_name["test_add"].path == project / "calc_test.py"
        assert by_name["test_add"].line == 10

    def test_helpers_and_imports_excluded(self, session):
        names = [c.name for c in plan_tests(session)]
        assert "helper" not in names
        assert "check_other" not in names

    def test_custom_prefix(self, session):
        names = [c.name for c in plan_tests(session, prefix="check_")]
        assert names == ["check_other"]

    def test_unloadable_file_skipped_with_warning(self, session, project):
        (project / "broken_test.py").write_text("def test_x(:\n    pass\n")
        plan = plan_tests(session)
        assert "test_add" in [c.name for c in plan]
        assert len(plan.warnings) == 1
        assert "broken_test.py" in plan.warnings[0]
        assert any(f.path.name == "broken_test.py" for f in plan.files)

    def test_discovery_does_not_run_procedures(self, session, project):
        marker = project / "ran.txt"
        (project / "side_test.py").write_text(
            "from pathlib import Path\n\n\n"
            f"def test_touch():\n    Path({str(marker)!r}).write_text('x')\n"
        )
        names = [c.name for c in plan_tests(session)]
        assert "test_touch" in names
        assert not marker.exists()

    def test_empty_root(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        with RunSession(empty, temp_base=tmp_path / "tmp") as s:
            plan = plan_tests(s)
        assert plan.total == 0
        assert plan.files == []

    def test_invalid_pattern(self, session):
        with pytest.raises(ConfigError):
            plan_tests(session, pattern="")
