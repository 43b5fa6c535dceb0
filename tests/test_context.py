"""Tests for Isolated Context."""

import os
import sys

import pytest

from clispec.context import TEST_MODULE_NAME, IsolatedContext
from clispec.tracer import read_record


# ── Fixtures ──


@pytest.fixture(autouse=True)
def _protect_process_state(monkeypatch):
    """Contexts edit sys.path and PATH of the process they load in."""
    monkeypatch.setattr(sys, "path", list(sys.path))
    monkeypatch.setenv("PATH", os.environ.get("PATH", ""))


def _write(tmp_path, source, name="sample_test.py"):
    path = tmp_path / name
    path.write_text(source)
    return path


@pytest.fixture
def context_factory(tmp_path):
    created = []

    def make(source, **kwargs):
        ctx = IsolatedContext(_write(tmp_path, source), **kwargs)
        created.append(ctx)
        return ctx

    yield make
    for ctx in created:
        ctx.close()


# ── Loading ──


class TestLoad:
    def test_namespace_has_bindings(self, context_factory):
        ctx = context_factory("")
        for name in ("assert_equals", "run", "mock_command", "stub_function",
                     "unmock_all", "list_mocks", "scratch_dir"):
            assert name in ctx.namespace
        assert ctx.namespace["__name__"] == TEST_MODULE_NAME

    def test_top_level_runs_once(self, context_factory):
        ctx = context_factory("COUNT = 1\n")
        ctx.load()
        assert ctx.namespace["COUNT"] == 1

    def test_sibling_import(self, context_factory, tmp_path):
        (tmp_path / "helper_mod.py").write_text("VALUE = 42\n")
        ctx = context_factory("import helper_mod\n")
        ctx.load()
        assert ctx.namespace["helper_mod"].VALUE == 42

    def test_syntax_error_propagates(self, context_factory):
        ctx = context_factory("def broken(:\n")
        with pytest.raises(SyntaxError):
            ctx.load()


class TestProcedures:
    SOURCE = (
        "from os.path import join as test_imported\n"
        "\n"
        "def test_b():\n"
        "    pass\n"
        "\n"
        "def helper():\n"
        "    pass\n"
        "\n"
        "def test_a():\n"
        "    pass\n"
        "\n"
        "test_value = 3\n"
    )

    def test_declaration_order(self, context_factory):
        ctx = context_factory(self.SOURCE)
        ctx.load()
        assert ctx.procedures("test_") == [
            {"name": "test_b", "line": 3},
            {"name": "test_a", "line": 9},
        ]

    def test_other_prefix(self, context_factory):
        ctx = context_factory(self.SOURCE)
        ctx.load()
        assert [p["name"] for p in ctx.procedures("help")] == ["helper"]


# ── Invocation ──


class TestInvoke:
    def test_statuses(self, context_factory, capsys):
        ctx = context_factory(
            "def test_none():\n    pass\n"
            "def test_true():\n    return True\n"
            "def test_false():\n    return False\n"
            "def test_code():\n    return 3\n"
            "def test_raises():\n    raise RuntimeError('boom')\n"
            "def test_exit():\n    raise SystemExit('fatal')\n"
            "def test_assert_fail():\n    return assert_equals(1, 2)\n"
        )
        ctx.load()
        assert ctx.invoke("test_none") == 0
        assert ctx.invoke("test_true") == 0
        assert ctx.invoke("test_false") == 1
        assert ctx.invoke("test_code") == 3
        assert ctx.invoke("test_raises") == 1
        assert ctx.invoke("test_exit") == 1
        assert ctx.invoke("test_assert_fail") == 1
        err = capsys.readouterr().err
        assert "RuntimeError: boom" in err
        assert "fatal" in err
        assert "expected: 1" in err

    def test_unknown_procedure(self, context_factory, capsys):
        ctx = context_factory("")
        ctx.load()
        assert ctx.invoke("test_missing") == 127
        assert "procedure not found" in capsys.readouterr().err

    def test_stub_used_by_procedure(self, context_factory):
        ctx = context_factory(
            "def fetch():\n    return 'real'\n"
            "def test_stubbed():\n"
            "    stub_function('fetch', \"return 'fake'\")\n"
            "    return assert_equals('fake', fetch())\n"
        )
        ctx.load()
        assert ctx.invoke("test_stubbed") == 0


# ── Close ──


class TestClose:
    def test_removes_substitutions(self, context_factory):
        path_before = os.environ["PATH"]
        ctx = context_factory(
            "def real():\n    return 1\n"
            "def test_leaky():\n"
            "    mock_command('curl', 'echo mocked')\n"
            "    stub_function('real', 'return 2')\n"
            "    raise RuntimeError('no cleanup here')\n"
        )
        ctx.load()
        original = ctx.namespace["real"]
        assert ctx.invoke("test_leaky") == 1
        ctx.close()
        assert os.environ["PATH"] == path_before
        assert ctx.namespace["real"] is original
        assert not ctx.registry.is_substituted("curl")

    def test_owned_scratch_removed(self, context_factory):
        ctx = context_factory("")
        scratch = ctx.scratch_dir
        assert scratch.is_dir()
        ctx.close()
        assert not scratch.exists()

    def test_given_scratch_kept(self, context_factory, tmp_path):
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        ctx = context_factory("", scratch_dir=scratch)
        ctx.close()
        assert scratch.is_dir()

    def test_close_idempotent(self, context_factory):
        ctx = context_factory("")
        ctx.close()
        ctx.close()


@pytest.mark.skipif(sys.gettrace() is not None, reason="another tracer is active")
class TestTracing:
    def test_records_test_file_lines(self, context_factory, tmp_path):
        record = tmp_path / "cov" / "t.cov"
        ctx = context_factory(
            "def test_go():\n    x = 1\n    return x - 1\n",
            trace_record=record,
            trace_roots=[str(tmp_path)],
        )
        assert ctx.start_trace()
        ctx.load()
        assert ctx.invoke("test_go") == 0
        ctx.close()

        data = read_record(record)
        target = os.path.realpath(tmp_path / "sample_test.py")
        assert data.is_covered(target, 2)
        assert data.is_covered(target, 3)

    def test_no_record_means_no_tracing(self, context_factory):
        assert not context_factory("").start_trace()
