"""Isolated Context — Namespace, substitutions and tracing for one test file.

An isolated context lives in a fresh interpreter started for every test
(see ``clispec.worker``), so nothing leaks between tests: no variables, no
procedures, no substitutions.  The context injects the assertion
primitives and substitution operations into the test file's namespace,
loads the file, invokes one procedure, and on close removes every
substitution and flushes trace buffers, however the procedure ended.
"""

import builtins
import inspect
import logging
import os
import shutil
import sys
import tempfile
import traceback
from pathlib import Path
from typing import Optional

from clispec.assertions import Assertions, exit_status
from clispec.substitution import SubstitutionRegistry
from clispec.tracer import TraceCollector, coverage_supported

logger = logging.getLogger(__name__)

# Markers for extracting structured output from the child's stdout
RESULTS_START = "__CLISPEC_RESULTS_START__"
RESULTS_END = "__CLISPEC_RESULTS_END__"

TEST_MODULE_NAME = "__clispec_test__"


class IsolatedContext:
    """Namespace, substitutions and tracing for one test file load.

    Usage::

        context = IsolatedContext("calc_test.py", scratch_dir)
        try:
            context.load()
            status = context.invoke("test_add")
        finally:
            context.close()
    """

    def __init__(
        self,
        test_file: str | Path,
        scratch_dir: Optional[str | Path] = None,
        trace_record: Optional[str | Path] = None,
        trace_roots: Optional[list[str]] = None,
    ):
        self.path = Path(test_file).resolve()
        # Removed on close only when the context created it
        self._owned_scratch = scratch_dir is None
        self.scratch_dir = (
            Path(tempfile.mkdtemp(prefix="clispec_ctx_")) if scratch_dir is None
            else Path(scratch_dir)
        )
        self.namespace: dict = {
            "__name__": TEST_MODULE_NAME,
            "__file__": str(self.path),
            "__builtins__": builtins,
        }
        self.registry = SubstitutionRegistry(self.namespace, self.scratch_dir / "bin")
        self.assertions = Assertions(self.namespace)
        self.collector: Optional[TraceCollector] = None
        if trace_record:
            self.collector = TraceCollector(
                trace_record,
                include_roots=trace_roots or [str(self.path.parent)],
            )
        self._closed = False
        self.namespace.update(self.bindings())

    def bindings(self) -> dict:
        """Names a test file can use without importing anything."""
        registry = self.registry
        names = dict(self.assertions.bindings())
        names.update({
            "mock_command": registry.mock_command,
            "unmock_command": registry.unmock_command,
            "stub_function": registry.stub_function,
            "unstub_function": registry.unstub_function,
            "unmock_all": registry.remove_all,
            "is_mocked": registry.is_mocked,
            "is_stubbed": registry.is_stubbed,
            "is_substituted": registry.is_substituted,
            "list_mocks": lambda: print(registry.describe()),
            "scratch_dir": self.scratch_dir,
        })
        return names

    # ── Lifecycle ──

    def start_trace(self) -> bool:
        if self.collector is None:
            return False
        supported, reason = coverage_supported()
        if not supported:
            logger.warning("Coverage unavailable: %s", reason)
            self.collector = None
            return False
        self.collector.start()
        return True

    def load(self) -> None:
        """Execute the test file's top level in the context namespace."""
        source = self.path.read_text(encoding="utf-8")
        code = compile(source, str(self.path), "exec")
        # The file's directory is importable, as it is for a script run directly
        directory = str(self.path.parent)
        if directory not in sys.path:
            sys.path.insert(0, directory)
        exec(code, self.namespace)

    def procedures(self, prefix: str) -> list[dict]:
        """Prefixed functions declared by this file, in declaration order."""
        found = []
        for name, value in self.namespace.items():
            if not name.startswith(prefix) or not inspect.isfunction(value):
                continue
            code = value.__code__
            if os.path.realpath(code.co_filename) != str(self.path):
                continue
            found.append({"name": name, "line": code.co_firstlineno})
        return found

    def invoke(self, name: str) -> int:
        """Call procedure ``name`` and return its completion status."""
        procedure = self.namespace.get(name)
        if not callable(procedure):
            print(f"{name}: procedure not found in {self.path}", file=sys.stderr)
            return 127
        try:
            return exit_status(procedure())
        except SystemExit as e:
            if isinstance(e.code, str):
                print(e.code, file=sys.stderr)
                return 1
            return exit_status(e.code)
        except Exception:
            traceback.print_exc()
            return 1

    def close(self) -> None:
        """Remove every substitution and finalize tracing. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            self.registry.remove_all()
        finally:
            if self.collector is not None:
                self.collector.finalize()
            if self._owned_scratch:
                shutil.rmtree(self.scratch_dir, ignore_errors=True)
