"""Assertion Primitives — Single-shot checks for test procedures.

Every primitive performs one check and returns an ``AssertionOutcome``
that is falsy when the check failed.  Primitives never raise on a failed
check: a test procedure ends unsuccessfully only through its own control
flow, e.g. ``return assert_equals(...)`` or
``if not assert_success(...): return False``.

Failures print the expected and actual values verbatim to stderr, which the
Isolated Executor captures as the test's diagnostic output.

Commands given to the command primitives and to ``run()`` resolve the way a
shell resolves them: a first word that names a callable in the test file's
namespace runs that procedure, anything else runs as an external command
(and so goes through ``PATH``, where command mocks live).
"""

import contextlib
import inspect
import io
import os
import shlex
import subprocess
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

_MARK_PASS = "PASS"
_MARK_FAIL = "FAIL"

# Same code a shell reports for an unknown command
COMMAND_NOT_FOUND = 127


# ── Data Classes ──


@dataclass
class AssertionOutcome:
    """Result of one assertion.

    Attributes:
        passed: Whether the check held.
        description: Headline printed with the PASS/FAIL mark.
        expected: Expected value, rendered as text.
        actual: Actual value, rendered as text.
    """

    passed: bool
    description: str
    expected: str = ""
    actual: str = ""

    def __bool__(self) -> bool:
        return self.passed


@dataclass
class CommandResult:
    """Outcome of ``run()``: exit status and stdout (trailing newlines removed)."""

    returncode: int
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


def exit_status(value: object) -> int:
    """Map a procedure's return value to a shell-style exit status.

    ``None`` means success, an ``int`` is the status itself, anything else
    succeeds iff it is truthy (an ``AssertionOutcome`` is falsy on failure).
    """
    if value is None:
        return 0
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0 if value else 1


def _render(value: object) -> str:
    return value if isinstance(value, str) else repr(value)


def _command_text(command: tuple) -> str:
    parts = []
    for word in command:
        if callable(word):
            parts.append(getattr(word, "__name__", repr(word)))
        else:
            parts.append(str(word))
    return " ".join(parts)


# ── Assertions ──


class Assertions:
    """Assertion primitives bound to one isolated context.

    ``bindings()`` returns the names injected into a test file's namespace.
    """

    def __init__(
        self,
        namespace: dict,
        stream=None,
        cwd: Optional[str | Path] = None,
    ):
        self.namespace = namespace
        self._stream = stream
        self.cwd = Path(cwd) if cwd else None

    @property
    def stream(self):
        # Resolved late so redirection of sys.stderr is honoured
        return self._stream if self._stream is not None else sys.stderr

    def bindings(self) -> dict[str, Callable]:
        return {
            "run": self.run,
            "assert_equals": self.assert_equals,
            "assert_not_equals": self.assert_not_equals,
            "assert_success": self.assert_success,
            "assert_fail": self.assert_fail,
            "assert_output_equals": self.assert_output_equals,
            "assert_output_contains": self.assert_output_contains,
            "assert_path_exists": self.assert_path_exists,
            "assert_path_absent": self.assert_path_absent,
            "assert_variable_set": self.assert_variable_set,
            "assert_function_defined": self.assert_function_defined,
        }

    # ── Command Invocation ──

    def run(self, *command) -> CommandResult:
        """Run a procedure or external command and capture its stdout.

        Accepts a callable, separate argv words, or a single shell string.
        """
        if not command:
            print("run: no command given", file=self.stream)
            return CommandResult(returncode=2)

        head = command[0]
        if callable(head):
            return self._call_procedure(head, [str(a) for a in command[1:]])

        if len(command) == 1:
            text = str(head)
            try:
                words = shlex.split(text)
            except ValueError:
                words = []
            procedure = self._lookup_procedure(words[0]) if words else None
            if procedure is not None:
                return self._call_procedure(procedure, words[1:])
            return self._call_external(["/bin/sh", "-c", text], text)

        argv = [str(word) for word in command]
        procedure = self._lookup_procedure(argv[0])
        if procedure is not None:
            return self._call_procedure(procedure, argv[1:])
        return self._call_external(argv, argv[0])

    def _lookup_procedure(self, name: str) -> Optional[Callable]:
        value = self.namespace.get(name)
        return value if callable(value) else None

    def _call_procedure(self, procedure: Callable, args: list[str]) -> CommandResult:
        buffer = io.StringIO()
        try:
            with contextlib.redirect_stdout(buffer):
                status = exit_status(procedure(*args))
        except SystemExit as e:
            if isinstance(e.code, str):
                print(e.code, file=self.stream)
                status = 1
            else:
                status = exit_status(e.code)
        except Exception:
            traceback.print_exc(file=self.stream)
            status = 1
        return CommandResult(returncode=status, output=buffer.getvalue().rstrip("\n"))

    def _call_external(self, argv: list[str], label: str) -> CommandResult:
        # Let anything written so far reach the shared output before the child
        sys.stdout.flush()
        self.stream.flush()
        try:
            completed = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                text=True,
                errors="replace",
                cwd=str(self.cwd) if self.cwd else None,
                env=dict(os.environ),
            )
        except FileNotFoundError:
            print(f"{label}: command not found", file=self.stream)
            return CommandResult(returncode=COMMAND_NOT_FOUND)
        except OSError as e:
            print(f"{label}: {e}", file=self.stream)
            return CommandResult(returncode=126)
        return CommandResult(
            returncode=completed.returncode,
            output=(completed.stdout or "").rstrip("\n"),
        )

    # ── Reporting ──

    def _report(self, outcome: AssertionOutcome) -> AssertionOutcome:
        if outcome.passed:
            print(f"  {_MARK_PASS}: {outcome.description}", file=self.stream)
        else:
            print(f"  {_MARK_FAIL}: {outcome.description}", file=self.stream)
            print(f"    expected: {outcome.expected}", file=self.stream)
            print(f"    actual:   {outcome.actual}", file=self.stream)
        return outcome

    # ── Value Checks ──

    def assert_equals(
        self, expected, actual, message: Optional[str] = None,
    ) -> AssertionOutcome:
        """Pass when ``expected == actual``."""
        e, a = _render(expected), _render(actual)
        passed = expected == actual
        if passed:
            description = message or "should be equal"
        else:
            description = message or f"Expected '{e}', got '{a}'"
        return self._report(AssertionOutcome(passed, description, e, a))

    def assert_not_equals(
        self, unexpected, actual, message: Optional[str] = None,
    ) -> AssertionOutcome:
        """Pass when ``unexpected != actual``."""
        u, a = _render(unexpected), _render(actual)
        passed = unexpected != actual
        if passed:
            description = message or "should not be equal"
        else:
            description = message or (
                f"Expected values to be different, but both were '{a}'"
            )
        return self._report(AssertionOutcome(passed, description, f"not {u}", a))

    # ── Command Checks ──

    def assert_success(self, *command, message: Optional[str] = None) -> AssertionOutcome:
        """Pass when the command exits with status 0."""
        text = _command_text(command)
        result = self.run(*command)
        if result.succeeded:
            description = message or f"command should succeed: {text}"
        else:
            description = message or (
                f"command failed with exit code {result.returncode}: {text}"
            )
        return self._report(AssertionOutcome(
            result.succeeded, description, "exit status 0",
            f"exit status {result.returncode}",
        ))

    def assert_fail(self, *command, message: Optional[str] = None) -> AssertionOutcome:
        """Pass when the command exits with a non-zero status."""
        text = _command_text(command)
        result = self.run(*command)
        passed = not result.succeeded
        if passed:
            description = message or f"command should fail: {text}"
        else:
            description = message or (
                f"command succeeded, but was expected to fail: {text}"
            )
        return self._report(AssertionOutcome(
            passed, description, "non-zero exit status",
            f"exit status {result.returncode}",
        ))

    def assert_output_equals(
        self, expected: str, *command, message: Optional[str] = None,
    ) -> AssertionOutcome:
        """Pass when the command's stdout equals ``expected``."""
        text = _command_text(command)
        result = self.run(*command)
        passed = result.output == expected
        if passed:
            description = message or f"output should equal: {text}"
        else:
            description = message or f"unexpected output from: {text}"
        return self._report(AssertionOutcome(passed, description, expected, result.output))

    def assert_output_contains(
        self, needle: str, *command, message: Optional[str] = None,
    ) -> AssertionOutcome:
        """Pass when the command's stdout contains ``needle``."""
        text = _command_text(command)
        result = self.run(*command)
        passed = needle in result.output
        if passed:
            description = message or f"output should contain '{needle}': {text}"
        else:
            description = message or f"output does not contain '{needle}': {text}"
        return self._report(AssertionOutcome(
            passed, description, f"output containing '{needle}'", result.output,
        ))

    # ── Filesystem Checks ──

    def _resolve(self, path: str | Path) -> Path:
        p = Path(path)
        if not p.is_absolute() and self.cwd:
            p = self.cwd / p
        return p

    def assert_path_exists(
        self, path: str | Path, message: Optional[str] = None,
    ) -> AssertionOutcome:
        passed = self._resolve(path).exists()
        description = message or (
            f"path should exist: {path}" if passed else f"path does not exist: {path}"
        )
        return self._report(AssertionOutcome(
            passed, description, f"{path} exists",
            f"{path} {'exists' if passed else 'is absent'}",
        ))

    def assert_path_absent(
        self, path: str | Path, message: Optional[str] = None,
    ) -> AssertionOutcome:
        passed = not self._resolve(path).exists()
        description = message or (
            f"path should be absent: {path}" if passed else f"path exists: {path}"
        )
        return self._report(AssertionOutcome(
            passed, description, f"{path} is absent",
            f"{path} {'is absent' if passed else 'exists'}",
        ))

    # ── Definition Checks ──

    def assert_variable_set(
        self, name: str, message: Optional[str] = None,
    ) -> AssertionOutcome:
        """Pass when ``name`` is bound in the caller, the test file or the environment."""
        frame = inspect.currentframe()
        caller = frame.f_back if frame is not None else None
        try:
            in_caller = caller is not None and name in caller.f_locals
        finally:
            del frame, caller

        where = ""
        if in_caller:
            where = "local"
        elif name in self.namespace:
            where = "global"
        elif name in os.environ:
            where = "environment"

        passed = bool(where)
        description = message or (
            f"variable should be set: {name}" if passed
            else f"variable is not set: {name}"
        )
        return self._report(AssertionOutcome(
            passed, description, f"{name} set", f"{name} {where or 'unset'}",
        ))

    def assert_function_defined(
        self, name: str, message: Optional[str] = None,
    ) -> AssertionOutcome:
        """Pass when ``name`` resolves to a callable in the test file's namespace."""
        passed = self._lookup_procedure(name) is not None
        description = message or (
            f"function should be defined: {name}" if passed
            else f"function is not defined: {name}"
        )
        return self._report(AssertionOutcome(
            passed, description, f"{name} defined",
            f"{name} {'defined' if passed else 'undefined'}",
        ))
