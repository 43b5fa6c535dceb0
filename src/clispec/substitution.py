"""Substitution Registry — Mocks for external commands, stubs for procedures.

Two kinds of substitution with different restoration rules:

- **command** (mock): an executable shim written to the context's mock
  directory, which is prepended to ``PATH`` so the shim is found before the
  real program by the test procedure and by every process it starts.
- **procedure** (stub): a replacement binding in the test file's namespace.
  The namespace is the lookup table both Python name resolution and the
  ``run()`` helper consult, so stubbing is an insert and unstubbing restores
  the exact object that was there before (or removes the name).

One registry belongs to one isolated context.  ``remove_all()`` is the last
thing the context does, whatever happened to the test procedure.

Pure Python. No shell-level function rewriting.
"""

import logging
import os
import stat
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, MutableMapping, Optional, Union

logger = logging.getLogger(__name__)

KIND_COMMAND = "command"
KIND_PROCEDURE = "procedure"

# Shell builtins and control primitives a PATH shim can never intercept
FORBIDDEN_COMMANDS = frozenset({
    "cd", "export", "source", ".", "exit", "eval", "exec", "return",
    "set", "unset", "readonly", "declare", "local", "trap", "builtin",
    "command", "type", "hash", "read", "echo", "printf", "test", "[", "]",
})

_SHIM_HEADER = "#!/bin/sh\n# clispec mock\n"


class _Missing:
    """Marker for a stub that had no original binding."""

    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


# ── Exceptions ──


class SubstitutionError(Exception):
    """Base exception for substitution registry errors."""


class InvalidSubstitutionError(SubstitutionError):
    """Name or replacement body missing."""


class ForbiddenTargetError(SubstitutionError):
    """Target cannot be intercepted."""


class DuplicateSubstitutionError(SubstitutionError):
    """Target is already substituted."""


class NotSubstitutedError(SubstitutionError):
    """Target is not currently substituted."""


# ── Data Classes ──


@dataclass
class SubstitutionEntry:
    """One active mock or stub.

    Attributes:
        name: Command or procedure name.
        kind: ``"command"`` or ``"procedure"``.
        body: The replacement as given (shell text, Python text or callable).
        original: Binding replaced by a stub, ``MISSING`` if there was none.
            Always ``MISSING`` for commands.
        shim_path: Path of the mock executable (commands only).
    """

    name: str
    kind: str
    body: object
    original: object = MISSING
    shim_path: Optional[Path] = None

    @property
    def had_original(self) -> bool:
        return self.original is not MISSING


Replacement = Union[str, Callable]


# ── Registry ──


class SubstitutionRegistry:
    """Creates, tracks and restores the substitutions of one context.

    Usage::

        registry = SubstitutionRegistry(namespace, bin_dir)
        registry.mock_command("curl", 'echo "mocked response"')
        registry.stub_function("fetch_data", lambda *a: "stubbed")
        ...
        registry.remove_all()
    """

    def __init__(
        self,
        namespace: dict,
        bin_dir: str | Path,
        environ: Optional[MutableMapping[str, str]] = None,
    ):
        self.namespace = namespace
        self.bin_dir = Path(bin_dir)
        self.environ = os.environ if environ is None else environ

        self._commands: dict[str, SubstitutionEntry] = {}
        self._procedures: dict[str, SubstitutionEntry] = {}
        # PATH exactly as it was before the first mock
        self._saved_path: object = MISSING

    # ── Commands ──

    def mock_command(self, name: str, body: str) -> SubstitutionEntry:
        """Intercept the external command ``name`` with shell text ``body``.

        The body runs under ``/bin/sh`` with the original arguments in
        ``"$@"``.
        """
        if not name:
            raise InvalidSubstitutionError("mock_command: command name required")
        if not isinstance(body, str) or not body.strip():
            raise InvalidSubstitutionError("mock_command: implementation required")
        if name in FORBIDDEN_COMMANDS:
            raise ForbiddenTargetError(
                f"mock_command: cannot mock shell builtin '{name}'"
            )
        if "/" in name or name in (".", "..") or "\0" in name:
            raise ForbiddenTargetError(
                f"mock_command: '{name}' is not a plain command name"
            )
        if name in self._commands:
            raise DuplicateSubstitutionError(
                f"mock_command: '{name}' is already mocked "
                "(call unmock_command first)"
            )

        self.bin_dir.mkdir(parents=True, exist_ok=True)
        shim = self.bin_dir / name
        shim.write_text(_SHIM_HEADER + body.rstrip("\n") + "\n", encoding="utf-8")
        shim.chmod(shim.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        entry = SubstitutionEntry(
            name=name, kind=KIND_COMMAND, body=body, shim_path=shim,
        )
        self._commands[name] = entry
        self._sync_path()
        logger.debug("Mocked command %s -> %s", name, shim)
        return entry

    def unmock_command(self, name: str) -> None:
        """Remove the mock for ``name`` so normal resolution applies again."""
        if not name:
            raise InvalidSubstitutionError("unmock_command: command name required")
        entry = self._commands.pop(name, None)
        if entry is None:
            raise NotSubstitutedError(f"unmock_command: '{name}' is not mocked")
        self._remove_shim(entry)
        self._sync_path()

    # ── Procedures ──

    def stub_function(self, name: str, body: Replacement) -> SubstitutionEntry:
        """Replace the procedure ``name`` in the namespace.

        ``body`` is either a callable or Python statements used as the body
        of ``def name(*args, **kwargs)``.
        """
        if not name:
            raise InvalidSubstitutionError("stub_function: function name required")
        if body is None or (isinstance(body, str) and not body.strip()):
            raise InvalidSubstitutionError("stub_function: implementation required")
        if not isinstance(body, str) and not callable(body):
            raise InvalidSubstitutionError(
                "stub_function: implementation must be a callable or source text"
            )
        if not name.isidentifier():
            raise ForbiddenTargetError(
                f"stub_function: '{name}' is not a valid procedure name"
            )
        if name in self._procedures:
            raise DuplicateSubstitutionError(
                f"stub_function: '{name}' is already stubbed "
                "(call unstub_function first)"
            )

        replacement = (
            self._compile_body(name, body) if isinstance(body, str) else body
        )
        entry = SubstitutionEntry(
            name=name,
            kind=KIND_PROCEDURE,
            body=body,
            original=self.namespace.get(name, MISSING),
        )
        self._procedures[name] = entry
        self.namespace[name] = replacement
        logger.debug(
            "Stubbed procedure %s (original %s)",
            name, "saved" if entry.had_original else "absent",
        )
        return entry

    def unstub_function(self, name: str) -> None:
        """Put back the original procedure, or remove the stub if none existed."""
        if not name:
            raise InvalidSubstitutionError("unstub_function: function name required")
        entry = self._procedures.pop(name, None)
        if entry is None:
            raise NotSubstitutedError(f"unstub_function: '{name}' is not stubbed")
        self._restore_binding(entry)

    # ── Bulk Cleanup ──

    def remove_all(self) -> None:
        """Restore every stub and remove every mock.

        Safe to call any number of times, including with nothing registered.
        """
        for entry in list(self._procedures.values()):
            self._restore_binding(entry)
        self._procedures.clear()

        for entry in list(self._commands.values()):
            self._remove_shim(entry)
        self._commands.clear()
        self._sync_path()

    # ── Queries ──

    def is_mocked(self, name: str) -> bool:
        return name in self._commands

    def is_stubbed(self, name: str) -> bool:
        return name in self._procedures

    def is_substituted(self, name: str) -> bool:
        return self.is_mocked(name) or self.is_stubbed(name)

    def active(self) -> dict[str, list[str]]:
        """Active substitution names by kind, in registration order."""
        return {
            KIND_COMMAND: list(self._commands),
            KIND_PROCEDURE: list(self._procedures),
        }

    def describe(self) -> str:
        """Human-readable listing for debugging."""
        commands = " ".join(self._commands) or "none"
        procedures = " ".join(self._procedures) or "none"
        return f"Mocked commands: {commands}\nStubbed functions: {procedures}"

    # ── Internals ──

    def _compile_body(self, name: str, body: str) -> Callable:
        source = (
            f"def {name}(*args, **kwargs):\n"
            + textwrap.indent(textwrap.dedent(body).strip("\n"), "    ")
            + "\n"
        )
        try:
            code = compile(source, f"<stub {name}>", "exec")
        except SyntaxError as e:
            raise InvalidSubstitutionError(
                f"stub_function: implementation for '{name}' does not compile: {e}"
            ) from e
        # Defined against the namespace so the stub sees the file's globals
        scratch: dict = {}
        exec(code, self.namespace, scratch)
        return scratch[name]

    def _restore_binding(self, entry: SubstitutionEntry) -> None:
        if entry.had_original:
            self.namespace[entry.name] = entry.original
        else:
            self.namespace.pop(entry.name, None)

    def _remove_shim(self, entry: SubstitutionEntry) -> None:
        if entry.shim_path is None:
            return
        try:
            entry.shim_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove mock %s: %s", entry.shim_path, e)

    def _sync_path(self) -> None:
        """Keep ``bin_dir`` first on PATH exactly while mocks are active."""
        if self._commands:
            if self._saved_path is MISSING:
                self._saved_path = self.environ.get("PATH")
            base = self._saved_path or ""
            self.environ["PATH"] = (
                str(self.bin_dir) + (os.pathsep + base if base else "")
            )
        elif self._saved_path is not MISSING:
            if self._saved_path is None:
                self.environ.pop("PATH", None)
            else:
                self.environ["PATH"] = self._saved_path
            self._saved_path = MISSING
