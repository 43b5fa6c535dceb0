"""Run Session — Ephemeral workspace and child interpreter launch.

Every run gets one uniquely named temporary workspace holding per-test
scratch directories (command mocks live there), per-test trace records and
the result stream staging file.  Cleanup is guaranteed on normal exit,
exception, interpreter exit, or signal (Ctrl+C / SIGTERM).

Isolated contexts are fresh interpreters started through
``run_in_session``; each one only ever sees the state its test file
declares.
"""

import atexit
import json
import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Directory holding the clispec package, put on the child's PYTHONPATH
_PACKAGE_PARENT = str(Path(__file__).resolve().parent.parent)

WORKER_MODULE = "clispec.worker"


@dataclass
class SessionResult:
    """Result of running a command inside the session.

    ``output`` is stdout and stderr combined in the order they were written.
    """

    returncode: int
    output: str
    timed_out: bool = False


class SessionError(Exception):
    """Base exception for run session errors."""


class RunSession:
    """Owns the temporary workspace of one test run.

    - Creates a uniquely named workspace under the system temp directory
    - Hands out unique scratch directories and trace record paths per test
    - Starts isolated child interpreters running the clispec worker
    - Guarantees cleanup on normal exit, exceptions, and signals (Ctrl+C)

    Usage::

        with RunSession("/path/to/project") as session:
            result = session.run_worker(["run", "calc_test.py", "test_add"])
    """

    TEMP_PREFIX = "clispec_run_"
    MARKER_FILE = ".clispec_run"

    # Class-level registry for signal-based cleanup of all active sessions
    _active_sessions: list = []
    _signal_handlers_installed: bool = False
    _original_sigint = None
    _original_sigterm = None

    def __init__(
        self,
        root: str | Path,
        temp_base: Optional[str | Path] = None,
        python: Optional[str] = None,
    ):
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise SessionError(
                f"Test root does not exist or is not a directory: {self.root}"
            )

        self.temp_base = Path(temp_base) if temp_base else None
        self.python = python or sys.executable

        # Populated during setup
        self.workspace_dir: Optional[Path] = None
        self.scratch_dir: Optional[Path] = None
        self.coverage_dir: Optional[Path] = None
        self.results_path: Optional[Path] = None

        self._cleaned_up = False
        self._setup_complete = False

    # ── Context Manager ──

    def __enter__(self):
        self.setup()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.teardown()
        return False  # never suppress exceptions

    # ── Setup ──

    def setup(self):
        """Create the workspace and its subdirectories."""
        if self._setup_complete:
            return

        try:
            self._register_session()

            mkdtemp_kwargs = {"prefix": self.TEMP_PREFIX}
            if self.temp_base:
                self.temp_base.mkdir(parents=True, exist_ok=True)
                mkdtemp_kwargs["dir"] = str(self.temp_base)
            self.workspace_dir = Path(tempfile.mkdtemp(**mkdtemp_kwargs))

            self._write_marker()

            self.scratch_dir = self.workspace_dir / "scratch"
            self.coverage_dir = self.workspace_dir / "coverage"
            self.scratch_dir.mkdir()
            self.coverage_dir.mkdir()
            self.results_path = self.workspace_dir / "results.jsonl"
            self.results_path.touch()

            self._setup_complete = True
            logger.debug("Run workspace ready: %s", self.workspace_dir)

        except Exception:
            self.teardown()
            raise

    # ── Teardown ──

    def teardown(self):
        """Remove the workspace and everything in it."""
        if self._cleaned_up:
            return
        self._cleaned_up = True

        self._unregister_session()

        if self.workspace_dir and self.workspace_dir.exists():
            try:
                shutil.rmtree(self.workspace_dir)
                logger.debug("Cleaned up run workspace: %s", self.workspace_dir)
            except OSError as e:
                logger.warning(
                    "Failed to fully clean up %s: %s", self.workspace_dir, e
                )

        self.workspace_dir = None
        self.scratch_dir = None
        self.coverage_dir = None
        self.results_path = None
        self._setup_complete = False

    def _require_setup(self):
        if not self._setup_complete:
            raise SessionError(
                "Session not set up. Call setup() or use as context manager."
            )

    # ── Per-Test Storage ──

    @staticmethod
    def _safe_name(name: str) -> str:
        return "".join(c if c.isalnum() or c == "_" else "_" for c in name)[:60]

    def new_scratch_dir(self, test_name: str) -> Path:
        """A fresh, uniquely named directory for one isolated context."""
        self._require_setup()
        path = self.scratch_dir / f"{self._safe_name(test_name)}_{uuid.uuid4().hex[:8]}"
        path.mkdir()
        return path

    def new_trace_record(self, test_name: str) -> Path:
        """A unique trace record path for one test (not created yet)."""
        self._require_setup()
        return self.coverage_dir / (
            f"{self._safe_name(test_name)}_{os.getpid()}_{uuid.uuid4().hex[:8]}.cov"
        )

    # ── Command Execution ──

    def child_env(self, env_vars: Optional[dict] = None) -> dict:
        env = os.environ.copy()
        existing = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = (
            _PACKAGE_PARENT + (os.pathsep + existing if existing else "")
        )
        # Keeps stdout and stderr interleaved in write order
        env["PYTHONUNBUFFERED"] = "1"
        if env_vars:
            env.update(env_vars)
        return env

    def run_in_session(
        self,
        command: list[str],
        timeout: Optional[float] = None,
        cwd: Optional[str | Path] = None,
        env_vars: Optional[dict] = None,
    ) -> SessionResult:
        """Run a command with combined output capture.

        ``timeout`` of None waits for the command however long it takes.
        """
        self._require_setup()

        logger.debug(
            "run_in_session: %s (timeout=%s)",
            " ".join(command[:4]), timeout,
        )

        try:
            result = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                timeout=timeout,
                cwd=str(cwd or self.root),
                env=self.child_env(env_vars),
            )
            return SessionResult(
                returncode=result.returncode,
                output=result.stdout or "",
            )
        except subprocess.TimeoutExpired as e:
            output = ""
            if e.stdout:
                output = (
                    e.stdout
                    if isinstance(e.stdout, str)
                    else e.stdout.decode("utf-8", errors="replace")
                )
            return SessionResult(returncode=-1, output=output, timed_out=True)
        except OSError as e:
            return SessionResult(returncode=-1, output=str(e))

    def run_worker(
        self,
        args: list[str],
        timeout: Optional[float] = None,
    ) -> SessionResult:
        """Start a fresh interpreter running the clispec worker."""
        return self.run_in_session(
            [self.python, "-m", WORKER_MODULE, *args],
            timeout=timeout,
        )

    # ── Marker File ──

    def _write_marker(self):
        """Write a marker file for orphan detection."""
        marker = self.workspace_dir / self.MARKER_FILE
        marker.write_text(
            json.dumps(
                {
                    "pid": os.getpid(),
                    "created": time.time(),
                    "root": str(self.root),
                }
            )
        )

    # ── Signal Handling & Session Registry ──

    def _register_session(self):
        """Register this session for signal-based cleanup."""
        RunSession._active_sessions.append(self)
        if not RunSession._signal_handlers_installed:
            RunSession._install_signal_handlers()
        atexit.register(self.teardown)

    def _unregister_session(self):
        """Unregister this session from signal-based cleanup."""
        try:
            RunSession._active_sessions.remove(self)
        except ValueError:
            pass
        atexit.unregister(self.teardown)
        if not RunSession._active_sessions:
            RunSession._restore_signal_handlers()

    @classmethod
    def _install_signal_handlers(cls):
        """Install signal handlers that trigger cleanup on interrupt."""
        try:
            cls._original_sigint = signal.getsignal(signal.SIGINT)
            cls._original_sigterm = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGINT, cls._signal_handler)
            signal.signal(signal.SIGTERM, cls._signal_handler)
        except ValueError:
            # Not the main thread; atexit still covers normal exit
            logger.debug("Signal handlers not installed outside the main thread")
            return
        cls._signal_handlers_installed = True

    @classmethod
    def _restore_signal_handlers(cls):
        """Restore original signal handlers."""
        if cls._signal_handlers_installed:
            if cls._original_sigint is not None:
                signal.signal(signal.SIGINT, cls._original_sigint)
            if cls._original_sigterm is not None:
                signal.signal(signal.SIGTERM, cls._original_sigterm)
            cls._signal_handlers_installed = False
            cls._original_sigint = None
            cls._original_sigterm = None

    @classmethod
    def _signal_handler(cls, signum, frame):
        """Handle interrupt signals by cleaning up all active sessions."""
        logger.warning("Received signal %s, cleaning up run workspace...", signum)
        for session in list(cls._active_sessions):
            session.teardown()

        cls._restore_signal_handlers()
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        else:
            sys.exit(128 + signum)

    # ── Orphan Cleanup ──

    @classmethod
    def cleanup_orphans(
        cls,
        temp_base: Optional[str | Path] = None,
        max_age_hours: float = 24,
    ) -> int:
        """Remove workspaces left behind by killed runs.

        A workspace is removed when it is older than ``max_age_hours`` or
        when the process that created it is no longer running.

        Returns the number of orphaned directories cleaned.
        """
        search_dir = Path(temp_base) if temp_base else Path(tempfile.gettempdir())
        cleaned = 0

        if not search_dir.exists():
            return cleaned

        now = time.time()
        max_age_seconds = max_age_hours * 3600

        try:
            for entry in search_dir.iterdir():
                if not entry.is_dir() or not entry.name.startswith(cls.TEMP_PREFIX):
                    continue

                marker = entry / cls.MARKER_FILE
                should_clean = False

                if marker.exists():
                    try:
                        data = json.loads(marker.read_text())
                        created = data.get("created", 0)
                        pid = data.get("pid", -1)

                        if now - created > max_age_seconds:
                            should_clean = True
                        elif not _is_process_running(pid):
                            should_clean = True
                    except (json.JSONDecodeError, OSError):
                        should_clean = _older_than(entry, now, max_age_seconds)
                else:
                    should_clean = _older_than(entry, now, max_age_seconds)

                if should_clean:
                    try:
                        shutil.rmtree(entry)
                        cleaned += 1
                        logger.info("Cleaned orphaned run workspace: %s", entry)
                    except OSError as e:
                        logger.warning("Failed to clean orphan %s: %s", entry, e)
        except OSError as e:
            logger.warning("Failed to scan for orphans in %s: %s", search_dir, e)

        return cleaned


def _older_than(path: Path, now: float, max_age_seconds: float) -> bool:
    try:
        return now - path.stat().st_mtime > max_age_seconds
    except OSError:
        return False


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is still running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # process exists but we can't signal it
