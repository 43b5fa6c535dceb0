"""clispec CLI — run test procedures for command-line scripts.

Usage::

    python -m clispec [PATTERN] [options]

Options::

    --root DIR                Directory to search for test files (default: .)
    --prefix PREFIX           Test procedure name prefix (default: test_)
    --tap                     Emit TAP version 13 on stdout
    --verbose / -v            Print every result and enable debug logging
    --coverage                Trace executed lines of files under the root
    --cover FILE              Also report FILE when never executed (repeatable)
    --coverage-threshold N    Fail when total coverage is below N percent
    --coverage-json PATH      Write the coverage report as JSON
    --results-json PATH       Write the result stream document as JSON
    --timeout SECONDS         Per-test time limit (default: none)

``PATTERN`` falls back to ``$CLISPEC_PATTERN``, ``--prefix`` to
``$CLISPEC_PREFIX``.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from clispec.discovery import DEFAULT_PATTERN, DEFAULT_PREFIX, ConfigError
from clispec.runner import RunConfig, run_tests
from clispec.session import SessionError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="clispec",
        description=(
            "clispec — test harness for command-line scripts.\n\n"
            "Finds test files, runs every test procedure in its own "
            "interpreter, and reports results as text or TAP."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "pattern",
        nargs="?",
        default=None,
        help=f"Test file name glob (default: {DEFAULT_PATTERN})",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=Path("."),
        help="Directory to search for test files",
    )
    parser.add_argument(
        "--prefix",
        default=None,
        help=f"Test procedure name prefix (default: {DEFAULT_PREFIX})",
    )
    parser.add_argument(
        "--tap",
        action="store_true",
        default=False,
        help="Emit TAP version 13",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        default=False,
        help="Print every result and enable debug logging",
    )
    parser.add_argument(
        "--coverage",
        action="store_true",
        default=False,
        help="Trace executed lines of files under the root",
    )
    parser.add_argument(
        "--cover",
        type=Path,
        action="append",
        default=[],
        metavar="FILE",
        help="Report FILE in coverage even if it never ran (repeatable)",
    )
    parser.add_argument(
        "--coverage-threshold",
        type=int,
        default=None,
        metavar="N",
        help="Fail when total coverage is below N percent",
    )
    parser.add_argument(
        "--coverage-json",
        type=Path,
        default=None,
        metavar="PATH",
        help="Write the coverage report as JSON",
    )
    parser.add_argument(
        "--results-json",
        type=Path,
        default=None,
        metavar="PATH",
        help="Write the result stream document as JSON",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Per-test time limit (default: none)",
    )
    return parser


def build_config(args: argparse.Namespace) -> RunConfig:
    """Flags take precedence, then environment variables, then defaults."""
    pattern = args.pattern or os.environ.get("CLISPEC_PATTERN") or DEFAULT_PATTERN
    prefix = args.prefix or os.environ.get("CLISPEC_PREFIX") or DEFAULT_PREFIX
    threshold = args.coverage_threshold
    return RunConfig(
        root=Path(args.root).resolve(),
        pattern=pattern,
        prefix=prefix,
        tap=args.tap,
        verbose=args.verbose,
        # A threshold or report without tracing would always read 0%
        coverage=bool(
            args.coverage or threshold is not None or args.coverage_json or args.cover
        ),
        coverage_targets=[Path(p).resolve() for p in args.cover],
        coverage_threshold=threshold,
        coverage_json=args.coverage_json,
        results_json=args.results_json,
        timeout_seconds=args.timeout,
    )


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.  Returns exit code (0=success, 1=failure, 2=config error)."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Logging goes to stderr so TAP on stdout stays clean
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")

    if args.coverage_threshold is not None and not 0 <= args.coverage_threshold <= 100:
        print(
            f"Error: Coverage threshold must be between 0 and 100: "
            f"{args.coverage_threshold}",
            file=sys.stderr,
        )
        return EXIT_CONFIG

    config = build_config(args)
    if not config.root.is_dir():
        print(f"Error: Test root is not a directory: {config.root}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        summary = run_tests(config)
    except (ConfigError, SessionError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    return EXIT_OK if summary.success else EXIT_FAILED
