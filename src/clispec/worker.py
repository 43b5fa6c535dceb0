"""Worker — Entry point of the isolated child interpreter.

Started as ``python -m clispec.worker`` in a fresh interpreter for every
test, and once per file during discovery.

Two modes:

- ``list FILE --prefix P``: load the file's declarations and print the
  prefixed procedures as JSON between output markers.
- ``run FILE NAME``: load the file, call one procedure, exit with its
  completion status.
"""

import argparse
import json
import logging
import sys
import traceback

from clispec.context import RESULTS_END, RESULTS_START, IsolatedContext


def _list(args) -> int:
    context = IsolatedContext(args.file)
    try:
        context.load()
        found = context.procedures(args.prefix)
    except Exception:
        traceback.print_exc()
        return 1
    finally:
        context.close()

    sys.stdout.write("\n" + RESULTS_START + "\n")
    sys.stdout.write(json.dumps({"file": str(context.path), "procedures": found}))
    sys.stdout.write("\n" + RESULTS_END + "\n")
    sys.stdout.flush()
    return 0


def _run(args) -> int:
    context = IsolatedContext(
        args.file,
        scratch_dir=args.scratch,
        trace_record=args.trace_record,
        trace_roots=args.trace_root,
    )
    status = 1
    try:
        context.start_trace()
        context.load()
        status = context.invoke(args.name)
    except Exception:
        traceback.print_exc()
        status = 1
    finally:
        # Last action in the context, whatever the procedure did
        context.close()
        sys.stdout.flush()
        sys.stderr.flush()

    if not 0 <= status <= 255:
        status = 1
    return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clispec-worker",
        description="Isolated context for one clispec test file.",
    )
    sub = parser.add_subparsers(dest="mode", required=True)

    list_parser = sub.add_parser("list", help="List prefixed procedures")
    list_parser.add_argument("file")
    list_parser.add_argument("--prefix", default="test_")

    run_parser = sub.add_parser("run", help="Run one procedure")
    run_parser.add_argument("file")
    run_parser.add_argument("name")
    run_parser.add_argument("--scratch", default=None)
    run_parser.add_argument("--trace-record", default=None)
    run_parser.add_argument("--trace-root", action="append", default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")
    if args.mode == "list":
        return _list(args)
    return _run(args)


if __name__ == "__main__":
    sys.exit(main())
