#!/usr/bin/env python3
"""Count words in text from arguments, stdin, or a URL fetched with curl."""

import argparse
import subprocess
import sys


def count_words(text):
    return len(text.split())


def fetch(url):
    result = subprocess.run(
        ["curl", "-s", url], capture_output=True, text=True,
    )
    if result.returncode != 0:
        raise RuntimeError(f"curl failed with exit code {result.returncode}")
    return result.stdout


def main(argv=None):
    parser = argparse.ArgumentParser(prog="wordcount")
    parser.add_argument("words", nargs="*")
    parser.add_argument("--url", default=None)
    args = parser.parse_args(argv)

    if args.url:
        try:
            text = fetch(args.url)
        except RuntimeError as e:
            print(f"wordcount: {e}", file=sys.stderr)
            return 1
    elif args.words:
        text = " ".join(args.words)
    else:
        text = sys.stdin.read()

    print(count_words(text))
    return 0


if __name__ == "__main__":
    sys.exit(main())
