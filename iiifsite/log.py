"""Console logging helpers.

Everything goes through print() with a short prefix so output from the
orchestrator, the asset process and esbuild stays readable when interleaved.
"""

import os
import sys

PREFIX = "[iiifsite]"


def log(msg: str, scope: str = None) -> None:
    print(f"{_prefix(scope)} {msg}", flush=True)


def warn(msg: str, scope: str = None) -> None:
    print(f"{_prefix(scope)}[warn] {msg}", file=sys.stderr, flush=True)


def err(msg: str, scope: str = None) -> None:
    print(f"{_prefix(scope)}[error] {msg}", file=sys.stderr, flush=True)


def debug(msg: str, scope: str = None) -> None:
    """Only printed when IIIFSITE_DEBUG is set."""
    if os.environ.get("IIIFSITE_DEBUG"):
        print(f"{_prefix(scope)}[debug] {msg}", flush=True)


def describe(error: BaseException) -> str:
    """Short one-line message for an exception, for warnings."""
    return str(error) or error.__class__.__name__


def _prefix(scope: str = None) -> str:
    return f"[{scope}]" if scope else PREFIX
