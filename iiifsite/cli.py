"""
Command line entry point.

Usage:
    iiifsite              # build (or the mode implied by the npm script)
    iiifsite --dev        # dev session: asset watcher + library dev server
    iiifsite --build      # one-shot build
    iiifsite --debug      # extra diagnostics (sets IIIFSITE_DEBUG=1)

Mode can also be set with IIIFSITE_MODE=dev|build.
"""

import argparse
import sys
import traceback

from .config import load_config
from .log import err
from .orchestrator import orchestrate


def format_error(error: BaseException) -> str:
    """Full traceback when there is one, else the message, else repr()."""
    if error.__traceback__ is not None:
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__)).strip()
        if trace:
            return trace
    return str(error) or repr(error)


def main(argv=None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = argparse.ArgumentParser(prog="iiifsite", description="Build or develop an IIIF static site")
    parser.add_argument('--dev', action='store_true', help='Run a development session')
    parser.add_argument('--build', action='store_true', help='Build the site once')
    parser.add_argument('--debug', '--debug-iiif', '--iiif-debug', action='store_true',
                        help='Enable debug logging')
    parser.add_argument('--config', '-c', default=None, help='Path to iiifsite.json')
    args, _ = parser.parse_known_args(argv)

    try:
        config = load_config(args.config)
        orchestrate(argv=argv, config=config, debug=args.debug)
    except KeyboardInterrupt:
        err("Interrupted")
        return 130
    except Exception as e:
        err(format_error(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
