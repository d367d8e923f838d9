"""
Build the UI assets: client bundle, server bundle and stylesheet.

Usage:
    python -m iiifsite.assets                   # build once
    python -m iiifsite.assets --watch           # build, then rebuild on change
    IIIFSITE_WATCH=1 python -m iiifsite.assets  # same as --watch

The orchestrator runs this as a child process: to completion for a build,
and as its tracked long-running process during a dev session.
"""

import argparse
import signal
import sys
import time
from pathlib import Path

from .bundler import EsbuildBundler, build_once, default_targets, start_incremental
from .config import load_config, ui_paths, watch_enabled
from .errors import BundleError, ConfigurationError
from .log import err, log
from .styles import compile_once, is_style_source
from .watcher import watch_tree


def build_assets(config: dict, bundler=None) -> dict:
    """Build both bundles, then the stylesheet. Raises BundleError if a bundle fails."""
    paths = ui_paths(config)
    bundler = bundler or EsbuildBundler(cwd=Path.cwd())
    results = build_once(default_targets(config), bundler)
    if paths['styles_source'].exists():
        compile_once(paths['styles_source'], paths['styles_output'])
    return results


class AssetWatchSession:
    """Incremental bundle contexts plus the stylesheet watcher for one dev session."""

    def __init__(self, contexts, style_watch=None):
        self.contexts = contexts
        self.style_watch = style_watch

    def stop(self) -> None:
        for context in self.contexts:
            context.dispose()
        if self.style_watch is not None:
            self.style_watch.stop()


def watch_assets(config: dict, bundler, results: dict = None, observer=None) -> AssetWatchSession:
    """Keep the bundles and the stylesheet rebuilt as their sources change."""
    paths = ui_paths(config)
    contexts = start_incremental(default_targets(config), bundler, results)

    style_watch = None
    if paths['styles_source'].exists():
        def recompile(changed: Path) -> None:
            log(f"changed: {changed.name}", scope="ui")
            compile_once(paths['styles_source'], paths['styles_output'])

        style_watch = watch_tree(paths['styles_dir'], is_style_source, recompile, observer=observer)

    return AssetWatchSession(contexts, style_watch)


def _terminate(signum, frame):
    raise SystemExit(128 + signum)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Build the UI bundles and stylesheet")
    parser.add_argument('--watch', '-w', action='store_true', help='Keep rebuilding on change')
    parser.add_argument('--config', '-c', default=None, help='Path to iiifsite.json')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        bundler = EsbuildBundler(cwd=Path.cwd())
        results = build_assets(config, bundler)
    except ConfigurationError as e:
        err(str(e), scope="ui")
        return 1
    except BundleError as e:
        err(str(e), scope="ui")
        return 1

    if not (args.watch or watch_enabled()):
        return 0

    # Stop observers cleanly when the orchestrator terminates us
    signal.signal(signal.SIGTERM, _terminate)
    session = watch_assets(config, bundler, results)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        return 130
    finally:
        session.stop()


if __name__ == "__main__":
    sys.exit(main())
