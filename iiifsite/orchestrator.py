"""
Build and development orchestration.

- Resolve the mode (build or dev).
- Prepare the UI assets: build them once, or start the asset watcher as a
  tracked background process.
- Load the site library and hand over to its build() or dev().
- Make sure the asset watcher is stopped however the run ends.
"""

import atexit
import os
import signal
import sys

from . import library
from .config import DEBUG_ENV, WATCH_ENV, load_config, ui_paths
from .errors import ProcessError
from .log import log, warn
from .mode import Mode, resolve
from .supervisor import ProcessSupervisor, run_to_completion

SIGNAL_EXIT_CODES = {
    signal.SIGINT: 130,
    signal.SIGTERM: 143,
}


class RunContext:
    """Everything one orchestrated run owns, including the tracked UI watcher."""

    def __init__(self, mode: Mode, config: dict, env: dict):
        self.mode = mode
        self.config = config
        self.env = env
        self.supervisor = ProcessSupervisor()

    @property
    def tracked(self):
        return self.supervisor.tracked

    def cleanup(self) -> None:
        self.supervisor.terminate_tracked()


def ui_sources_present(config: dict) -> bool:
    return ui_paths(config)['client_entry'].exists()


def prepare_ui(ctx: RunContext):
    """
    Build the UI assets (build mode) or start their watcher (dev mode).

    Neither is fatal: the library can still run with previously built
    assets, so failures are reported as warnings. Returns the tracked
    watcher in dev mode, otherwise None.
    """
    if not ui_sources_present(ctx.config):
        log(f"Using prebuilt UI assets (no UI sources in {ui_paths(ctx.config)['root']})")
        return None

    command, *args = ctx.config['assets_command']

    if ctx.mode is Mode.BUILD:
        log("Building UI assets")
        try:
            run_to_completion(command, args, env=ctx.env)
        except ProcessError as e:
            warn(f"UI build skipped: {e}")
            return None
        log("UI assets built")
        return None

    log("Starting UI watcher")
    watcher = ctx.supervisor.start_tracked(command, args, env={**ctx.env, WATCH_ENV: "1"})
    if watcher is None:
        warn("UI watch skipped: the site will use the assets already on disk")
    return watcher


def attach_signal_handlers(ctx: RunContext) -> dict:
    """Stop the tracked watcher and exit with 130/143 on SIGINT/SIGTERM."""
    def handle(signum, frame):
        ctx.cleanup()
        raise SystemExit(SIGNAL_EXIT_CODES[signum])

    previous = {}
    for signum in SIGNAL_EXIT_CODES:
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, handle)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def orchestrate(argv=None, env=None, config: dict = None, debug: bool = False) -> Mode:
    """Run one build or dev session. Returns the mode that ran."""
    argv = list(sys.argv[1:] if argv is None else argv)
    env = dict(os.environ if env is None else env)
    config = config if config is not None else load_config()

    if debug and not env.get(DEBUG_ENV):
        env[DEBUG_ENV] = "1"
        os.environ[DEBUG_ENV] = "1"
        log("Debug logging enabled")

    mode = resolve(argv, env)
    log(f"Mode: {mode.value}")

    ctx = RunContext(mode, config, env)
    previous_handlers = attach_signal_handlers(ctx) if mode is Mode.DEV else {}
    atexit.register(ctx.cleanup)
    try:
        # Assets first: the library may load the built bundles on import
        prepare_ui(ctx)

        api = library.load(config=ctx.config, env=ctx.env)
        operation = api.operation(mode.value)
        if mode is Mode.DEV:
            log("Starting dev server...")
            library.invoke(operation)
        else:
            log("Building site...")
            library.invoke(operation)
            log("Build complete")
    finally:
        ctx.cleanup()
        atexit.unregister(ctx.cleanup)
        restore_signal_handlers(previous_handlers)
    return mode
