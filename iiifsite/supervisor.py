"""
Child process supervision.

Two kinds of children:
- one-shot: run_to_completion() blocks until the child exits and raises on
  any non-zero status. The caller owns it.
- tracked: ProcessSupervisor.start_tracked() starts a long-running child
  (the UI asset watcher) and keeps it in a single slot so it can be
  terminated from any exit path.
"""

import subprocess

from .errors import ProcessExitError, ProcessSpawnError
from .log import describe, log, warn

TERMINATE_GRACE_SECONDS = 5


def run_to_completion(command: str, args=(), **options) -> None:
    """Run a one-shot child with inherited stdio; raise unless it exits 0."""
    args = [str(a) for a in args]
    options.setdefault('shell', False)
    try:
        result = subprocess.run([command, *args], **options)
    except OSError as e:
        raise ProcessSpawnError(command, args, e) from e
    if result.returncode != 0:
        raise ProcessExitError(command, args, result.returncode)


class TrackedProcess:
    """Handle for a long-running child."""

    def __init__(self, command: str, args, popen: subprocess.Popen):
        self.command = command
        self.args = list(args)
        self.popen = popen

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def alive(self) -> bool:
        return self.popen.poll() is None

    def kill(self, grace: float = TERMINATE_GRACE_SECONDS) -> None:
        """SIGTERM, then SIGKILL if the child outlives the grace period."""
        if not self.alive:
            return
        self.popen.terminate()
        try:
            self.popen.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            self.popen.kill()
            self.popen.wait()

    def __repr__(self) -> str:
        return f"<TrackedProcess {self.command} pid={self.pid} alive={self.alive}>"


class ProcessSupervisor:
    """Owns the single tracked-process slot for one run."""

    def __init__(self):
        self.tracked = None

    run_to_completion = staticmethod(run_to_completion)

    def start_tracked(self, command: str, args=(), **options):
        """
        Start a long-running child and track it.

        Returns the TrackedProcess, or None when the child could not be
        spawned; that is only a warning, the run goes on without it.
        """
        args = [str(a) for a in args]
        if self.tracked is not None and self.tracked.alive:
            warn(f"Replacing tracked process {self.tracked.command} (pid {self.tracked.pid})")
            self.terminate_tracked()

        options.setdefault('shell', False)
        try:
            popen = subprocess.Popen([command, *args], **options)
        except OSError as e:
            warn(f"Subprocess error ({command}): {describe(e)}")
            return None

        self.tracked = TrackedProcess(command, args, popen)
        return self.tracked

    def terminate_tracked(self) -> None:
        """Kill the tracked child if it is still running. Safe to call repeatedly."""
        tracked, self.tracked = self.tracked, None
        if tracked is None or not tracked.alive:
            return
        log(f"Stopping {tracked.command} (pid {tracked.pid})")
        try:
            tracked.kill()
        except Exception as e:
            warn(f"Could not stop {tracked.command}: {describe(e)}")
