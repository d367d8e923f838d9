"""Error types raised by the orchestrator and the asset pipeline."""


class IiifsiteError(Exception):
    """Base class for all iiifsite errors."""


class ConfigurationError(IiifsiteError):
    """Missing or invalid setup: library module, executable, config file."""


class LibraryShapeError(ConfigurationError, TypeError):
    """The site library loaded but exposes neither build() nor dev()."""


class ProcessError(IiifsiteError):
    """A supervised child process could not run to a clean finish."""

    def __init__(self, command: str, args=(), message: str = None):
        self.command = command
        self.args_list = list(args)
        super().__init__(message or f"{self.command_line} failed")

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args_list])


class ProcessSpawnError(ProcessError):
    """The executable could not be started at all."""

    def __init__(self, command: str, args=(), cause: BaseException = None):
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(command, args, f"Could not start {command}{detail}")


class ProcessExitError(ProcessError):
    """The child ran but exited with a non-zero status."""

    def __init__(self, command: str, args=(), returncode: int = 1):
        self.returncode = returncode
        line = " ".join([command, *[str(a) for a in args]])
        super().__init__(command, args, f"{line} exited with code {returncode}")


class BundleError(IiifsiteError):
    """One or more bundle targets failed to compile."""

    def __init__(self, message: str, failed=()):
        self.failed = list(failed)
        super().__init__(message)
