"""Decide whether this run is a one-shot build or a dev session."""

from enum import Enum

from .config import LIFECYCLE_ENV, MODE_ENV


class Mode(str, Enum):
    BUILD = "build"
    DEV = "dev"


def resolve(argv=(), env=None, lifecycle_event: str = None) -> Mode:
    """
    Resolve the run mode. Never fails.

    Priority, highest first:
    1. --dev / --build on the command line
    2. IIIFSITE_MODE=dev|build
    3. the npm script that launched us (npm_lifecycle_event)
    4. build, the safer default for CI and direct runs
    """
    env = env or {}

    flags = set(argv or ())
    if "--dev" in flags:
        return Mode.DEV
    if "--build" in flags:
        return Mode.BUILD

    override = env.get(MODE_ENV)
    if override in (Mode.DEV.value, Mode.BUILD.value):
        return Mode(override)

    if lifecycle_event is None:
        lifecycle_event = env.get(LIFECYCLE_ENV)
    if lifecycle_event in (Mode.DEV.value, Mode.BUILD.value):
        return Mode(lifecycle_event)

    return Mode.BUILD
