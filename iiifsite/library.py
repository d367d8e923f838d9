"""
Delegation bridge to the site library.

The orchestrator does not build pages itself. It imports a library module
and calls its build() or dev(). Either may be a plain function or a
coroutine function.
"""

import asyncio
import importlib
import inspect
import os
from dataclasses import dataclass
from typing import Callable, Optional

from .config import DEFAULT_LIBRARY, LIBRARY_ENV
from .errors import ConfigurationError, LibraryShapeError


@dataclass(frozen=True)
class LibraryApi:
    """The operations a site library offers; at least one is present."""
    name: str
    build: Optional[Callable] = None
    dev: Optional[Callable] = None

    def operation(self, mode: str) -> Callable:
        """The callable for a mode, or ConfigurationError if the library lacks it."""
        fn = getattr(self, mode, None) if mode in ("build", "dev") else None
        if fn is None:
            raise ConfigurationError(
                f"{self.name} does not provide {mode}(); it only offers "
                + ", ".join(f"{op}()" for op in self.operations())
            )
        return fn

    def operations(self) -> list:
        return [op for op in ("build", "dev") if getattr(self, op) is not None]


def library_name(name: str = None, config: dict = None, env=None) -> str:
    """Module to load: explicit name, then IIIFSITE_LIBRARY, then config, then the default."""
    env = os.environ if env is None else env
    return name or env.get(LIBRARY_ENV) or (config or {}).get("library") or DEFAULT_LIBRARY


def _capabilities(obj) -> dict:
    found = {}
    for op in ("build", "dev"):
        fn = getattr(obj, op, None)
        if callable(fn):
            found[op] = fn
    return found


def load(name: str = None, config: dict = None, env=None) -> LibraryApi:
    """Import the site library and check that it exposes build() and/or dev()."""
    module_name = library_name(name, config, env)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        hint = " ".join([
            f"Unable to load {module_name}.",
            "Ensure dependencies are installed (pip install -e .)",
            f"or point {LIBRARY_ENV} at an importable module.",
        ])
        raise ConfigurationError(f"{hint}\nCaused by: {e}") from e

    found = _capabilities(module)
    if not found and getattr(module, "default", None) is not None:
        found = _capabilities(module.default)
    if not found:
        raise LibraryShapeError(
            f"Invalid {module_name} export: expected functions build() and/or dev()."
        )
    return LibraryApi(name=module_name, **found)


def invoke(operation: Callable):
    """Call a library operation, running it to completion if it returns an awaitable."""
    result = operation()
    if inspect.isawaitable(result):
        return asyncio.run(_await(result))
    return result


async def _await(awaitable):
    return await awaitable
