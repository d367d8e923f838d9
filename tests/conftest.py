from __future__ import annotations

import os
import stat
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from iiifsite.bundler import Bundler, BuildResult, IncrementalContext
from iiifsite.errors import BundleError

REPO_ROOT = Path(__file__).resolve().parents[1]


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeObserver:
    """In-memory stand-in for a watchdog Observer; events are delivered with emit()."""

    def __init__(self, recursive: bool = True):
        self.supports_recursive = recursive
        self.scheduled = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        if recursive and not self.supports_recursive:
            raise OSError("recursive watching is not supported")
        entry = (str(Path(path)), recursive, handler)
        self.scheduled.append(entry)
        return entry

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    def paths(self) -> list:
        return [path for path, _, _ in self.scheduled]

    def emit(self, event) -> int:
        """Deliver event to every handler watching its directory; returns the delivery count."""
        parent = Path(event.src_path).parent
        delivered = 0
        for path, recursive, handler in list(self.scheduled):
            watched = Path(path)
            if parent == watched or (recursive and watched in parent.parents):
                handler.dispatch(event)
                delivered += 1
        return delivered


class FakeBundler(Bundler):
    """Writes a placeholder bundle per target; targets named in `failing` raise."""

    def __init__(self, failing=(), delay: float = 0.0, observer_factory=FakeObserver):
        self.failing = set(failing)
        self.delay = delay
        self.observer_factory = observer_factory
        self.calls = []
        self.lock = threading.Lock()
        self.inputs = {}

    def build(self, target):
        with self.lock:
            self.calls.append(target.name)
        if self.delay:
            time.sleep(self.delay)
        if target.name in self.failing:
            raise BundleError(f"{target.name} build failed: forced", failed=[target.name])
        target.outdir.mkdir(parents=True, exist_ok=True)
        target.output_file.write_text(f"// {target.name}\n", encoding="utf-8")
        inputs = self.inputs.get(target.name, frozenset({target.entry_point.resolve()}))
        return BuildResult(target=target, inputs=frozenset(inputs))

    def context(self, target):
        return IncrementalContext(self, target, observer_factory=self.observer_factory)

    def count(self, name: str) -> int:
        with self.lock:
            return self.calls.count(name)


FAKE_ESBUILD = """\
#!{python}
# Minimal esbuild stand-in: honours --outdir, --metafile, --out-extension and --external.
import json
import pathlib
import sys

args = sys.argv[1:]
entry = pathlib.Path(args[0])
opts = {{}}
externals = []
for arg in args[1:]:
    if arg.startswith('--external:'):
        externals.append(arg.split(':', 1)[1])
    elif arg.startswith('--') and '=' in arg and ':' not in arg.split('=', 1)[0]:
        key, value = arg[2:].split('=', 1)
        opts[key] = value

source = entry.read_text()
if 'SYNTAX ERROR' in source:
    print('X [ERROR] Unexpected token', file=sys.stderr)
    sys.exit(1)

outdir = pathlib.Path(opts['outdir'])
outdir.mkdir(parents=True, exist_ok=True)
lines = ['import "%s";' % e for e in externals if '/lib/components/' in e and not e.startswith('/')]
lines.append('// bundled ' + entry.name + ' platform=' + opts.get('platform', ''))
(outdir / (entry.stem + '.mjs')).write_text('\\n'.join(lines) + '\\n')
(outdir / (entry.stem + '.mjs.map')).write_text('{{}}')
meta = {{'inputs': {{str(entry.resolve()): {{'bytes': len(source), 'imports': []}}}}, 'outputs': {{}}}}
pathlib.Path(opts['metafile']).write_text(json.dumps(meta))
"""


def write_fake_esbuild(project: Path) -> Path:
    """Install a fake esbuild into project/node_modules/.bin."""
    bin_dir = project / "node_modules" / ".bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    script = bin_dir / "esbuild"
    script.write_text(FAKE_ESBUILD.format(python=sys.executable), encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def make_ui_project(root: Path, with_styles: bool = True) -> dict:
    """A minimal UI package: two entries, one workspace component, a stylesheet."""
    ui = root / "ui"
    (ui / "src").mkdir(parents=True)
    (root / "lib" / "components").mkdir(parents=True)
    (root / "lib" / "components" / "Card.js").write_text(
        "export const Card = () => null;\n", encoding="utf-8")
    (ui / "src" / "hello.js").write_text(
        "export const hello = () => 'hello';\n", encoding="utf-8")
    (ui / "index.js").write_text(
        "export { hello } from './src/hello.js';\n", encoding="utf-8")
    (ui / "server.js").write_text(textwrap.dedent("""\
        import { Card } from '../lib/components/Card.js';
        export { hello } from './src/hello.js';
        export { Card };
    """), encoding="utf-8")
    if with_styles:
        (ui / "styles").mkdir()
        (ui / "styles" / "_colors.scss").write_text("$accent: #2563eb;\n", encoding="utf-8")
        (ui / "styles" / "index.scss").write_text(
            "@import 'colors';\na { color: $accent; }\n", encoding="utf-8")
    return {"ui_dir": str(ui), "package_name": "@iiifsite/app"}


def subprocess_env(extra: dict = None, paths=()) -> dict:
    env = {k: v for k, v in os.environ.items() if not k.startswith("IIIFSITE_") and k != "npm_lifecycle_event"}
    env["PYTHONPATH"] = os.pathsep.join([str(REPO_ROOT), *[str(p) for p in paths]])
    env.update(extra or {})
    return env


def _iiifsite_vars():
    return [name for name in os.environ if name.startswith("IIIFSITE_") or name == "npm_lifecycle_event"]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _iiifsite_vars():
        monkeypatch.delenv(name, raising=False)
    yield
    # orchestrate(debug=True) writes IIIFSITE_DEBUG straight into os.environ
    for name in _iiifsite_vars():
        os.environ.pop(name, None)
