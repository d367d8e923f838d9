"""
Script bundling for the UI package.

Two targets are built from the UI sources:
- client: platform-neutral ESM for browsers (index.mjs)
- server: Node ESM for server-side rendering (server.mjs)

Both keep React, the DOM entry points and the heavy viewer/search libraries
external so the consuming environment supplies a single copy of each. The
server bundle also leaves workspace components (../lib/components/...) out
of the bundle, importing them by package name instead.

The bundling itself is done by the esbuild CLI. Each target gets its own
metafile so we know which source files it depends on; in watch mode an
IncrementalContext watches exactly those directories and rebuilds its own
target when one of them changes.
"""

import json
import os
import re
import shutil
import sys
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from watchdog.events import EVENT_TYPE_CREATED, EVENT_TYPE_MOVED, FileSystemEventHandler
from watchdog.observers import Observer

from .config import ui_paths
from .errors import BundleError, ConfigurationError, ProcessError
from .log import debug, describe, err, log, warn
from .supervisor import run_to_completion
from .watcher import CHANGE_EVENTS, changed_path


# --- Configuration ---

SHARED_EXTERNALS = (
    'react',
    'react-dom',
    'react-dom/client',
    'react-masonry-css',
    'flexsearch',
    'cmdk',
    '@samvera/clover-iiif/*',
)
SERVER_EXTERNALS = SHARED_EXTERNALS + ('react/jsx-runtime',)

COMPONENTS_MARKER = '/lib/components/'
SOURCE_SUFFIXES = {'.js', '.jsx', '.mjs', '.cjs', '.ts', '.tsx'}
SKIP_DIRS = {'node_modules', 'dist', '.git'}

IMPORT_RE = re.compile(r'''(?:\bfrom\s*|\bimport\s*\(?\s*|\brequire\s*\(\s*)(['"])([^'"\n]+)\1''')


@dataclass(frozen=True)
class BundleTarget:
    """One independently compiled bundle."""
    name: str
    entry_point: Path
    outdir: Path
    platform: str = 'neutral'
    externals: tuple = SHARED_EXTERNALS
    format: str = 'esm'
    sourcemap: bool = True
    target: str = 'es2018'
    main_fields: tuple = ()
    conditions: tuple = ()
    out_extension: str = '.mjs'
    externalize_components: bool = False
    package_root: Path = None
    package_name: str = None

    @property
    def output_file(self) -> Path:
        return self.outdir / f"{self.entry_point.stem}{self.out_extension}"

    @property
    def metafile(self) -> Path:
        return self.outdir / f".{self.name}.meta.json"

    @property
    def source_root(self) -> Path:
        return self.entry_point.parent


@dataclass
class BuildResult:
    target: BundleTarget
    inputs: frozenset = frozenset()
    rewritten: dict = field(default_factory=dict)
    seconds: float = 0.0


def client_target(config: dict) -> BundleTarget:
    paths = ui_paths(config)
    return BundleTarget(
        name='client',
        entry_point=paths['client_entry'],
        outdir=paths['dist'],
        platform='neutral',
        externals=SHARED_EXTERNALS,
    )


def server_target(config: dict) -> BundleTarget:
    """SSR bundle: a duplicated React copy would break hooks and context identity."""
    paths = ui_paths(config)
    return BundleTarget(
        name='server',
        entry_point=paths['server_entry'],
        outdir=paths['dist'],
        platform='node',
        externals=SERVER_EXTERNALS,
        main_fields=('module', 'main'),
        conditions=('module',),
        externalize_components=True,
        package_root=paths['package_root'],
        package_name=config.get('package_name'),
    )


def default_targets(config: dict) -> list:
    return [client_target(config), server_target(config)]


# --- Workspace component imports ---

@dataclass(frozen=True)
class ComponentImport:
    """A relative import from a UI module into a workspace components folder."""
    importer: Path
    specifier: str
    resolved: Path
    qualified: str = None


def iter_sources(root: Path):
    """Script sources under root, skipping dependencies and build output."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS and not d.startswith('.'))
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.suffix in SOURCE_SUFFIXES:
                yield path


def resolve_module(base: Path) -> Path:
    """The file an extensionless import resolves to, or base itself."""
    if base.is_file():
        return base
    for suffix in sorted(SOURCE_SUFFIXES):
        candidate = base.with_name(base.name + suffix)
        if candidate.is_file():
            return candidate
    for suffix in sorted(SOURCE_SUFFIXES):
        candidate = base / f"index{suffix}"
        if candidate.is_file():
            return candidate
    return base


def package_import(importer_dir: Path, specifier: str, package_root: Path, package_name: str):
    """Package-qualified form of a relative import, or None if it leaves the package."""
    if not package_root or not package_name:
        return None
    absolute = os.path.normpath(os.path.join(importer_dir, specifier))
    relative = os.path.relpath(absolute, package_root)
    if relative.startswith('..') or os.path.isabs(relative):
        return None
    return f"{package_name}/{Path(relative).as_posix()}"


def find_component_imports(target: BundleTarget) -> list:
    """Every relative import under the target's sources that reaches into a components folder."""
    found = []
    for path in iter_sources(target.source_root):
        try:
            text = path.read_text(encoding='utf-8', errors='replace')
        except OSError as e:
            debug(f"skipping {path}: {describe(e)}", scope="ui")
            continue
        for match in IMPORT_RE.finditer(text):
            specifier = match.group(2)
            if not specifier.startswith('.') or COMPONENTS_MARKER not in specifier:
                continue
            resolved = resolve_module(Path(os.path.normpath(path.parent / specifier)))
            found.append(ComponentImport(
                importer=path.resolve(),
                specifier=specifier,
                resolved=resolved.resolve(),
                qualified=package_import(path.parent, specifier, target.package_root, target.package_name),
            ))
    return found


def component_externals(imports) -> list:
    """
    External patterns for esbuild.

    Both the specifier as written and the file it resolves to are listed,
    so the import stays external whether esbuild matches it before or
    after path resolution.
    """
    externals = {item.specifier for item in imports}
    externals.update(str(item.resolved) for item in imports)
    return sorted(externals)


def component_replacements(imports, metafile: Path = None, cwd: Path = None) -> dict:
    """
    Map each component specifier as it appears in the bundle to its package import.

    The metafile tells us which module each external import came from and
    how esbuild wrote it into the output; without one we fall back to the
    specifiers as written. A None value keeps the original specifier: the
    path leaves the package, or the same string means different files
    depending on the importing module.
    """
    by_origin = {(item.importer, item.specifier): item for item in imports}
    by_file = {}
    for item in imports:
        by_file.setdefault(item.resolved, item)

    pairs = []
    meta = _load_metafile(metafile) if metafile else None
    if meta:
        for name, entry in meta.get('inputs', {}).items():
            importer = (Path(cwd or Path.cwd()) / name).resolve()
            for imported in entry.get('imports', []):
                if not imported.get('external'):
                    continue
                emitted = imported.get('path', '')
                original = imported.get('original', emitted)
                item = by_origin.get((importer, original)) or by_file.get(_as_path(emitted))
                if item is not None:
                    pairs.append((emitted, item.qualified))
    if not pairs:
        pairs = [(item.specifier, item.qualified) for item in imports]

    mapping = {}
    for emitted, qualified in pairs:
        previous = mapping.get(emitted, qualified)
        if previous != qualified:
            warn(f"'{emitted}' resolves to different components; leaving it unchanged", scope="ui")
            qualified = None
        mapping[emitted] = qualified
    return mapping


def rewrite_component_imports(output_file: Path, mapping: dict) -> dict:
    """Swap component specifiers in a built bundle for package imports."""
    replacements = {specifier: qualified for specifier, qualified in mapping.items() if qualified}
    if not replacements or not output_file.exists():
        return {}

    pattern = re.compile(
        r'''(['"])(''' + '|'.join(re.escape(s) for s in sorted(replacements, key=len, reverse=True)) + r''')\1'''
    )
    applied = {}

    def replace(match):
        specifier = match.group(2)
        applied[specifier] = replacements[specifier]
        return f"{match.group(1)}{replacements[specifier]}{match.group(1)}"

    text = output_file.read_text(encoding='utf-8')
    rewritten = pattern.sub(replace, text)
    if rewritten != text:
        output_file.write_text(rewritten, encoding='utf-8')
    return applied


def _as_path(value: str):
    return Path(value).resolve() if value and os.path.isabs(value) else None


def _load_metafile(metafile: Path):
    try:
        with open(metafile, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        debug(f"no usable metafile at {metafile}: {describe(e)}", scope="ui")
        return None


# --- Bundlers ---

def find_esbuild(search_dirs=()) -> str:
    """Locate the esbuild binary: local node_modules/.bin first, then PATH."""
    binary = 'esbuild.cmd' if sys.platform == 'win32' else 'esbuild'
    for directory in [*search_dirs, Path.cwd()]:
        candidate = Path(directory) / 'node_modules' / '.bin' / binary
        if candidate.exists():
            return str(candidate)
    found = shutil.which('esbuild')
    if found:
        return found
    raise ConfigurationError(
        "esbuild is not installed. Install it with:\n"
        "  npm install --save-dev esbuild"
    )


def read_metafile_inputs(metafile: Path, cwd: Path) -> frozenset:
    """Absolute paths of the source files esbuild read for a bundle."""
    meta = _load_metafile(metafile)
    if not meta:
        return frozenset()
    inputs = set()
    for name in meta.get('inputs', {}):
        path = (Path(cwd) / name).resolve()
        if path.is_file():
            inputs.add(path)
    return frozenset(inputs)


class Bundler(ABC):
    """
    Bundling capability used by the asset pipeline.

    build(target) compiles one target and raises BundleError on failure;
    context(target) returns a persistent IncrementalContext for watch mode.
    """

    @abstractmethod
    def build(self, target: BundleTarget) -> BuildResult:
        """Compile one target."""

    def context(self, target: BundleTarget) -> "IncrementalContext":
        return IncrementalContext(self, target)


class EsbuildBundler(Bundler):
    """Runs one esbuild process per target build."""

    def __init__(self, executable: str = None, cwd: Path = None):
        self.cwd = Path(cwd or Path.cwd()).resolve()
        self.executable = executable or find_esbuild([self.cwd])

    def command_args(self, target: BundleTarget, externals) -> list:
        args = [
            str(target.entry_point),
            '--bundle',
            f'--outdir={target.outdir}',
            '--entry-names=[name]',
            f'--platform={target.platform}',
            f'--format={target.format}',
            f'--target={target.target}',
            f'--out-extension:.js={target.out_extension}',
            f'--metafile={target.metafile}',
            '--log-level=info',
        ]
        if target.sourcemap:
            args.append('--sourcemap')
        if target.main_fields:
            args.append(f"--main-fields={','.join(target.main_fields)}")
        if target.conditions:
            args.append(f"--conditions={','.join(target.conditions)}")
        args.extend(f'--external:{name}' for name in externals)
        return args

    def build(self, target: BundleTarget) -> BuildResult:
        started = time.monotonic()
        externals = list(target.externals)
        components = []
        if target.externalize_components:
            components = find_component_imports(target)
            externals.extend(component_externals(components))

        target.outdir.mkdir(parents=True, exist_ok=True)
        try:
            run_to_completion(self.executable, self.command_args(target, externals), cwd=str(self.cwd))
        except ProcessError as e:
            raise BundleError(f"{target.name} build failed: {e}", failed=[target.name]) from e

        rewritten = {}
        if components:
            replacements = component_replacements(components, target.metafile, self.cwd)
            rewritten = rewrite_component_imports(target.output_file, replacements)
        for specifier, qualified in sorted(rewritten.items()):
            debug(f"{specifier} -> {qualified}", scope="ui")

        return BuildResult(
            target=target,
            inputs=read_metafile_inputs(target.metafile, self.cwd),
            rewritten=rewritten,
            seconds=time.monotonic() - started,
        )


# --- One-shot and incremental builds ---

def build_once(targets, bundler: Bundler) -> dict:
    """
    Build every target concurrently.

    A failing target does not stop the others; once all have finished,
    BundleError is raised naming every target that failed.
    """
    targets = list(targets)
    results = {}
    failed = []
    with ThreadPoolExecutor(max_workers=max(len(targets), 1), thread_name_prefix='bundle') as pool:
        futures = {pool.submit(bundler.build, target): target for target in targets}
        for future in as_completed(futures):
            target = futures[future]
            try:
                result = future.result()
            except Exception as e:
                err(f"{target.name} build failed: {describe(e)}", scope="ui")
                failed.append(target.name)
                continue
            results[target.name] = result
            log(f"built {target.name} -> {_display(target.output_file)} ({result.seconds:.2f}s)", scope="ui")

    if failed:
        raise BundleError(f"Bundle build failed for: {', '.join(sorted(failed))}", failed=sorted(failed))
    return results


def start_incremental(targets, bundler: Bundler, results: dict = None) -> list:
    """One watching context per target; each rebuilds only its own bundle."""
    results = results or {}
    contexts = []
    for target in targets:
        context = bundler.context(target)
        context.watch(results.get(target.name))
        contexts.append(context)
    return contexts


class _InputChangeHandler(FileSystemEventHandler):

    def __init__(self, context: "IncrementalContext"):
        self.context = context

    def on_any_event(self, event):
        if event.event_type not in CHANGE_EVENTS or event.is_directory:
            return
        path = changed_path(event)
        if self.context.depends_on(path, created=event.event_type in (EVENT_TYPE_CREATED, EVENT_TYPE_MOVED)):
            debug(f"{event.event_type}: {path}", scope="ui")
            self.context.request_rebuild()


class IncrementalContext:
    """
    Keeps one target rebuilt while its sources change.

    Rebuilds are serialised with a queue of depth one: a change that
    arrives while a build runs marks the context pending and exactly one
    more build follows. A failed rebuild is reported and the context keeps
    watching so the next save can fix it.
    """

    def __init__(self, bundler: Bundler, target: BundleTarget, observer_factory=Observer):
        self.bundler = bundler
        self.target = target
        self.observer_factory = observer_factory
        self.inputs = frozenset()
        self.builds = 0
        self.last_error = None
        self._observer = None
        self._watched = {}
        self._lock = threading.Lock()
        self._running = False
        self._pending = False
        self._disposed = False

    def watch(self, result: BuildResult = None) -> "IncrementalContext":
        self._observer = self.observer_factory()
        self._observer.start()
        self._watch_directory(self.target.source_root)
        if result is not None:
            self._update(result)
        else:
            self.rebuild()
        log(f"watching {self.target.name} for changes...", scope="ui")
        return self

    def depends_on(self, path: Path, created: bool = False) -> bool:
        path = Path(path).resolve()
        if path in self.inputs:
            return True
        # A new file may be about to be imported by a module we already bundle
        return created and path.suffix in SOURCE_SUFFIXES and path.parent in self._watched

    def rebuild(self) -> bool:
        """Build now in this thread; if a build is already running, queue one more."""
        if not self._claim():
            return False
        self._drain()
        return True

    def request_rebuild(self) -> None:
        """Like rebuild(), but runs the build on a background thread."""
        if self._claim():
            threading.Thread(target=self._drain, name=f"rebuild-{self.target.name}", daemon=True).start()

    def dispose(self) -> None:
        with self._lock:
            self._disposed = True
            self._pending = False
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

    def _claim(self) -> bool:
        with self._lock:
            if self._disposed:
                return False
            if self._running:
                self._pending = True
                return False
            self._running = True
            return True

    def _drain(self) -> None:
        while True:
            self._build()
            with self._lock:
                if self._disposed or not self._pending:
                    self._running = False
                    return
                self._pending = False

    def _build(self) -> None:
        try:
            result = self.bundler.build(self.target)
        except Exception as e:
            self.last_error = e
            err(f"{self.target.name} rebuild failed: {describe(e)}", scope="ui")
            return
        finally:
            self.builds += 1
        self.last_error = None
        self._update(result)
        log(f"rebuilt {self.target.name} ({result.seconds:.2f}s)", scope="ui")

    def _update(self, result: BuildResult) -> None:
        self.inputs = frozenset(result.inputs)
        for directory in sorted({p.parent for p in self.inputs if 'node_modules' not in p.parts}):
            self._watch_directory(directory)

    def _watch_directory(self, directory: Path) -> None:
        directory = Path(directory).resolve()
        if directory in self._watched or self._observer is None:
            return
        try:
            self._watched[directory] = self._observer.schedule(
                _InputChangeHandler(self), str(directory), recursive=False
            )
        except OSError as e:
            warn(f"cannot watch {directory}: {describe(e)}", scope="ui")


def _display(path: Path) -> str:
    try:
        return str(Path(path).resolve().relative_to(Path.cwd()))
    except ValueError:
        return str(path)
