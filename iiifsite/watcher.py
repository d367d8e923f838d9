"""
Recursive directory watching.

watch_tree() first asks the observer for a native recursive watch on the
root. When that is refused, it falls back to one non-recursive watch per
directory, kept in a WatchRegistry, and re-scans a directory whenever
something happens in it so that subdirectories created later get their own
watch before they can report changes.
"""

import threading
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .log import debug, describe, log

CHANGE_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}

# Raised by observers that cannot watch a tree recursively on this platform,
# or that run out of OS watch handles while trying.
RECURSIVE_UNSUPPORTED = (OSError, RuntimeError, NotImplementedError, ValueError)


def changed_path(event) -> Path:
    """The path a change event is about; the destination for moves."""
    if event.event_type == EVENT_TYPE_MOVED and getattr(event, 'dest_path', None):
        return Path(event.dest_path)
    return Path(event.src_path)


def subdirectories(directory: Path) -> list:
    try:
        return sorted(p for p in Path(directory).iterdir() if p.is_dir() and not p.is_symlink())
    except OSError:
        # Removed between the event and the scan
        return []


class ChangeHandler(FileSystemEventHandler):
    """Forwards qualifying file changes to on_change."""

    def __init__(self, predicate, on_change, directory: Path = None, registry=None):
        self.predicate = predicate
        self.on_change = on_change
        self.directory = directory
        self.registry = registry

    def on_any_event(self, event):
        if event.event_type not in CHANGE_EVENTS:
            return
        if self.registry is not None:
            self.registry.scan(self.directory)
        if event.is_directory:
            return
        path = changed_path(event)
        if self.predicate(path):
            self.on_change(path)


class WatchRegistry:
    """
    Non-recursive watches keyed by directory, at most one per directory.

    The initial scan runs on the caller's thread while the observer may
    already be dispatching rescans, so a directory is reserved under the
    lock and scheduled outside it (observer.schedule takes the observer's
    own lock, which is held during dispatch).
    """

    def __init__(self, observer, handler_factory):
        self.observer = observer
        self.handler_factory = handler_factory
        self.watches = {}
        self._lock = threading.Lock()

    def __contains__(self, directory) -> bool:
        return str(Path(directory)) in self.watches

    def __len__(self) -> int:
        return len(self.watches)

    def register(self, directory) -> bool:
        """Watch directory unless it already is. True when a watch was added."""
        key = str(Path(directory))
        with self._lock:
            if key in self.watches:
                return False
            self.watches[key] = None
        try:
            watch = self.observer.schedule(self.handler_factory(Path(key)), key, recursive=False)
        except OSError as e:
            debug(f"Cannot watch {key}: {describe(e)}", scope="watch")
            with self._lock:
                self.watches.pop(key, None)
            return False
        with self._lock:
            self.watches[key] = watch
        return True

    def register_tree(self, directory) -> int:
        """Depth-first registration of directory and everything below it."""
        added = 0
        stack = [Path(directory)]
        while stack:
            current = stack.pop()
            if not self.register(current):
                continue
            added += 1
            stack.extend(reversed(subdirectories(current)))
        return added

    def scan(self, directory) -> int:
        """Register any immediate subdirectory of directory that is not watched yet."""
        added = 0
        for child in subdirectories(directory):
            if child not in self:
                added += self.register_tree(child)
        if added:
            debug(f"Now watching {added} new director{'y' if added == 1 else 'ies'} under {directory}",
                  scope="watch")
        return added


class TreeWatch:
    """A running watch over a directory tree."""

    def __init__(self, root, predicate, on_change, observer=None):
        self.root = Path(root).resolve()
        self.predicate = predicate
        self.on_change = on_change
        self.observer = observer if observer is not None else Observer()
        self.registry = None
        self.recursive = None

    def start(self) -> "TreeWatch":
        # Started first so that a refused registration raises from schedule()
        self.observer.start()
        handler = ChangeHandler(self.predicate, self.on_change)
        try:
            self.observer.schedule(handler, str(self.root), recursive=True)
            self.recursive = True
        except RECURSIVE_UNSUPPORTED as e:
            debug(f"Recursive watch unavailable ({describe(e)}); watching per directory",
                  scope="watch")
            self.recursive = False
            self.registry = WatchRegistry(self.observer, self._directory_handler)
            self.registry.register_tree(self.root)
        return self

    def _directory_handler(self, directory: Path) -> ChangeHandler:
        return ChangeHandler(self.predicate, self.on_change, directory=directory, registry=self.registry)

    def stop(self) -> None:
        self.observer.stop()
        self.observer.join()


def watch_tree(root, predicate, on_change, observer=None) -> TreeWatch:
    """Watch root and call on_change(path) for every changed file accepted by predicate."""
    watch = TreeWatch(root, predicate, on_change, observer=observer).start()
    mode = "recursive" if watch.recursive else f"{len(watch.registry)} directories"
    log(f"Watching {watch.root} ({mode})", scope="watch")
    return watch
