"""
Watch mode for sitebuild.

Monitors source changes, re-runs the task bound to the changed file set and
signals connected browsers to reload once the rerun succeeded.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from sitebuild.build.config import TRANSFORM_TASKS, SiteConfig
from sitebuild.build.graph import Scheduler, TaskStatus
from sitebuild.core.utils import log, match_path


# =============================================================================
# Bindings & Change Classification
# =============================================================================


@dataclass(frozen=True)
class WatchBinding:
    """A watch glob and the task it re-runs."""

    pattern: str
    task: str


def bindings_for(config: SiteConfig) -> list[WatchBinding]:
    """One binding per watch glob of every transform file set."""
    bindings: list[WatchBinding] = []
    for name in TRANSFORM_TASKS:
        fileset = config.filesets.get(name)
        if fileset is None:
            continue
        for pattern in fileset.watch_patterns:
            bindings.append(WatchBinding(pattern=pattern, task=name))
    return bindings


class ChangeClassifier:
    """Maps a changed path to the tasks whose watch globs it matches."""

    def __init__(self, project_root: Path, bindings: list[WatchBinding], output_dir: Path):
        self.project_root = project_root.resolve()
        self.bindings = bindings
        self.output_dir = output_dir.resolve()

    def classify(self, path: Path) -> list[str]:
        """Return bound task names in binding order; empty if ignored."""
        path = path.resolve() if path.is_absolute() else (self.project_root / path).resolve()

        # Our own writes must never feed back into the watcher
        if path == self.output_dir or self.output_dir in path.parents:
            return []
        try:
            rel = path.relative_to(self.project_root)
        except ValueError:
            return []

        # Hidden files, editor swap files and atomic-write temp files
        if any(part.startswith(".") for part in rel.parts):
            return []
        if rel.name.endswith("~") or rel.suffix in (".swp", ".tmp"):
            return []

        rel_str = rel.as_posix()
        tasks: list[str] = []
        for binding in self.bindings:
            if binding.task not in tasks and match_path(rel_str, binding.pattern):
                tasks.append(binding.task)
        return tasks


# =============================================================================
# Debouncer
# =============================================================================


class Debouncer:
    """Batches rapid file change events per task.

    Events for a task restart that task's timer; after `delay` seconds of
    quiet the callback fires once with every path collected meanwhile.
    """

    def __init__(self, delay: float, callback: Callable[[str, list[Path]], None]):
        self.delay = delay
        self.callback = callback
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._pending_paths: dict[str, list[Path]] = {}

    def trigger(self, task: str, path: Path) -> None:
        """Register a change event. Resets the debounce timer for the task."""
        with self._lock:
            paths = self._pending_paths.setdefault(task, [])
            if path not in paths:
                paths.append(path)

            timer = self._timers.get(task)
            if timer is not None:
                timer.cancel()

            timer = threading.Timer(self.delay, self._fire, args=(task,))
            timer.daemon = True
            self._timers[task] = timer
            timer.start()

    def _fire(self, task: str) -> None:
        """Called after the debounce period."""
        with self._lock:
            paths = self._pending_paths.pop(task, [])
            self._timers.pop(task, None)

        if paths:
            self.callback(task, paths)

    def cancel(self) -> None:
        """Cancel every pending debounce timer."""
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._pending_paths.clear()


# =============================================================================
# Rebuilder
# =============================================================================


class Rebuilder:
    """Re-runs a bound task and sends the reload signal on success."""

    def __init__(self, scheduler: Scheduler, reload: Callable[[str], None]):
        self.scheduler = scheduler
        self.reload = reload
        self._regen_count = 0
        self._lock = threading.Lock()

    @property
    def regen_count(self) -> int:
        return self._regen_count

    def execute(self, task: str, paths: list[Path]) -> bool:
        """Run the task body; True when it succeeded and a reload was sent."""
        with self._lock:
            self._regen_count += 1
            count = self._regen_count

        changed = ", ".join(p.name for p in paths[:3]) + (" ..." if len(paths) > 3 else "")
        log.info(f"[{count}] {changed} changed -> {task}")

        result = self.scheduler.rerun(task)
        if result.status is not TaskStatus.OK:
            log.error(f"[{count}] {task} failed: {result.error}")
            log.dim("Waiting for the next change...")
            return False

        log.success(f"[{count}] {task} completed in {result.duration:.1f}s")
        try:
            self.reload(task)
        except Exception as e:
            log.warning(f"[{count}] reload signal failed: {e}")
            return False
        return True


# =============================================================================
# File System Event Handler
# =============================================================================


class SiteEventHandler(FileSystemEventHandler):
    """Handles file system events and routes them to the debouncer."""

    def __init__(self, classifier: ChangeClassifier, debouncer: Debouncer):
        super().__init__()
        self.classifier = classifier
        self.debouncer = debouncer

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        # Editors that save via rename report the real file as the destination
        self._handle(event.dest_path)

    def _handle(self, raw_path) -> None:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode()
        path = Path(raw_path)
        for task in self.classifier.classify(path):
            log.dim(f"Change detected: {path.name} -> {task}")
            self.debouncer.trigger(task, path)


# =============================================================================
# Watcher
# =============================================================================


class WatchState(Enum):
    IDLE = auto()
    WATCHING = auto()


class Watcher:
    """Idle until started once after the initial build; then watches until exit."""

    def __init__(
        self,
        config: SiteConfig,
        scheduler: Scheduler,
        reload: Callable[[str], None],
        debounce: Optional[float] = None,
    ):
        self.config = config
        self.bindings = bindings_for(config)
        self.rebuilder = Rebuilder(scheduler, reload)
        self.debouncer = Debouncer(
            config.debounce_seconds if debounce is None else debounce,
            self.rebuilder.execute,
        )
        self.classifier = ChangeClassifier(config.project_root, self.bindings, config.output_path)
        self.handler = SiteEventHandler(self.classifier, self.debouncer)
        self._observer: Optional[Observer] = None
        self._state = WatchState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> WatchState:
        return self._state

    def start(self) -> None:
        """Register the watchers. Calling it again is a no-op."""
        with self._lock:
            if self._state is WatchState.WATCHING:
                return

            observer = Observer()
            observer.schedule(self.handler, str(self.config.project_root), recursive=True)
            observer.start()
            self._observer = observer
            self._state = WatchState.WATCHING

        for binding in self.bindings:
            log.info(f"  Watching: {binding.pattern} -> {binding.task}")

    def stop(self) -> None:
        """Tear the watchers down on process shutdown."""
        with self._lock:
            self.debouncer.cancel()
            if self._observer is not None:
                self._observer.stop()
                self._observer.join(timeout=5)
                self._observer = None
            self._state = WatchState.IDLE


def wait_forever(poll: float = 1.0) -> None:
    """Block the main thread until Ctrl+C."""
    while True:
        time.sleep(poll)
