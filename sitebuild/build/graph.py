"""
Task graph and scheduler for sitebuild.

Tasks declare prerequisites by name. The graph is validated for unknown names
and cycles before the first run; the scheduler then runs the closure of a
target on a thread pool, starting each task only after all of its
prerequisites succeeded.
"""

from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from sitebuild.core.errors import BuildFailed, CycleError, TaskGraphError, TransformFailure
from sitebuild.core.timing import TimingContext
from sitebuild.core.utils import log


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Task:
    """A named unit of work with declared prerequisites."""

    name: str
    action: Callable[[], None]
    requires: tuple[str, ...] = ()
    description: str = ""


class TaskStatus(Enum):
    OK = "ok"
    FAILED = "failed"
    BLOCKED = "blocked"  # a prerequisite failed, body never ran


@dataclass
class TaskResult:
    name: str
    status: TaskStatus
    duration: float = 0.0
    error: Optional[BaseException] = None


@dataclass
class RunReport:
    """Outcome of one Scheduler.run call."""

    target: str
    results: dict[str, TaskResult] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)  # completion order

    @property
    def ok(self) -> bool:
        return all(r.status is TaskStatus.OK for r in self.results.values())

    @property
    def failed(self) -> list[str]:
        return [n for n, r in self.results.items() if r.status is TaskStatus.FAILED]

    @property
    def blocked(self) -> list[str]:
        return [n for n, r in self.results.items() if r.status is TaskStatus.BLOCKED]

    @property
    def timings(self) -> dict[str, float]:
        return {
            n: self.results[n].duration
            for n in self.order
            if self.results[n].status is not TaskStatus.BLOCKED
        }


# =============================================================================
# Task Graph
# =============================================================================


class TaskGraph:
    """Directed acyclic graph of tasks keyed by name."""

    def __init__(self, tasks: Iterable[Task] = ()):
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            self.add(task)

    def __contains__(self, name: str) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def names(self) -> list[str]:
        return list(self._tasks)

    def add(self, task: Task) -> None:
        if task.name in self._tasks:
            raise TaskGraphError(f"Task '{task.name}' is already registered")
        self._tasks[task.name] = task

    def get(self, name: str) -> Task:
        try:
            return self._tasks[name]
        except KeyError:
            raise TaskGraphError(f"Unknown task '{name}'") from None

    def validate(self) -> None:
        """Raise if a prerequisite is unknown or the graph has a cycle."""
        for task in self._tasks.values():
            for dep in task.requires:
                if dep not in self._tasks:
                    raise TaskGraphError(
                        f"Task '{task.name}' requires unknown task '{dep}'"
                    )

        # Iterative DFS with white/grey/black marking
        state: dict[str, int] = {}
        for root in self._tasks:
            if state.get(root):
                continue
            stack: list[tuple[str, int]] = [(root, 0)]
            path: list[str] = []
            while stack:
                name, idx = stack.pop()
                if idx == 0:
                    state[name] = 1
                    path.append(name)
                requires = self._tasks[name].requires
                if idx < len(requires):
                    stack.append((name, idx + 1))
                    dep = requires[idx]
                    if state.get(dep) == 1:
                        raise CycleError(path[path.index(dep):] + [dep])
                    if not state.get(dep):
                        stack.append((dep, 0))
                else:
                    state[name] = 2
                    path.pop()

    def closure(self, target: str) -> set[str]:
        """The target plus everything it transitively requires."""
        self.get(target)
        seen: set[str] = set()
        pending = [target]
        while pending:
            name = pending.pop()
            if name in seen:
                continue
            seen.add(name)
            pending.extend(self.get(name).requires)
        return seen

    def topological_order(self, target: Optional[str] = None) -> list[str]:
        """Prerequisites first; ties broken by registration order."""
        self.validate()
        names = self.closure(target) if target is not None else set(self._tasks)
        ordered = [n for n in self._tasks if n in names]
        remaining = {n: {d for d in self._tasks[n].requires if d in names} for n in ordered}
        result: list[str] = []
        while remaining:
            ready = [n for n in ordered if n in remaining and not remaining[n]]
            for name in ready:
                del remaining[name]
                result.append(name)
                for deps in remaining.values():
                    deps.discard(name)
        return result


# =============================================================================
# Scheduler
# =============================================================================


class Scheduler:
    """Runs tasks of a TaskGraph with prerequisite ordering.

    Bodies of tasks with no relative order run concurrently. A task body that
    is already executing is never started a second time: later requests join
    the running execution and receive its outcome.
    """

    def __init__(self, graph: TaskGraph, max_workers: Optional[int] = None):
        graph.validate()
        self.graph = graph
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or max(4, len(graph)),
            thread_name_prefix="sitebuild-task",
        )
        self._lock = threading.Lock()
        self._inflight: dict[str, Future] = {}

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    def _execute(self, name: str) -> float:
        task = self.graph.get(name)
        timings: dict[str, float] = {}
        with TimingContext(timings, name):
            task.action()
        return timings[name]

    def _forget(self, name: str, future: Future) -> None:
        with self._lock:
            if self._inflight.get(name) is future:
                del self._inflight[name]

    def submit(self, name: str) -> Future:
        """Start the body of one task, or join its execution if in flight."""
        self.graph.get(name)
        with self._lock:
            future = self._inflight.get(name)
            if future is not None and not future.done():
                return future
            future = self._executor.submit(self._execute, name)
            self._inflight[name] = future
        future.add_done_callback(lambda f, n=name: self._forget(n, f))
        return future

    def rerun(self, name: str) -> TaskResult:
        """Run one task body without its prerequisites and wait for it."""
        future = self.submit(name)
        try:
            duration = future.result()
        except Exception as e:
            return TaskResult(name, TaskStatus.FAILED, error=e)
        return TaskResult(name, TaskStatus.OK, duration=duration)

    def run(self, target: str) -> RunReport:
        """Run target after its prerequisites; raise BuildFailed on any failure."""
        order = self.graph.topological_order(target)
        report = RunReport(target=target)
        pending = set(order)
        running: dict[Future, str] = {}

        def start_ready() -> None:
            for name in order:
                if name not in pending:
                    continue
                deps = self.graph.get(name).requires
                if any(
                    d in report.results and report.results[d].status is not TaskStatus.OK
                    for d in deps
                ):
                    pending.discard(name)
                    report.results[name] = TaskResult(name, TaskStatus.BLOCKED)
                    report.order.append(name)
                    log.dim(f"{name}: skipped (prerequisite failed)")
                    continue
                if all(d in report.results for d in deps):
                    pending.discard(name)
                    running[self.submit(name)] = name

        start_ready()
        while running:
            done, _ = wait(list(running), return_when=FIRST_COMPLETED)
            for future in done:
                name = running.pop(future)
                try:
                    duration = future.result()
                    report.results[name] = TaskResult(name, TaskStatus.OK, duration=duration)
                except Exception as e:
                    report.results[name] = TaskResult(name, TaskStatus.FAILED, error=e)
                    _log_task_error(name, e)
                report.order.append(name)
            start_ready()

        if not report.ok:
            raise BuildFailed(report)
        return report


def _log_task_error(name: str, error: BaseException) -> None:
    if isinstance(error, TransformFailure):
        log.error(f"{name}: {error}")
    else:
        log.error(f"{name}: {type(error).__name__}: {error}")
