"""Exception types raised by sitebuild."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from sitebuild.build.graph import RunReport


class SiteBuildError(Exception):
    """Base class for every error sitebuild raises on purpose."""


class ConfigError(SiteBuildError):
    """site.yaml is unreadable or holds an invalid value."""


class TaskGraphError(SiteBuildError):
    """The task graph is malformed (duplicate or unknown task names)."""


class CycleError(TaskGraphError):
    """A task transitively depends on itself."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("Dependency cycle: " + " -> ".join(cycle))


class TransformFailure(SiteBuildError):
    """A transform tool rejected one of its input files."""

    def __init__(self, path: Optional[Path], message: str):
        self.path = path
        self.message = message
        where = f"{path}: " if path is not None else ""
        super().__init__(f"{where}{message}")


class BuildFailed(SiteBuildError):
    """One or more tasks of a scheduler run failed."""

    def __init__(self, report: "RunReport"):
        self.report = report
        failed = ", ".join(report.failed) or "unknown"
        super().__init__(f"Build failed in task(s): {failed}")


class MissingCredential(SiteBuildError):
    """Deploy was requested without a user or password."""


class ConnectionFailure(SiteBuildError):
    """The remote transfer endpoint could not be reached or refused login."""


class ServerError(SiteBuildError):
    """The dev server could not bind its HTTP or live-reload port."""
