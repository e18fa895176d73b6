"""
sitebuild.build - Task graph, transform phases and the orchestrator.
"""

from sitebuild.build.config import BuildContext, BuildMode, SiteConfig, load_config
from sitebuild.build.graph import RunReport, Scheduler, Task, TaskGraph, TaskResult, TaskStatus

__all__ = [
    "BuildContext",
    "BuildMode",
    "SiteConfig",
    "load_config",
    "RunReport",
    "Scheduler",
    "Task",
    "TaskGraph",
    "TaskResult",
    "TaskStatus",
]
