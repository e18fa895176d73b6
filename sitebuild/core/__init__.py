"""
sitebuild.core - Foundation layer for the sitebuild CLI.

Exports logging, file helpers, timing and the error hierarchy.
"""

from sitebuild.core.utils import (
    # Logging
    log,
    Logger,
    # Constants
    CONFIG_FILENAME,
    DEFAULT_SOURCE_DIR,
    DEFAULT_BUILD_DIR,
    # Glob utilities
    glob_base,
    match_path,
    expand_globs,
    # File utilities
    write_atomic,
    copy_atomic,
    format_size,
)
from sitebuild.core.timing import TimingContext, format_duration, timing_summary
from sitebuild.core.errors import (
    SiteBuildError,
    ConfigError,
    TaskGraphError,
    CycleError,
    TransformFailure,
    BuildFailed,
    MissingCredential,
    ConnectionFailure,
    ServerError,
)

__all__ = [
    "log",
    "Logger",
    "CONFIG_FILENAME",
    "DEFAULT_SOURCE_DIR",
    "DEFAULT_BUILD_DIR",
    "glob_base",
    "match_path",
    "expand_globs",
    "write_atomic",
    "copy_atomic",
    "format_size",
    "TimingContext",
    "format_duration",
    "timing_summary",
    "SiteBuildError",
    "ConfigError",
    "TaskGraphError",
    "CycleError",
    "TransformFailure",
    "BuildFailed",
    "MissingCredential",
    "ConnectionFailure",
    "ServerError",
]
