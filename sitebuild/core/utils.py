"""
Shared utilities for the sitebuild CLI.
"""

from __future__ import annotations

import fnmatch
import os
import shutil
import sys
import tempfile
import threading
from pathlib import Path
from typing import Iterable, Optional

# =============================================================================
# Constants
# =============================================================================

CONFIG_FILENAME = "site.yaml"
DEFAULT_SOURCE_DIR = "source"
DEFAULT_BUILD_DIR = "build"

_GLOB_CHARS = set("*?[")


# =============================================================================
# Logging
# =============================================================================


class Logger:
    """Simple colored logger with --no-color support.

    Lines are written under a lock: transform tasks, the watcher and the
    dev server all log from their own threads.
    """

    COLORS = {
        "reset": "\033[0m",
        "red": "\033[91m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "blue": "\033[94m",
        "magenta": "\033[95m",
        "cyan": "\033[96m",
        "bold": "\033[1m",
        "dim": "\033[2m",
    }

    def __init__(self, use_color: Optional[bool] = None):
        if use_color is None:
            self._use_color = sys.stdout.isatty()
        else:
            self._use_color = use_color
        self._lock = threading.Lock()

    def set_color(self, use_color: bool) -> None:
        """Set whether to use color output."""
        self._use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self._use_color:
            return text
        return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"

    def _emit(self, line: str) -> None:
        with self._lock:
            print(line, flush=True)

    def header(self, message: str) -> None:
        """Print a section header."""
        self._emit(f"\n{self._color('===', 'cyan')} {self._color(message, 'bold')} {self._color('===', 'cyan')}")

    def info(self, message: str) -> None:
        """Print an info message."""
        self._emit(f"  {message}")

    def success(self, message: str) -> None:
        """Print a success message."""
        self._emit(f"  {self._color('[OK]', 'green')} {message}")

    def warning(self, message: str) -> None:
        """Print a warning message."""
        self._emit(f"  {self._color('[WARN]', 'yellow')} {message}")

    def error(self, message: str) -> None:
        """Print an error message."""
        self._emit(f"  {self._color('[ERROR]', 'red')} {message}")

    def dim(self, message: str) -> None:
        """Print a dim/secondary message."""
        self._emit(f"  {self._color(message, 'dim')}")


# Global logger instance
log = Logger()


# =============================================================================
# Glob Utilities
# =============================================================================


def glob_base(pattern: str) -> str:
    """Return the literal directory prefix of a glob pattern.

    Examples:
        "source/images/**/*.*" -> "source/images"
        "source/*.html"        -> "source"
        "source/js/main.js"    -> "source/js"
    """
    parts = pattern.replace("\\", "/").split("/")
    literal: list[str] = []
    for part in parts[:-1]:
        if _GLOB_CHARS & set(part):
            break
        literal.append(part)
    return "/".join(literal)


def match_path(rel_path: str, pattern: str) -> bool:
    """Match a relative posix path against a glob that may contain ``**``.

    ``**/`` also matches zero directories, so ``scss/**/*`` matches
    ``scss/main.scss`` as well as ``scss/partials/_vars.scss``.
    """
    rel_path = rel_path.replace("\\", "/")
    if fnmatch.fnmatchcase(rel_path, pattern):
        return True
    if "**/" in pattern:
        return fnmatch.fnmatchcase(rel_path, pattern.replace("**/", ""))
    return False


def expand_globs(root: Path, patterns: Iterable[str]) -> list[Path]:
    """Expand patterns relative to root, in pattern order, without duplicates.

    Files matched by one pattern are sorted so repeated runs see the same order.
    """
    seen: set[Path] = set()
    files: list[Path] = []
    for pattern in patterns:
        for path in sorted(root.glob(pattern)):
            if path.is_file() and path not in seen:
                seen.add(path)
                files.append(path)
    return files


# =============================================================================
# File Utilities
# =============================================================================


def write_atomic(dest: Path, data: bytes | str) -> None:
    """Write a file through a temp file + rename.

    The dev server may be serving ``dest`` while a rebuild replaces it.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        data = data.encode("utf-8")
    fd, tmp = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp, 0o644)  # mkstemp creates 0600
        os.replace(tmp, dest)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def copy_atomic(src: Path, dest: Path) -> None:
    """Copy a file (with metadata) through a temp file + rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
    os.close(fd)
    try:
        shutil.copy2(src, tmp)
        os.replace(tmp, dest)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def format_size(num_bytes: int) -> str:
    """Format a byte count for size reports."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    return f"{num_bytes / 1024:.1f} kB"
