"""
Incremental build checks for sitebuild.

Transform tasks skip work whose output is already newer than every input.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable


# =============================================================================
# Staleness
# =============================================================================


def newest_mtime(paths: Iterable[Path]) -> float:
    """Latest modification time among paths; 0.0 when none exist."""
    latest = 0.0
    for path in paths:
        try:
            latest = max(latest, path.stat().st_mtime)
        except FileNotFoundError:
            continue
    return latest


def is_stale(sources: Iterable[Path], dest: Path) -> bool:
    """Check if dest needs rebuilding from sources.

    Returns True if:
    - dest does not exist
    - any source was modified after dest
    """
    if not dest.exists():
        return True
    return newest_mtime(sources) > dest.stat().st_mtime


def unchanged(src: Path, dest: Path) -> bool:
    """Single-file form used by copy-style tasks."""
    return not is_stale([src], dest)
