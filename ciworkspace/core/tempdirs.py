"""Startup pruning of stale entries under the workspace temp directory."""

import logging
import shutil
import time
from pathlib import Path

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def prune_stale_entries(tmp_dir: Path, retention_days: int = 7) -> list[Path]:
    """Remove top-level entries of ``tmp_dir`` older than the retention window.

    Best effort: entries that cannot be inspected or removed are skipped.
    Symlinks are unlinked, never followed.

    Returns:
        The entries that were removed.
    """
    if not tmp_dir.is_dir():
        return []

    cutoff = time.time() - retention_days * SECONDS_PER_DAY
    removed: list[Path] = []

    try:
        entries = list(tmp_dir.iterdir())
    except OSError as e:
        logger.debug("Cannot list %s: %s", tmp_dir, e)
        return []

    for entry in entries:
        try:
            mtime = entry.lstat().st_mtime
        except OSError:
            continue  # vanished or unreadable
        if mtime >= cutoff:
            continue

        try:
            if entry.is_symlink() or not entry.is_dir():
                entry.unlink()
            else:
                shutil.rmtree(entry)
        except OSError as e:
            logger.debug("Could not prune %s: %s", entry, e)
            continue
        removed.append(entry)

    if removed:
        logger.info("Pruned %d stale temp entries from %s", len(removed), tmp_dir)
    return removed
