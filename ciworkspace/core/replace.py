"""Atomic directory replacement with deferred deletion.

A directory is replaced with two renames on the same filesystem: the old
tree is parked next to the target, the new tree is moved into place. The
parked tree is deleted by a detached child process when the owning
PendingDeletionRegistry is flushed, so deleting a large tree never blocks
the caller.

Only one registry should be active per process: the signal handlers it
installs replace whatever handlers were there before.
"""

from __future__ import annotations

import atexit
import logging
import os
import shutil
import signal
import subprocess
import sys
from pathlib import Path
from types import TracebackType
from typing import Any

from ciworkspace.core.models import WorkspaceError

logger = logging.getLogger(__name__)

STAGING_SUFFIX = ".to-delete"

# Run by the detached child; it outlives us, so keep it self-contained
_DELETE_SCRIPT = (
    "import shutil, sys\n"
    "for p in sys.argv[1:]:\n"
    "    shutil.rmtree(p, ignore_errors=True)\n"
)


class ReplaceError(WorkspaceError):
    """A directory could not be swapped into place."""

    pass


class PendingDeletionRegistry:
    """Paths queued for deletion when the owning context exits.

    Usage:
        with PendingDeletionRegistry() as registry:
            AtomicDirectoryReplacer(registry).replace(new_site, site)
        # old site is being deleted in the background

    The registry is flushed exactly once: on leaving the ``with`` block,
    at interpreter exit, or on SIGTERM/SIGINT, whichever comes first.
    """

    HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)

    def __init__(self) -> None:
        self._paths: list[Path] = []
        self._flushed = False
        self._previous_handlers: dict[int, Any] = {}

    def __enter__(self) -> PendingDeletionRegistry:
        atexit.register(self.flush_all)
        for signum in self.HANDLED_SIGNALS:
            try:
                self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)
            except ValueError:
                # signal.signal only works in the main thread
                logger.debug("Cannot install handler for signal %s outside main thread", signum)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self.flush_all()
        finally:
            atexit.unregister(self.flush_all)
            for signum, handler in self._previous_handlers.items():
                signal.signal(signum, handler)
            self._previous_handlers.clear()

    def _signal_handler(self, signum: int, frame: Any) -> None:
        self.flush_all()
        raise SystemExit(128 + signum)

    @property
    def pending(self) -> list[Path]:
        return list(self._paths)

    @property
    def flushed(self) -> bool:
        return self._flushed

    def register(self, path: Path | str) -> None:
        """Queue ``path`` for deletion. Only call once its swap has completed."""
        if self._flushed:
            raise ReplaceError(f"Deletion registry already flushed; cannot queue {path}")
        path = Path(path)
        if path not in self._paths:
            self._paths.append(path)

    def flush_all(self) -> None:
        """Start background deletion of every queued path. Runs at most once."""
        if self._flushed:
            return
        self._flushed = True
        paths = [str(p) for p in self._paths if p.exists() or p.is_symlink()]
        self._paths.clear()
        if not paths:
            return

        logger.debug("Deferred deletion of %d path(s): %s", len(paths), ", ".join(paths))
        try:
            subprocess.Popen(
                [sys.executable, "-c", _DELETE_SCRIPT, *paths],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            # Best effort: the staging dirs are swept by the next replace()
            logger.debug("Could not start deferred deletion: %s", e)


def _remove_stale(path: Path) -> None:
    """Synchronously remove a leftover staging entry, ignoring failures."""
    if path.is_symlink() or path.is_file():
        try:
            path.unlink()
        except OSError as e:
            logger.debug("Could not remove stale %s: %s", path, e)
    elif path.is_dir():
        shutil.rmtree(path, ignore_errors=True)


class AtomicDirectoryReplacer:
    """Swap directories into place with renames."""

    def __init__(self, registry: PendingDeletionRegistry):
        self.registry = registry

    def replace(
        self,
        source: Path | str,
        target: Path | str,
        staging: Path | str | None = None,
    ) -> Path | None:
        """Replace ``target`` with ``source``.

        After a successful return ``target`` holds exactly what ``source``
        held, and the previous ``target`` sits at the staging path until the
        registry is flushed.

        Args:
            source: Directory holding the new content. Consumed by the call.
            target: Directory to replace. May be absent.
            staging: Where to park the old tree (default ``<target>.to-delete``).
                Must be on the same filesystem as ``target``.

        Returns:
            The staging path if an old tree was parked, else None.

        Raises:
            ReplaceError: If either rename fails. If the second rename fails
                the old tree is moved back to ``target`` before raising.
        """
        source = Path(source)
        target = Path(target)
        staging = Path(staging) if staging else target.with_name(target.name + STAGING_SUFFIX)

        if not source.is_dir():
            raise ReplaceError(f"Replacement source is not a directory: {source}")

        # Left behind by an interrupted run
        if staging.exists() or staging.is_symlink():
            logger.info("Removing stale staging directory %s", staging)
            _remove_stale(staging)

        parked = False
        if target.exists() or target.is_symlink():
            try:
                os.rename(target, staging)
            except OSError as e:
                raise ReplaceError(f"Cannot move {target} aside to {staging}: {e}") from e
            parked = True

        try:
            os.rename(source, target)
        except OSError as e:
            if not parked:
                raise ReplaceError(f"Cannot move {source} to {target}: {e}") from e
            try:
                os.rename(staging, target)
            except OSError as restore_err:
                raise ReplaceError(
                    f"Cannot move {source} to {target}: {e}. "
                    f"Restoring the previous tree also failed ({restore_err}); "
                    f"it is parked at {staging}"
                ) from e
            raise ReplaceError(
                f"Cannot move {source} to {target}: {e}. Previous tree restored."
            ) from e

        logger.info("Replaced %s with %s", target, source)
        if not parked:
            return None
        self.registry.register(staging)
        return staging
