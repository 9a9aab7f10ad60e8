"""Transactional synchronization of a workspace with its remote branch.

Discipline: reset -> force checkout -> reset -> pull --rebase before any work,
pull --rebase -> push when publishing. Every failure on the way out of a
pulled or pushed state rolls the checkout back to a consistent commit and
raises; nothing here retries. Retry policy belongs to whoever calls us.

The pre-push rebase narrows the window in which another agent can push
between our pull and our push. It does not close it: no lock or lease token
is taken on the remote.
"""

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ciworkspace.core.git import GitClient, GitCommandError
from ciworkspace.core.models import GitOutcome, GitResult, RepositoryKind, SyncState

logger = logging.getLogger(__name__)

# Output of `git commit --dry-run` when the index has nothing new
NOTHING_TO_COMMIT = re.compile(r"no changes|nothing to commit|nothing added", re.IGNORECASE)

SUBSTATE_COMMIT_MESSAGE = "Update subrepo state: {path}"
DEFAULT_COMMIT_MESSAGE = "Automatic commit by ciworkspace"

# Options that already give `git commit` a message
_MESSAGE_OPTIONS = ("-m", "--message", "-F", "--file", "-C", "--reuse-message")


class SyncError(GitCommandError):
    """A synchronization step failed; the checkout has been rolled back."""

    pass


class RebaseConflictError(SyncError):
    """Rebasing onto the remote branch hit a conflict."""

    pass


class PushError(SyncError):
    """Publishing to the remote failed after the local branch was rolled back."""

    pass


@dataclass(frozen=True)
class Workspace:
    """A git checkout addressed by path, tagged with its repository kind."""

    path: Path
    toplevel: Path
    kind: RepositoryKind

    @classmethod
    def open(cls, path: Path | str, git: GitClient | None = None) -> "Workspace":
        """Open the checkout containing ``path``.

        The kind is decided once here: a ``.git`` *file* (a gitdir pointer
        into the parent's object store) marks a subrepository.
        """
        git = git or GitClient()
        path = Path(path).resolve()
        if not path.is_dir():
            raise GitCommandError(f"Not a directory: {path}")

        result = git.rev_parse(path, "--show-toplevel")
        if not result.ok:
            raise GitCommandError(f"Not a git checkout: {path}", result)
        toplevel = Path(result.stdout.strip()).resolve()

        dot_git = toplevel / ".git"
        kind = RepositoryKind.SUBREPOSITORY if dot_git.is_file() else RepositoryKind.ROOT
        return cls(path=path, toplevel=toplevel, kind=kind)

    @property
    def is_subrepository(self) -> bool:
        return self.kind == RepositoryKind.SUBREPOSITORY


class GitSyncOrchestrator:
    """Keep workspaces in lock-step with a single remote branch.

    Usage:
        orchestrator = GitSyncOrchestrator(branch="master")
        orchestrator.pull(workspace_root)
        ...  # build, generate files
        orchestrator.commit_and_push(workspace_root, ["-m", "Regenerate docs"])
    """

    def __init__(
        self,
        git: GitClient | None = None,
        remote: str = "origin",
        branch: str = "master",
    ):
        self.git = git or GitClient()
        self.remote = remote
        self.branch = branch
        self.state = SyncState.CLEAN

    def open(self, path: Path | str) -> Workspace:
        return Workspace.open(path, self.git)

    # --- helpers ------------------------------------------------------

    def _require(self, result: GitResult, message: str) -> GitResult:
        if not result.ok:
            self.state = SyncState.FAILED
            raise SyncError(message, result)
        return result

    def _abort_rebase(self, workspace: Workspace) -> None:
        result = self.git.rebase_abort(workspace.toplevel)
        if not result.ok:
            # Nothing to abort is the common case when the pull failed before rebasing
            logger.debug("rebase --abort in %s: %s", workspace.toplevel, result.stderr.strip())

    def _discard_uncommitted(self, top: Path) -> None:
        result = self.git.reset_hard(top)
        if not result.ok:
            logger.warning("Reset after failed commit in %s: %s", top, result.stderr.strip())

    def _require_or_discard(self, result: GitResult, top: Path, message: str) -> GitResult:
        """Like _require, but first drop whatever was staged in ``top``."""
        if not result.ok:
            self._discard_uncommitted(top)
        return self._require(result, message)

    def _roll_back_one_commit(self, workspace: Workspace) -> None:
        logger.warning("Rolling back %s to HEAD~1", workspace.toplevel)
        result = self.git.reset_hard(workspace.toplevel, "HEAD~1")
        if not result.ok:
            self.state = SyncState.FAILED
            raise SyncError(f"Rollback failed in {workspace.toplevel}", result)

    def _rebase_onto_remote(self, workspace: Workspace) -> GitResult:
        return self.git.pull_rebase(workspace.toplevel, self.remote, self.branch)

    # --- operations ---------------------------------------------------

    def pull(self, path: Path | str) -> Workspace:
        """Reset the checkout and bring it level with the remote branch.

        Uncommitted changes are discarded and local commits are replayed on
        top of the remote branch. A conflicting rebase is aborted and
        reported; it is never resolved automatically.

        Raises:
            RebaseConflictError: If rebasing onto the remote conflicts.
            SyncError: If any other git step fails.
        """
        workspace = self.open(path)
        top = workspace.toplevel
        logger.info("Pulling %s/%s into %s", self.remote, self.branch, top)

        # A killed process can leave a rebase behind; start from a clean slate
        if self.git.rebase_in_progress(top):
            logger.warning("Aborting rebase left in progress in %s", top)
            self._abort_rebase(workspace)

        self._require(self.git.reset_hard(top), f"Reset failed in {top}")
        self._require(
            self.git.checkout(top, self.branch, force=True),
            f"Checkout of {self.branch} failed in {top}",
        )
        self._require(self.git.reset_hard(top), f"Reset failed in {top}")

        result = self._rebase_onto_remote(workspace)
        if not result.ok:
            self._abort_rebase(workspace)
            self.state = SyncState.FAILED
            if result.outcome == GitOutcome.CONFLICT:
                raise RebaseConflictError(f"Rebase conflict pulling into {top}", result)
            raise SyncError(f"Pull failed in {top}", result)

        if not workspace.is_subrepository:
            self._require(
                self.git.submodule_update(top),
                f"Subrepository update failed in {top}",
            )

        self.state = SyncState.PULLED
        return workspace

    def push(self, path: Path | str) -> Workspace:
        """Rebase onto the remote branch, then push.

        On any failure the branch is reset to the parent of HEAD, so the
        local branch never stays ahead of a push that did not land.

        Raises:
            PushError: If the rebase or the push fails (after rollback).
        """
        workspace = self.open(path)
        top = workspace.toplevel
        logger.info("Pushing %s to %s/%s", top, self.remote, self.branch)

        result = self._rebase_onto_remote(workspace)
        if not result.ok:
            self._abort_rebase(workspace)
            self._roll_back_one_commit(workspace)
            self.state = SyncState.FAILED
            raise PushError(f"Pre-push rebase failed in {top}", result)

        result = self.git.push(top, self.remote, self.branch)
        if not result.ok:
            self._roll_back_one_commit(workspace)
            self.state = SyncState.FAILED
            reason = "rejected" if result.outcome == GitOutcome.REJECTED else "failed"
            raise PushError(f"Push {reason} for {top}", result)

        self.state = SyncState.PUSHED
        return workspace

    def commit_subrepo_state(self, subrepo_path: Path | str) -> bool:
        """Record a subrepository's current commit in its parent and push it.

        Safe to call after every build: an unchanged pointer is a no-op.

        Returns:
            True if a substate commit was created and pushed.
        """
        subrepo = self.open(subrepo_path)
        parent = self.open(subrepo.toplevel.parent)
        relpath = subrepo.toplevel.relative_to(parent.toplevel).as_posix()
        message = SUBSTATE_COMMIT_MESSAGE.format(path=relpath)

        self._require(
            self.git.checkout(parent.toplevel, self.branch),
            f"Checkout of {self.branch} failed in {parent.toplevel}",
        )
        self._require_or_discard(
            self.git.add(parent.toplevel, relpath),
            parent.toplevel,
            f"Staging {relpath} failed in {parent.toplevel}",
        )

        dry_run = self.git.commit(parent.toplevel, ["-m", message], dry_run=True)
        if NOTHING_TO_COMMIT.search(dry_run.output):
            logger.info("Subrepo %s unchanged; no substate commit", relpath)
            return False
        self._require_or_discard(
            dry_run, parent.toplevel, f"Dry-run commit failed in {parent.toplevel}"
        )

        self._require_or_discard(
            self.git.commit(parent.toplevel, ["-m", message]),
            parent.toplevel,
            f"Substate commit failed in {parent.toplevel}",
        )
        logger.info("Committed substate of %s in %s", relpath, parent.toplevel)
        self.push(parent.toplevel)
        self.state = SyncState.SUBSTATE_PROPAGATED
        return True

    def commit_and_push(
        self,
        path: Path | str,
        extra_commit_args: Sequence[str] = (),
    ) -> bool:
        """Commit everything under ``path`` and publish it.

        ``extra_commit_args`` are appended to ``git commit --all``; they can
        add options but cannot stop new files from being staged. The push
        happens even when there was nothing to commit.

        Returns:
            True if a commit was created.
        """
        workspace = self.open(path)
        top = workspace.toplevel

        status = self._require(self.git.status_short(top), f"git status failed in {top}")
        committed = False
        if not status.stdout.strip():
            logger.info("Nothing to commit in %s", top)
            self.state = SyncState.UNCOMMITTED
        else:
            self._require_or_discard(self.git.add(top, "-A", "."), top, f"Staging failed in {top}")
            args = ["--all", *extra_commit_args]
            if not any(arg.split("=", 1)[0] in _MESSAGE_OPTIONS for arg in extra_commit_args):
                args += ["-m", DEFAULT_COMMIT_MESSAGE]
            self._require_or_discard(self.git.commit(top, args), top, f"Commit failed in {top}")
            committed = True
            self.state = SyncState.COMMITTED

        self.push(top)

        if workspace.is_subrepository:
            self.commit_subrepo_state(top)
        return committed
