"""Thin wrapper around the git executable.

Every call runs with an explicit ``cwd`` (the process working directory is
never changed) and returns a GitResult whose outcome classifies the failure
mode. Callers branch on the outcome, not on raw return codes.
"""

import logging
import os
import subprocess
from collections.abc import Sequence
from pathlib import Path

from ciworkspace.core.models import GitOutcome, GitResult, WorkspaceError

logger = logging.getLogger(__name__)

# Markers git prints when a rebase/merge stops on conflicting changes
CONFLICT_MARKERS = (
    "CONFLICT",
    "could not apply",
    "Resolve all conflicts manually",
    "needs merge",
)

# Markers git prints when the remote refuses an update
REJECTED_MARKERS = (
    "[rejected]",
    "[remote rejected]",
    "non-fast-forward",
    "fetch first",
    "failed to push some refs",
)


class GitCommandError(WorkspaceError):
    """A git invocation failed."""

    def __init__(self, message: str, result: GitResult | None = None):
        self.result = result
        if result is not None:
            detail = _truncate_output(result.output, 2000)
            message = f"{message}: git {' '.join(result.args)} exited {result.returncode}"
            if detail:
                message = f"{message}\n{detail}"
        super().__init__(message)


def _truncate_output(output: str, max_length: int) -> str:
    """Truncate output keeping the tail, where git puts the actual error."""
    if len(output) <= max_length:
        return output
    return "..." + output[-(max_length - 3) :]


def classify(returncode: int, stdout: str, stderr: str) -> GitOutcome:
    """Map a finished git process to a GitOutcome."""
    if returncode == 0:
        return GitOutcome.SUCCESS
    combined = f"{stdout}\n{stderr}"
    if any(marker in combined for marker in CONFLICT_MARKERS):
        return GitOutcome.CONFLICT
    if any(marker in combined for marker in REJECTED_MARKERS):
        return GitOutcome.REJECTED
    return GitOutcome.ERROR


class GitClient:
    """Run git subcommands in a given checkout."""

    # Local operations should be quick; network ones use the caller's timeout
    GIT_TIMEOUT = 30

    def __init__(self, network_timeout: int = 600):
        self.network_timeout = network_timeout
        self._env = os.environ.copy()
        # Never block on credential or editor prompts in CI
        self._env["GIT_TERMINAL_PROMPT"] = "0"
        self._env.setdefault("GIT_EDITOR", "true")

    def run(
        self,
        path: Path,
        *args: str,
        timeout: int | None = None,
    ) -> GitResult:
        argv = list(args)
        timeout = self.GIT_TIMEOUT if timeout is None else timeout
        logger.debug("git %s (in %s)", " ".join(argv), path)
        try:
            proc = subprocess.run(
                ["git", *argv],
                cwd=path,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("git %s timed out after %ss", " ".join(argv), timeout)
            return GitResult(
                args=argv,
                returncode=-1,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr) or f"timed out after {timeout}s",
                outcome=GitOutcome.ERROR,
                timed_out=True,
            )
        except FileNotFoundError as e:
            raise GitCommandError(f"git executable not found: {e}") from e

        result = GitResult(
            args=argv,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
            outcome=classify(proc.returncode, proc.stdout, proc.stderr),
        )
        if not result.ok:
            logger.debug("git %s -> %s: %s", " ".join(argv), result.outcome.value, result.stderr)
        return result

    # --- VCS boundary ---------------------------------------------------

    def reset_hard(self, path: Path, ref: str | None = None) -> GitResult:
        args = ["reset", "--hard"]
        if ref:
            args.append(ref)
        return self.run(path, *args)

    def checkout(self, path: Path, branch: str, force: bool = False) -> GitResult:
        args = ["checkout"]
        if force:
            args.append("-f")
        return self.run(path, *args, branch)

    def pull_rebase(self, path: Path, remote: str, branch: str) -> GitResult:
        return self.run(path, "pull", "--rebase", remote, branch, timeout=self.network_timeout)

    def rebase_abort(self, path: Path) -> GitResult:
        return self.run(path, "rebase", "--abort")

    def rebase_in_progress(self, path: Path) -> bool:
        """True if a rebase (merge or apply backend) was left behind."""
        for state_dir in ("rebase-merge", "rebase-apply"):
            result = self.rev_parse(path, "--git-path", state_dir)
            if not result.ok:
                continue
            state_path = Path(result.stdout.strip())
            if not state_path.is_absolute():
                state_path = path / state_path
            if state_path.exists():
                return True
        return False

    def push(self, path: Path, remote: str, branch: str) -> GitResult:
        return self.run(path, "push", remote, branch, timeout=self.network_timeout)

    def submodule_update(self, path: Path) -> GitResult:
        return self.run(
            path, "submodule", "update", "--init", "--recursive", timeout=self.network_timeout
        )

    def add(self, path: Path, *paths: str) -> GitResult:
        return self.run(path, "add", *paths)

    def commit(self, path: Path, args: Sequence[str], dry_run: bool = False) -> GitResult:
        argv = ["commit"]
        if dry_run:
            argv.append("--dry-run")
        return self.run(path, *argv, *args)

    def status_short(self, path: Path) -> GitResult:
        return self.run(path, "status", "--short")

    def rev_parse(self, path: Path, *args: str) -> GitResult:
        return self.run(path, "rev-parse", *args)

    def head(self, path: Path) -> str:
        result = self.rev_parse(path, "HEAD")
        if not result.ok:
            raise GitCommandError(f"Failed to read HEAD in {path}", result)
        return result.stdout.strip()


def _as_text(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
