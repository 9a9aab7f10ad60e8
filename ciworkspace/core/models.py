"""Data models shared across the ciworkspace core.

Uses Pydantic for result types and str-valued Enums for states so they
serialize cleanly into logs and CLI output.
"""

import logging
from enum import Enum

from pydantic import BaseModel


class WorkspaceError(Exception):
    """Base class for every fatal error raised by ciworkspace."""

    pass


class RepositoryKind(str, Enum):
    """Whether a checkout is a top-level repository or a nested subrepository."""

    ROOT = "root"
    SUBREPOSITORY = "subrepository"


class GitOutcome(str, Enum):
    """Classified outcome of a single git invocation."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    ERROR = "error"


class SyncState(str, Enum):
    """States of a single pull -> work -> commit_and_push cycle."""

    CLEAN = "clean"
    PULLED = "pulled"
    FAILED = "failed"
    WORKING = "working"
    COMMITTED = "committed"
    UNCOMMITTED = "uncommitted"
    PUSHED = "pushed"
    SUBSTATE_PROPAGATED = "substate_propagated"


class AlertSeverity(str, Enum):
    """Operator alert severity."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def log_level(self) -> int:
        return {
            AlertSeverity.INFO: logging.INFO,
            AlertSeverity.WARNING: logging.WARNING,
            AlertSeverity.ERROR: logging.ERROR,
            AlertSeverity.CRITICAL: logging.CRITICAL,
        }[self]

    @property
    def color(self) -> str:
        """Chat room color used for the message."""
        return {
            AlertSeverity.INFO: "green",
            AlertSeverity.WARNING: "yellow",
            AlertSeverity.ERROR: "red",
            AlertSeverity.CRITICAL: "purple",
        }[self]


class GitResult(BaseModel):
    """Result of a git invocation."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    outcome: GitOutcome
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == GitOutcome.SUCCESS

    @property
    def output(self) -> str:
        """Combined stdout and stderr; git splits messages across both."""
        return f"{self.stdout}\n{self.stderr}".strip()
