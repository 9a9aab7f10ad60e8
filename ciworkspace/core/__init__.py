"""Core modules for the ciworkspace coordinator."""

from ciworkspace.core.config import ConfigError, WorkspaceConfig, load_config
from ciworkspace.core.models import (
    AlertSeverity,
    GitOutcome,
    GitResult,
    RepositoryKind,
    SyncState,
    WorkspaceError,
)
from ciworkspace.core.replace import (
    AtomicDirectoryReplacer,
    PendingDeletionRegistry,
    ReplaceError,
)
from ciworkspace.core.sync import GitSyncOrchestrator, Workspace

__all__ = [
    "AlertSeverity",
    "AtomicDirectoryReplacer",
    "ConfigError",
    "GitOutcome",
    "GitResult",
    "GitSyncOrchestrator",
    "PendingDeletionRegistry",
    "ReplaceError",
    "RepositoryKind",
    "SyncState",
    "Workspace",
    "WorkspaceConfig",
    "WorkspaceError",
    "load_config",
]
