"""Workspace configuration loading.

Precedence (lowest to highest):
1. Built-in defaults
2. ``<root>/.ciworkspace.yaml``
3. ``CIWORKSPACE_*`` environment variables

Relative paths are resolved against the workspace root.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field

from ciworkspace.core.models import WorkspaceError

CONFIG_FILENAME = ".ciworkspace.yaml"

# Environment variable -> config field
ENV_OVERRIDES = {
    "CIWORKSPACE_TMP_DIR": "tmp_dir",
    "CIWORKSPACE_SANDBOX_ROOT": "sandbox_root",
    "CIWORKSPACE_PYTHON": "python",
    "CIWORKSPACE_SECRETS_DIR": "secrets_dir",
    "CIWORKSPACE_SECRETS_BUNDLE": "secrets_bundle",
    "CIWORKSPACE_BRANCH": "branch",
    "CIWORKSPACE_REMOTE": "remote",
    "CIWORKSPACE_ALERT_ROOM": "alert_room",
    "CIWORKSPACE_ALERT_SENDER": "alert_sender",
}

PATH_FIELDS = ("tmp_dir", "sandbox_root", "secrets_dir", "secrets_bundle")


class ConfigError(WorkspaceError):
    """Configuration is missing or invalid."""

    pass


class WorkspaceConfig(BaseModel):
    """Resolved configuration for one CI workspace."""

    root: Path
    tmp_dir: Path = Path("tmp")
    sandbox_root: Path = Path("venv")
    python: str = Field(default_factory=lambda: sys.executable)

    # Credential bundle
    secrets_dir: Path = Path("~/.ciworkspace/secrets")
    secrets_bundle: Path | None = None
    password_file: str = "password"
    secrets_module: str = "ci_secrets"

    # Git
    branch: str = "master"
    remote: str = "origin"
    git_timeout: int = 600  # network operations (pull/push) can be slow

    # Housekeeping
    tmp_retention_days: int = Field(default=7, ge=0)

    # Alerts
    alert_room: str = "ci"
    alert_sender: str = "ciworkspace"
    alert_on_failure: bool = False

    model_config = {"extra": "forbid"}

    def model_post_init(self, __context: Any) -> None:
        self.root = self.root.expanduser().resolve()
        if self.secrets_bundle is None:
            self.secrets_bundle = Path("secrets") / f"{self.secrets_module}.py.gpg"
        for name in PATH_FIELDS:
            setattr(self, name, self._resolve(getattr(self, name)))

    def _resolve(self, path: Path) -> Path:
        path = path.expanduser()
        if not path.is_absolute():
            path = self.root / path
        return path

    @property
    def password_path(self) -> Path:
        return self.secrets_dir / self.password_file

    @property
    def decrypted_secrets_path(self) -> Path:
        return self.secrets_dir / f"{self.secrets_module}.py"


def _read_config_file(root: Path) -> dict[str, Any]:
    config_path = root / CONFIG_FILENAME
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(data).__name__}")
    return data


def load_config(
    root: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkspaceConfig:
    """Load the workspace configuration.

    Args:
        root: Workspace root. Falls back to CIWORKSPACE_ROOT, then the
            current directory.
        environ: Environment mapping (defaults to os.environ).

    Raises:
        ConfigError: If the root does not exist or the configuration is invalid.
    """
    environ = os.environ if environ is None else environ

    if root is None:
        root = environ.get("CIWORKSPACE_ROOT") or Path.cwd()
    root_path = Path(root).expanduser()
    if not root_path.is_dir():
        raise ConfigError(f"Workspace root does not exist: {root_path}")

    values = _read_config_file(root_path)
    values.pop("root", None)
    for env_name, field_name in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[field_name] = environ[env_name]

    try:
        return WorkspaceConfig(root=root_path, **values)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid workspace configuration: {e}") from e
