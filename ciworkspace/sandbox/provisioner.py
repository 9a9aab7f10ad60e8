"""Provisioning of the workspace's isolated interpreter sandbox.

The sandbox is a venv under the workspace. When a debug build of the
interpreter is installed, two venvs are created side by side:

    venv-release/   built with the standard interpreter
    venv-debug/     built with the debug interpreter
    venv -> venv-release

Retargeting the ``venv`` symlink at ``venv-debug`` switches every later
run to the debug interpreter.

Activation only touches the environment mapping of this process (and hence
its children). Two processes racing to create the same sandbox is not
guarded against.
"""

import logging
import os
import shutil
import subprocess
from collections.abc import MutableMapping
from pathlib import Path

from ciworkspace.core.models import WorkspaceError

logger = logging.getLogger(__name__)

RELEASE_SUFFIX = "-release"
DEBUG_SUFFIX = "-debug"


class SandboxError(WorkspaceError):
    """The interpreter sandbox could not be created or activated."""

    pass


def _bin_dir(root: Path) -> Path:
    return root / ("Scripts" if os.name == "nt" else "bin")


def find_debug_interpreter(interpreter: str) -> str | None:
    """Locate a debug build matching ``interpreter``, if one is installed."""
    name = Path(interpreter).name
    candidates = [f"{name}-dbg", f"{name}d", "python3-dbg", "python3d"]
    for candidate in dict.fromkeys(candidates):
        found = shutil.which(candidate)
        if found:
            return found
    return None


class EnvironmentProvisioner:
    """Create the sandbox once and activate it in this process."""

    CREATE_TIMEOUT = 300

    def __init__(
        self,
        root: Path,
        interpreter: str,
        environ: MutableMapping[str, str] | None = None,
    ):
        self.root = Path(root)
        self.interpreter = interpreter
        self.environ = os.environ if environ is None else environ

    @property
    def release_root(self) -> Path:
        return self.root.with_name(self.root.name + RELEASE_SUFFIX)

    @property
    def debug_root(self) -> Path:
        return self.root.with_name(self.root.name + DEBUG_SUFFIX)

    @property
    def bin_dir(self) -> Path:
        return _bin_dir(self.root)

    def inside_sandbox(self) -> bool:
        return bool(self.environ.get("VIRTUAL_ENV"))

    def ensure(self) -> Path | None:
        """Make sure the sandbox exists and is active.

        Returns:
            The activated sandbox root, or None if a sandbox was already active.

        Raises:
            SandboxError: If creating the sandbox fails.
        """
        if self.inside_sandbox():
            logger.info("Already inside sandbox %s", self.environ["VIRTUAL_ENV"])
            return None

        if self.root.exists() or self.root.is_symlink():
            logger.info("Reusing sandbox %s", self.root)
        else:
            self._create()
        return self.activate()

    def _create(self) -> None:
        self.root.parent.mkdir(parents=True, exist_ok=True)
        debug_interpreter = find_debug_interpreter(self.interpreter)
        if debug_interpreter is None:
            self._create_venv(self.interpreter, self.root)
            return

        self._create_venv(self.interpreter, self.release_root)
        self._create_venv(debug_interpreter, self.debug_root)
        # Relative link so the workspace can be moved
        os.symlink(self.release_root.name, self.root, target_is_directory=True)
        logger.info(
            "Linked %s -> %s (debug sandbox at %s)",
            self.root, self.release_root.name, self.debug_root,
        )

    def _create_venv(self, interpreter: str, destination: Path) -> None:
        logger.info("Creating sandbox %s with %s", destination, interpreter)
        try:
            result = subprocess.run(
                [interpreter, "-m", "venv", str(destination)],
                capture_output=True,
                text=True,
                timeout=self.CREATE_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise SandboxError(f"Interpreter not found: {interpreter}") from e
        except subprocess.TimeoutExpired as e:
            raise SandboxError(
                f"Creating sandbox {destination} timed out after {self.CREATE_TIMEOUT}s"
            ) from e
        if result.returncode != 0:
            raise SandboxError(f"Creating sandbox {destination} failed: {result.stderr.strip()}")

    def activate(self) -> Path:
        """Point this process's environment at the sandbox."""
        bin_dir = self.bin_dir
        if not bin_dir.is_dir():
            raise SandboxError(f"Sandbox {self.root} has no {bin_dir.name}/ directory")

        path = self.environ.get("PATH", "")
        self.environ["PATH"] = os.pathsep.join(p for p in (str(bin_dir), path) if p)
        self.environ["VIRTUAL_ENV"] = str(self.root)
        self.environ.pop("PYTHONHOME", None)
        logger.info("Activated sandbox %s", self.root)
        return self.root
