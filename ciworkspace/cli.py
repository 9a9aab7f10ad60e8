"""CLI entry point for ciworkspace.

Commands:
- ciworkspace pull: Reset a checkout and rebase it onto the remote branch
- ciworkspace push: Rebase and push, rolling back on failure
- ciworkspace commit-and-push: Commit all changes and publish them
- ciworkspace commit-subrepo: Record a subrepository's pointer in its parent
- ciworkspace replace: Atomically swap a directory into place
- ciworkspace ensure-env: Create/activate the interpreter sandbox
- ciworkspace alert: Send an operator alert
- ciworkspace prune-tmp: Remove stale temp entries
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from ciworkspace import __version__
from ciworkspace.core.config import ConfigError, WorkspaceConfig, load_config
from ciworkspace.core.git import GitClient
from ciworkspace.core.models import AlertSeverity, WorkspaceError
from ciworkspace.core.replace import AtomicDirectoryReplacer, PendingDeletionRegistry
from ciworkspace.core.secrets import SecretsGateway
from ciworkspace.core.sync import GitSyncOrchestrator
from ciworkspace.core.tempdirs import prune_stale_entries
from ciworkspace.sandbox.provisioner import EnvironmentProvisioner

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)


@dataclass
class CliContext:
    """State shared by all commands of one invocation."""

    config: WorkspaceConfig
    registry: PendingDeletionRegistry

    def orchestrator(self) -> GitSyncOrchestrator:
        return GitSyncOrchestrator(
            git=GitClient(network_timeout=self.config.git_timeout),
            remote=self.config.remote,
            branch=self.config.branch,
        )


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(cli: CliContext | None, error: Exception) -> NoReturn:
    """Report a fatal error and exit non-zero."""
    console.print(f"[red]Error:[/red] {escape(str(error))}")
    if cli is not None and cli.config.alert_on_failure:
        try:
            SecretsGateway(cli.config).alert(AlertSeverity.ERROR, str(error))
        except WorkspaceError as alert_err:
            logger.warning("Could not send failure alert: %s", alert_err)
    sys.exit(1)


def _resolve(cli: CliContext, path: str) -> Path:
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = cli.config.root / candidate
    return candidate


@click.group()
@click.version_option(version=__version__, prog_name="ciworkspace")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="CIWORKSPACE_ROOT",
    help="Workspace root (default: current directory)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log every git command")
@click.pass_context
def main(ctx: click.Context, root: Path | None, verbose: bool) -> None:
    """ciworkspace - CI workspace coordinator.

    Keeps a build checkout level with its remote branch and swaps build
    output into place without half-updated states.
    """
    _configure_logging(verbose)
    try:
        config = load_config(root)
    except ConfigError as e:
        _fail(None, e)

    prune_stale_entries(config.tmp_dir, config.tmp_retention_days)
    registry = ctx.with_resource(PendingDeletionRegistry())
    ctx.obj = CliContext(config=config, registry=registry)


@main.command()
@click.argument("path", default=".")
@click.pass_obj
def pull(cli: CliContext, path: str) -> None:
    """Reset PATH and rebase it onto the remote branch."""
    try:
        workspace = cli.orchestrator().pull(_resolve(cli, path))
    except WorkspaceError as e:
        _fail(cli, e)
    console.print(f"[green]Up to date:[/green] {workspace.toplevel}")


@main.command()
@click.argument("path", default=".")
@click.pass_obj
def push(cli: CliContext, path: str) -> None:
    """Rebase PATH onto the remote branch and push it."""
    try:
        workspace = cli.orchestrator().push(_resolve(cli, path))
    except WorkspaceError as e:
        _fail(cli, e)
    console.print(f"[green]Pushed:[/green] {workspace.toplevel}")


@main.command(
    "commit-and-push",
    context_settings={"ignore_unknown_options": True},
)
@click.argument("path")
@click.argument("extra_commit_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_obj
def commit_and_push(cli: CliContext, path: str, extra_commit_args: tuple[str, ...]) -> None:
    """Commit everything under PATH and push it.

    EXTRA_COMMIT_ARGS are passed on to `git commit`, e.g. -m "Rebuild site".
    """
    try:
        committed = cli.orchestrator().commit_and_push(_resolve(cli, path), extra_commit_args)
    except WorkspaceError as e:
        _fail(cli, e)
    if committed:
        console.print("[green]Committed and pushed[/green]")
    else:
        console.print("[yellow]Nothing to commit;[/yellow] pushed")


@main.command("commit-subrepo")
@click.argument("path")
@click.pass_obj
def commit_subrepo(cli: CliContext, path: str) -> None:
    """Record the subrepository at PATH in its parent and push the parent."""
    try:
        committed = cli.orchestrator().commit_subrepo_state(_resolve(cli, path))
    except WorkspaceError as e:
        _fail(cli, e)
    if committed:
        console.print("[green]Substate committed and pushed[/green]")
    else:
        console.print("[yellow]Subrepo unchanged[/yellow]")


@main.command()
@click.argument("source")
@click.argument("target")
@click.option("--staging", help="Where to park the old tree (default: TARGET.to-delete)")
@click.pass_obj
def replace(cli: CliContext, source: str, target: str, staging: str | None) -> None:
    """Replace directory TARGET with SOURCE in a single rename."""
    replacer = AtomicDirectoryReplacer(cli.registry)
    try:
        replacer.replace(
            _resolve(cli, source),
            _resolve(cli, target),
            _resolve(cli, staging) if staging else None,
        )
    except WorkspaceError as e:
        _fail(cli, e)
    console.print(f"[green]Replaced:[/green] {escape(target)}")


@main.command("ensure-env")
@click.pass_obj
def ensure_env(cli: CliContext) -> None:
    """Create the interpreter sandbox if it does not exist yet.

    Activation only lasts for this process. To use the sandbox from a
    shell or CI step, put the printed bin directory first on PATH.
    """
    provisioner = EnvironmentProvisioner(cli.config.sandbox_root, cli.config.python)
    try:
        activated = provisioner.ensure()
    except WorkspaceError as e:
        _fail(cli, e)
    if activated is None:
        console.print("[yellow]Already inside a sandbox[/yellow]")
    else:
        console.print(f"[green]Sandbox ready:[/green] {activated}")
        console.print(f"Add {provisioner.bin_dir} to PATH to use it", soft_wrap=True)


@main.command()
@click.argument("severity", type=click.Choice([s.value for s in AlertSeverity]))
@click.argument("message")
@click.pass_obj
def alert(cli: CliContext, severity: str, message: str) -> None:
    """Send MESSAGE to the alert room."""
    try:
        SecretsGateway(cli.config).alert(AlertSeverity(severity), message)
    except WorkspaceError as e:
        _fail(None, e)
    console.print("[green]Alert sent[/green]")


@main.command("prune-tmp")
@click.pass_obj
def prune_tmp(cli: CliContext) -> None:
    """Remove temp entries older than the retention window."""
    removed = prune_stale_entries(cli.config.tmp_dir, cli.config.tmp_retention_days)
    console.print(f"Removed {len(removed)} stale entr{'y' if len(removed) == 1 else 'ies'}")


if __name__ == "__main__":
    main()
