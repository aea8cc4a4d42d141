#!/usr/bin/env python3
"""Command Line Interface for Snapkeep"""

import sys
from pathlib import Path
from typing import Any, cast

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .core.backup_engine import BackupEngine
from .core.config_manager import ConfigManager
from .core.encryption import load_or_create_key
from .core.errors import BackupNotFoundError, RestoreError, SnapkeepError
from .core.models import BackupInfo
from .core.restore_engine import RestoreEngine
from .utils.log_setup import setup_logging
from .utils.progress import OperationTask, TaskRegistry
from .utils.secret_provider import PromptSecretProvider, SkipSecretProvider

console = Console()

# Lazy-initialized components, reset at the start of every invocation
_components: dict[str, Any] = {}


def _get_config() -> ConfigManager:
    if "config" not in _components:
        options = _components.get("options", {})
        _components["config"] = ConfigManager(options.get("project_root"), options.get("config_dir"))
    return cast("ConfigManager", _components["config"])


def _get_registry() -> TaskRegistry:
    if "registry" not in _components:
        registry = TaskRegistry()
        registry.on_task_update = _show_stage
        _components["registry"] = registry
    return cast("TaskRegistry", _components["registry"])


def _get_backup_engine() -> BackupEngine:
    if "backup_engine" not in _components:
        _components["backup_engine"] = BackupEngine(_get_config(), registry=_get_registry())
    return cast("BackupEngine", _components["backup_engine"])


def _show_stage(task: OperationTask) -> None:
    if not task.finished:
        console.print(f"[dim]  {task.task_type}: {task.stage.value}...[/dim]")


def _format_size(size: int) -> str:
    value = float(size)
    if value < 1024:
        return f"{size} B"
    for unit in ("KB", "MB"):
        value /= 1024
        if value < 1024:
            return f"{value:.1f} {unit}"
    value /= 1024
    return f"{value:.1f} GB"


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]⚠[/yellow] {escape(warning)}")


def _fail(error: SnapkeepError) -> None:
    stage = f" during {error.stage}" if error.stage else ""
    console.print(f"[red]✗[/red] Failed{stage}: {escape(str(error))}")
    if isinstance(error, BackupNotFoundError):
        if error.available:
            console.print("Available backups:")
            for backup_id in error.available:
                console.print(f"  - {backup_id}")
        else:
            console.print("[dim]No backups available.[/dim]")
    if isinstance(error, RestoreError):
        if error.files_written:
            console.print("[yellow]Some files in the target may already have been overwritten.[/yellow]")
        else:
            console.print("[dim]No files in the target were modified.[/dim]")
    sys.exit(1)


def _backups_table(backups: list[BackupInfo], numbered: bool = False) -> Table:
    table = Table(title="Backups", show_header=True, header_style="bold magenta")
    if numbered:
        table.add_column("#", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="white")
    table.add_column("Size", justify="right")
    table.add_column("Created", style="green")

    for index, backup in enumerate(backups, 1):
        row = [backup.id, backup.type, _format_size(backup.size), backup.created.strftime("%Y-%m-%d %H:%M:%S UTC")]
        table.add_row(*([str(index)] if numbered else []), *row)
    return table


def _print_retention_report(report: dict[str, Any]) -> None:
    if not report["to_delete"]:
        console.print(f"[dim]Retention: {report['total_backups']}/{report['max_backups']} backups, nothing to prune[/dim]")
        return

    if report["dry_run"]:
        console.print(f"[yellow]Would delete {len(report['to_delete'])} backup(s):[/yellow]")
        for name in report["to_delete"]:
            console.print(f"  - {name}")
        console.print(f"[dim]Space to recover: {_format_size(report['space_to_recover'])}[/dim]")
        return

    for name in report["deleted"]:
        console.print(f"[green]✓[/green] Pruned {name}")
    for error in report["errors"]:
        console.print(f"[yellow]⚠[/yellow] Could not prune {error}")


@click.group()
@click.option(
    "--project-root",
    type=click.Path(file_okay=False, path_type=Path),
    help="Project directory to back up or restore into (default: current directory)",
)
@click.option("--config-dir", type=click.Path(file_okay=False, path_type=Path), help="Settings and key directory")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging on the console")
def cli(project_root, config_dir, verbose):
    """Snapkeep - project backup and restore"""
    _components.clear()
    _components["options"] = {"project_root": project_root, "config_dir": config_dir}

    try:
        config = _get_config()
    except SnapkeepError as e:
        setup_logging(None, verbose=verbose)
        _fail(e)
    setup_logging(config.get_log_file(), verbose=verbose)


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing settings file")
def init(force):
    """Write the default settings file and create the encryption key"""
    config = _get_config()
    if config.write_default_settings(force=force):
        console.print(f"[green]✓[/green] Wrote {config.settings_file}")
    else:
        console.print(f"[yellow]Settings already exist at {config.settings_file} (use --force to overwrite)[/yellow]")

    try:
        load_or_create_key(config.key_file)
    except (OSError, SnapkeepError) as e:
        console.print(f"[red]✗[/red] Could not prepare encryption key: {escape(str(e))}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Encryption key: {config.key_file}")


@cli.command()
@click.option("--quick", is_flag=True, help="Back up only the quick include set, uncompressed")
@click.option("--no-prune", is_flag=True, help="Skip retention after the backup")
@click.option("--keep-staging", is_flag=True, help="Keep the staging directory if the backup fails")
def create(quick, no_prune, keep_staging):
    """Create a backup of the project"""
    config = _get_config()
    console.print(f"[bold cyan]Backing up '{config.project_name}'{' (quick)' if quick else ''}...[/bold cyan]")

    try:
        engine = _get_backup_engine()
        result = engine.create_backup(quick=quick, keep_staging_on_failure=keep_staging or None)
    except SnapkeepError as e:
        _fail(e)

    _print_warnings(result.warnings)
    console.print(f"[green]✓[/green] Backup created: {result.backup_id}")
    console.print(f"  Location: {result.path}")
    console.print(
        f"  Files: {result.regular.count} regular, {result.encrypted.count} encrypted, "
        f"{result.redacted.count} redacted"
    )

    if not no_prune:
        _print_retention_report(engine.cleanup_old_backups())


@cli.command("list")
def list_backups():
    """List available backups, newest first"""
    try:
        backups = _get_backup_engine().list_backups()
    except SnapkeepError as e:
        _fail(e)

    if not backups:
        console.print("[yellow]No backups found[/yellow]")
        return
    console.print(_backups_table(backups))


@cli.command()
@click.option("--dry-run", is_flag=True, help="Preview which backups would be deleted")
def prune(dry_run):
    """Delete backups beyond storage.local.max_backups"""
    try:
        report = _get_backup_engine().cleanup_old_backups(dry_run=dry_run)
    except SnapkeepError as e:
        _fail(e)
    _print_retention_report(report)


def _select_backup(engine: RestoreEngine) -> str:
    """Show a numbered list of backups and ask which one to restore"""
    backups = engine.list_backups()
    if not backups:
        console.print("[red]✗[/red] No backups found")
        sys.exit(1)

    console.print(_backups_table(backups, numbered=True))
    choice = click.prompt("Select a backup to restore", type=click.IntRange(1, len(backups)), default=1)
    return backups[choice - 1].id


@cli.command()
@click.argument("backup_id", required=False)
@click.option("--target", type=click.Path(file_okay=False, path_type=Path), help="Restore into this directory")
@click.option("--decrypt-secrets", is_flag=True, help="Also write decrypted copies of encrypted files")
@click.option("--no-input", is_flag=True, help="Never prompt (requires BACKUP_ID; secrets are skipped)")
@click.option("--skip-hooks", is_flag=True, help="Do not run dependency install or schema setup")
def restore(backup_id, target, decrypt_secrets, no_input, skip_hooks):
    """Restore a backup into the project (or --target)"""
    config = _get_config()
    if not backup_id and no_input:
        console.print("[red]✗[/red] BACKUP_ID is required with --no-input")
        sys.exit(1)

    try:
        engine = RestoreEngine(
            config,
            registry=_get_registry(),
            secret_provider=SkipSecretProvider() if no_input else PromptSecretProvider(),
        )
        if not backup_id:
            backup_id = _select_backup(engine)
    except SnapkeepError as e:
        _fail(e)

    console.print(f"[bold cyan]Restoring {backup_id}...[/bold cyan]")
    try:
        result = engine.restore(backup_id, target=target, decrypt_secrets=decrypt_secrets, run_hooks=not skip_hooks)
    except SnapkeepError as e:
        _fail(e)

    _print_warnings(result.all_warnings)
    console.print(f"[green]✓[/green] Restored {result.files.count} files into {result.target}")
    if decrypt_secrets:
        console.print(f"  Decrypted: {result.decrypted.count} files")
    for key in result.configured_keys:
        console.print(f"  Configured {key}")


if __name__ == "__main__":
    cli()
