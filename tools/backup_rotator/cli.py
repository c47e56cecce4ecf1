"""CLI for the Backup Rotator."""

import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.panel import Panel

from shared.cli import console, create_table, error, handle_errors, info, print_table
from shared.logger import setup_logger

from .config import BackupSettings, load_settings
from .errors import EXIT_OK, ConfigError
from .manifest import ArchiveInfo
from .orchestrator import BackupOrchestrator
from .space import format_bytes

LOGGER_NAME = "tools.backup_rotator"

config_option = click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="KEY=VALUE config file (defaults to $BACKUP_CONFIG, then ./backup.config)",
)
verbose_option = click.option("--verbose", "-v", is_flag=True, help="Verbose output")


def _load(config_file: Optional[Path]) -> BackupSettings:
    try:
        return load_settings(config_file)
    except ConfigError as e:
        error(f"Invalid configuration: {e}")
        sys.exit(1)


def _setup_logging(settings: BackupSettings, verbose: bool, to_file: bool) -> None:
    log_level = "DEBUG" if verbose else "INFO"
    setup_logger(LOGGER_NAME, level=log_level, log_file=settings.log_file if to_file else None)
    if to_file:
        info(f"Log file: {settings.log_file}")


def display_backups(backups: List[ArchiveInfo], destination: Path) -> None:
    """Display backups in a table."""
    if not backups:
        console.print(
            Panel(
                f"[yellow]No backups found in {destination}[/yellow]",
                title="[yellow]No Backups[/yellow]",
                border_style="yellow",
            )
        )
        return

    table = create_table(title=f"Backups in {destination}")
    table.add_column("Archive", style="cyan")
    table.add_column("Size", style="green", justify="right")
    table.add_column("Modified", style="yellow")

    for backup in backups:
        table.add_row(
            backup.name,
            format_bytes(backup.size),
            backup.modified.strftime("%Y-%m-%d %H:%M"),
        )

    print_table(table)
    info(f"Total backups: {len(backups)}")


@click.group()
def main() -> None:
    """Backup Rotator - Compressed backups with checksums and daily/weekly/monthly rotation."""
    pass


@main.command()
@click.argument("source", type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be created and deleted without touching the destination",
)
@config_option
@verbose_option
@handle_errors
def run(source: Path, dry_run: bool, config_file: Optional[Path], verbose: bool) -> None:
    """Back up SOURCE, verify the archive and apply the retention policy.

    Exit status is 0 on success, 2 when SOURCE is missing or unreadable or the
    destination lacks space, and 1 for any other failure.

    Examples:

        \b
        # Back up a project with settings from ./backup.config
        backup-rotate run ~/projects/website

        \b
        # See what would happen
        backup-rotate run --dry-run ~/projects/website
    """
    settings = _load(config_file)
    _setup_logging(settings, verbose, to_file=not dry_run)

    orchestrator = BackupOrchestrator(settings)
    code = orchestrator.run(source, dry_run=dry_run)

    if code != EXIT_OK:
        stage = orchestrator.failed_stage.value if orchestrator.failed_stage else "unknown"
        console.print(
            Panel(
                f"[red]Backup failed during {stage}[/red]",
                title="[red]✗ Backup Failed[/red]",
                border_style="red",
            )
        )
    sys.exit(code)


@main.command(name="list")
@config_option
@handle_errors
def list_command(config_file: Optional[Path]) -> None:
    """List backups in the configured destination."""
    settings = _load(config_file)
    setup_logger(LOGGER_NAME, level="INFO")

    orchestrator = BackupOrchestrator(settings)
    sys.exit(orchestrator.list(display=lambda rows: display_backups(rows, settings.destination)))


@main.command()
@click.argument("archive", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--to",
    "target",
    required=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory to restore into",
)
@click.option("--dry-run", is_flag=True, help="Show what would be restored")
@config_option
@verbose_option
@handle_errors
def restore(
    archive: Path, target: Path, dry_run: bool, config_file: Optional[Path], verbose: bool
) -> None:
    """Restore ARCHIVE into the --to directory.

    Examples:

        \b
        backup-rotate restore backups/website-2024-11-03-1430.tar.gz --to /tmp/restore_test
    """
    settings = _load(config_file)
    _setup_logging(settings, verbose, to_file=not dry_run)

    orchestrator = BackupOrchestrator(settings)
    sys.exit(orchestrator.restore(archive, target, dry_run=dry_run))


if __name__ == "__main__":
    main()
