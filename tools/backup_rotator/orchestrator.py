"""Backup run orchestration: lock, validate, build, checksum, verify, rotate, unlock."""

import logging
import signal
import tarfile
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from shared.logger import SUCCESS, get_logger

from .archive import ArchiveBuilder
from .config import BackupSettings
from .errors import (
    EXIT_FAILURE,
    EXIT_OK,
    ArchiveCorrupt,
    BackupError,
    ChecksumMismatch,
    SourceNotFound,
)
from .integrity import CORRUPTION_ERRORS, IntegrityVerifier
from .lock import LockManager
from .manifest import ArchiveInfo, find_archives
from .retention import RetentionPolicy, RetentionResult
from .space import SpaceChecker, format_bytes


class RunState(str, Enum):
    """Stages of a backup run."""

    IDLE = "idle"
    LOCKED = "locked"
    VALIDATING = "validating"
    BUILDING = "building"
    CHECKSUMMING = "checksumming"
    VERIFYING = "verifying"
    ROTATING = "rotating"
    DONE = "done"
    FAILED = "failed"


@contextmanager
def terminate_as_interrupt() -> Iterator[None]:
    """
    Turn SIGTERM into KeyboardInterrupt for the duration of the block.

    Cleanup scopes (partial archive removal, lock release) then run for a
    terminated process exactly as for Ctrl-C. Outside the main thread signal
    handlers cannot be installed and the block runs unchanged.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        raise KeyboardInterrupt(f"Received signal {signum}")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class BackupOrchestrator:
    """
    Sequences a backup run and exposes list and restore operations.

    Attributes:
        settings: Run configuration
        state: Current run stage
        failed_stage: Stage at which the last run failed, if any
        last_archive: Archive produced (or intended, in dry-run) by the last run
        last_rotation: Rotation outcome of the last run
    """

    def __init__(
        self,
        settings: BackupSettings,
        logger: Optional[logging.Logger] = None,
        lock_manager: Optional[LockManager] = None,
        builder: Optional[ArchiveBuilder] = None,
        verifier: Optional[IntegrityVerifier] = None,
        retention: Optional[RetentionPolicy] = None,
    ):
        self.settings = settings
        self.logger = logger or get_logger(__name__)
        self.lock_manager = lock_manager or LockManager(settings.lock_file, logger=self.logger)
        self.builder = builder or ArchiveBuilder(
            compression=settings.compression,
            space_checker=SpaceChecker(logger=self.logger),
            logger=self.logger,
        )
        self.verifier = verifier or IntegrityVerifier(logger=self.logger)
        self.retention = retention or RetentionPolicy(
            daily_keep=settings.daily_keep,
            weekly_keep=settings.weekly_keep,
            monthly_keep=settings.monthly_keep,
            unparseable_policy=settings.unparseable_policy,
            logger=self.logger,
        )

        self.state = RunState.IDLE
        self.failed_stage: Optional[RunState] = None
        self.last_archive: Optional[Path] = None
        self.last_rotation: Optional[RetentionResult] = None

    def run(self, source_dir: Path, dry_run: bool = False, now: Optional[datetime] = None) -> int:
        """
        Create, checksum, verify and rotate one backup of source_dir.

        The lock is released on every exit path. A verification failure
        skips rotation.

        Args:
            source_dir: Directory to back up
            dry_run: Log intended actions without touching the filesystem
            now: Archive timestamp (defaults to the current time)

        Returns:
            0 on success, 2 on validation failure, 1 on any other failure
        """
        destination = self.settings.destination
        self.state = RunState.IDLE
        self.failed_stage = None
        self.last_archive = None
        self.last_rotation = None

        try:
            with terminate_as_interrupt(), self.lock_manager:
                self._enter(RunState.LOCKED)
                self.logger.info(f"Starting backup of {source_dir}")
                self.logger.info(f"Destination: {destination}")
                self.logger.info(f"Excludes: {','.join(self.settings.exclude_patterns)}")
                if dry_run:
                    self.logger.info("Dry run mode enabled")

                self._enter(RunState.VALIDATING)
                self.builder.validate(source_dir, destination)

                self._enter(RunState.BUILDING)
                self.last_archive = self.builder.build(
                    source_dir,
                    destination,
                    self.settings.exclude_patterns,
                    dry_run=dry_run,
                    now=now,
                )

                self._enter(RunState.CHECKSUMMING)
                self.verifier.write_checksum(self.last_archive, dry_run=dry_run)

                self._enter(RunState.VERIFYING)
                try:
                    self.verifier.verify(self.last_archive, dry_run=dry_run)
                except (ChecksumMismatch, ArchiveCorrupt):
                    self.logger.error(f"Verification failed for {self.last_archive.name}")
                    raise
                self.logger.log(SUCCESS, f"All done for {self.last_archive.name}")

                self._enter(RunState.ROTATING)
                self.last_rotation = self.retention.apply(destination, dry_run=dry_run)
        except BackupError as e:
            return self._fail(e)
        except OSError as e:
            self.logger.error(f"Backup failed during {self.state.value}: {e}")
            return self._fail(BackupError(str(e)))
        except KeyboardInterrupt:
            self.failed_stage = self.state
            self.state = RunState.FAILED
            self.logger.error(f"Interrupted during {self.failed_stage.value}")
            raise

        self._enter(RunState.DONE)
        return EXIT_OK

    def list_backups(self) -> List[ArchiveInfo]:
        """
        Enumerate archives in the destination, newest first. Takes no lock.

        Returns:
            List of ArchiveInfo
        """
        backups = []
        for path in find_archives(self.settings.destination):
            try:
                stat = path.stat()
            except FileNotFoundError:
                # Removed by a concurrent rotation
                continue
            backups.append(
                ArchiveInfo(
                    path=path,
                    size=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime),
                )
            )
        return backups

    def list(self, display: Optional[Callable[[List[ArchiveInfo]], None]] = None) -> int:
        """
        Show the archives in the destination.

        Args:
            display: Renderer for the rows (defaults to one log line per archive)

        Returns:
            Always 0
        """
        backups = self.list_backups()
        if display is not None:
            display(backups)
            return EXIT_OK

        self.logger.info(f"Backups in {self.settings.destination}:")
        if not backups:
            self.logger.info("  (no backups)")
        for backup in backups:
            self.logger.info(
                f"  {backup.name}  {format_bytes(backup.size)}  "
                f"{backup.modified.strftime('%Y-%m-%d %H:%M')}"
            )
        return EXIT_OK

    def restore_backup(self, archive_path: Path, target_dir: Path, dry_run: bool = False) -> None:
        """
        Extract an archive into target_dir.

        Raises:
            SourceNotFound: If the archive does not exist
            BackupError: If extraction fails
        """
        if not archive_path.is_file():
            self.logger.error(f"Backup to restore not found: {archive_path}")
            raise SourceNotFound(f"Backup to restore not found: {archive_path}")

        if dry_run:
            self.logger.info(f"Dry run: would restore {archive_path} to {target_dir}")
            return

        if not hasattr(tarfile, "data_filter"):
            # Extraction filters arrived in 3.12 and in 3.9.17 / 3.10.12 / 3.11.4
            self.logger.error("Restore needs a Python with tarfile extraction filters")
            raise BackupError("This Python's tarfile cannot extract archives safely")

        target_dir.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                tar.extractall(target_dir, filter="data")
        except CORRUPTION_ERRORS as e:
            self.logger.error(f"Restore failed: {e}")
            raise BackupError(f"Failed to restore {archive_path.name}: {e}") from e

        self.logger.log(SUCCESS, f"Restored {archive_path} to {target_dir}")

    def restore(self, archive_path: Path, target_dir: Path, dry_run: bool = False) -> int:
        """
        Restore an archive and report an exit code.

        Returns:
            0 on success, 1 on failure
        """
        try:
            self.restore_backup(archive_path, target_dir, dry_run=dry_run)
        except BackupError:
            return EXIT_FAILURE
        return EXIT_OK

    def _enter(self, state: RunState) -> None:
        self.logger.debug(f"Run state: {self.state.value} -> {state.value}")
        self.state = state

    def _fail(self, error: BackupError) -> int:
        self.failed_stage = self.state
        self.state = RunState.FAILED
        self.logger.debug(f"Run failed during {self.failed_stage.value}: {error}")
        return error.exit_code
