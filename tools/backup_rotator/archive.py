"""Archive creation with path exclusion and partial-output cleanup."""

import logging
import os
import tarfile
from datetime import datetime
from fnmatch import fnmatchcase
from pathlib import Path
from typing import List, Optional

from shared.logger import SUCCESS, get_logger

from .config import CompressionType
from .errors import BuildFailed, PermissionDenied, SourceNotFound
from .manifest import Archive, format_timestamp, manifest_path, save_manifest
from .space import SpaceChecker


def exclude_rules(patterns: List[str]) -> List[str]:
    """
    Expand exclude patterns into member-name filter rules.

    Each pattern matches as the exact top-level name, as a directory at any
    depth (with everything below it), and as a leaf at any depth.

    Args:
        patterns: User-facing exclude names, e.g. [".git", "node_modules"]

    Returns:
        Shell-style wildcard rules matched against archive member names
    """
    rules = []
    for pattern in patterns:
        if not pattern:
            continue
        rules.extend([pattern, f"*/{pattern}/*", f"*/{pattern}"])
    return rules


def is_excluded(member_name: str, rules: List[str]) -> bool:
    """Check an archive member name against the filter rules."""
    return any(fnmatchcase(member_name, rule) for rule in rules)


class ArchiveBuilder:
    """
    Produces a named, filtered, compressed archive of a source directory.

    A failed or interrupted build never leaves a partial archive behind.
    """

    def __init__(
        self,
        compression: CompressionType = CompressionType.GZIP,
        space_checker: Optional[SpaceChecker] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.compression = compression
        self.logger = logger or get_logger(__name__)
        self.space_checker = space_checker or SpaceChecker(logger=self.logger)

    def archive_name(self, source_dir: Path, now: Optional[datetime] = None) -> str:
        """Archive file name: ``<basename>-<YYYY-MM-DD-HHMM><ext>``."""
        moment = (now or datetime.now()).replace(second=0, microsecond=0)
        basename = Path(os.path.abspath(source_dir)).name
        return f"{basename}-{format_timestamp(moment)}{self.compression.extension}"

    def validate(self, source_dir: Path, dest_dir: Path) -> None:
        """
        Check the source and the destination space before any write.

        Raises:
            SourceNotFound: If the source directory does not exist
            PermissionDenied: If the source directory cannot be read
            InsufficientSpace: If the destination is too small
        """
        if not source_dir.is_dir():
            self.logger.error(f"Source folder not found: {source_dir}")
            raise SourceNotFound(f"Source folder not found: {source_dir}")

        if not os.access(source_dir, os.R_OK | os.X_OK):
            self.logger.error(f"Cannot read source folder (permission denied): {source_dir}")
            raise PermissionDenied(f"Cannot read source folder: {source_dir}")

        self.space_checker.check(source_dir, dest_dir)

    def build(
        self,
        source_dir: Path,
        dest_dir: Path,
        exclude_patterns: List[str],
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> Path:
        """
        Write the archive, or describe it in dry-run mode.

        Args:
            source_dir: Directory to back up
            dest_dir: Directory receiving the archive
            exclude_patterns: Names excluded at any depth
            dry_run: Log the intended action without touching the filesystem
            now: Creation time (defaults to the current time)

        Returns:
            Path of the created (or intended) archive

        Raises:
            BuildFailed: If the archive could not be written
        """
        created = (now or datetime.now()).replace(second=0, microsecond=0)
        # Named after the path as given; a symlinked source keeps the link name
        source_dir = Path(os.path.abspath(source_dir))
        archive_path = dest_dir / self.archive_name(source_dir, created)
        rules = exclude_rules(exclude_patterns)

        # Never archive the destination into itself
        real_source = source_dir.resolve()
        resolved_dest = dest_dir.resolve()
        if resolved_dest.is_relative_to(real_source):
            rules.append((Path(source_dir.name) / resolved_dest.relative_to(real_source)).as_posix())

        self.logger.info(f"Creating archive: {archive_path.name}")

        if dry_run:
            self.logger.info(f"Dry run: would create archive at {archive_path}")
            self.logger.info(f"Dry run: exclude patterns: {','.join(exclude_patterns)}")
            self.logger.info(f"Dry run: filter rules: {' '.join(rules) or '(none)'}")
            return archive_path

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            self._write_tar(source_dir, archive_path, rules)
            save_manifest(
                Archive(
                    source_name=source_dir.name,
                    created=created,
                    path=archive_path,
                    size=archive_path.stat().st_size,
                    compression=self.compression.value,
                )
            )
        except BaseException as e:
            self._cleanup_partial(archive_path)
            if not isinstance(e, Exception):
                raise
            self.logger.error(f"Backup failed: {e}")
            raise BuildFailed(f"Failed to create archive {archive_path.name}: {e}") from e

        self.logger.log(SUCCESS, f"Backup created: {archive_path.name}")
        return archive_path

    def create(
        self,
        source_dir: Path,
        dest_dir: Path,
        exclude_patterns: List[str],
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> Path:
        """Validate the source and destination, then build the archive."""
        self.validate(source_dir, dest_dir)
        return self.build(source_dir, dest_dir, exclude_patterns, dry_run=dry_run, now=now)

    def _write_tar(self, source_dir: Path, archive_path: Path, rules: List[str]) -> None:
        def member_filter(member: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
            if is_excluded(member.name, rules):
                self.logger.debug(f"Excluded: {member.name}")
                return None
            return member

        with tarfile.open(archive_path, self.compression.write_mode) as tar:
            tar.add(
                source_dir.resolve(),
                arcname=source_dir.name,
                recursive=True,
                filter=member_filter,
            )

    def _cleanup_partial(self, archive_path: Path) -> None:
        for path in (archive_path, manifest_path(archive_path)):
            if path.exists():
                try:
                    path.unlink()
                    self.logger.info(f"Removed partial archive: {path.name}")
                except OSError as e:
                    self.logger.error(f"Could not remove partial archive {path.name}: {e}")
