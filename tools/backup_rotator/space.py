"""Free-space check for the backup destination."""

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from shared.logger import get_logger

from .errors import InsufficientSpace


def format_bytes(size_bytes: float) -> str:
    """Format bytes to human-readable size."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"


class SpaceChecker:
    """Compares the estimated source size plus a margin against free destination space."""

    def __init__(self, margin: float = 0.10, logger: Optional[logging.Logger] = None):
        """
        Args:
            margin: Extra fraction of the source size required on the destination
            logger: Logging sink (defaults to the module logger)
        """
        self.margin = margin
        self.logger = logger or get_logger(__name__)

    def estimate_size(self, path: Path) -> Optional[int]:
        """
        Estimate the recursive byte size of a directory.

        Symlinks are counted by their own size, not followed.

        Returns:
            Total bytes, or None if the tree could not be walked
        """
        errors = []
        total = 0
        for root, dirs, files in os.walk(path, onerror=errors.append):
            for name in dirs + files:
                try:
                    total += os.lstat(os.path.join(root, name)).st_size
                except OSError as e:
                    errors.append(e)
        if errors:
            self.logger.debug(f"Size estimate for {path} hit {len(errors)} error(s): {errors[0]}")
            return None
        return total

    def available_bytes(self, path: Path) -> Optional[int]:
        """
        Free bytes at path, or at its nearest existing ancestor.

        Returns:
            Free bytes, or None if the query failed
        """
        probe = path
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        try:
            return shutil.disk_usage(probe).free
        except OSError as e:
            self.logger.debug(f"Disk usage query failed for {probe}: {e}")
            return None

    def required_bytes(self, needed: int) -> int:
        return needed + int(needed * self.margin)

    def check(self, source: Path, destination: Path) -> None:
        """
        Ensure the destination has room for a backup of source.

        Size estimation is best effort: when it fails or yields zero, a
        warning is logged and the check passes.

        Raises:
            InsufficientSpace: If free space is below the estimate plus margin
        """
        needed = self.estimate_size(source)
        if not needed:
            self.logger.warning(
                "Could not determine source size (or empty). Skipping strict space check."
            )
            return

        available = self.available_bytes(destination)
        if available is None:
            self.logger.warning("Could not determine available disk space on destination.")
            return

        required = self.required_bytes(needed)
        if available < required:
            self.logger.error(
                f"Not enough disk space on destination. Required ~{required} bytes, "
                f"available {available} bytes."
            )
            raise InsufficientSpace(
                f"Destination {destination} needs {format_bytes(required)}, "
                f"has {format_bytes(available)}"
            )

        self.logger.debug(
            f"Space check passed: need {format_bytes(required)}, have {format_bytes(available)}"
        )
