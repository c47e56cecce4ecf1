"""Archive model, file naming, and the per-archive ``.meta`` manifest."""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from shared.logger import get_logger

from .config import ARCHIVE_EXTENSIONS

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M"
TIMESTAMP_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}-\d{4}")

MANIFEST_SUFFIX = ".meta"
SHA256_SUFFIX = ".sha256"
MD5_SUFFIX = ".md5"
SIDECAR_SUFFIXES = (SHA256_SUFFIX, MD5_SUFFIX, MANIFEST_SUFFIX)


@dataclass
class Archive:
    """One backup instance."""

    source_name: str
    created: datetime
    path: Path
    size: int
    compression: str
    digest_algorithm: Optional[str] = None
    digest: Optional[str] = None
    sidecar: Optional[Path] = None


@dataclass
class ArchiveInfo:
    """Listing row for an archive in the destination."""

    path: Path
    size: int
    modified: datetime

    @property
    def name(self) -> str:
        return self.path.name


def format_timestamp(moment: datetime) -> str:
    """Format a timestamp for an archive name (minute resolution)."""
    return moment.strftime(TIMESTAMP_FORMAT)


def is_archive_name(name: str) -> bool:
    """Check whether a file name has one of the archive extensions."""
    return name.endswith(ARCHIVE_EXTENSIONS)


def parse_timestamp(name: str) -> Optional[datetime]:
    """
    Extract the creation timestamp embedded in an archive name.

    The last ``YYYY-MM-DD-HHMM`` token wins, so source names that themselves
    contain dates still parse correctly.

    Returns:
        Timestamp, or None if the name carries no valid timestamp
    """
    tokens = TIMESTAMP_PATTERN.findall(name)
    if not tokens:
        return None
    try:
        return datetime.strptime(tokens[-1], TIMESTAMP_FORMAT)
    except ValueError:
        return None


def manifest_path(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name + MANIFEST_SUFFIX)


def sidecar_paths(archive_path: Path) -> List[Path]:
    """All sidecar files that belong to an archive."""
    return [archive_path.with_name(archive_path.name + s) for s in SIDECAR_SUFFIXES]


def save_manifest(archive: Archive) -> Path:
    """
    Save archive metadata alongside the archive file.

    Args:
        archive: Archive to record

    Returns:
        Path to the manifest file
    """
    path = manifest_path(archive.path)
    with open(path, "w") as f:
        json.dump(
            {
                "source_name": archive.source_name,
                "created": archive.created.isoformat(),
                "size": archive.size,
                "compression": archive.compression,
                "digest_algorithm": archive.digest_algorithm,
                "digest": archive.digest,
                "sidecar": archive.sidecar.name if archive.sidecar else None,
            },
            f,
            indent=2,
        )
    return path


def load_manifest(archive_path: Path) -> Optional[Archive]:
    """
    Load metadata for an archive file.

    Args:
        archive_path: Path to the archive

    Returns:
        Archive if a readable manifest exists, None otherwise
    """
    path = manifest_path(archive_path)
    if not path.exists():
        return None

    try:
        with open(path, "r") as f:
            data = json.load(f)

        sidecar = data.get("sidecar")
        return Archive(
            source_name=data["source_name"],
            created=datetime.fromisoformat(data["created"]),
            path=archive_path,
            size=data["size"],
            compression=data["compression"],
            digest_algorithm=data.get("digest_algorithm"),
            digest=data.get("digest"),
            sidecar=archive_path.with_name(sidecar) if sidecar else None,
        )
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug(f"Ignoring unreadable manifest {path}: {e}")
        return None


def archive_timestamp(archive_path: Path) -> Optional[datetime]:
    """Creation time of an archive: from its manifest, else from its name."""
    archive = load_manifest(archive_path)
    if archive is not None:
        return archive.created
    return parse_timestamp(archive_path.name)


def find_archives(directory: Path) -> List[Path]:
    """
    List archive files in a directory, newest name first.

    Returns:
        Archive paths sorted by name descending (chronological for well-formed names)
    """
    if not directory.is_dir():
        return []
    archives = [p for p in directory.iterdir() if p.is_file() and is_archive_name(p.name)]
    archives.sort(key=lambda p: p.name, reverse=True)
    return archives
