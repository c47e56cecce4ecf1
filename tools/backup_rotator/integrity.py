"""Checksum sidecars and archive read tests."""

import logging
import lzma
import shutil
import subprocess
import tarfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from shared.logger import SUCCESS, get_logger

from .errors import ArchiveCorrupt, ChecksumMismatch, ChecksumToolUnavailable
from .manifest import MD5_SUFFIX, SHA256_SUFFIX, load_manifest, save_manifest

READ_CHUNK = 64 * 1024

CORRUPTION_ERRORS = (tarfile.TarError, OSError, EOFError, zlib.error, lzma.LZMAError)


@dataclass(frozen=True)
class DigestTool:
    """An external digest command."""

    name: str
    command: List[str]
    algorithm: str

    @property
    def extension(self) -> str:
        return MD5_SUFFIX if self.algorithm == "md5" else SHA256_SUFFIX

    def compute(self, path: Path) -> str:
        """
        Run the tool over a file.

        Returns:
            Lowercase hex digest

        Raises:
            ChecksumToolUnavailable: If the command fails to run
        """
        try:
            result = subprocess.run(
                [*self.command, str(path)],
                capture_output=True,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as e:
            raise ChecksumToolUnavailable(f"{self.name} failed on {path.name}: {e}") from e
        return result.stdout.split()[0].lower()


# Probe order: modern digest first, an equivalent implementation next, legacy last
DIGEST_TOOLS = [
    DigestTool(name="sha256sum", command=["sha256sum"], algorithm="sha256"),
    DigestTool(name="shasum -a 256", command=["shasum", "-a", "256"], algorithm="sha256"),
    DigestTool(name="md5sum", command=["md5sum"], algorithm="md5"),
]


def select_digest_tool(algorithm: Optional[str] = None) -> Optional[DigestTool]:
    """
    Pick the best available digest tool.

    Args:
        algorithm: Only consider tools for this algorithm ("sha256" or "md5")

    Returns:
        First available tool in priority order, or None
    """
    for tool in DIGEST_TOOLS:
        if algorithm and tool.algorithm != algorithm:
            continue
        if shutil.which(tool.command[0]):
            return tool
    return None


def read_sidecar(sidecar: Path) -> str:
    """Read the hex digest from a ``<hex>  <name>`` sidecar line."""
    content = sidecar.read_text().split()
    if not content:
        raise ChecksumMismatch(f"Checksum file {sidecar.name} is empty")
    return content[0].lower()


class IntegrityVerifier:
    """
    Writes digest sidecars and verifies archives against them.

    A missing digest tool or sidecar degrades to a warning; only a digest
    mismatch or an unreadable archive fails verification.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger(__name__)

    def write_checksum(self, archive_path: Path, dry_run: bool = False) -> Optional[Path]:
        """
        Compute the archive digest and write it beside the archive.

        Args:
            archive_path: Archive to checksum
            dry_run: Log the intended sidecar only

        Returns:
            Sidecar path, or None when no digest tool is available
        """
        tool = select_digest_tool()
        if tool is None:
            self.logger.warning("No checksum tool found; skipping checksum")
            return None

        sidecar = archive_path.with_name(archive_path.name + tool.extension)

        if dry_run:
            self.logger.info(f"Dry run: would write checksum {sidecar.name} using {tool.name}")
            return sidecar

        try:
            digest = tool.compute(archive_path)
        except ChecksumToolUnavailable as e:
            self.logger.warning(f"{e}; skipping checksum")
            return None

        try:
            sidecar.write_text(f"{digest}  {archive_path.name}\n")
        except OSError as e:
            self.logger.warning(f"Could not write {sidecar.name}: {e}; skipping checksum")
            sidecar.unlink(missing_ok=True)
            return None

        archive = load_manifest(archive_path)
        if archive is not None:
            archive.digest_algorithm = tool.algorithm
            archive.digest = digest
            archive.sidecar = sidecar
            try:
                save_manifest(archive)
            except OSError as e:
                self.logger.warning(f"Could not record digest in manifest: {e}")

        self.logger.log(SUCCESS, f"Checksum written: {sidecar.name}")
        return sidecar

    def find_sidecar(self, archive_path: Path) -> Optional[Path]:
        """Find the archive's sidecar, preferring SHA-256 over md5."""
        for suffix in (SHA256_SUFFIX, MD5_SUFFIX):
            candidate = archive_path.with_name(archive_path.name + suffix)
            if candidate.exists():
                return candidate
        return None

    def verify_checksum(self, archive_path: Path) -> bool:
        """
        Compare the archive against its sidecar digest.

        Returns:
            True if the digest was checked, False if the check was skipped

        Raises:
            ChecksumMismatch: If the digests differ
        """
        sidecar = self.find_sidecar(archive_path)
        algorithm = "md5" if sidecar is not None and sidecar.suffix == MD5_SUFFIX else "sha256"
        tool = select_digest_tool(algorithm) if sidecar is not None else None

        if sidecar is None or tool is None:
            self.logger.warning("Checksum or tool missing; skipping checksum verification")
            return False

        expected = read_sidecar(sidecar)
        try:
            actual = tool.compute(archive_path)
        except ChecksumToolUnavailable as e:
            self.logger.warning(f"{e}; skipping checksum verification")
            return False

        if actual != expected:
            self.logger.error("Checksum verification FAILED")
            raise ChecksumMismatch(
                f"{archive_path.name}: expected {expected}, got {actual} ({tool.name})"
            )

        self.logger.info("Checksum verified successfully")
        return True

    def check_structure(self, archive_path: Path) -> None:
        """
        List the archive and read the content of its first entry.

        When the first entry is a directory (the source root, for archives
        built here), every file below it is read. An archive without entries
        passes.

        Raises:
            ArchiveCorrupt: If listing or reading fails
        """
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                members = tar.getmembers()
        except CORRUPTION_ERRORS as e:
            self.logger.error("Archive list FAILED")
            raise ArchiveCorrupt(f"Cannot list {archive_path.name}: {e}") from e

        if not members:
            return

        first = members[0]
        prefix = first.name.rstrip("/") + "/"
        to_read = [
            m for m in members if m.isfile() and (m is first or m.name.startswith(prefix))
        ]

        current = first.name
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                for member in to_read:
                    current = member.name
                    stream = tar.extractfile(member)
                    if stream is None:
                        continue
                    while stream.read(READ_CHUNK):
                        pass
        except CORRUPTION_ERRORS as e:
            self.logger.error("Archive read test FAILED")
            raise ArchiveCorrupt(f"Cannot read {current} from {archive_path.name}: {e}") from e
        self.logger.debug(f"Read test passed for {len(to_read)} file(s) in {archive_path.name}")

    def verify(self, archive_path: Path, dry_run: bool = False) -> None:
        """
        Verify the digest (when possible) and run the structural read test.

        Args:
            archive_path: Archive to verify
            dry_run: Log the intended verification only

        Raises:
            ChecksumMismatch: If the archive does not match its sidecar
            ArchiveCorrupt: If the archive cannot be read
        """
        if dry_run:
            self.logger.info(f"Dry run: would verify checksum and read test {archive_path.name}")
            return

        self.verify_checksum(archive_path)
        self.check_structure(archive_path)
        self.logger.log(SUCCESS, "Backup verified")
