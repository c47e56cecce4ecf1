"""Tests for checksum sidecars and archive verification."""

import io
import tarfile
import zlib
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from tools.backup_rotator.archive import ArchiveBuilder
from tools.backup_rotator.errors import ArchiveCorrupt, ChecksumMismatch
from tools.backup_rotator.integrity import (
    DIGEST_TOOLS,
    DigestTool,
    IntegrityVerifier,
    read_sidecar,
    select_digest_tool,
)
from tools.backup_rotator.manifest import load_manifest

needs_digest_tool = pytest.mark.skipif(
    select_digest_tool() is None, reason="no sha256sum, shasum or md5sum on PATH"
)


@pytest.fixture
def archive(source_tree, tmp_path):
    """A freshly built archive of the source tree."""
    return ArchiveBuilder().build(
        source_tree, tmp_path / "backups", [".git"], now=datetime(2024, 11, 3, 14, 30)
    )


def only_commands(*available):
    """Fake shutil.which that finds only the given commands."""
    return lambda cmd: f"/usr/bin/{cmd}" if cmd in available else None


class TestSelectDigestTool:
    """Test digest tool probing."""

    def test_prefers_sha256sum(self):
        with patch("shutil.which", side_effect=only_commands("sha256sum", "shasum", "md5sum")):
            tool = select_digest_tool()

        assert tool.name == "sha256sum"
        assert tool.extension == ".sha256"

    def test_falls_back_to_shasum(self):
        with patch("shutil.which", side_effect=only_commands("shasum", "md5sum")):
            tool = select_digest_tool()

        assert tool.command == ["shasum", "-a", "256"]
        assert tool.extension == ".sha256"

    def test_legacy_md5_last(self):
        with patch("shutil.which", side_effect=only_commands("md5sum")):
            tool = select_digest_tool()

        assert tool.algorithm == "md5"
        assert tool.extension == ".md5"

    def test_none_available(self):
        with patch("shutil.which", return_value=None):
            assert select_digest_tool() is None

    def test_filter_by_algorithm(self):
        with patch("shutil.which", side_effect=only_commands("sha256sum", "md5sum")):
            assert select_digest_tool("md5").name == "md5sum"

    def test_priority_order(self):
        assert [t.name for t in DIGEST_TOOLS] == ["sha256sum", "shasum -a 256", "md5sum"]


class TestWriteChecksum:
    """Test sidecar creation."""

    @needs_digest_tool
    def test_writes_sidecar_and_updates_manifest(self, archive):
        sidecar = IntegrityVerifier().write_checksum(archive)

        assert sidecar is not None
        assert sidecar.name in (archive.name + ".sha256", archive.name + ".md5")
        assert sidecar.read_text().strip().endswith(archive.name)

        recorded = load_manifest(archive)
        assert recorded.digest == read_sidecar(sidecar)
        assert recorded.sidecar == sidecar

    def test_no_tool_is_a_warning(self, archive, caplog):
        with patch("shutil.which", return_value=None):
            assert IntegrityVerifier().write_checksum(archive) is None

        assert "No checksum tool found" in caplog.text
        assert not archive.with_name(archive.name + ".sha256").exists()
        assert not archive.with_name(archive.name + ".md5").exists()

    @needs_digest_tool
    def test_dry_run_writes_nothing(self, archive):
        sidecar = IntegrityVerifier().write_checksum(archive, dry_run=True)

        assert sidecar is not None
        assert not sidecar.exists()

    def test_sidecar_write_failure_is_a_warning(self, archive, caplog):
        with patch("shutil.which", side_effect=only_commands("sha256sum")), patch.object(
            DigestTool, "compute", return_value="ab" * 32
        ), patch.object(Path, "write_text", side_effect=OSError(28, "No space left on device")):
            assert IntegrityVerifier().write_checksum(archive) is None

        assert "skipping checksum" in caplog.text
        assert not archive.with_name(archive.name + ".sha256").exists()
        assert load_manifest(archive).digest is None


class TestVerify:
    """Test verification."""

    @needs_digest_tool
    def test_fresh_archive_verifies(self, archive):
        verifier = IntegrityVerifier()
        verifier.write_checksum(archive)

        assert verifier.verify_checksum(archive) is True
        verifier.verify(archive)

    @needs_digest_tool
    def test_tampered_archive_fails(self, archive):
        verifier = IntegrityVerifier()
        verifier.write_checksum(archive)

        data = bytearray(archive.read_bytes())
        data[len(data) // 2] ^= 0xFF
        archive.write_bytes(bytes(data))

        with pytest.raises(ChecksumMismatch):
            verifier.verify(archive)

    def test_missing_sidecar_is_a_warning(self, archive, caplog):
        IntegrityVerifier().verify(archive)

        assert "skipping checksum verification" in caplog.text

    def test_missing_tool_is_a_warning(self, archive, caplog):
        archive.with_name(archive.name + ".sha256").write_text(f"{'0' * 64}  {archive.name}\n")

        with patch("shutil.which", return_value=None):
            IntegrityVerifier().verify(archive)

        assert "skipping checksum verification" in caplog.text

    def test_sha256_sidecar_preferred(self, archive):
        sha = archive.with_name(archive.name + ".sha256")
        md5 = archive.with_name(archive.name + ".md5")
        sha.write_text("a\n")
        md5.write_text("b\n")

        assert IntegrityVerifier().find_sidecar(archive) == sha

    def test_md5_sidecar_found(self, archive):
        md5 = archive.with_name(archive.name + ".md5")
        md5.write_text("b\n")

        assert IntegrityVerifier().find_sidecar(archive) == md5

    def test_garbage_archive_is_corrupt(self, tmp_path):
        bogus = tmp_path / "proj-2024-11-03-1430.tar.gz"
        bogus.write_bytes(b"this is not an archive at all")

        with pytest.raises(ArchiveCorrupt):
            IntegrityVerifier().verify(bogus)

    def test_truncated_archive_is_corrupt(self, archive):
        data = archive.read_bytes()
        archive.write_bytes(data[: len(data) // 2])

        with pytest.raises(ArchiveCorrupt):
            IntegrityVerifier().check_structure(archive)

    def test_empty_archive_passes(self, tmp_path):
        empty = tmp_path / "empty-2024-11-03-1430.tar.gz"
        with tarfile.open(empty, "w:gz"):
            pass

        IntegrityVerifier().check_structure(empty)

    def test_first_file_entry_is_read(self, tmp_path):
        path = tmp_path / "single-2024-11-03-1430.tar.gz"
        payload = b"hello world" * 1000
        with tarfile.open(path, "w:gz") as tar:
            info = tarfile.TarInfo("single/file.txt")
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))

        IntegrityVerifier().check_structure(path)

    def test_reads_files_below_root_directory(self, archive):
        """The root directory entry carries no data; the files below it are read."""
        real_extractfile = tarfile.TarFile.extractfile
        read = []

        def spy(tar, member):
            stream = real_extractfile(tar, member)
            if stream is not None:
                read.append(member.name)
            return stream

        with patch.object(tarfile.TarFile, "extractfile", autospec=True, side_effect=spy):
            IntegrityVerifier().check_structure(archive)

        assert "proj/README.md" in read
        assert "proj/sub/module.py" in read

    def test_unreadable_file_payload_is_corrupt(self, archive):
        """An archive that lists cleanly but fails to stream a file is corrupt."""
        real_extractfile = tarfile.TarFile.extractfile

        def failing(tar, member):
            if member.isfile():
                raise zlib.error("invalid stored block lengths")
            return real_extractfile(tar, member)

        with patch.object(tarfile.TarFile, "extractfile", autospec=True, side_effect=failing):
            with pytest.raises(ArchiveCorrupt, match="Cannot read proj/"):
                IntegrityVerifier().check_structure(archive)

    def test_dry_run_skips_everything(self, tmp_path, caplog):
        missing = tmp_path / "never-built.tar.gz"

        with caplog.at_level("INFO"):
            IntegrityVerifier().verify(missing, dry_run=True)

        assert "Dry run: would verify" in caplog.text


class TestReadSidecar:
    """Test sidecar parsing."""

    def test_reads_first_token(self, tmp_path):
        sidecar = tmp_path / "a.tar.gz.sha256"
        sidecar.write_text("ABCDEF  a.tar.gz\n")

        assert read_sidecar(sidecar) == "abcdef"

    def test_empty_sidecar_is_a_mismatch(self, tmp_path):
        sidecar = tmp_path / "a.tar.gz.sha256"
        sidecar.write_text("")

        with pytest.raises(ChecksumMismatch):
            read_sidecar(sidecar)
