"""Shared fixtures for Backup Rotator tests."""

from pathlib import Path

import pytest

from tools.backup_rotator.config import BackupSettings


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """A small project tree with .git directories at two depths."""
    root = tmp_path / "src" / "proj"
    (root / ".git").mkdir(parents=True)
    (root / ".git" / "config").write_text("[core]\n")
    (root / "sub" / ".git").mkdir(parents=True)
    (root / "sub" / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (root / "sub" / "module.py").write_text("print('hello')\n")
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1;\n")
    (root / "README.md").write_text("# proj\n")
    (root / "data.bin").write_bytes(bytes(range(256)) * 16)
    return root


@pytest.fixture
def settings(tmp_path: Path) -> BackupSettings:
    """Settings with destination and lock file inside tmp_path."""
    return BackupSettings(
        destination=tmp_path / "backups",
        exclude_patterns=[".git", "node_modules"],
        lock_file=tmp_path / "run" / "backup.lock",
    )


@pytest.fixture
def make_archive():
    """Factory creating placeholder archive files."""

    def _make(directory: Path, name: str, content: bytes = b"archive") -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(content)
        return path

    return _make
