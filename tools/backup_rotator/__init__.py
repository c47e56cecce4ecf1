"""Backup Rotator - Compressed backups with checksums, run locking and daily/weekly/monthly rotation."""

from .config import BackupSettings, load_settings
from .orchestrator import BackupOrchestrator, RunState

__all__ = ["BackupOrchestrator", "BackupSettings", "RunState", "load_settings"]
