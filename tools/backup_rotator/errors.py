"""Error taxonomy for backup runs.

Every error carries the process exit code the orchestrator reports for it.
Validation failures exit with 2, everything else with 1.
"""

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2


class BackupError(Exception):
    """Base class for backup errors."""

    exit_code = EXIT_FAILURE


class ConfigError(BackupError):
    """Configuration value is missing or invalid."""


class ConcurrencyConflict(BackupError):
    """Another live process holds the run lock."""


class SourceNotFound(BackupError):
    """Source directory or archive does not exist."""

    exit_code = EXIT_VALIDATION


class PermissionDenied(BackupError):
    """Source directory cannot be read."""

    exit_code = EXIT_VALIDATION


class InsufficientSpace(BackupError):
    """Destination lacks room for the estimated archive size."""

    exit_code = EXIT_VALIDATION


class BuildFailed(BackupError):
    """Archive creation failed; no partial output is left behind."""


class ChecksumToolUnavailable(BackupError):
    """No digest tool was found. Soft: logged, never fails a run."""


class ChecksumMismatch(BackupError):
    """Recomputed digest differs from the sidecar."""


class ArchiveCorrupt(BackupError):
    """Archive cannot be listed or its first entry cannot be read."""


class DeleteFailed(BackupError):
    """An archive or sidecar could not be removed. Soft, per file."""
