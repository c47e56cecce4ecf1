"""Settings for backup runs, loaded from defaults, environment and a KEY=VALUE file."""

import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from shared.logger import get_logger

from .errors import ConfigError

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = "backup.config"
LOG_FILE_NAME = "backup.log"

DEFAULTS: Dict[str, str] = {
    "BACKUP_DESTINATION": "backups",
    "EXCLUDE_PATTERNS": ".git,node_modules,.cache",
    "DAILY_KEEP": "7",
    "WEEKLY_KEEP": "4",
    "MONTHLY_KEEP": "3",
    "COMPRESSION": "gzip",
    "LOCK_FILE": str(Path(tempfile.gettempdir()) / "backup_rotator.lock"),
    "UNPARSEABLE_NAMES": "delete",
}


class CompressionType(Enum):
    """Compression algorithm to use."""

    GZIP = "gzip"
    BZIP2 = "bzip2"
    XZ = "xz"

    @property
    def write_mode(self) -> str:
        return {"gzip": "w:gz", "bzip2": "w:bz2", "xz": "w:xz"}[self.value]

    @property
    def extension(self) -> str:
        return {"gzip": ".tar.gz", "bzip2": ".tar.bz2", "xz": ".tar.xz"}[self.value]


ARCHIVE_EXTENSIONS: Tuple[str, ...] = tuple(c.extension for c in CompressionType)


class UnparseablePolicy(Enum):
    """What rotation does with archives whose timestamp cannot be determined."""

    DELETE = "delete"
    KEEP = "keep"


@dataclass(frozen=True)
class BackupSettings:
    """Configuration for one backup run. Read-only for the run's duration."""

    destination: Path
    exclude_patterns: List[str] = field(default_factory=list)
    daily_keep: int = 7
    weekly_keep: int = 4
    monthly_keep: int = 3
    compression: CompressionType = CompressionType.GZIP
    lock_file: Path = Path(DEFAULTS["LOCK_FILE"])
    unparseable_policy: UnparseablePolicy = UnparseablePolicy.DELETE

    @property
    def log_file(self) -> Path:
        """Append-only run log inside the destination."""
        return self.destination / LOG_FILE_NAME


def parse_config_file(filepath: Path) -> Dict[str, str]:
    """
    Parse a KEY=VALUE configuration file.

    Args:
        filepath: Path to the config file

    Returns:
        Dictionary of raw values
    """
    values: Dict[str, str] = {}

    with open(filepath, "r") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()

            if not line or line.startswith("#"):
                continue

            if line.startswith("export "):
                line = line[len("export "):].strip()

            if "=" not in line:
                logger.warning(f"Skipping invalid line {line_num} in {filepath}: {line}")
                continue

            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip()

            if len(value) >= 2 and value[0] in ['"', "'"] and value[-1] == value[0]:
                value = value[1:-1]

            values[key] = value

    logger.debug(f"Loaded {len(values)} settings from {filepath}")
    return values


def split_patterns(raw: str) -> List[str]:
    """Split a comma-separated exclude list, dropping empty entries."""
    return [p.strip() for p in raw.split(",") if p.strip()]


def _keep_count(values: Mapping[str, str], key: str) -> int:
    raw = values[key]
    try:
        count = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a non-negative integer, got {raw!r}")
    if count < 0:
        raise ConfigError(f"{key} must be a non-negative integer, got {raw!r}")
    return count


def load_settings(
    config_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BackupSettings:
    """
    Build settings from defaults, the environment and the config file.

    The config file is applied last, so its values win over environment
    variables. A missing config file is not an error.

    Args:
        config_file: Explicit config file (defaults to $BACKUP_CONFIG, then ./backup.config)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        BackupSettings

    Raises:
        ConfigError: If a value is invalid
    """
    env = os.environ if environ is None else environ

    values = dict(DEFAULTS)
    for key in DEFAULTS:
        if env.get(key):
            values[key] = env[key]

    if config_file is None:
        config_file = Path(env.get("BACKUP_CONFIG") or DEFAULT_CONFIG_FILE)

    if config_file.is_file():
        file_values = parse_config_file(config_file)
        values.update({k: v for k, v in file_values.items() if k in DEFAULTS})
    else:
        logger.debug(f"No config file at {config_file}, using defaults")

    try:
        compression = CompressionType(values["COMPRESSION"].lower())
    except ValueError:
        raise ConfigError(
            f"COMPRESSION must be one of {[c.value for c in CompressionType]}, "
            f"got {values['COMPRESSION']!r}"
        )

    try:
        policy = UnparseablePolicy(values["UNPARSEABLE_NAMES"].lower())
    except ValueError:
        raise ConfigError(
            f"UNPARSEABLE_NAMES must be 'delete' or 'keep', got {values['UNPARSEABLE_NAMES']!r}"
        )

    return BackupSettings(
        destination=Path(values["BACKUP_DESTINATION"]).expanduser(),
        exclude_patterns=split_patterns(values["EXCLUDE_PATTERNS"]),
        daily_keep=_keep_count(values, "DAILY_KEEP"),
        weekly_keep=_keep_count(values, "WEEKLY_KEEP"),
        monthly_keep=_keep_count(values, "MONTHLY_KEEP"),
        compression=compression,
        lock_file=Path(values["LOCK_FILE"]).expanduser(),
        unparseable_policy=policy,
    )
