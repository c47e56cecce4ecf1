"""Daily/weekly/monthly retention for archives in the destination."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from shared.logger import get_logger

from .config import UnparseablePolicy
from .errors import DeleteFailed
from .manifest import archive_timestamp, find_archives, parse_timestamp, sidecar_paths


class Bucket(str, Enum):
    """Retention bucket an archive was kept under."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def day_key(moment: datetime) -> date:
    return moment.date()


def week_key(moment: datetime) -> Tuple[int, int]:
    """ISO (year, week) pair."""
    year, week, _ = moment.isocalendar()
    return year, week


def month_key(moment: datetime) -> Tuple[int, int]:
    return moment.year, moment.month


@dataclass
class RetentionPlan:
    """Outcome of classifying archives."""

    kept: Dict[str, Bucket] = field(default_factory=dict)
    delete: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)

    def kept_in(self, bucket: Bucket) -> List[str]:
        return [name for name, b in self.kept.items() if b == bucket]


@dataclass
class RetentionResult:
    """Outcome of applying a plan to the destination."""

    plan: RetentionPlan
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class _Quota:
    limit: int
    seen: Set[object] = field(default_factory=set)

    def claim(self, key: object) -> bool:
        if key in self.seen or len(self.seen) >= self.limit:
            return False
        self.seen.add(key)
        return True


class RetentionPolicy:
    """
    Decides which archives survive rotation.

    Archives are walked newest to oldest. Each one is kept by the first bucket
    (daily, then weekly, then monthly) whose period it is the first to claim
    while that bucket still has quota; everything else is deleted.

    Attributes:
        daily_keep: Number of distinct days to keep
        weekly_keep: Number of distinct ISO weeks to keep
        monthly_keep: Number of distinct months to keep
        unparseable_policy: Fate of archives without a recoverable timestamp
    """

    def __init__(
        self,
        daily_keep: int = 7,
        weekly_keep: int = 4,
        monthly_keep: int = 3,
        unparseable_policy: UnparseablePolicy = UnparseablePolicy.DELETE,
        logger: Optional[logging.Logger] = None,
    ):
        self.daily_keep = daily_keep
        self.weekly_keep = weekly_keep
        self.monthly_keep = monthly_keep
        self.unparseable_policy = unparseable_policy
        self.logger = logger or get_logger(__name__)

    def classify(
        self,
        names: List[str],
        timestamps: Optional[Dict[str, Optional[datetime]]] = None,
    ) -> RetentionPlan:
        """
        Split archive names into survivors and a deletion set.

        Args:
            names: Archive file names
            timestamps: Known creation times by name; names not in the mapping
                are parsed for an embedded ``YYYY-MM-DD-HHMM`` token

        Returns:
            RetentionPlan
        """
        timestamps = timestamps or {}
        plan = RetentionPlan()
        dated: List[Tuple[datetime, str]] = []

        for name in names:
            moment = timestamps[name] if name in timestamps else parse_timestamp(name)
            if moment is None:
                if self.unparseable_policy == UnparseablePolicy.DELETE:
                    plan.delete.append(name)
                else:
                    plan.ignored.append(name)
                continue
            dated.append((moment, name))

        dated.sort(reverse=True)

        daily = _Quota(self.daily_keep)
        weekly = _Quota(self.weekly_keep)
        monthly = _Quota(self.monthly_keep)

        for moment, name in dated:
            if daily.claim(day_key(moment)):
                plan.kept[name] = Bucket.DAILY
            elif weekly.claim(week_key(moment)):
                plan.kept[name] = Bucket.WEEKLY
            elif monthly.claim(month_key(moment)):
                plan.kept[name] = Bucket.MONTHLY
            else:
                plan.delete.append(name)

        return plan

    def plan_for(self, dest_dir: Path) -> RetentionPlan:
        """Classify the archives currently in dest_dir."""
        archives = find_archives(dest_dir)
        timestamps = {path.name: archive_timestamp(path) for path in archives}
        return self.classify([path.name for path in archives], timestamps)

    def apply(self, dest_dir: Path, dry_run: bool = False) -> RetentionResult:
        """
        Delete archives that fall outside every retention bucket.

        Per-file failures are logged and skipped.

        Args:
            dest_dir: Destination directory
            dry_run: Log intended deletions only

        Returns:
            RetentionResult
        """
        self.logger.info(
            f"Starting retention cleanup (daily:{self.daily_keep} weekly:{self.weekly_keep} "
            f"monthly:{self.monthly_keep}) in {dest_dir}"
        )

        plan = self.plan_for(dest_dir)
        result = RetentionResult(plan=plan)

        for name in plan.ignored:
            self.logger.warning(f"Keeping {name}: no timestamp could be determined")

        if not plan.delete:
            self.logger.info("No backups to delete by retention policy.")
            return result

        for name in plan.delete:
            if dry_run:
                self.logger.info(f"Dry run: would delete {name}")
                continue
            try:
                self._delete_archive(dest_dir / name)
            except DeleteFailed as e:
                self.logger.warning(str(e))
                result.failed.append(name)
            else:
                self.logger.info(f"Deleted old backup: {name}")
                result.deleted.append(name)

        return result

    def _delete_archive(self, archive_path: Path) -> None:
        try:
            archive_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise DeleteFailed(f"Failed to delete {archive_path.name}: {e}") from e

        for sidecar in sidecar_paths(archive_path):
            try:
                sidecar.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                self.logger.warning(f"Failed to delete {sidecar.name}: {e}")
