from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
import logging
import shutil

from .models import SweepResult

logger = logging.getLogger(__name__)


def sweep_archive_sets(root: Path, keep_days: int, *, now: datetime | None = None) -> SweepResult:
    """Delete archive set directories whose mtime is strictly older than ``keep_days``."""
    if keep_days < 0:
        raise ValueError("keep_days must be >= 0")
    if not root.is_dir():
        logger.info("backup directory %s does not exist; nothing to sweep", root)
        return SweepResult()

    cutoff = (now or datetime.now()) - timedelta(days=keep_days)
    removed: list[str] = []
    failures: list[tuple[str, str]] = []

    for entry in sorted(root.iterdir()):
        try:
            if not entry.is_dir() or entry.is_symlink():
                continue
            modified_at = datetime.fromtimestamp(entry.stat().st_mtime)
        except OSError as error:
            failures.append((entry.name, _error_message(error)))
            continue

        if modified_at >= cutoff:
            continue

        try:
            shutil.rmtree(entry)
        except OSError as error:
            logger.error("removing %s failed: %s", entry, _error_message(error))
            failures.append((entry.name, _error_message(error)))
            continue
        logger.info("removed archive set %s", entry.name)
        removed.append(entry.name)

    return SweepResult(removed=tuple(removed), failures=tuple(failures))


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
