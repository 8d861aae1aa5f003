from __future__ import annotations

from pathlib import Path

from .backup import ARCHIVE_SUFFIX
from .models import ArchiveSetSummary


def list_archive_sets(root: Path) -> list[ArchiveSetSummary]:
    if not root.is_dir():
        return []

    summaries: list[ArchiveSetSummary] = []
    for entry in sorted(root.iterdir()):
        if not entry.is_dir():
            continue
        archives = [path for path in entry.glob(f"*{ARCHIVE_SUFFIX}") if path.is_file()]
        if not archives:
            continue
        summaries.append(
            ArchiveSetSummary(
                name=entry.name,
                path=entry,
                file_count=len(archives),
                total_bytes=sum(_size_or_zero(path) for path in archives),
            )
        )
    return summaries


def format_size(size_bytes: int) -> str:
    unit = 1024
    if size_bytes < unit:
        return f"{size_bytes}B"
    value = float(size_bytes)
    for prefix in "KMGTPE":
        value /= unit
        if value < unit or prefix == "E":
            return f"{value:.1f}{prefix}iB"
    return f"{size_bytes}B"


def _size_or_zero(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0
