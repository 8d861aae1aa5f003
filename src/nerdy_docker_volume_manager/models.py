from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class VolumeRecord:
    name: str
    driver: str
    mountpoint: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Binding:
    source: str
    target: str
    read_only: bool = True

    @property
    def mode(self) -> str:
        return "ro" if self.read_only else "rw"


@dataclass(frozen=True)
class BackupResult:
    volume_name: str
    status: str
    started_at: str
    finished_at: str
    archive_path: str | None = None
    size_bytes: int | None = None
    checksum_sha256: str | None = None
    message: str = ""


@dataclass(frozen=True)
class BackupRun:
    archive_set: Path | None
    results: tuple[BackupResult, ...] = ()

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.status == "success")

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded


@dataclass(frozen=True)
class RestoreOutcome:
    volume_name: str
    archive_path: Path
    restored: bool


@dataclass(frozen=True)
class ArchiveSetSummary:
    name: str
    path: Path
    file_count: int
    total_bytes: int


@dataclass(frozen=True)
class SweepResult:
    removed: tuple[str, ...] = ()
    failures: tuple[tuple[str, str], ...] = ()

    @property
    def removed_count(self) -> int:
        return len(self.removed)


@dataclass(frozen=True)
class ImageSummary:
    repository: str
    tag: str
    image_id: str
    size_bytes: int


@dataclass(frozen=True)
class ImageUse:
    image: str
    container: str
    status: str


@dataclass(frozen=True)
class ContainerUsage:
    name: str
    image: str
    size_bytes: int


@dataclass(frozen=True)
class VolumeUsage:
    name: str
    size_bytes: int


@dataclass(frozen=True)
class DiskUsage:
    images: tuple[ImageSummary, ...] = ()
    containers: tuple[ContainerUsage, ...] = ()
    volumes: tuple[VolumeUsage, ...] = ()
    build_cache_entries: int = 0
    build_cache_bytes: int = 0

    @property
    def images_bytes(self) -> int:
        return sum(image.size_bytes for image in self.images)

    @property
    def containers_bytes(self) -> int:
        return sum(container.size_bytes for container in self.containers)

    @property
    def volumes_bytes(self) -> int:
        return sum(volume.size_bytes for volume in self.volumes)
