from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
import hashlib
import logging
from typing import Any, Callable

from .images import ImageCache
from .models import BackupResult, BackupRun, Binding, VolumeRecord
from .runtime import VolumeDiscoveryError, get_volume, list_eligible_volumes
from .task import TaskError, TaskRunner

ARCHIVE_SET_FORMAT = "%Y%m%d_%H%M%S"
ARCHIVE_SUFFIX = ".tar.gz"
SOURCE_MOUNT = "/data"
DESTINATION_MOUNT = "/backup"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupManagerConfig:
    backup_dir: Path
    helper_image: str


@dataclass
class BackupCallbacks:
    """Progress hooks so the caller can render without the job knowing how."""

    on_volume_start: Callable[[int, int, str], None] | None = None  # index, total, volume name
    on_volume_complete: Callable[[BackupResult], None] | None = None


class BackupStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class ArchiveSetError(RuntimeError):
    """Raised when the archive set directory for a run cannot be created."""


class BackupManager:
    def __init__(
        self,
        *,
        docker_client: Any,
        image_cache: ImageCache,
        config: BackupManagerConfig,
        task_runner: TaskRunner | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.docker_client = docker_client
        self.image_cache = image_cache
        self.config = config
        self.task_runner = task_runner or TaskRunner(docker_client)
        self.clock = clock

    def backup_all(self, callbacks: BackupCallbacks | None = None) -> BackupRun:
        volumes = list_eligible_volumes(self.docker_client)
        if not volumes:
            logger.warning("no volumes carry the backup label; nothing to do")
            return BackupRun(archive_set=None)
        return self.backup_many(volumes, callbacks=callbacks)

    def backup_volume(self, volume_name: str, callbacks: BackupCallbacks | None = None) -> BackupRun:
        # Named backups skip the label filter; existence is checked per volume.
        volume = VolumeRecord(name=volume_name, driver="", mountpoint="")
        return self.backup_many([volume], callbacks=callbacks, verify_exists=True)

    def backup_many(
        self,
        volumes: list[VolumeRecord],
        *,
        callbacks: BackupCallbacks | None = None,
        verify_exists: bool = False,
    ) -> BackupRun:
        callbacks = callbacks or BackupCallbacks()
        archive_set = self.create_archive_set()
        self.image_cache.ensure(self.config.helper_image)

        results: list[BackupResult] = []
        total = len(volumes)
        for index, volume in enumerate(volumes, start=1):
            if callbacks.on_volume_start:
                callbacks.on_volume_start(index, total, volume.name)
            result = self.backup_one(volume.name, archive_set, verify_exists=verify_exists)
            if result.status != "success":
                logger.error("backup of volume %s failed: %s", volume.name, result.message)
            if callbacks.on_volume_complete:
                callbacks.on_volume_complete(result)
            results.append(result)

        return BackupRun(archive_set=archive_set, results=tuple(results))

    def create_archive_set(self) -> Path:
        archive_set = self.config.backup_dir.resolve() / self.clock().strftime(ARCHIVE_SET_FORMAT)
        try:
            archive_set.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise ArchiveSetError(f"creating backup directory {archive_set} failed: {_error_message(error)}") from error
        logger.info("archive set directory: %s", archive_set)
        return archive_set

    def backup_one(self, volume_name: str, archive_set: Path, *, verify_exists: bool = False) -> BackupResult:
        started_at = _utc_now_iso()
        archive_path = archive_set / archive_file_name(volume_name)
        status = "failed"
        size_bytes: int | None = None
        checksum_sha256: str | None = None
        message = ""

        try:
            if verify_exists:
                self._lookup_volume(volume_name)
            self._run_archive_task(volume_name=volume_name, archive_set=archive_set)
            size_bytes, checksum_sha256 = self._validate_archive_and_checksum(local_archive_path=archive_path)
            status = "success"
        except (BackupStageError, TaskError) as error:
            message = str(error)
        except Exception as error:  # pylint: disable=broad-except
            message = f"unexpected backup failure: {_error_message(error)}"

        if status != "success":
            cleanup_failure = _discard_partial_archive(archive_path)
            if cleanup_failure:
                message = f"{message}; {cleanup_failure}"

        return BackupResult(
            volume_name=volume_name,
            status=status,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            archive_path=str(archive_path) if status == "success" else None,
            size_bytes=size_bytes,
            checksum_sha256=checksum_sha256,
            message=message,
        )

    def _lookup_volume(self, volume_name: str) -> None:
        try:
            get_volume(self.docker_client, volume_name)
        except VolumeDiscoveryError as error:
            raise BackupStageError(stage="lookup", reason=str(error)) from error

    def _run_archive_task(self, *, volume_name: str, archive_set: Path) -> None:
        logger.info("backing up volume %s", volume_name)
        self.task_runner.run(
            image=self.config.helper_image,
            command=archive_command(volume_name),
            bindings=[
                Binding(source=volume_name, target=SOURCE_MOUNT, read_only=True),
                Binding(source=str(archive_set), target=DESTINATION_MOUNT, read_only=False),
            ],
            purpose="backup",
            subject=volume_name,
        )

    def _validate_archive_and_checksum(self, *, local_archive_path: Path) -> tuple[int, str]:
        try:
            if not local_archive_path.exists():
                raise RuntimeError(f"archive not found at {local_archive_path}")
            size_bytes = local_archive_path.stat().st_size
            if size_bytes <= 0:
                raise RuntimeError(f"archive is empty at {local_archive_path}")
            return size_bytes, _sha256(local_archive_path)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="verify", reason=_error_message(error)) from error


def archive_file_name(volume_name: str) -> str:
    return f"{volume_name}{ARCHIVE_SUFFIX}"


def archive_command(volume_name: str) -> list[str]:
    return ["tar", "czf", f"{DESTINATION_MOUNT}/{archive_file_name(volume_name)}", "-C", SOURCE_MOUNT, "."]


def _discard_partial_archive(archive_path: Path) -> str | None:
    try:
        archive_path.unlink(missing_ok=True)
        return None
    except OSError as error:
        return f"cleanup stage failed: {_error_message(error)}"


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as file_handle:
        for chunk in iter(lambda: file_handle.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
