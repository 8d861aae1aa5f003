from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import shlex
from typing import Any, Callable

from .backup import ARCHIVE_SUFFIX, DESTINATION_MOUNT, SOURCE_MOUNT
from .confirm import confirm_yes_no
from .images import ImageCache
from .models import Binding, RestoreOutcome
from .runtime import ensure_volume
from .task import TaskRunner

logger = logging.getLogger(__name__)

Confirm = Callable[[str, bool], bool]


@dataclass(frozen=True)
class RestoreManagerConfig:
    helper_image: str


class ArchiveNotFoundError(RuntimeError):
    def __init__(self, path: Path) -> None:
        super().__init__(f"backup file not found: {path}")
        self.path = path


class RestoreManager:
    """Replaces the contents of a volume with the contents of one archive.

    The helper clears the volume and then extracts into it. The two steps are
    not atomic: if the helper dies in between, the volume is left empty or
    partially populated and the restore has to be run again.
    """

    def __init__(
        self,
        *,
        docker_client: Any,
        image_cache: ImageCache,
        config: RestoreManagerConfig,
        task_runner: TaskRunner | None = None,
    ) -> None:
        self.docker_client = docker_client
        self.image_cache = image_cache
        self.config = config
        self.task_runner = task_runner or TaskRunner(docker_client)

    def restore(
        self,
        archive_file: Path | str,
        volume_name: str | None = None,
        *,
        force: bool = False,
        confirm: Confirm = confirm_yes_no,
    ) -> RestoreOutcome:
        archive_path = Path(archive_file).expanduser()
        if not archive_path.is_file():
            raise ArchiveNotFoundError(archive_path)

        target = volume_name or derive_volume_name(archive_path)
        if not confirm(f"This will REPLACE all data in volume '{target}'. Are you sure?", force):
            logger.info("restore of %s cancelled by operator", target)
            return RestoreOutcome(volume_name=target, archive_path=archive_path, restored=False)

        absolute_archive = archive_path.resolve()
        ensure_volume(self.docker_client, target)
        self.image_cache.ensure(self.config.helper_image)

        logger.info("restoring volume %s from %s", target, absolute_archive)
        self.task_runner.run(
            image=self.config.helper_image,
            command=restore_command(absolute_archive.name),
            bindings=[
                Binding(source=target, target=SOURCE_MOUNT, read_only=False),
                Binding(source=str(absolute_archive.parent), target=DESTINATION_MOUNT, read_only=True),
            ],
            purpose="restore",
            subject=target,
        )
        return RestoreOutcome(volume_name=target, archive_path=absolute_archive, restored=True)


def derive_volume_name(archive_path: Path | str) -> str:
    base_name = Path(archive_path).name
    volume_name = base_name[: -len(ARCHIVE_SUFFIX)] if base_name.endswith(ARCHIVE_SUFFIX) else base_name
    if not volume_name:
        # Docker would treat an empty name as a request for an anonymous volume.
        raise ValueError(f"cannot derive a volume name from {base_name!r}; pass the volume name explicitly")
    return volume_name


def restore_command(archive_name: str) -> list[str]:
    archive = shlex.quote(f"{DESTINATION_MOUNT}/{archive_name}")
    script = f"find {SOURCE_MOUNT} -mindepth 1 -delete && tar xzf {archive} -C {SOURCE_MOUNT}"
    return ["sh", "-c", script]
