from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable

from .runtime import ENGINE_ERRORS

logger = logging.getLogger(__name__)


@dataclass
class PruneReport:
    completed: list[str] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)
    deleted: dict[str, int] = field(default_factory=dict)
    space_reclaimed: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


def prune_unused_resources(docker_client: Any) -> PruneReport:
    """Remove stopped containers, unused networks, unused images and build cache.

    Volumes are never touched. A failing step is recorded and the remaining
    steps still run.
    """
    steps: list[tuple[str, str, Callable[[], dict[str, Any]]]] = [
        ("containers", "ContainersDeleted", lambda: docker_client.containers.prune()),
        ("networks", "NetworksDeleted", lambda: docker_client.networks.prune()),
        ("images", "ImagesDeleted", lambda: docker_client.images.prune(filters={"dangling": False})),
        ("build cache", "CachesDeleted", lambda: docker_client.api.prune_builds()),
    ]

    report = PruneReport()
    for name, deleted_key, func in steps:
        try:
            response = func() or {}
        except ENGINE_ERRORS as error:
            reason = str(error).strip() or error.__class__.__name__
            logger.error("pruning %s failed: %s", name, reason)
            report.failures.append((name, reason))
            continue
        report.completed.append(name)
        report.deleted[name] = len(response.get(deleted_key) or [])
        report.space_reclaimed += int(response.get("SpaceReclaimed") or 0)
        logger.info("pruned %s: %d removed", name, report.deleted[name])
    return report


class PruneError(RuntimeError):
    """Raised when a single targeted prune request fails."""


@dataclass(frozen=True)
class ImagePruneOutcome:
    deleted: int
    space_reclaimed: int


def prune_images(
    docker_client: Any,
    *,
    dangling_only: bool = False,
    older_than_days: int | None = None,
) -> ImagePruneOutcome:
    """Prune images not used by any container.

    ``dangling_only`` limits the prune to untagged images. ``older_than_days``
    limits it to images created more than that many days ago.
    """
    filters: dict[str, Any] = {"dangling": dangling_only}
    if older_than_days is not None:
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        filters["until"] = f"{older_than_days * 24}h"

    try:
        response = docker_client.images.prune(filters=filters) or {}
    except ENGINE_ERRORS as error:
        reason = str(error).strip() or error.__class__.__name__
        raise PruneError(f"pruning images failed: {reason}") from error

    outcome = ImagePruneOutcome(
        deleted=len(response.get("ImagesDeleted") or []),
        space_reclaimed=int(response.get("SpaceReclaimed") or 0),
    )
    logger.info("pruned images with filters %s: %d removed", filters, outcome.deleted)
    return outcome
