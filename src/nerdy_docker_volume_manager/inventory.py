"""Read-only views of engine images, containers and disk usage."""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from .models import ContainerUsage, DiskUsage, ImageSummary, ImageUse, VolumeUsage
from .runtime import ENGINE_ERRORS

UNTAGGED = "<none>"
T = TypeVar("T")

logger = logging.getLogger(__name__)


class InventoryError(RuntimeError):
    """Raised when the engine cannot answer an inventory query."""


def list_images(docker_client: Any, *, dangling_only: bool = False) -> list[ImageSummary]:
    filters = {"dangling": True} if dangling_only else None
    images = _engine_query(
        operation="list dangling images" if dangling_only else "list images",
        func=lambda: docker_client.images.list(filters=filters),
    )
    summaries = []
    for image in images or []:
        attrs = getattr(image, "attrs", None) or {}
        tags = list(getattr(image, "tags", None) or [])
        repository, tag = split_repo_tag(tags[0]) if tags else (UNTAGGED, UNTAGGED)
        summaries.append(
            ImageSummary(
                repository=repository,
                tag=tag,
                image_id=_short_id(getattr(image, "id", None) or attrs.get("Id", "")),
                size_bytes=_non_negative(attrs.get("Size")),
            )
        )
    return summaries


def images_in_use(docker_client: Any) -> list[ImageUse]:
    """Images referenced by any container, running or stopped."""
    containers = _engine_query(
        operation="list containers",
        func=lambda: docker_client.containers.list(all=True),
    )
    uses = []
    for container in containers or []:
        attrs = getattr(container, "attrs", None) or {}
        config = attrs.get("Config") or {}
        uses.append(
            ImageUse(
                image=config.get("Image") or attrs.get("Image") or UNTAGGED,
                container=getattr(container, "name", None) or attrs.get("Name", "").lstrip("/"),
                status=getattr(container, "status", None) or "unknown",
            )
        )
    return uses


def disk_usage(docker_client: Any) -> DiskUsage:
    report = _engine_query(operation="read disk usage", func=lambda: docker_client.df()) or {}

    images = []
    for entry in report.get("Images") or []:
        tags = [tag for tag in entry.get("RepoTags") or [] if tag != "<none>:<none>"]
        repository, tag = split_repo_tag(tags[0]) if tags else (UNTAGGED, UNTAGGED)
        images.append(
            ImageSummary(
                repository=repository,
                tag=tag,
                image_id=_short_id(entry.get("Id", "")),
                size_bytes=_non_negative(entry.get("Size")),
            )
        )

    containers = [
        ContainerUsage(
            name=((entry.get("Names") or [""])[0]).lstrip("/"),
            image=entry.get("Image") or UNTAGGED,
            size_bytes=_non_negative(entry.get("SizeRw")),
        )
        for entry in report.get("Containers") or []
    ]
    # The engine reports -1 for volumes whose size it has not computed.
    volumes = [
        VolumeUsage(name=entry.get("Name", ""), size_bytes=_non_negative((entry.get("UsageData") or {}).get("Size")))
        for entry in report.get("Volumes") or []
    ]
    build_cache = report.get("BuildCache") or []

    return DiskUsage(
        images=tuple(images),
        containers=tuple(containers),
        volumes=tuple(volumes),
        build_cache_entries=len(build_cache),
        build_cache_bytes=sum(_non_negative(entry.get("Size")) for entry in build_cache),
    )


def split_repo_tag(reference: str) -> tuple[str, str]:
    # A colon before the last slash belongs to a registry port, not a tag.
    repository, separator, tag = reference.rpartition(":")
    if not separator or "/" in tag:
        return reference, "latest"
    return repository, tag


def _short_id(image_id: str) -> str:
    return image_id[:19]


def _non_negative(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def _engine_query(*, operation: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ENGINE_ERRORS as error:
        logger.error("failed to %s: %s", operation, error)
        raise InventoryError(f"Docker request failed while trying to {operation}: {_error_message(error)}") from error


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
