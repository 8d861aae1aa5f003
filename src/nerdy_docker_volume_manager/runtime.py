from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Any, Callable, Iterator, TypeVar

import docker
from docker.errors import DockerException, NotFound
from requests.exceptions import RequestException

from .models import VolumeRecord

BACKUP_LABEL = "backup.enable=true"
# docker-py lets transport failures through as plain requests errors.
ENGINE_ERRORS = (DockerException, RequestException)
T = TypeVar("T")

logger = logging.getLogger(__name__)


class RuntimeUnavailableError(RuntimeError):
    """Raised when the Docker engine cannot be reached."""


class VolumeDiscoveryError(RuntimeError):
    """Raised when volume listing or lookup cannot safely continue."""


class VolumeNotFoundError(VolumeDiscoveryError):
    def __init__(self, name: str) -> None:
        super().__init__(f"volume '{name}' does not exist")
        self.name = name


def load_docker_client(*, base_url: str | None = None) -> docker.DockerClient:
    try:
        if base_url:
            docker_client = docker.DockerClient(base_url=base_url)
        else:
            docker_client = docker.from_env()
    except ENGINE_ERRORS as error:
        raise RuntimeUnavailableError(_format_connection_error(base_url=base_url, error=error)) from error

    try:
        docker_client.ping()
    except ENGINE_ERRORS as error:
        docker_client.close()
        raise RuntimeUnavailableError(_format_connection_error(base_url=base_url, error=error)) from error
    return docker_client


@contextmanager
def runtime_session(*, base_url: str | None = None) -> Iterator[docker.DockerClient]:
    docker_client = load_docker_client(base_url=base_url)
    logger.debug("connected to docker engine at %s", base_url or "environment default")
    try:
        yield docker_client
    finally:
        docker_client.close()


def list_eligible_volumes(docker_client: Any) -> list[VolumeRecord]:
    volumes = _safe_runtime_call(
        operation=f"list volumes labelled '{BACKUP_LABEL}'",
        func=lambda: docker_client.volumes.list(filters={"label": BACKUP_LABEL}),
    )
    records = [_volume_record(volume) for volume in volumes or []]
    records.sort(key=lambda item: item.name)
    return records


def get_volume(docker_client: Any, name: str) -> VolumeRecord:
    try:
        volume = docker_client.volumes.get(name)
    except NotFound as error:
        raise VolumeNotFoundError(name) from error
    except ENGINE_ERRORS as error:
        raise VolumeDiscoveryError(
            f"Docker volume lookup failed while trying to inspect '{name}': {_error_message(error)}"
        ) from error
    return _volume_record(volume)


def ensure_volume(docker_client: Any, name: str) -> VolumeRecord:
    # The engine returns the existing volume when the name is already taken.
    volume = _safe_runtime_call(
        operation=f"create volume '{name}'",
        func=lambda: docker_client.volumes.create(name=name),
    )
    return _volume_record(volume)


def _volume_record(volume: Any) -> VolumeRecord:
    attrs = getattr(volume, "attrs", None) or {}
    return VolumeRecord(
        name=getattr(volume, "name", None) or attrs.get("Name", ""),
        driver=attrs.get("Driver") or "unknown",
        mountpoint=attrs.get("Mountpoint") or "",
        labels=dict(attrs.get("Labels") or {}),
    )


def _safe_runtime_call(*, operation: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ENGINE_ERRORS as error:
        raise VolumeDiscoveryError(
            f"Docker request failed while trying to {operation}: {_error_message(error)}. "
            "Confirm the engine is reachable and the socket is readable by this user."
        ) from error


def _format_connection_error(*, base_url: str | None, error: Exception) -> str:
    source = base_url or "DOCKER_HOST / default socket"
    return (
        f"Unable to reach the Docker engine at '{source}': {_error_message(error)}. "
        "Verify the daemon is running and this user may access its socket."
    )


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
