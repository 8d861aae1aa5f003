from __future__ import annotations

from datetime import datetime
import logging
import re
from typing import Any, Sequence
import uuid

from docker.errors import NotFound

from .models import Binding
from .runtime import ENGINE_ERRORS

HELPER_LABELS = {"app": "nerdy-docker-volume-manager"}

logger = logging.getLogger(__name__)


class TaskError(RuntimeError):
    """Base class for failures of a single helper container run."""


class TaskStageError(TaskError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class NonZeroExitError(TaskError):
    def __init__(self, exit_code: int, detail: str = "") -> None:
        message = f"exit stage failed: command exited with status {exit_code}"
        if detail.strip():
            message = f"{message} ({detail.strip()})"
        super().__init__(message)
        self.stage = "exit"
        self.exit_code = exit_code


class TaskRunner:
    """Runs one command in a short-lived helper container.

    Every container this runner creates is removed before ``run`` returns,
    whether the command succeeded, failed, or the engine errored midway.
    """

    def __init__(self, docker_client: Any) -> None:
        self.docker_client = docker_client

    def run(
        self,
        *,
        image: str,
        command: Sequence[str],
        bindings: Sequence[Binding],
        purpose: str = "task",
        subject: str = "",
    ) -> int:
        container = None
        try:
            container = self._create(
                image=image,
                command=command,
                bindings=bindings,
                name=helper_container_name(purpose, subject),
                purpose=purpose,
            )
            self._start(container)
            exit_code, detail = self._wait(container)
        finally:
            if container is not None:
                self._remove(container)

        if exit_code != 0:
            raise NonZeroExitError(exit_code, detail)
        return exit_code

    def _create(
        self,
        *,
        image: str,
        command: Sequence[str],
        bindings: Sequence[Binding],
        name: str,
        purpose: str,
    ) -> Any:
        try:
            container = self.docker_client.containers.create(
                image,
                command=list(command),
                name=name,
                labels={**HELPER_LABELS, "component": f"{purpose}-helper"},
                volumes=docker_volume_spec(bindings),
            )
        except ENGINE_ERRORS as error:
            # The engine may have created the container before the client lost track of it.
            self._remove_by_name(name)
            raise TaskStageError(stage="create", reason=_error_message(error)) from error
        logger.debug("created helper container %s from %s", name, image)
        return container

    def _start(self, container: Any) -> None:
        try:
            container.start()
        except ENGINE_ERRORS as error:
            raise TaskStageError(stage="start", reason=_error_message(error)) from error

    def _wait(self, container: Any) -> tuple[int, str]:
        try:
            response = container.wait()
        except ENGINE_ERRORS as error:
            raise TaskStageError(stage="wait", reason=_error_message(error)) from error

        exit_code = int(response.get("StatusCode", -1))
        wait_error = response.get("Error") or {}
        detail = wait_error.get("Message", "") if isinstance(wait_error, dict) else str(wait_error)
        if exit_code != 0 and not detail:
            detail = self._tail_logs(container)
        logger.debug("helper container %s exited with status %s", _container_label(container), exit_code)
        return exit_code, detail

    def _tail_logs(self, container: Any) -> str:
        try:
            raw = container.logs(stdout=False, stderr=True, tail=5)
        except ENGINE_ERRORS:
            return ""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return " | ".join(line.strip() for line in str(raw).splitlines() if line.strip())

    def _remove_by_name(self, name: str) -> None:
        try:
            container = self.docker_client.containers.get(name)
        except NotFound:
            return
        except ENGINE_ERRORS as error:
            logger.warning("failed to look up helper container %s for removal: %s", name, _error_message(error))
            return
        self._remove(container)

    def _remove(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            return
        except ENGINE_ERRORS as error:
            logger.warning(
                "failed to remove helper container %s: %s",
                _container_label(container),
                _error_message(error),
            )


def docker_volume_spec(bindings: Sequence[Binding]) -> dict[str, dict[str, str]]:
    return {binding.source: {"bind": binding.target, "mode": binding.mode} for binding in bindings}


def helper_container_name(purpose: str, subject: str = "") -> str:
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    base = "-".join(part for part in ("ndvm", purpose, subject, timestamp) if part)
    return f"{_sanitize_container_name(base, max_length=54)}-{uuid.uuid4().hex[:8]}"


def _sanitize_container_name(value: str, max_length: int) -> str:
    normalized = re.sub(r"[^a-zA-Z0-9_.-]", "-", value).strip("-._")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-._")
    return normalized or "ndvm"


def _container_label(container: Any) -> str:
    return getattr(container, "name", None) or getattr(container, "id", None) or "<unknown>"


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
