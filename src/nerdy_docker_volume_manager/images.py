from __future__ import annotations

from contextlib import closing
import logging
from typing import Any

from docker.errors import ImageNotFound

from .runtime import ENGINE_ERRORS

logger = logging.getLogger(__name__)


class ImagePullError(RuntimeError):
    def __init__(self, image_ref: str, reason: str) -> None:
        super().__init__(f"pulling image '{image_ref}' failed: {reason.strip() or 'unknown error'}")
        self.image_ref = image_ref


class ImageCache:
    """Makes sure helper images are present locally before a job starts tasks."""

    def __init__(self, docker_client: Any) -> None:
        self.docker_client = docker_client
        self._warm: set[str] = set()

    def ensure(self, image_ref: str) -> None:
        if image_ref in self._warm:
            return

        try:
            self.docker_client.images.get(image_ref)
        except ImageNotFound:
            self._pull(image_ref)
        except ENGINE_ERRORS as error:
            raise ImagePullError(image_ref, _error_message(error)) from error
        else:
            logger.debug("image %s already present", image_ref)

        self._warm.add(image_ref)

    def _pull(self, image_ref: str) -> None:
        logger.info("pulling image %s", image_ref)
        try:
            progress = self.docker_client.api.pull(image_ref, stream=True, decode=True)
            # The pull only completes once the progress stream has been read to the end.
            with closing(progress):
                for event in progress:
                    if isinstance(event, dict) and event.get("error"):
                        raise ImagePullError(image_ref, str(event["error"]))
        except ENGINE_ERRORS as error:
            raise ImagePullError(image_ref, _error_message(error)) from error


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
