from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator
import os
import uuid

import docker
from docker.errors import DockerException, NotFound
import pytest

_ENV_RUN_FLAG = "NDVM_RUN_DOCKER_INTEGRATION"
HELPER_IMAGE = "alpine:3.20"


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DockerHarness:
    docker_client: docker.DockerClient
    source_volume: str
    restore_volume: str

    def run_shell(self, volume: str, script: str) -> str:
        output = self.docker_client.containers.run(
            HELPER_IMAGE,
            ["sh", "-c", script],
            volumes={volume: {"bind": "/data", "mode": "rw"}},
            remove=True,
        )
        return output.decode("utf-8")


@pytest.fixture(scope="session")
def docker_harness() -> Iterator[DockerHarness]:
    if not _flag_enabled(os.getenv(_ENV_RUN_FLAG)):
        pytest.skip(
            f"Docker integration tests are disabled by default. Set {_ENV_RUN_FLAG}=1 to run them.",
            allow_module_level=True,
        )

    try:
        docker_client = docker.from_env()
        docker_client.ping()
    except DockerException as error:
        pytest.skip(f"Docker daemon is not reachable for integration tests: {error}.", allow_module_level=True)

    suffix = uuid.uuid4().hex[:8]
    harness = DockerHarness(
        docker_client=docker_client,
        source_volume=f"ndvm-it-source-{suffix}",
        restore_volume=f"ndvm-it-restore-{suffix}",
    )
    docker_client.volumes.create(name=harness.source_volume, labels={"backup.enable": "true"})
    try:
        yield harness
    finally:
        for name in (harness.source_volume, harness.restore_volume):
            try:
                docker_client.volumes.get(name).remove(force=True)
            except NotFound:
                pass
        docker_client.close()
