from __future__ import annotations

from datetime import datetime
import hashlib
from pathlib import Path
from types import SimpleNamespace
from typing import Sequence
from unittest.mock import Mock

import pytest
from docker.errors import NotFound

from nerdy_docker_volume_manager.backup import (
    ArchiveSetError,
    BackupCallbacks,
    BackupManager,
    BackupManagerConfig,
    archive_command,
)
from nerdy_docker_volume_manager.images import ImagePullError
from nerdy_docker_volume_manager.models import Binding, VolumeRecord
from nerdy_docker_volume_manager.task import NonZeroExitError, TaskStageError

_FIXED_NOW = datetime(2026, 2, 23, 10, 15, 0)


def _volume_record(name: str) -> VolumeRecord:
    return VolumeRecord(
        name=name,
        driver="local",
        mountpoint=f"/var/lib/docker/volumes/{name}/_data",
        labels={"backup.enable": "true"},
    )


class _FakeTaskRunner:
    """Writes the archive the real tar helper would have produced."""

    def __init__(self, *, failures: dict[str, Exception] | None = None, partial_on_failure: bool = False) -> None:
        self.failures = failures or {}
        self.partial_on_failure = partial_on_failure
        self.calls: list[dict[str, object]] = []

    def run(self, *, image: str, command: Sequence[str], bindings: Sequence[Binding], purpose: str, subject: str) -> int:
        self.calls.append({"image": image, "command": list(command), "bindings": list(bindings), "subject": subject})
        destination = Path(next(binding.source for binding in bindings if not binding.read_only))
        archive = destination / f"{subject}.tar.gz"
        failure = self.failures.get(subject)
        if failure is not None:
            if self.partial_on_failure:
                archive.write_bytes(b"partial")
            raise failure
        archive.write_bytes(f"archive-of-{subject}".encode())
        return 0


def _backup_manager(
    tmp_path: Path,
    *,
    volumes: list[VolumeRecord] | None = None,
    task_runner: object | None = None,
) -> BackupManager:
    docker_client = Mock()
    docker_client.volumes.list.return_value = [
        SimpleNamespace(
            name=volume.name,
            attrs={"Name": volume.name, "Driver": volume.driver, "Mountpoint": volume.mountpoint, "Labels": volume.labels},
        )
        for volume in volumes or []
    ]
    return BackupManager(
        docker_client=docker_client,
        image_cache=Mock(),
        config=BackupManagerConfig(backup_dir=tmp_path / "backups", helper_image="alpine:3.20"),
        task_runner=task_runner or _FakeTaskRunner(),  # type: ignore[arg-type]
        clock=lambda: _FIXED_NOW,
    )


def test_backup_all_with_labelled_volumes_creates_one_archive_per_volume(tmp_path: Path) -> None:
    volumes = [_volume_record("plex_config"), _volume_record("radarr_config")]
    manager = _backup_manager(tmp_path, volumes=volumes)

    run = manager.backup_all()

    assert run.archive_set == (tmp_path / "backups" / "20260223_101500").resolve()
    assert sorted(path.name for path in run.archive_set.iterdir()) == ["plex_config.tar.gz", "radarr_config.tar.gz"]
    assert (run.attempted, run.succeeded, run.failed) == (2, 2, 0)
    manager.image_cache.ensure.assert_called_once_with("alpine:3.20")


def test_backup_all_with_failure_on_second_of_three_volumes_still_backs_up_the_third(tmp_path: Path) -> None:
    volumes = [_volume_record("a_config"), _volume_record("b_config"), _volume_record("c_config")]
    runner = _FakeTaskRunner(failures={"b_config": NonZeroExitError(2, "tar: read error")})
    manager = _backup_manager(tmp_path, volumes=volumes, task_runner=runner)

    run = manager.backup_all()

    assert [result.status for result in run.results] == ["success", "failed", "success"]
    assert (run.attempted, run.succeeded, run.failed) == (3, 2, 1)
    assert run.archive_set is not None
    assert sorted(path.name for path in run.archive_set.iterdir()) == ["a_config.tar.gz", "c_config.tar.gz"]
    assert "exit stage failed" in run.results[1].message
    assert run.results[1].archive_path is None


def test_backup_one_with_failed_task_removes_partial_archive(tmp_path: Path) -> None:
    runner = _FakeTaskRunner(
        failures={"plex_config": TaskStageError(stage="wait", reason="connection reset")},
        partial_on_failure=True,
    )
    manager = _backup_manager(tmp_path, task_runner=runner)
    archive_set = manager.create_archive_set()

    result = manager.backup_one("plex_config", archive_set)

    assert result.status == "failed"
    assert "wait stage failed: connection reset" in result.message
    assert not (archive_set / "plex_config.tar.gz").exists()


def test_backup_one_with_success_records_size_and_checksum(tmp_path: Path) -> None:
    manager = _backup_manager(tmp_path)
    archive_set = manager.create_archive_set()

    result = manager.backup_one("plex_config", archive_set)

    payload = b"archive-of-plex_config"
    assert result.status == "success"
    assert result.message == ""
    assert result.archive_path == str(archive_set / "plex_config.tar.gz")
    assert result.size_bytes == len(payload)
    assert result.checksum_sha256 == hashlib.sha256(payload).hexdigest()


def test_backup_one_with_empty_archive_returns_verify_stage_failure(tmp_path: Path) -> None:
    runner = Mock()
    runner.run.side_effect = lambda **kwargs: (Path(kwargs["bindings"][1].source) / "plex_config.tar.gz").write_bytes(b"")
    manager = _backup_manager(tmp_path, task_runner=runner)
    archive_set = manager.create_archive_set()

    result = manager.backup_one("plex_config", archive_set)

    assert result.status == "failed"
    assert "verify stage failed: archive is empty" in result.message
    assert not (archive_set / "plex_config.tar.gz").exists()


def test_backup_one_mounts_volume_read_only_and_archive_set_read_write(tmp_path: Path) -> None:
    runner = _FakeTaskRunner()
    manager = _backup_manager(tmp_path, task_runner=runner)
    archive_set = manager.create_archive_set()

    manager.backup_one("plex_config", archive_set)

    call = runner.calls[0]
    assert call["image"] == "alpine:3.20"
    assert call["command"] == archive_command("plex_config")
    assert call["bindings"] == [
        Binding(source="plex_config", target="/data", read_only=True),
        Binding(source=str(archive_set), target="/backup", read_only=False),
    ]


def test_archive_command_compresses_whole_source_tree_into_named_file() -> None:
    assert archive_command("plex_config") == ["tar", "czf", "/backup/plex_config.tar.gz", "-C", "/data", "."]


def test_backup_all_with_no_labelled_volumes_returns_empty_run_without_side_effects(tmp_path: Path) -> None:
    runner = _FakeTaskRunner()
    manager = _backup_manager(tmp_path, volumes=[], task_runner=runner)

    run = manager.backup_all()

    assert run.archive_set is None
    assert run.attempted == 0
    assert not (tmp_path / "backups").exists()
    manager.image_cache.ensure.assert_not_called()
    assert runner.calls == []


def test_backup_many_with_uncreatable_archive_set_raises_before_any_task(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    runner = _FakeTaskRunner()
    manager = BackupManager(
        docker_client=Mock(),
        image_cache=Mock(),
        config=BackupManagerConfig(backup_dir=blocker / "backups", helper_image="alpine:3.20"),
        task_runner=runner,  # type: ignore[arg-type]
        clock=lambda: _FIXED_NOW,
    )

    with pytest.raises(ArchiveSetError, match="creating backup directory"):
        manager.backup_many([_volume_record("plex_config")])

    assert runner.calls == []


def test_backup_many_with_image_pull_failure_aborts_before_any_task(tmp_path: Path) -> None:
    runner = _FakeTaskRunner()
    manager = _backup_manager(tmp_path, task_runner=runner)
    manager.image_cache.ensure.side_effect = ImagePullError("alpine:3.20", "registry unreachable")

    with pytest.raises(ImagePullError):
        manager.backup_many([_volume_record("plex_config")])

    assert runner.calls == []


def test_backup_volume_bypasses_label_filter(tmp_path: Path) -> None:
    manager = _backup_manager(tmp_path)
    manager.docker_client.volumes.get.return_value = SimpleNamespace(
        name="unlabelled_data",
        attrs={"Name": "unlabelled_data", "Driver": "local", "Mountpoint": "", "Labels": None},
    )

    run = manager.backup_volume("unlabelled_data")

    manager.docker_client.volumes.list.assert_not_called()
    manager.docker_client.volumes.get.assert_called_once_with("unlabelled_data")
    assert run.succeeded == 1
    assert run.archive_set is not None
    assert (run.archive_set / "unlabelled_data.tar.gz").exists()


def test_backup_volume_with_unknown_volume_returns_lookup_failure_without_task(tmp_path: Path) -> None:
    runner = _FakeTaskRunner()
    manager = _backup_manager(tmp_path, task_runner=runner)
    manager.docker_client.volumes.get.side_effect = NotFound("no such volume")

    run = manager.backup_volume("typo_config")

    assert run.failed == 1
    assert "lookup stage failed: volume 'typo_config' does not exist" in run.results[0].message
    assert runner.calls == []


def test_backup_one_with_unexpected_error_returns_unexpected_failure_message(tmp_path: Path) -> None:
    runner = Mock()
    runner.run.side_effect = ValueError("unexpected blowup")
    manager = _backup_manager(tmp_path, task_runner=runner)

    result = manager.backup_one("plex_config", manager.create_archive_set())

    assert result.status == "failed"
    assert "unexpected backup failure: unexpected blowup" in result.message


def test_backup_many_reports_progress_through_callbacks(tmp_path: Path) -> None:
    runner = _FakeTaskRunner(failures={"b_config": NonZeroExitError(1)})
    manager = _backup_manager(tmp_path, task_runner=runner)
    started: list[tuple[int, int, str]] = []
    completed: list[tuple[str, str]] = []

    manager.backup_many(
        [_volume_record("a_config"), _volume_record("b_config")],
        callbacks=BackupCallbacks(
            on_volume_start=lambda index, total, name: started.append((index, total, name)),
            on_volume_complete=lambda result: completed.append((result.volume_name, result.status)),
        ),
    )

    assert started == [(1, 2, "a_config"), (2, 2, "b_config")]
    assert completed == [("a_config", "success"), ("b_config", "failed")]
