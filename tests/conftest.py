from __future__ import annotations

from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from nerdy_docker_volume_manager import cli


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def wide_console(monkeypatch: pytest.MonkeyPatch) -> Console:
    # Tables are squeezed to 80 columns under the runner otherwise.
    console = Console(width=200)
    monkeypatch.setattr(cli, "console", console)
    return console


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "stack"
    project.mkdir()
    (project / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    (project / ".env").write_text("# media stack\nTZ=Europe/Berlin\n", encoding="utf-8")
    return project
