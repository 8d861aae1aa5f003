from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import re
from typing import Mapping

from dotenv import dotenv_values, set_key

COMPOSE_FILE_NAME = "docker-compose.yml"
ENV_FILE_NAME = ".env"
PROJECT_DIR_ENV = "NDVM_PROJECT_DIR"
DEFAULT_HELPER_IMAGE = "alpine:3.20"
_ENV_KEY = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class ProjectDirError(RuntimeError):
    """Raised when no stack project directory can be located."""


@dataclass(frozen=True)
class AppConfig:
    project_dir: Path
    env_file: Path
    backup_dir: Path
    helper_image: str = DEFAULT_HELPER_IMAGE
    docker_host: str | None = None


def resolve_project_dir(
    flag_value: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> Path:
    environ = os.environ if environ is None else environ

    if flag_value:
        return _require_compose_file(Path(flag_value), source="--project-dir")

    env_dir = environ.get(PROJECT_DIR_ENV, "").strip()
    if env_dir:
        return _require_compose_file(Path(env_dir), source=PROJECT_DIR_ENV)

    start = (cwd or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if (candidate / COMPOSE_FILE_NAME).is_file():
            return candidate

    raise ProjectDirError(
        f"{COMPOSE_FILE_NAME} not found in {start} or any parent directory "
        f"(use --project-dir or set {PROJECT_DIR_ENV})"
    )


def load_config(project_dir: Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    environ = os.environ if environ is None else environ
    env_file = project_dir / ENV_FILE_NAME
    dotenv = read_env_file(env_file)

    def setting(*keys: str) -> str | None:
        # Process environment wins over .env, matching compose.
        for key in keys:
            value = environ.get(key, "").strip()
            if value:
                return value
        for key in keys:
            value = (dotenv.get(key) or "").strip()
            if value:
                return value
        return None

    backup_dir = Path(setting("NDVM_BACKUP_DIR", "BACKUP_DIR") or project_dir / "backups").expanduser()
    if not backup_dir.is_absolute():
        backup_dir = project_dir / backup_dir

    return AppConfig(
        project_dir=project_dir,
        env_file=env_file,
        backup_dir=backup_dir,
        helper_image=setting("NDVM_HELPER_IMAGE") or DEFAULT_HELPER_IMAGE,
        docker_host=setting("NDVM_DOCKER_HOST"),
    )


def read_env_file(env_file: Path) -> dict[str, str]:
    # A missing file reads as empty; bare keys without "=" read as "".
    return {key: value or "" for key, value in dotenv_values(env_file).items()}


def set_env_value(env_file: Path, key: str, value: str) -> None:
    """Set ``key`` in place, or append it, leaving comments and order untouched."""
    if not _ENV_KEY.fullmatch(key):
        raise ValueError(f"invalid environment key: {key!r}")
    env_file.touch(exist_ok=True)
    set_key(env_file, key, value, quote_mode="auto")


def _require_compose_file(path: Path, *, source: str) -> Path:
    resolved = path.expanduser().resolve()
    if not (resolved / COMPOSE_FILE_NAME).is_file():
        raise ProjectDirError(f"{COMPOSE_FILE_NAME} not found in {resolved} (from {source})")
    return resolved
