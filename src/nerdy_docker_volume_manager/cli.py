"""
CLI module - command line interface for nerdy-docker-volume-manager

Entry point for the `ndvm` command using Typer.
"""

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Annotated, Iterator

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .backup import ArchiveSetError, BackupCallbacks, BackupManager, BackupManagerConfig
from .catalog import format_size, list_archive_sets
from .config import AppConfig, ProjectDirError, load_config, read_env_file, resolve_project_dir, set_env_value
from .confirm import confirm_exact_phrase, confirm_yes_no
from .images import ImageCache, ImagePullError
from .inventory import InventoryError, disk_usage, images_in_use, list_images
from .models import BackupResult, BackupRun, ImageSummary
from .prune import PruneError, prune_images, prune_unused_resources
from .restore import ArchiveNotFoundError, RestoreManager, RestoreManagerConfig
from .retention import sweep_archive_sets
from .runtime import BACKUP_LABEL, RuntimeUnavailableError, VolumeDiscoveryError, list_eligible_volumes, runtime_session
from .task import TaskError

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="ndvm",
    help="Docker volume backup, restore and cleanup for a self-hosted stack.",
    no_args_is_help=True,
)
backup_app = typer.Typer(help="Volume backup and restore operations.", no_args_is_help=True)
docker_app = typer.Typer(help="Docker cleanup operations.", no_args_is_help=True)
config_app = typer.Typer(help="Inspect and edit the stack .env file.", no_args_is_help=True)
app.add_typer(backup_app, name="backup")
app.add_typer(docker_app, name="docker")
app.add_typer(config_app, name="config")

_HANDLED_ERRORS = (
    ArchiveNotFoundError,
    ArchiveSetError,
    ImagePullError,
    InventoryError,
    ProjectDirError,
    PruneError,
    RuntimeUnavailableError,
    TaskError,
    VolumeDiscoveryError,
    ValueError,
)


@dataclass
class CliState:
    project_dir: Path | None = None
    yes: bool = False

    def config(self) -> AppConfig:
        return load_config(resolve_project_dir(self.project_dir))


@app.callback()
def main(
    ctx: typer.Context,
    project_dir: Annotated[
        Path | None,
        typer.Option("--project-dir", "-p", help="Stack project root (holds docker-compose.yml).", envvar="NDVM_PROJECT_DIR"),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompts.")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", help="Show debug logging.")] = False,
):
    """Docker volume backup, restore and cleanup for a self-hosted stack."""
    _configure_logging(verbose)
    ctx.obj = CliState(project_dir=project_dir, yes=yes)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@contextmanager
def _command_errors() -> Iterator[None]:
    try:
        yield
    except _HANDLED_ERRORS as error:
        console.print(f"[red]Error:[/red] {error}")
        raise typer.Exit(1) from error


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj if isinstance(ctx.obj, CliState) else CliState()


# --- backup commands ---


@backup_app.command("volumes")
def list_volumes(ctx: typer.Context):
    """List volumes marked for backup."""
    with _command_errors():
        cfg = _state(ctx).config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            volumes = list_eligible_volumes(docker_client)

    if not volumes:
        console.print(f"[yellow]No volumes found with label '{BACKUP_LABEL}'[/yellow]")
        return

    table = Table(title="Volumes Marked for Backup")
    table.add_column("NAME", style="cyan")
    table.add_column("DRIVER")
    table.add_column("MOUNTPOINT", style="dim")
    for volume in volumes:
        table.add_row(volume.name, volume.driver, volume.mountpoint)
    console.print(table)


@backup_app.command("all")
def backup_all(ctx: typer.Context):
    """Backup all volumes labelled backup.enable=true."""
    with _command_errors():
        cfg = _state(ctx).config()
        console.print("[bold]Starting Backup Process[/bold]")
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            run = _backup_manager(docker_client, cfg).backup_all(callbacks=_backup_callbacks())

    if run.archive_set is None:
        console.print(f"[yellow]No volumes found with label '{BACKUP_LABEL}'[/yellow]")
        return
    _print_backup_summary(run)


@backup_app.command("volume")
def backup_volume(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Volume name to backup.")],
):
    """Backup a specific volume (label not required)."""
    with _command_errors():
        cfg = _state(ctx).config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            run = _backup_manager(docker_client, cfg).backup_volume(name, callbacks=_backup_callbacks())
    _print_backup_summary(run)


@backup_app.command("restore")
def restore(
    ctx: typer.Context,
    file: Annotated[Path, typer.Argument(help="Path to a <volume>.tar.gz backup file.")],
    name: Annotated[
        str | None, typer.Argument(help="Volume to restore into. Defaults to the file name without .tar.gz.")
    ] = None,
):
    """Restore a volume from a backup file, replacing its contents."""
    state = _state(ctx)
    with _command_errors():
        cfg = state.config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            manager = RestoreManager(
                docker_client=docker_client,
                image_cache=ImageCache(docker_client),
                config=RestoreManagerConfig(helper_image=cfg.helper_image),
            )
            try:
                outcome = manager.restore(file, name, force=state.yes, confirm=confirm_yes_no)
            except TaskError:
                console.print(
                    "[yellow]The restore helper failed after it may have cleared the volume; "
                    "its contents can be empty or partial. Run the restore again.[/yellow]"
                )
                raise

    if not outcome.restored:
        console.print("Restore cancelled")
        return
    console.print(f"[green]✓[/green] Restore completed: {outcome.volume_name}")


@backup_app.command("list")
def list_backups(ctx: typer.Context):
    """List available backups on disk."""
    with _command_errors():
        cfg = _state(ctx).config()

    summaries = list_archive_sets(cfg.backup_dir)
    if not summaries:
        console.print(f"[yellow]No backups found in {cfg.backup_dir}[/yellow]")
        return

    table = Table(title="Available Backups")
    table.add_column("BACKUP", style="cyan")
    table.add_column("VOLUMES", justify="right")
    table.add_column("SIZE", justify="right")
    table.add_column("LOCATION", style="dim")
    for summary in summaries:
        table.add_row(summary.name, str(summary.file_count), format_size(summary.total_bytes), str(summary.path))
    console.print(table)


@backup_app.command("cleanup")
def cleanup_backups(
    ctx: typer.Context,
    days: Annotated[int, typer.Argument(help="Remove backups older than this many days.", min=0)] = 7,
):
    """Remove backups older than N days."""
    with _command_errors():
        cfg = _state(ctx).config()
        console.print(f"[yellow]Removing backups older than {days} days[/yellow]")
        result = sweep_archive_sets(cfg.backup_dir, days)

    for name in result.removed:
        console.print(f"  Removed: {name}")
    for name, reason in result.failures:
        console.print(f"  [red]✗[/red] removing {name}: {reason}")
    if result.removed_count == 0:
        console.print("No old backups to remove")
    else:
        console.print(f"[green]✓[/green] Cleanup completed, removed {result.removed_count} backup(s)")


# --- docker commands ---


@docker_app.command("clean")
def docker_clean(ctx: typer.Context):
    """Remove stopped containers, unused networks, unused images and build cache."""
    state = _state(ctx)
    console.print("[red]WARNING: This will remove:[/red]")
    console.print("  - All stopped containers")
    console.print("  - All unused networks")
    console.print("  - All unused images")
    console.print("  - All build cache")
    console.print("[yellow]Volumes will NOT be removed[/yellow]")
    if not confirm_exact_phrase("Are you ABSOLUTELY sure?", "yes", state.yes):
        console.print("Operation cancelled")
        return

    with _command_errors():
        cfg = state.config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            report = prune_unused_resources(docker_client)

    for step, count in report.deleted.items():
        console.print(f"  [green]✓[/green] {step}: {count} removed")
    for step, reason in report.failures:
        console.print(f"  [red]✗[/red] {step}: {reason}")
    console.print(f"Space reclaimed: {format_size(report.space_reclaimed)}")
    if not report.ok:
        raise typer.Exit(1)


@docker_app.command("images")
def docker_images(ctx: typer.Context):
    """List dangling images, all images, and images used by containers."""
    with _command_errors():
        cfg = _state(ctx).config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            dangling = list_images(docker_client, dangling_only=True)
            all_images = list_images(docker_client)
            uses = images_in_use(docker_client)

    if dangling:
        console.print(_image_table("Dangling Images (no tag)", dangling))
    else:
        console.print("[bold]Dangling Images (no tag)[/bold]\n  None found")
    console.print(_image_table("All Images", all_images))
    console.print("[bold]Used by containers:[/bold]")
    for image in dict.fromkeys(use.image for use in uses):
        console.print(f"  {image}")


@docker_app.command("dangling")
def docker_dangling(ctx: typer.Context):
    """Remove dangling (untagged) images."""
    with _command_errors():
        cfg = _state(ctx).config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            dangling = list_images(docker_client, dangling_only=True)
            if not dangling:
                console.print("No dangling images found")
                return
            console.print(f"Found {len(dangling)} dangling images")
            outcome = prune_images(docker_client, dangling_only=True)
    console.print(f"[green]✓[/green] Dangling images removed (reclaimed {format_size(outcome.space_reclaimed)})")


@docker_app.command("prune-images")
def docker_prune_images(ctx: typer.Context):
    """Remove all images not used by any container."""
    state = _state(ctx)
    console.print("[yellow]This will remove ALL images not used by containers[/yellow]")
    if not confirm_yes_no("Are you sure?", state.yes):
        console.print("Operation cancelled")
        return
    with _command_errors():
        cfg = state.config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            outcome = prune_images(docker_client)
    console.print(f"[green]✓[/green] All unused images removed (reclaimed {format_size(outcome.space_reclaimed)})")


@docker_app.command("prune-old")
def docker_prune_old(
    ctx: typer.Context,
    days: Annotated[int, typer.Argument(help="Remove unused images created more than this many days ago.", min=0)],
):
    """Remove unused images older than N days."""
    state = _state(ctx)
    console.print(f"[yellow]This will remove images created more than {days} days ago[/yellow]")
    if not confirm_yes_no("Are you sure?", state.yes):
        console.print("Operation cancelled")
        return
    with _command_errors():
        cfg = state.config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            outcome = prune_images(docker_client, older_than_days=days)
    console.print(
        f"[green]✓[/green] Old images removed: {outcome.deleted} (reclaimed {format_size(outcome.space_reclaimed)})"
    )


@docker_app.command("protected")
def docker_protected(ctx: typer.Context):
    """Show images in use by containers; prune never removes these."""
    with _command_errors():
        cfg = _state(ctx).config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            uses = images_in_use(docker_client)

    if not uses:
        console.print("No containers found")
        return
    table = Table(title="Protected Images (In Use by Containers)")
    table.add_column("IMAGE", style="cyan")
    table.add_column("CONTAINER")
    table.add_column("STATUS")
    for use in uses:
        table.add_row(use.image, use.container, use.status)
    console.print(table)


@docker_app.command("disk")
def docker_disk(ctx: typer.Context):
    """Show Docker disk usage by images, containers, volumes and build cache."""
    with _command_errors():
        cfg = _state(ctx).config()
        with runtime_session(base_url=cfg.docker_host) as docker_client:
            usage = disk_usage(docker_client)

    console.print(_image_table("Images", list(usage.images), show_id=False))
    console.print(f"Total: {format_size(usage.images_bytes)} ({len(usage.images)} images)\n")

    table = Table(title="Containers")
    table.add_column("NAME", style="cyan")
    table.add_column("IMAGE")
    table.add_column("SIZE (RW)", justify="right")
    for container in usage.containers:
        table.add_row(container.name, container.image, format_size(container.size_bytes))
    console.print(table)
    console.print(f"Total: {format_size(usage.containers_bytes)} ({len(usage.containers)} containers)\n")

    table = Table(title="Volumes")
    table.add_column("NAME", style="cyan")
    table.add_column("SIZE", justify="right")
    for volume in usage.volumes:
        table.add_row(volume.name, format_size(volume.size_bytes))
    console.print(table)
    console.print(f"Total: {format_size(usage.volumes_bytes)} ({len(usage.volumes)} volumes)\n")

    console.print("[bold]Build Cache[/bold]")
    console.print(f"Total: {format_size(usage.build_cache_bytes)} ({usage.build_cache_entries} entries)")


# --- config commands ---


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Show the effective configuration and .env entries."""
    with _command_errors():
        cfg = _state(ctx).config()

    console.print(f"Project:      {cfg.project_dir}")
    console.print(f"Env file:     {cfg.env_file}")
    console.print(f"Backup dir:   {cfg.backup_dir}")
    console.print(f"Helper image: {cfg.helper_image}")
    console.print(f"Docker host:  {cfg.docker_host or 'environment default'}")

    dotenv = read_env_file(cfg.env_file)
    if dotenv:
        table = Table(title=".env")
        table.add_column("KEY", style="cyan")
        table.add_column("VALUE")
        for key, value in dotenv.items():
            table.add_row(key, value)
        console.print(table)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Variable name.")],
    value: Annotated[str, typer.Argument(help="New value.")],
):
    """Set KEY=VALUE in the stack .env file, keeping comments and order."""
    with _command_errors():
        cfg = _state(ctx).config()
        set_env_value(cfg.env_file, key, value)
    console.print(f"[green]✓[/green] {key} updated in {cfg.env_file}")


# --- helpers ---


def _backup_manager(docker_client, cfg: AppConfig) -> BackupManager:
    return BackupManager(
        docker_client=docker_client,
        image_cache=ImageCache(docker_client),
        config=BackupManagerConfig(backup_dir=cfg.backup_dir, helper_image=cfg.helper_image),
    )


def _backup_callbacks() -> BackupCallbacks:
    def on_volume_start(index: int, total: int, name: str):
        console.print(f"  [{index}/{total}] Backing up {name}...")

    def on_volume_complete(result: BackupResult):
        if result.status == "success":
            checksum = (result.checksum_sha256 or "")[:12]
            console.print(
                f"  [green]✓[/green] {result.volume_name}.tar.gz "
                f"({format_size(result.size_bytes or 0)}, sha256 {checksum})"
            )
        else:
            console.print(f"  [red]✗[/red] {result.volume_name}: {result.message}")

    return BackupCallbacks(on_volume_start=on_volume_start, on_volume_complete=on_volume_complete)


def _print_backup_summary(run: BackupRun) -> None:
    console.print("\n[bold]Backup Summary[/bold]")
    console.print(f"  Attempted: {run.attempted}")
    console.print(f"  Succeeded: {run.succeeded}")
    console.print(f"  Failed:    {run.failed}")
    console.print(f"  Location:  {run.archive_set}")
    if run.failed:
        console.print("[yellow]Some volumes failed; re-run them with 'ndvm backup volume NAME'.[/yellow]")


def _image_table(title: str, images: list[ImageSummary], *, show_id: bool = True) -> Table:
    table = Table(title=title)
    table.add_column("REPOSITORY", style="cyan")
    table.add_column("TAG")
    if show_id:
        table.add_column("ID", style="dim")
    table.add_column("SIZE", justify="right")
    for image in images:
        row = [image.repository, image.tag]
        if show_id:
            row.append(image.image_id)
        row.append(format_size(image.size_bytes))
        table.add_row(*row)
    return table
