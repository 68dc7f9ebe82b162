"""Thin CLI wrapper for rpi_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import shutil
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape

from rpi_imagegen import __version__
from rpi_imagegen.builder import Builder
from rpi_imagegen.cleanup import BuildInterrupted
from rpi_imagegen.config import get_settings, print_config_json, resolve_build_config
from rpi_imagegen.device.layout import format_size
from rpi_imagegen.device.loop import BlockDeviceManager
from rpi_imagegen.device.mount import MountManager
from rpi_imagegen.host import CommandError
from rpi_imagegen.log import configure_logging
from rpi_imagegen.preflight import check_root
from rpi_imagegen.types import ImagegenError
from rpi_imagegen.workspace import open_workspace

app = typer.Typer(
    name="rpi-imagegen",
    help="Arch Linux ARM image builder for the Raspberry Pi 4 and 5",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rpi-imagegen version {__version__}")
        raise typer.Exit()


def _fail(error: ImagegenError, exit_code: int = 1) -> typer.Exit:
    console.print(f"[red]Error:[/red] {escape(error.message)}")
    return typer.Exit(code=exit_code)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Arch Linux ARM image builder for the Raspberry Pi 4 and 5."""


@app.command()
def build(
    rpi_model: Annotated[
        int | None,
        typer.Option("--rpi-model", help="Raspberry Pi model (4 or 5)"),
    ] = None,
    image_size: Annotated[
        str | None,
        typer.Option("--image-size", help="Image size, e.g. 4G"),
    ] = None,
    hostname: Annotated[
        str | None,
        typer.Option("--hostname", help="Hostname of the image"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", help="Output directory for the artifacts"),
    ] = None,
    profile: Annotated[
        Path | None,
        typer.Option("--profile", help="YAML build profile"),
    ] = None,
    install_deps: Annotated[
        bool,
        typer.Option("--install-deps", help="Install host build dependencies with pacman"),
    ] = False,
    no_cleanup: Annotated[
        bool,
        typer.Option("--no-cleanup", help="Leave mounts and loop device in place"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug logging"),
    ] = False,
) -> None:
    """Build a compressed, bootable image."""
    overrides = {
        "rpi_model": rpi_model,
        "image_size": image_size,
        "hostname": hostname,
        "output_dir": output,
        "install_build_deps": True if install_deps else None,
        "no_cleanup": True if no_cleanup else None,
        "debug": True if debug else None,
    }

    try:
        settings = get_settings()
        configure_logging("DEBUG" if debug or settings.debug else settings.log_level)
        build_config = resolve_build_config(
            overrides, settings=settings, profile_path=profile
        )
        result = Builder(build_config).run()
    except BuildInterrupted as e:
        raise _fail(e, exit_code=e.exit_code) from e
    except ImagegenError as e:
        raise _fail(e) from e

    console.print("[green]Build complete[/green]")
    console.print(f"  Image:          {result.artifact_path}")
    console.print(f"  Manifest:       {result.manifest_path}")
    console.print(f"  Root password:  {result.root_password_path}")
    console.print(f"  Hostname:       {build_config.hostname}")
    console.print(f"  SSH port:       {build_config.ssh_port}")
    for name, reason in result.stages_skipped.items():
        console.print(f"  [yellow]Skipped[/yellow] {name}: {reason}")


@app.command()
def config(
    profile: Annotated[
        Path | None,
        typer.Option("--profile", help="YAML build profile"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the effective build configuration (secrets masked)."""
    try:
        cfg = resolve_build_config(profile_path=profile)
    except ImagegenError as e:
        raise _fail(e) from e

    if json_output:
        console.print(print_config_json(cfg), markup=False, highlight=False, soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Image:[/bold]")
    console.print(f"  Model:               Raspberry Pi {cfg.rpi_model}")
    console.print(f"  Image name:          {cfg.image_name}")
    console.print(f"  Image size:          {format_size(cfg.image_size)}")
    console.print(f"  Boot partition:      {format_size(cfg.boot_partition_size)}")
    console.print(f"  Base archive:        {cfg.archive_url}")
    console.print()
    console.print("[bold]System:[/bold]")
    console.print(f"  Hostname:            {cfg.hostname}")
    console.print(f"  Timezone:            {cfg.timezone}")
    console.print(f"  Locale:              {cfg.default_locale}")
    console.print(f"  Keymap:              {cfg.keymap}")
    console.print(f"  Packages:            {len(cfg.packages)}")
    console.print()
    console.print("[bold]Network:[/bold]")
    console.print(f"  SSH port:            {cfg.ssh_port}")
    console.print(f"  SSH key sources:     {len(cfg.ssh_key_urls)}")
    console.print(f"  WiFi:                {escape(cfg.wifi_ssid) or '(disabled)'}")
    console.print(f"  ZeroTier network:    {cfg.zt_network_id or '(disabled)'}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {cfg.workdir or '(new rpi-build.* in CWD)'}")
    console.print(f"  Output directory:    {cfg.output_dir}")


@app.command()
def teardown(
    workdir: Annotated[
        Path,
        typer.Argument(help="Workspace left behind by a failed or --no-cleanup build"),
    ],
    image: Annotated[
        Path | None,
        typer.Option("--image", help="Raw image whose loop devices should be detached"),
    ] = None,
    remove: Annotated[
        bool,
        typer.Option("--remove", help="Delete the workspace once nothing is mounted"),
    ] = False,
) -> None:
    """Release mounts and loop devices of an earlier build."""
    configure_logging(get_settings().log_level)
    try:
        check_root()
        workspace = open_workspace(workdir)
    except ImagegenError as e:
        raise _fail(e) from e

    mounts = MountManager()
    failures = 0
    for mountpoint in mounts.mounts_under(workspace.root):
        try:
            mounts.unmount_path(mountpoint)
            console.print(f"Unmounted {mountpoint}")
        except CommandError as e:
            failures += 1
            console.print(f"[yellow]Warning:[/yellow] {escape(e.message)}")

    if image is not None:
        devices = BlockDeviceManager()
        for loop in devices.find_attached(image):
            try:
                devices.detach(loop)
                console.print(f"Detached {loop.device_path}")
            except ImagegenError as e:
                failures += 1
                console.print(f"[yellow]Warning:[/yellow] {escape(e.message)}")

    if failures:
        raise typer.Exit(code=1)

    if remove:
        if mounts.mounts_under(workspace.root):
            console.print("[red]Error:[/red] mounts remain; workspace not removed")
            raise typer.Exit(code=1)
        shutil.rmtree(workspace.root)
        console.print(f"Removed {workspace.root}")


if __name__ == "__main__":
    app()
