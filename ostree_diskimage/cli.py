"""Thin CLI wrapper for ostree_diskimage.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import signal
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ostree_diskimage import __version__
from ostree_diskimage.config import get_settings, print_settings_json
from ostree_diskimage.errors import DiskImageError

if TYPE_CHECKING:
    from ostree_diskimage.context import BuildContext

app = typer.Typer(
    name="osdisk",
    help="OSTree disk image builder - build disk images from OSTree commits",
    no_args_is_help=True,
)
console = Console()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ostree-diskimage version {__version__}")
        raise typer.Exit()


def _terminate(signum: int, frame: Any) -> None:
    # Unwind through context managers so markers and scratch dirs are removed
    raise SystemExit(128 + signum)


def _fail(e: Exception) -> NoReturn:
    console.print(f"[red]Error: {escape(str(e))}[/red]", soft_wrap=True)
    raise typer.Exit(code=1) from None


def _build_context(ctx: typer.Context) -> "BuildContext":
    from ostree_diskimage.context import BuildContext

    workdir = ctx.obj.get("workdir") if ctx.obj else None
    return BuildContext.from_settings(get_settings(), workdir=workdir)


@app.callback()
def main(
    ctx: typer.Context,
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
    workdir: Annotated[
        Path | None,
        typer.Option("--workdir", "-C", help="Build workspace (default: cwd)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """OSTree disk image builder - build disk images from OSTree commits."""
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level),
        format=LOG_FORMAT,
    )
    signal.signal(signal.SIGTERM, _terminate)
    ctx.obj = {"workdir": workdir}


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        supermin_display = (
            str(settings.supermin_dir)
            if settings.supermin_dir
            else "(<workdir>/tmp/supermin.build)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Workspace:[/bold]")
        console.print(f"  Work directory:      {settings.workdir}")
        console.print(f"  Architecture:        {settings.arch}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Tools:[/bold]")
        console.print(f"  QEMU:                {settings.effective_qemu_binary}")
        console.print(f"  qemu-img:            {settings.qemu_img_binary}")
        console.print(f"  ostree:              {settings.ostree_binary}")
        console.print(f"  Size estimator:      {settings.estimator_command}")
        console.print(f"  Disk builder:        {settings.disk_builder_command}")
        console.print(f"  Offline updater:     {settings.offline_update_command}")
        console.print()
        console.print("[bold]Virtual machine:[/bold]")
        console.print(f"  Appliance:           {supermin_display}")
        console.print(f"  Memory (MiB):        {settings.vm_memory_mb}")
        console.print(f"  CPUs:                {settings.vm_cpus}")
        console.print()
        console.print("[bold]Secure Execution:[/bold]")
        console.print(f"  Protected image VM:  {settings.genprotimgvm}")


@app.command("build")
def build_cmd(
    ctx: typer.Context,
    kind: Annotated[
        str,
        typer.Argument(help="Image kind: metal, metal4k, dasd or qemu"),
    ],
    build_id: Annotated[
        str,
        typer.Option("--build", "-b", help="Build ID (default: latest)"),
    ] = "latest",
    force: Annotated[
        bool,
        typer.Option(
            "--force",
            "-f",
            help="Rebuild even if the image exists and take over a stale marker",
        ),
    ] = False,
    secex: Annotated[
        bool,
        typer.Option("--secex", help="Build the Secure Execution qemu image"),
    ] = False,
    hostkey: Annotated[
        Path | None,
        typer.Option("--hostkey", help="Secure Execution host key"),
    ] = None,
    genprotimgvm: Annotated[
        Path | None,
        typer.Option("--genprotimgvm", help="Protected image VM (qcow2)"),
    ] = None,
) -> None:
    """Build a disk image for a build and record it in meta.json."""
    from ostree_diskimage.builds.service import build_image
    from ostree_diskimage.images.kinds import ImageKind

    if not secex and (hostkey is not None or genprotimgvm is not None):
        console.print("[red]Error: --hostkey and --genprotimgvm require --secex[/red]")
        raise typer.Exit(code=1)

    try:
        image_kind = ImageKind.parse(kind, secure_execution=secex)
    except ValueError as e:
        _fail(e)

    try:
        result = build_image(
            _build_context(ctx),
            image_kind,
            build_id=build_id,
            force=force,
            hostkey=hostkey,
            genprotimgvm=genprotimgvm,
        )
    except DiskImageError as e:
        _fail(e)

    if result.skipped:
        console.print(
            f"[yellow]{image_kind.value} image already exists: {result.path}[/yellow]",
            soft_wrap=True,
        )
        return

    console.print(
        f"[green]✓ Built {image_kind.value} image: {result.path}[/green]",
        soft_wrap=True,
    )
    for entry in result.artifacts[1:]:
        console.print(f"  Also recorded {entry.kind}: {entry.path}", soft_wrap=True)


@app.command("build-fast")
def build_fast_cmd(
    ctx: typer.Context,
    inherit_from: Annotated[
        Path | None,
        typer.Option("--inherit-from", help="Workspace to take the latest build from"),
    ] = None,
    project_dir: Annotated[
        Path | None,
        typer.Option(
            "--project-dir", help="Component to install with make install"
        ),
    ] = None,
    no_undeploy: Annotated[
        bool,
        typer.Option("--no-undeploy", help="Keep the previous deployment"),
    ] = False,
    network: Annotated[
        bool,
        typer.Option("--network", help="Give the VM network access"),
    ] = False,
) -> None:
    """Apply a local overlay to the latest qemu image without a full build."""
    from ostree_diskimage.fast.service import build_fast

    try:
        result = build_fast(
            _build_context(ctx),
            inherit_from=inherit_from,
            project_dir=project_dir,
            undeploy=not no_undeploy,
            network=network,
        )
    except DiskImageError as e:
        _fail(e)

    console.print(f"[green]✓ Fast build: {result.path}[/green]", soft_wrap=True)
    console.print(f"  Commit:  {result.commit}")
    console.print(f"  Version: {result.version}")


builds_app = typer.Typer(help="Inspect builds")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List builds, newest first."""
    build_ctx = _build_context(ctx)
    build_ids = build_ctx.store.list_builds()

    if json_output:
        console.print_json(json.dumps(build_ids))
        return

    if not build_ids:
        console.print("[yellow]No builds found[/yellow]")
        return
    console.print(f"[bold]Found {len(build_ids)} build(s):[/bold]")
    for build_id in build_ids:
        console.print(f"  [green]{build_id}[/green]")


@builds_app.command("show")
def builds_show(
    ctx: typer.Context,
    build_id: Annotated[
        str,
        typer.Option("--build", "-b", help="Build ID (default: latest)"),
    ] = "latest",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a build's metadata and images."""
    build_ctx = _build_context(ctx)
    try:
        build = build_ctx.store.resolve_build(build_id)
    except DiskImageError as e:
        _fail(e)
    meta = build_ctx.store.read_meta(build)

    if json_output:
        console.print_json(json.dumps(meta))
        return

    console.print(f"[bold]Build {build.id}[/bold] ({build.arch})")
    console.print(f"  Name:          {meta.get('name', '-')}")
    console.print(f"  OSTree commit: {meta.get('ostree-commit', '-')}")
    images = meta.get("images") or {}
    if not images:
        console.print("  No images")
        return

    table = Table(title="Images")
    table.add_column("Kind")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("SHA-256")
    for kind, entry in sorted(images.items()):
        table.add_row(
            kind,
            str(entry.get("path", "")),
            str(entry.get("size", "")),
            str(entry.get("sha256", ""))[:16],
        )
    console.print(table)


@app.command("meta")
def meta_cmd(
    ctx: typer.Context,
    key: Annotated[
        str,
        typer.Option("--get", help="Dotted key, e.g. images.metal.path"),
    ],
    build_id: Annotated[
        str,
        typer.Option("--build", "-b", help="Build ID (default: latest)"),
    ] = "latest",
) -> None:
    """Print one value from a build's meta.json."""
    build_ctx = _build_context(ctx)
    try:
        build = build_ctx.store.resolve_build(build_id)
    except DiskImageError as e:
        _fail(e)

    value = build_ctx.store.get_meta_key(build, key)
    if value is None:
        console.print(f"[red]Key not found: {escape(key)}[/red]")
        raise typer.Exit(code=1)
    if isinstance(value, dict | list):
        console.print_json(json.dumps(value))
    else:
        console.print(str(value), markup=False, highlight=False, soft_wrap=True)


if __name__ == "__main__":
    app()
