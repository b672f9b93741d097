"""
CardRescue - Command-Line Interface
Photo recovery from failing camera cards with rich terminal output

Features:
- Resumable imaging of a failing device (ddrescue or built-in)
- Partition inspection of the image
- Carving with every installed engine and a summary of results
- JPEG header health check and camera card remount repair

Dependencies:
    pip install click rich psutil
"""

import sys
from pathlib import Path

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, DownloadColumn, Progress, SpinnerColumn, TextColumn, \
    TimeRemainingColumn
from rich.prompt import Prompt
from rich.table import Table

from .. import __version__
from ..app import CardRescueApp, setup_logging
from ..config import RescueConfig, load_config
from ..core.carving import CarveSummary
from ..core.device import list_block_devices
from ..core.progress_map import ProgressMap
from ..errors import CardRescueError, ResolutionError
from ..utils import KNOWN_TOOLS, check_root_permissions, detect_capabilities, format_bytes

console = Console()


def operator_confirm(message: str, token: str) -> bool:
    """Blocking confirmation gate: True only if the operator types token"""
    answer = Prompt.ask(f"[bold yellow]{message}[/bold yellow]", console=console, default="")
    return answer.strip() == token


def fail(error: CardRescueError) -> None:
    """Print a fatal error with its remediation and exit non-zero"""
    console.print(f"[bold red]Error:[/bold red] {error}")
    listing = getattr(error, "listing", "")
    if listing:
        console.print(Panel(listing, title="Block devices", border_style="yellow"))
    if error.remediation:
        console.print(f"[yellow]{error.remediation}[/yellow]")
    sys.exit(1)


def interrupted(config: RescueConfig) -> None:
    console.print("\n[bold yellow]Interrupted.[/bold yellow] Recovered data was kept.")
    if config.output_dir is not None:
        console.print(f"Re-run the same command to resume from [cyan]{config.map_path}[/cyan].")
    sys.exit(130)


def warn_if_not_root() -> None:
    if not check_root_permissions():
        console.print("[yellow]Warning:[/yellow] root permissions are usually required for raw "
                      "device access, unmounting and loop devices. Re-run with sudo if "
                      "this fails.")


def build_config(ctx: click.Context, **overrides) -> RescueConfig:
    try:
        return load_config(ctx.obj.get("config_path"), log_level=ctx.obj.get("log_level"),
                           **overrides)
    except CardRescueError as e:
        fail(e)


def ensure_device(config: RescueConfig) -> RescueConfig:
    """Show the block-device listing and ask when neither device nor mount point is set"""
    if config.device or config.mountpoint:
        return config
    console.print("Please identify your card's block device from the list below:\n")
    console.print(list_block_devices())
    device = Prompt.ask("\nEnter block device (example /dev/sdb)", console=console)
    return config.with_overrides(device=device.strip() or None)


def progress_display():
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TextColumn("[red]{task.fields[bad]} bad"),
        TimeRemainingColumn(),
        console=console,
    )


def show_progress_map(progress: ProgressMap) -> None:
    table = Table(title="Imaging Result", box=box.ROUNDED)
    table.add_column("Status", style="cyan bold")
    table.add_column("Bytes", justify="right")
    table.add_row("[green]Recovered[/green]", format_bytes(progress.finished_bytes))
    table.add_row("[red]Bad[/red]", format_bytes(progress.bad_bytes))
    table.add_row("[dim]Not tried[/dim]", format_bytes(progress.untried_bytes))
    table.add_row("Bad ranges", str(len(progress.bad_ranges())))
    console.print(table)


def show_summary(summary: CarveSummary, top_n: int) -> None:
    counts = Table(title="Recovered JPEGs", box=box.ROUNDED)
    counts.add_column("Engine", style="cyan bold")
    counts.add_column("Status")
    counts.add_column("Files", justify="right")
    for name, result in summary.results.items():
        style = {"ok": "green", "failed": "red"}.get(result.status, "dim")
        counts.add_row(name, f"[{style}]{result.status}[/{style}]", str(result.count))
    counts.add_row("[bold]Total[/bold]", "", f"[bold]{summary.total}[/bold]")
    console.print(counts)

    largest = summary.largest(top_n)
    if largest:
        table = Table(title=f"Top {len(largest)} largest recovered files (likely better quality)",
                      box=box.SIMPLE)
        table.add_column("Size", justify="right")
        table.add_column("Engine", style="cyan")
        table.add_column("File")
        for path, size, engine in largest:
            table.add_row(format_bytes(size), engine, str(path))
        console.print(table)


class ImagingDisplay:
    """
    Progress callback for imaging. The bar starts with the first update, so
    the operator prompts before imaging are not drawn over.
    """

    def __init__(self):
        self.display = None
        self.task = None

    def __call__(self, progress: ProgressMap) -> None:
        if self.display is None:
            self.display = progress_display()
            self.display.start()
            self.task = self.display.add_task("[cyan]Imaging...", total=progress.size, bad="0 B")
        self.display.update(self.task, total=progress.size,
                            completed=progress.finished_bytes + progress.bad_bytes,
                            bad=format_bytes(progress.bad_bytes))

    def stop(self) -> None:
        if self.display is not None:
            self.display.stop()
            self.display = None


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='JSON configuration file')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              help='Transcript log level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """CardRescue - photo recovery from failing camera cards"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["log_level"] = log_level


def device_options(f):
    f = click.option('--device', '-d', help='Block device, e.g. /dev/sdb')(f)
    f = click.option('--mountpoint', '-m', help='Mount point of the card (resolved to its device)')(f)
    f = click.option('--whole-disk', is_flag=True,
                     help='Image the whole disk behind a partition')(f)
    return f


def output_option(f):
    return click.option('--output-dir', '-o', type=click.Path(file_okay=False),
                        help='Output directory on another drive')(f)


@cli.command()
def version():
    """Show version information"""
    info = Table(show_header=False, box=box.ROUNDED)
    info.add_column(style="cyan bold")
    info.add_column(style="white")
    info.add_row("Application", "CardRescue")
    info.add_row("Version", __version__)
    info.add_row("Python", sys.version.split()[0])
    console.print(Panel(info, title="[bold blue]Version Information[/bold blue]",
                        border_style="blue"))


@cli.command()
def devices():
    """List block devices"""
    console.print(list_block_devices())


@cli.command()
def tools():
    """Show which external tools are installed"""
    found = detect_capabilities()
    table = Table(title="External Tools", box=box.ROUNDED)
    table.add_column("Tool", style="cyan")
    table.add_column("Installed")
    for tool in KNOWN_TOOLS:
        table.add_row(tool, "[green]yes[/green]" if tool in found else "[red]no[/red]")
    console.print(table)
    console.print("[dim]Missing tools are skipped; pycarve and the built-in imager need none.[/dim]")


@cli.command()
@device_options
@output_option
@click.option('--retry-passes', '-r', type=int, help='Retry passes over bad ranges (-1 = infinite)')
@click.option('--imager', type=click.Choice(['auto', 'ddrescue', 'builtin']))
@click.option('--thumbnail-source', type=click.Path(file_okay=False),
              help='Readable DCIM tree to extract embedded thumbnails from')
@click.option('--parallel/--sequential', 'parallel', default=None,
              help='Run carving engines concurrently')
@click.pass_context
def rescue(ctx, device, mountpoint, whole_disk, output_dir, retry_passes, imager,
           thumbnail_source, parallel):
    """Image a failing card, inspect the image and carve photos from it"""
    config = build_config(ctx, device=device, mountpoint=mountpoint, output_dir=output_dir,
                          retry_passes=retry_passes, imager=imager,
                          thumbnail_source=thumbnail_source, parallel_engines=parallel)
    config = ensure_device(config)
    warn_if_not_root()

    display = ImagingDisplay()
    try:
        setup_logging(config, "rescue")
        app = CardRescueApp(config, confirm=operator_confirm)
        try:
            report = app.run(progress_callback=display, whole_disk=whole_disk)
        finally:
            display.stop()
    except CardRescueError as e:
        fail(e)
    except KeyboardInterrupt:
        interrupted(config)

    session = report.session
    console.print(f"[bold]Device:[/bold] {session.device}")
    console.print(f"[bold]Image:[/bold] {session.image_path}")
    console.print(f"[bold]Mapfile:[/bold] {session.map_path}\n")
    if report.unmount.degraded:
        console.print("[yellow]Lazy unmount was needed; programs may still hold the card.[/yellow]")

    show_progress_map(report.progress)
    show_partitions(report.partitions)
    show_summary(report.summary, config.top_n)

    if report.degraded:
        console.print("[yellow]Finished with unreadable ranges or a lazy unmount; "
                      "re-running resumes the image from the mapfile.[/yellow]")
    console.print(f"\n[bold green]Done.[/bold green] Log: {config.log_path('rescue')}")
    console.print("To resume imaging later, run the same command again (it reuses the mapfile).")


@cli.command()
@device_options
@output_option
@click.option('--retry-passes', '-r', type=int, help='Retry passes over bad ranges (-1 = infinite)')
@click.option('--imager', type=click.Choice(['auto', 'ddrescue', 'builtin']))
@click.pass_context
def image(ctx, device, mountpoint, whole_disk, output_dir, retry_passes, imager):
    """Image (or resume imaging) a device without carving"""
    config = build_config(ctx, device=device, mountpoint=mountpoint, output_dir=output_dir,
                          retry_passes=retry_passes, imager=imager)
    config = ensure_device(config)
    warn_if_not_root()

    try:
        setup_logging(config, "image")
        app = CardRescueApp(config, confirm=operator_confirm)
        device = app.resolve_device(whole_disk=whole_disk)
        app.confirm_destination(device)
        app.release_device(device)
        if not operator_confirm(f"Type 'go' to start imaging {device}", "go"):
            console.print("Quitting.")
            sys.exit(1)
        display = ImagingDisplay()
        try:
            progress = app.image(device, progress_callback=display)
        finally:
            display.stop()
        show_progress_map(progress)
    except CardRescueError as e:
        fail(e)
    except KeyboardInterrupt:
        interrupted(config)


def show_partitions(partitions) -> None:
    if not partitions:
        console.print("[yellow]No partitions recognised in the image (carving does not need them).[/yellow]")
        return
    table = Table(title="Partitions in image", box=box.SIMPLE)
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Filesystem")
    for part in partitions:
        table.add_row(part.name, format_bytes(part.size), part.fstype or "-")
    console.print(table)


@cli.command()
@output_option
@click.pass_context
def inspect(ctx, output_dir):
    """Show partitions found inside the disk image"""
    config = build_config(ctx, output_dir=output_dir)
    try:
        setup_logging(config, "inspect")
        show_partitions(CardRescueApp(config).inspect())
    except CardRescueError as e:
        fail(e)


@cli.command()
@output_option
@click.option('--thumbnail-source', type=click.Path(file_okay=False),
              help='Readable DCIM tree to extract embedded thumbnails from')
@click.option('--engine', '-e', 'engines', multiple=True,
              help='Engine to run (repeatable); default: all configured engines')
@click.option('--parallel/--sequential', 'parallel', default=None,
              help='Run carving engines concurrently')
@click.pass_context
def carve(ctx, output_dir, thumbnail_source, engines, parallel):
    """Carve photos from an existing disk image"""
    config = build_config(ctx, output_dir=output_dir, thumbnail_source=thumbnail_source,
                          engines=list(engines) or None, parallel_engines=parallel)
    try:
        setup_logging(config, "carve")
        with console.status("[cyan]Carving..."):
            summary = CardRescueApp(config).carve()
        show_summary(summary, config.top_n)
    except CardRescueError as e:
        fail(e)
    except KeyboardInterrupt:
        console.print("\n[yellow]Carving interrupted; the image is untouched.[/yellow]")
        sys.exit(130)


@cli.command('jpeg-check')
@click.argument('root', type=click.Path(exists=True, file_okay=False))
@click.option('--reports-dir', type=click.Path(file_okay=False),
              help='Where to save the report (default: ~/recovery_reports)')
@click.option('--ext', 'extensions', multiple=True,
              help='Extensions to check, e.g. --ext .jpg --ext .png (default: .jpg .jpeg)')
@click.pass_context
def jpeg_check(ctx, root, reports_dir, extensions):
    """Classify image files under ROOT as OK or BAD by their header bytes"""
    config = build_config(ctx, reports_dir=reports_dir)
    try:
        setup_logging(config, "jpeg_check")
        app = CardRescueApp(config, capabilities=frozenset())
        report = app.check_headers(Path(root), extensions or None)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--ext")
    except CardRescueError as e:
        fail(e)

    console.print(f"Report saved to: [cyan]{report.report_path}[/cyan]")
    console.print(f"[green]OK files:[/green] {report.ok_count}")
    console.print(f"[red]BAD files:[/red] {report.bad_count}")


@cli.command('fix-mount')
@click.argument('mountpoint')
@click.option('--uid', type=int, help='Owner uid for the remounted files')
@click.option('--gid', type=int, help='Owner gid for the remounted files')
@click.option('--fstype', help='Filesystem type (default: taken from the mount table)')
@click.option('--output-dir', '-o', type=click.Path(file_okay=False),
              help='Directory for the run log')
@click.pass_context
def fix_mount(ctx, mountpoint, uid, gid, fstype, output_dir):
    """Unmount, check, optionally repair and remount a camera card"""
    config = build_config(ctx, mountpoint=mountpoint, owner_uid=uid, owner_gid=gid,
                          output_dir=output_dir)
    warn_if_not_root()
    try:
        setup_logging(config, "fix_mount")
        app = CardRescueApp(config, confirm=operator_confirm)
        report = app.fix_mount(mountpoint, fstype)
    except ResolutionError as e:
        console.print("If you know the device (example /dev/sdb1), mount it and re-run.")
        fail(e)
    except CardRescueError as e:
        fail(e)

    if report.degraded:
        console.print("[yellow]Lazy unmount was needed before the check.[/yellow]")
    console.print(f"[bold green]Remounted {mountpoint}[/bold green] "
                  f"(uid={config.owner_uid}, gid={config.owner_gid}, umask={config.umask})")


def main():
    """Main CLI entry point"""
    cli(obj={})


if __name__ == "__main__":
    main()
