"""CLI entry point for win2cloud."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from win2cloud import __version__
from win2cloud.config import BuildConfig, BuildLayout, DiskFormat, load_config
from win2cloud.errors import BuildError, PrerequisiteError
from win2cloud.pipeline.state import Phase
from win2cloud.utils.logging import set_log_level

console = Console()

FORMAT_CHOICE = click.Choice([f.value for f in DiskFormat])

EXIT_FAILED = 1
EXIT_PARTIAL = 2


def load_build_config(config_path: str) -> BuildConfig:
    """Load configuration, exiting with a readable message on error."""
    try:
        return load_config(config_path)
    except BuildError as e:
        console.print(f"[red]Error loading config: {escape(str(e))}[/red]")
        sys.exit(EXIT_FAILED)


def make_layout(config: BuildConfig, config_path: str, work_dir: str | None) -> BuildLayout:
    return BuildLayout(Path(work_dir) if work_dir else Path(config_path).resolve().parent, config)


def skip_set(skip_install: bool, skip_configure: bool, skip_generalize: bool, skip_test_boot: bool) -> set[Phase]:
    flags = {
        Phase.INSTALLING: skip_install,
        Phase.CONFIGURING: skip_configure,
        Phase.GENERALIZING: skip_generalize,
        Phase.TEST_BOOTING: skip_test_boot,
    }
    return {phase for phase, skipped in flags.items() if skipped}


def build_options(f):
    """Options shared by ``build`` and ``plan``."""
    options = [
        click.option("--config", "config_path", required=True, type=click.Path(exists=True, dir_okay=False),
                     help="Build configuration (YAML or JSON)"),
        click.option("--name", "vm_name", help="Build name (defaults to vm.name from the config)"),
        click.option("--work-dir", type=click.Path(file_okay=False),
                     help="Work directory (defaults to the config file's directory)"),
        click.option("--skip-install", is_flag=True, default=False, help="Skip the installing phase"),
        click.option("--skip-configure", is_flag=True, default=False, help="Skip the configuring phase"),
        click.option("--skip-generalize", is_flag=True, default=False, help="Skip the generalizing phase"),
        click.option("--skip-test-boot", is_flag=True, default=False, help="Skip the test-boot phase"),
        click.option("--format", "formats", multiple=True, type=FORMAT_CHOICE,
                     help="Output format (repeatable; overrides output.formats)"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group()
@click.version_option(version=__version__, prog_name="win2cloud")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              help="Log verbosity")
def main(log_level: str):
    """Build Windows cloud images with QEMU and qemu-img.

    Installs Windows into a working disk, lets you configure and
    generalize it, then converts the disk to cloud formats.
    """
    set_log_level(log_level)


@main.command()
@build_options
@click.option("--yes", "-y", is_flag=True, default=False,
              help="Non-interactive: answer yes to overwrite questions, keep an existing working disk, "
                   "skip the optional test boot, end manual phases on guest power-off")
@click.option("--recreate-disk", is_flag=True, default=False,
              help="Delete an existing working disk and start from scratch")
@click.option("--report", "report_path", type=click.Path(dir_okay=False), help="Write a Markdown report here")
def build(config_path: str, vm_name: str | None, work_dir: str | None, skip_install: bool,
          skip_configure: bool, skip_generalize: bool, skip_test_boot: bool,
          formats: tuple[str, ...], yes: bool, recreate_disk: bool, report_path: str | None):
    """Run a full image build."""
    config = load_build_config(config_path)
    layout = make_layout(config, config_path, work_dir)

    from win2cloud.pipeline.build import BuildPipeline
    from win2cloud.pipeline.operator import AssumeYesOperator, ConsoleOperator
    from win2cloud.pipeline.report import generate_report

    operator = AssumeYesOperator() if yes else ConsoleOperator()
    pipeline = BuildPipeline(config, layout, operator=operator, recreate_disk=recreate_disk)

    try:
        result = pipeline.run(
            vm_name=vm_name,
            skip=skip_set(skip_install, skip_configure, skip_generalize, skip_test_boot),
            output_formats=[DiskFormat(f) for f in formats] if formats else None,
        )
    except PrerequisiteError as e:
        console.print(f"\n[bold red]❌ Prerequisites not met[/bold red]: {escape(str(e))}")
        console.print("Run 'win2cloud validate' for the full list of checks.")
        sys.exit(EXIT_FAILED)

    if report_path:
        generate_report(result, Path(report_path))
    print_artifacts(result)

    if not result.success:
        console.print(f"\n[bold red]❌ Build failed at phase '{result.failed_phase}'[/bold red]")
        console.print(f"  Error: {escape(result.error)}")
        console.print(f"  Working disk kept: {result.state.working_disk_path}")
        sys.exit(EXIT_FAILED)
    if not result.complete:
        console.print(f"\n[bold yellow]⚠ Build finished with failed artifacts[/bold yellow] ({result.duration})")
        for failure in result.state.failures:
            console.print(f"  {failure.format}: {escape(failure.error)}")
        sys.exit(EXIT_PARTIAL)

    console.print(f"\n[bold green]✅ Build complete![/bold green] ({result.duration})")


def print_artifacts(result) -> None:
    state = result.state
    if not state.conversions and not state.compressions:
        return
    table = Table(title=f"Artifacts — {state.vm_name}")
    table.add_column("Format", style="cyan")
    table.add_column("Path")
    table.add_column("Size (GB)", justify="right")
    table.add_column("Compressed", justify="right", style="green")

    compressed = {c.path.with_suffix("").name: c for c in state.compressions}
    for conv in state.conversions:
        comp = compressed.get(conv.path.name)
        table.add_row(
            conv.format,
            str(conv.path),
            f"{conv.size / 1024**3:.1f}",
            f"{comp.size / 1024**3:.1f} GB ({comp.ratio:.0%} saved)" if comp else "—",
        )
    console.print(table)


@main.command()
@build_options
def plan(config_path: str, vm_name: str | None, work_dir: str | None, skip_install: bool,
         skip_configure: bool, skip_generalize: bool, skip_test_boot: bool, formats: tuple[str, ...]):
    """Show the phases and emulator commands a build would run."""
    config = load_build_config(config_path)
    layout = make_layout(config, config_path, work_dir)

    from win2cloud.pipeline.build import BuildPipeline

    console.print("[yellow]DRY RUN — Nothing will be executed[/yellow]")
    BuildPipeline(config, layout).plan(
        vm_name=vm_name,
        skip=skip_set(skip_install, skip_configure, skip_generalize, skip_test_boot),
        output_formats=[DiskFormat(f) for f in formats] if formats else None,
    )


@main.command()
@click.option("--config", "config_path", required=True, type=click.Path(exists=True, dir_okay=False),
              help="Build configuration (YAML or JSON)")
@click.option("--work-dir", type=click.Path(file_okay=False), help="Work directory")
def validate(config_path: str, work_dir: str | None):
    """Check that media and tools are in place for a build."""
    config = load_build_config(config_path)
    layout = make_layout(config, config_path, work_dir)

    from win2cloud.pipeline.validator import PrerequisiteValidator

    report = PrerequisiteValidator().check(config, layout)

    if report.passed:
        console.print(f"\n[bold green]✅ Validation passed[/bold green] — ready to build '{report.vm_name}'")
    else:
        console.print(f"\n[bold red]❌ Validation failed[/bold red] — '{report.vm_name}' is missing inputs:")

    for check in report.checks:
        icon = "✅" if check.passed else "❌" if check.blocking else "⚠️"
        console.print(f"  {icon} {check.name}: {check.message}")

    if not report.passed:
        sys.exit(EXIT_FAILED)


@main.command()
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.option("--from", "source_format", default="qcow2", type=FORMAT_CHOICE, help="Source format")
@click.option("--to", "target_format", required=True, type=FORMAT_CHOICE, help="Target format")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Output path")
@click.option("--disk-tool", default="qemu-img", help="Disk image tool binary")
@click.option("--yes", "-y", is_flag=True, default=False, help="Overwrite an existing output")
def convert(source: str, source_format: str, target_format: str, output: str | None,
            disk_tool: str, yes: bool):
    """Convert a disk image to another format."""
    from rich.progress import Progress

    from win2cloud.converter.disk import DiskImageTool, ImageConverter
    from win2cloud.pipeline.operator import AssumeYesOperator, ConsoleOperator

    target = DiskFormat(target_format)
    output_path = Path(output) if output else Path(source).with_suffix(target.extension)
    converter = ImageConverter(DiskImageTool(disk_tool), AssumeYesOperator() if yes else ConsoleOperator())

    try:
        with Progress(console=console) as progress:
            task = progress.add_task(f"{source_format} → {target_format}", total=100)
            result = converter.convert(
                source, source_format, target, output_path,
                progress_callback=lambda pct: progress.update(task, completed=pct),
            )
    except BuildError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(EXIT_FAILED)

    console.print(f"[green]✅ {result.path}[/green] ({result.size / 1024**3:.1f} GB in {result.duration:.0f}s)")


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--scheme", default="gzip", help="gzip, zip or 7z")
@click.option("--level", default=6, type=click.IntRange(1, 9), help="Compression level")
def compress(path: str, scheme: str, level: int):
    """Compress an artifact and report the ratio."""
    from win2cloud.converter.compress import Compressor

    try:
        with console.status(f"[bold green]Compressing {Path(path).name} ({scheme})..."):
            artifact = Compressor(level=level).compress(path, scheme)
    except BuildError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(EXIT_FAILED)

    console.print(
        f"[green]✅ {artifact.path}[/green] via {artifact.mechanism}: "
        f"{artifact.size / 1024**3:.2f} GB, {artifact.ratio:.1%} saved"
    )


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--disk-tool", default="qemu-img", help="Disk image tool binary")
def info(path: str, disk_tool: str):
    """Show format and sizes of a disk image."""
    from win2cloud.converter.disk import DiskImageTool
    from win2cloud.utils.subprocess import CommandError

    try:
        image = DiskImageTool(disk_tool).info(path)
    except (CommandError, ValueError) as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(EXIT_FAILED)

    console.print_json(json.dumps({
        "path": path,
        "format": image.format,
        "virtual_size": image.virtual_size,
        "actual_size": image.actual_size,
    }))


@main.command("check-tools")
@click.option("--emulator", default="qemu-system-x86_64", help="Emulator binary")
@click.option("--disk-tool", default="qemu-img", help="Disk image tool binary")
def check_tools(emulator: str, disk_tool: str):
    """List which external tools are available."""
    from win2cloud.utils.subprocess import verify_required_tools

    results = verify_required_tools(emulator, disk_tool)
    if not (results[emulator] and results[disk_tool]):
        console.print("[red]Required tools are missing[/red]")
        sys.exit(EXIT_FAILED)


@main.command()
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file")
def init(path: str, force: bool):
    """Write a starter build configuration."""
    from win2cloud.config import write_example_config

    if Path(path).exists() and not force:
        console.print(f"[red]{path} already exists (use --force)[/red]")
        sys.exit(EXIT_FAILED)
    write_example_config(path)
    console.print(f"[green]Configuration written to {path}[/green]")


if __name__ == "__main__":
    main()
