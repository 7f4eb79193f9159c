"""Disk image operations with qemu-img: create, inspect, convert, check."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from rich.markup import escape

from win2cloud.config import DiskFormat
from win2cloud.errors import ConversionError, OverwriteDeclined, UnsupportedFormat
from win2cloud.pipeline.operator import Operator
from win2cloud.pipeline.state import ArtifactFailure, ConversionResult
from win2cloud.utils.logging import get_logger
from win2cloud.utils.subprocess import CommandError, CommandResult, run_command

logger = get_logger(__name__)

# qcow2 -> qcow2 rewrites use larger clusters: fewer L2 lookups, smaller metadata
QCOW2_CLUSTER_SIZE = "2M"

# Formats qemu-img check can verify
CHECKABLE_FORMATS = {DiskFormat.QCOW2, DiskFormat.VHD, DiskFormat.VMDK}

GIB = 1024 ** 3


@dataclass
class ImageInfo:
    """Subset of ``qemu-img info --output=json``."""
    format: str
    virtual_size: int
    actual_size: int

    @property
    def disk_format(self) -> Optional[DiskFormat]:
        return DiskFormat.from_qemu_name(self.format)


def to_disk_format(fmt: DiskFormat | str) -> DiskFormat:
    """Coerce a format name, raising UnsupportedFormat for unknown names."""
    if isinstance(fmt, DiskFormat):
        return fmt
    try:
        return DiskFormat(fmt.lower())
    except ValueError:
        converted = DiskFormat.from_qemu_name(fmt.lower())
        if converted is None:
            raise UnsupportedFormat(fmt)
        return converted


def layout_options(source: DiskFormat, target: DiskFormat) -> list[str]:
    """Target-specific ``-o`` options for qemu-img convert.

    - vhd: fixed layout; cloud importers reject dynamic VHDs, and
      force_size keeps the virtual size byte-exact instead of CHS-rounded
    - vmdk: stream-optimized, the layout OVA/OVF importers expect
    - qcow2 from qcow2: tuned cluster size
    """
    if target is DiskFormat.VHD:
        return ["subformat=fixed", "force_size=on"]
    if target is DiskFormat.VMDK:
        return ["subformat=streamOptimized"]
    if target is DiskFormat.QCOW2 and source is DiskFormat.QCOW2:
        return [f"cluster_size={QCOW2_CLUSTER_SIZE}"]
    return []


class DiskImageTool:
    """Thin wrapper over the qemu-img operations a build consumes.

    Commands go through ``runner`` (``run_command`` by default), so
    callers and tests can substitute it.
    """

    def __init__(self, binary: str = "qemu-img", runner: Callable[..., CommandResult] = run_command):
        self.binary = binary
        self.runner = runner

    def create(self, fmt: DiskFormat, size: str, path: str | Path) -> CommandResult:
        """``qemu-img create -f <fmt> <path> <size>``. Raises CommandError."""
        return self.runner(
            [self.binary, "create", "-f", fmt.qemu_name, str(path), size],
            capture_output=True,
        )

    def convert(
        self,
        source_format: DiskFormat,
        target_format: DiskFormat,
        options: list[str],
        source: str | Path,
        dest: str | Path,
        progress_callback: Optional[Callable[[float], None]] = None,
    ) -> CommandResult:
        """``qemu-img convert``. Raises CommandError."""
        cmd = [self.binary, "convert", "-p", "-f", source_format.qemu_name, "-O", target_format.qemu_name]
        if options:
            cmd += ["-o", ",".join(options)]
        cmd += [str(source), str(dest)]

        logger.info(f"Running: {' '.join(cmd)}")
        if progress_callback:
            return self.runner(
                cmd,
                progress_pattern=r"\((\d+\.\d+)/100%\)",
                progress_callback=progress_callback,
            )
        return self.runner(cmd, capture_output=True)

    def info(self, path: str | Path) -> ImageInfo:
        """Inspect an image. Raises CommandError or ValueError."""
        result = self.runner(
            [self.binary, "info", "--output=json", str(path)],
            capture_output=True,
        )
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ValueError(f"Cannot parse qemu-img info output: {e}")
        return ImageInfo(
            format=data.get("format", "unknown"),
            virtual_size=int(data.get("virtual-size", 0)),
            actual_size=int(data.get("actual-size", 0)),
        )

    def check(self, path: str | Path, fmt: DiskFormat) -> bool:
        """Verify image integrity. Leaks are reported but not fatal."""
        result = self.runner(
            [self.binary, "check", "-f", fmt.qemu_name, str(path)],
            capture_output=True,
            check=False,
        )
        # qemu-img check returns 0 for no errors, 3 for leaks (fixable), 2 for corruption
        if result.returncode == 0:
            return True
        if result.returncode == 3:
            logger.warning(f"Image has leaked clusters (fixable): {path}")
            return True
        logger.error(f"Image check failed (code {result.returncode}): {result.stderr.strip()}")
        return False


class ImageConverter:
    """Converts the working disk into the requested target formats.

    Each target is independent: one failed conversion never prevents the
    others from being attempted.
    """

    def __init__(self, tool: DiskImageTool, operator: Optional[Operator] = None):
        self.tool = tool
        self.operator = operator or Operator()

    def convert(
        self,
        source: str | Path,
        source_format: DiskFormat | str,
        target_format: DiskFormat | str,
        output_path: str | Path,
        progress_callback: Optional[Callable[[float], None]] = None,
    ) -> ConversionResult:
        """Convert ``source`` into ``target_format`` at ``output_path``.

        Raises:
            UnsupportedFormat: Unknown source or target format name
            OverwriteDeclined: Output exists and the operator said no
            ConversionError: Missing source, output path is the source, or
                qemu-img failed
        """
        source = Path(source)
        output_path = Path(output_path)
        source_format = to_disk_format(source_format)
        target_format = to_disk_format(target_format)

        if not source.exists():
            raise ConversionError(f"Source image not found: {source}")
        if output_path.resolve() == source.resolve():
            raise ConversionError(f"Output {output_path} is the source image itself; choose another output dir")

        self._inspect(source, source_format)

        if output_path.exists():
            if not self.operator.confirm(f"{output_path} already exists. Overwrite?", default=False):
                raise OverwriteDeclined(output_path)
            output_path.unlink()

        output_path.parent.mkdir(parents=True, exist_ok=True)
        options = layout_options(source_format, target_format)

        start = time.monotonic()
        try:
            self.tool.convert(source_format, target_format, options, source, output_path,
                              progress_callback=progress_callback)
        except CommandError as e:
            raise ConversionError(
                f"{source_format.value} → {target_format.value} failed "
                f"(exit code {e.returncode}): {e.stderr.strip() or e}"
            )
        duration = time.monotonic() - start

        if not output_path.exists():
            raise ConversionError(f"Conversion produced no output file: {output_path}")

        if target_format in CHECKABLE_FORMATS and not self.tool.check(output_path, target_format):
            logger.warning(f"Integrity check reported problems for {output_path.name}")

        size = output_path.stat().st_size
        logger.info(
            f"Conversion complete: {output_path.name} "
            f"({size / GIB:.1f}GB in {duration:.0f}s)"
        )
        return ConversionResult(format=target_format.value, path=output_path, size=size, duration=duration)

    def convert_all(
        self,
        source: str | Path,
        source_format: DiskFormat,
        targets: Iterable[tuple[DiskFormat | str, Path]],
    ) -> tuple[list[ConversionResult], list[ArtifactFailure]]:
        """Convert into each ``(format, output_path)`` target in order."""
        results: list[ConversionResult] = []
        failures: list[ArtifactFailure] = []
        for fmt, output_path in targets:
            name = fmt.value if isinstance(fmt, DiskFormat) else fmt
            logger.info(f"[cyan]Converting to {name}[/cyan] → {output_path}")
            try:
                results.append(self.convert(source, source_format, fmt, output_path))
            except ConversionError as e:
                logger.error(f"[red]✗ {name} conversion failed: {escape(str(e))}[/red]")
                failures.append(ArtifactFailure(component=e.component, format=name, error=str(e)))
        return results, failures

    def _inspect(self, source: Path, expected: DiskFormat) -> None:
        """Log the source image's declared format and sizes.

        Inspection is informational: failures and mismatches only warn.
        """
        try:
            info = self.tool.info(source)
        except (CommandError, ValueError) as e:
            logger.warning(f"Could not inspect {source.name}: {escape(str(e))}")
            return

        logger.info(
            f"Source {source.name}: format={info.format}, "
            f"virtual-size={info.virtual_size / GIB:.1f}GB, "
            f"actual-size={info.actual_size / GIB:.1f}GB"
        )
        if info.disk_format is not expected:
            logger.warning(
                f"{source.name} declares format '{info.format}' but the build uses "
                f"'{expected.value}'; converting as {expected.value}"
            )
