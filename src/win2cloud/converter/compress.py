"""Output compression with external tools and in-process fallbacks.

Each scheme has an ordered list of mechanisms. The first available one
is used; a scheme never silently turns into another (a gzip request
always yields a gzip stream, whether pigz, gzip or Python wrote it).
"""

from __future__ import annotations

import gzip
import shutil
import time
import zipfile
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from rich.markup import escape

from win2cloud.config import CompressionConfig
from win2cloud.errors import CompressionError, UnsupportedScheme
from win2cloud.pipeline.state import ArtifactFailure, CompressedArtifact, ConversionResult
from win2cloud.utils.logging import get_logger
from win2cloud.utils.subprocess import CommandError, CommandResult, run_command

logger = get_logger(__name__)

COPY_BUFFER = 16 * 1024 * 1024


class CompressionScheme(str, Enum):
    GZIP = "gzip"
    ZIP = "zip"
    SEVEN_ZIP = "7z"

    @property
    def suffix(self) -> str:
        return {"gzip": ".gz", "zip": ".zip", "7z": ".7z"}[self.value]

    @classmethod
    def parse(cls, name: str) -> "CompressionScheme":
        key = name.strip().lower()
        aliases = {"gz": "gzip", "sevenzip": "7z", "7zip": "7z", "7-zip": "7z"}
        try:
            return cls(aliases.get(key, key))
        except ValueError:
            raise UnsupportedScheme(name)


# External binaries per scheme, in order of preference
EXTERNAL_TOOLS = {
    CompressionScheme.GZIP: ["pigz", "gzip"],
    CompressionScheme.ZIP: ["zip"],
    CompressionScheme.SEVEN_ZIP: ["7zz", "7z", "7za"],
}


class Compressor:
    """Compresses artifacts and reports size and ratio."""

    def __init__(
        self,
        level: int = 6,
        runner: Callable[..., CommandResult] = run_command,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.level = level
        self.runner = runner
        self.which = which

    def compress(self, path: str | Path, scheme: CompressionScheme | str) -> CompressedArtifact:
        """Compress ``path`` next to itself, keeping the original.

        Raises:
            UnsupportedScheme: Unknown scheme name
            CompressionError: Missing input, no usable mechanism, tool
                failure, or an output that is not smaller than the input
        """
        path = Path(path)
        if not isinstance(scheme, CompressionScheme):
            scheme = CompressionScheme.parse(scheme)

        if not path.is_file():
            raise CompressionError(f"Nothing to compress: {path} not found")
        original_size = path.stat().st_size
        if original_size == 0:
            raise CompressionError(f"Refusing to compress empty file {path}")

        output = path.with_name(path.name + scheme.suffix)
        output.unlink(missing_ok=True)

        start = time.monotonic()
        mechanism = self._run(scheme, path, output)
        duration = time.monotonic() - start

        if not output.is_file():
            raise CompressionError(f"{mechanism} produced no output for {path.name}")

        size = output.stat().st_size
        if size == 0 or size > original_size:
            output.unlink(missing_ok=True)
            raise CompressionError(
                f"{mechanism} output for {path.name} is {size} bytes "
                f"from {original_size}; discarded"
            )

        artifact = CompressedArtifact(
            path=output,
            original_size=original_size,
            size=size,
            scheme=scheme.value,
            mechanism=mechanism,
            duration=duration,
        )
        logger.info(
            f"Compressed {path.name} with {mechanism}: "
            f"{size / 1024**3:.2f}GB (saved {artifact.ratio:.1%})"
        )
        return artifact

    def compress_all(
        self,
        results: Iterable[ConversionResult],
        config: CompressionConfig,
    ) -> tuple[list[CompressedArtifact], list[ArtifactFailure]]:
        """Compress each converted artifact with its configured scheme."""
        artifacts: list[CompressedArtifact] = []
        failures: list[ArtifactFailure] = []
        for result in results:
            scheme = config.scheme_for(result.format)
            logger.info(f"[cyan]Compressing {result.path.name} ({scheme})[/cyan]")
            try:
                artifacts.append(self.compress(result.path, scheme))
            except CompressionError as e:
                logger.error(f"[red]✗ {result.format} compression failed: {escape(str(e))}[/red]")
                failures.append(ArtifactFailure(component=e.component, format=result.format, error=str(e)))
        return artifacts, failures

    def _run(self, scheme: CompressionScheme, source: Path, output: Path) -> str:
        """Compress with the first available mechanism; return its name."""
        for tool in EXTERNAL_TOOLS[scheme]:
            binary = self.which(tool)
            if not binary:
                continue
            try:
                self.runner(self._external_command(tool, binary, source, output), capture_output=True)
            except CommandError as e:
                raise CompressionError(f"{tool} failed (exit code {e.returncode}): {e.stderr.strip() or e}")
            return tool

        if scheme is CompressionScheme.GZIP:
            self._gzip_in_process(source, output)
            return "python-gzip"
        if scheme is CompressionScheme.ZIP:
            self._zip_in_process(source, output)
            return "python-zipfile"

        raise CompressionError(
            f"No {scheme.value} implementation found (tried {', '.join(EXTERNAL_TOOLS[scheme])})"
        )

    def _external_command(self, tool: str, binary: str, source: Path, output: Path) -> list[str]:
        if tool in ("pigz", "gzip"):
            # -k keeps the source; output lands at <source>.gz
            return [binary, "-k", "-f", f"-{self.level}", str(source)]
        if tool == "zip":
            return [binary, "-j", "-q", f"-{self.level}", str(output), str(source)]
        return [binary, "a", "-t7z", f"-mx={self.level}", "-y", str(output), str(source)]

    def _gzip_in_process(self, source: Path, output: Path) -> None:
        try:
            with open(source, "rb") as f_in, gzip.open(output, "wb", compresslevel=self.level) as f_out:
                shutil.copyfileobj(f_in, f_out, COPY_BUFFER)
        except OSError as e:
            output.unlink(missing_ok=True)
            raise CompressionError(f"gzip of {source.name} failed: {e}")

    def _zip_in_process(self, source: Path, output: Path) -> None:
        try:
            with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED,
                                 compresslevel=self.level, allowZip64=True) as zf:
                zf.write(source, arcname=source.name)
        except OSError as e:
            output.unlink(missing_ok=True)
            raise CompressionError(f"zip of {source.name} failed: {e}")
