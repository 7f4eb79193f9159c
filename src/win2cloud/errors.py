"""Error taxonomy for win2cloud builds.

Every fatal error names the component that raised it. Precondition errors
(config, prerequisites, disk creation) abort the whole run; phase errors
abort the remaining phases but leave the working disk in place; conversion
and compression errors are scoped to one output format.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class BuildError(RuntimeError):
    """Base class for all build failures."""

    component = "build"

    def __str__(self) -> str:
        return f"[{self.component}] {super().__str__()}"


# --- Configuration ---

class ConfigError(BuildError):
    component = "config"


class ConfigNotFound(ConfigError):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(f"Configuration file not found: {self.path}")


class ConfigParseError(ConfigError):
    """Unparseable document, or a missing/invalid field."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        if field:
            message = f"{field}: {message}"
        super().__init__(message)


# --- Prerequisites ---

class PrerequisiteError(BuildError):
    component = "prerequisites"


class MissingArtifact(PrerequisiteError):
    def __init__(self, name: str, path: str | Path | None = None):
        self.name = name
        self.path = Path(path) if path else None
        where = f" ({self.path})" if self.path else ""
        super().__init__(f"Missing {name}{where}")


class CorruptArtifact(PrerequisiteError):
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Corrupt {name}: {reason}")


# --- Provisioning ---

class DiskCreateError(BuildError):
    component = "provisioner"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        if exit_code is not None:
            message = f"{message} (exit code {exit_code})"
        super().__init__(message)


# --- Phases ---

class PhaseError(BuildError):
    """A guest phase could not complete. The working disk is left as-is."""

    component = "orchestrator"

    def __init__(self, phase: str, message: str):
        self.phase = phase
        super().__init__(f"Phase {phase} failed: {message}")


class PhaseSubprocessError(PhaseError):
    def __init__(self, phase: str, exit_code: Optional[int], transcript_path: str | Path | None = None):
        self.exit_code = exit_code
        self.transcript_path = Path(transcript_path) if transcript_path else None
        message = f"emulator exited with code {exit_code}"
        if self.transcript_path:
            message += f", transcript: {self.transcript_path}"
        super().__init__(phase, message)


class WorkingDiskLost(PhaseError):
    """The working disk disappeared between phases of the same run."""

    def __init__(self, phase: str, path: str | Path):
        self.path = Path(path)
        super().__init__(phase, f"working disk not found at {self.path}")


# --- Conversion ---

class ConversionError(BuildError):
    component = "converter"


class UnsupportedFormat(ConversionError):
    def __init__(self, fmt: str):
        self.format = fmt
        super().__init__(f"Unsupported disk format '{fmt}'")


class OverwriteDeclined(ConversionError):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(f"Operator declined to overwrite {self.path}")


# --- Compression ---

class CompressionError(BuildError):
    component = "compressor"


class UnsupportedScheme(CompressionError):
    def __init__(self, scheme: str):
        self.scheme = scheme
        super().__init__(f"Unsupported compression scheme '{scheme}'")
