"""Configuration models for win2cloud using Pydantic v2."""

from __future__ import annotations

import json
import re
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from win2cloud.errors import ConfigNotFound, ConfigParseError

SIZE_SPEC = re.compile(r"^(\d+(?:\.\d+)?)([KMGTPE])$", re.IGNORECASE)
SIZE_UNITS = {"K": 1, "M": 2, "G": 3, "T": 4, "P": 5, "E": 6}


class DiskFormat(str, Enum):
    QCOW2 = "qcow2"
    RAW = "raw"
    VHD = "vhd"
    VMDK = "vmdk"

    @property
    def qemu_name(self) -> str:
        """Format name as understood by qemu-img / qemu -drive."""
        return "vpc" if self is DiskFormat.VHD else self.value

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @classmethod
    def from_qemu_name(cls, name: str) -> Optional["DiskFormat"]:
        if name == "vpc":
            return cls.VHD
        try:
            return cls(name)
        except ValueError:
            return None


class Acceleration(str, Enum):
    SOFTWARE = "software"
    HARDWARE = "hardware"


class FrozenModel(BaseModel):
    """Configuration is fixed for the duration of a run."""

    model_config = ConfigDict(frozen=True)


def parse_size(spec: str) -> int:
    """Convert a size spec like ``150G`` to bytes (binary units)."""
    match = SIZE_SPEC.match(spec.strip())
    if not match:
        raise ValueError(f"Invalid size '{spec}': expected <number><K|M|G|T|P|E>, e.g. 150G")
    number, unit = match.groups()
    return int(float(number) * 1024 ** SIZE_UNITS[unit.upper()])


class VMConfig(FrozenModel):
    """Guest hardware used by every phase."""

    name: str = Field("windows", description="Default build name (overridden by --name)")
    memory_mb: int = Field(..., gt=0, description="Guest memory in MiB")
    cpus: int = Field(..., gt=0, description="Guest vCPU count")
    acceleration: Acceleration = Field(Acceleration.HARDWARE, description="software (TCG) or hardware (KVM/WHPX/HVF)")


class DiskConfig(FrozenModel):
    """Working disk settings."""

    size: str = Field(..., description="Virtual size, e.g. 150G")
    format: DiskFormat = Field(..., description="Working disk format")

    @field_validator("size")
    @classmethod
    def check_size(cls, v: str) -> str:
        if parse_size(v) <= 0:
            raise ValueError(f"Size must be greater than zero, got '{v}'")
        return v

    @property
    def size_bytes(self) -> int:
        return parse_size(self.size)


class CompressionConfig(FrozenModel):
    """Output compression. Scheme names are interpreted by the compressor."""

    enabled: bool = Field(False, description="Compress each converted output")
    scheme: str = Field("gzip", description="gzip, zip or 7z")
    per_format: dict[str, str] = Field(default_factory=dict, description="Scheme override per output format")
    level: int = Field(6, ge=1, le=9, description="Compression level")

    def scheme_for(self, fmt: DiskFormat | str) -> str:
        key = fmt.value if isinstance(fmt, DiskFormat) else fmt
        return self.per_format.get(key, self.scheme)


class OutputConfig(FrozenModel):
    """Target formats produced from the working disk."""

    formats: list[DiskFormat] = Field(default_factory=list, description="Ordered target formats")
    dir: Path = Field(Path("output"), description="Output directory (relative to the work dir)")
    compression: CompressionConfig = CompressionConfig()

    @field_validator("formats")
    @classmethod
    def dedupe_formats(cls, v: list[DiskFormat]) -> list[DiskFormat]:
        return list(dict.fromkeys(v))


class MediaConfig(FrozenModel):
    """Installation inputs. Relative paths resolve against the work dir."""

    install: Path = Field(Path("media/windows.iso"), description="Windows installation ISO")
    drivers: Path = Field(Path("media/virtio-win.iso"), description="VirtIO driver ISO")


class PortForwardConfig(FrozenModel):
    protocol: str = Field("tcp", pattern="^(tcp|udp)$")
    host_port: int = Field(3389, ge=1, le=65535)
    guest_port: int = Field(3389, ge=1, le=65535)


class EmulatorConfig(FrozenModel):
    """QEMU invocation settings."""

    binary: str = Field("qemu-system-x86_64", description="Emulator binary name or path")
    disk_tool: str = Field("qemu-img", description="Disk image tool binary name or path")
    machine: str = Field("q35", description="QEMU machine type")
    accelerator: str = Field("kvm", description="Accelerator used in hardware mode (kvm, whpx, hvf)")
    display: str = Field("gtk", description="QEMU display backend (gtk, sdl, vnc=:0, none)")
    disk_interface: str = Field("virtio", description="Working disk interface")
    cache: str = Field("writeback", description="Working disk cache mode")
    nic_model: str = Field("e1000", description="Guest network card model")
    rtc_base: str = Field("localtime", description="RTC base (Windows expects localtime)")
    remote_access: PortForwardConfig = PortForwardConfig()
    shutdown_grace_seconds: int = Field(30, ge=1, le=600, description="Wait before killing after acknowledgement")
    extra_args: list[str] = Field(default_factory=list, description="Appended to every emulator command")


class BuildConfig(FrozenModel):
    """Root build configuration."""

    vm: VMConfig
    disk: DiskConfig
    output: OutputConfig = OutputConfig()
    media: MediaConfig = MediaConfig()
    emulator: EmulatorConfig = EmulatorConfig()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "BuildConfig":
        """Load configuration from a YAML (or JSON) file."""
        return load_config(path)

    def save(self, path: str | Path) -> Path:
        """Write the configuration; JSON for ``.json`` paths, YAML otherwise."""
        path = Path(path)
        data = self.model_dump(mode="json")
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() == ".json":
            path.write_text(json.dumps(data, indent=2) + "\n")
        else:
            path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path


class BuildLayout:
    """Every path a build touches, derived from an explicit work directory.

    Layout under ``work_dir``::

        disks/<name>.<ext>           working disk
        logs/<name>-<phase>.log      emulator transcripts
        <output.dir>/<name>.<ext>    converted (and compressed) artifacts
    """

    def __init__(self, work_dir: str | Path, config: BuildConfig):
        self.work_dir = Path(work_dir).resolve()
        self.config = config
        self.disks_dir = self.work_dir / "disks"
        self.logs_dir = self.work_dir / "logs"
        self.output_dir = self._resolve(config.output.dir)

    def _resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else self.work_dir / path

    @property
    def install_media(self) -> Path:
        return self._resolve(self.config.media.install)

    @property
    def driver_media(self) -> Path:
        return self._resolve(self.config.media.drivers)

    def disk_path(self, vm_name: str) -> Path:
        return self.disks_dir / f"{vm_name}{self.config.disk.format.extension}"

    def output_path(self, vm_name: str, fmt: DiskFormat) -> Path:
        return self.output_dir / f"{vm_name}{fmt.extension}"

    def transcript_path(self, vm_name: str, phase: str) -> Path:
        return self.logs_dir / f"{vm_name}-{phase}.log"


def load_config(path: str | Path) -> BuildConfig:
    """Load and validate a build configuration document.

    Raises:
        ConfigNotFound: If the file does not exist
        ConfigParseError: If the document cannot be parsed or a field is
            missing or invalid (the field path is part of the error)
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigNotFound(path)

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigParseError(f"Cannot parse {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigParseError(f"Expected a mapping at the top of {path}")

    try:
        return BuildConfig(**data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        message = "field required" if first["type"] == "missing" else first["msg"]
        raise ConfigParseError(message, field=field)


EXAMPLE_CONFIG = {
    "vm": {"name": "win2022", "memory_mb": 8192, "cpus": 4, "acceleration": "hardware"},
    "disk": {"size": "150G", "format": "qcow2"},
    "output": {
        "formats": ["vhd", "raw"],
        "dir": "output",
        "compression": {"enabled": True, "scheme": "gzip"},
    },
    "media": {"install": "media/windows.iso", "drivers": "media/virtio-win.iso"},
}


def write_example_config(path: str | Path) -> Path:
    """Write a starter configuration with every default spelled out."""
    return BuildConfig(**EXAMPLE_CONFIG).save(path)
