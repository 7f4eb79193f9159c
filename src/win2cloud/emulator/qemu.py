"""QEMU command-line assembly for the guest phases.

Each guest phase boots the same working disk with a different set of
auxiliary devices:

    Phase          install ISO  driver ISO  boot order  port forward
    installing     yes          yes         dc          -
    configuring    -            yes         c           remote access
    generalizing   -            -           c           remote access
    test-booting   -            -           c           -

Installing and generalizing end when the guest powers itself off.
Configuring and test-booting have no such signal and wait for the
operator to acknowledge completion.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from win2cloud.config import Acceleration, BuildConfig, BuildLayout
from win2cloud.pipeline.state import Phase

INSTALL_MEDIA_INDEX = 1
DRIVER_MEDIA_INDEX = 2


class WaitPolicy(str, Enum):
    WAIT_FOR_EXIT = "wait-for-exit"
    WAIT_FOR_EXIT_OR_SIGNAL = "wait-for-exit-or-signal"


@dataclass(frozen=True)
class PhaseProfile:
    install_media: bool
    driver_media: bool
    boot_order: str
    forward_remote_access: bool
    wait_policy: WaitPolicy


PHASE_PROFILES: dict[Phase, PhaseProfile] = {
    Phase.INSTALLING: PhaseProfile(True, True, "dc", False, WaitPolicy.WAIT_FOR_EXIT),
    Phase.CONFIGURING: PhaseProfile(False, True, "c", True, WaitPolicy.WAIT_FOR_EXIT_OR_SIGNAL),
    Phase.GENERALIZING: PhaseProfile(False, False, "c", True, WaitPolicy.WAIT_FOR_EXIT),
    Phase.TEST_BOOTING: PhaseProfile(False, False, "c", False, WaitPolicy.WAIT_FOR_EXIT_OR_SIGNAL),
}


@dataclass(frozen=True)
class Drive:
    """One ``-drive`` attachment."""
    path: Path
    format: str
    interface: str
    cache: str = "writeback"
    media: Optional[str] = None
    index: Optional[int] = None

    def to_arg(self) -> str:
        parts = [f"file={self.path}", f"format={self.format}", f"if={self.interface}"]
        if self.media:
            parts.append(f"media={self.media}")
        if self.index is not None:
            parts.append(f"index={self.index}")
        parts.append(f"cache={self.cache}")
        return ",".join(parts)


@dataclass(frozen=True)
class PortForward:
    protocol: str
    host_port: int
    guest_port: int

    def to_rule(self) -> str:
        return f"hostfwd={self.protocol}::{self.host_port}-:{self.guest_port}"


@dataclass(frozen=True)
class SubprocessInvocation:
    """A single emulator launch for one phase."""
    binary: str
    args: tuple[str, ...]
    transcript_path: Optional[Path]
    wait_policy: WaitPolicy

    @property
    def command(self) -> list[str]:
        return [self.binary, *self.args]


def cdrom(path: Path, index: int) -> Drive:
    return Drive(path=path, format="raw", interface="ide", cache="none", media="cdrom", index=index)


def machine_args(config: BuildConfig) -> list[str]:
    emu = config.emulator
    if config.vm.acceleration is Acceleration.HARDWARE:
        return ["-machine", f"{emu.machine},accel={emu.accelerator}", "-cpu", "host"]
    return ["-machine", f"{emu.machine},accel=tcg", "-cpu", "qemu64"]


def build_invocation(
    config: BuildConfig,
    layout: BuildLayout,
    phase: Phase,
    disk_path: Path,
    vm_name: str,
) -> SubprocessInvocation:
    """Assemble the emulator invocation for ``phase``."""
    if phase not in PHASE_PROFILES:
        raise ValueError(f"Phase '{phase.value}' does not boot the guest")

    profile = PHASE_PROFILES[phase]
    emu = config.emulator

    args = ["-name", f"{vm_name}-{phase.value}"]
    args += ["-m", str(config.vm.memory_mb), "-smp", str(config.vm.cpus)]
    args += machine_args(config)

    disk = Drive(
        path=disk_path,
        format=config.disk.format.qemu_name,
        interface=emu.disk_interface,
        cache=emu.cache,
    )
    args += ["-drive", disk.to_arg()]
    if profile.install_media:
        args += ["-drive", cdrom(layout.install_media, INSTALL_MEDIA_INDEX).to_arg()]
    if profile.driver_media:
        args += ["-drive", cdrom(layout.driver_media, DRIVER_MEDIA_INDEX).to_arg()]

    args += ["-boot", f"order={profile.boot_order}"]
    args += ["-display", emu.display]
    if emu.display != "none":
        args += ["-usb", "-device", "usb-tablet"]

    netdev = "user,id=net0"
    if profile.forward_remote_access:
        ra = emu.remote_access
        netdev += "," + PortForward(ra.protocol, ra.host_port, ra.guest_port).to_rule()
    args += ["-device", f"{emu.nic_model},netdev=net0", "-netdev", netdev]

    args += ["-rtc", f"base={emu.rtc_base}"]
    args += list(emu.extra_args)

    return SubprocessInvocation(
        binary=emu.binary,
        args=tuple(args),
        transcript_path=layout.transcript_path(vm_name, phase.value),
        wait_policy=profile.wait_policy,
    )
