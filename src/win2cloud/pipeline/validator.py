"""Pre-build prerequisite validation."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from win2cloud.config import BuildConfig, BuildLayout
from win2cloud.errors import CorruptArtifact, MissingArtifact
from win2cloud.pipeline.state import GUEST_PHASES, Phase
from win2cloud.utils.logging import get_logger

logger = get_logger(__name__)

MIB = 1024 * 1024

# Plausibility floors: catch truncated downloads, nothing more
MIN_INSTALL_MEDIA_BYTES = 100 * MIB
MIN_DRIVER_MEDIA_BYTES = 1 * MIB


@dataclass
class ValidationCheck:
    """Result of a single validation check."""
    name: str
    passed: bool
    message: str
    blocking: bool = True  # If False, it's a warning not an error
    reason: str = ""       # "missing" or "corrupt" for failed artifact checks


@dataclass
class ValidationReport:
    """Complete prerequisite report for a build."""
    vm_name: str
    checks: list[ValidationCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks if c.blocking)

    @property
    def warnings(self) -> list[ValidationCheck]:
        return [c for c in self.checks if not c.blocking and not c.passed]


class PrerequisiteValidator:
    """Confirms the build inputs exist and look sane before any phase.

    Read-only: nothing is downloaded, repaired or created. Only the
    inputs needed by the phases that will actually run are required.
    """

    def __init__(self, which: Callable[[str], Optional[str]] = shutil.which):
        self.which = which

    def check(
        self,
        config: BuildConfig,
        layout: BuildLayout,
        phases: Iterable[Phase] = GUEST_PHASES,
        vm_name: str = "",
    ) -> ValidationReport:
        """Run all checks relevant to ``phases`` and collect the results."""
        phases = set(phases)
        report = ValidationReport(vm_name=vm_name or config.vm.name)

        if Phase.INSTALLING in phases:
            report.checks.append(self._check_file(
                "installation media", layout.install_media, MIN_INSTALL_MEDIA_BYTES))
        if phases & {Phase.INSTALLING, Phase.CONFIGURING}:
            report.checks.append(self._check_file(
                "driver media", layout.driver_media, MIN_DRIVER_MEDIA_BYTES))
        if phases & set(GUEST_PHASES):
            report.checks.append(self._check_binary("emulator", config.emulator.binary))
        report.checks.append(self._check_binary("disk image tool", config.emulator.disk_tool))
        report.checks.append(self._check_work_dir(layout.work_dir))

        return report

    def validate(
        self,
        config: BuildConfig,
        layout: BuildLayout,
        phases: Iterable[Phase] = GUEST_PHASES,
        vm_name: str = "",
    ) -> ValidationReport:
        """Like ``check``, but raise on the first blocking failure.

        Raises:
            MissingArtifact: A required file or binary is absent
            CorruptArtifact: A file is present but implausible
        """
        report = self.check(config, layout, phases, vm_name)
        for check in report.checks:
            if check.passed:
                logger.debug(f"  ✓ {check.name}: {check.message}")
                continue
            if not check.blocking:
                logger.warning(f"  ⚠ {check.name}: {check.message}")
                continue
            if check.reason == "corrupt":
                raise CorruptArtifact(check.name, check.message)
            raise MissingArtifact(check.name, check.message)
        return report

    def _check_file(self, name: str, path: Path, min_bytes: int) -> ValidationCheck:
        if not path.is_file():
            return ValidationCheck(name, False, str(path), reason="missing")
        size = path.stat().st_size
        if size < min_bytes:
            return ValidationCheck(
                name, False,
                f"{path} is {size} bytes, expected at least {min_bytes} (truncated download?)",
                reason="corrupt",
            )
        return ValidationCheck(name, True, f"{path} ({size / MIB:.0f} MiB)")

    def _check_binary(self, name: str, binary: str) -> ValidationCheck:
        resolved = self.which(binary)
        if resolved:
            return ValidationCheck(name, True, resolved)
        return ValidationCheck(name, False, f"'{binary}' not found in PATH", reason="missing")

    def _check_work_dir(self, work_dir: Path) -> ValidationCheck:
        if work_dir.is_dir():
            free_gb = shutil.disk_usage(work_dir).free / 1024**3
            return ValidationCheck("work directory", True, f"{work_dir} ({free_gb:.0f}GB free)")
        return ValidationCheck(
            "work directory", False, f"{work_dir} does not exist yet and will be created", blocking=False,
        )
