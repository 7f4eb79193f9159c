"""Build pipeline orchestrator — sequences every phase of an image build.

Phases (executed in order, each only after its predecessor succeeded):
1. provisioning  — Create or reuse the working disk
2. installing    — Boot the installer ISO; Windows powers off when done
3. configuring   — Manual configuration over the console/RDP; operator acknowledges
4. generalizing  — Sysprep run; Windows powers off when done
5. test-booting  — Optional boot of the finished disk; operator acknowledges
6. converting    — qemu-img convert into each requested target format
7. compressing   — Compress each converted artifact

Guest phases 2-5 can be skipped with flags given at start; test-booting
is also offered interactively. A failed guest phase stops the build and
is never retried: the phase may have half-modified the working disk, so
a human has to look at it before anything else touches it.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from rich.markup import escape

from win2cloud.config import BuildConfig, BuildLayout, DiskFormat
from win2cloud.converter.compress import Compressor
from win2cloud.converter.disk import DiskImageTool, ImageConverter
from win2cloud.emulator.qemu import WaitPolicy, build_invocation
from win2cloud.errors import BuildError, PhaseSubprocessError, WorkingDiskLost
from win2cloud.pipeline.operator import Operator
from win2cloud.pipeline.provision import DiskProvisioner
from win2cloud.pipeline.state import GUEST_PHASES, PHASE_ORDER, BuildState, Phase
from win2cloud.pipeline.validator import PrerequisiteValidator
from win2cloud.utils.logging import get_logger
from win2cloud.utils.subprocess import CommandError, ProcessHandle, ProcessState

logger = get_logger(__name__)

Launcher = Callable[[list[str], Optional[Path]], ProcessHandle]

ACK_PROMPTS = {
    Phase.CONFIGURING: "Configure Windows in the VM, then press Enter to stop it",
    Phase.TEST_BOOTING: "Check the test boot, then press Enter to stop the VM",
}


@dataclass
class BuildResult:
    """Result of a build execution."""
    state: BuildState
    failed_phase: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """Every phase that ran completed."""
        return self.state.succeeded

    @property
    def complete(self) -> bool:
        """Success, and every requested artifact was produced."""
        return self.success and not self.state.failures

    @property
    def duration(self) -> str:
        return f"{self.state.elapsed_s:.0f}s"


class BuildPipeline:
    """Orchestrates one build run against a single working disk.

    The working disk is the only resource shared between phases, and at
    most one emulator has it attached at a time: each phase waits for the
    previous emulator process to exit before the next one starts.
    """

    poll_interval = 1.0

    def __init__(
        self,
        config: BuildConfig,
        layout: BuildLayout,
        operator: Optional[Operator] = None,
        disk_tool: Optional[DiskImageTool] = None,
        compressor: Optional[Compressor] = None,
        validator: Optional[PrerequisiteValidator] = None,
        launcher: Launcher = ProcessHandle.start,
        recreate_disk: bool = False,
    ):
        self.config = config
        self.layout = layout
        self.operator = operator or Operator()
        self.disk_tool = disk_tool or DiskImageTool(config.emulator.disk_tool)
        self.compressor = compressor or Compressor(level=config.output.compression.level)
        self.validator = validator or PrerequisiteValidator()
        self.launcher = launcher
        self.provisioner = DiskProvisioner(self.disk_tool, layout, self.operator, recreate=recreate_disk)
        self.converter = ImageConverter(self.disk_tool, self.operator)

    def run(
        self,
        vm_name: Optional[str] = None,
        skip: Iterable[Phase] = (),
        output_formats: Optional[Iterable[DiskFormat]] = None,
    ) -> BuildResult:
        """Execute a full build.

        Args:
            vm_name: Build name; names the working disk and every artifact
            skip: Guest phases to skip (installing, configuring,
                generalizing, test-booting)
            output_formats: Target formats; defaults to the configured ones

        Returns:
            BuildResult; on phase failure the state is FAILED and names
            the failing phase

        Raises:
            PrerequisiteError: Inputs missing or implausible; nothing ran
        """
        vm_name = vm_name or self.config.vm.name
        skip = self._check_skip(skip)
        formats = self._formats(output_formats)

        state = BuildState(vm_name=vm_name, working_disk_path=self.layout.disk_path(vm_name))
        guest_phases = [p for p in GUEST_PHASES if p not in skip]
        self.validator.validate(self.config, self.layout, guest_phases, vm_name)

        logger.info(
            f"[bold]Starting build {vm_name}[/bold]: "
            f"{self.config.disk.size} {self.config.disk.format.value}, "
            f"{self.config.vm.memory_mb}MB RAM, {self.config.vm.cpus} vCPU, "
            f"outputs: {', '.join(f.value for f in formats) or 'none'}"
        )

        for phase in PHASE_ORDER:
            reason = self._skip_reason(phase, skip, formats, state)
            if reason:
                state.skip(phase)
                logger.info(f"[dim]⏭ Phase {phase.label} skipped ({reason})[/dim]")
                continue

            state.enter(phase)
            logger.info(f"[cyan]▶ Phase: {phase.label}[/cyan]")
            try:
                self._execute_phase(phase, state, formats)
            except BuildError as e:
                state.fail(str(e))
                last = state.last_successful_phase.label if state.last_successful_phase else "none"
                logger.error(f"[red]✗ Phase {phase.label} failed: {escape(str(e))}[/red]")
                logger.error(
                    f"Last successful phase: {last}. "
                    f"Working disk left in place for inspection: {state.working_disk_path}"
                )
                return BuildResult(state=state, failed_phase=phase.value, error=str(e))

            state.complete(phase)
            logger.info(f"[green]✓ Phase {phase.label} complete[/green] ({state.timings[phase].duration_s:.0f}s)")

        state.finish()
        if state.failures:
            logger.warning(
                f"[yellow]Build {vm_name} finished with {len(state.failures)} failed artifact(s)[/yellow]"
            )
        else:
            logger.info(f"[bold green]Build {vm_name} complete in {state.elapsed_s:.0f}s[/bold green]")
        return BuildResult(state=state)

    def plan(
        self,
        vm_name: Optional[str] = None,
        skip: Iterable[Phase] = (),
        output_formats: Optional[Iterable[DiskFormat]] = None,
    ) -> list[str]:
        """Describe a build without executing anything."""
        vm_name = vm_name or self.config.vm.name
        skip = self._check_skip(skip)
        formats = self._formats(output_formats)
        disk = self.layout.disk_path(vm_name)
        compression = self.config.output.compression

        lines = [f"Build '{vm_name}', working disk {disk}"]
        for i, phase in enumerate(PHASE_ORDER, 1):
            if phase in skip:
                lines.append(f"{i}. {phase.label} (skipped)")
            elif phase in GUEST_PHASES:
                inv = build_invocation(self.config, self.layout, phase, disk, vm_name)
                suffix = " (asked at run time)" if phase is Phase.TEST_BOOTING else ""
                lines.append(f"{i}. {phase.label}{suffix}: {' '.join(inv.command)}")
            elif phase is Phase.PROVISIONING:
                lines.append(f"{i}. {phase.label}: create {self.config.disk.size} {self.config.disk.format.value} (or reuse)")
            elif phase is Phase.CONVERTING:
                if formats:
                    targets = ", ".join(str(self.layout.output_path(vm_name, f)) for f in formats)
                    lines.append(f"{i}. {phase.label}: {targets}")
                else:
                    lines.append(f"{i}. {phase.label} (no output formats)")
            elif compression.enabled and formats:
                schemes = ", ".join(f"{f.value}={compression.scheme_for(f)}" for f in formats)
                lines.append(f"{i}. {phase.label}: {schemes}")
            else:
                lines.append(f"{i}. {phase.label} (disabled)")

        logger.info(f"[yellow]DRY RUN for build '{vm_name}'[/yellow]")
        for line in lines[1:]:
            logger.info(f"  {line}")
        return lines

    # ─── Phase selection ─────────────────────────────────────────────

    def _check_skip(self, skip: Iterable[Phase]) -> frozenset[Phase]:
        skip = frozenset(skip)
        not_skippable = skip - set(GUEST_PHASES)
        if not_skippable:
            names = ", ".join(sorted(p.value for p in not_skippable))
            raise ValueError(f"Only guest phases can be skipped, not: {names}")
        return skip

    def _formats(self, output_formats: Optional[Iterable[DiskFormat]]) -> list[DiskFormat]:
        if output_formats is None:
            return list(self.config.output.formats)
        return list(dict.fromkeys(output_formats))

    def _skip_reason(self, phase: Phase, skip: frozenset[Phase], formats: list[DiskFormat],
                     state: BuildState) -> Optional[str]:
        if phase in skip:
            return "flag"
        if phase is Phase.TEST_BOOTING and not self.operator.confirm(
            "Boot the finished image once more to test it?", default=False, unattended=False,
        ):
            return "declined"
        if phase is Phase.CONVERTING and not formats:
            return "no output formats"
        if phase is Phase.COMPRESSING:
            if not self.config.output.compression.enabled:
                return "compression disabled"
            if not state.conversions:
                return "nothing converted"
        return None

    # ─── Phase implementations ───────────────────────────────────────

    def _execute_phase(self, phase: Phase, state: BuildState, formats: list[DiskFormat]) -> None:
        if phase in GUEST_PHASES:
            self._run_guest_phase(phase, state)
        elif phase is Phase.PROVISIONING:
            state.working_disk_path = self.provisioner.provision(state.vm_name, self.config)
        elif phase is Phase.CONVERTING:
            self._require_disk(phase, state)
            targets = [(fmt, self.layout.output_path(state.vm_name, fmt)) for fmt in formats]
            results, failures = self.converter.convert_all(
                state.working_disk_path, self.config.disk.format, targets,
            )
            state.conversions.extend(results)
            state.failures.extend(failures)
        elif phase is Phase.COMPRESSING:
            artifacts, failures = self.compressor.compress_all(state.conversions, self.config.output.compression)
            state.compressions.extend(artifacts)
            state.failures.extend(failures)

    def _require_disk(self, phase: Phase, state: BuildState) -> None:
        if not state.working_disk_path.exists():
            raise WorkingDiskLost(phase.value, state.working_disk_path)

    def _run_guest_phase(self, phase: Phase, state: BuildState) -> None:
        """Boot the guest for one phase and wait according to its policy."""
        self._require_disk(phase, state)

        inv = build_invocation(self.config, self.layout, phase, state.working_disk_path, state.vm_name)
        logger.info(f"Launching: {' '.join(inv.command)}")
        logger.info(f"Transcript: {inv.transcript_path}")

        try:
            handle = self.launcher(inv.command, inv.transcript_path)
        except CommandError as e:
            logger.error(escape(str(e)))
            raise PhaseSubprocessError(phase.value, e.returncode, inv.transcript_path)

        try:
            if inv.wait_policy is WaitPolicy.WAIT_FOR_EXIT:
                logger.info("Waiting for the guest to power off...")
                code = handle.wait()
            else:
                code = self._wait_for_ack_or_exit(phase, handle)
        except KeyboardInterrupt:
            handle.stop(self.config.emulator.shutdown_grace_seconds)
            raise

        if code != 0:
            raise PhaseSubprocessError(phase.value, code, inv.transcript_path)

    def _wait_for_ack_or_exit(self, phase: Phase, handle: ProcessHandle) -> int:
        """Race the operator acknowledgement against the emulator exiting.

        Returns 0 when the phase completed (acknowledged, or the guest
        powered off cleanly), otherwise the emulator's exit code.
        """
        signal = self.operator.acknowledgement(ACK_PROMPTS[phase])
        while not signal.wait(self.poll_interval):
            code = handle.poll()
            if code is not None:
                if code == 0:
                    logger.info("Guest powered off before acknowledgement")
                return code

        logger.info("Operator acknowledged phase completion")
        if handle.stop(self.config.emulator.shutdown_grace_seconds) is ProcessState.KILLED:
            return 0
        return handle.returncode
