"""In-memory build state, owned by the phase orchestrator for one run.

Nothing here is persisted. The only state that survives a restart is the
working disk file itself, whose existence the provisioner treats as a
resume signal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class Phase(str, Enum):
    PROVISIONING = "provisioning"
    INSTALLING = "installing"
    CONFIGURING = "configuring"
    GENERALIZING = "generalizing"
    TEST_BOOTING = "test-booting"
    CONVERTING = "converting"
    COMPRESSING = "compressing"
    DONE = "done"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return self.value.replace("-", " ")


PHASE_ORDER = [
    Phase.PROVISIONING,
    Phase.INSTALLING,
    Phase.CONFIGURING,
    Phase.GENERALIZING,
    Phase.TEST_BOOTING,
    Phase.CONVERTING,
    Phase.COMPRESSING,
]

# Phases that boot the guest against the working disk
GUEST_PHASES = (Phase.INSTALLING, Phase.CONFIGURING, Phase.GENERALIZING, Phase.TEST_BOOTING)


@dataclass
class PhaseTiming:
    start: datetime
    end: Optional[datetime] = None

    @property
    def duration_s(self) -> float:
        if not self.end:
            return 0.0
        return (self.end - self.start).total_seconds()


@dataclass
class ConversionResult:
    """One converted output artifact."""
    format: str
    path: Path
    size: int
    duration: float


@dataclass
class CompressedArtifact:
    """One compressed output artifact."""
    path: Path
    original_size: int
    size: int
    scheme: str
    mechanism: str = ""
    duration: float = 0.0

    @property
    def ratio(self) -> float:
        """Fraction of the original size saved (0 = no gain)."""
        return 1 - self.size / self.original_size


@dataclass
class ArtifactFailure:
    """A per-format failure in conversion or compression."""
    component: str
    format: str
    error: str


@dataclass
class BuildState:
    """Mutable state of a single build run.

    Transitions only move forward through PHASE_ORDER and end in DONE or
    FAILED. No phase is re-entered.
    """
    vm_name: str
    working_disk_path: Path
    current_phase: Phase = Phase.PROVISIONING
    started_at: datetime = field(default_factory=datetime.now)
    timings: dict[Phase, PhaseTiming] = field(default_factory=dict)
    executed_phases: list[Phase] = field(default_factory=list)
    skipped_phases: list[Phase] = field(default_factory=list)
    last_successful_phase: Optional[Phase] = None
    error: Optional[str] = None
    conversions: list[ConversionResult] = field(default_factory=list)
    compressions: list[CompressedArtifact] = field(default_factory=list)
    failures: list[ArtifactFailure] = field(default_factory=list)

    def enter(self, phase: Phase) -> None:
        if PHASE_ORDER.index(phase) < PHASE_ORDER.index(self.current_phase):
            raise ValueError(f"Cannot move back from {self.current_phase.value} to {phase.value}")
        self.current_phase = phase
        self.timings[phase] = PhaseTiming(start=datetime.now())

    def complete(self, phase: Phase) -> None:
        self.timings[phase].end = datetime.now()
        self.executed_phases.append(phase)
        self.last_successful_phase = phase

    def skip(self, phase: Phase) -> None:
        self.skipped_phases.append(phase)

    def fail(self, error: str) -> None:
        timing = self.timings.get(self.current_phase)
        if timing and not timing.end:
            timing.end = datetime.now()
        self.error = error
        self.current_phase = Phase.FAILED

    def finish(self) -> None:
        self.current_phase = Phase.DONE

    @property
    def succeeded(self) -> bool:
        return self.current_phase is Phase.DONE

    @property
    def elapsed_s(self) -> float:
        """Wall time from the first phase start to the last phase end."""
        starts = [t.start for t in self.timings.values()]
        ends = [t.end for t in self.timings.values() if t.end]
        if not starts or not ends:
            return 0.0
        return (max(ends) - min(starts)).total_seconds()
