"""Shared fixtures: fake qemu-img runner, scripted operator and emulator."""

import json
from pathlib import Path

import pytest

from win2cloud.config import BuildConfig, BuildLayout
from win2cloud.pipeline.operator import CompletionSignal, Operator
from win2cloud.pipeline.validator import PrerequisiteValidator
from win2cloud.utils.subprocess import CommandError, CommandResult, ProcessState

MIB = 1024 * 1024

GUEST_PHASE_NAMES = ("installing", "configuring", "generalizing", "test-booting")


# ═══════════════════════════════════════════════════════════════════
#  Fake collaborators
# ═══════════════════════════════════════════════════════════════════

class FakeQemuImg:
    """Stands in for run_command when the binary is qemu-img.

    create/convert write small files so later steps see real outputs.
    """

    def __init__(self, fail_targets=(), fail_create=False, info_format=None, info_fails=False):
        self.calls = []
        self.fail_targets = set(fail_targets)
        self.fail_create = fail_create
        self.info_format = info_format
        self.info_fails = info_fails

    def __call__(self, cmd, capture_output=False, check=True, **kwargs):
        self.calls.append(list(cmd))
        op = cmd[1]
        if op == "create":
            if self.fail_create:
                raise CommandError(cmd, 1, "qemu-img: Could not create: Permission denied")
            Path(cmd[4]).write_bytes(b"\0" * 4096)
            return CommandResult(0)
        if op == "convert":
            target = cmd[cmd.index("-O") + 1]
            if target in self.fail_targets:
                raise CommandError(cmd, 1, f"qemu-img: {target} output failed")
            Path(cmd[-1]).write_bytes(b"\0" * 64 * 1024)
            return CommandResult(0)
        if op == "info":
            if self.info_fails:
                raise CommandError(cmd, 1, "qemu-img: Could not open")
            fmt = self.info_format or Path(cmd[-1]).suffix.lstrip(".")
            return CommandResult(0, json.dumps({"format": fmt, "virtual-size": 150 * 1024**3, "actual-size": 4096}))
        if op == "check":
            return CommandResult(0)
        raise AssertionError(f"unexpected qemu-img call: {cmd}")

    def ops(self, name):
        return [c for c in self.calls if c[1] == name]


class ScriptedOperator(Operator):
    """Answers questions by keyword; acknowledges phases immediately."""

    def __init__(self, recreate=False, overwrite=True, test_boot=True, acknowledge=True):
        self.answers = {"start over": recreate, "Overwrite": overwrite, "test it": test_boot}
        self.acknowledge = acknowledge
        self.questions = []
        self.ack_messages = []

    def confirm(self, question, default=False, unattended=None):
        self.questions.append(question)
        for keyword, answer in self.answers.items():
            if keyword in question:
                return answer
        return default

    def acknowledgement(self, message):
        self.ack_messages.append(message)
        signal = CompletionSignal()
        if self.acknowledge:
            signal.set()
        return signal


class FakeHandle:
    """Emulator process that exits with a scripted code."""

    def __init__(self, exit_code=0, exits_on_own=True):
        self.exit_code = exit_code
        self.exits_on_own = exits_on_own
        self.returncode = None
        self.stopped = False

    def poll(self):
        if self.exits_on_own:
            self.returncode = self.exit_code
        return self.returncode

    def wait(self, timeout=None):
        self.returncode = self.exit_code
        return self.returncode

    def stop(self, grace_seconds):
        if self.poll() is not None:
            return ProcessState.EXITED_SUCCESS if self.returncode == 0 else ProcessState.EXITED_FAILURE
        self.stopped = True
        self.returncode = -15
        return ProcessState.KILLED

    @property
    def state(self):
        return ProcessState.RUNNING if self.returncode is None else ProcessState.KILLED


class FakeLauncher:
    """Records emulator launches; exit codes scripted per phase name."""

    def __init__(self, exit_codes=None, exits_on_own=None):
        self.exit_codes = exit_codes or {}
        self.exits_on_own = exits_on_own or {}
        self.launches = []
        self.handles = []

    def __call__(self, cmd, transcript_path=None):
        name = cmd[cmd.index("-name") + 1]
        phase = next(p for p in GUEST_PHASE_NAMES if name.endswith("-" + p))
        self.launches.append((phase, list(cmd), transcript_path))
        handle = FakeHandle(
            exit_code=self.exit_codes.get(phase, 0),
            exits_on_own=self.exits_on_own.get(phase, phase in ("installing", "generalizing")),
        )
        self.handles.append(handle)
        return handle

    @property
    def phases(self):
        return [p for p, _, _ in self.launches]


# ═══════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════

@pytest.fixture
def config_data():
    return {
        "vm": {"name": "win-test", "memory_mb": 4096, "cpus": 2},
        "disk": {"size": "150G", "format": "qcow2"},
        "output": {"formats": ["raw"]},
    }


@pytest.fixture
def config(config_data):
    return BuildConfig(**config_data)


@pytest.fixture
def layout(tmp_path, config):
    return BuildLayout(tmp_path, config)


@pytest.fixture
def media(layout):
    """Sparse installation and driver ISOs above the size floors."""
    for path, size in ((layout.install_media, 200 * MIB), (layout.driver_media, 2 * MIB)):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.truncate(size)
    return layout


@pytest.fixture
def validator():
    return PrerequisiteValidator(which=lambda binary: f"/usr/bin/{binary}")
