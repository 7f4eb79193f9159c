"""Tests for command execution and emulator process handles."""

import sys

import pytest

from win2cloud.utils.subprocess import CommandError, ProcessHandle, ProcessState, run_command


def python(code):
    return [sys.executable, "-c", code]


class TestRunCommand:
    def test_capture(self):
        result = run_command(python("print('hello')"), capture_output=True)
        assert result.success
        assert result.stdout.strip() == "hello"

    def test_failure_raises(self):
        with pytest.raises(CommandError) as exc:
            run_command(python("import sys; sys.stderr.write('boom'); sys.exit(4)"), capture_output=True)
        assert exc.value.returncode == 4
        assert "boom" in exc.value.stderr

    def test_failure_unchecked(self):
        result = run_command(python("raise SystemExit(3)"), capture_output=True, check=False)
        assert result.returncode == 3

    def test_missing_binary(self):
        with pytest.raises(CommandError, match="not found"):
            run_command(["definitely-not-a-real-binary-w2c"], capture_output=True)

    def test_progress(self):
        code = "import sys; [sys.stdout.write(f'    ({p}.00/100%)\\r') for p in (10, 55, 100)]"
        seen = []
        run_command(python(code), progress_pattern=r"\((\d+\.\d+)/100%\)", progress_callback=seen.append)
        assert seen == [10.0, 55.0, 100.0]


class TestProcessHandle:
    def test_clean_exit(self, tmp_path):
        transcript = tmp_path / "logs" / "run.log"
        handle = ProcessHandle.start(python("print('guest output')"), transcript)

        assert handle.wait(timeout=30) == 0
        assert handle.state is ProcessState.EXITED_SUCCESS
        text = transcript.read_text()
        assert text.startswith("$ ")
        assert "guest output" in text

    def test_failed_exit(self, tmp_path):
        handle = ProcessHandle.start(python("raise SystemExit(2)"), tmp_path / "run.log")
        assert handle.wait(timeout=30) == 2
        assert handle.state is ProcessState.EXITED_FAILURE

    def test_stop_running_process(self, tmp_path):
        handle = ProcessHandle.start(python("import time; time.sleep(60)"), tmp_path / "run.log")
        assert handle.poll() is None
        assert handle.state is ProcessState.RUNNING

        assert handle.stop(grace_seconds=5) is ProcessState.KILLED
        assert handle.returncode is not None

    def test_stop_after_exit_keeps_exit_state(self, tmp_path):
        handle = ProcessHandle.start(python("pass"), tmp_path / "run.log")
        handle.wait(timeout=30)
        assert handle.stop(grace_seconds=1) is ProcessState.EXITED_SUCCESS

    def test_missing_emulator(self, tmp_path):
        with pytest.raises(CommandError):
            ProcessHandle.start(["no-such-emulator-w2c"], tmp_path / "run.log")
