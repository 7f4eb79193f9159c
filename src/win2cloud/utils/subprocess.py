"""Subprocess wrapper with logging, progress tracking and owned process handles."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Optional

from win2cloud.utils.logging import get_logger

logger = get_logger(__name__)


class CommandError(RuntimeError):
    """A command exited non-zero (or could not be started)."""

    def __init__(self, cmd: list[str], returncode: Optional[int], stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip()[-500:] if stderr else f"exit code {returncode}"
        super().__init__(f"Command failed ({' '.join(self.cmd[:6])}): {detail}")


class CommandResult:
    """Result of a subprocess execution."""

    def __init__(self, returncode: int, stdout: str = "", stderr: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def success(self) -> bool:
        return self.returncode == 0


def run_command(
    cmd: list[str],
    capture_output: bool = False,
    check: bool = True,
    timeout: int | None = None,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    progress_pattern: str | None = None,
    progress_callback: Optional[Callable[[float], None]] = None,
) -> CommandResult:
    """Run a system command with logging and optional progress tracking.

    Args:
        cmd: Command and arguments as list
        capture_output: Capture stdout/stderr instead of streaming
        check: Raise on non-zero exit code
        timeout: Command timeout in seconds
        env: Additional environment variables (merged with current env)
        cwd: Working directory
        progress_pattern: Regex pattern to extract progress percentage from stdout
        progress_callback: Callback function receiving progress (0.0 - 100.0)

    Returns:
        CommandResult with returncode, stdout, stderr

    Raises:
        CommandError: If check=True and command fails, or the binary is missing
        TimeoutError: If command exceeds timeout
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    logger.debug(f"Running: {' '.join(cmd)}")

    try:
        if capture_output:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=full_env,
                cwd=cwd,
            )
            cmd_result = CommandResult(result.returncode, result.stdout, result.stderr)

        elif progress_pattern and progress_callback:
            # qemu-img -p writes "(12.34/100%)" to stdout, with \r between updates
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=full_env,
                cwd=cwd,
            )

            pattern = re.compile(progress_pattern)
            for line in iter(proc.stdout.readline, ""):
                for chunk in line.split("\r"):
                    match = pattern.search(chunk)
                    if match:
                        try:
                            progress_callback(float(match.group(1)))
                        except (ValueError, IndexError):
                            pass

            proc.wait(timeout=timeout)
            stderr = proc.stderr.read() if proc.stderr else ""
            cmd_result = CommandResult(proc.returncode, "", stderr)

        else:
            result = subprocess.run(
                cmd,
                text=True,
                timeout=timeout,
                env=full_env,
                cwd=cwd,
            )
            cmd_result = CommandResult(result.returncode)

    except subprocess.TimeoutExpired:
        raise TimeoutError(f"Command timed out after {timeout}s: {' '.join(cmd)}")
    except FileNotFoundError:
        raise CommandError(cmd, None, f"Command not found: {cmd[0]}")

    if check and not cmd_result.success:
        raise CommandError(cmd, cmd_result.returncode, cmd_result.stderr)

    return cmd_result


def check_tool_available(tool: str) -> bool:
    """Check if a system tool is available in PATH (or is an existing path)."""
    return shutil.which(tool) is not None


def verify_required_tools(emulator: str = "qemu-system-x86_64", disk_tool: str = "qemu-img") -> dict[str, bool]:
    """Verify the external tools a build can use.

    Returns dict of {tool_name: is_available}.
    """
    tools = {
        emulator: "Guest phases (install, configure, generalize, test boot)",
        disk_tool: "Disk create / convert / info",
        "pigz": "Parallel gzip (optional, falls back to gzip)",
        "gzip": "gzip compression (optional, falls back to in-process)",
        "zip": "zip compression (optional, falls back to in-process)",
        "7z": "7z compression (optional, 7zz/7za also accepted)",
    }

    results = {}
    for tool, description in tools.items():
        available = check_tool_available(tool)
        results[tool] = available
        status = "✅" if available else "❌"
        logger.info(f"  {status} {tool}: {description}")

    return results


# ─── Long-running processes ───────────────────────────────────────────


class ProcessState(str, Enum):
    RUNNING = "running"
    EXITED_SUCCESS = "exited_success"
    EXITED_FAILURE = "exited_failure"
    KILLED = "killed"


class ProcessHandle:
    """An owned, long-running subprocess (the emulator).

    stdout and stderr go to a transcript file. The handle tracks whether
    the process exited on its own or was stopped by us, so that a process
    terminated after operator acknowledgement is not mistaken for a crash.
    """

    def __init__(self, proc: subprocess.Popen, transcript: Optional[IO] = None,
                 transcript_path: Optional[Path] = None):
        self._proc = proc
        self._transcript = transcript
        self.transcript_path = transcript_path
        self._stopped = False

    @classmethod
    def start(cls, cmd: list[str], transcript_path: str | Path | None = None) -> "ProcessHandle":
        """Launch ``cmd``, writing its output to ``transcript_path``."""
        transcript = None
        path = None
        if transcript_path:
            path = Path(transcript_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            transcript = open(path, "w")
            transcript.write(f"$ {' '.join(cmd)}\n")
            transcript.flush()

        logger.debug(f"Starting: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=transcript or subprocess.DEVNULL,
                stderr=subprocess.STDOUT if transcript else subprocess.DEVNULL,
            )
        except FileNotFoundError:
            if transcript:
                transcript.close()
            raise CommandError(cmd, None, f"Command not found: {cmd[0]}")
        return cls(proc, transcript, path)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    @property
    def state(self) -> ProcessState:
        code = self._proc.returncode
        if code is None:
            return ProcessState.RUNNING
        if self._stopped:
            return ProcessState.KILLED
        return ProcessState.EXITED_SUCCESS if code == 0 else ProcessState.EXITED_FAILURE

    def poll(self) -> Optional[int]:
        code = self._proc.poll()
        if code is not None:
            self._close_transcript()
        return code

    def wait(self, timeout: float | None = None) -> int:
        """Wait for exit. Raises subprocess.TimeoutExpired on timeout."""
        code = self._proc.wait(timeout=timeout)
        self._close_transcript()
        return code

    def stop(self, grace_seconds: float) -> ProcessState:
        """Terminate the process unless it already exited.

        Sends SIGTERM and races the process exit against ``grace_seconds``;
        only if the grace period elapses is the process killed.
        """
        if self.poll() is not None:
            return self.state

        self._stopped = True
        logger.info(f"Stopping emulator (pid {self.pid}), grace period {grace_seconds:.0f}s")
        self._proc.terminate()
        try:
            self._proc.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(f"Emulator did not exit within {grace_seconds:.0f}s — killing")
            self._proc.kill()
            self._proc.wait()
        self._close_transcript()
        return self.state

    def _close_transcript(self) -> None:
        if self._transcript and not self._transcript.closed:
            self._transcript.close()
