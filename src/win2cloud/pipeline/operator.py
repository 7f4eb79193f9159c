"""Operator interaction: yes/no decisions and phase acknowledgements.

Interaction-driven phases (configuring, test-booting) have no completion
signal from the guest. The orchestrator waits on a ``CompletionSignal``
instead of reading the console directly, so anything able to call
``signal.set()`` (a console prompt, a guest-agent heartbeat, a test) can
end the phase.
"""

from __future__ import annotations

import threading
from typing import Optional

import click

from win2cloud.utils.logging import get_logger

logger = get_logger(__name__)


class CompletionSignal:
    """A cancellable "phase acknowledged complete" signal."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class Operator:
    """Base operator: answers every question with its default.

    ``unattended`` is the answer to give when nobody is there to ask. It
    is set on questions whose "yes" destroys work or blocks the run;
    ``None`` leaves the choice to the operator.
    """

    def confirm(self, question: str, default: bool = False, unattended: Optional[bool] = None) -> bool:
        return default

    def acknowledgement(self, message: str) -> CompletionSignal:
        """Return a signal that is set once the operator is done."""
        signal = CompletionSignal()
        signal.set()
        return signal


class ConsoleOperator(Operator):
    """Interactive operator on the controlling terminal."""

    def __init__(self) -> None:
        self._reader: threading.Thread | None = None

    def confirm(self, question: str, default: bool = False, unattended: Optional[bool] = None) -> bool:
        self._drain()
        return click.confirm(question, default=default)

    def acknowledgement(self, message: str) -> CompletionSignal:
        self._drain()
        signal = CompletionSignal()

        def _read() -> None:
            try:
                click.prompt(message, default="", show_default=False, prompt_suffix=" ")
            except (click.Abort, EOFError):
                logger.warning("No operator input available — treating as acknowledged")
            signal.set()

        self._reader = threading.Thread(target=_read, name="operator-ack", daemon=True)
        self._reader.start()
        return signal

    def _drain(self) -> None:
        # A phase can end by guest power-off while its prompt is still
        # reading stdin; that read has to finish before the next prompt.
        if self._reader and self._reader.is_alive():
            click.echo("Guest powered off. Press Enter to continue.")
            self._reader.join()
        self._reader = None


class AssumeYesOperator(Operator):
    """Non-interactive operator for ``--yes`` runs.

    Confirmations are answered with ``answer``, except questions that
    carry their own unattended answer (recreating the working disk,
    starting a test boot). Acknowledgements are only given when the
    guest powers itself off, since nobody is there to press Enter.
    """

    def __init__(self, answer: bool = True):
        self.answer = answer

    def confirm(self, question: str, default: bool = False, unattended: Optional[bool] = None) -> bool:
        answer = self.answer if unattended is None else unattended
        logger.info(f"{question} [dim]→ {'yes' if answer else 'no'} (non-interactive)[/dim]")
        return answer

    def acknowledgement(self, message: str) -> CompletionSignal:
        logger.info("Non-interactive run: waiting for the guest to power off")
        return CompletionSignal()
