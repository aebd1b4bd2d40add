"""
Execution of the external usage reporting command.

The tool is interactive and keeps refreshing until interrupted, so it is
run with its output redirected to a file, asked to stop with SIGINT after
a short grace window, and the file is read back once the process exits.
"""

import logging
import os
import shlex
import signal
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "claude-monitor --view daily"
DEFAULT_INTERRUPT_AFTER = 3.0
DEFAULT_SETTLE_DELAY = 0.1


class ExecutionError(Exception):
    """Raised when the reporting command fails to produce any output."""


class ProcessRunner:
    """Runs the reporting command and returns its captured output."""

    def __init__(
        self,
        command: str = DEFAULT_COMMAND,
        output_dir: str = "logs",
        interrupt_after: float = DEFAULT_INTERRUPT_AFTER,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ):
        """Initialize the runner.

        Args:
            command: Shell command producing the usage table on stdout
            output_dir: Directory receiving one output file per run
            interrupt_after: Seconds to wait before sending SIGINT
            settle_delay: Seconds to wait after exit before reading output

        Raises:
            ValueError: If command is empty or a delay is negative
        """
        if not command or not command.strip():
            raise ValueError("command is required and cannot be empty")
        if interrupt_after < 0:
            raise ValueError("interrupt_after must be >= 0")
        if settle_delay < 0:
            raise ValueError("settle_delay must be >= 0")

        self.command = command
        self.output_dir = Path(output_dir)
        self.interrupt_after = interrupt_after
        self.settle_delay = settle_delay

    def _output_path(self) -> Path:
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        return self.output_dir / f"claude-monitor-{timestamp}.log"

    def run(self) -> str:
        """Run the command once and return its raw output.

        Returns:
            Output text as written by the command

        Raises:
            ExecutionError: If the command cannot start, does not create the
                output file, or leaves it empty
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_file = self._output_path()
        command = f"{self.command} > {shlex.quote(str(output_file))}"
        logger.debug("Executing command: %s", command)

        stderr = self._execute(command)
        time.sleep(self.settle_delay)

        if not output_file.exists():
            raise ExecutionError(
                f"Output file {output_file} was not created"
                + _stderr_suffix(stderr)
            )
        content = output_file.read_text(encoding="utf-8", errors="replace")
        if not content:
            raise ExecutionError(
                f"Output file {output_file} is empty" + _stderr_suffix(stderr)
            )

        logger.info(
            "Command output written to %s (%d characters)",
            output_file, len(content)
        )
        return content

    def _execute(self, command: str) -> str:
        """Run command, interrupting it after the grace window. Returns stderr."""
        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutionError(f"Failed to start command {self.command!r}: {e}") from e

        try:
            _, stderr = process.communicate(timeout=self.interrupt_after)
        except subprocess.TimeoutExpired:
            logger.debug("Interrupting command after %.1fs", self.interrupt_after)
            _interrupt(process)
            # No deadline here: a tool ignoring SIGINT stalls this cycle.
            _, stderr = process.communicate()

        stderr_text = stderr.decode("utf-8", errors="replace") if stderr else ""
        if stderr_text:
            logger.debug("Command stderr: %s", stderr_text.strip())
        logger.debug("Command exited with code %s", process.returncode)
        return stderr_text


def _interrupt(process: subprocess.Popen) -> None:
    """Send SIGINT to the whole process group started for the command."""
    try:
        os.killpg(process.pid, signal.SIGINT)
    except ProcessLookupError:
        pass


def _stderr_suffix(stderr: Optional[str]) -> str:
    return f" (stderr: {stderr.strip()})" if stderr and stderr.strip() else ""
