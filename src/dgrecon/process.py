"""Run external engine programs and classify how they ended."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Union

from dgrecon.errors import (
    ResourceExhaustionError,
    ToolExitError,
    ToolReportedError,
)

logger = logging.getLogger(__name__)

TOOL_ERROR_MARKER = " TINKER is Unable to Continue"

# 137/139 are the shell encodings of SIGKILL/SIGSEGV; Popen reports a
# signal death as the negated signal number instead.
RESOURCE_EXHAUSTION_CODES = frozenset({137, 139, -9, -11})


class ProcessOutcome(str, Enum):
    """How an external program ended."""

    SUCCESS = "success"
    TOOL_REPORTED_ERROR = "tool_reported_error"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    TOOL_FAILURE = "tool_failure"


@dataclass
class ProcessResult:
    """Captured output and exit status of one program run."""

    command: List[str]
    returncode: int
    stdout_lines: List[str] = field(default_factory=list)
    stderr_lines: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def tool_error_seen(self) -> bool:
        return any(
            line.startswith(TOOL_ERROR_MARKER) for line in self.stdout_lines
        )

    @property
    def outcome(self) -> ProcessOutcome:
        # The marker wins over the exit code: the engine does not always
        # exit non-zero after printing it.
        if self.tool_error_seen:
            return ProcessOutcome.TOOL_REPORTED_ERROR
        if self.returncode == 0:
            return ProcessOutcome.SUCCESS
        if self.returncode in RESOURCE_EXHAUSTION_CODES:
            return ProcessOutcome.RESOURCE_EXHAUSTION
        return ProcessOutcome.TOOL_FAILURE

    @property
    def display_command(self) -> str:
        return " ".join(shlex.quote(part) for part in self.command)

    def check(self) -> "ProcessResult":
        """Raise the typed error matching :attr:`outcome`, if any."""
        outcome = self.outcome
        name = Path(self.command[0]).name if self.command else "program"
        if outcome is ProcessOutcome.TOOL_REPORTED_ERROR:
            raise ToolReportedError(
                f"{name} reported a fatal error, see the run log",
                self.command,
                self.returncode,
            )
        if outcome is ProcessOutcome.RESOURCE_EXHAUSTION:
            raise ResourceExhaustionError(
                f"{name} was killed with exit code {self.returncode}. "
                "Not enough memory.",
                self.command,
                self.returncode,
            )
        if outcome is ProcessOutcome.TOOL_FAILURE:
            raise ToolExitError(
                f"{name} exited with a non 0 exit code: {self.returncode}",
                self.command,
                self.returncode,
            )
        return self


class ProcessInvoker:
    """Runs one external program to completion.

    Standard output and standard error are drained concurrently with the
    write to standard input (``Popen.communicate``), so a chatty program
    can never block on a full pipe while we are still feeding it.
    """

    def run(
        self,
        command: Sequence[Union[str, Path]],
        cwd: Optional[Union[str, Path]] = None,
        stdin: Optional[str] = None,
    ) -> ProcessResult:
        cmd_list = [str(part) for part in command]
        display_cmd = " ".join(shlex.quote(part) for part in cmd_list)
        logger.debug(f"exec.start -> {display_cmd} (cwd={cwd or '.'})")

        started = time.monotonic()
        process = subprocess.Popen(
            cmd_list,
            cwd=str(cwd) if cwd is not None else None,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        stdout, stderr = process.communicate(input=stdin)
        duration = time.monotonic() - started

        stdout_lines = (stdout or "").splitlines()
        stderr_lines = (stderr or "").splitlines()
        for line in stdout_lines:
            logger.debug(f"exec.stdout | {line}")
        for line in stderr_lines:
            logger.debug(f"exec.stderr | {line}")
        logger.debug(
            f"exec.exit -> code={process.returncode} "
            f"duration={duration:.2f}s"
        )

        return ProcessResult(
            command=cmd_list,
            returncode=process.returncode,
            stdout_lines=stdout_lines,
            stderr_lines=stderr_lines,
            duration=duration,
        )
