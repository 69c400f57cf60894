"""Remote batch-system sessions.

A :class:`BatchSession` submits single jobs described by a
:class:`JobTemplate`, reports their :class:`JobState` and terminates
them.  :class:`GridEngineSession` drives a Sun/Univa Grid Engine
installation through its command-line clients (``qsub``, ``qstat``,
``qacct``, ``qdel``).
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from dgrecon.config import ClusterConfig

logger = logging.getLogger(__name__)

_SUBMITTED_RE = re.compile(r'Your job (\d+) \(".*"\) has been submitted')
_QACCT_FIELD_RE = re.compile(r"^(\w+)\s+(.*?)\s*$")


class BatchSystemError(RuntimeError):
    """A single call to the batch system failed."""


class JobState(str, Enum):
    SUBMITTED = "submitted"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def finished(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)


@dataclass
class JobTemplate:
    """Description of one remote job.

    ``working_dir`` must be absolute: it is resolved on the execution
    host, not on the submitting one.
    """

    remote_command: str
    args: List[str] = field(default_factory=list)
    job_name: str = ""
    working_dir: Optional[Path] = None
    output_path: Optional[Path] = None
    error_path: Optional[Path] = None
    native_specification: str = ""


class BatchSession(ABC):
    """Handle on a batch system, open until :meth:`close` is called."""

    def __init__(self):
        self._closed = False
        self._job_ids: List[str] = []
        self._finished: Set[str] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def job_ids(self) -> List[str]:
        """Ids of every job submitted through this session."""
        return list(self._job_ids)

    def _ensure_open(self) -> None:
        if self._closed:
            raise BatchSystemError("Batch session is closed")

    def submit(self, template: JobTemplate) -> str:
        """Submit *template*; returns the batch-system job id."""
        self._ensure_open()
        job_id = self._submit(template)
        self._job_ids.append(job_id)
        return job_id

    def status(self, job_id: str) -> JobState:
        self._ensure_open()
        state = self._status(job_id)
        if state.finished:
            self._finished.add(job_id)
        return state

    def terminate(self, job_ids: Iterable[str]) -> None:
        """Terminate *job_ids*; finished or unknown ids are ignored."""
        if self._closed:
            return
        live = [j for j in job_ids if j not in self._finished]
        if live:
            self._terminate(live)
            self._finished.update(live)

    def terminate_all(self) -> None:
        self.terminate(self._job_ids)

    def close(self) -> None:
        """Release the session; further calls are no-ops or errors."""
        if self._closed:
            return
        self._closed = True
        self._close()

    def __enter__(self) -> "BatchSession":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @abstractmethod
    def _submit(self, template: JobTemplate) -> str:
        ...

    @abstractmethod
    def _status(self, job_id: str) -> JobState:
        ...

    @abstractmethod
    def _terminate(self, job_ids: List[str]) -> None:
        ...

    def _close(self) -> None:
        pass


def parse_qacct(text: str) -> Dict[str, str]:
    """Parse ``qacct -j`` output into a field mapping (last record wins)."""
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        match = _QACCT_FIELD_RE.match(line)
        if match:
            fields[match.group(1)] = match.group(2)
    return fields


class GridEngineSession(BatchSession):
    """Grid Engine session using the ``q*`` command-line clients."""

    def __init__(self, config: Optional[ClusterConfig] = None):
        super().__init__()
        self.config = config or ClusterConfig()

    def _call(self, command: List[str]) -> subprocess.CompletedProcess:
        logger.debug(f"batch -> {' '.join(shlex.quote(c) for c in command)}")
        try:
            return subprocess.run(command, capture_output=True, text=True)
        except OSError as exc:
            raise BatchSystemError(
                f"Could not run {command[0]}: {exc}"
            ) from exc

    def qsub_command(self, template: JobTemplate) -> List[str]:
        command = [self.config.qsub_command, "-b", "y"]
        if template.job_name:
            command += ["-N", template.job_name]
        if template.working_dir is not None:
            command += ["-wd", str(Path(template.working_dir).absolute())]
        if template.output_path is not None:
            command += ["-o", str(template.output_path)]
        if template.error_path is not None:
            command += ["-e", str(template.error_path)]
        command += shlex.split(template.native_specification)
        command += [template.remote_command, *template.args]
        return command

    def _submit(self, template: JobTemplate) -> str:
        proc = self._call(self.qsub_command(template))
        match = _SUBMITTED_RE.search(proc.stdout or "")
        if proc.returncode != 0 or not match:
            raise BatchSystemError(
                f"qsub failed for job '{template.job_name}' "
                f"(exit {proc.returncode}): {(proc.stderr or '').strip()}"
            )
        return match.group(1)

    def _status(self, job_id: str) -> JobState:
        # qstat only knows queued and running jobs.
        proc = self._call([self.config.qstat_command, "-j", job_id])
        if proc.returncode == 0:
            return JobState.RUNNING

        proc = self._call([self.config.qacct_command, "-j", job_id])
        if proc.returncode != 0:
            # Accounting lags behind qstat for a short while.
            return JobState.UNKNOWN
        fields = parse_qacct(proc.stdout or "")
        failed = fields.get("failed", "").split()
        exit_status = fields.get("exit_status", "").split()
        if not failed or not exit_status:
            return JobState.UNKNOWN
        if failed[0] == "0" and exit_status[0] == "0":
            return JobState.DONE
        return JobState.FAILED

    def _terminate(self, job_ids: List[str]) -> None:
        proc = self._call([self.config.qdel_command, *job_ids])
        if proc.returncode != 0:
            logger.warning(
                f"qdel exited with {proc.returncode}: "
                f"{(proc.stderr or '').strip()}"
            )
