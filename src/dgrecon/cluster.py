"""Fan-out of single-model embedding jobs to a remote batch system.

The coordinator submits ``ceil((1 + f) * N)`` jobs for ``N`` requested
models, each with its own random seed, and keeps the first ``N`` that
complete (ordered by submission index, not completion time).  Up to
``f * N`` submissions and, separately, up to ``f * N`` executions may
fail before the run is aborted.
"""

from __future__ import annotations

import atexit
import logging
import math
import os
import random
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from dgrecon.batch import (
    BatchSession,
    BatchSystemError,
    GridEngineSession,
    JobState,
    JobTemplate,
)
from dgrecon.config import ClusterConfig
from dgrecon.context import PipelineContext
from dgrecon.engine import Refinement, TinkerEngine
from dgrecon.errors import (
    ClusterError,
    JobFailure,
    PollTimeout,
    SubmissionFailure,
    ToolReportedError,
)
from dgrecon.files import (
    basename_of,
    find_file,
    model_suffix,
    remove_quietly,
    tinker_output_path,
    write_seeded_key_file,
)
from dgrecon.parser import parse_distgeom_output
from dgrecon.statistics import ModelStatisticsSet

logger = logging.getLogger(__name__)


def over_provisioned_count(n_models: int, failure_rate: float) -> int:
    """Number of jobs to submit for *n_models* models."""
    if n_models < 1:
        raise ValueError(f"n_models must be >= 1, got {n_models}")
    # (1 + 0.1) * 10 is 11.000000000000002 in binary floating point.
    return math.ceil(round((1.0 + failure_rate) * n_models, 6))


def failure_budget(n_models: int, failure_rate: float) -> float:
    """Failures tolerated for *n_models* models, at each of two stages."""
    # 0.29 * 100 is 28.999999999999996.
    return round(failure_rate * n_models, 6)


@dataclass
class Job:
    """One single-model job slot and the files it owns."""

    index: int
    name: str
    xyz_file: Path
    key_file: Path
    expected_output: Path
    job_id: Optional[str] = None
    state: JobState = JobState.SUBMITTED
    stdout_log: Optional[Path] = None
    stderr_log: Optional[Path] = None

    @property
    def submitted(self) -> bool:
        return self.job_id is not None

    def files(self) -> List[Path]:
        paths = [self.xyz_file, self.key_file, self.expected_output]
        for log in (self.stdout_log, self.stderr_log):
            if log is not None:
                paths.append(log)
        return paths


class CancelScope:
    """Terminates every job of a session and closes it, exactly once.

    Used as a context manager around a cluster run.  While the scope is
    open it is also registered with :mod:`atexit`, so an interpreter
    shutdown in the middle of a run still kills the remote jobs.
    """

    def __init__(self, session: BatchSession):
        self.session = session
        self._lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def cancel(self) -> None:
        """Terminate all jobs but keep the session open."""
        with self._lock:
            if self._released:
                return
            self._terminate()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            try:
                self._terminate()
            finally:
                self.session.close()
                logger.debug("Batch session closed")

    def _terminate(self) -> None:
        try:
            self.session.terminate_all()
        except BatchSystemError as exc:
            logger.warning(f"Could not terminate remote jobs: {exc}")

    def __enter__(self) -> "CancelScope":
        atexit.register(self.release)
        return self

    def __exit__(self, *args) -> None:
        try:
            self.release()
        finally:
            atexit.unregister(self.release)


class ClusterJobCoordinator:
    """Runs one ``distgeom`` job per model on a batch system.

    Parameters
    ----------
    engine : TinkerEngine
        Supplies the distgeom binary and its arguments.
    config : ClusterConfig
        Failure budget, timeout, polling and naming parameters.
    session_factory : callable, optional
        Returns a fresh :class:`BatchSession` per run.  Defaults to a
        :class:`GridEngineSession`.
    sleep, clock : callable, optional
        Injected for tests; default to ``time.sleep`` and
        ``time.monotonic``.
    rng : random.Random, optional
        Source of the per-job random seeds.
    """

    def __init__(
        self,
        engine: TinkerEngine,
        config: Optional[ClusterConfig] = None,
        session_factory: Optional[Callable[[], BatchSession]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.engine = engine
        self.config = config or ClusterConfig()
        self._session_factory = session_factory or (
            lambda: GridEngineSession(self.config)
        )
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._scope: Optional[CancelScope] = None
        self._stop_requested = threading.Event()

    def stop(self) -> None:
        """Terminate all jobs of the running call (safe from other threads)."""
        self._stop_requested.set()
        scope = self._scope
        if scope is not None:
            logger.info("Stop requested, terminating remote jobs")
            scope.cancel()

    def run(
        self,
        xyz_file: Path,
        n_models: int,
        refinement: Refinement,
        context: PipelineContext,
    ) -> ModelStatisticsSet:
        xyz_file = Path(xyz_file)
        self.engine.check_distgeom_input(xyz_file, context.working_dir)
        n_jobs = over_provisioned_count(n_models, self.config.failure_rate)
        budget = failure_budget(n_models, self.config.failure_rate)
        logger.info(
            f"Submitting {n_jobs} job(s) for {n_models} model(s), "
            f"failure budget {budget:g}"
        )

        self._stop_requested.clear()
        jobs: List[Job] = []
        with CancelScope(self._session_factory()) as scope:
            self._scope = scope
            try:
                self._submit_all(
                    scope.session, xyz_file, n_jobs, budget, refinement,
                    context, jobs,
                )
                succeeded = self._poll(
                    scope.session, jobs, n_models, budget, context
                )
                self._await_outputs(succeeded)
                return self._reassemble(succeeded[:n_models], context)
            finally:
                self._scope = None
                if context.clean_up and not self.config.keep_temp_files:
                    for job in jobs:
                        for path in job.files():
                            remove_quietly(path)

    # -- submission -------------------------------------------------------

    def _prepare_job(
        self, index: int, xyz_file: Path, key_file: Path, out_dir: Path
    ) -> Job:
        stem = f"{basename_of(xyz_file)}_{index}"
        job_xyz = out_dir / f"{stem}.xyz"
        shutil.copyfile(xyz_file, job_xyz)
        job_key = write_seeded_key_file(
            key_file,
            out_dir / f"{stem}.key",
            self._rng.randrange(self.config.max_seed),
        )
        return Job(
            index=index,
            name=f"{self.config.job_prefix}{stem}",
            xyz_file=job_xyz,
            key_file=job_key,
            expected_output=tinker_output_path(job_xyz, model_suffix(1)),
        )

    def _template(
        self, job: Job, refinement: Refinement, out_dir: Path
    ) -> JobTemplate:
        out_dir = out_dir.absolute()
        return JobTemplate(
            remote_command=str(self.engine.distgeom_path),
            args=self.engine.distgeom_args(job.xyz_file, 1, refinement),
            job_name=job.name,
            working_dir=out_dir,
            output_path=out_dir,
            error_path=out_dir,
            native_specification=self.config.native_specification,
        )

    def _submit_all(
        self,
        session: BatchSession,
        xyz_file: Path,
        n_jobs: int,
        budget: float,
        refinement: Refinement,
        context: PipelineContext,
        jobs: List[Job],
    ) -> None:
        out_dir = context.working_dir
        key_file = xyz_file.parent / f"{basename_of(xyz_file)}.key"
        failures = 0
        for index in range(1, n_jobs + 1):
            if self._stop_requested.is_set():
                raise ClusterError("Cluster run was stopped")
            job = self._prepare_job(index, xyz_file, key_file, out_dir)
            jobs.append(job)
            try:
                job.job_id = session.submit(
                    self._template(job, refinement, out_dir)
                )
            except BatchSystemError as exc:
                failures += 1
                job.state = JobState.FAILED
                logger.warning(
                    f"Submission of job {index} failed "
                    f"({failures} so far): {exc}"
                )
                if failures > budget:
                    raise SubmissionFailure(
                        f"{failures} of {n_jobs} job submissions failed, "
                        f"more than the allowed {budget:g}"
                    ) from exc
                continue
            job.stdout_log = out_dir / f"{job.name}.o{job.job_id}"
            job.stderr_log = out_dir / f"{job.name}.e{job.job_id}"
            logger.info(f"Submitted {job.name} as job {job.job_id}")

    # -- polling ----------------------------------------------------------

    def _poll(
        self,
        session: BatchSession,
        jobs: List[Job],
        n_models: int,
        budget: float,
        context: PipelineContext,
    ) -> List[Job]:
        outstanding = [job for job in jobs if job.submitted]
        succeeded: List[Job] = []
        failures = 0
        started = self._clock()

        while (
            len(succeeded) < n_models
            and self._clock() - started <= self.config.timeout
        ):
            self._sleep(self.config.poll_interval)
            if self._stop_requested.is_set():
                raise ClusterError("Cluster run was stopped")

            grew = False
            for job in list(outstanding):
                try:
                    state = session.status(job.job_id)
                except BatchSystemError as exc:
                    raise ClusterError(
                        f"Could not query the status of job {job.job_id}: "
                        f"{exc}"
                    ) from exc
                if state is not job.state:
                    logger.debug(
                        f"Job {job.job_id} ({job.name}): "
                        f"{job.state.value} -> {state.value}"
                    )
                    job.state = state
                if state is JobState.DONE:
                    outstanding.remove(job)
                    succeeded.append(job)
                    grew = True
                elif state is JobState.FAILED:
                    outstanding.remove(job)
                    failures += 1
                    logger.warning(
                        f"Job {job.job_id} ({job.name}) failed "
                        f"({failures} so far)"
                    )
                    if failures > budget:
                        raise JobFailure(
                            f"{failures} jobs failed, more than the "
                            f"allowed {budget:g}"
                        )

            if grew:
                succeeded.sort(key=lambda j: j.index)
                context.notify_models(min(len(succeeded), n_models), n_models)
            if len(succeeded) < n_models and not outstanding:
                raise JobFailure(
                    f"Only {len(succeeded)} of {n_models} jobs can still "
                    "complete"
                )

        if len(succeeded) < n_models:
            raise PollTimeout(
                f"Only {len(succeeded)} of {n_models} jobs finished within "
                f"{self.config.timeout:g}s"
            )
        logger.info(
            f"{len(succeeded)} job(s) finished, {failures} failed, "
            f"{len(outstanding)} still outstanding"
        )
        return succeeded

    # -- results ----------------------------------------------------------

    def _await_outputs(self, succeeded: List[Job]) -> None:
        for job in succeeded:
            for path in (job.expected_output, job.stdout_log):
                find_file(
                    path,
                    self.config.output_retries,
                    self.config.output_retry_delay,
                    self._sleep,
                )

    def _reassemble(
        self, kept: List[Job], context: PipelineContext
    ) -> ModelStatisticsSet:
        records = []
        for model, job in enumerate(kept, 1):
            canonical = context.path(f".{model_suffix(model)}")
            os.replace(job.expected_output, canonical)
            context.track_output(canonical)

            lines = job.stdout_log.read_text().splitlines()
            context.log_lines(f"#job: {job.name} ({job.job_id})", lines)
            parsed, tool_error_seen = parse_distgeom_output(lines, 1)
            if tool_error_seen:
                raise ToolReportedError(
                    f"distgeom reported a fatal error in job {job.job_id}, "
                    "see the run log"
                )
            records.append(parsed[0])
            logger.debug(f"Job {job.index} ({job.job_id}) -> model {model}")

        logger.info(
            "Kept jobs "
            + ", ".join(str(job.index) for job in kept)
            + f" as models 1..{len(kept)}"
        )
        return ModelStatisticsSet.renumber(records)
