"""Reconstruction of 3-D models from a sequence and a restraint set."""

from __future__ import annotations

import logging
import random
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

from dgrecon._progress import ProgressSink
from dgrecon.batch import BatchSession
from dgrecon.cluster import ClusterJobCoordinator
from dgrecon.config import Settings
from dgrecon.context import PipelineContext
from dgrecon.engine import Refinement, TinkerEngine
from dgrecon.errors import ReconstructionError
from dgrecon.files import basename_of, model_suffix, remove_quietly
from dgrecon.restraints import (
    KeyFileCompiler,
    RestraintCompiler,
    RestraintSpec,
)
from dgrecon.selection import pick_best
from dgrecon.serial import SerialJobRunner
from dgrecon.statistics import ModelStatisticsSet

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class Stage(str, Enum):
    """Pipeline stages, in execution order."""

    PROTEIN = "PROTEIN"
    CONSTRAINTS = "CONSTRAINTS"
    STRUCTURES = "STRUCTURES"
    SELECTION = "SELECTION"

    @property
    def ordinal(self) -> int:
        return list(Stage).index(self)


@dataclass
class ReconstructionResult:
    """Outcome of one reconstruction call.

    Models are numbered ``1..n_models``; ``best_model`` is the one with
    the fewest bound violations.
    """

    output_dir: Path
    base_name: str
    n_models: int
    statistics: ModelStatisticsSet
    best_model: int

    def _check_model(self, model: int) -> None:
        if not 1 <= model <= self.n_models:
            raise IndexError(
                f"Model {model} out of range 1..{self.n_models}"
            )

    def model_xyz_path(self, model: int) -> Path:
        self._check_model(model)
        return self.output_dir / f"{self.base_name}.{model_suffix(model)}"

    def model_pdb_path(self, model: int) -> Path:
        self._check_model(model)
        return (
            self.output_dir / f"{self.base_name}.{model_suffix(model)}.pdb"
        )

    def model_pdb_paths(self) -> List[Path]:
        return [self.model_pdb_path(i) for i in range(1, self.n_models + 1)]

    @property
    def best_model_path(self) -> Path:
        return self.model_pdb_path(self.best_model)

    def bound_violations(self, model: int) -> int:
        return self.statistics.bound_violations(model)

    def column(self, name: str) -> List[Optional[float]]:
        return self.statistics.column(name)


@contextmanager
def _in_stage(stage: Stage, context: PipelineContext) -> Iterator[None]:
    logger.info(f"Stage {stage.value} ({context.base_name})")
    context.notify_stage(stage)
    try:
        yield
    except ReconstructionError as exc:
        if exc.stage is None:
            exc.stage = stage
        raise
    except OSError as exc:
        raise ReconstructionError(str(exc), stage) from exc


class StageSequencer:
    """Runs PROTEIN, CONSTRAINTS, STRUCTURES and SELECTION in order."""

    def __init__(
        self,
        engine: TinkerEngine,
        compiler: RestraintCompiler,
        serial_runner: SerialJobRunner,
        cluster_coordinator: ClusterJobCoordinator,
        find_file_retries: int = 10,
        find_file_delay: float = 2.0,
    ):
        self.engine = engine
        self.compiler = compiler
        self.serial_runner = serial_runner
        self.cluster_coordinator = cluster_coordinator
        self.find_file_retries = find_file_retries
        self.find_file_delay = find_file_delay

    def run(
        self,
        spec: RestraintSpec,
        context: PipelineContext,
        n_models: int,
        refinement: Refinement,
        parallel: bool = False,
    ) -> ReconstructionResult:
        if n_models < 1:
            raise ValueError(f"n_models must be >= 1, got {n_models}")
        seq_file = context.path(".seq")

        with _in_stage(Stage.PROTEIN, context):
            xyz_file = self.engine.run_protein(
                spec.sequence,
                context,
                retries=self.find_file_retries,
                delay=self.find_file_delay,
            )
            pdb_file = context.track_temp(context.path(".pdb"))
            self.engine.run_xyzpdb(xyz_file, seq_file, pdb_file, context)

        with _in_stage(Stage.CONSTRAINTS, context):
            key_file = context.track_temp(context.path(".key"))
            self.compiler.compile(
                spec,
                xyz_file,
                pdb_file,
                key_file,
                self.engine.config.force_field,
            )

        with _in_stage(Stage.STRUCTURES, context):
            runner = (
                self.cluster_coordinator if parallel else self.serial_runner
            )
            statistics = runner.run(xyz_file, n_models, refinement, context)

        with _in_stage(Stage.SELECTION, context):
            for model in range(1, n_models + 1):
                suffix = model_suffix(model)
                model_xyz = context.path(f".{suffix}")
                model_pdb = context.track_output(
                    context.path(f".{suffix}.pdb")
                )
                self.engine.run_xyzpdb(model_xyz, seq_file, model_pdb, context)
            best = pick_best(statistics)

        logger.info(
            f"Best of {n_models} model(s) is {best} with "
            f"{statistics.bound_violations(best)} bound violation(s)"
        )
        return ReconstructionResult(
            output_dir=context.working_dir,
            base_name=context.base_name,
            n_models=n_models,
            statistics=statistics,
            best_model=best,
        )


class Reconstructor:
    """Front door for reconstruction, minimization and energy runs.

    Holds the result of the last :meth:`reconstruct` call.  Output
    models of runs made with ``clean_up`` set are removed by
    :meth:`close`; intermediate files are removed when each call ends.
    One instance must not be used for concurrent calls.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[TinkerEngine] = None,
        compiler: Optional[RestraintCompiler] = None,
        session_factory: Optional[Callable[[], BatchSession]] = None,
        progress: Optional[ProgressSink] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or Settings()
        self.engine = engine or TinkerEngine(self.settings.engine)
        self.progress = progress
        rc = self.settings.reconstruction
        self.cluster = ClusterJobCoordinator(
            self.engine,
            self.settings.cluster,
            session_factory=session_factory,
            sleep=sleep,
            clock=clock,
            rng=rng,
        )
        self.sequencer = StageSequencer(
            self.engine,
            compiler or KeyFileCompiler(),
            SerialJobRunner(
                self.engine,
                retries=rc.find_file_retries,
                delay=rc.find_file_delay,
                sleep=sleep,
            ),
            self.cluster,
            find_file_retries=rc.find_file_retries,
            find_file_delay=rc.find_file_delay,
        )
        self.last_result: Optional[ReconstructionResult] = None
        self._owned_outputs: List[Path] = []
        self._owned_dirs: List[Path] = []

    def reconstruct(
        self,
        spec: RestraintSpec,
        output_dir: PathLike,
        base_name: str,
        n_models: Optional[int] = None,
        refinement: Optional[Union[Refinement, str]] = None,
        parallel: Optional[bool] = None,
        clean_up: Optional[bool] = None,
    ) -> ReconstructionResult:
        """Run the full pipeline; unset arguments come from the settings."""
        rc = self.settings.reconstruction
        n_models = n_models if n_models is not None else rc.n_models
        refinement = Refinement(refinement or rc.refinement)
        parallel = rc.parallel if parallel is None else parallel
        clean_up = rc.clean_up if clean_up is None else clean_up

        self.last_result = None
        context = PipelineContext(
            output_dir, base_name, clean_up=clean_up, progress=self.progress
        )
        with context:
            result = self.sequencer.run(
                spec, context, n_models, refinement, parallel=parallel
            )
        if clean_up:
            self._owned_outputs.extend(context.output_files)
        self.last_result = result
        return result

    def reconstruct_best(
        self,
        spec: RestraintSpec,
        n_models: Optional[int] = None,
        refinement: Optional[Union[Refinement, str]] = None,
        parallel: Optional[bool] = None,
    ) -> Path:
        """Reconstruct in a private temporary directory; return the best pdb.

        The directory is removed by :meth:`close`.
        """
        work_dir = Path(tempfile.mkdtemp(prefix="dgrecon_"))
        self._owned_dirs.append(work_dir)
        base_name = datetime.now().strftime("%Y%m%d%H%M%S%f")
        result = self.reconstruct(
            spec,
            work_dir,
            base_name,
            n_models=n_models,
            refinement=refinement,
            parallel=parallel,
            clean_up=True,
        )
        return result.best_model_path

    def minimize(
        self, pdb_file: PathLike, rms_gradient: float = 1.0
    ) -> float:
        """Minimize *pdb_file* into ``<stem>.min.pdb``; returns the energy."""
        pdb_file = Path(pdb_file)
        with PipelineContext(pdb_file.parent, basename_of(pdb_file)) as ctx:
            xyz_file = ctx.track_temp(ctx.path(".xyz"))
            ctx.track_temp(ctx.path(".seq"))
            self.engine.run_pdbxyz(pdb_file, xyz_file, ctx)
            energy = self.engine.run_minimize(xyz_file, rms_gradient, ctx)
            self.engine.run_xyzpdb(
                xyz_file, ctx.path(".seq"), ctx.path(".min.pdb"), ctx
            )
        logger.info(f"Minimized {pdb_file.name}: final energy {energy}")
        return energy

    def compute_energy(self, pdb_file: PathLike) -> float:
        """Total potential energy of *pdb_file* under the force field."""
        pdb_file = Path(pdb_file)
        with PipelineContext(pdb_file.parent, basename_of(pdb_file)) as ctx:
            xyz_file = ctx.track_temp(ctx.path(".xyz"))
            ctx.track_temp(ctx.path(".seq"))
            self.engine.run_pdbxyz(pdb_file, xyz_file, ctx)
            return self.engine.run_analyze(xyz_file, ctx)

    def stop(self) -> None:
        """Terminate the remote jobs of a running parallel reconstruction."""
        self.cluster.stop()

    def close(self) -> None:
        for path in self._owned_outputs:
            remove_quietly(path)
        self._owned_outputs = []
        for work_dir in self._owned_dirs:
            shutil.rmtree(work_dir, ignore_errors=True)
        self._owned_dirs = []
        self.last_result = None

    def __enter__(self) -> "Reconstructor":
        return self

    def __exit__(self, *args) -> None:
        self.close()
