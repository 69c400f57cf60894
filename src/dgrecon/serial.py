"""Embedding of all models in a single local engine process."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, List

from dgrecon.context import PipelineContext
from dgrecon.engine import Refinement, TinkerEngine
from dgrecon.files import find_file, model_suffix, tinker_output_path
from dgrecon.parser import parse_distgeom_output
from dgrecon.statistics import ModelStatisticsSet

logger = logging.getLogger(__name__)


class SerialJobRunner:
    """Runs ``distgeom`` once, asking it for all *n_models* models.

    The engine prints one statistics block per model and writes the
    models to ``<stem>.001``, ``<stem>.002``, ...; these are renamed to
    the context's canonical ``<base>.NNN`` names.
    """

    def __init__(
        self,
        engine: TinkerEngine,
        retries: int = 10,
        delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.retries = retries
        self.delay = delay
        self._sleep = sleep

    def run(
        self,
        xyz_file: Path,
        n_models: int,
        refinement: Refinement,
        context: PipelineContext,
    ) -> ModelStatisticsSet:
        xyz_file = Path(xyz_file)
        engine_outputs: List[Path] = [
            tinker_output_path(xyz_file, model_suffix(i))
            for i in range(1, n_models + 1)
        ]
        logger.info(
            f"Embedding {n_models} model(s) of {xyz_file.name} locally"
        )

        result = self.engine.run_distgeom(
            xyz_file, n_models, refinement, context
        )
        result.check()
        records, _ = parse_distgeom_output(result.stdout_lines, n_models)

        for i, engine_output in enumerate(engine_outputs, 1):
            canonical = context.path(f".{model_suffix(i)}")
            find_file(engine_output, self.retries, self.delay, self._sleep)
            if engine_output != canonical:
                os.replace(engine_output, canonical)
            context.track_output(canonical)
        context.notify_models(n_models, n_models)
        return ModelStatisticsSet(records)
