"""Per-run working state: file ownership, run log and progress fan-out."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Union

from dgrecon._progress import NullProgress, ProgressSink
from dgrecon.files import remove_quietly

if TYPE_CHECKING:  # pragma: no cover
    from dgrecon.process import ProcessResult
    from dgrecon.reconstructor import Stage

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class PipelineContext:
    """Owns every file generated during one reconstruction call.

    Files are registered either as *temporary* (intermediate engine
    files, per-job cluster files) or as *outputs* (the model structures
    handed to the caller).  On exit, temporary files are always removed
    when ``clean_up`` is set; outputs are removed too if the run failed,
    so a failed call never leaves partial results behind.
    """

    def __init__(
        self,
        working_dir: PathLike,
        base_name: str,
        clean_up: bool = True,
        progress: Optional[ProgressSink] = None,
    ):
        self.working_dir = Path(working_dir)
        self.base_name = base_name
        self.clean_up = clean_up
        self.progress = progress if progress is not None else NullProgress()
        self.log_path = self.working_dir / f"{base_name}.tinker.log"
        self._temp_files: List[Path] = []
        self._output_files: List[Path] = []
        self._released = False

    # -- naming -----------------------------------------------------------

    def path(self, suffix: str) -> Path:
        """Canonical path ``<working_dir>/<base_name><suffix>``."""
        return self.working_dir / f"{self.base_name}{suffix}"

    # -- ownership --------------------------------------------------------

    def track_temp(self, path: PathLike) -> Path:
        path = Path(path)
        if path not in self._temp_files:
            self._temp_files.append(path)
        return path

    def track_output(self, path: PathLike) -> Path:
        path = Path(path)
        if path in self._temp_files:
            self._temp_files.remove(path)
        if path not in self._output_files:
            self._output_files.append(path)
        return path

    def untrack(self, path: PathLike) -> None:
        path = Path(path)
        if path in self._temp_files:
            self._temp_files.remove(path)
        if path in self._output_files:
            self._output_files.remove(path)

    @property
    def temp_files(self) -> List[Path]:
        return list(self._temp_files)

    @property
    def output_files(self) -> List[Path]:
        return list(self._output_files)

    def release(self, succeeded: bool) -> None:
        """Remove owned files according to ``clean_up``; runs once."""
        if self._released:
            return
        self._released = True
        if not self.clean_up:
            return
        doomed = list(self._temp_files)
        if not succeeded:
            doomed.extend(self._output_files)
        removed = sum(1 for path in doomed if remove_quietly(path))
        logger.debug(
            f"Released {removed} file(s) of run '{self.base_name}'"
        )

    def __enter__(self) -> "PipelineContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release(succeeded=exc_type is None)

    # -- run log ----------------------------------------------------------

    def log_command(self, result: "ProcessResult") -> None:
        """Append a program's command line and output to the run log."""
        with open(self.log_path, "a") as f:
            f.write(f"#cmd: {result.display_command}\n")
            for line in result.stdout_lines:
                f.write(f"{line}\n")

    def log_lines(self, header: str, lines: List[str]) -> None:
        with open(self.log_path, "a") as f:
            f.write(f"{header}\n")
            for line in lines:
                f.write(f"{line}\n")

    # -- progress ---------------------------------------------------------

    def notify_stage(self, stage: "Stage") -> None:
        try:
            self.progress.stage_started(stage)
        except Exception as exc:
            logger.warning(f"Progress sink failed on stage {stage}: {exc}")

    def notify_models(self, count: int, total: int) -> None:
        try:
            self.progress.models_done(count, total)
        except Exception as exc:
            logger.warning(f"Progress sink failed on model count: {exc}")
