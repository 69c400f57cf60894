"""Progress sinks for reconstruction runs.

A sink receives stage transitions and, while models are being
generated, the running count of finished models.  Sinks are purely
observational: the orchestrator ignores anything they raise.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Callable, Optional, Protocol

if TYPE_CHECKING:  # pragma: no cover
    from dgrecon.reconstructor import Stage


class ProgressSink(Protocol):
    def stage_started(self, stage: "Stage") -> None:
        ...

    def models_done(self, count: int, total: int) -> None:
        ...


class NullProgress:
    """Sink that drops every notification."""

    def stage_started(self, stage: "Stage") -> None:
        pass

    def models_done(self, count: int, total: int) -> None:
        pass


class CallbackProgress:
    """Adapter forwarding notifications to plain callables."""

    def __init__(
        self,
        on_stage: Optional[Callable[["Stage"], None]] = None,
        on_models: Optional[Callable[[int, int], None]] = None,
    ):
        self._on_stage = on_stage
        self._on_models = on_models

    def stage_started(self, stage: "Stage") -> None:
        if self._on_stage is not None:
            self._on_stage(stage)

    def models_done(self, count: int, total: int) -> None:
        if self._on_models is not None:
            self._on_models(count, total)


class ReconstructionProgress:
    """Context manager wrapping ``rich.progress.Progress``.

    Shows a stage bar over the four pipeline stages and, during model
    generation, a counter of finished models.  When ``enabled=False``
    (or stderr is not a TTY) every method is a no-op.
    """

    def __init__(self, enabled: bool = True, n_stages: int = 4):
        self._enabled = enabled and sys.stderr.isatty()
        self._n_stages = n_stages
        self._progress = None
        self._stage_task = None
        self._models_task = None

    # -- context manager --------------------------------------------------

    def __enter__(self) -> "ReconstructionProgress":
        if not self._enabled:
            return self

        from rich.progress import (
            BarColumn,
            MofNCompleteColumn,
            Progress,
            SpinnerColumn,
            TextColumn,
            TimeElapsedColumn,
        )

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(bar_width=35),
            MofNCompleteColumn(),
            TextColumn("{task.fields[status]}"),
            TimeElapsedColumn(),
            transient=False,
            console=self._make_console(),
        )
        self._progress.start()
        self._stage_task = self._progress.add_task(
            "Reconstruction",
            total=self._n_stages,
            status="",
        )
        return self

    def __exit__(self, *args) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
            self._stage_task = None
            self._models_task = None

    @staticmethod
    def _make_console():
        from rich.console import Console

        return Console(stderr=True)

    # -- sink interface ---------------------------------------------------

    def stage_started(self, stage: "Stage") -> None:
        if self._progress is None or self._stage_task is None:
            return
        self._progress.update(
            self._stage_task,
            completed=stage.ordinal,
            status=stage.value.lower(),
        )

    def models_done(self, count: int, total: int) -> None:
        if self._progress is None:
            return
        if self._models_task is None:
            self._models_task = self._progress.add_task(
                "  Models",
                total=total,
                status="",
            )
        self._progress.update(
            self._models_task,
            completed=count,
            status=f"{count} / {total} done",
        )
