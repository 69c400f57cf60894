"""Exception hierarchy for reconstruction runs.

Every failure raised out of a reconstruction call derives from
:class:`ReconstructionError`.  The exception type names the sub-cause;
the ``stage`` attribute (stamped by the stage sequencer) names the
pipeline stage that was running when it happened.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence, Union

if TYPE_CHECKING:  # pragma: no cover
    from dgrecon.reconstructor import Stage


class ReconstructionError(Exception):
    """Base class for all fatal reconstruction failures."""

    def __init__(self, message: str, stage: Optional["Stage"] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage is not None:
            return f"[{self.stage.value}] {message}"
        return message


class ToolError(ReconstructionError):
    """An external program did not complete successfully."""

    def __init__(
        self,
        message: str,
        command: Sequence[str] = (),
        returncode: Optional[int] = None,
    ):
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode


class ToolReportedError(ToolError):
    """The program printed its own fatal-error marker."""


class ToolExitError(ToolError):
    """The program exited with an unexpected non-zero code."""


class ResourceExhaustionError(ToolError):
    """The program was killed by the platform, usually for memory."""


class InputWarningError(ToolError):
    """The program warned that its input coordinates are inconsistent."""


class MissingOutputError(ReconstructionError):
    """An expected output file never appeared."""

    def __init__(self, message: str, path: Union[str, Path, None] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class ShortOutputError(ReconstructionError):
    """Fewer statistics records were parsed than models were requested."""

    def __init__(self, expected: int, found: int):
        super().__init__(
            f"Expected statistics for {expected} model(s) but "
            f"found {found} in the engine output"
        )
        self.expected = expected
        self.found = found


class ClusterError(ReconstructionError):
    """Base class for failures of a cluster fan-out run."""


class SubmissionFailure(ClusterError):
    """Too many jobs could not be submitted to the batch system."""


class JobFailure(ClusterError):
    """Too many jobs failed on the batch system."""


class PollTimeout(ClusterError):
    """Not enough jobs finished before the polling deadline."""


class IncompleteRecordError(ShortOutputError):
    """A statistics record closed with some of its fields unreadable."""

    def __init__(self, model: int, missing: Sequence[str]):
        ReconstructionError.__init__(
            self,
            f"Statistics of model {model} lack "
            + ", ".join(missing)
            + " in the engine output",
        )
        self.expected = model
        self.found = model - 1
        self.missing = list(missing)
