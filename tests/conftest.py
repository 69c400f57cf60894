"""Shared fakes for the engine programs and the batch system."""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from dgrecon.batch import BatchSession, BatchSystemError, JobState
from dgrecon.config import EngineConfig
from dgrecon.engine import TinkerEngine
from dgrecon.files import basename_of, tinker_output_path
from dgrecon.process import TOOL_ERROR_MARKER, ProcessResult

STAT_LABELS = (
    ("Final Error Function Value", "{:.4f}"),
    ("Num Upper Bound Violations", "{:d}"),
    ("Num Lower Bound Violations", "{:d}"),
    ("Max Upper Bound Violation", "{:.4f}"),
    ("Max Lower Bound Violation", "{:.4f}"),
    ("RMS Deviation from Bounds", "{:.4f}"),
    ("Num Upper Restraint Violations", "{:d}"),
    ("Num Lower Restraint Violations", "{:d}"),
    ("Max Upper Restraint Violation", "{:.4f}"),
    ("Max Lower Restraint Violation", "{:.4f}"),
    ("RMS Restraint Dist Violation", "{:.4f}"),
)


def stats_block(
    error: float = 0.5, upper: int = 0, lower: int = 0
) -> List[str]:
    """Lines distgeom prints for one model."""
    values = (error, upper, lower, 0.1, 0.2, 0.3, 1, 2, 0.4, 0.5, 0.6)
    return [
        f" {label} :" + " " * 8 + fmt.format(value)
        for (label, fmt), value in zip(STAT_LABELS, values)
    ]


BACKBONE_PDB = (
    "ATOM      1  N   ALA A   1      11.104   6.134  -6.504  1.00  0.00\n"
    "ATOM      2  CA  ALA A   1      11.639   6.071  -5.147  1.00  0.00\n"
    "ATOM      3  C   ALA A   1      13.149   6.149  -5.136  1.00  0.00\n"
    "ATOM      7  N   GLY A   2      13.703   6.052  -3.938  1.00  0.00\n"
    "ATOM      8  CA  GLY A   2      15.141   6.103  -3.774  1.00  0.00\n"
    "ATOM      9  C   GLY A   2      15.596   6.081  -2.330  1.00  0.00\n"
)


class FakeTinker:
    """Stands in for :class:`ProcessInvoker`, emulating the engine programs.

    Each program writes the files the real one would (honouring the
    ``_2``, ``_3`` disambiguation) and prints representative output.
    """

    def __init__(self, violations: Optional[List[Tuple[int, int]]] = None):
        self.calls: List[Tuple[str, List[str], Optional[Path], str]] = []
        self.violations = violations or []
        self.returncodes: Dict[str, int] = {}
        self.markers: set = set()
        self.extra_output: Dict[str, List[str]] = {}
        self.skip_outputs: set = set()

    def programs(self) -> List[str]:
        return [call[0] for call in self.calls]

    def run(self, command, cwd=None, stdin=None) -> ProcessResult:
        cmd = [str(part) for part in command]
        program = Path(cmd[0]).name
        self.calls.append((program, cmd, cwd, stdin))
        lines = []
        if program not in self.skip_outputs:
            lines = getattr(self, f"_{program}")(cmd, cwd, stdin)
        lines = lines + self.extra_output.get(program, [])
        if program in self.markers:
            lines.append(f"{TOOL_ERROR_MARKER} -- fake failure")
        return ProcessResult(
            command=cmd,
            returncode=self.returncodes.get(program, 0),
            stdout_lines=lines,
        )

    def _protein(self, cmd, cwd, stdin):
        base = stdin.splitlines()[0]
        stem = Path(cwd) / base
        tinker_output_path(stem.with_suffix(".xyz"), "xyz").write_text("xyz\n")
        tinker_output_path(stem.with_suffix(".seq"), "seq").write_text("seq\n")
        tinker_output_path(stem.with_suffix(".int"), "int").write_text("int\n")
        return [" Protein Building Utility"]

    def _xyzpdb(self, cmd, cwd, stdin):
        xyz = Path(cmd[1])
        seq = xyz.parent / f"{basename_of(xyz)}.seq"
        if not seq.exists():
            return [f"{TOOL_ERROR_MARKER} -- no sequence file"]
        tinker_output_path(xyz, "pdb").write_text(BACKBONE_PDB)
        return []

    def _pdbxyz(self, cmd, cwd, stdin):
        pdb = Path(cmd[1])
        tinker_output_path(pdb, "xyz").write_text("xyz\n")
        tinker_output_path(pdb, "seq").write_text("seq\n")
        return []

    def _distgeom(self, cmd, cwd, stdin):
        xyz = Path(cmd[1])
        n_models = int(cmd[2])
        lines = [" Distance Geometry Metric Matrix Embedding"]
        for i in range(1, n_models + 1):
            tinker_output_path(xyz, f"{i:03d}").write_text(f"model {i}\n")
            upper, lower = (
                self.violations[i - 1]
                if i <= len(self.violations)
                else (0, 0)
            )
            lines.append(f" Embedding structure {i}")
            lines.extend(stats_block(float(i), upper, lower))
        return lines

    def _minimize(self, cmd, cwd, stdin):
        tinker_output_path(Path(cmd[1]), "xyz").write_text("minimized\n")
        return [" Final Function Value :     -123.4567"]

    def _analyze(self, cmd, cwd, stdin):
        return [" Total Potential Energy :     -45.6789 Kcal/mole"]


class FakeBatchSession(BatchSession):
    """Scripted batch system.

    ``schedule`` maps a submission index (1-based) to the states the job
    reports on successive polls; the last state repeats.  A job that
    reaches DONE writes its model file and stdout log, with the
    submission index as its error function value.
    """

    def __init__(
        self,
        schedule: Optional[Dict[int, List[JobState]]] = None,
        fail_submit: Iterable[int] = (),
        missing_output: Iterable[int] = (),
        default: Iterable[JobState] = (JobState.DONE,),
    ):
        super().__init__()
        self.schedule = schedule or {}
        self.default = list(default)
        self.fail_submit = set(fail_submit)
        self.missing_output = set(missing_output)
        self.templates = []
        self.attempts = 0
        self.by_id: Dict[str, Tuple[int, object]] = {}
        self.polls: Dict[str, int] = {}
        self.terminated: List[str] = []
        self.close_calls = 0

    def _submit(self, template):
        self.attempts += 1
        index = self.attempts
        if index in self.fail_submit:
            raise BatchSystemError(f"qsub refused job {index}")
        job_id = str(1000 + index)
        self.templates.append(template)
        self.by_id[job_id] = (index, template)
        self.polls[job_id] = 0
        return job_id

    def _status(self, job_id):
        index, template = self.by_id[job_id]
        states = self.schedule.get(index, self.default)
        state = states[min(self.polls[job_id], len(states) - 1)]
        self.polls[job_id] += 1
        if state is JobState.DONE and index not in self.missing_output:
            self._write_outputs(index, job_id, template)
        return state

    def _write_outputs(self, index, job_id, template):
        xyz = Path(template.args[0])
        output = xyz.parent / f"{basename_of(xyz)}.001"
        if not output.exists():
            output.write_text(f"job {index}\n")
        log = Path(template.output_path) / f"{template.job_name}.o{job_id}"
        log.write_text("\n".join(stats_block(float(index), index % 3)))

    def _terminate(self, job_ids):
        self.terminated.extend(job_ids)

    def _close(self):
        self.close_calls += 1


@pytest.fixture
def engine_config(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    (bin_dir / "distgeom").write_text("")
    return EngineConfig(bin_dir=str(bin_dir), force_field="/ff/amber99.prm")


@pytest.fixture
def fake_tinker():
    return FakeTinker()


@pytest.fixture
def engine(engine_config, fake_tinker):
    return TinkerEngine(engine_config, invoker=fake_tinker)


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path
