"""Invocation surface of the TINKER programs used by a reconstruction.

Each ``run_*`` method runs one program through a
:class:`~dgrecon.process.ProcessInvoker`, appends its output to the run
log, raises the typed error for a failed run and renames the engine's
(possibly disambiguated) output files to the names the caller asked for.
"""

from __future__ import annotations

import logging
import os
import shutil
from enum import Enum
from pathlib import Path
from typing import List, Optional

from dgrecon.config import EngineConfig
from dgrecon.context import PipelineContext
from dgrecon.errors import InputWarningError, MissingOutputError
from dgrecon.files import (
    basename_of,
    find_file,
    remove_quietly,
    tinker_output_path,
)
from dgrecon.parser import parse_final_energy, parse_potential_energy
from dgrecon.process import ProcessInvoker, ProcessResult

logger = logging.getLogger(__name__)

DGEOM_DEFAULT_PARAMS = ("Y", "N", "Y", "Y", "N", "N")
CYCLISE_PROTEIN = "N"
ANALYZE_ENERGY_MODE = "E"
CHECKXYZ_WARNING = " CHKXYZ"
PROTEIN_TITLE = "Unfolded chain created by tinker's protein program"


class Refinement(str, Enum):
    """Refinement protocol applied by distgeom after embedding."""

    ANNEALING = "annealing"
    MINIMIZATION = "minimization"

    @property
    def flag(self) -> str:
        return "A" if self is Refinement.ANNEALING else "M"


def distgeom_flags(refinement: Refinement) -> List[str]:
    return [*DGEOM_DEFAULT_PARAMS, Refinement(refinement).flag]


def protein_stdin(base_name: str, sequence: str, force_field: str) -> str:
    """Build the interactive answers fed to the ``protein`` program."""
    lines = [base_name, PROTEIN_TITLE, force_field]
    for residue in sequence:
        # One-letter C would become the disulfide-bonded CYX.
        lines.append("CYS" if residue == "C" else residue)
    lines.append("")
    lines.append(CYCLISE_PROTEIN)
    return "\n".join(lines) + "\n"


class TinkerEngine:
    """Runs the engine programs configured in an :class:`EngineConfig`."""

    def __init__(
        self,
        config: EngineConfig,
        invoker: Optional[ProcessInvoker] = None,
    ):
        self.config = config
        self.invoker = invoker or ProcessInvoker()

    @property
    def distgeom_path(self) -> Path:
        return self.config.program(self.config.distgeom_program)

    def _run(
        self,
        command: List[str],
        context: PipelineContext,
        cwd: Optional[Path] = None,
        stdin: Optional[str] = None,
    ) -> ProcessResult:
        result = self.invoker.run(command, cwd=cwd, stdin=stdin)
        context.log_command(result)
        return result

    # -- chain building ---------------------------------------------------

    def run_protein(
        self,
        sequence: str,
        context: PipelineContext,
        retries: int = 10,
        delay: float = 2.0,
    ) -> Path:
        """Build an unfolded chain; returns the canonical ``<base>.xyz``."""
        out_dir = context.working_dir
        if not out_dir.is_dir():
            raise FileNotFoundError(
                f"Specified directory {out_dir} does not exist"
            )
        xyz_file = context.path(".xyz")
        seq_file = context.path(".seq")
        engine_xyz = tinker_output_path(xyz_file, "xyz")
        engine_seq = tinker_output_path(seq_file, "seq")
        engine_int = context.track_temp(
            tinker_output_path(context.path(".int"), "int")
        )

        result = self._run(
            [str(self.config.program(self.config.protein_program))],
            context,
            cwd=out_dir,
            stdin=protein_stdin(
                context.base_name, sequence, self.config.force_field
            ),
        )
        result.check()

        find_file(engine_xyz, retries, delay)
        if engine_xyz != xyz_file:
            os.replace(engine_xyz, xyz_file)
        if engine_seq != seq_file and engine_seq.exists():
            os.replace(engine_seq, seq_file)
        remove_quietly(engine_int)
        context.track_temp(xyz_file)
        context.track_temp(seq_file)
        return xyz_file

    # -- format conversion ------------------------------------------------

    def run_xyzpdb(
        self,
        xyz_file: Path,
        seq_file: Path,
        pdb_file: Path,
        context: PipelineContext,
    ) -> Path:
        """Convert *xyz_file* to *pdb_file*; needs a matching seq file."""
        xyz_file, seq_file, pdb_file = (
            Path(xyz_file),
            Path(seq_file),
            Path(pdb_file),
        )
        if not xyz_file.exists():
            raise MissingOutputError(
                f"Specified xyz file {xyz_file} does not exist", xyz_file
            )
        if not seq_file.exists():
            raise MissingOutputError(
                f"Specified seq file {seq_file} does not exist", seq_file
            )

        # xyzpdb silently reads <xyz stem>.seq
        expected_seq = seq_file.parent / f"{basename_of(xyz_file)}.seq"
        copied_seq = None
        if expected_seq.absolute() != seq_file.absolute():
            shutil.copyfile(seq_file, expected_seq)
            copied_seq = expected_seq

        engine_pdb = tinker_output_path(xyz_file, "pdb")
        try:
            result = self._run(
                [
                    str(self.config.program(self.config.xyzpdb_program)),
                    str(xyz_file.absolute()),
                    self.config.force_field,
                ],
                context,
            )
        finally:
            if copied_seq is not None:
                remove_quietly(copied_seq)
        result.check()

        if not engine_pdb.exists():
            raise MissingOutputError(
                f"xyzpdb did not write {engine_pdb}", engine_pdb
            )
        if engine_pdb != pdb_file:
            os.replace(engine_pdb, pdb_file)
        return pdb_file

    def run_pdbxyz(
        self, pdb_file: Path, xyz_file: Path, context: PipelineContext
    ) -> Path:
        """Convert *pdb_file* to *xyz_file* plus ``<xyz stem>.seq``."""
        pdb_file, xyz_file = Path(pdb_file), Path(xyz_file)
        if not pdb_file.exists():
            raise MissingOutputError(
                f"Specified pdb file {pdb_file} does not exist", pdb_file
            )
        engine_xyz = tinker_output_path(pdb_file, "xyz")
        engine_seq = tinker_output_path(pdb_file, "seq")

        result = self._run(
            [
                str(self.config.program(self.config.pdbxyz_program)),
                str(pdb_file.absolute()),
                self.config.force_field,
            ],
            context,
        )
        result.check()

        if not engine_xyz.exists():
            raise MissingOutputError(
                f"pdbxyz did not write {engine_xyz}", engine_xyz
            )
        if engine_xyz != xyz_file:
            os.replace(engine_xyz, xyz_file)
        seq_file = xyz_file.parent / f"{basename_of(xyz_file)}.seq"
        if engine_seq.exists() and engine_seq != seq_file:
            os.replace(engine_seq, seq_file)
        return xyz_file

    # -- embedding --------------------------------------------------------

    def check_distgeom_input(self, xyz_file: Path, out_dir: Path) -> None:
        """Ensure *xyz_file* and its ``.key`` restraint file exist."""
        if not Path(out_dir).is_dir():
            raise FileNotFoundError(
                f"Specified directory {out_dir} does not exist"
            )
        xyz_file = Path(xyz_file)
        if not xyz_file.exists():
            raise MissingOutputError(
                f"Specified xyz file {xyz_file} does not exist", xyz_file
            )
        key_file = xyz_file.parent / f"{basename_of(xyz_file)}.key"
        if not key_file.exists():
            raise MissingOutputError(
                f"Key file {key_file} not present in input directory "
                f"{xyz_file.parent}",
                key_file,
            )

    def distgeom_args(
        self, xyz_file: Path, n_models: int, refinement: Refinement
    ) -> List[str]:
        """Arguments of distgeom (without the program itself)."""
        return [
            str(Path(xyz_file).absolute()),
            str(n_models),
            *distgeom_flags(refinement),
        ]

    def run_distgeom(
        self,
        xyz_file: Path,
        n_models: int,
        refinement: Refinement,
        context: PipelineContext,
    ) -> ProcessResult:
        """Run distgeom for *n_models* models; the caller checks/parses."""
        self.check_distgeom_input(xyz_file, context.working_dir)
        return self._run(
            [
                str(self.distgeom_path),
                *self.distgeom_args(xyz_file, n_models, refinement),
            ],
            context,
        )

    # -- energy -----------------------------------------------------------

    def run_minimize(
        self,
        xyz_file: Path,
        rms_gradient: float,
        context: PipelineContext,
    ) -> float:
        """Minimize *xyz_file* in place; returns the final energy."""
        xyz_file = Path(xyz_file)
        engine_xyz = tinker_output_path(xyz_file, "xyz")
        result = self._run(
            [
                str(self.config.program(self.config.minimize_program)),
                str(xyz_file.absolute()),
                self.config.force_field,
                str(rms_gradient),
            ],
            context,
        )
        lines = result.stdout_lines
        if any(line.startswith(CHECKXYZ_WARNING) for line in lines):
            raise InputWarningError(
                "minimize gave a warning about the input xyz file, "
                "see the run log",
                result.command,
                result.returncode,
            )
        result.check()
        energy = parse_final_energy(result.stdout_lines)
        if engine_xyz.exists() and engine_xyz != xyz_file:
            os.replace(engine_xyz, xyz_file)
        return energy

    def run_analyze(self, xyz_file: Path, context: PipelineContext) -> float:
        """Total potential energy of *xyz_file*."""
        result = self._run(
            [
                str(self.config.program(self.config.analyze_program)),
                str(Path(xyz_file).absolute()),
                self.config.force_field,
                ANALYZE_ENERGY_MODE,
            ],
            context,
        )
        result.check()
        return parse_potential_energy(result.stdout_lines)
