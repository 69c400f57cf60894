#!/usr/bin/env python
"""dgrecon CLI - distance-geometry reconstruction with TINKER."""

import dataclasses
import logging
from pathlib import Path
from typing import List, Optional

import typer

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="dgrecon",
    help=(
        "Reconstruct protein models from a sequence and a restraint set.\n\n"
        "dgrecon drives the TINKER distance-geometry programs (protein, "
        "distgeom, xyzpdb) locally or as one job per model on a Grid "
        "Engine cluster, and picks the model with the fewest bound "
        "violations.\n\n"
        "By default, commands run quietly with minimal output. Use --verbose "
        "to log every engine command and its output."
    ),
    no_args_is_help=True,
    add_completion=False,
)


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    """Configure logging for the CLI.

    Default (non-verbose) runs only show warnings and errors; with
    --verbose every engine command line and output line is logged.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,  # Override any existing handlers
    )


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _read_sequence(value: str) -> str:
    """Return a one-letter sequence given literally or as a (FASTA) file."""
    path = Path(value)
    if path.is_file():
        lines = path.read_text().splitlines()
        sequence = "".join(
            line.strip() for line in lines if not line.startswith(">")
        )
    else:
        sequence = value
    sequence = "".join(sequence.split()).upper()
    if not sequence.isalpha():
        _fail(f"Invalid sequence: {value}")
    return sequence


def _load_settings(
    config_file: Optional[Path], overrides: Optional[List[str]]
):
    from dgrecon.config import ConfigError, load_settings

    try:
        settings = load_settings(config_file, overrides or None)
        settings.engine.validate()
    except ConfigError as exc:
        _fail(str(exc))
    return settings


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------


@app.command(
    context_settings={
        "allow_extra_args": True,
        "allow_interspersed_args": False,
    }
)
def reconstruct(
    ctx: typer.Context,
    sequence: str = typer.Argument(
        ...,
        metavar="SEQUENCE",
        help="One-letter sequence or a (FASTA) file containing it",
    ),
    restraints_file: Path = typer.Argument(
        ..., metavar="RESTRAINTS", help="YAML restraint file"
    ),
    output_dir: Path = typer.Argument(
        ..., metavar="OUTPUT_DIR", help="Directory for models and logs"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML settings file"
    ),
    n_models: Optional[int] = typer.Option(
        None, "--models", "-n", help="Number of models to generate"
    ),
    base_name: str = typer.Option(
        "model", "--base-name", help="Base name of all generated files"
    ),
    parallel: Optional[bool] = typer.Option(
        None,
        "--parallel/--serial",
        help="Run one cluster job per model instead of one local process",
    ),
    fast: bool = typer.Option(
        False, "--fast", help="Refine by minimization instead of annealing"
    ),
    keep_files: bool = typer.Option(
        False, "--keep-files", help="Keep intermediate engine files"
    ),
    stats_csv: bool = typer.Option(
        False, "--stats-csv", help="Also write per-model statistics as CSV"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable detailed logging of engine commands",
    ),
):
    """Reconstruct models from a sequence and restraints.

    Extra arguments are applied as config overrides (key=value syntax).
    Example: dgrecon reconstruct SEQ r.yaml out/ cluster.timeout=600
    """
    _setup_logging(verbose)

    if not restraints_file.exists():
        _fail(f"Restraint file not found: {restraints_file}")
    settings = _load_settings(config_file, ctx.args)
    aa_sequence = _read_sequence(sequence)

    from dgrecon._progress import ReconstructionProgress
    from dgrecon.errors import ReconstructionError
    from dgrecon.reconstructor import Reconstructor
    from dgrecon.restraints import load_restraints
    from dgrecon.result_io import (
        resolve_result_output_paths,
        write_result_json,
        write_statistics_csv,
    )

    rc = settings.reconstruction
    try:
        spec = load_restraints(restraints_file, aa_sequence)
    except (OSError, ValueError, KeyError) as exc:
        _fail(f"Could not read restraints {restraints_file}: {exc}")
    spec = dataclasses.replace(
        spec,
        force_constant_distance=rc.force_constant_distance,
        force_constant_torsion=rc.force_constant_torsion,
    )

    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info(
        f"Reconstructing {len(aa_sequence)} residues into {output_dir}"
    )
    try:
        with ReconstructionProgress(enabled=not verbose) as progress:
            reconstructor = Reconstructor(settings, progress=progress)
            result = reconstructor.reconstruct(
                spec,
                output_dir,
                base_name,
                n_models=n_models,
                refinement="minimization" if fast else None,
                parallel=parallel,
                clean_up=False if keep_files else None,
            )
    except ReconstructionError as exc:
        _fail(str(exc))

    summary_path, csv_path = resolve_result_output_paths(
        output_dir, base_name, stats_csv=stats_csv
    )
    write_result_json(result, summary_path)
    if csv_path is not None:
        write_statistics_csv(result, csv_path)
    logger.info(f"Wrote summary to {summary_path}")
    typer.echo(str(result.best_model_path))


@app.command()
def minimize(
    input_file: Path = typer.Argument(
        ..., metavar="PDB", help="Input structure file (PDB)"
    ),
    rms_gradient: float = typer.Option(
        1.0, "--rms-gradient", help="RMS gradient convergence criterion"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML settings file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable detailed logging"
    ),
):
    """Energy minimization with the TINKER force field."""
    _setup_logging(verbose)
    if not input_file.exists():
        _fail(f"Input file not found: {input_file}")
    settings = _load_settings(config_file, None)

    from dgrecon.errors import ReconstructionError
    from dgrecon.reconstructor import Reconstructor

    try:
        final = Reconstructor(settings).minimize(input_file, rms_gradient)
    except ReconstructionError as exc:
        _fail(str(exc))
    typer.echo(f"Final energy: {final:.4f}")


@app.command()
def energy(
    input_file: Path = typer.Argument(
        ..., metavar="PDB", help="Input structure file (PDB)"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML settings file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable detailed logging"
    ),
):
    """Total potential energy of a structure."""
    _setup_logging(verbose)
    if not input_file.exists():
        _fail(f"Input file not found: {input_file}")
    settings = _load_settings(config_file, None)

    from dgrecon.errors import ReconstructionError
    from dgrecon.reconstructor import Reconstructor

    try:
        value = Reconstructor(settings).compute_energy(input_file)
    except ReconstructionError as exc:
        _fail(str(exc))
    typer.echo(f"Total potential energy: {value:.4f}")


# -------------------------------------------------------------------
# Entry point
# -------------------------------------------------------------------


def main():
    """CLI entry point (called by ``dgrecon`` console script)."""
    app()


if __name__ == "__main__":
    main()
