"""Configuration dataclasses and YAML loading."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

REFINEMENT_MODES = ("annealing", "minimization")


class ConfigError(ValueError):
    """Raised for invalid configuration values or files."""


@dataclass
class EngineConfig:
    """Location of the engine programs and the force-field file."""

    bin_dir: str = ""
    force_field: str = ""
    distgeom_program: str = "distgeom"
    protein_program: str = "protein"
    xyzpdb_program: str = "xyzpdb"
    pdbxyz_program: str = "pdbxyz"
    minimize_program: str = "minimize"
    analyze_program: str = "analyze"

    def program(self, name: str) -> Path:
        """Absolute path of program *name* inside ``bin_dir``."""
        return (Path(self.bin_dir) / name).absolute()

    def validate(self) -> None:
        bin_dir = Path(self.bin_dir)
        if not self.bin_dir or not bin_dir.is_dir():
            raise ConfigError(
                f"Can't read engine bin directory '{self.bin_dir}'"
            )
        distgeom = bin_dir / self.distgeom_program
        if not os.access(distgeom, os.R_OK):
            raise ConfigError(f"Can't read distgeom executable {distgeom}")
        if not self.force_field:
            raise ConfigError("No force-field file configured")


@dataclass
class ReconstructionConfig:
    """Parameters of a single reconstruction call."""

    n_models: int = 1
    refinement: str = "annealing"
    parallel: bool = False
    force_constant_distance: float = 100.0
    force_constant_torsion: float = 1.0
    clean_up: bool = True
    find_file_retries: int = 10
    find_file_delay: float = 2.0

    def __post_init__(self):
        if self.n_models < 1:
            raise ConfigError(f"n_models must be >= 1, got {self.n_models}")
        if self.refinement not in REFINEMENT_MODES:
            raise ConfigError(
                f"refinement must be one of {', '.join(REFINEMENT_MODES)}, "
                f"got '{self.refinement}'"
            )
        if self.find_file_retries < 0:
            raise ConfigError("find_file_retries must be >= 0")


@dataclass
class ClusterConfig:
    """Fan-out parameters for running one engine job per model."""

    failure_rate: float = 0.1
    timeout: float = 7200.0
    poll_interval: float = 2.0
    output_retries: int = 10
    output_retry_delay: float = 2.0
    job_prefix: str = "RC_"
    native_specification: str = "-q all.q"
    max_seed: int = 2000000000
    keep_temp_files: bool = False
    qsub_command: str = "qsub"
    qstat_command: str = "qstat"
    qacct_command: str = "qacct"
    qdel_command: str = "qdel"

    def __post_init__(self):
        if not 0.0 <= self.failure_rate < 1.0:
            raise ConfigError(
                f"failure_rate must be in [0, 1), got {self.failure_rate}"
            )
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be > 0, got {self.timeout}")
        if self.poll_interval < 0:
            raise ConfigError("poll_interval must be >= 0")
        if self.output_retries < 0:
            raise ConfigError("output_retries must be >= 0")
        if self.max_seed < 1:
            raise ConfigError("max_seed must be >= 1")


@dataclass
class Settings:
    """All configuration sections of the tool."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    reconstruction: ReconstructionConfig = field(
        default_factory=ReconstructionConfig
    )
    cluster: ClusterConfig = field(default_factory=ClusterConfig)


_SECTIONS = {
    "engine": EngineConfig,
    "reconstruction": ReconstructionConfig,
    "cluster": ClusterConfig,
}


def _ensure_resolvers() -> None:
    """Register custom OmegaConf resolvers (idempotent)."""
    from omegaconf import OmegaConf

    if not OmegaConf.has_resolver("env"):
        OmegaConf.register_new_resolver(
            "env",
            lambda key, default="": os.environ.get(key, default),
        )


def _build_section(name: str, cls: type, values: Any) -> Any:
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ConfigError(
            f"Config section '{name}' must be a mapping, "
            f"got {type(values).__name__}"
        )
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(
            f"Unknown key(s) in section '{name}': {', '.join(unknown)}"
        )
    try:
        return cls(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid section '{name}': {exc}") from exc


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    """Build :class:`Settings` from a plain nested mapping."""
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")
    return Settings(
        **{
            name: _build_section(name, cls, data.get(name))
            for name, cls in _SECTIONS.items()
        }
    )


def load_settings(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[List[str]] = None,
) -> Settings:
    """Load settings from a YAML file and dotlist overrides.

    Parameters
    ----------
    path : str or Path, optional
        YAML file with ``engine``, ``reconstruction`` and ``cluster``
        sections.  Missing sections take their defaults.
    overrides : list of str, optional
        Dotlist-style overrides (e.g. ``["cluster.timeout=600"]``),
        applied after loading and before interpolation is resolved.
    """
    from omegaconf import DictConfig, OmegaConf
    from omegaconf.errors import OmegaConfBaseException

    _ensure_resolvers()

    if path is not None:
        try:
            cfg = OmegaConf.load(Path(path))
        except (OmegaConfBaseException, OSError) as exc:
            raise ConfigError(f"Could not load config {path}: {exc}") from exc
        if not isinstance(cfg, DictConfig):
            raise ConfigError(
                f"Config file must be a mapping, got {type(cfg).__name__}"
            )
    else:
        cfg = OmegaConf.create({})

    if overrides:
        try:
            cfg = OmegaConf.merge(cfg, OmegaConf.from_dotlist(overrides))
        except (OmegaConfBaseException, ValueError) as exc:
            raise ConfigError(f"Invalid override: {exc}") from exc

    try:
        data = OmegaConf.to_container(cfg, resolve=True)
    except OmegaConfBaseException as exc:
        raise ConfigError(f"Variable resolution failed: {exc}") from exc

    return settings_from_dict(data or {})
