"""
dgrecon: Distance-geometry reconstruction of protein models.

This package drives the TINKER programs that turn a sequence and a set
of distance/torsion restraints into 3-D models, either in one local
process or as one job per model on a Grid Engine cluster, and picks the
model with the fewest restraint violations.
"""

try:
    from dgrecon._version import __version__
except ImportError:
    # Package not installed (running from source without build)
    __version__ = "0.0.0.dev0"


def __getattr__(name):
    """Lazy import modules only when accessed."""
    if name == "Reconstructor":
        from dgrecon.reconstructor import Reconstructor

        return Reconstructor
    elif name == "ReconstructionResult":
        from dgrecon.reconstructor import ReconstructionResult

        return ReconstructionResult
    elif name == "Stage":
        from dgrecon.reconstructor import Stage

        return Stage
    elif name == "Settings":
        from dgrecon.config import Settings

        return Settings
    elif name == "load_settings":
        from dgrecon.config import load_settings

        return load_settings
    elif name == "RestraintSpec":
        from dgrecon.restraints import RestraintSpec

        return RestraintSpec
    elif name == "load_restraints":
        from dgrecon.restraints import load_restraints

        return load_restraints
    elif name == "ReconstructionError":
        from dgrecon.errors import ReconstructionError

        return ReconstructionError
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Reconstructor",
    "ReconstructionResult",
    "Stage",
    "Settings",
    "load_settings",
    "RestraintSpec",
    "load_restraints",
    "ReconstructionError",
]
