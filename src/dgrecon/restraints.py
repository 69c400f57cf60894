"""Restraint sets and compilation into the engine's key-file format."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

TRANS_OMEGA_RANGE = (178.0, 182.0)


@dataclass(frozen=True)
class DistanceRestraint:
    """Flat-bottomed distance restraint between two atom serials."""

    atom_i: int
    atom_j: int
    lower: float
    upper: float
    force_constant: Optional[float] = None


@dataclass(frozen=True)
class TorsionRestraint:
    """Flat-bottomed torsion restraint over four atom serials (degrees)."""

    atoms: Tuple[int, int, int, int]
    lower: float
    upper: float
    force_constant: Optional[float] = None


@dataclass(frozen=True)
class RestraintSpec:
    """Everything a reconstruction needs besides the engine settings.

    ``phi_psi`` maps a residue number to ``(phi_lower, phi_upper,
    psi_lower, psi_upper)`` in degrees.
    """

    sequence: str
    distances: Tuple[DistanceRestraint, ...] = ()
    torsions: Tuple[TorsionRestraint, ...] = ()
    phi_psi: Dict[int, Tuple[float, float, float, float]] = field(
        default_factory=dict
    )
    trans_omega: bool = False
    force_constant_distance: float = 100.0
    force_constant_torsion: float = 1.0

    def __post_init__(self):
        if not self.sequence:
            raise ValueError("RestraintSpec requires a non-empty sequence")


class RestraintCompiler(Protocol):
    """Writes a restraint set as the engine's native key file."""

    def compile(
        self,
        spec: RestraintSpec,
        xyz_file: Path,
        pdb_file: Path,
        key_file: Path,
        force_field: str,
    ) -> Path:
        ...


def read_backbone_serials(pdb_file: PathLike) -> Dict[int, Dict[str, int]]:
    """Map residue number to ``{atom name: serial}`` for N, CA and C.

    The pdb file written by ``xyzpdb`` keeps the xyz atom order, so its
    serials are the engine's atom numbers.
    """
    backbone: Dict[int, Dict[str, int]] = {}
    with open(pdb_file) as f:
        for line in f:
            if not line.startswith("ATOM"):
                continue
            atom = line[12:16].strip()
            if atom not in ("N", "CA", "C"):
                continue
            serial = int(line[6:11])
            residue = int(line[22:26])
            backbone.setdefault(residue, {})[atom] = serial
    return backbone


class KeyFileCompiler:
    """Default compiler for atom-level restraint sets.

    Writes explicit distance and torsion restraints, and derives
    backbone torsion restraints (trans omega, phi/psi ranges) from the
    backbone atoms of the unfolded chain's pdb file.
    """

    def compile(
        self,
        spec: RestraintSpec,
        xyz_file: Path,
        pdb_file: Path,
        key_file: Path,
        force_field: str,
    ) -> Path:
        lines = [f"parameters {force_field}"]
        for r in spec.distances:
            k = r.force_constant
            if k is None:
                k = spec.force_constant_distance
            lines.append(
                f"RESTRAIN-DISTANCE {r.atom_i} {r.atom_j} "
                f"{k:5.1f} {r.lower:2.1f} {r.upper:2.1f}"
            )
        torsions = list(spec.torsions)
        if spec.trans_omega or spec.phi_psi:
            torsions.extend(self._backbone_torsions(spec, pdb_file))
        for r in torsions:
            k = r.force_constant
            if k is None:
                k = spec.force_constant_torsion
            a, b, c, d = r.atoms
            lines.append(
                f"RESTRAIN-TORSION {a} {b} {c} {d} "
                f"{k:5.1f} {r.lower:.1f} {r.upper:.1f}"
            )
        key_file = Path(key_file)
        key_file.write_text("\n".join(lines) + "\n")
        logger.info(
            f"Wrote {len(spec.distances)} distance and {len(torsions)} "
            f"torsion restraints to {key_file}"
        )
        return key_file

    @staticmethod
    def _backbone_torsions(
        spec: RestraintSpec, pdb_file: Path
    ) -> List[TorsionRestraint]:
        backbone = read_backbone_serials(pdb_file)
        torsions: List[TorsionRestraint] = []

        def _serials(*keys: Tuple[int, str]) -> Optional[Tuple[int, ...]]:
            try:
                return tuple(backbone[res][atom] for res, atom in keys)
            except KeyError:
                return None

        if spec.trans_omega:
            lower, upper = TRANS_OMEGA_RANGE
            for res in sorted(backbone):
                atoms = _serials(
                    (res, "CA"), (res, "C"), (res + 1, "N"), (res + 1, "CA")
                )
                if atoms is not None:
                    torsions.append(TorsionRestraint(atoms, lower, upper))

        for res, (phi_lo, phi_hi, psi_lo, psi_hi) in sorted(
            spec.phi_psi.items()
        ):
            phi = _serials((res - 1, "C"), (res, "N"), (res, "CA"), (res, "C"))
            if phi is not None:
                torsions.append(TorsionRestraint(phi, phi_lo, phi_hi))
            psi = _serials((res, "N"), (res, "CA"), (res, "C"), (res + 1, "N"))
            if psi is not None:
                torsions.append(TorsionRestraint(psi, psi_lo, psi_hi))
        return torsions


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def restraints_from_dict(
    data: Dict[str, Any], sequence: str
) -> RestraintSpec:
    """Build a :class:`RestraintSpec` from a parsed restraint document."""
    distances = tuple(
        DistanceRestraint(
            atom_i=int(item["i"]),
            atom_j=int(item["j"]),
            lower=float(item["lower"]),
            upper=float(item["upper"]),
            force_constant=_optional_float(item.get("force_constant")),
        )
        for item in data.get("distance") or []
    )
    torsions = []
    for item in data.get("torsion") or []:
        atoms = tuple(int(a) for a in item["atoms"])
        if len(atoms) != 4:
            raise ValueError(
                f"Torsion restraint needs 4 atoms, got {len(atoms)}"
            )
        torsions.append(
            TorsionRestraint(
                atoms=atoms,
                lower=float(item["lower"]),
                upper=float(item["upper"]),
                force_constant=_optional_float(item.get("force_constant")),
            )
        )
    phi_psi = {
        int(res): tuple(float(v) for v in ranges)
        for res, ranges in (data.get("phi_psi") or {}).items()
    }
    return RestraintSpec(
        sequence=sequence,
        distances=distances,
        torsions=tuple(torsions),
        phi_psi=phi_psi,
        trans_omega=bool(data.get("trans_omega", False)),
    )


def load_restraints(path: PathLike, sequence: str) -> RestraintSpec:
    """Load a YAML restraint file (``distance``, ``torsion``, ...)."""
    import yaml

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Restraint file must be a mapping, got {type(data).__name__}"
        )
    return restraints_from_dict(data, sequence)
