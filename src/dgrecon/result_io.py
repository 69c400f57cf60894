"""Result serialization: JSON summary and per-model statistics CSV."""

from __future__ import annotations

import csv
import json
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any, Optional, Tuple, Union

from dgrecon.statistics import STATISTIC_NAMES

if False:  # pragma: no cover
    from dgrecon.reconstructor import ReconstructionResult


PathLike = Union[str, Path]

_CSV_COLUMNS = ["model", *STATISTIC_NAMES, "bound_violations", "pdb"]


def result_to_dict(result: "ReconstructionResult") -> dict[str, Any]:
    """Convert a ReconstructionResult into JSON-serializable data."""
    return {
        "output_dir": _to_jsonable(result.output_dir),
        "base_name": result.base_name,
        "n_models": result.n_models,
        "best_model": result.best_model,
        "best_model_pdb": _to_jsonable(result.best_model_path),
        "models": [
            {
                **_to_jsonable(record),
                "bound_violations": record.bound_violations,
                "pdb": _to_jsonable(result.model_pdb_path(record.model)),
            }
            for record in result.statistics
        ],
    }


def write_result_json(
    result: "ReconstructionResult",
    output_path: PathLike,
) -> Path:
    """Write the reconstruction summary JSON and return the path."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(result_to_dict(result), f, indent=2, default=str)
    return path


def write_statistics_csv(
    result: "ReconstructionResult",
    output_path: PathLike,
) -> Path:
    """Write one row of violation statistics per model.

    The base name and best model are written as ``#``-prefixed comment
    lines before the header.
    """
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="") as f:
        f.write(f"# base_name={result.base_name}\n")
        f.write(f"# best_model={result.best_model}\n")
        writer = csv.DictWriter(f, fieldnames=_CSV_COLUMNS)
        writer.writeheader()
        for record in result.statistics:
            row = {name: getattr(record, name) for name in STATISTIC_NAMES}
            row["model"] = record.model
            row["bound_violations"] = record.bound_violations
            row["pdb"] = result.model_pdb_path(record.model).name
            writer.writerow(row)
    return path


def resolve_result_output_paths(
    output_dir: PathLike,
    base_name: str,
    *,
    stats_csv: bool = False,
) -> Tuple[Path, Optional[Path]]:
    """Return ``(summary_json, statistics_csv)`` for a run.

    The summary is ``<base>.result.json`` and the CSV, when requested,
    ``<base>.stats.csv``, both inside *output_dir*.
    """
    base = Path(output_dir)
    summary_path = base / f"{base_name}.result.json"
    csv_path = base / f"{base_name}.stats.csv" if stats_csv else None
    return summary_path, csv_path


def _to_jsonable(value: Any) -> Any:
    if value is None:
        return None
    if is_dataclass(value):
        return {
            field.name: _to_jsonable(getattr(value, field.name))
            for field in fields(value)
        }
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value
