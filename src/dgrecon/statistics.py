"""Per-model restraint-violation statistics."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence


@dataclass
class ModelStatistics:
    """Violation statistics reported by the embedding engine for one model.

    ``model`` is the 1-based model number the record belongs to.
    """

    model: int
    error_function_value: float = 0.0
    num_upper_bound_viol: int = 0
    num_lower_bound_viol: int = 0
    max_upper_bound_viol: float = 0.0
    max_lower_bound_viol: float = 0.0
    rms_bound_viol: float = 0.0
    num_upper_viol: int = 0
    num_lower_viol: int = 0
    max_upper_viol: float = 0.0
    max_lower_viol: float = 0.0
    rms_restraint_viol: float = 0.0

    @property
    def bound_violations(self) -> int:
        return self.num_lower_bound_viol + self.num_upper_bound_viol

    def renumbered(self, model: int) -> "ModelStatistics":
        """Return a copy of this record assigned to another model number."""
        return dataclasses.replace(self, model=model)


STATISTIC_NAMES = tuple(
    f.name for f in dataclasses.fields(ModelStatistics) if f.name != "model"
)


class ModelStatisticsSet:
    """Statistics for models ``1..N``, indexed by model number.

    Records are stored densely in model order; ``stats[i]`` returns the
    record of model ``i``.  :meth:`column` exposes one statistic as an
    ``N+1``-long list whose index 0 is unused, so every column shares the
    same index-to-model mapping.
    """

    def __init__(self, records: Sequence[ModelStatistics] = ()):
        records = list(records)
        for expected, record in enumerate(records, 1):
            if record.model != expected:
                raise ValueError(
                    f"Statistics record at position {expected} belongs to "
                    f"model {record.model}; models must be numbered 1..N"
                )
        self._records: List[ModelStatistics] = records

    @classmethod
    def renumber(
        cls, records: Sequence[ModelStatistics]
    ) -> "ModelStatisticsSet":
        """Build a set from records in order, renumbering them ``1..N``."""
        return cls(
            [record.renumbered(i) for i, record in enumerate(records, 1)]
        )

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ModelStatistics]:
        return iter(self._records)

    def __getitem__(self, model: int) -> ModelStatistics:
        if not 1 <= model <= len(self._records):
            raise IndexError(
                f"Model {model} out of range 1..{len(self._records)}"
            )
        return self._records[model - 1]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ModelStatisticsSet):
            return NotImplemented
        return self._records == other._records

    def __repr__(self) -> str:
        return f"ModelStatisticsSet(n_models={len(self)})"

    @property
    def n_models(self) -> int:
        return len(self._records)

    def column(self, name: str) -> List[Optional[float]]:
        """Return statistic *name* for every model, index 0 unused."""
        if name not in STATISTIC_NAMES:
            raise KeyError(f"Unknown statistic '{name}'")
        return [None] + [getattr(r, name) for r in self._records]

    def bound_violations(self, model: int) -> int:
        return self[model].bound_violations
