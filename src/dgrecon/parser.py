"""Line classifier for the statistics printed by the engine programs.

``distgeom`` prints one block of labelled fields per model::

     Final Error Function Value :       0.1234
     Num Upper Bound Violations :            0
     ...
     RMS Restraint Dist Violation :     0.0123

The block is closed by its last field, ``RMS Restraint Dist Violation``.
Unrelated log lines in between are ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from dgrecon.errors import IncompleteRecordError, ShortOutputError
from dgrecon.process import TOOL_ERROR_MARKER
from dgrecon.statistics import ModelStatistics

_INT = r"(\d+)"
_FLOAT = r"(\d+\.\d+)"
_SIGNED_FLOAT = r"(-?\d+\.\d+)"


@dataclass(frozen=True)
class _LabeledField:
    label: str
    attribute: str
    pattern: "re.Pattern[str]"
    convert: Callable[[str], float]


def _field(label: str, attribute: str, number: str, convert) -> _LabeledField:
    return _LabeledField(
        label=label,
        attribute=attribute,
        pattern=re.compile(rf"^ {re.escape(label)} :\s+{number}"),
        convert=convert,
    )


DISTGEOM_FIELDS: Tuple[_LabeledField, ...] = (
    _field(
        "Final Error Function Value", "error_function_value", _FLOAT, float
    ),
    _field("Num Upper Bound Violations", "num_upper_bound_viol", _INT, int),
    _field("Num Lower Bound Violations", "num_lower_bound_viol", _INT, int),
    _field("Max Upper Bound Violation", "max_upper_bound_viol", _FLOAT, float),
    _field("Max Lower Bound Violation", "max_lower_bound_viol", _FLOAT, float),
    _field("RMS Deviation from Bounds", "rms_bound_viol", _FLOAT, float),
    _field("Num Upper Restraint Violations", "num_upper_viol", _INT, int),
    _field("Num Lower Restraint Violations", "num_lower_viol", _INT, int),
    _field("Max Upper Restraint Violation", "max_upper_viol", _FLOAT, float),
    _field("Max Lower Restraint Violation", "max_lower_viol", _FLOAT, float),
    _field(
        "RMS Restraint Dist Violation", "rms_restraint_viol", _FLOAT, float
    ),
)

RECORD_DELIMITER = DISTGEOM_FIELDS[-1].attribute

_FINAL_ENERGY_RE = re.compile(rf"^ Final Function Value :\s+{_SIGNED_FLOAT}")
_POTENTIAL_ENERGY_RE = re.compile(
    rf"^ Total Potential Energy :\s+{_SIGNED_FLOAT}"
)


class DistgeomOutputParser:
    """Incremental parser: feed lines, collect one record per model."""

    def __init__(self, fields: Tuple[_LabeledField, ...] = DISTGEOM_FIELDS):
        self._fields = fields
        self.records: List[ModelStatistics] = []
        self.tool_error_seen = False
        self._pending: Dict[str, float] = {}

    def feed(self, line: str) -> Optional[ModelStatistics]:
        """Classify one line; return the record it closes, if any."""
        if line.startswith(TOOL_ERROR_MARKER):
            self.tool_error_seen = True
            return None
        for spec in self._fields:
            match = spec.pattern.match(line)
            if match is None:
                continue
            self._pending[spec.attribute] = spec.convert(match.group(1))
            if spec.attribute == RECORD_DELIMITER:
                return self._close_record()
            return None
        return None

    def _close_record(self) -> ModelStatistics:
        model = len(self.records) + 1
        missing = [
            spec.label
            for spec in self._fields
            if spec.attribute not in self._pending
        ]
        if missing:
            # an overflowed value ("*****") must not read as 0
            raise IncompleteRecordError(model, missing)
        record = ModelStatistics(model=model, **self._pending)
        self.records.append(record)
        self._pending = {}
        return record


def parse_distgeom_output(
    lines: Iterable[str], model_count: int
) -> Tuple[List[ModelStatistics], bool]:
    """Parse *model_count* statistics records out of *lines*.

    Returns ``(records, tool_error_seen)``.  Records beyond
    *model_count* are ignored.  Raises :class:`ShortOutputError` when
    fewer records are found, unless the engine reported its own fatal
    error (the caller raises that instead).
    """
    parser = DistgeomOutputParser()
    for line in lines:
        parser.feed(line)
    if len(parser.records) < model_count and not parser.tool_error_seen:
        raise ShortOutputError(model_count, len(parser.records))
    return parser.records[:model_count], parser.tool_error_seen


def _last_match(pattern: "re.Pattern[str]", lines: Iterable[str]) -> float:
    value = 0.0
    for line in lines:
        match = pattern.match(line)
        if match:
            value = float(match.group(1))
    return value


def parse_final_energy(lines: Iterable[str]) -> float:
    """Final energy printed by ``minimize``."""
    return _last_match(_FINAL_ENERGY_RE, lines)


def parse_potential_energy(lines: Iterable[str]) -> float:
    """Total potential energy printed by ``analyze`` in energy mode."""
    return _last_match(_POTENTIAL_ENERGY_RE, lines)
