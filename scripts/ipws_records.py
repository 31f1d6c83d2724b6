"""
Typed records flowing through the ipws pipeline.

WeightSystemRecord and PolytopeInfoRecord are immutable once parsed.
CorrelatedRecord is owned by the pipeline while in flight: the classifier
sets its tag once, the enricher may attach derived quantities.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Classification(str, Enum):
    NON_IP = "non_ip"
    NON_REFLEXIVE = "non_reflexive"
    REFLEXIVE = "reflexive"

    @property
    def is_ip(self) -> bool:
        return self is not Classification.NON_IP

    @property
    def is_reflexive(self) -> bool:
        return self is Classification.REFLEXIVE


# Partition order used for output files, summaries and metadata.
PARTITIONS = (Classification.NON_IP, Classification.NON_REFLEXIVE, Classification.REFLEXIVE)


@dataclass(frozen=True, slots=True)
class WeightSystemRecord:
    key: int
    weights: tuple[int, ...]
    line_number: int = field(default=0, compare=False)

    @property
    def dimension(self) -> int:
        """Number of weights."""
        return len(self.weights)

    @property
    def degree(self) -> int:
        """Total degree of the Calabi-Yau hypersurface: sum of the weights."""
        return sum(self.weights)


@dataclass(frozen=True, slots=True)
class PolytopeInfoRecord:
    key: int
    vertex_count: int | None = None
    facet_count: int | None = None
    point_count: int | None = None
    dual_point_count: int | None = None
    hodge_numbers: tuple[int, ...] = ()
    line_number: int = field(default=0, compare=False)

    @property
    def has_lattice_data(self) -> bool:
        return self.point_count is not None and self.vertex_count is not None

    @property
    def has_dual_data(self) -> bool:
        return self.dual_point_count is not None


@dataclass(frozen=True, slots=True)
class DerivedQuantities:
    euler_characteristic: int
    h22: int | None = None


@dataclass(slots=True)
class CorrelatedRecord:
    weight_system: WeightSystemRecord
    polytope_info: PolytopeInfoRecord
    classification: Classification | None = None
    derived: DerivedQuantities | None = None

    @property
    def key(self) -> int:
        return self.weight_system.key
