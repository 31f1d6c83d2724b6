"""
Classify correlated weight systems as non-IP, non-reflexive or reflexive.

The tests run in a fixed order: a polytope that fails the interior-point
test is never tested for reflexivity, so it always lands in the non-IP
partition regardless of any dual data it carries.
"""

from ipws_records import Classification, CorrelatedRecord, PolytopeInfoRecord


def has_interior_point(info: PolytopeInfoRecord) -> bool:
    """The origin is a lattice point of the polytope that is not a vertex."""
    return info.has_lattice_data and info.point_count > info.vertex_count


def is_reflexive(info: PolytopeInfoRecord) -> bool:
    """The dual is a lattice polytope that again has an interior point."""
    return (
        info.has_dual_data
        and info.facet_count is not None
        and info.dual_point_count > info.facet_count
    )


def classify(record: CorrelatedRecord) -> Classification:
    """Pure classification from the combinatorial fields of ``record``."""
    info = record.polytope_info
    if not has_interior_point(info):
        return Classification.NON_IP
    if not is_reflexive(info):
        return Classification.NON_REFLEXIVE
    return Classification.REFLEXIVE


def classify_into(record: CorrelatedRecord) -> Classification:
    """Set the record's classification tag; a record is classified once."""
    if record.classification is not None:
        raise ValueError(f"key {record.key} is already classified as {record.classification.value}")
    record.classification = classify(record)
    return record.classification
