"""
Derived quantities of reflexive weight systems.

For n weights the anticanonical hypersurface is a Calabi-Yau of complex
dimension n - 2 and its Hodge numbers come with the polytope info:

    n = 3  elliptic curve   chi = 0
    n = 4  K3 surface       chi = 24
    n = 5  threefold        chi = 2 (h11 - h12)
    n = 6  fourfold         chi = 48 + 6 (h11 - h12 + h13)
                            h22 = 44 + 4 h11 + 4 h13 - 2 h12

h22 is only defined for fourfolds and stays null otherwise.
"""

from __future__ import annotations

from ipws_errors import DerivedQuantityError
from ipws_records import Classification, CorrelatedRecord, DerivedQuantities

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


def euler_characteristic(h11: int, h12: int, h13: int) -> int:
    return 48 + 6 * (h11 - h12 + h13)


def hodge_number_h22(h11: int, h12: int, h13: int) -> int:
    return 44 + 4 * h11 + 4 * h13 - 2 * h12


def _check_int32(key: int, name: str, value: int) -> int:
    if not INT32_MIN <= value <= INT32_MAX:
        raise DerivedQuantityError(key, f"{name}={value} overflows int32")
    return value


def derive_quantities(record: CorrelatedRecord) -> DerivedQuantities:
    """Compute derived quantities from the record's weights and Hodge numbers.

    Raises DerivedQuantityError when no closed form exists for the number
    of weights or a value does not fit the output column.
    """
    key = record.key
    n = record.weight_system.dimension
    hodge = record.polytope_info.hodge_numbers

    if len(hodge) != n - 3:
        raise DerivedQuantityError(key, f"{len(hodge)} hodge numbers for {n} weights")

    if n == 3:
        return DerivedQuantities(euler_characteristic=0)
    if n == 4:
        return DerivedQuantities(euler_characteristic=24)
    if n == 5:
        h11, h12 = hodge
        chi = _check_int32(key, "euler_characteristic", 2 * (h11 - h12))
        return DerivedQuantities(euler_characteristic=chi)
    if n == 6:
        h11, h12, h13 = hodge
        return DerivedQuantities(
            euler_characteristic=_check_int32(key, "euler_characteristic",
                                              euler_characteristic(h11, h12, h13)),
            h22=_check_int32(key, "h22", hodge_number_h22(h11, h12, h13)),
        )

    raise DerivedQuantityError(key, f"no derived quantities for {n} weights")


def enrich(record: CorrelatedRecord) -> CorrelatedRecord:
    """Attach derived quantities to a classified reflexive record.

    Other classifications carry no Hodge data and pass through unchanged.
    """
    if record.classification is Classification.REFLEXIVE:
        record.derived = derive_quantities(record)
    return record
