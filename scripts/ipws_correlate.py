"""
Correlate weight systems with their polytope info by key.

correlate() is a streaming merge-join over two key-sorted inputs. It holds
at most one polytope-info record of lookahead and only pulls from either
input when its consumer asks for the next CorrelatedRecord, so neither file
is ever loaded into memory.

correlate_indexed() is the fallback for polytope-info input without an
ordering guarantee: it builds a key -> record dict over the whole
polytope-info stream first, trading memory for the ordering requirement.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Iterator

from ipws_errors import CorrelationGap, DuplicateKey, IpwsError, MalformedRecord, OutOfOrderKey
from ipws_parsers import INFO_SOURCE, WS_SOURCE, report
from ipws_records import CorrelatedRecord, PolytopeInfoRecord, WeightSystemRecord

log = logging.getLogger(__name__)

ErrorCallback = Callable[[IpwsError], None]
UnmatchedCallback = Callable[[PolytopeInfoRecord], None]


class KeyOrder:
    """Enforces strictly increasing keys on one input stream."""

    def __init__(self, source: str):
        self.source = source
        self.previous = None

    def check(self, record):
        if self.previous is not None:
            if record.key == self.previous:
                raise DuplicateKey(self.source, record.key, record.line_number)
            if record.key < self.previous:
                raise OutOfOrderKey(self.source, record.key, self.previous, record.line_number)
        self.previous = record.key


def check_compatible(ws: WeightSystemRecord, info: PolytopeInfoRecord):
    """A reflexive polytope of n weights carries exactly n - 3 Hodge numbers."""
    if info.has_dual_data and len(info.hodge_numbers) != ws.dimension - 3:
        raise MalformedRecord(
            INFO_SOURCE, info.line_number,
            f"{len(info.hodge_numbers)} hodge numbers for {ws.dimension} weights "
            f"(expected {ws.dimension - 3})",
        )


def _join(ws: WeightSystemRecord, info: PolytopeInfoRecord,
          on_error: ErrorCallback | None) -> CorrelatedRecord | None:
    try:
        check_compatible(ws, info)
    except MalformedRecord as e:
        report(e, on_error)
        return None
    return CorrelatedRecord(weight_system=ws, polytope_info=info)


def correlate(
    weight_systems: Iterable[WeightSystemRecord],
    polytope_info: Iterable[PolytopeInfoRecord],
    on_error: ErrorCallback = None,
    on_unmatched: UnmatchedCallback = None,
) -> Iterator[CorrelatedRecord]:
    """Merge-join two key-sorted record streams.

    Gaps (weight system without polytope info) and incompatible pairs go to
    ``on_error`` and are skipped. Polytope info without a weight system goes
    to ``on_unmatched``. Duplicate or decreasing keys in either stream raise
    DuplicateKey / OutOfOrderKey.
    """
    ws_order = KeyOrder(WS_SOURCE)
    info_order = KeyOrder(INFO_SOURCE)
    info_iter = iter(polytope_info)

    def advance() -> PolytopeInfoRecord | None:
        record = next(info_iter, None)
        if record is not None:
            info_order.check(record)
        return record

    info = advance()
    for ws in weight_systems:
        ws_order.check(ws)

        while info is not None and info.key < ws.key:
            if on_unmatched is not None:
                on_unmatched(info)
            info = advance()

        if info is None or info.key != ws.key:
            report(CorrelationGap(ws.key), on_error)
            continue

        record = _join(ws, info, on_error)
        if record is not None:
            yield record
        # Runs only once the consumer asks for the next record.
        info = advance()

    # Drain the tail so trailing ordering errors surface and counts are complete.
    while info is not None:
        if on_unmatched is not None:
            on_unmatched(info)
        info = advance()


def correlate_indexed(
    weight_systems: Iterable[WeightSystemRecord],
    polytope_info: Iterable[PolytopeInfoRecord],
    on_error: ErrorCallback = None,
    on_unmatched: UnmatchedCallback = None,
) -> Iterator[CorrelatedRecord]:
    """Join weight systems against an in-memory index of polytope info.

    Neither stream needs to be sorted. Duplicate keys in either stream still
    raise DuplicateKey.
    """
    index = {}
    for info in polytope_info:
        if info.key in index:
            raise DuplicateKey(INFO_SOURCE, info.key, info.line_number)
        index[info.key] = info
    log.info(f"Indexed {len(index):,} polytope info records")

    seen = set()
    for ws in weight_systems:
        if ws.key in seen:
            raise DuplicateKey(WS_SOURCE, ws.key, ws.line_number)
        seen.add(ws.key)
        info = index.pop(ws.key, None)
        if info is None:
            report(CorrelationGap(ws.key), on_error)
            continue

        record = _join(ws, info, on_error)
        if record is not None:
            yield record

    if on_unmatched is not None:
        for key in sorted(index):
            on_unmatched(index[key])
