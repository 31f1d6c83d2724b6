"""
Line parsers for the two ipws text inputs.

Weight systems, one per line:

    <key> <w1> <w2> ... <wn>

Polytope info, one per line, PALP poly.x style:

    <key> -
    <key> M:<points> <vertices> F:<facets>
    <key> M:<points> <vertices> N:<dual_points> <facets> [H:<h11>,<h12>,...]

Blank lines and '#' comments are skipped. Both files may be gzip-compressed.
"""

from __future__ import annotations

import gzip
import logging
from pathlib import Path
from typing import Callable, Iterable, Iterator

from ipws_errors import IpwsError, MalformedRecord
from ipws_records import PolytopeInfoRecord, WeightSystemRecord

log = logging.getLogger(__name__)

MIN_WEIGHTS = 3

# Column ranges of the Parquet output: int64 keys, int32 weights and counts.
INT64_MAX = 2**63 - 1
INT32_MAX = 2**31 - 1

WS_SOURCE = "weight systems"
INFO_SOURCE = "polytope info"

ErrorCallback = Callable[[MalformedRecord], None]


def open_text(path: Path):
    """Open a plain or gzip-compressed text input for reading.

    Undecodable bytes survive as surrogates so the line can be reported as
    malformed instead of ending the stream.
    """
    path = Path(path)
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8", errors="surrogateescape")
    return open(path, encoding="utf-8", errors="surrogateescape")


def _is_valid_utf8(line: str) -> bool:
    try:
        line.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _is_plain_integer(token: str) -> bool:
    digits = token[1:] if token.startswith("-") else token
    return digits.isascii() and digits.isdigit()


def _is_skipped(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def _parse_int(token: str, what: str, source: str, line_number: int, line: str,
               maximum: int = INT32_MAX) -> int:
    if not _is_plain_integer(token):
        raise MalformedRecord(source, line_number, f"non-numeric {what} {token!r}", line)
    value = int(token)
    if value < 0:
        raise MalformedRecord(source, line_number, f"negative {what} {value}", line)
    if value > maximum:
        raise MalformedRecord(source, line_number, f"{what} {value} out of range", line)
    return value


def parse_weight_system_line(line: str, line_number: int,
                             source: str = WS_SOURCE) -> WeightSystemRecord | None:
    """Parse one weight-system line; None for blank/comment lines."""
    if _is_skipped(line):
        return None

    tokens = line.split()
    if len(tokens) < 2:
        raise MalformedRecord(source, line_number, "wrong field count: no weights", line)

    key = _parse_int(tokens[0], "key", source, line_number, line, INT64_MAX)
    weights = []
    for token in tokens[1:]:
        if not _is_plain_integer(token):
            raise MalformedRecord(source, line_number, f"non-numeric weight {token!r}", line)
        w = int(token)
        if w <= 0:
            raise MalformedRecord(source, line_number, f"non-positive weight {w}", line)
        if w > INT32_MAX:
            raise MalformedRecord(source, line_number, f"weight {w} out of range", line)
        weights.append(w)

    if len(weights) < MIN_WEIGHTS:
        raise MalformedRecord(
            source, line_number,
            f"too few weights: {len(weights)} (need at least {MIN_WEIGHTS})", line,
        )

    return WeightSystemRecord(key=key, weights=tuple(weights), line_number=line_number)


def parse_polytope_info_line(line: str, line_number: int,
                             source: str = INFO_SOURCE) -> PolytopeInfoRecord | None:
    """Parse one polytope-info line; None for blank/comment lines."""
    if _is_skipped(line):
        return None

    def bad(reason: str) -> MalformedRecord:
        return MalformedRecord(source, line_number, reason, line)

    def number(token: str, what: str, maximum: int = INT32_MAX) -> int:
        return _parse_int(token, what, source, line_number, line, maximum)

    tokens = line.split()
    key = number(tokens[0], "key", INT64_MAX)
    rest = tokens[1:]

    if not rest:
        raise bad("wrong field count: expected '-' or polytope data after key")
    if rest == ["-"]:
        return PolytopeInfoRecord(key=key, line_number=line_number)

    if not rest[0].startswith("M:"):
        raise bad(f"unexpected token {rest[0]!r}, expected M:<points>")
    if len(rest) < 3:
        raise bad("wrong field count: M: block needs point and vertex counts followed by F: or N:")
    point_count = number(rest[0][2:], "point count")
    vertex_count = number(rest[1], "vertex count")

    marker = rest[2]
    if marker.startswith("F:"):
        facet_count = number(marker[2:], "facet count")
        if len(rest) > 3:
            extra = rest[3]
            if extra.startswith("N:"):
                raise bad("F: together with N:")
            if extra.startswith("H:"):
                raise bad("H: without N:")
            raise bad(f"wrong field count: unexpected trailing {extra!r}")
        return PolytopeInfoRecord(
            key=key,
            vertex_count=vertex_count,
            facet_count=facet_count,
            point_count=point_count,
            line_number=line_number,
        )

    if marker.startswith("H:"):
        raise bad("H: without N:")
    if not marker.startswith("N:"):
        raise bad(f"unexpected token {marker!r}, expected F:<facets> or N:<dual points>")
    if len(rest) < 4:
        raise bad("wrong field count: N: block needs dual point and facet counts")
    dual_point_count = number(marker[2:], "dual point count")
    facet_count = number(rest[3], "facet count")

    hodge_numbers = ()
    tail = rest[4:]
    if tail:
        if tail[0].startswith("F:"):
            raise bad("F: together with N:")
        if not tail[0].startswith("H:"):
            raise bad(f"unexpected token {tail[0]!r}, expected H:<hodge numbers>")
        if len(tail) > 1:
            raise bad(f"wrong field count: unexpected trailing {tail[1]!r}")
        values = tail[0][2:]
        if not values:
            raise bad("wrong field count: empty H: block")
        hodge_numbers = tuple(number(v, "hodge number") for v in values.split(","))

    return PolytopeInfoRecord(
        key=key,
        vertex_count=vertex_count,
        facet_count=facet_count,
        point_count=point_count,
        dual_point_count=dual_point_count,
        hodge_numbers=hodge_numbers,
        line_number=line_number,
    )


def report(error: IpwsError, on_error: Callable[[IpwsError], None] | None):
    """Hand a recoverable error to the callback, or log and drop it."""
    if on_error is None:
        log.warning(f"skipping: {error}")
    else:
        on_error(error)


def _iter_records(parse, lines: Iterable[str], on_error, source) -> Iterator:
    for line_number, line in enumerate(lines, start=1):
        try:
            if not _is_valid_utf8(line):
                raise MalformedRecord(source, line_number, "invalid UTF-8", line)
            record = parse(line, line_number, source)
        except MalformedRecord as e:
            report(e, on_error)
            continue
        if record is not None:
            yield record


def iter_weight_systems(lines: Iterable[str], on_error: ErrorCallback = None,
                        source: str = WS_SOURCE) -> Iterator[WeightSystemRecord]:
    """Lazily parse weight-system lines, skipping malformed ones."""
    return _iter_records(parse_weight_system_line, lines, on_error, source)


def iter_polytope_info(lines: Iterable[str], on_error: ErrorCallback = None,
                       source: str = INFO_SOURCE) -> Iterator[PolytopeInfoRecord]:
    """Lazily parse polytope-info lines, skipping malformed ones."""
    return _iter_records(parse_polytope_info_line, lines, on_error, source)
