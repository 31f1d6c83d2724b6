#!/usr/bin/env python3
"""
Export ipws Parquet partitions back to the two text inputs.

Any set of partition files (non_ip, non_reflexive, reflexive, in any
combination) is merged by key with DuckDB and written as a weight-system
file and a polytope-info file that convert_ipws.py accepts again. Rows come
out sorted by key, so the export of a converted dataset re-converts to the
same partitions.

Usage:
    python scripts/export_ipws.py --parquet-in parquet/*.parquet \\
        --ws-out ws.txt --polytope-info-out info.txt
    python scripts/export_ipws.py --parquet-in parquet/reflexive.parquet \\
        --ws-out reflexive_ws.txt.gz --polytope-info-out reflexive_info.txt.gz
"""

import argparse
import gzip
import logging
import sys
import time
from pathlib import Path

import duckdb
import pyarrow as pa
import pyarrow.parquet as pq

from ipws_config import setup_logging
from ipws_errors import DuplicateKey, IpwsError
from ipws_records import Classification
from ipws_writer import partition_of

log = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "key", "weights", "vertex_count", "facet_count",
    "point_count", "dual_point_count", "hodge_numbers",
]

FETCH_BATCH_SIZE = 50_000

PARQUET_SOURCE = "parquet"


def _sql_path(path: Path) -> str:
    return "'" + str(path).replace("'", "''") + "'"


def _open_out(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "wt", encoding="utf-8")
    return open(path, "w", encoding="utf-8")


def ws_line(key: int, weights) -> str:
    return f"{key} " + " ".join(str(w) for w in weights)


def polytope_info_line(key: int, vertex_count, facet_count, point_count,
                       dual_point_count, hodge_numbers) -> str:
    if point_count is None:
        return f"{key} -"
    if dual_point_count is None:
        return f"{key} M:{point_count} {vertex_count} F:{facet_count}"
    line = f"{key} M:{point_count} {vertex_count} N:{dual_point_count} {facet_count}"
    if hodge_numbers:
        line += " H:" + ",".join(str(h) for h in hodge_numbers)
    return line


def select_list(paths: list) -> str:
    """Columns present in any input file, NULL for those no file has."""
    present = set()
    for path in paths:
        schema = pq.read_schema(path)
        partition_of(schema, path)
        present.update(schema.names)
    return ", ".join(
        f'"{col}"' if col in present else f'NULL AS "{col}"'
        for col in EXPORT_COLUMNS
    )


def export_parquet(parquet_in: list, ws_out: Path, polytope_info_out: Path,
                   batch_size: int = FETCH_BATCH_SIZE) -> dict:
    """Write the merged, key-sorted contents of ``parquet_in`` as text.

    Raises DuplicateKey when a key occurs in more than one row; nothing is
    written in that case.
    """
    paths = [Path(p) for p in parquet_in]
    if not paths:
        raise ValueError("no Parquet input files")

    file_list_sql = ", ".join(_sql_path(p) for p in paths)
    source_sql = f"read_parquet([{file_list_sql}], union_by_name=true)"

    conn = duckdb.connect(":memory:")
    try:
        duplicate = conn.execute(f"""
            SELECT "key", COUNT(*) FROM {source_sql}
            GROUP BY "key" HAVING COUNT(*) > 1
            ORDER BY "key" LIMIT 1
        """).fetchone()
        if duplicate is not None:
            raise DuplicateKey(
                PARQUET_SOURCE, duplicate[0],
                message=f"key {duplicate[0]} occurs {duplicate[1]} times across {len(paths)} files",
            )

        counts = {c: 0 for c in Classification}
        ws_tmp = ws_out.with_name(ws_out.name + ".tmp")
        info_tmp = polytope_info_out.with_name(polytope_info_out.name + ".tmp")
        ws_out.parent.mkdir(parents=True, exist_ok=True)
        polytope_info_out.parent.mkdir(parents=True, exist_ok=True)

        try:
            with _open_out(ws_tmp) as ws_f, _open_out(info_tmp) as info_f:
                cursor = conn.execute(
                    f'SELECT {select_list(paths)} FROM {source_sql} ORDER BY "key"'
                )
                while True:
                    rows = cursor.fetchmany(batch_size)
                    if not rows:
                        break
                    for key, weights, vertices, facets, points, dual_points, hodge in rows:
                        ws_f.write(ws_line(key, weights) + "\n")
                        info_f.write(polytope_info_line(
                            key, vertices, facets, points, dual_points, hodge) + "\n")
                        if points is None:
                            counts[Classification.NON_IP] += 1
                        elif dual_points is None:
                            counts[Classification.NON_REFLEXIVE] += 1
                        else:
                            counts[Classification.REFLEXIVE] += 1
        except BaseException:
            ws_tmp.unlink(missing_ok=True)
            info_tmp.unlink(missing_ok=True)
            raise

        ws_tmp.replace(ws_out)
        info_tmp.replace(polytope_info_out)
    finally:
        conn.close()

    total = sum(counts.values())
    log.info(f"Exported {total:,} records to {ws_out} and {polytope_info_out}")
    return {"rows": total, "counts": counts}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Export ipws Parquet partitions to weight-system and polytope-info text",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--parquet-in", type=Path, nargs="+", required=True, metavar="FILE",
                        help="Partition files to merge")
    parser.add_argument("--ws-out", type=Path, required=True, metavar="FILE",
                        help="Weight-system output (.gz compresses)")
    parser.add_argument("--polytope-info-out", type=Path, required=True, metavar="FILE",
                        help="Polytope-info output (.gz compresses)")
    parser.add_argument("--log-file", type=Path, help="Also log to this file")
    args = parser.parse_args(argv)

    setup_logging(args.log_file)

    print("=== ipws Parquet Export ===")
    print(f"Inputs: {len(args.parquet_in)} file(s)")

    t0 = time.time()
    try:
        result = export_parquet(args.parquet_in, args.ws_out, args.polytope_info_out)
    except (IpwsError, OSError, pa.ArrowException, duckdb.Error) as e:
        log.error(f"Export failed: {e}")
        return 1

    print("\n=== Export Summary ===")
    for c, n in result["counts"].items():
        print(f"  {c.value:16s}  {n:>12,}")
    print(f"  {'total':16s}  {result['rows']:>12,}")
    print(f"  Time: {time.time() - t0:.1f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
