#!/usr/bin/env python3
"""
Convert ipws weight systems and polytope info to partitioned Parquet.

Two key-sorted text inputs are merge-joined by key. Every joined weight
system is classified as non-IP, non-reflexive or reflexive and written to
the matching Parquet file with bounded row groups.

Key design decisions:
- Single-threaded pull pipeline: parse -> correlate -> classify -> resume
  check -> (derived quantities) -> write. Nothing reads ahead of the join.
- Resumable: --parquet-in takes prior output files (any partition, routed by
  file metadata); their keys are skipped. Passing a file that is also this
  run's output for the same partition keeps its rows (in-place resume).
- Recoverable errors (malformed lines, gaps, derived-quantity failures) are
  counted; duplicate or unsorted keys abort after flushing what was read.
- A summary of all counters is printed on success and on abort.

Usage:
    python scripts/convert_ipws.py --ws-in ws.txt --polytope-info-in info.txt --output-dir parquet/
    python scripts/convert_ipws.py --ws-in ws.txt.gz --polytope-info-in info.txt.gz \\
        --output-dir parquet/ --include-derived-quantities
    python scripts/convert_ipws.py ... --limit 1000000              # Partial run
    python scripts/convert_ipws.py ... --parquet-in parquet/*.parquet  # Resume in place
    python scripts/convert_ipws.py --status --output-dir parquet/
"""

import argparse
import logging
import sys
import time
import zlib
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq
from tqdm import tqdm

from ipws_classify import classify_into
from ipws_config import (
    DEFAULT_ROW_GROUP_SIZE,
    conversion_settings,
    find_data_root,
    resolve_paths,
    setup_logging,
)
from ipws_correlate import correlate, correlate_indexed
from ipws_derived import enrich
from ipws_errors import (
    CorrelationGap,
    DerivedQuantityError,
    DuplicateKey,
    IpwsError,
    ResumeMismatch,
    TooManyMalformedRecords,
)
from ipws_parsers import iter_polytope_info, iter_weight_systems, open_text
from ipws_records import PARTITIONS, Classification
from ipws_resume import ResumeFilter
from ipws_writer import PARQUET_OPTS, PartitionedParquetWriter

log = logging.getLogger(__name__)

STOP_EXHAUSTED = "input exhausted"
STOP_LIMIT = "limit reached"
STOP_ABORTED = "aborted"

# Errors that end a run: the writer still flushes and a summary is printed.
# Truncated gzip input raises EOFError, corrupt deflate data zlib.error.
FATAL_ERRORS = (IpwsError, OSError, EOFError, UnicodeError, zlib.error, pa.ArrowException)

# Per-kind warnings beyond this are logged at DEBUG only
WARN_LIMIT = 20

OUTPUT_FLAGS = {
    Classification.NON_IP: "parquet_non_ip_out",
    Classification.NON_REFLEXIVE: "parquet_non_reflexive_out",
    Classification.REFLEXIVE: "parquet_reflexive_out",
}


# ── Options and run statistics ──────────────────────────────────────────────

@dataclass
class ConversionOptions:
    ws_in: Path
    polytope_info_in: Path
    outputs: dict
    parquet_in: list = field(default_factory=list)
    include_derived_quantities: bool = False
    limit: int | None = None
    row_group_size: int = DEFAULT_ROW_GROUP_SIZE
    max_malformed: int | None = None
    index: str | None = None
    compression: str = PARQUET_OPTS["compression"]
    compression_level: int = PARQUET_OPTS["compression_level"]
    unsorted_polytope_info: bool = False
    progress: bool = False


def _per_partition() -> dict:
    return {c: 0 for c in PARTITIONS}


@dataclass
class PipelineStats:
    """Every counter of one conversion run, returned by run_conversion()."""

    ws_read: int = 0
    polytope_info_read: int = 0
    correlated: int = 0
    classified: dict = field(default_factory=_per_partition)
    written: dict = field(default_factory=_per_partition)
    carried_over: dict = field(default_factory=_per_partition)
    row_groups: dict = field(default_factory=_per_partition)
    skipped_resume: int = 0
    malformed: int = 0
    gaps: int = 0
    unmatched_polytope_info: int = 0
    duplicates: int = 0
    derived_failures: int = 0
    elapsed: float = 0.0
    stop_reason: str = STOP_EXHAUSTED
    fatal_error: str | None = None

    @property
    def failed(self) -> bool:
        return self.fatal_error is not None

    @property
    def total_written(self) -> int:
        return sum(self.written.values())

    def summary_lines(self) -> list:
        lines = [
            f"  {'weight systems read':28s}  {self.ws_read:>12,}",
            f"  {'polytope info read':28s}  {self.polytope_info_read:>12,}",
            f"  {'correlated':28s}  {self.correlated:>12,}",
            f"  {'malformed records':28s}  {self.malformed:>12,}",
            f"  {'correlation gaps':28s}  {self.gaps:>12,}",
            f"  {'unmatched polytope info':28s}  {self.unmatched_polytope_info:>12,}",
            f"  {'duplicate keys':28s}  {self.duplicates:>12,}",
            f"  {'skipped (already converted)':28s}  {self.skipped_resume:>12,}",
            f"  {'derived quantity failures':28s}  {self.derived_failures:>12,}",
            "",
            f"  {'partition':16s}  {'classified':>12s}  {'written':>12s}  "
            f"{'carried over':>12s}  {'row groups':>10s}",
        ]
        for c in PARTITIONS:
            lines.append(
                f"  {c.value:16s}  {self.classified[c]:>12,}  {self.written[c]:>12,}  "
                f"{self.carried_over[c]:>12,}  {self.row_groups[c]:>10,}"
            )
        lines.append("")
        lines.append(f"  Stopped: {self.stop_reason} after {self.elapsed:.1f}s")
        if self.fatal_error:
            lines.append(f"  FATAL: {self.fatal_error}")
        return lines


# ── Pipeline ────────────────────────────────────────────────────────────────

def _counted(records, stats: PipelineStats, counter: str):
    for record in records:
        setattr(stats, counter, getattr(stats, counter) + 1)
        yield record


def _carry_over_sources(resume: ResumeFilter, outputs: dict) -> dict:
    """Prior files that are also this run's output must be copied, not overwritten."""
    targets = {Path(p).resolve(): c for c, p in outputs.items()}
    carry_over = {}
    for classification, sources in resume.sources.items():
        for source in sources:
            target = targets.get(source.resolve())
            if target is None:
                continue
            if target is not classification:
                raise ResumeMismatch(
                    f"{source} holds {classification.value} rows but is the "
                    f"{target.value} output of this run"
                )
            carry_over[classification] = source
    return carry_over


def run_conversion(options: ConversionOptions) -> PipelineStats:
    """Run the whole pipeline and return its statistics.

    Fatal errors do not propagate: they are recorded in ``stats.fatal_error``
    after the writer flushed and published whatever was already read.
    """
    stats = PipelineStats()
    warned = {}
    t0 = time.time()

    def warn(kind: str, message: str):
        warned[kind] = warned.get(kind, 0) + 1
        if warned[kind] <= WARN_LIMIT:
            log.warning(message)
            if warned[kind] == WARN_LIMIT:
                log.warning(f"Further {kind} warnings suppressed")
        else:
            log.debug(message)

    def on_error(error: IpwsError):
        if isinstance(error, CorrelationGap):
            stats.gaps += 1
            warn("gap", f"Gap: {error}")
            return
        stats.malformed += 1
        warn("malformed", f"Malformed: {error}")
        if options.max_malformed is not None and stats.malformed > options.max_malformed:
            raise TooManyMalformedRecords(stats.malformed, options.max_malformed)

    def on_unmatched(info):
        stats.unmatched_polytope_info += 1
        log.debug(f"Polytope info key {info.key} has no weight system")

    writer = None
    try:
        resume = ResumeFilter.from_paths(options.parquet_in)
        carry_over = _carry_over_sources(resume, options.outputs)
        join = correlate_indexed if options.unsorted_polytope_info else correlate

        with ExitStack() as stack:
            ws_lines = stack.enter_context(open_text(options.ws_in))
            info_lines = stack.enter_context(open_text(options.polytope_info_in))
            writer = stack.enter_context(PartitionedParquetWriter(
                options.outputs,
                include_derived_quantities=options.include_derived_quantities,
                row_group_size=options.row_group_size,
                index=options.index,
                compression=options.compression,
                compression_level=options.compression_level,
                carry_over=carry_over,
            ))
            bar = stack.enter_context(tqdm(
                total=options.limit, unit=" rec", desc="Converting",
                disable=not options.progress,
            ))

            ws = _counted(iter_weight_systems(ws_lines, on_error), stats, "ws_read")
            info = _counted(iter_polytope_info(info_lines, on_error), stats, "polytope_info_read")
            records = join(ws, info, on_error=on_error, on_unmatched=on_unmatched)

            if options.limit is not None and options.limit <= 0:
                stats.stop_reason = STOP_LIMIT
                records = iter(())

            for record in records:
                stats.correlated += 1
                classification = classify_into(record)
                stats.classified[classification] += 1

                if resume.already_converted(record):
                    stats.skipped_resume += 1
                elif options.include_derived_quantities:
                    try:
                        enrich(record)
                    except DerivedQuantityError as e:
                        stats.derived_failures += 1
                        warn("derived", f"Writing without derived quantities: {e}")
                    writer.add(record)
                else:
                    writer.add(record)

                bar.update()
                if options.limit is not None and stats.correlated >= options.limit:
                    stats.stop_reason = STOP_LIMIT
                    log.info(f"Limit of {options.limit:,} records reached")
                    break

    except FATAL_ERRORS as e:
        stats.stop_reason = STOP_ABORTED
        stats.fatal_error = f"{type(e).__name__}: {e}"
        if isinstance(e, DuplicateKey):
            stats.duplicates += 1
        log.error(f"Conversion aborted: {e}")
    finally:
        if writer is not None:
            stats.written = writer.written
            stats.carried_over = writer.carried_over_counts
            stats.row_groups = writer.row_groups
        stats.elapsed = time.time() - t0

    return stats


# ── Status ──────────────────────────────────────────────────────────────────

def show_status(outputs: dict):
    """Print rows, row groups and metadata of existing output files (footers only)."""
    print(f"\n{'Partition':16s}  {'Rows':>12s}  {'Row groups':>10s}  {'Size':>10s}  Metadata")
    print("-" * 78)
    for c in PARTITIONS:
        path = Path(outputs[c])
        if not path.exists():
            print(f"{c.value:16s}  {'-':>12s}  {'-':>10s}  {'-':>10s}  (missing: {path})")
            continue
        meta = pq.read_metadata(path)
        kv = pq.read_schema(path).metadata or {}
        info = ", ".join(
            f"{k.decode()}={v.decode()}" for k, v in kv.items()
            if k in (b"index", b"derived_quantities")
        )
        size_mb = path.stat().st_size / (1024 * 1024)
        print(f"{c.value:16s}  {meta.num_rows:>12,}  {meta.num_row_groups:>10,}  "
              f"{size_mb:>8.1f}MB  {info}")


# ── CLI ─────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert ipws weight systems and polytope info to Parquet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--ws-in", type=Path, metavar="FILE",
                        help="Weight-system text file (.gz accepted)")
    parser.add_argument("--polytope-info-in", type=Path, metavar="FILE",
                        help="Polytope-info text file (.gz accepted)")
    parser.add_argument("--parquet-in", type=Path, metavar="FILE", action="append", default=[],
                        help="Prior output file whose keys are skipped (repeatable)")
    parser.add_argument("--output-dir", type=Path, metavar="DIR",
                        help="Write <partition>.parquet files into DIR")
    parser.add_argument("--parquet-non-ip-out", type=Path, metavar="FILE")
    parser.add_argument("--parquet-non-reflexive-out", type=Path, metavar="FILE")
    parser.add_argument("--parquet-reflexive-out", type=Path, metavar="FILE")
    parser.add_argument("-i", "--include-derived-quantities", action="store_true",
                        help="Add euler_characteristic and h22 to the reflexive output")
    parser.add_argument("--limit", type=int,
                        help="Stop after this many correlated records")
    parser.add_argument("--row-group-size", type=int,
                        help=f"Rows per row group (default: {DEFAULT_ROW_GROUP_SIZE:,})")
    parser.add_argument("--max-malformed", type=int,
                        help="Abort once more malformed records than this are seen")
    parser.add_argument("--index", type=str,
                        help="Weight-system index label stored in file metadata (e.g. 1 or 1/2)")
    parser.add_argument("--unsorted-polytope-info", action="store_true",
                        help="Index polytope info in memory instead of merge-joining")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar")
    parser.add_argument("--log-file", type=Path, help="Also log to this file")
    parser.add_argument("--status", action="store_true",
                        help="Show row counts of existing output files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def resolve_outputs(args, paths: dict) -> dict:
    """Explicit flag > --output-dir > manifest, per partition."""
    outputs = {}
    for c, flag in OUTPUT_FLAGS.items():
        explicit = getattr(args, flag)
        if explicit is not None:
            outputs[c] = explicit
        elif args.output_dir is not None:
            outputs[c] = args.output_dir / f"{c.value}.parquet"
        elif f"{c.value}_out" in paths:
            outputs[c] = paths[f"{c.value}_out"]
    return outputs


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)

    try:
        root = find_data_root()
    except FileNotFoundError:
        root = None
    paths = resolve_paths(root) if root is not None else {}

    try:
        settings = conversion_settings(root)
    except ValueError as e:
        parser.error(str(e))

    outputs = resolve_outputs(args, paths)
    missing = [OUTPUT_FLAGS[c].replace("_", "-") for c in PARTITIONS if c not in outputs]
    if missing:
        parser.error(f"no output path for: {', '.join('--' + m for m in missing)} "
                     f"(or pass --output-dir)")

    if args.status:
        show_status(outputs)
        return 0

    ws_in = args.ws_in or paths.get("ws_in")
    polytope_info_in = args.polytope_info_in or paths.get("polytope_info_in")
    if ws_in is None or polytope_info_in is None:
        parser.error("--ws-in and --polytope-info-in are required (or an ipws.json manifest)")

    row_group_size = (args.row_group_size if args.row_group_size is not None
                      else settings["row_group_size"])
    if row_group_size < 1:
        parser.error("--row-group-size must be positive")

    options = ConversionOptions(
        ws_in=ws_in,
        polytope_info_in=polytope_info_in,
        outputs=outputs,
        parquet_in=args.parquet_in,
        include_derived_quantities=args.include_derived_quantities,
        limit=args.limit,
        row_group_size=row_group_size,
        max_malformed=args.max_malformed if args.max_malformed is not None
        else settings["max_malformed"],
        index=args.index,
        compression=settings["compression"],
        compression_level=settings["compression_level"],
        unsorted_polytope_info=args.unsorted_polytope_info,
        progress=args.progress,
    )

    print("=== ipws to Parquet Converter ===")
    print(f"Weight systems: {options.ws_in}")
    print(f"Polytope info:  {options.polytope_info_in}")
    for c in PARTITIONS:
        print(f"{c.value + ':':16s}{options.outputs[c]}")
    if options.parquet_in:
        print(f"Resuming from:  {len(options.parquet_in)} prior file(s)")

    stats = run_conversion(options)

    print("\n=== Conversion Summary ===")
    print("\n".join(stats.summary_lines()))

    return 1 if stats.failed else 0


if __name__ == "__main__":
    sys.exit(main())
