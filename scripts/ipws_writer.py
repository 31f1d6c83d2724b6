"""
Partitioned Parquet writer: one output file per classification.

Records are buffered per partition and flushed as exactly one row group
whenever a buffer reaches ``row_group_size`` rows. Each file is written to
``<path>.tmp`` and renamed into place on close, so a file at the final path
always has a valid footer.

Schema (all partitions):   key, weights, weight_count, degree
  + non_reflexive/reflexive: vertex_count, facet_count, point_count
  + reflexive:               dual_point_count, hodge_numbers
  + reflexive, derived:      euler_characteristic, h22 (nullable)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq

from ipws_config import DEFAULT_ROW_GROUP_SIZE
from ipws_errors import ResumeMismatch
from ipws_records import PARTITIONS, Classification, CorrelatedRecord

log = logging.getLogger(__name__)

# Parquet write options
PARQUET_OPTS = {"compression": "zstd", "compression_level": 3}

FORMAT_VERSION = "1"

DERIVED_COLUMNS = ("euler_characteristic", "h22")


def build_schema(classification: Classification,
                 include_derived_quantities: bool = False,
                 index: str = None) -> pa.Schema:
    """Arrow schema and file metadata for one partition."""
    fields = [
        pa.field("key", pa.int64(), nullable=False),
        pa.field("weights", pa.list_(pa.int32()), nullable=False),
        pa.field("weight_count", pa.int32(), nullable=False),
        pa.field("degree", pa.int64(), nullable=False),
    ]
    if classification.is_ip:
        fields += [
            pa.field("vertex_count", pa.int32(), nullable=False),
            pa.field("facet_count", pa.int32(), nullable=False),
            pa.field("point_count", pa.int32(), nullable=False),
        ]
    if classification.is_reflexive:
        fields += [
            pa.field("dual_point_count", pa.int32(), nullable=False),
            pa.field("hodge_numbers", pa.list_(pa.int32()), nullable=False),
        ]
        if include_derived_quantities:
            fields += [pa.field(name, pa.int32()) for name in DERIVED_COLUMNS]

    metadata = {
        "classification": classification.value,
        "ip": str(classification.is_ip).lower(),
        "reflexive": str(classification.is_reflexive).lower(),
        "derived_quantities": str(bool(include_derived_quantities)).lower(),
        "format_version": FORMAT_VERSION,
    }
    if index:
        metadata["index"] = index
    return pa.schema(fields, metadata=metadata)


def partition_of(schema: pa.Schema, path: Path = None) -> Classification:
    """Read the partition a Parquet file belongs to from its metadata."""
    metadata = schema.metadata or {}
    value = metadata.get(b"classification")
    if value is None:
        raise ResumeMismatch(f"{path}: no ipws classification metadata")
    try:
        return Classification(value.decode())
    except ValueError:
        raise ResumeMismatch(f"{path}: unknown classification {value.decode()!r}") from None


def column_signature(schema: pa.Schema) -> list:
    """Column names, value types and nullability, ignoring list element names."""
    signature = []
    for f in schema:
        value_type = f.type.value_type if pa.types.is_list(f.type) else f.type
        signature.append((f.name, pa.types.is_list(f.type), value_type, f.nullable))
    return signature


def record_row(record: CorrelatedRecord) -> dict:
    """Flatten a record into a column-name -> value dict covering every schema."""
    ws = record.weight_system
    info = record.polytope_info
    derived = record.derived
    return {
        "key": ws.key,
        "weights": list(ws.weights),
        "weight_count": ws.dimension,
        "degree": ws.degree,
        "vertex_count": info.vertex_count,
        "facet_count": info.facet_count,
        "point_count": info.point_count,
        "dual_point_count": info.dual_point_count,
        "hodge_numbers": list(info.hodge_numbers),
        "euler_characteristic": derived.euler_characteristic if derived else None,
        "h22": derived.h22 if derived else None,
    }


def records_to_table(records: list, schema: pa.Schema) -> pa.Table:
    rows = [record_row(r) for r in records]
    return pa.table(
        {col: [row[col] for row in rows] for col in schema.names},
        schema=schema,
    )


@dataclass
class PartitionState:
    """Buffer and counters of one output partition."""

    classification: Classification
    path: Path
    schema: pa.Schema
    writer: pq.ParquetWriter | None = None
    buffer: list = field(default_factory=list)
    written: int = 0
    carried_over: int = 0
    row_groups: int = 0

    @property
    def tmp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")


class PartitionedParquetWriter:
    """Streams classified records into one Parquet file per classification.

    Use as a context manager; leaving the block flushes every partial buffer
    and publishes the files, also when the block raised.

    ``carry_over`` maps a classification to a prior output file whose rows
    are copied into the new file before any new record (in-place resume).
    """

    def __init__(
        self,
        paths: dict,
        include_derived_quantities: bool = False,
        row_group_size: int = DEFAULT_ROW_GROUP_SIZE,
        index: str = None,
        compression: str = PARQUET_OPTS["compression"],
        compression_level: int = PARQUET_OPTS["compression_level"],
        carry_over: dict = None,
    ):
        if row_group_size < 1:
            raise ValueError(f"row_group_size must be positive, got {row_group_size}")
        self.row_group_size = row_group_size
        self.include_derived_quantities = include_derived_quantities
        self.compression = compression
        self.compression_level = compression_level
        self.carry_over = carry_over or {}
        self.partitions = {
            c: PartitionState(c, Path(paths[c]), build_schema(c, include_derived_quantities, index))
            for c in PARTITIONS
        }

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def open(self):
        try:
            for state in self.partitions.values():
                state.path.parent.mkdir(parents=True, exist_ok=True)
                state.writer = pq.ParquetWriter(
                    state.tmp_path,
                    state.schema,
                    compression=self.compression,
                    compression_level=self.compression_level,
                )
            for classification, source in self.carry_over.items():
                self._copy_prior(self.partitions[classification], Path(source))
        except BaseException:
            self._discard()
            raise
        return self

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            log.warning(f"Flushing buffered records after error: {exc}")
        self.close()
        return False

    def close(self):
        """Flush remaining buffers, close every file and move it into place."""
        first_error = None
        for state in self.partitions.values():
            try:
                self._close_partition(state)
            except (OSError, pa.ArrowException) as e:
                log.error(f"{state.path}: close failed: {e}")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def _close_partition(self, state: PartitionState):
        if state.writer is None:
            return
        try:
            self._flush(state)
        finally:
            state.writer.close()
            state.writer = None
            state.tmp_path.replace(state.path)
            log.info(
                f"{state.path.name}: {state.written:,} new rows, "
                f"{state.carried_over:,} carried over, {state.row_groups} row groups"
            )

    def _discard(self):
        for state in self.partitions.values():
            if state.writer is not None:
                state.writer.close()
                state.writer = None
            state.tmp_path.unlink(missing_ok=True)

    # ── Writing ─────────────────────────────────────────────────────────────

    def _copy_prior(self, state: PartitionState, source: Path):
        prior = pq.ParquetFile(source)
        if column_signature(prior.schema_arrow) != column_signature(state.schema):
            raise ResumeMismatch(
                f"{source}: schema differs from this run's {state.classification.value} "
                f"schema (derived quantities enabled: {self.include_derived_quantities})"
            )
        for i in range(prior.metadata.num_row_groups):
            table = prior.read_row_group(i).cast(state.schema)
            state.writer.write_table(table, row_group_size=self.row_group_size)
            state.carried_over += table.num_rows
            state.row_groups += math.ceil(table.num_rows / self.row_group_size)
        log.info(f"{state.path.name}: carried over {state.carried_over:,} rows from {source}")

    def add(self, record: CorrelatedRecord):
        if record.classification is None:
            raise ValueError(f"key {record.key} has no classification")
        state = self.partitions[record.classification]
        state.buffer.append(record)
        if len(state.buffer) >= self.row_group_size:
            self._flush(state)

    def _flush(self, state: PartitionState):
        if not state.buffer:
            return
        table = records_to_table(state.buffer, state.schema)
        state.writer.write_table(table, row_group_size=len(state.buffer))
        state.written += len(state.buffer)
        state.row_groups += 1
        log.debug(f"{state.path.name}: flushed row group of {len(state.buffer):,} rows")
        state.buffer.clear()

    def flush(self):
        for state in self.partitions.values():
            self._flush(state)

    # ── Counters ────────────────────────────────────────────────────────────

    @property
    def written(self) -> dict:
        return {c: s.written for c, s in self.partitions.items()}

    @property
    def carried_over_counts(self) -> dict:
        return {c: s.carried_over for c, s in self.partitions.items()}

    @property
    def row_groups(self) -> dict:
        return {c: s.row_groups for c, s in self.partitions.items()}
