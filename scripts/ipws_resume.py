"""
Resume support: keys already present in prior output files.

Only the ``key`` column of a prior file is read, batch by batch. Keys are
held per partition in a sorted numpy array (8 bytes per key) and looked up
by binary search, which stays cheap for tens of millions of keys where a
Python set would need several times the memory.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pyarrow.parquet as pq

from ipws_errors import ResumeMismatch
from ipws_records import PARTITIONS, Classification, CorrelatedRecord
from ipws_writer import partition_of

log = logging.getLogger(__name__)

KEY_COLUMN = "key"
KEY_BATCH_SIZE = 1_000_000


class KeyIndex:
    """Sorted, de-duplicated int64 keys with binary-search membership."""

    def __init__(self, keys=None):
        if keys is None:
            keys = np.empty(0, dtype=np.int64)
        self._keys = np.unique(np.asarray(keys, dtype=np.int64))

    @classmethod
    def merge(cls, indexes) -> "KeyIndex":
        arrays = [ix._keys for ix in indexes]
        return cls(np.concatenate(arrays) if arrays else None)

    def __contains__(self, key: int) -> bool:
        i = np.searchsorted(self._keys, key)
        return bool(i < len(self._keys) and self._keys[i] == key)

    def __len__(self) -> int:
        return len(self._keys)


def read_prior_keys(path: Path) -> tuple[Classification, KeyIndex]:
    """Read the partition and key column of one prior output file."""
    pf = pq.ParquetFile(path)
    classification = partition_of(pf.schema_arrow, path)
    if KEY_COLUMN not in pf.schema_arrow.names:
        raise ResumeMismatch(f"{path}: no {KEY_COLUMN!r} column")

    chunks = [
        batch.column(0).to_numpy(zero_copy_only=False)
        for batch in pf.iter_batches(batch_size=KEY_BATCH_SIZE, columns=[KEY_COLUMN])
    ]
    keys = KeyIndex(np.concatenate(chunks) if chunks else None)
    log.info(f"Resume: {len(keys):,} {classification.value} keys from {path}")
    return classification, keys


class ResumeFilter:
    """Answers whether a classified record is already in its partition's prior output."""

    def __init__(self, indexes: dict = None, sources: dict = None):
        self.indexes = {c: (indexes or {}).get(c) or KeyIndex() for c in PARTITIONS}
        self.sources = sources or {c: [] for c in PARTITIONS}

    @classmethod
    def from_paths(cls, paths) -> "ResumeFilter":
        """Route each prior file to its partition by metadata and merge the keys."""
        per_partition = {c: [] for c in PARTITIONS}
        sources = {c: [] for c in PARTITIONS}
        for path in paths or []:
            path = Path(path)
            classification, keys = read_prior_keys(path)
            per_partition[classification].append(keys)
            sources[classification].append(path)

        indexes = {c: KeyIndex.merge(ix) for c, ix in per_partition.items() if ix}
        return cls(indexes, sources)

    def already_converted(self, record: CorrelatedRecord) -> bool:
        return record.key in self.indexes[record.classification]

    def key_count(self) -> int:
        return sum(len(ix) for ix in self.indexes.values())
