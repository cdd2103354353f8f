"""
Per-experiment read counters for screening runs.

A SampleSetsCounter holds a raw total of fragments seen plus, for every
experiment key, a SampleCounter of labelled counts (raw, merged, oligo, ...).
Tables are written as TSV through polars.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import polars as pl
from loguru import logger

if TYPE_CHECKING:
    from pathlib import Path

    from dna_sequence import ExperimentKey

RAW = "raw"
MERGED = "merged"
OLIGO = "oligo"

KEY_COLUMN = "key"


class SampleCounter:
    """Label -> count, remembering the order labels were first seen."""

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}

    def increment(self, label: str) -> int:
        return self.add(label, 1)

    def add(self, label: str, value: int) -> int:
        self._counts[label] = self._counts.get(label, 0) + value
        return self._counts[label]

    def get(self, label: str) -> int:
        return self._counts.get(label, 0)

    def labels(self) -> list[str]:
        return list(self._counts)

    def combine(self, other: SampleCounter) -> None:
        for label in other.labels():
            self.add(label, other.get(label))

    def copy(self) -> SampleCounter:
        duplicate = SampleCounter()
        duplicate.combine(self)
        return duplicate

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SampleCounter):
            return self._counts == other._counts
        return NotImplemented

    def __repr__(self) -> str:
        return f"SampleCounter({self._counts!r})"


class SampleSetsCounter:
    """Raw fragment total plus one SampleCounter per experiment key."""

    def __init__(self) -> None:
        self.raw = 0
        self._sets: dict[str, SampleCounter] = {}

    def increment(self, key: ExperimentKey | str | None = None, label: str | None = None) -> int:
        """
        Without arguments, count one raw fragment. With a key and label, count
        one occurrence of `label` for that key.
        """
        if key is None:
            self.raw += 1
            return self.raw
        assert label is not None, "A label is required when counting against a key"
        return self.add(key, label, 1)

    def add(self, key: ExperimentKey | str, label: str, value: int) -> int:
        counter = self._sets.setdefault(str(key), SampleCounter())
        return counter.add(label, value)

    def get(self, key: ExperimentKey | str, label: str) -> int:
        counter = self._sets.get(str(key))
        return 0 if counter is None else counter.get(label)

    def counter(self, key: ExperimentKey | str) -> SampleCounter | None:
        return self._sets.get(str(key))

    def keys(self) -> list[str]:
        return list(self._sets)

    def combine(self, other: SampleSetsCounter) -> None:
        self.raw += other.raw
        for key, counter in other._sets.items():
            if key in self._sets:
                self._sets[key].combine(counter)
            else:
                self._sets[key] = counter.copy()

    def to_frame(self, sort_label: str = RAW) -> pl.DataFrame:
        """One row per key, one column per label, descending by `sort_label`."""
        labels: list[str] = []
        for counter in self._sets.values():
            labels.extend(label for label in counter.labels() if label not in labels)
        if sort_label not in labels:
            labels.insert(0, sort_label)
        rows = [
            {KEY_COLUMN: key, **{label: counter.get(label) for label in labels}}
            for key, counter in self._sets.items()
        ]
        schema = {KEY_COLUMN: pl.String, **dict.fromkeys(labels, pl.Int64)}
        return pl.DataFrame(rows, schema=schema).sort(
            [sort_label, KEY_COLUMN],
            descending=[True, False],
        )

    def write_tsv(self, path: str | Path, sort_label: str = RAW) -> None:
        frame = self.to_frame(sort_label)
        frame.write_csv(path, separator="\t")
        logger.info(f"Wrote statistics for {frame.height} experiment keys to {path}")
