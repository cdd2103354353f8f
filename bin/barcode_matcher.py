"""
Nearest-neighbour lookup of index and barcode reads against labelled
reference sets, within a maximum Hamming distance.

Reference file format: one set per line, a ':'-delimited group of equal
length sequences, whitespace, then the set label, e.g.

    ATCGATT:CAGTCAA:GCTAGCC:TGACTGG	Q1

Members of a multi-member set report as `Q1.1`, `Q1.2`, ... in file order.
"""

from __future__ import annotations

from pathlib import Path
from typing import Final

from bounded_cache import BoundedCache
from dna_sequence import FIELD_SEPARATOR, INDEX_DELIMITER, Sequence, flatten_label
from loguru import logger

BARCODE_DELIMITER = ":"

# Distinct queries remembered by a matcher, hits and misses alike
DEFAULT_MEMO_CAPACITY: int = 1_000_000


class ReferenceSetError(ValueError):
    """Raised when a reference set would make matching ambiguous or is malformed."""


class _Miss:
    """Memo entry for a query known to have no match."""

    def __repr__(self) -> str:
        return "<no match>"


NO_MATCH: Final = _Miss()


def _fail(msg: str) -> None:
    logger.error(msg)
    raise ReferenceSetError(msg)


class Matcher:
    """
    Maps a query sequence to the label of the closest reference sequence.

    Memo invalidation:
      - adding a reference set clears the memo (a remembered miss may now match)
      - lowering `max_distance` clears the memo (a remembered match may be too far)
      - raising `max_distance` keeps the memo; remembered misses stay misses
    Ties between equally distant references go to the earliest loaded one.
    """

    def __init__(self, max_distance: int = 0, memo_capacity: int = DEFAULT_MEMO_CAPACITY) -> None:
        if max_distance < 0:
            msg = f"Maximum Hamming distance must be non-negative, got {max_distance}"
            logger.error(msg)
            raise ValueError(msg)
        self._max_distance = max_distance
        # insertion ordered; scan order decides ties
        self._label_by_barcode: dict[Sequence, str] = {}
        self._barcode_by_label: dict[str, Sequence] = {}
        self._length_by_set: dict[str, int] = {}
        self._memo: BoundedCache[Sequence, str | _Miss] = BoundedCache(memo_capacity)

    @classmethod
    def from_file(cls, path: str | Path, max_distance: int = 0) -> Matcher:
        matcher = cls(max_distance)
        matcher.load_file(path)
        return matcher

    # ------------------------------ loading ------------------------------- #

    def load_file(self, path: str | Path) -> None:
        with Path(path).open() as handle:
            for line_number, line in enumerate(handle, start=1):
                fields = line.split()
                if not fields:
                    continue
                if len(fields) != 2:  # noqa: PLR2004
                    _fail(
                        f"{path}:{line_number}: expected '<barcodes> <label>', got {line.strip()!r}"
                    )
                self._add(fields[0], fields[1])
        self._reset_memo()
        logger.info(
            f"Loaded {len(self._length_by_set)} reference sets "
            f"({len(self._label_by_barcode)} sequences) from {path}"
        )

    def add_reference_set(self, set_text: str, label: str) -> None:
        self._add(set_text, label)
        self._reset_memo()

    def _add(self, set_text: str, label: str) -> None:
        if label in self._length_by_set:
            _fail(f"Reference labels must be unique: {label!r} loaded twice")
        if INDEX_DELIMITER in label:
            _fail(f"Reference label {label!r} must not contain {INDEX_DELIMITER!r}")
        if FIELD_SEPARATOR in label:
            _fail(f"Reference label {label!r} must not contain {FIELD_SEPARATOR!r}")

        members = [Sequence(text) for text in set_text.upper().split(BARCODE_DELIMITER)]
        length = len(members[0])
        for member in members:
            if len(member) != length:
                _fail(
                    f"Reference set {label!r}: barcode length mismatch "
                    f"({member} has {len(member)} bases, expected {length})"
                )
            if member in self._label_by_barcode:
                _fail(
                    f"Reference set {label!r}: barcodes must be unique, {member} "
                    f"already registered as {self._label_by_barcode[member]!r}"
                )
        if len(set(members)) != len(members):
            _fail(f"Reference set {label!r}: barcodes must be unique within a set")

        for position, member in enumerate(members, start=1):
            member_label = f"{label}{INDEX_DELIMITER}{position}" if len(members) > 1 else label
            self._label_by_barcode[member] = member_label
            self._barcode_by_label[member_label] = member
        self._length_by_set[label] = length

    def _reset_memo(self) -> None:
        self._memo.clear()
        for barcode, label in self._label_by_barcode.items():
            self._memo.put(barcode, label)

    # ------------------------------ queries ------------------------------- #

    @property
    def max_distance(self) -> int:
        return self._max_distance

    @max_distance.setter
    def max_distance(self, value: int) -> None:
        if value < 0:
            msg = f"Maximum Hamming distance must be non-negative, got {value}"
            logger.error(msg)
            raise ValueError(msg)
        if value < self._max_distance:
            self._reset_memo()
        self._max_distance = value

    def find(self, query: Sequence | str) -> str | None:
        """Label of the closest reference within `max_distance`, or None."""
        if not isinstance(query, Sequence):
            query = Sequence(query)
        found = self._memo.get(query)
        if found is None:
            label = self._linear_search(query)
            found = NO_MATCH if label is None else label
            self._memo.put(query, found)
        return None if found is NO_MATCH else found

    def _linear_search(self, query: Sequence) -> str | None:
        best_distance = self._max_distance + 1
        best_label = None
        for barcode, label in self._label_by_barcode.items():
            if len(barcode) != len(query):
                continue
            distance = query.hamming_distance(barcode)
            if distance < best_distance:
                best_distance = distance
                best_label = label
                if distance == 0:
                    break
        return best_label

    @property
    def memo_size(self) -> int:
        return len(self._memo)

    # ----------------------------- metadata ------------------------------- #

    def barcode_length(self, label: str | None) -> int:
        """Length of the sequences in `label`'s set; 0 for unknown labels or None."""
        flattened = flatten_label(label)
        if flattened is None:
            return 0
        return self._length_by_set.get(flattened, 0)

    def barcode_pair_length(self, pair_label: str) -> int:
        """Barcode length for a 'p5_p7' pair; both halves must agree."""
        labels = pair_label.split(FIELD_SEPARATOR)
        length = self.barcode_length(labels[0])
        if len(labels) > 1 and self.barcode_length(labels[1]) != length:
            msg = f"Barcode lengths do not match in pair {pair_label!r}"
            logger.error(msg)
            raise ValueError(msg)
        return length

    def barcode_lengths(self) -> list[int]:
        """Distinct reference lengths, longest first."""
        return sorted(set(self._length_by_set.values()), reverse=True)

    def barcode_for(self, label: str) -> Sequence | None:
        return self._barcode_by_label.get(label)

    def labels(self) -> list[str]:
        return list(self._length_by_set)
