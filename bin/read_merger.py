"""
Overlap merging of paired-end reads and experiment key lookup.

The forward read and the reverse-complemented reverse read are slid past each
other starting from the narrowest overlap, `min_overlap` bases at the end of
the forward read, and stepping to smaller offsets until the merged read
would fall below the minimum length. A merge happens only when exactly one
offset passes the mismatch penalty test; ambiguous or absent overlaps produce
no read.

Offsets are `a_start - b_start`:

    positive:  aaaaaaaaaaaaa          negative:         aaaaaaaaaaaa
                      bbbbbbbbbbbb              bbbbbbbbbbbbb
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from dna_sequence import ExperimentKey, QualityTrack, Read, Sequence
from loguru import logger
from pydantic import Field, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable

# Highest Phred score for the synthetic positive-control read
OLIGO_QUALITY: int = 40


class BarcodeLookup(Protocol):
    """What the merger needs from an index or barcode matcher."""

    def find(self, query: Sequence) -> str | None: ...

    def barcode_length(self, label: str | None) -> int: ...

    def barcode_lengths(self) -> list[int]: ...


@dataclass(frozen=True)
class MergeParameters:
    """Thresholds for overlap search and base merging."""

    max_penalty: int = Field(default=3, ge=0)
    mismatch_penalty_low: int = Field(default=1, ge=0)
    mismatch_penalty_high: int = Field(default=3, ge=0)  # both bases at or above threshold
    quality_threshold: int = Field(default=20, ge=0)
    min_overlap: int = Field(default=15, ge=1)
    min_merged_length: int = Field(default=30, ge=0)
    max_candidates: int = Field(default=4, ge=2)  # stop the search once this many offsets pass
    max_quality: int = Field(default=50, ge=0)

    @field_validator("mismatch_penalty_high")
    @classmethod
    def high_not_below_low(cls, value: int, info: ValidationInfo) -> int:
        low = info.data.get("mismatch_penalty_low")
        if low is not None and value < low:
            msg = f"mismatch_penalty_high ({value}) must be >= mismatch_penalty_low ({low})"
            raise ValueError(msg)
        return value


# ----------------------------- OVERLAP SEARCH ------------------------------ #


def alignment_passes(  # noqa: PLR0913
    a: Read,
    b: Read,
    a_offset: int,
    b_offset: int,
    min_length: int,
    params: MergeParameters,
) -> bool:
    """
    Walk the overlap of `a` from `a_offset` and `b` from `b_offset`, adding a
    penalty for each mismatch. Within the first `min_length` positions the
    penalty may not exceed `max_penalty`; beyond that the penalty density may
    not exceed max_penalty / min_length.
    """
    penalty = 0
    overlap = min(len(a) - a_offset, len(b) - b_offset)
    for i in range(overlap):
        a_i = i + a_offset
        b_i = i + b_offset
        if a.sequence[a_i] == b.sequence[b_i]:
            continue
        confident = (
            a.quality[a_i] >= params.quality_threshold
            and b.quality[b_i] >= params.quality_threshold
        )
        penalty += params.mismatch_penalty_high if confident else params.mismatch_penalty_low
        if i <= min_length and penalty > params.max_penalty:
            return False
        if i > min_length and penalty * min_length > i * params.max_penalty:
            return False
    return True


def find_alignments(a: Read, b: Read, params: MergeParameters) -> list[int]:
    """Passing offsets, narrowest overlap first, at most `max_candidates` of them."""
    passing: list[int] = []
    offset = len(a) - params.min_overlap
    while len(b) + offset > params.min_merged_length:
        a_offset, b_offset = (offset, 0) if offset >= 0 else (0, -offset)
        if alignment_passes(a, b, a_offset, b_offset, params.min_overlap, params):
            passing.append(offset)
            if len(passing) >= params.max_candidates:
                break
        offset -= 1
    return passing


# -------------------------------- MERGING ---------------------------------- #


def merge_bases(base1: str, quality1: int, base2: str, quality2: int, max_quality: int) -> tuple[str, int]:
    """
    Agreement keeps the base with the better quality, capped; the reads are not
    independent so agreement does not raise quality beyond either input.
    Disagreement keeps the better-supported base (ties to the first read) with
    the quality difference.
    """
    if base1 == base2:
        return base1.upper(), min(max(quality1, quality2), max_quality)
    base = base1 if quality1 >= quality2 else base2
    return base.upper(), abs(quality2 - quality1)


def merge_reads(a: Read, b: Read, offset: int, max_quality: int) -> Read:
    """Merge `a` and `b` at `offset`; the result ends where `b` ends."""
    result_length = len(b) + offset
    bases: list[str] = []
    qualities: list[int] = []

    # a only
    for i in range(offset):
        bases.append(a.sequence[i])
        qualities.append(a.quality[i])
    # overlap
    merge_start = max(0, offset)
    merge_end = min(len(a), result_length)
    for i in range(merge_start, merge_end):
        base, quality = merge_bases(
            a.sequence[i], a.quality[i], b.sequence[i - offset], b.quality[i - offset], max_quality
        )
        bases.append(base)
        qualities.append(quality)
    # b only
    for i in range(merge_end, result_length):
        bases.append(b.sequence[i - offset])
        qualities.append(b.quality[i - offset])

    assert len(bases) == max(result_length, 0), (
        f"Merged length {len(bases)} differs from expected {result_length} at offset {offset}"
    )
    return Read(a.header, Sequence("".join(bases)), QualityTrack(qualities))


def _check_same_fragment(reads: Iterable[Read]) -> None:
    reads = list(reads)
    first = reads[0].header
    if first is None:
        return
    for other in reads[1:]:
        if other.header is None or not first.same_fragment(other.header):
            msg = f"FASTQ metadata mismatch: {first} vs {other.header}"
            logger.error(msg)
            raise ValueError(msg)


def merge_paired_reads(
    r1: Read,
    r2: Read,
    r1_barcode_length: int,
    r2_barcode_length: int,
    params: MergeParameters,
) -> Read | None:
    """
    Trim inline barcodes and trailing Ns, then merge r1 with the reverse
    complement of r2. None when the overlap is absent or ambiguous.
    """
    _check_same_fragment((r1, r2))
    trimmed_r1 = r1.subrange(min(r1_barcode_length, len(r1)), len(r1)).trim_trailing_unknown()
    trimmed_r2 = r2.subrange(min(r2_barcode_length, len(r2)), len(r2)).trim_trailing_unknown()
    reverse_r2 = trimmed_r2.reverse_complement()
    if min(len(trimmed_r1), len(reverse_r2)) < params.min_overlap:
        logger.trace("Trimmed read shorter than the minimum overlap")
        return None

    offsets = find_alignments(trimmed_r1, reverse_r2, params)
    if len(offsets) != 1:
        logger.trace(f"No unambiguous overlap: passing offsets {offsets}")
        return None
    return merge_reads(trimmed_r1, reverse_r2, offsets[0], params.max_quality)


# ----------------------------- EXPERIMENT KEYS ------------------------------ #


def _find_barcodes(
    r1: Read,
    r2: Read,
    barcodes: BarcodeLookup,
    barcode_length: int | None,
) -> tuple[str, str] | None:
    lengths = barcodes.barcode_lengths() if barcode_length is None else [barcode_length]
    for length in lengths:
        if length <= 0 or length > len(r1) or length > len(r2):
            continue
        p5 = barcodes.find(r1.sequence.subrange(0, length))
        p7 = barcodes.find(r2.sequence.subrange(0, length))
        if p5 is not None and p7 is not None:
            return p5, p7
    return None


def find_experiment_key(  # noqa: PLR0913
    r1: Read,
    r2: Read,
    i1: Read,
    i2: Read,
    i5_indices: BarcodeLookup,
    i7_indices: BarcodeLookup,
    barcodes: BarcodeLookup | None,
    barcode_length: int | None = None,
) -> ExperimentKey | None:
    """
    Identify the experiment of a fragment from its index reads (i1 holds the
    i7 index, i2 the i5 index) and the inline barcodes at the start of r1 and
    r2. None when either index is unmatched; an index-only key when the
    barcodes are unmatched or `barcodes` is None.
    """
    _check_same_fragment((r1, r2, i1, i2))
    i5 = i5_indices.find(i2.sequence)
    i7 = i7_indices.find(i1.sequence)
    if i5 is None or i7 is None:
        return None
    return _key_with_barcodes(r1, r2, i5, i7, barcodes, barcode_length)


def key_for_fixed_indices(  # noqa: PLR0913
    r1: Read,
    r2: Read,
    i5_label: str,
    i7_label: str,
    barcodes: BarcodeLookup | None,
    barcode_length: int | None = None,
) -> ExperimentKey:
    """Experiment key for runs where every fragment carries the same indices."""
    _check_same_fragment((r1, r2))
    return _key_with_barcodes(r1, r2, i5_label, i7_label, barcodes, barcode_length)


def _key_with_barcodes(  # noqa: PLR0913
    r1: Read,
    r2: Read,
    i5: str,
    i7: str,
    barcodes: BarcodeLookup | None,
    barcode_length: int | None,
) -> ExperimentKey:
    if barcodes is not None:
        found = _find_barcodes(r1, r2, barcodes, barcode_length)
        if found is not None:
            return ExperimentKey(i5, i7, *found)
    return ExperimentKey(i5, i7)


# ---------------------------- POSITIVE CONTROL ----------------------------- #


def oligo_read(sequence: str) -> Read:
    """Synthetic read for a positive-control oligo, at full quality."""
    bases = Sequence(sequence)
    return Read(None, bases, QualityTrack.uniform(len(bases), OLIGO_QUALITY))


def matches_oligo(oligo: Read, merged: Read, params: MergeParameters) -> bool:
    """True when `merged` starts with the oligo or its reverse complement."""
    return alignment_passes(oligo, merged, 0, 0, len(oligo), params) or alignment_passes(
        oligo.reverse_complement(), merged, 0, 0, len(oligo), params
    )
