#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///

from __future__ import annotations

import argparse
import sys
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger
from md_field import EditString
from pydantic import Field, ValidationError, field_validator
from pydantic.dataclasses import dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
REF_CONSUME = {0, 2, 3, 7, 8}
QRY_CONSUME = {0, 1, 4, 7, 8}
BOTH_CONSUME = {0, 7, 8}
INSERTION = 1
SOFT_CLIP = 4
HARD_CLIP = 5

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000


# ------------------------------- DATA TYPES -------------------------------- #


class ClippingMode(Enum):
    """Defines how clipped bases are represented."""

    SOFT_CLIP = auto()  # bases stay in the record, marked S
    HARD_CLIP = auto()  # bases removed from sequence and qualities, marked H

    @property
    def cigar_op(self) -> int:
        return SOFT_CLIP if self is ClippingMode.SOFT_CLIP else HARD_CLIP


@dataclass(frozen=True)
class ClipPolicy:
    """
    Number of bases to clip from both ends of each read.

    Libraries with different damage repair treatment (e.g. UDG-minus,
    UDG-half) get their own lengths, looked up through the read group's LB.
    Reads without a read group, or from other libraries, use `num_bases`.
    """

    num_bases: int = Field(default=0, ge=0)
    library_lengths: dict[str, int] = Field(default_factory=dict)
    mode: ClippingMode = ClippingMode.SOFT_CLIP

    @field_validator("library_lengths")
    @classmethod
    def lengths_non_negative(cls, value: dict[str, int]) -> dict[str, int]:
        for library, length in value.items():
            if length < 0:
                msg = f"Clip length for library {library!r} must be non-negative, got {length}"
                raise ValueError(msg)
        return value

    @classmethod
    def from_groups(
        cls,
        num_bases: int,
        groups: Iterable[tuple[int, Iterable[str] | None]],
        mode: ClippingMode = ClippingMode.SOFT_CLIP,
    ) -> ClipPolicy:
        """Build from (length, libraries) groups; later groups win for repeated libraries."""
        lengths: dict[str, int] = {}
        for length, libraries in groups:
            for library in libraries or ():
                lengths[library] = length
        return cls(num_bases=num_bases, library_lengths=lengths, mode=mode)

    def length_for_library(self, library: str | None) -> int:
        if library is None:
            return self.num_bases
        return self.library_lengths.get(library, self.num_bases)


class ClipResult(NamedTuple):
    """Rewritten alignment fields after clipping both ends."""

    cigartuples: list[tuple[int, int]]
    reference_start: int
    md: str
    edit_distance: int
    front_reference_bases: int  # reference positions removed at the start
    back_reference_bases: int  # reference positions removed at the end
    trimmed_bases: int  # bases to remove from each end of sequence/qualities


class ClipCounts(NamedTuple):
    kept: int
    dropped_unmapped: int
    dropped_empty: int
    failed: int


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int


class Cigar(list[CigarOp]):
    """A list of CigarOp with helpers for conversion and compaction."""

    @classmethod
    def from_pysam(cls, cig_raw: Iterable[tuple[int, int]]) -> Cigar:
        return cls(CigarOp(op, ln) for op, ln in cig_raw)

    @classmethod
    def from_ops(cls, ops: Iterable[int]) -> Cigar:
        """Re-roll a per-position operation array."""
        out = cls()
        for op in ops:
            out.push_compact(op, 1)
        return out

    def to_pysam(self) -> list[tuple[int, int]]:
        return [(run.op, run.length) for run in self]

    def unroll(self) -> list[int]:
        """One operation code per CIGAR position."""
        return [run.op for run in self for _ in range(run.length)]

    def push_compact(self, op: int, ln: int) -> None:
        """
        Append (op, ln), merging with the last run if `op` matches.
        Ignores non-positive lengths.
        """
        assert 0 <= op <= 8, (  # noqa: PLR2004
            f"Invalid CIGAR operation code {op}: must be 0-8 (M,I,D,N,S,H,P,=,X)"
        )
        if ln <= 0:
            return
        if self and self[-1].op == op:
            self[-1] = CigarOp(op, self[-1].length + ln)
            return
        self.append(CigarOp(op, ln))


def cigar_edit_distance(cig: Iterable[tuple[int, int]]) -> int:
    """Edits contributed by the CIGAR: inserted read bases. MD supplies the rest."""
    return sum(ln for op, ln in cig if op == INSERTION)


def is_nonempty(cig: Iterable[tuple[int, int]] | None) -> bool:
    """A read is non-empty while at least one base is still aligned (M, =, X)."""
    if cig is None:
        return False
    return any(op in BOTH_CONSUME and ln > 0 for op, ln in cig)


# ------------------------------ CORE LOGIC --------------------------------- #


def _clip_end(ops: list[int], num_bases: int, mode: ClippingMode, from_back: bool) -> int:
    """
    Clip `num_bases` read bases from one end of the unrolled `ops`, in place.

    Operations on the walked span that do not consume read bases cannot sit
    inside a soft clip, so they become hard clips whatever the mode. Hard clips
    are then gathered at the outer edge, ahead of the soft clips, as SAM
    requires.

    Returns the number of walked positions that consumed reference bases.
    """
    order = range(len(ops) - 1, -1, -1) if from_back else range(len(ops))
    walked: list[int] = []
    clipped = 0
    hard_clipped = 0
    reference_bases = 0
    for position in order:
        if clipped >= num_bases:
            break
        op = ops[position]
        if op in REF_CONSUME:
            reference_bases += 1
        if op in QRY_CONSUME:
            clipped += 1
            if mode is ClippingMode.HARD_CLIP:
                hard_clipped += 1
        else:
            hard_clipped += 1
        walked.append(position)

    for rank, position in enumerate(walked):
        ops[position] = HARD_CLIP if rank < hard_clipped else mode.cigar_op
    return reference_bases


def clip_both_ends(
    cigartuples: Iterable[tuple[int, int]],
    reference_start: int,
    md: str,
    num_bases: int,
    mode: ClippingMode = ClippingMode.SOFT_CLIP,
) -> ClipResult:
    """
    Clip `num_bases` read bases from both ends of an alignment and recompute
    the fields that depend on the aligned span.

    Already clipped bases at an end count towards `num_bases`. The start moves
    by the reference bases clipped at the front; MD loses the reference
    positions clipped at each end; NM is recomputed from the new CIGAR
    insertions plus the remaining MD edits. Requests longer than the read are
    clamped to the read length.
    """
    if num_bases < 0:
        msg = f"Clip length must be non-negative, got {num_bases}"
        raise ValueError(msg)
    ops = Cigar.from_pysam(cigartuples).unroll()
    read_length = sum(op in QRY_CONSUME for op in ops)
    num_bases = min(num_bases, read_length)

    front = _clip_end(ops, num_bases, mode, from_back=False)
    back = _clip_end(ops, num_bases, mode, from_back=True)
    new_cigar = Cigar.from_ops(ops).to_pysam()

    edit_string = EditString.parse(md).clip(front, back)
    edit_distance = cigar_edit_distance(new_cigar) + edit_string.edit_distance()

    new_read_length = sum(ln for op, ln in new_cigar if op in QRY_CONSUME)
    trimmed = num_bases if mode is ClippingMode.HARD_CLIP else 0
    assert new_read_length == max(read_length - 2 * trimmed, 0), (
        f"CIGAR read length {new_read_length} inconsistent with clipping "
        f"{trimmed} bases per end from {read_length}"
    )

    return ClipResult(
        cigartuples=new_cigar,
        reference_start=reference_start + front,
        md=str(edit_string),
        edit_distance=edit_distance,
        front_reference_bases=front,
        back_reference_bases=back,
        trimmed_bases=trimmed,
    )


def clip_alignment(
    aln: pysam.AlignedSegment,
    num_bases: int,
    mode: ClippingMode = ClippingMode.SOFT_CLIP,
) -> None:
    """
    Clip both ends of `aln` in place: CIGAR, reference_start, MD and NM, and,
    for hard clips, the sequence and qualities.

    Raises KeyError when the record has no MD tag and ValueError for an
    unusable MD or CIGAR.
    """
    cig_raw = aln.cigartuples
    if cig_raw is None:
        msg = f"Record '{aln.query_name}' has no CIGAR"
        raise ValueError(msg)
    result = clip_both_ends(cig_raw, aln.reference_start, aln.get_tag("MD"), num_bases, mode)

    seq = aln.query_sequence
    qual = aln.query_qualities
    aln.cigartuples = result.cigartuples
    aln.reference_start = result.reference_start
    if result.trimmed_bases and seq is not None:
        cut = result.trimmed_bases
        keep_end = max(len(seq) - cut, cut)
        aln.query_sequence = seq[cut:keep_end]
        aln.query_qualities = None if qual is None else qual[cut:keep_end]
    aln.set_tag("MD", result.md)
    aln.set_tag("NM", result.edit_distance)

    logger.trace(
        f"Clipped '{aln.query_name}': cigar={aln.cigarstring}, start={aln.reference_start}, "
        f"MD={result.md}, NM={result.edit_distance}",
    )


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    msg = "Output/input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template: pysam.AlignmentFile | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with the mode implied by the extension. Writing copies
    the header of `template`. CRAM needs a reference filename.
    """
    mode = _io_mode_from_ext(path, write)
    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        if template is None:
            msg = f"Writing to '{path}' requires a template AlignmentFile"
            logger.error(msg)
            raise ValueError(msg)
        return pysam.AlignmentFile(path, mode, template=template, **kwargs)
    return pysam.AlignmentFile(path, mode, **kwargs)


def libraries_by_read_group(header: pysam.AlignmentHeader) -> dict[str, str]:
    """Map @RG ID to LB for the read groups that declare a library."""
    return {
        rg["ID"]: rg["LB"]
        for rg in header.to_dict().get("RG", [])
        if "ID" in rg and "LB" in rg
    }


def library_for(aln: pysam.AlignedSegment, libraries: dict[str, str]) -> str | None:
    if not aln.has_tag("RG"):
        return None
    return libraries.get(aln.get_tag("RG"))


def process_stream(
    inp: pysam.AlignmentFile,
    outp: pysam.AlignmentFile,
    policy: ClipPolicy,
) -> ClipCounts:
    """
    Clip every mapped record and write it unless nothing aligned remains.

    Unmapped records are dropped. A record that cannot be clipped (no MD tag,
    malformed MD) is logged and skipped; the run carries on.
    """
    libraries = libraries_by_read_group(inp.header)
    logger.debug(f"Read group libraries: {libraries}")

    kept = 0
    dropped_unmapped = 0
    dropped_empty = 0
    failed = 0
    for seen, aln in enumerate(inp, start=1):
        if seen % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: seen={seen}, kept={kept}, dropped_unmapped={dropped_unmapped}, "
                f"dropped_empty={dropped_empty}, failed={failed}",
            )
        if aln.is_unmapped:
            dropped_unmapped += 1
            continue

        num_bases = policy.length_for_library(library_for(aln, libraries))
        try:
            clip_alignment(aln, num_bases, policy.mode)
        except (KeyError, ValueError) as exc:
            failed += 1
            logger.warning(f"Skipping record '{aln.query_name}': {exc}")
            continue

        # very short reads may be clipped away entirely
        if not is_nonempty(aln.cigartuples):
            dropped_empty += 1
            logger.debug(f"Dropping fully clipped read '{aln.query_name}'")
            continue

        outp.write(aln)
        kept += 1

    logger.info(
        f"Process totals: kept={kept}, dropped_unmapped={dropped_unmapped}, "
        f"dropped_empty={dropped_empty}, failed={failed}",
    )
    return ClipCounts(kept, dropped_unmapped, dropped_empty, failed)


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Clip a fixed number of bases from both ends of aligned reads to keep\n"
            "damaged terminal bases out of downstream analysis. CIGAR, alignment\n"
            "start, MD and NM are kept consistent. Reads with nothing aligned left\n"
            "are dropped."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument("-i", "--in", dest="in_path", required=True, help="Input SAM/BAM/CRAM")
    p.add_argument("-o", "--out", dest="out_path", required=True, help="Output SAM/BAM/CRAM")
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Clipping lengths
    lengths = p.add_argument_group("Clipping Lengths")
    lengths.add_argument(
        "-n",
        "--num-bases",
        type=int,
        default=0,
        help="Bases to clip from both ends of every read (default: 0)",
    )
    lengths.add_argument(
        "-x",
        "--num-bases-special1",
        type=int,
        default=0,
        help="Bases to clip for reads from --libraries1",
    )
    lengths.add_argument(
        "-s",
        "--libraries1",
        nargs="+",
        default=None,
        metavar="LB",
        help="Libraries (read group LB) clipped with --num-bases-special1",
    )
    lengths.add_argument(
        "-y",
        "--num-bases-special2",
        type=int,
        default=0,
        help="Bases to clip for reads from --libraries2",
    )
    lengths.add_argument(
        "-t",
        "--libraries2",
        nargs="+",
        default=None,
        metavar="LB",
        help="Libraries (read group LB) clipped with --num-bases-special2",
    )
    p.add_argument(
        "--hard",
        action="store_true",
        help="Hard clip: remove clipped bases from the record (e.g. before realignment)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting clipping run.")

    try:
        policy = ClipPolicy.from_groups(
            args.num_bases,
            [
                (args.num_bases_special1, args.libraries1),
                (args.num_bases_special2, args.libraries2),
            ],
            ClippingMode.HARD_CLIP if args.hard else ClippingMode.SOFT_CLIP,
        )
    except ValidationError as exc:
        logger.error(f"Invalid clipping configuration: {exc}")
        sys.exit(1)
    logger.debug(f"ClipPolicy: {policy}")

    input_alignment = open_alignment(args.in_path, write=False, reference=args.reference)
    try:
        output_alignment = open_alignment(
            args.out_path,
            write=True,
            template=input_alignment,
            reference=args.reference,
        )
    except (OSError, ValueError):
        input_alignment.close()
        raise

    try:
        counts = process_stream(input_alignment, output_alignment, policy)
    finally:
        output_alignment.close()
        input_alignment.close()

    logger.success(
        f"Kept: {counts.kept} | Dropped (unmapped): {counts.dropped_unmapped} | "
        f"Dropped (fully clipped): {counts.dropped_empty} | Skipped (errors): {counts.failed}",
    )
    logger.info("Clipping run complete.")


if __name__ == "__main__":
    main()
