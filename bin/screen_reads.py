#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Screen one sequencing lane for fragments carrying known indices and barcodes,
merge their paired reads, and count them per experiment.

Merged reads are spread round-robin over a fixed number of gzipped FASTQ
files for load balancing downstream; they are not demultiplexed there. The
experiment key is appended to each read name after ';' so that it survives
alignment. Optionally, merged reads are also demultiplexed into one file per
experiment key while keeping a bounded number of files open.
"""

from __future__ import annotations

import argparse
import gzip
import sys
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

import pysam
from barcode_matcher import Matcher
from bounded_cache import BoundedCache, close_value
from clip_alignments import configure_logging
from dna_sequence import ExperimentKey, Read
from loguru import logger
from pydantic import Field, ValidationError, model_validator
from pydantic.dataclasses import dataclass
from read_merger import (
    MergeParameters,
    find_experiment_key,
    key_for_fixed_indices,
    matches_oligo,
    merge_paired_reads,
    oligo_read,
)
from sample_counts import MERGED, OLIGO, RAW, SampleSetsCounter

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

# Emit a progress debug line after processing this many fragments
DEBUG_EVERY: int = 100_000


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class ScreenConfig:
    """Run-level options that are not merge thresholds."""

    num_output_files: int = Field(default=25, ge=1)
    reverse_complement_i5: bool = False  # NextSeq i5 reads are not reverse complemented
    positive_oligo: str | None = None
    fixed_i5: str | None = None
    fixed_i7: str | None = None
    max_open_files: int = Field(default=64, ge=1)
    demultiplex_dir: Path | None = None

    @model_validator(mode="after")
    def fixed_indices_paired(self) -> ScreenConfig:
        if (self.fixed_i5 is None) != (self.fixed_i7 is None):
            msg = "--fixed-i5 and --fixed-i7 must be given together"
            raise ValueError(msg)
        return self

    @property
    def fixed_indices(self) -> bool:
        return self.fixed_i5 is not None


# ----------------------------- I/O UTILITIES ------------------------------- #


def read_fastq(path: str | Path) -> Iterator[Read]:
    """Reads from a plain or gzipped FASTQ file."""
    with pysam.FastxFile(str(path)) as fastq:
        for record in fastq:
            yield Read.from_text(record.name, record.sequence, record.quality, record.comment)


class RoundRobinWriter:
    """Spread FASTQ records evenly over `{root}_001.fastq.gz` ... `{root}_NNN.fastq.gz`."""

    def __init__(self, root: str, count: int) -> None:
        self.paths = [Path(f"{root}_{i:03d}.fastq.gz") for i in range(1, count + 1)]
        self._handles: list[TextIO] = []
        try:
            for path in self.paths:
                self._handles.append(gzip.open(path, "wt"))
        except OSError:
            self.close()
            raise
        self._next = 0
        logger.debug(f"Opened {count} merged read outputs with root {root}")

    def write(self, read: Read) -> None:
        self._handles[self._next].write(read.to_fastq() + "\n")
        self._next = (self._next + 1) % len(self._handles)

    def close(self) -> None:
        for handle in self._handles:
            handle.close()
        self._handles.clear()


class Demultiplexer:
    """
    One gzipped FASTQ per experiment key under `directory`. At most
    `max_open` files are open at once; an evicted file is reopened in append
    mode the next time its key comes up.
    """

    def __init__(self, directory: Path, max_open: int) -> None:
        directory.mkdir(parents=True, exist_ok=True)
        self.directory = directory
        self._open: BoundedCache[str, TextIO] = BoundedCache(max_open, release=close_value)
        self._started: set[str] = set()

    def path_for(self, key: ExperimentKey) -> Path:
        return self.directory / f"{key}.fastq.gz"

    def write(self, key: ExperimentKey, read: Read) -> None:
        name = str(key)
        handle = self._open.get(name)
        if handle is None:
            # gzip members concatenate, so appending keeps a valid file
            mode = "at" if name in self._started else "wt"
            handle = gzip.open(self.path_for(key), mode)
            self._open.put(name, handle)
            self._started.add(name)
        handle.write(read.to_fastq() + "\n")

    def close(self) -> None:
        logger.debug(
            f"Demultiplexer file cache: hits={self._open.hits}, misses={self._open.misses}, "
            f"forced_closes={self._open.forced_closes}",
        )
        self._open.close()

    @property
    def key_count(self) -> int:
        return len(self._started)


# ------------------------------ CORE LOGIC --------------------------------- #


class Screener:
    """
    Per-fragment pipeline: experiment key lookup, merge, positive control
    check, counting and output.
    """

    def __init__(  # noqa: PLR0913
        self,
        i5_indices: Matcher,
        i7_indices: Matcher,
        barcodes: Matcher,
        params: MergeParameters,
        config: ScreenConfig,
    ) -> None:
        self.i5_indices = i5_indices
        self.i7_indices = i7_indices
        self.barcodes = barcodes
        self.params = params
        self.config = config
        self.counts = SampleSetsCounter()
        self.read_group: str | None = None
        self.oligo = None if config.positive_oligo is None else oligo_read(config.positive_oligo)
        if config.fixed_indices:
            for matcher, label in ((i5_indices, config.fixed_i5), (i7_indices, config.fixed_i7)):
                if matcher.barcode_length(label) == 0:
                    msg = f"Bad index label: {label}"
                    logger.error(msg)
                    raise ValueError(msg)

    def experiment_key(self, r1: Read, r2: Read, i1: Read | None, i2: Read | None) -> ExperimentKey | None:
        if self.config.fixed_indices:
            return key_for_fixed_indices(r1, r2, self.config.fixed_i5, self.config.fixed_i7, self.barcodes)
        assert i1 is not None and i2 is not None, "Index reads are required without fixed indices"  # noqa: PT018
        if self.config.reverse_complement_i5:
            i2 = i2.reverse_complement()
        return find_experiment_key(r1, r2, i1, i2, self.i5_indices, self.i7_indices, self.barcodes)

    def screen(self, r1: Read, r2: Read, i1: Read | None = None, i2: Read | None = None) -> Read | None:
        """
        Count one fragment and return its merged read, tagged with the
        experiment key, when it should be written out.
        """
        self.counts.increment()
        key = self.experiment_key(r1, r2, i1, i2)
        if key is None:
            return None

        flattened = key.flatten()
        self.counts.increment(flattened, RAW)
        self._check_read_group(r1)

        merged = merge_paired_reads(
            r1,
            r2,
            self.barcodes.barcode_length(flattened.p5),
            self.barcodes.barcode_length(flattened.p7),
            self.params,
        )
        if merged is None:
            return None
        if self.oligo is not None and matches_oligo(self.oligo, merged, self.params):
            self.counts.increment(flattened, OLIGO)
        # only reads passing the instrument's chastity filter are kept
        if merged.header is not None and merged.header.is_filtered:
            return None
        self.counts.increment(flattened, MERGED)
        return merged.with_key(key)

    def _check_read_group(self, r1: Read) -> None:
        if r1.header is None:
            return
        elements = r1.header.read_group_elements()
        if self.read_group is None:
            self.read_group = elements
        elif self.read_group != elements:
            msg = f"FASTQ read group mismatch: {elements!r} differs from {self.read_group!r}"
            logger.error(msg)
            raise ValueError(msg)


def iter_fragments(
    r1_path: str,
    r2_path: str,
    i1_path: str | None,
    i2_path: str | None,
) -> Iterator[tuple[Read, Read, Read | None, Read | None]]:
    """Zip the lane's FASTQ files record by record; stops at the shortest."""
    if i1_path is None or i2_path is None:
        for r1, r2 in zip(read_fastq(r1_path), read_fastq(r2_path)):
            yield r1, r2, None, None
        return
    yield from zip(read_fastq(r1_path), read_fastq(r2_path), read_fastq(i1_path), read_fastq(i2_path))


def screen_lane(  # noqa: PLR0913
    screener: Screener,
    output_root: str,
    r1_path: str,
    r2_path: str,
    i1_path: str | None = None,
    i2_path: str | None = None,
) -> int:
    """Screen every fragment of a lane; returns the number of merged reads written."""
    writer = RoundRobinWriter(output_root, screener.config.num_output_files)
    demultiplexer = None
    if screener.config.demultiplex_dir is not None:
        demultiplexer = Demultiplexer(screener.config.demultiplex_dir, screener.config.max_open_files)

    written = 0
    try:
        for seen, (r1, r2, i1, i2) in enumerate(iter_fragments(r1_path, r2_path, i1_path, i2_path), start=1):
            if seen % DEBUG_EVERY == 0:
                logger.debug(f"Progress: fragments={seen}, merged={written}")
            merged = screener.screen(r1, r2, i1, i2)
            if merged is None:
                continue
            writer.write(merged)
            if demultiplexer is not None:
                assert merged.header is not None and merged.header.key is not None  # noqa: PT018
                demultiplexer.write(merged.header.key.flatten(), merged)
            written += 1
    finally:
        writer.close()
        if demultiplexer is not None:
            demultiplexer.close()

    logger.info(f"Process totals: fragments={screener.counts.raw}, merged={written}")
    return written


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
            "Screen a lane for known index/barcode combinations and merge paired reads.\n"
            "Positional arguments: R1 R2 I1 I2 OUTPUT_ROOT, or R1 R2 OUTPUT_ROOT with\n"
            "--fixed-i5/--fixed-i7. FASTQ inputs may be gzipped."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("inputs", nargs="+", metavar="FILE", help="FASTQ inputs followed by the output root")

    # Reference sets
    refs = p.add_argument_group("Reference Sets")
    refs.add_argument("-i", "--i5-indices", required=True, help="i5 index sets, one per line")
    refs.add_argument("-j", "--i7-indices", required=True, help="i7 index sets, one per line")
    refs.add_argument(
        "-b",
        "--barcodes",
        required=True,
        help="Barcode sets, one per line with ':'-delimited members",
    )
    refs.add_argument(
        "--hamming-distance",
        type=int,
        default=1,
        help="Max Hamming distance for index or barcode match (default: 1)",
    )
    refs.add_argument("--fixed-i5", default=None, help="Assume every fragment has this i5 label")
    refs.add_argument("--fixed-i7", default=None, help="Assume every fragment has this i7 label")
    refs.add_argument(
        "--reverse-complement-i5",
        action="store_true",
        help="Reverse complement the i5 index read before matching",
    )

    # Merging
    merging = p.add_argument_group("Merging")
    merging.add_argument("-m", "--mismatch-penalty-max", type=int, default=3, help="Max allowable penalty")
    merging.add_argument(
        "--mismatch-penalty-high",
        type=int,
        default=3,
        help="Penalty for a mismatch between high quality bases",
    )
    merging.add_argument(
        "--mismatch-penalty-low",
        type=int,
        default=1,
        help="Penalty for a mismatch involving a low quality base",
    )
    merging.add_argument(
        "--mismatch-quality-threshold",
        type=int,
        default=20,
        help="Quality at or above which a base counts as high quality",
    )
    merging.add_argument("-o", "--minimum-overlap", type=int, default=15, help="Minimum read overlap")
    merging.add_argument("-l", "--minimum-length", type=int, default=30, help="Minimum merged length")

    # Outputs
    outputs = p.add_argument_group("Outputs")
    outputs.add_argument(
        "-n",
        "--number-output-files",
        type=int,
        default=25,
        help="Number of files to spread merged reads over",
    )
    outputs.add_argument("-r", "--read-group-file", default="read_group", help="Output file for read group")
    outputs.add_argument(
        "--statistics",
        default=None,
        help="Per-experiment count table (TSV; default: <OUTPUT_ROOT>.stats.tsv)",
    )
    outputs.add_argument(
        "-z",
        "--positive-oligo",
        default=None,
        help="Count merged reads matching this positive control sequence",
    )
    outputs.add_argument(
        "--demultiplex-dir",
        type=Path,
        default=None,
        help="Also write merged reads into one file per experiment key here",
    )
    outputs.add_argument(
        "--max-open-files",
        type=int,
        default=64,
        help="Max simultaneously open demultiplexed outputs (default: 64)",
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
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting screening run.")

    try:
        params = MergeParameters(
            max_penalty=args.mismatch_penalty_max,
            mismatch_penalty_low=args.mismatch_penalty_low,
            mismatch_penalty_high=args.mismatch_penalty_high,
            quality_threshold=args.mismatch_quality_threshold,
            min_overlap=args.minimum_overlap,
            min_merged_length=args.minimum_length,
        )
        config = ScreenConfig(
            num_output_files=args.number_output_files,
            reverse_complement_i5=args.reverse_complement_i5,
            positive_oligo=args.positive_oligo,
            fixed_i5=args.fixed_i5,
            fixed_i7=args.fixed_i7,
            max_open_files=args.max_open_files,
            demultiplex_dir=args.demultiplex_dir,
        )
    except ValidationError as exc:
        logger.error(f"Invalid screening configuration: {exc}")
        sys.exit(1)
    logger.debug(f"MergeParameters: {params}")
    logger.debug(f"ScreenConfig: {config}")

    expected = 3 if config.fixed_indices else 5
    if len(args.inputs) != expected:
        parser.error(f"expected {expected} positional arguments, got {len(args.inputs)}")
    *fastqs, output_root = args.inputs
    r1_path, r2_path = fastqs[0], fastqs[1]
    i1_path, i2_path = (None, None) if config.fixed_indices else (fastqs[2], fastqs[3])

    try:
        screener = Screener(
            Matcher.from_file(args.i5_indices, args.hamming_distance),
            Matcher.from_file(args.i7_indices, args.hamming_distance),
            Matcher.from_file(args.barcodes, args.hamming_distance),
            params,
            config,
        )
        written = screen_lane(screener, output_root, r1_path, r2_path, i1_path, i2_path)
        statistics = args.statistics or f"{output_root}.stats.tsv"
        screener.counts.write_tsv(statistics, RAW)
        if args.read_group_file is not None and screener.read_group is not None:
            Path(args.read_group_file).write_text(screener.read_group + "\n")
    except (ValueError, OSError) as exc:
        logger.error(f"Screening failed: {exc}")
        sys.exit(1)

    logger.success(
        f"Fragments: {screener.counts.raw} | Merged reads written: {written} | "
        f"Experiment keys: {len(screener.counts.keys())}",
    )
    logger.info("Screening run complete.")


if __name__ == "__main__":
    main()
