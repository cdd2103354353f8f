# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for adnascreen testing.

This module provides shared fixtures for the read screening and alignment
clipping tools: temporary directories, SAM headers and records, FASTQ writers
and reference set files.
"""

import gzip
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

REFERENCE_LENGTH = 100_000


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


def create_sam_header(read_groups: list[dict[str, str]] | None = None) -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    header: dict[str, Any] = {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": "chrT", "LN": REFERENCE_LENGTH}],
        "PG": [{"ID": "test", "PN": "clip_alignments_test", "VN": "0.1.0"}],
    }
    if read_groups:
        header["RG"] = read_groups
    return header


def make_alignment(  # noqa: PLR0913
    header: pysam.AlignmentHeader,
    cigar: str,
    md: str | None,
    reference_start: int = 100,
    query_name: str = "read",
    read_group: str | None = None,
) -> pysam.AlignedSegment:
    """Build a mapped record whose sequence length agrees with `cigar`."""
    aln = pysam.AlignedSegment(header)
    aln.query_name = query_name
    aln.reference_id = 0
    aln.reference_start = reference_start
    aln.mapping_quality = 37
    aln.cigarstring = cigar
    length = aln.infer_query_length()
    aln.query_sequence = ("ACGT" * (length // 4 + 1))[:length]
    aln.query_qualities = pysam.qualitystring_to_array("".join(chr(33 + i % 40) for i in range(length)))
    if md is not None:
        aln.set_tag("MD", md)
    if read_group is not None:
        aln.set_tag("RG", read_group)
    return aln


def write_sam(path: Path, header: dict[str, Any], records: list[dict[str, Any]]) -> Path:
    """Write SAM records described by keyword dicts for `make_alignment`."""
    with pysam.AlignmentFile(str(path), "w", header=header) as sam_file:
        for record in records:
            sam_file.write(make_alignment(sam_file.header, **record))
    return path


def fastq_header(tile: int, x: int, read: int, index: str = "ACGT") -> str:
    return f"@NS500217:348:HTW2FBGXY:1:{tile}:{x}:1041 {read}:N:0:{index}"


def write_fastq(path: Path, records: list[tuple[str, str, str]]) -> Path:
    """Write (header, sequence, quality) records, gzipped when the name ends in .gz."""
    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "wt") as handle:
        for header, sequence, quality in records:
            handle.write(f"{header}\n{sequence}\n+\n{quality}\n")
    return path


def read_fastq_text(path: Path) -> list[list[str]]:
    """Parse a (possibly gzipped) FASTQ into 4-line records."""
    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "rt") as handle:
        lines = handle.read().splitlines()
    return [lines[i : i + 4] for i in range(0, len(lines), 4)]


@pytest.fixture
def reference_sets(temp_dir: Path) -> dict[str, Path]:
    """i5, i7 and barcode reference files for a small screening run."""
    i5 = temp_dir / "i5.txt"
    i5.write_text("AAAAAAA\tA1\nCCCCCCC\tA2\n")
    i7 = temp_dir / "i7.txt"
    i7.write_text("GGGGGGG\tB1\nTTTTTTT\tB2\n")
    barcodes = temp_dir / "barcodes.txt"
    barcodes.write_text("ACGTAC:CATGCA\tQ1\nGATTCA:TCCAGT\tQ2\n")
    return {"i5": i5, "i7": i7, "barcodes": barcodes}


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")


@pytest.fixture
def alignment_factory():
    """`make_alignment` for tests that build records in memory."""
    return make_alignment


@pytest.fixture
def sam_writer():
    """`write_sam` for tests that need a SAM file on disk."""
    return write_sam


@pytest.fixture
def fastq_writer():
    """`write_fastq` for tests that need FASTQ input on disk."""
    return write_fastq


@pytest.fixture
def fastq_reader():
    """`read_fastq_text` for checking FASTQ output."""
    return read_fastq_text


@pytest.fixture
def sam_header_factory():
    """`create_sam_header` for tests that declare their own read groups."""
    return create_sam_header


@pytest.fixture
def header_line():
    """`fastq_header` for building Illumina header lines."""
    return fastq_header
