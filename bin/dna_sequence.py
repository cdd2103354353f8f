"""
Nucleotide sequences, per-base qualities, Illumina FASTQ headers and reads.

Everything here is an immutable value type. Derived operations (reverse
complement, sub-ranges, trimming) always return new instances.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

# ------------------------------- CONSTANTS -------------------------------- #

COMPLEMENT = {"A": "T", "C": "G", "G": "C", "T": "A", "N": "N"}
UNKNOWN_BASE = "N"

# Phred+33: '!' is Q0
QUALITY_OFFSET: int = 33

# Separates the read name from an appended experiment key
KEY_SEPARATOR = ";"
# Separates the four labels inside an experiment key; natural in filenames
FIELD_SEPARATOR = "_"
# Separates a barcode set label from a member's position, e.g. Q1.3
INDEX_DELIMITER = "."


class InvalidSymbolError(ValueError):
    """Raised when a sequence or quality string contains an unusable character."""


class FastqHeaderError(ValueError):
    """Raised when a FASTQ header line cannot be parsed."""


# ------------------------------- SEQUENCES -------------------------------- #


class Sequence:
    """Validated DNA string over {A,C,G,T,N}, stored in uppercase."""

    __slots__ = ("_bases",)

    def __init__(self, text: str) -> None:
        bases = text.upper()
        for position, base in enumerate(bases):
            if base not in COMPLEMENT:
                msg = f"Invalid DNA symbol {text[position]!r} at position {position} in {text!r}"
                raise InvalidSymbolError(msg)
        self._bases = bases

    def __str__(self) -> str:
        return self._bases

    def __repr__(self) -> str:
        return f"Sequence({self._bases!r})"

    def __len__(self) -> int:
        return len(self._bases)

    def __getitem__(self, index: int) -> str:
        return self._bases[index]

    def __iter__(self) -> Iterator[str]:
        return iter(self._bases)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Sequence):
            return self._bases == other._bases
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._bases)

    def reverse_complement(self) -> Sequence:
        return Sequence("".join(COMPLEMENT[base] for base in reversed(self._bases)))

    def hamming_distance(self, other: Sequence) -> int:
        """Count differing positions. Both sequences must have the same length."""
        if len(self) != len(other):
            msg = f"Hamming distance needs equal lengths, got {len(self)} and {len(other)}"
            raise ValueError(msg)
        return sum(a != b for a, b in zip(self._bases, other._bases))

    def subrange(self, start: int, end: int) -> Sequence:
        _check_range(start, end, len(self))
        return Sequence(self._bases[start:end])


class QualityTrack:
    """Phred-scale quality scores, one per base."""

    __slots__ = ("_scores",)

    def __init__(self, scores: Iterable[int]) -> None:
        values = tuple(int(score) for score in scores)
        for position, score in enumerate(values):
            if score < 0:
                msg = f"Quality scores must be non-negative, got {score} at position {position}"
                raise InvalidSymbolError(msg)
        self._scores = values

    @classmethod
    def from_text(cls, text: str) -> QualityTrack:
        """Decode a Phred+33 quality string."""
        for position, char in enumerate(text):
            if ord(char) < QUALITY_OFFSET:
                msg = f"Invalid quality character {char!r} at position {position}"
                raise InvalidSymbolError(msg)
        return cls(ord(char) - QUALITY_OFFSET for char in text)

    @classmethod
    def uniform(cls, length: int, score: int) -> QualityTrack:
        return cls([score] * length)

    def to_text(self) -> str:
        return "".join(chr(score + QUALITY_OFFSET) for score in self._scores)

    def __str__(self) -> str:
        return self.to_text()

    def __repr__(self) -> str:
        return f"QualityTrack({self.to_text()!r})"

    def __len__(self) -> int:
        return len(self._scores)

    def __getitem__(self, index: int) -> int:
        return self._scores[index]

    def __iter__(self) -> Iterator[int]:
        return iter(self._scores)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, QualityTrack):
            return self._scores == other._scores
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._scores)

    def reverse(self) -> QualityTrack:
        return QualityTrack(reversed(self._scores))

    def subrange(self, start: int, end: int) -> QualityTrack:
        _check_range(start, end, len(self))
        return QualityTrack(self._scores[start:end])


def _check_range(start: int, end: int, length: int) -> None:
    if not 0 <= start <= end <= length:
        msg = f"Range [{start}, {end}) is outside [0, {length}]"
        raise IndexError(msg)


# ---------------------------- EXPERIMENT KEYS ------------------------------ #


def flatten_label(label: str | None) -> str | None:
    """Drop the position-in-set suffix: 'Q1.3' -> 'Q1'."""
    if label is None:
        return None
    return label.split(INDEX_DELIMITER, 1)[0]


@dataclass(frozen=True)
class ExperimentKey:
    """
    Identity of a fragment's experiment: i5 and i7 index labels plus the
    optional p5 and p7 inline barcode labels.
    """

    i5: str | None
    i7: str | None
    p5: str | None = None
    p7: str | None = None

    def __post_init__(self) -> None:
        for label in (self.i5, self.i7, self.p5, self.p7):
            if label is not None and FIELD_SEPARATOR in label:
                msg = f"Label {label!r} contains the key field separator {FIELD_SEPARATOR!r}"
                raise ValueError(msg)

    @classmethod
    def parse(cls, text: str) -> ExperimentKey:
        fields = text.split(FIELD_SEPARATOR)
        if len(fields) < 2 or len(fields) > 4:  # noqa: PLR2004
            msg = f"Experiment key {text!r} must have 2 to 4 fields"
            raise ValueError(msg)
        fields += [""] * (4 - len(fields))
        i5, i7, p5, p7 = (field or None for field in fields)
        return cls(i5, i7, p5, p7)

    def __str__(self) -> str:
        return FIELD_SEPARATOR.join(label or "" for label in (self.i5, self.i7, self.p5, self.p7))

    def flatten(self) -> ExperimentKey:
        """Remove set positions; these matter for deduplication, not for demultiplexing."""
        return ExperimentKey(
            flatten_label(self.i5),
            flatten_label(self.i7),
            flatten_label(self.p5),
            flatten_label(self.p7),
        )

    def index_only(self) -> ExperimentKey:
        return ExperimentKey(self.i5, self.i7)


# ----------------------------- FASTQ HEADERS ------------------------------- #


@dataclass(frozen=True)
class FastqHeader:
    """
    Illumina read metadata, e.g.

        @NS500217:348:HTW2FBGXY:1:11101:23815:1041 1:N:0:GATCAG

    An experiment key may follow the coordinates after ';'. It is added when
    merged reads are written so that it survives alignment in the read name.
    """

    instrument: str
    run_number: int
    flowcell: str
    lane: int
    tile: int
    x: int
    y: int
    read: int = 0
    is_filtered: bool = False
    control_number: int = 0
    index: str = ""
    umi: str | None = None
    key: ExperimentKey | None = None

    @classmethod
    def parse(cls, line: str) -> FastqHeader:
        text = line[1:] if line.startswith("@") else line
        key = None
        if KEY_SEPARATOR in text:
            begin = text.index(KEY_SEPARATOR)
            end = text.find(" ", begin)
            end = len(text) if end < 0 else end
            key = ExperimentKey.parse(text[begin + 1 : end])
            text = text[:begin] + text[end:]
        try:
            return cls._parse_illumina(text, key)
        except (ValueError, IndexError) as illumina_error:
            try:
                return cls._parse_sam_to_fastq(text, key)
            except (ValueError, IndexError):
                msg = f"Unparseable FASTQ header {line!r}: {illumina_error}"
                raise FastqHeaderError(msg) from illumina_error

    @classmethod
    def _parse_illumina(cls, text: str, key: ExperimentKey | None) -> FastqHeader:
        halves = text.split(" ")
        if len(halves) != 2:  # noqa: PLR2004
            msg = "expected exactly one space between coordinates and read information"
            raise ValueError(msg)
        left = halves[0].split(":")
        right = halves[1].split(":")
        # some providers put flowcell text in the run number field
        run_number = int(left[1]) if left[1].isdigit() else 0
        read = int(right[0]) if right[0].isdigit() else 0
        match right[1]:
            case "Y":
                is_filtered = True
            case "N":
                is_filtered = False
            case other:
                msg = f"unexpected filter flag {other!r}"
                raise ValueError(msg)
        return cls(
            instrument=left[0],
            run_number=run_number,
            flowcell=left[2],
            lane=int(left[3]),
            tile=int(left[4]),
            x=int(left[5]),
            y=int(left[6]),
            umi=left[7] if len(left) > 7 else None,  # noqa: PLR2004
            read=read,
            is_filtered=is_filtered,
            control_number=int(right[2]),
            index=right[3] if len(right) > 3 else "",  # noqa: PLR2004
            key=key,
        )

    @classmethod
    def _parse_sam_to_fastq(cls, text: str, key: ExperimentKey | None) -> FastqHeader:
        # flowcell id with a six character suffix, then lane:tile:x:y/read
        coordinates, read = text.split("/")
        fields = coordinates.split(":")
        return cls(
            instrument="",
            run_number=0,
            flowcell=fields[0][:-6],
            lane=int(fields[1]),
            tile=int(fields[2]),
            x=int(fields[3]),
            y=int(fields[4]),
            read=int(read),
            key=key,
        )

    def same_fragment(self, other: FastqHeader) -> bool:
        """True when both headers describe the same cluster, ignoring the read number."""
        return (
            self.instrument == other.instrument
            and self.run_number == other.run_number
            and self.flowcell == other.flowcell
            and self.lane == other.lane
            and self.tile == other.tile
            and self.x == other.x
            and self.y == other.y
            and (self.key is None or self.key == other.key)
            and (self.umi is None or self.umi == other.umi)
            and self.is_filtered == other.is_filtered
            and self.control_number == other.control_number
            and self.index == other.index
        )

    def read_group_elements(self) -> str:
        """Platform model and platform unit (flowcell.run.lane) for an @RG line."""
        return f"PM:{self.instrument}\tPU:{self.flowcell}.{self.run_number}.{self.lane}"

    def name(self) -> str:
        """Read name as it appears before the first space, without '@'."""
        out = f"{self.instrument}:{self.run_number}:{self.flowcell}:{self.lane}:{self.tile}:{self.x}:{self.y}"
        if self.umi is not None:
            out += f":{self.umi}"
        # key runs up to the space, so it goes last
        if self.key is not None:
            out += f"{KEY_SEPARATOR}{self.key}"
        return out

    def comment(self) -> str:
        return f"{self.read}:{'Y' if self.is_filtered else 'N'}:{self.control_number}:{self.index}"

    def __str__(self) -> str:
        return f"@{self.name()} {self.comment()}"


# --------------------------------- READS ----------------------------------- #


@dataclass(frozen=True)
class Read:
    """A sequence with its qualities and optional provenance header."""

    header: FastqHeader | None
    sequence: Sequence
    quality: QualityTrack

    def __post_init__(self) -> None:
        if len(self.sequence) != len(self.quality):
            msg = (
                f"Sequence/quality length mismatch: "
                f"seq={len(self.sequence)}, qual={len(self.quality)}"
            )
            raise ValueError(msg)

    @classmethod
    def from_text(
        cls,
        name: str | None,
        sequence: str,
        quality: str,
        comment: str | None = None,
    ) -> Read:
        """
        Build a read from FASTQ fields. The header is parsed only when a name is
        given; `comment` is the text after the first space (pysam keeps it apart).
        """
        header = None
        if name:
            line = name if comment is None else f"{name} {comment}"
            header = FastqHeader.parse(line)
        return cls(header, Sequence(sequence), QualityTrack.from_text(quality))

    def __len__(self) -> int:
        return len(self.sequence)

    def reverse_complement(self) -> Read:
        return Read(self.header, self.sequence.reverse_complement(), self.quality.reverse())

    def subrange(self, start: int, end: int) -> Read:
        return Read(self.header, self.sequence.subrange(start, end), self.quality.subrange(start, end))

    def trim_trailing_unknown(self) -> Read:
        """Drop trailing N calls."""
        end = len(self.sequence)
        while end > 0 and self.sequence[end - 1] == UNKNOWN_BASE:
            end -= 1
        return self.subrange(0, end)

    def with_key(self, key: ExperimentKey) -> Read:
        assert self.header is not None, "Only reads with a FASTQ header can carry an experiment key"
        return Read(replace(self.header, key=key), self.sequence, self.quality)

    def to_fastq(self) -> str:
        """Four-line FASTQ record without the trailing newline."""
        header = "@" if self.header is None else str(self.header)
        return f"{header}\n{self.sequence}\n+\n{self.quality}"
