"""
Codec for the SAM optional field MD.

MD lists reference bases that differ from the read (substitutions) or are
missing from it (deletions, after '^'), separated by counts of matching
positions. Insertions do not appear in MD. The parsed form is a tape with one
marker per reference position covered by M/=/X/D operations.
"""

from __future__ import annotations

import re
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

MD_PATTERN = re.compile(r"[0-9]+(([A-Z]|\^[A-Z]+)[0-9]+)*")
# one token per match count, substitution, or deletion run
MD_TOKEN = re.compile(r"(?P<count>[0-9]+)|(?P<deleted>\^[A-Z]+)|(?P<mismatch>[A-Z])")


class MdFormatError(ValueError):
    """Raised for text that is not a valid MD field."""


class EditKind(Enum):
    MATCH = auto()
    MISMATCH = auto()  # reference base differs from the read
    DELETION = auto()  # reference base absent from the read


class TapeMarker(NamedTuple):
    """One reference position: its edit kind and, for edits, the reference base."""

    kind: EditKind
    base: str = ""
    opens_run: bool = False  # first base after a '^'


MATCH = TapeMarker(EditKind.MATCH)


class EditString:
    """Parsed MD field supporting positional clipping and re-serialization."""

    __slots__ = ("_tape",)

    def __init__(self, tape: Iterable[TapeMarker] = ()) -> None:
        self._tape: tuple[TapeMarker, ...] = tuple(tape)

    @classmethod
    def parse(cls, text: str) -> EditString:
        if MD_PATTERN.fullmatch(text) is None:
            msg = f"Invalid MD field: {text!r}"
            raise MdFormatError(msg)
        tape: list[TapeMarker] = []
        for token in MD_TOKEN.finditer(text):
            if token["count"] is not None:
                tape.extend([MATCH] * int(token["count"]))
            elif token["deleted"] is not None:
                tape.extend(
                    TapeMarker(EditKind.DELETION, base, opens_run=position == 0)
                    for position, base in enumerate(token["deleted"][1:])
                )
            else:
                tape.append(TapeMarker(EditKind.MISMATCH, token["mismatch"]))
        return cls(tape)

    @property
    def tape(self) -> tuple[TapeMarker, ...]:
        return self._tape

    def __len__(self) -> int:
        return len(self._tape)

    def __iter__(self) -> Iterator[TapeMarker]:
        return iter(self._tape)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, EditString):
            return self._tape == other._tape
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._tape)

    def __repr__(self) -> str:
        return f"EditString({str(self)!r})"

    def clip(self, left: int, right: int) -> EditString:
        """
        Drop `left` markers from the start and `right` from the end, whatever
        their kind.
        """
        if left < 0 or right < 0:
            msg = f"Clip counts must be non-negative, got left={left}, right={right}"
            raise ValueError(msg)
        if left + right > len(self._tape):
            msg = f"Cannot clip {left}+{right} positions from an MD tape of length {len(self._tape)}"
            raise ValueError(msg)
        return EditString(self._tape[left : len(self._tape) - right])

    def edit_distance(self) -> int:
        """Substitutions plus deleted reference bases."""
        return sum(marker.kind is not EditKind.MATCH for marker in self._tape)

    def __str__(self) -> str:
        parts: list[str] = []
        matches = 0
        in_deletion = False
        for marker in self._tape:
            match marker.kind:
                case EditKind.MATCH:
                    matches += 1
                    in_deletion = False
                case EditKind.MISMATCH:
                    parts.append(f"{matches}{marker.base}")
                    matches = 0
                    in_deletion = False
                case EditKind.DELETION:
                    if marker.opens_run or not in_deletion:
                        parts.append(f"{matches}^")
                        matches = 0
                        in_deletion = True
                    parts.append(marker.base)
        # MD always ends with a count, possibly 0
        parts.append(str(matches))
        return "".join(parts)
