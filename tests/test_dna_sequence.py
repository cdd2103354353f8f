"""
Unit tests for dna_sequence.py

Covers sequence validation, reverse complement, Hamming distance, quality
tracks, experiment keys, Illumina FASTQ header parsing and reads.
"""

import pytest
from dna_sequence import (
    ExperimentKey,
    FastqHeader,
    FastqHeaderError,
    InvalidSymbolError,
    QualityTrack,
    Read,
    Sequence,
    flatten_label,
)

ILLUMINA_HEADER = "@NS500217:348:HTW2FBGXY:1:11101:23815:1041 1:N:0:GATCAG"


class TestSequence:
    """Test the validated DNA string type."""

    def test_reverse_complement(self):
        assert str(Sequence("ACTGN").reverse_complement()) == "NCAGT"

    def test_lowercase_is_stored_uppercase(self):
        seq = Sequence("actgn")
        assert str(seq) == "ACTGN"
        assert seq == Sequence("ACTGN")
        assert str(seq.reverse_complement()) == "NCAGT"

    def test_invalid_symbol(self):
        with pytest.raises(InvalidSymbolError, match="position 2"):
            Sequence("ACXT")

    def test_invalid_symbol_is_value_error(self):
        with pytest.raises(ValueError):
            Sequence("AC-T")

    def test_empty_sequence(self):
        seq = Sequence("")
        assert len(seq) == 0
        assert str(seq.reverse_complement()) == ""

    def test_hamming_distance(self):
        assert Sequence("TGACGCA").hamming_distance(Sequence("AGACGCA")) == 1
        assert Sequence("TGACGCA").hamming_distance(Sequence("ATCGTGC")) == 7
        assert Sequence("TGACGCA").hamming_distance(Sequence("TGACGCA")) == 0

    @pytest.mark.parametrize("text", ["", "A", "ACGTN", "acgtn", "NNNN", "GATTACAnc"])
    def test_reverse_complement_twice_is_identity(self, text):
        seq = Sequence(text)
        assert seq.reverse_complement().reverse_complement() == seq

    @pytest.mark.parametrize(
        ("left", "right"),
        [("", ""), ("ACGT", "ACGT"), ("ACGTN", "TCGAN"), ("acgtn", "ACGTA"), ("NNNN", "ACGT")],
    )
    def test_hamming_distance_is_symmetric(self, left, right):
        a, b = Sequence(left), Sequence(right)
        assert a.hamming_distance(b) == b.hamming_distance(a)

    def test_hamming_distance_length_mismatch(self):
        with pytest.raises(ValueError, match="equal lengths"):
            Sequence("ACGT").hamming_distance(Sequence("ACG"))

    def test_subrange(self):
        seq = Sequence("ACGTACGT")
        assert str(seq.subrange(2, 5)) == "GTA"
        assert str(seq.subrange(0, 0)) == ""
        assert seq.subrange(0, len(seq)) == seq

    def test_subrange_out_of_bounds(self):
        with pytest.raises(IndexError):
            Sequence("ACGT").subrange(2, 5)
        with pytest.raises(IndexError):
            Sequence("ACGT").subrange(3, 2)

    def test_usable_as_dict_key(self):
        table = {Sequence("acgt"): "x"}
        assert table[Sequence("ACGT")] == "x"


class TestQualityTrack:
    """Test Phred quality tracks."""

    def test_from_text(self):
        quality = QualityTrack.from_text("!+5?I")
        assert list(quality) == [0, 10, 20, 30, 40]
        assert quality.to_text() == "!+5?I"

    def test_invalid_character(self):
        with pytest.raises(InvalidSymbolError):
            QualityTrack.from_text("II I")

    def test_negative_score(self):
        with pytest.raises(InvalidSymbolError):
            QualityTrack([30, -1])

    def test_reverse_and_subrange(self):
        quality = QualityTrack([1, 2, 3, 4])
        assert list(quality.reverse()) == [4, 3, 2, 1]
        assert list(quality.subrange(1, 3)) == [2, 3]

    def test_uniform(self):
        assert QualityTrack.uniform(3, 40) == QualityTrack([40, 40, 40])


class TestExperimentKey:
    """Test experiment key formatting, parsing and flattening."""

    def test_str_with_barcodes(self):
        assert str(ExperimentKey("A1", "B2", "Q1.3", "Q1.4")) == "A1_B2_Q1.3_Q1.4"

    def test_str_without_barcodes(self):
        assert str(ExperimentKey("A1", "B2")) == "A1_B2__"

    def test_parse_round_trip(self):
        key = ExperimentKey("A1", "B2", "Q1.3", "Q1.4")
        assert ExperimentKey.parse(str(key)) == key
        assert ExperimentKey.parse("A1_B2__") == ExperimentKey("A1", "B2")
        assert ExperimentKey.parse("A1_B2") == ExperimentKey("A1", "B2")

    def test_parse_rejects_bad_field_count(self):
        with pytest.raises(ValueError, match="2 to 4 fields"):
            ExperimentKey.parse("A1")
        with pytest.raises(ValueError, match="2 to 4 fields"):
            ExperimentKey.parse("A_B_C_D_E")

    def test_label_with_separator_rejected(self):
        with pytest.raises(ValueError, match="separator"):
            ExperimentKey("A_1", "B2")

    def test_flatten(self):
        key = ExperimentKey("A1", "B2", "Q1.3", "Q2.1")
        assert key.flatten() == ExperimentKey("A1", "B2", "Q1", "Q2")
        assert key.index_only() == ExperimentKey("A1", "B2")

    def test_flatten_label(self):
        assert flatten_label("Q1.3") == "Q1"
        assert flatten_label("Q1") == "Q1"
        assert flatten_label(None) is None


class TestFastqHeader:
    """Test Illumina header parsing and formatting."""

    def test_parse_illumina(self):
        header = FastqHeader.parse(ILLUMINA_HEADER)
        assert header.instrument == "NS500217"
        assert header.run_number == 348
        assert header.flowcell == "HTW2FBGXY"
        assert header.lane == 1
        assert header.tile == 11101
        assert header.x == 23815
        assert header.y == 1041
        assert header.read == 1
        assert header.is_filtered is False
        assert header.control_number == 0
        assert header.index == "GATCAG"
        assert header.key is None
        assert str(header) == ILLUMINA_HEADER

    def test_parse_filtered_flag(self):
        header = FastqHeader.parse("@M1:5:FC:2:3:4:5 2:Y:0:ACGT")
        assert header.is_filtered is True
        assert header.read == 2

    def test_parse_with_umi(self):
        header = FastqHeader.parse("@NS500217:348:HTW2FBGXY:1:11101:23815:1041:ACGTTG 1:N:0:GATCAG")
        assert header.umi == "ACGTTG"
        assert header.name().endswith(":ACGTTG")

    def test_parse_with_key(self):
        line = "@NS500217:348:HTW2FBGXY:1:11101:23815:1041;A1_B2_Q1.1_Q1.2 1:N:0:GATCAG"
        header = FastqHeader.parse(line)
        assert header.key == ExperimentKey("A1", "B2", "Q1.1", "Q1.2")
        assert header.y == 1041
        assert str(header) == line

    def test_key_after_umi_round_trip(self):
        header = FastqHeader.parse("@NS500217:348:HTW2FBGXY:1:11101:23815:1041:ACGTTG;A1_B2__ 1:N:0:GATCAG")
        assert header.umi == "ACGTTG"
        assert header.key == ExperimentKey("A1", "B2")
        assert FastqHeader.parse(str(header)) == header

    def test_parse_sam_to_fastq_form(self):
        header = FastqHeader.parse("@HTW2FBGXYABCDEF:1:11101:23815:1041/2")
        assert header.flowcell == "HTW2FBGXY"
        assert header.lane == 1
        assert header.read == 2

    def test_unparseable(self):
        with pytest.raises(FastqHeaderError):
            FastqHeader.parse("@not a header at all")

    def test_same_fragment_ignores_read_number(self):
        r1 = FastqHeader.parse(ILLUMINA_HEADER)
        r2 = FastqHeader.parse(ILLUMINA_HEADER.replace(" 1:", " 2:"))
        assert r1.same_fragment(r2)

    def test_different_cluster(self):
        r1 = FastqHeader.parse(ILLUMINA_HEADER)
        other = FastqHeader.parse(ILLUMINA_HEADER.replace(":23815:", ":23816:"))
        assert not r1.same_fragment(other)

    def test_read_group_elements(self):
        header = FastqHeader.parse(ILLUMINA_HEADER)
        assert header.read_group_elements() == "PM:NS500217\tPU:HTW2FBGXY.348.1"


class TestRead:
    """Test reads as sequence plus quality plus header."""

    def test_from_text_with_comment(self):
        name, comment = ILLUMINA_HEADER[1:].split(" ")
        read = Read.from_text(name, "ACGT", "IIII", comment)
        assert read.header is not None
        assert read.header.index == "GATCAG"
        assert len(read) == 4

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="length mismatch"):
            Read.from_text(None, "ACGT", "III")

    def test_reverse_complement(self):
        read = Read.from_text(None, "AACG", "!+5?")
        reverse = read.reverse_complement()
        assert str(reverse.sequence) == "CGTT"
        assert list(reverse.quality) == [30, 20, 10, 0]

    def test_trim_trailing_unknown(self):
        read = Read.from_text(None, "ACGTNNN", "IIIIIII")
        assert str(read.trim_trailing_unknown().sequence) == "ACGT"
        assert len(Read.from_text(None, "NNN", "III").trim_trailing_unknown()) == 0

    def test_with_key_and_to_fastq(self):
        read = Read.from_text(ILLUMINA_HEADER, "ACGT", "IIII")
        keyed = read.with_key(ExperimentKey("A1", "B2"))
        lines = keyed.to_fastq().split("\n")
        assert lines[0] == "@NS500217:348:HTW2FBGXY:1:11101:23815:1041;A1_B2__ 1:N:0:GATCAG"
        assert lines[1:] == ["ACGT", "+", "IIII"]

    def test_with_key_requires_header(self):
        read = Read.from_text(None, "ACGT", "IIII")
        with pytest.raises(AssertionError):
            read.with_key(ExperimentKey("A1", "B2"))
