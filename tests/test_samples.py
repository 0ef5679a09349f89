"""Tests for raw sample discovery."""

import pytest
from pathlib import Path

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from microslurm.samples import (
    SampleResolutionError,
    SequenceExtension,
    detect_extension,
    resolve_samples,
    sample_key,
)
from microslurm.validation import ValidationError


def touch(directory, *names):
    for name in names:
        (directory / name).write_text("")


class TestSequenceExtension:
    """Test extension detection from file names."""

    def test_gz_before_plain(self):
        """Compressed suffixes win over their uncompressed prefix."""
        assert SequenceExtension.from_filename("a_R1.fastq.gz") is SequenceExtension.FASTQ_GZ
        assert SequenceExtension.from_filename("a_R1.fq.gz") is SequenceExtension.FQ_GZ

    def test_plain(self):
        assert SequenceExtension.from_filename("a_R1.fastq") is SequenceExtension.FASTQ
        assert SequenceExtension.from_filename("a_R1.fq") is SequenceExtension.FQ

    def test_not_sequence(self):
        assert SequenceExtension.from_filename("notes.txt") is None

    def test_suffix(self):
        assert SequenceExtension.FQ_GZ.suffix == ".fq.gz"


class TestSampleKey:
    """Test sample key derivation."""

    def test_prefix_before_tag(self):
        """Illumina lane and chunk suffixes are dropped."""
        assert sample_key("S1_L001_R1_001.fastq.gz") == "S1_L001"

    def test_r2_tag(self):
        assert sample_key("S1_R2.fastq.gz", "_R2") == "S1"

    def test_untagged_name(self):
        """Files without a read tag are keyed by name minus extension."""
        assert sample_key("S1.fastq.gz") == "S1"


class TestDetectExtension:
    """Test per-directory extension convention."""

    def test_single_convention(self, tmp_path):
        touch(tmp_path, "a_R1.fq.gz", "a_R2.fq.gz", "README.txt")
        assert detect_extension(tmp_path) is SequenceExtension.FQ_GZ

    def test_mixed_conventions(self, tmp_path):
        """Mixing .fastq.gz and .fq.gz is rejected."""
        touch(tmp_path, "a_R1.fastq.gz", "a_R2.fq.gz")
        with pytest.raises(SampleResolutionError, match="more than one"):
            detect_extension(tmp_path)

    def test_no_sequences(self, tmp_path):
        touch(tmp_path, "notes.txt")
        with pytest.raises(SampleResolutionError, match="fastq"):
            detect_extension(tmp_path)


class TestResolveSamples:
    """Test ordered (R1, R2) pairing."""

    def test_sorted_pairs(self, tmp_path):
        """Samples come back sorted by R1 path regardless of creation order."""
        touch(tmp_path, "S2_R1.fastq.gz", "S2_R2.fastq.gz", "S1_R2.fastq.gz", "S1_R1.fastq.gz")
        samples = resolve_samples(tmp_path)

        assert [s.key for s in samples] == ["S1", "S2"]
        assert samples[0].r1.name == "S1_R1.fastq.gz"
        assert samples[0].r2.name == "S1_R2.fastq.gz"
        assert samples[0].extension is SequenceExtension.FASTQ_GZ
        assert all(s.is_paired for s in samples)

    def test_order_is_repeatable(self, tmp_path):
        touch(tmp_path, *[f"S{i}_R{r}.fq" for i in (3, 1, 2) for r in (1, 2)])
        assert resolve_samples(tmp_path) == resolve_samples(tmp_path)

    def test_lane_suffixes(self, tmp_path):
        touch(tmp_path, "A_S1_L001_R1_001.fastq.gz", "A_S1_L001_R2_001.fastq.gz")
        (sample,) = resolve_samples(tmp_path)
        assert sample.key == "A_S1_L001"

    def test_missing_r2(self, tmp_path):
        """An R1 without its R2 is fatal."""
        touch(tmp_path, "S1_R1.fastq.gz", "S1_R2.fastq.gz", "S2_R1.fastq.gz")
        with pytest.raises(SampleResolutionError, match="no R2 for S2"):
            resolve_samples(tmp_path)

    def test_untagged_file(self, tmp_path):
        touch(tmp_path, "S1_R1.fastq.gz", "S1_R2.fastq.gz", "S3.fastq.gz")
        with pytest.raises(SampleResolutionError, match="_R1"):
            resolve_samples(tmp_path)

    def test_duplicate_key(self, tmp_path):
        """Two R1 files resolving to the same key are ambiguous."""
        touch(tmp_path, "S1_R1_001.fastq.gz", "S1_R1_002.fastq.gz", "S1_R2_001.fastq.gz")
        with pytest.raises(SampleResolutionError, match="More than one file"):
            resolve_samples(tmp_path)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ValidationError):
            resolve_samples(tmp_path / "missing")
