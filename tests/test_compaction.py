"""Tests for intermediate deletion and tree reorganization."""

import pytest
from pathlib import Path
from unittest.mock import patch

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import build_expanded_tree
from microslurm.compaction import (
    DECONTAM_SECTION,
    MERGE_SECTION,
    QC_SECTION,
    SAMPLE_LOG_HEADER,
    CompactionError,
    compact,
    merge_sample_log,
    verify_copy,
)
from microslurm.layout import LayoutMode, Stage, create_stage_dirs, detect_layout_mode
from microslurm.samples import Sample, SequenceExtension


def samples_for(*keys):
    return [
        Sample(key, Path(f"{key}_R1.fastq.gz"), Path(f"{key}_R2.fastq.gz"),
               SequenceExtension.FASTQ_GZ)
        for key in keys
    ]


def add_profiling_dirs(root):
    for stage in (Stage.FASTQC_FINAL, Stage.TAXONOMIC_PROFILING, Stage.FUNCTIONAL_PROFILING):
        create_stage_dirs(root / stage.expanded_dir)


class TestMergeSampleLog:
    """Test per-sample log merging."""

    def test_sections_in_order(self, tmp_path):
        build_expanded_tree(tmp_path, ["S1"], merge=True)
        dest = merge_sample_log(tmp_path, "S1", True, tmp_path / "S1.log")
        text = dest.read_text()

        assert text.startswith(SAMPLE_LOG_HEADER.format(key="S1"))
        assert text.index(MERGE_SECTION) < text.index(QC_SECTION) < text.index(DECONTAM_SECTION)
        assert "#File\tS1_R1.fastq.gz" in text
        assert "unambiguousReads" in text

    def test_no_merge_section_without_merge(self, tmp_path):
        build_expanded_tree(tmp_path, ["S1"])
        text = merge_sample_log(tmp_path, "S1", False, tmp_path / "S1.log").read_text()
        assert MERGE_SECTION not in text

    def test_missing_stage_has_no_section(self, tmp_path):
        """A stage with no fragments on disk contributes no header."""
        build_expanded_tree(tmp_path, ["S1"])
        for path in (tmp_path / Stage.DECONTAM.expanded_dir).glob("S1*"):
            path.unlink()
        text = merge_sample_log(tmp_path, "S1", False, tmp_path / "S1.log").read_text()
        assert DECONTAM_SECTION not in text
        assert QC_SECTION in text


class TestVerifyCopy:
    """Test copy verification."""

    def test_identical(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        for d in ("a", "b"):
            (tmp_path / d / "S1.fastq.gz").write_bytes(b"1234")
        verify_copy(tmp_path / "a", tmp_path / "b")

    def test_size_mismatch(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        (tmp_path / "a" / "S1.fastq.gz").write_bytes(b"1234")
        (tmp_path / "b" / "S1.fastq.gz").write_bytes(b"12")
        with pytest.raises(CompactionError, match="size mismatch"):
            verify_copy(tmp_path / "a", tmp_path / "b")

    def test_missing_file(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        (tmp_path / "a" / "S1_R1.fastq.gz").write_bytes(b"1")
        with pytest.raises(CompactionError, match="not copied"):
            verify_copy(tmp_path / "a", tmp_path / "b")


class TestCompact:
    """Test the full compaction."""

    def test_compacts_tree(self, tmp_path):
        build_expanded_tree(tmp_path, ["S1", "S2"], host_reads={"S1": 2})
        add_profiling_dirs(tmp_path)

        processed = compact(tmp_path, samples_for("S1", "S2"), merge_enabled=False)

        assert detect_layout_mode(tmp_path) is LayoutMode.COMPACTED
        assert sorted(p.name for p in processed.glob("*.fastq.gz")) == [
            "S1_R1.fastq.gz", "S1_R2.fastq.gz", "S2_R1.fastq.gz", "S2_R2.fastq.gz"
        ]
        assert (processed / "Log_Files" / "S2.log").exists()
        assert (processed / "Extracted_Host_Sequences" / "S1.hg_contam_1.fastq.gz").exists()
        assert (processed / "Extracted_Low_Complexity_Sequences" / "S1_R1.fastq.gz").exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "2.Processed_Sequences", "3.FastQC_Final_Reports",
            "4.Taxonomic_Profiling", "5.Functional_Profiling",
        ]

    def test_failed_verification_keeps_intermediates(self, tmp_path):
        """Nothing is renamed or deleted when the copied reads do not match."""
        build_expanded_tree(tmp_path, ["S1"])
        add_profiling_dirs(tmp_path)

        with patch("microslurm.compaction.copy_processed_sequences", return_value=[]):
            with pytest.raises(CompactionError, match="do not match"):
                compact(tmp_path, samples_for("S1"), merge_enabled=False)

        for stage in (Stage.QC, Stage.DECONTAM, Stage.ENTROPY_FILTER):
            assert (tmp_path / stage.expanded_dir).is_dir()
        assert (tmp_path / "6.FastQC_Final_Reports").is_dir()
        assert not (tmp_path / "2.Processed_Sequences").exists()
        assert detect_layout_mode(tmp_path) is LayoutMode.EXPANDED

    def test_retry_after_failure(self, tmp_path):
        """A leftover staging directory is replaced on the next attempt."""
        build_expanded_tree(tmp_path, ["S1"])
        with patch("microslurm.compaction.copy_processed_sequences", return_value=[]):
            with pytest.raises(CompactionError):
                compact(tmp_path, samples_for("S1"), merge_enabled=False)

        compact(tmp_path, samples_for("S1"), merge_enabled=False)
        assert (tmp_path / "2.Processed_Sequences" / "S1_R1.fastq.gz").exists()
        assert not (tmp_path / "2.Processed_Sequences.incomplete").exists()

    def test_already_compacted_finishes(self, tmp_path):
        """An interrupted reorganization is completed on re-run."""
        (tmp_path / "2.Processed_Sequences").mkdir()
        create_stage_dirs(tmp_path / "7.Taxonomic_Profiling")
        (tmp_path / "4.Decontaminated_Sequences").mkdir()

        compact(tmp_path, samples_for("S1"), merge_enabled=False)

        assert (tmp_path / "4.Taxonomic_Profiling").is_dir()
        assert not (tmp_path / "7.Taxonomic_Profiling").exists()
        assert not (tmp_path / "4.Decontaminated_Sequences").exists()

    def test_requires_filtered_sequences(self, tmp_path):
        with pytest.raises(CompactionError, match="Low-complexity"):
            compact(tmp_path, samples_for("S1"), merge_enabled=False)
