"""Tests for the validation module."""

import pytest
from pathlib import Path

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from microslurm.validation import (
    KRAKEN2_DATABASE_FILES,
    ValidationError,
    require_directory,
    validate_adapters,
    validate_email,
    validate_host_reference,
    validate_job_settings,
    validate_kraken2_database,
    validate_merge_options,
)


class TestRequireDirectory:
    """Tests for require_directory."""

    def test_existing(self, tmp_path):
        assert require_directory(str(tmp_path), "-i", "input") == tmp_path

    def test_missing_argument(self):
        with pytest.raises(ValidationError, match="Argument -i is required"):
            require_directory(None, "-i", "input")

    def test_not_a_directory(self, tmp_path):
        path = tmp_path / "file.txt"
        path.write_text("")
        with pytest.raises(ValidationError, match="should be a directory"):
            require_directory(path, "-c", "ChocoPhlAn")


class TestValidateEmail:
    """Tests for validate_email."""

    def test_valid(self):
        assert validate_email("user@example.org") == "user@example.org"

    def test_missing(self):
        with pytest.raises(ValidationError, match="-f is required"):
            validate_email(None)

    def test_no_at_sign(self):
        """An address without '@' is rejected before anything is submitted."""
        with pytest.raises(ValidationError, match="valid email"):
            validate_email("user.example.org")


class TestValidateHostReference:
    """Tests for validate_host_reference."""

    def test_fasta(self, tmp_path):
        ref = tmp_path / "host.fna"
        ref.write_text(">chr1\nACGT\n")
        assert validate_host_reference(ref) == ref

    def test_compressed_rejected(self, tmp_path):
        ref = tmp_path / "host.fa.gz"
        ref.write_text("")
        with pytest.raises(ValidationError, match="FASTA format"):
            validate_host_reference(ref)

    def test_directory_rejected(self, tmp_path):
        with pytest.raises(ValidationError, match="single FASTA file"):
            validate_host_reference(tmp_path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            validate_host_reference(tmp_path / "host.fa")


class TestValidateKraken2Database:
    """Tests for validate_kraken2_database."""

    def test_complete(self, tmp_path):
        for name in KRAKEN2_DATABASE_FILES:
            (tmp_path / name).write_text("")
        assert validate_kraken2_database(tmp_path) == tmp_path

    def test_missing_distribution(self, tmp_path):
        """A database built without bracken-build -l 50 is rejected."""
        for name in ("hash.k2d", "opts.k2d", "taxo.k2d"):
            (tmp_path / name).write_text("")
        with pytest.raises(ValidationError, match="bracken-build"):
            validate_kraken2_database(tmp_path)


class TestMergeOptions:
    """Tests for -x / -a consistency."""

    def test_both(self, tmp_path):
        adapters = tmp_path / "adapters.fa"
        adapters.write_text(">a\nACGT\n")
        assert validate_merge_options(True, adapters) == (True, [])

    def test_neither(self):
        assert validate_merge_options(False, None) == (True, [])

    def test_merge_without_adapters(self):
        is_valid, errors = validate_merge_options(True, None)
        assert not is_valid
        assert "-a parameter must also be specified" in errors[0]

    def test_adapters_without_merge(self, tmp_path):
        is_valid, errors = validate_merge_options(False, tmp_path / "adapters.fa")
        assert not is_valid

    def test_wrong_adapters_name(self, tmp_path):
        other = tmp_path / "primers.fa"
        other.write_text("")
        with pytest.raises(ValidationError, match="adapters.fa"):
            validate_adapters(other)


class TestJobSettings:
    """Tests for validate_job_settings."""

    def test_valid(self):
        assert validate_job_settings(" ", "u@x.org", "general", "1:00:00", "4", "2000") == (True, [])

    def test_reports_every_problem(self):
        is_valid, errors = validate_job_settings(None, None, None, None, None, None)
        assert not is_valid
        assert len(errors) == 6
        assert any("-p" in e for e in errors)
        assert any("-k" in e for e in errors)
