"""
Pipeline report: per-sample summaries of what each processing stage did.

Three tables are produced, each keyed by sample and sorted by sample key:

* mean read length (mean±sd) after each stage
* reads remaining after each stage
* adapter/primer hits found during quality control

Only stages that actually ran contribute columns. Once a stage is present,
every sample must have its files for that stage; a gap is an error rather
than an empty cell.
"""

import gzip
import logging
import math
import re
import zipfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd
from Bio.SeqIO.QualityIO import FastqGeneralIterator

from microslurm.compaction import QC_SECTION, SECTION_STAGES
from microslurm.layout import (
    HOST_SEQUENCES_DIR,
    LOG_FILES_DIR,
    PROCESSED_DIR,
    LayoutMode,
    Stage,
    detect_layout_mode,
)
from microslurm.validation import MicroslurmError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

REPORT_DIR = "Pipeline_Report"
LENGTHS_FILE = "mean_read_length_per_QC_step.txt"
READS_FILE = "remaining_reads_per_step.txt"
ADAPTERS_FILE = "detected_adapters_primers.txt"

SAMPLE = "Sample"
INPUT = "Input"
STAGE_COLUMNS = {
    Stage.QC: "Quality_controlled",
    Stage.DECONTAM: "Decontaminated",
    Stage.ENTROPY_FILTER: "Entropy_filtered",
}
REPORTED_STAGES = tuple(STAGE_COLUMNS)

# Per-stage logs that do not belong to a sample
NON_SAMPLE_LOGS = ("Host_Ref_Indexing", "multiqc")

LENGTH_MODULE = ">>Sequence Length Distribution"
END_MODULE = ">>END_MODULE"


class ReportError(MicroslurmError):
    """Report data is missing or unreadable."""


# Length statistics

def format_number(value: float) -> str:
    """Round to one decimal, dropping a trailing .0 the way R prints it."""
    value = round(value, 1)
    if value == int(value):
        return str(int(value))
    return f"{value:.1f}"


def summarize_lengths(lengths: Sequence[float], counts: Optional[Sequence[int]] = None) -> str:
    """
    Format mean±sd of read lengths.

    With ``counts`` the lengths are histogram bins and both statistics are
    weighted by them. The sample standard deviation is used; with fewer
    than two reads it is reported as 0.
    """
    if counts is None:
        counts = [1] * len(lengths)
    n = sum(counts)
    if n == 0:
        return "0±0"
    mean = sum(v * c for v, c in zip(lengths, counts)) / n
    if n < 2:
        sd = 0.0
    else:
        sd = math.sqrt(sum(c * (v - mean) ** 2 for v, c in zip(lengths, counts)) / (n - 1))
    return f"{format_number(mean)}±{format_number(sd)}"


def parse_length_distribution(fastqc_data: str) -> Tuple[List[float], List[int]]:
    """
    Extract the Sequence Length Distribution module from fastqc_data.txt.

    Range bins such as ``35-39`` are represented by their midpoint.
    """
    lengths: List[float] = []
    counts: List[int] = []
    inside = False
    for line in fastqc_data.splitlines():
        if line.startswith(LENGTH_MODULE):
            inside = True
            continue
        if not inside:
            continue
        if line.startswith(END_MODULE):
            break
        if line.startswith("#") or not line.strip():
            continue
        length, count = line.split("\t")[:2]
        if "-" in length:
            low, high = length.split("-", 1)
            lengths.append((float(low) + float(high)) / 2)
        else:
            lengths.append(float(length))
        counts.append(int(float(count)))
    if not inside:
        raise ReportError("FastQC data has no Sequence Length Distribution module")
    return lengths, counts


def fastqc_zip_lengths(zip_path: Path) -> Tuple[List[float], List[int]]:
    """Read the length histogram out of a FastQC report zip."""
    with zipfile.ZipFile(zip_path) as archive:
        names = [n for n in archive.namelist() if n.endswith("fastqc_data.txt")]
        if not names:
            raise ReportError(f"No fastqc_data.txt in {zip_path}")
        data = archive.read(names[0]).decode()
    return parse_length_distribution(data)


def _open_reads(path: Path):
    if path.name.endswith(".gz"):
        return gzip.open(path, "rt")
    return open(path)


def read_lengths(path: Path) -> List[int]:
    """Length of every record in a FASTQ file."""
    with _open_reads(path) as handle:
        return [len(seq) for _title, seq, _qual in FastqGeneralIterator(handle)]


def count_reads(paths: Iterable[Path]) -> int:
    total = 0
    for path in paths:
        with _open_reads(path) as handle:
            total += sum(1 for _ in FastqGeneralIterator(handle))
    return total


# Log parsing

def parse_marker(text: str, marker: str) -> int:
    """
    Read count following ``marker`` ("Input:" or "Result:") in a BBTools log.

    Raises:
        ReportError: marker not found or not followed by a number
    """
    for line in text.splitlines():
        tokens = line.split()
        if marker in tokens:
            index = tokens.index(marker)
            if index + 1 < len(tokens):
                try:
                    return int(tokens[index + 1])
                except ValueError:
                    break
    raise ReportError(f"No '{marker}' read count found in log")


def parse_adapter_stats(text: str) -> Dict[str, int]:
    """Adapter/primer name -> reads matched, from a BBDuk stats file."""
    hits: Dict[str, int] = {}
    for line in text.splitlines():
        if not line.strip() or line.startswith("#"):
            continue
        fields = line.split("\t")
        if len(fields) < 2:
            continue
        hits[fields[0].replace(" ", "_")] = int(fields[1])
    return hits


def split_log_sections(text: str) -> Dict[Stage, str]:
    """Split a combined per-sample log into the text of each stage's section."""
    sections: Dict[Stage, List[str]] = {}
    current: Optional[Stage] = None
    for line in text.splitlines():
        if line in SECTION_STAGES:
            current = SECTION_STAGES[line]
            sections[current] = []
        elif current is not None:
            sections[current].append(line)
    return {stage: "\n".join(lines) for stage, lines in sections.items()}


def stats_from_qc_section(text: str) -> str:
    """The BBDuk stats part of a combined QC section (starts at '#File')."""
    match = re.search(r"^#File\b", text, flags=re.MULTILINE)
    return text[match.start():] if match else ""


# Pipeline tree access

class ReportSource:
    """Per-sample report inputs for an expanded pipeline tree."""

    def __init__(self, pipeline_root: Path):
        self.root = pipeline_root
        self.present = [s for s in REPORTED_STAGES if self._sample_logs(s)]

    def stage_dir(self, stage: Stage) -> Path:
        return self.root / stage.expanded_dir

    def _sample_logs(self, stage: Stage) -> List[Path]:
        directory = self.stage_dir(stage)
        if not directory.is_dir():
            return []
        return [
            p for p in directory.glob("*.log")
            if p.is_file() and p.stem not in NON_SAMPLE_LOGS and not p.stem.endswith("_refstats")
        ]

    def samples(self) -> List[str]:
        keys = set()
        for stage in self.present:
            keys.update(p.stem for p in self._sample_logs(stage))
        return sorted(keys)

    def log_text(self, stage: Stage, key: str) -> str:
        path = self.stage_dir(stage) / f"{key}.log"
        if not path.is_file():
            raise ReportError(f"Missing {stage.value} log for sample {key}: {path}")
        return path.read_text()

    def stats_text(self, key: str) -> str:
        path = self.stage_dir(Stage.QC) / f"{key}_stats.txt"
        if not path.is_file():
            raise ReportError(f"Missing quality control stats for sample {key}: {path}")
        return path.read_text()

    def reads_path(self, stage: Stage, key: str) -> Optional[Path]:
        return _sample_reads(self.stage_dir(stage), key)

    def length_stages(self) -> List[Stage]:
        return list(self.present)

    def host_dir(self) -> Path:
        return self.stage_dir(Stage.DECONTAM) / HOST_SEQUENCES_DIR


class CompactedReportSource(ReportSource):
    """Per-sample report inputs for a compacted tree, read from combined logs."""

    def __init__(self, pipeline_root: Path):
        self.root = pipeline_root
        self.log_dir = pipeline_root / PROCESSED_DIR / LOG_FILES_DIR
        self._sections: Dict[str, Dict[Stage, str]] = {}
        for path in sorted(self.log_dir.glob("*.log")) if self.log_dir.is_dir() else []:
            self._sections[path.stem] = split_log_sections(path.read_text())
        found = set()
        for sections in self._sections.values():
            found.update(sections)
        self.present = [s for s in REPORTED_STAGES if s in found]

    def samples(self) -> List[str]:
        return sorted(self._sections)

    def log_text(self, stage: Stage, key: str) -> str:
        text = self._sections.get(key, {}).get(stage)
        if text is None:
            raise ReportError(
                f"Missing {stage.value} section in combined log for sample {key} "
                f"({self.log_dir / (key + '.log')})"
            )
        return text

    def stats_text(self, key: str) -> str:
        stats = stats_from_qc_section(self.log_text(Stage.QC, key))
        if not stats:
            raise ReportError(f"No quality control stats in combined log for sample {key}")
        return stats

    def reads_path(self, stage: Stage, key: str) -> Optional[Path]:
        if stage is Stage.ENTROPY_FILTER:
            return _sample_reads(self.root / PROCESSED_DIR, key)
        return None

    def length_stages(self) -> List[Stage]:
        # Only the final reads survive compaction
        return [s for s in self.present if s is Stage.ENTROPY_FILTER]

    def host_dir(self) -> Path:
        return self.root / PROCESSED_DIR / HOST_SEQUENCES_DIR


def _sample_reads(directory: Path, key: str) -> Optional[Path]:
    for name in (f"{key}.fastq.gz", f"{key}_R1.fastq.gz"):
        if (directory / name).is_file():
            return directory / name
    return None


def initial_fastqc_zip(pipeline_root: Path, key: str) -> Optional[Path]:
    """FastQC report of a sample's raw R1 reads, if the initial FastQC stage ran."""
    directory = pipeline_root / Stage.FASTQC_INITIAL.expanded_dir
    if not directory.is_dir():
        return None
    candidates = sorted(directory.glob(f"{key}_R1*_fastqc.zip"))
    return candidates[0] if candidates else None


def host_read_count(host_dir: Path, key: str) -> int:
    """Reads BBSplit extracted as host for one sample."""
    files = sorted(
        p for p in host_dir.glob(f"{key}.*") if p.is_file() and "contam" in p.name
    ) if host_dir.is_dir() else []
    if not files:
        logger.warning(f"No extracted host sequences found for sample {key} in {host_dir}")
        return 0
    return count_reads(files)


# Table builders

def _lengths_table(source: ReportSource, keys: List[str]) -> pd.DataFrame:
    reports = {key: initial_fastqc_zip(source.root, key) for key in keys}
    has_input = any(reports.values())
    stages = source.length_stages()
    columns = [SAMPLE] + ([INPUT] if has_input else []) + [STAGE_COLUMNS[s] for s in stages]

    rows = []
    for key in keys:
        row = {SAMPLE: key}
        if has_input:
            if reports[key] is None:
                raise ReportError(f"Missing initial FastQC report for sample {key}")
            row[INPUT] = summarize_lengths(*fastqc_zip_lengths(reports[key]))
        for stage in stages:
            reads = source.reads_path(stage, key)
            if reads is None:
                raise ReportError(f"Missing {stage.value} sequences for sample {key}")
            row[STAGE_COLUMNS[stage]] = summarize_lengths(read_lengths(reads))
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)


def _reads_table(source: ReportSource, keys: List[str]) -> pd.DataFrame:
    present = source.present
    columns = [SAMPLE]
    if Stage.QC in present:
        columns += [INPUT, STAGE_COLUMNS[Stage.QC]]
    if Stage.DECONTAM in present and Stage.QC in present:
        columns.append(STAGE_COLUMNS[Stage.DECONTAM])
    if Stage.ENTROPY_FILTER in present:
        columns.append(STAGE_COLUMNS[Stage.ENTROPY_FILTER])

    rows = []
    for key in keys:
        row = {SAMPLE: key}
        if Stage.QC in present:
            qc_log = source.log_text(Stage.QC, key)
            row[INPUT] = parse_marker(qc_log, "Input:")
            row[STAGE_COLUMNS[Stage.QC]] = parse_marker(qc_log, "Result:")
            if Stage.DECONTAM in present:
                source.log_text(Stage.DECONTAM, key)
                row[STAGE_COLUMNS[Stage.DECONTAM]] = (
                    row[STAGE_COLUMNS[Stage.QC]] - host_read_count(source.host_dir(), key)
                )
        if Stage.ENTROPY_FILTER in present:
            row[STAGE_COLUMNS[Stage.ENTROPY_FILTER]] = parse_marker(
                source.log_text(Stage.ENTROPY_FILTER, key), "Result:"
            )
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)


def _adapters_table(source: ReportSource, keys: List[str]) -> pd.DataFrame:
    if Stage.QC not in source.present:
        return pd.DataFrame(columns=[SAMPLE])

    rows = []
    names = set()
    for key in keys:
        hits = parse_adapter_stats(source.stats_text(key))
        names.update(hits)
        row = {SAMPLE: key, INPUT: parse_marker(source.log_text(Stage.QC, key), "Input:")}
        row.update(hits)
        rows.append(row)

    columns = [SAMPLE, INPUT] + sorted(names)
    table = pd.DataFrame(rows, columns=columns)
    if names:
        table[sorted(names)] = table[sorted(names)].fillna(0).astype(int)
    return table


def build_report(
    pipeline_root: PathLike, mode: Optional[LayoutMode] = None
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Assemble the three report tables for a pipeline tree.

    Args:
        pipeline_root: Pipeline output tree root
        mode: Layout mode; detected from the filesystem when None

    Returns:
        Tuple of (mean lengths, reads remaining, detected adapters)

    Raises:
        ReportError: no processing stage found, or a sample lacks a file
            for a stage that ran
    """
    root = Path(pipeline_root)
    if mode is None:
        mode = detect_layout_mode(root)
    source = CompactedReportSource(root) if mode is LayoutMode.COMPACTED else ReportSource(root)

    if not source.present:
        raise ReportError(f"No quality control, decontamination or filtering logs found in {root}")
    keys = source.samples()
    logger.info(f"Building report for {len(keys)} sample(s) from stages: "
                f"{', '.join(s.value for s in source.present)}")

    lengths = _lengths_table(source, keys)
    reads = _reads_table(source, keys)
    adapters = _adapters_table(source, keys)
    return tuple(t.sort_values(SAMPLE).reset_index(drop=True) for t in (lengths, reads, adapters))


def write_report(pipeline_root: PathLike, mode: Optional[LayoutMode] = None) -> Path:
    """Build the report tables and write them under ``Pipeline_Report/``."""
    root = Path(pipeline_root)
    lengths, reads, adapters = build_report(root, mode)

    report_dir = root / REPORT_DIR
    report_dir.mkdir(exist_ok=True)
    for table, name in ((lengths, LENGTHS_FILE), (reads, READS_FILE), (adapters, ADAPTERS_FILE)):
        table.to_csv(report_dir / name, sep="\t", index=False)
    logger.info(f"Pipeline report written to {report_dir}")
    return report_dir
