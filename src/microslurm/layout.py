"""
Stage directory layout for a pipeline output tree.

A pipeline root holds one numbered directory per stage. Two numbering
schemes coexist:

* EXPANDED  - the eight stage directories as the pipeline creates them
* COMPACTED - after intermediate deletion: processed reads live under
  ``2.Processed_Sequences`` and the trailing stages are renumbered 3..5

The mode is detected once from the presence of ``2.Processed_Sequences``
and passed explicitly to everything that needs directory names.
"""

import datetime
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from microslurm.samples import R1_TAG, R2_TAG, SequenceExtension, sample_key
from microslurm.validation import MicroslurmError, ValidationError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

PROCESSED_DIR = "2.Processed_Sequences"
LOG_FILES_DIR = "Log_Files"
HOST_SEQUENCES_DIR = "Extracted_Host_Sequences"
LOW_COMPLEXITY_DIR = "Extracted_Low_Complexity_Sequences"
REMOVED_SEQUENCES_DIR = "Removed_Sequences"
MERGED_TABLES_DIR = "Merged_Sample_Tables"
ERROR_LOG_DIR = "0.ErrorOut"
STDOUT_LOG_DIR = "0.Output"
PIPELINE_ROOT_PREFIX = "Metagenomic_Pipeline"


class LayoutError(MicroslurmError):
    """A stage cannot be addressed in the current layout."""


class StageInputError(MicroslurmError):
    """A stage found nothing to fan out over in its input directory."""


class Stage(Enum):
    """Pipeline stages in execution order."""
    FASTQC_INITIAL = "fastqc_initial"
    MERGE = "merge"
    QC = "qc"
    DECONTAM = "decontam"
    ENTROPY_FILTER = "entropy_filter"
    FASTQC_FINAL = "fastqc_final"
    TAXONOMIC_PROFILING = "taxonomic_profiling"
    FUNCTIONAL_PROFILING = "functional_profiling"

    @property
    def definition(self) -> "StageDef":
        return STAGE_DEFS[self]

    @property
    def ordinal(self) -> int:
        return self.definition.ordinal

    @property
    def expanded_dir(self) -> str:
        return self.definition.expanded_dir


class LayoutMode(Enum):
    """Which numbering scheme a pipeline root uses."""
    EXPANDED = "expanded"
    COMPACTED = "compacted"


class InputShape(Enum):
    """How a stage consumes the files of one sample."""
    MERGED = "merged"    # one <key>.fastq.gz per sample
    PAIRED = "paired"    # <key>_R1 / <key>_R2 consumed as two files
    JOINED = "joined"    # R1 and R2 concatenated into a temp file first


@dataclass(frozen=True)
class StageDef:
    """Static description of one stage.

    Attributes:
        ordinal: Position in the pipeline (1..8)
        expanded_dir: Output directory name in the expanded layout
        compacted_dir: Output directory name after compaction, None if the
            stage is folded into ``2.Processed_Sequences``
        input_stage: Stage whose output feeds this one, None for raw reads
        title: Human readable name used in banners
        job_name: Prefix for scheduler job names and capture files
    """
    ordinal: int
    expanded_dir: str
    compacted_dir: Optional[str]
    input_stage: Optional[Stage]
    title: str
    job_name: str


STAGE_DEFS: Dict[Stage, StageDef] = {
    Stage.FASTQC_INITIAL: StageDef(
        1, "1.FastQC_Initial_Reports", "1.FastQC_Initial_Reports", None,
        "initial FastQC reports", "FastQC"),
    Stage.MERGE: StageDef(
        2, "2.Merged_Paired_End_Sequences", None, None,
        "merging of paired-end reads", "Merge"),
    Stage.QC: StageDef(
        3, "3.Quality_Controlled_Sequences", None, Stage.MERGE,
        "quality trimming/filtering of reads", "QC"),
    Stage.DECONTAM: StageDef(
        4, "4.Decontaminated_Sequences", None, Stage.QC,
        "removal of host sequences", "Decontam"),
    Stage.ENTROPY_FILTER: StageDef(
        5, "5.Low_Complexity_Filtered_Sequences", None, Stage.DECONTAM,
        "low-complexity sequence filtering", "Entropy_Filter"),
    Stage.FASTQC_FINAL: StageDef(
        6, "6.FastQC_Final_Reports", "3.FastQC_Final_Reports", Stage.ENTROPY_FILTER,
        "final FastQC reports", "FastQC"),
    Stage.TAXONOMIC_PROFILING: StageDef(
        7, "7.Taxonomic_Profiling", "4.Taxonomic_Profiling", Stage.ENTROPY_FILTER,
        "taxonomic profiling", "Taxonomic_Profiling"),
    Stage.FUNCTIONAL_PROFILING: StageDef(
        8, "8.Functional_Profiling", "5.Functional_Profiling", Stage.ENTROPY_FILTER,
        "functional profiling", "Functional_Profiling"),
}

# Stages whose work is folded into 2.Processed_Sequences by compaction
INTERMEDIATE_STAGES = (Stage.MERGE, Stage.QC, Stage.DECONTAM, Stage.ENTROPY_FILTER)

# Stages that may be named in a skip list; merging is switched on explicitly
SKIPPABLE_STAGES = tuple(s for s in Stage if s is not Stage.MERGE)

COMPACTED_STAGES = (Stage.TAXONOMIC_PROFILING, Stage.FUNCTIONAL_PROFILING)


def detect_layout_mode(pipeline_root: PathLike) -> LayoutMode:
    """Return COMPACTED when ``2.Processed_Sequences`` exists under the root."""
    if (Path(pipeline_root) / PROCESSED_DIR).is_dir():
        return LayoutMode.COMPACTED
    return LayoutMode.EXPANDED


def output_dir(stage: Stage, pipeline_root: PathLike, mode: LayoutMode) -> Path:
    """Output directory of ``stage`` in the given layout."""
    root = Path(pipeline_root)
    if mode is LayoutMode.EXPANDED:
        return root / stage.definition.expanded_dir
    if stage not in COMPACTED_STAGES:
        raise LayoutError(
            f"Stage '{stage.value}' is not addressable in a compacted pipeline directory "
            f"({root / PROCESSED_DIR} exists)"
        )
    return root / stage.definition.compacted_dir


def resolve_io(
    stage: Stage,
    pipeline_root: PathLike,
    mode: Optional[LayoutMode] = None,
    raw_dir: Optional[PathLike] = None,
    merge: bool = False,
) -> Tuple[Path, Path]:
    """
    Map a stage to its (input directory, output directory).

    Args:
        stage: Stage being resolved
        pipeline_root: Pipeline output tree root
        mode: Layout mode; detected from the filesystem when None
        raw_dir: Raw read directory, required by stages reading raw reads
        merge: Whether paired reads were merged in stage 2

    Returns:
        Tuple of (input_dir, output_dir)

    Raises:
        LayoutError: stage not addressable in ``mode``, or raw input needed
            and ``raw_dir`` not given
    """
    root = Path(pipeline_root)
    if mode is None:
        mode = detect_layout_mode(root)

    out_dir = output_dir(stage, root, mode)

    if mode is LayoutMode.COMPACTED:
        return root / PROCESSED_DIR, out_dir

    source = stage.definition.input_stage
    if source is Stage.MERGE and not merge:
        source = None

    if source is None:
        if raw_dir is None:
            raise LayoutError(
                f"Stage '{stage.value}' reads raw sequences, please supply the input directory"
            )
        return Path(raw_dir), out_dir

    return root / source.definition.expanded_dir, out_dir


def create_stage_dirs(out_dir: PathLike) -> Path:
    """Create a stage output directory with its scheduler capture folders."""
    out_dir = Path(out_dir)
    for sub in (ERROR_LOG_DIR, STDOUT_LOG_DIR):
        (out_dir / sub).mkdir(parents=True, exist_ok=True)
    return out_dir


def pipeline_root_name(date: Optional[datetime.date] = None) -> str:
    """Name of the result directory for a run started on ``date``."""
    date = date or datetime.date.today()
    return f"{PIPELINE_ROOT_PREFIX}_{date.day}_{date.strftime('%b')}_{date.year}"


def create_pipeline_root(out_dir: PathLike, date: Optional[datetime.date] = None) -> Path:
    """
    Create (if needed) the dated pipeline result directory under ``out_dir``.

    Re-running on the same day reuses the existing directory.
    """
    out_dir = Path(out_dir)
    if not out_dir.is_dir():
        raise ValidationError(f"Output directory not found: {out_dir}")
    root = out_dir / pipeline_root_name(date)
    if root.is_dir():
        logger.info(f"Using existing pipeline result directory {root}")
    else:
        root.mkdir()
        logger.info(f"Created pipeline result directory {root}")
    return root


def input_shape(stage: Stage, merge: bool = False, join: bool = False) -> InputShape:
    """
    How ``stage`` consumes each sample's files.

    Raw-read stages always see pairs. Once reads are merged every later
    stage sees single files; joining happens in the entropy filter, so the
    filter itself concatenates and its successors see single files.
    """
    if stage in (Stage.FASTQC_INITIAL, Stage.MERGE):
        return InputShape.PAIRED
    if merge:
        return InputShape.MERGED
    if stage in (Stage.QC, Stage.DECONTAM):
        return InputShape.PAIRED
    if stage is Stage.ENTROPY_FILTER:
        return InputShape.JOINED if join else InputShape.PAIRED
    if join:
        return InputShape.MERGED
    if stage is Stage.FUNCTIONAL_PROFILING:
        return InputShape.JOINED
    return InputShape.PAIRED


@dataclass(frozen=True)
class StageInput:
    """The file(s) one array task consumes."""
    key: str
    files: Tuple[Path, ...]


def collect_stage_inputs(
    input_dir: PathLike,
    shape: InputShape,
    extension: SequenceExtension = SequenceExtension.FASTQ_GZ,
) -> List[StageInput]:
    """
    List the per-sample inputs in ``input_dir``, in array-index order.

    The directory is globbed afresh on every call so the array size always
    matches what is on disk at submission time.

    Raises:
        StageInputError: directory missing, no matching files, or R1/R2
            files that do not pair up
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise StageInputError(f"Input directory not found: {input_dir}")

    suffix = extension.suffix
    if shape is InputShape.MERGED:
        files = sorted(p for p in input_dir.glob(f"*{suffix}") if p.is_file())
        inputs = [StageInput(p.name[: -len(suffix)], (p,)) for p in files]
    else:
        forward = sorted(p for p in input_dir.glob(f"*{R1_TAG}*{suffix}") if p.is_file())
        reverse = {
            sample_key(p.name, R2_TAG): p
            for p in input_dir.glob(f"*{R2_TAG}*{suffix}") if p.is_file()
        }
        inputs = []
        for r1 in forward:
            key = sample_key(r1.name, R1_TAG)
            r2 = reverse.pop(key, None)
            if r2 is None:
                raise StageInputError(f"No R2 file found for sample '{key}' in {input_dir}")
            inputs.append(StageInput(key, (r1, r2)))
        if reverse:
            raise StageInputError(
                f"No R1 file found for sample(s) {', '.join(sorted(reverse))} in {input_dir}"
            )

    if not inputs:
        raise StageInputError(f"No *{suffix} sequence files found in {input_dir}")
    return inputs


def parse_skip_list(value: Union[None, str, Iterable[str]]) -> Set[Stage]:
    """
    Parse a comma-separated skip list into stages.

    Names are matched case-insensitively ("QC" and "qc" both work).

    Raises:
        ValidationError: an entry is not a skippable stage name
    """
    if value is None:
        return set()
    names = value.split(",") if isinstance(value, str) else list(value)
    lookup = {s.value: s for s in SKIPPABLE_STAGES}
    skipped: Set[Stage] = set()
    for name in names:
        name = name.strip()
        if not name:
            continue
        stage = lookup.get(name.lower())
        if stage is None:
            allowed = ", ".join(s.value for s in SKIPPABLE_STAGES)
            raise ValidationError(
                f"Argument -s given an unknown stage '{name}', please supply a comma separated "
                f"list of stages to skip from: {allowed}"
            )
        skipped.add(stage)
    return skipped
