"""
Intermediate deletion: fold stages 2-5 into ``2.Processed_Sequences``.

Steps, in order:

1. merge each sample's log fragments into ``Log_Files/<sample>.log``
2. copy extracted host and low-complexity reads into the new directory
3. copy the final processed reads and verify the copy
4. rename the new directory into place and renumber stages 6-8 to 3-5
5. delete the intermediate stage directories

Everything up to and including verification happens in
``2.Processed_Sequences.incomplete``; nothing is renamed or deleted until
the copy has been verified.
"""

import logging
import shutil
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple, Union

from microslurm.layout import (
    COMPACTED_STAGES,
    HOST_SEQUENCES_DIR,
    INTERMEDIATE_STAGES,
    LOG_FILES_DIR,
    LOW_COMPLEXITY_DIR,
    PROCESSED_DIR,
    REMOVED_SEQUENCES_DIR,
    LayoutMode,
    Stage,
    detect_layout_mode,
)
from microslurm.samples import Sample
from microslurm.validation import MicroslurmError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

STAGING_SUFFIX = ".incomplete"

SAMPLE_LOG_HEADER = "*** Log file for sample {key} ***"
MERGE_SECTION = "### Log for merging of paired-end reads"
QC_SECTION = "### Log for quality trimming/filtering of reads"
DECONTAM_SECTION = "### Log for removing host sequences"
ENTROPY_SECTION = "### Log for removing low-complexity sequences"

SECTION_STAGES = {
    MERGE_SECTION: Stage.MERGE,
    QC_SECTION: Stage.QC,
    DECONTAM_SECTION: Stage.DECONTAM,
    ENTROPY_SECTION: Stage.ENTROPY_FILTER,
}

RENUMBERED_STAGES = (Stage.FASTQC_FINAL,) + COMPACTED_STAGES


class CompactionError(MicroslurmError):
    """Compaction could not safely complete."""


def log_fragments(
    pipeline_root: PathLike, key: str, merge_enabled: bool
) -> List[Tuple[str, List[Path]]]:
    """Section headers and the per-stage files merged under each, in order."""
    root = Path(pipeline_root)
    qc = root / Stage.QC.expanded_dir
    decontam = root / Stage.DECONTAM.expanded_dir
    sections = []
    if merge_enabled:
        sections.append((MERGE_SECTION, [root / Stage.MERGE.expanded_dir / f"{key}.log"]))
    sections += [
        (QC_SECTION, [qc / f"{key}.log", qc / f"{key}_stats.txt"]),
        (DECONTAM_SECTION, [decontam / f"{key}.log", decontam / f"{key}_refstats.log"]),
        (ENTROPY_SECTION, [root / Stage.ENTROPY_FILTER.expanded_dir / f"{key}.log"]),
    ]
    return sections


def merge_sample_log(pipeline_root: PathLike, key: str, merge_enabled: bool, dest: Path) -> Path:
    """
    Write one combined log for a sample.

    Each stage's fragments go under that stage's section header; a stage
    with no fragments on disk gets no section at all.
    """
    parts = [SAMPLE_LOG_HEADER.format(key=key), ""]
    for header, fragments in log_fragments(pipeline_root, key, merge_enabled):
        present = [f for f in fragments if f.is_file()]
        if not present:
            logger.debug(f"No '{header}' fragments for sample {key}")
            continue
        parts.append(header)
        for fragment in present:
            parts.append(fragment.read_text().rstrip("\n"))
            parts.append("")
    dest.write_text("\n".join(parts) + "\n")
    return dest


def copy_processed_sequences(source_dir: Path, dest_dir: Path) -> List[Path]:
    """Copy the final ``*fastq.gz`` reads; returns the source files."""
    sources = sorted(p for p in source_dir.glob("*fastq.gz") if p.is_file())
    for src in sources:
        shutil.copy2(src, dest_dir / src.name)
    return sources


def verify_copy(source_dir: Path, dest_dir: Path) -> None:
    """
    Compare the reads in ``dest_dir`` with those in ``source_dir``.

    Raises:
        CompactionError: file names or sizes differ
    """
    source = {p.name: p.stat().st_size for p in source_dir.glob("*fastq.gz") if p.is_file()}
    copied = {p.name: p.stat().st_size for p in dest_dir.glob("*fastq.gz") if p.is_file()}

    problems = []
    missing = sorted(set(source) - set(copied))
    extra = sorted(set(copied) - set(source))
    if missing:
        problems.append(f"not copied: {', '.join(missing)}")
    if extra:
        problems.append(f"unexpected: {', '.join(extra)}")
    for name in sorted(set(source) & set(copied)):
        if source[name] != copied[name]:
            problems.append(f"size mismatch: {name}")
    if problems:
        raise CompactionError(
            "Something went wrong when copying processed sequences to new directory, copied "
            f"sequences do not match original sequences ({'; '.join(problems)}). "
            f"Intermediate directories were left in place; inspect {dest_dir} and retry"
        )


def _finish(root: Path) -> None:
    """Renumber trailing stages and delete intermediate stage directories."""
    for stage in RENUMBERED_STAGES:
        src = root / stage.definition.expanded_dir
        dst = root / stage.definition.compacted_dir
        if not src.is_dir():
            continue
        if dst.exists():
            raise CompactionError(f"Cannot renumber {src.name}: {dst} already exists")
        src.rename(dst)
        logger.debug(f"Renamed {src.name} -> {dst.name}")

    for stage in INTERMEDIATE_STAGES:
        path = root / stage.expanded_dir
        if path.is_dir():
            shutil.rmtree(path)
            logger.debug(f"Removed {path.name}")


def compact(pipeline_root: PathLike, samples: Sequence[Sample], merge_enabled: bool) -> Path:
    """
    Delete intermediate sequence files and reorganize the pipeline tree.

    Calling this on an already compacted tree only completes any
    renumbering or deletion left unfinished.

    Args:
        pipeline_root: Pipeline output tree root
        samples: Samples whose logs are merged
        merge_enabled: Whether stage 2 merged paired reads

    Returns:
        Path to ``2.Processed_Sequences``

    Raises:
        CompactionError: low-complexity output missing or the copy failed
            verification; no stage directory is renamed or deleted
    """
    root = Path(pipeline_root)
    processed = root / PROCESSED_DIR

    if detect_layout_mode(root) is LayoutMode.COMPACTED:
        logger.info(f"{processed} already exists, finishing any remaining reorganization")
        _finish(root)
        return processed

    logger.info("*** Removing intermediate sequence files and reorganizing ***")

    entropy_dir = root / Stage.ENTROPY_FILTER.expanded_dir
    if not entropy_dir.is_dir():
        raise CompactionError(f"Low-complexity filtered sequences not found: {entropy_dir}")

    staging = root / (PROCESSED_DIR + STAGING_SUFFIX)
    if staging.exists():
        logger.warning(f"Removing leftover {staging.name} from an earlier attempt")
        shutil.rmtree(staging)
    (staging / LOG_FILES_DIR).mkdir(parents=True)

    for sample in samples:
        merge_sample_log(root, sample.key, merge_enabled,
                         staging / LOG_FILES_DIR / f"{sample.key}.log")

    extracted: Iterable[Tuple[Path, str]] = (
        (root / Stage.DECONTAM.expanded_dir / HOST_SEQUENCES_DIR, HOST_SEQUENCES_DIR),
        (entropy_dir / REMOVED_SEQUENCES_DIR, LOW_COMPLEXITY_DIR),
    )
    for src, name in extracted:
        if src.is_dir():
            shutil.copytree(src, staging / name)
        else:
            logger.warning(f"{src} not found, nothing to keep for {name}")

    copy_processed_sequences(entropy_dir, staging)
    verify_copy(entropy_dir, staging)

    staging.rename(processed)
    _finish(root)

    logger.info("Intermediate sequences have been removed and pipeline output directory reorganized")
    return processed
