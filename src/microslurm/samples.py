"""
Sample discovery for raw paired-end sequence directories.

The order returned here is the array-index order used by every stage, so
it must be the same every time the directory is listed: samples are
sorted lexicographically by their raw R1 path.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from microslurm.validation import ValidationError

logger = logging.getLogger(__name__)

R1_TAG = "_R1"
R2_TAG = "_R2"


class SampleResolutionError(ValidationError):
    """The raw input directory cannot be turned into an ordered sample list."""


class SequenceExtension(Enum):
    """File extension conventions accepted for raw reads."""
    FASTQ_GZ = "fastq.gz"
    FASTQ = "fastq"
    FQ_GZ = "fq.gz"
    FQ = "fq"

    @property
    def suffix(self) -> str:
        return "." + self.value

    @classmethod
    def from_filename(cls, name: str) -> Optional["SequenceExtension"]:
        """Return the convention a file name uses, or None."""
        # Compressed variants first so "x.fastq.gz" is not read as "x.fastq"
        for ext in (cls.FASTQ_GZ, cls.FQ_GZ, cls.FASTQ, cls.FQ):
            if name.endswith(ext.suffix):
                return ext
        return None


@dataclass(frozen=True)
class Sample:
    """A sequenced sample as discovered in the raw input directory.

    Attributes:
        key: Sample identifier used to name every per-sample output
        r1: Path to the forward (or merged) reads
        r2: Path to the reverse reads, None for pre-merged input
        extension: Extension convention of the raw files
    """
    key: str
    r1: Path
    r2: Optional[Path]
    extension: SequenceExtension

    @property
    def is_paired(self) -> bool:
        return self.r2 is not None


def sample_key(filename: str, tag: str = R1_TAG) -> str:
    """
    Derive the canonical sample key from a raw file name.

    Paired files are keyed by the text before the first read tag
    ("S1_L001_R1_001.fastq.gz" -> "S1_L001"); files without the tag are
    keyed by the name without its sequence extension.
    """
    name = Path(filename).name
    if tag in name:
        return name.split(tag, 1)[0]
    ext = SequenceExtension.from_filename(name)
    if ext is not None:
        return name[: -len(ext.suffix)]
    return name


def detect_extension(input_dir: Path) -> SequenceExtension:
    """
    Determine the single extension convention used in ``input_dir``.

    Raises:
        SampleResolutionError: no sequence files, or more than one convention
    """
    found = set()
    for path in input_dir.iterdir():
        if not path.is_file():
            continue
        ext = SequenceExtension.from_filename(path.name)
        if ext is None:
            logger.debug(f"Ignoring non-sequence file: {path.name}")
            continue
        found.add(ext)

    if not found:
        raise SampleResolutionError(
            "Sequences in input directory should have file extension of either .fastq[.gz] OR .fq[.gz]"
        )
    if len(found) > 1:
        names = ", ".join(sorted("." + ext.value for ext in found))
        raise SampleResolutionError(
            f"Sequences in input directory use more than one file extension ({names}), "
            "please use a single convention"
        )
    return found.pop()


def resolve_samples(input_dir: Union[str, Path]) -> List[Sample]:
    """
    Enumerate the ordered (R1, R2) sample pairs in a raw input directory.

    Args:
        input_dir: Directory holding raw paired-end fastq files

    Returns:
        Samples sorted by raw R1 path

    Raises:
        SampleResolutionError: missing directory, unrecognized or mixed
            extensions, or R1/R2 files that do not pair up by sample key
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise SampleResolutionError(
            f"Input directory not found, please supply a directory with input fastq files: {input_dir}"
        )

    extension = detect_extension(input_dir)

    forward: Dict[str, Path] = {}
    reverse: Dict[str, Path] = {}
    unpaired: List[str] = []

    for path in sorted(input_dir.glob(f"*{extension.suffix}")):
        if not path.is_file():
            continue
        if R1_TAG in path.name:
            table, key = forward, sample_key(path.name, R1_TAG)
        elif R2_TAG in path.name:
            table, key = reverse, sample_key(path.name, R2_TAG)
        else:
            unpaired.append(path.name)
            continue
        if key in table:
            raise SampleResolutionError(
                f"More than one file maps to sample '{key}': {table[key].name}, {path.name}"
            )
        table[key] = path

    if unpaired:
        raise SampleResolutionError(
            "Sequences in input directory expected to be paired-end Illumina sequence fastq files "
            f"whose file names contain the strings '_R1' and '_R2': {', '.join(unpaired)}"
        )

    if set(forward) != set(reverse):
        missing_r2 = sorted(set(forward) - set(reverse))
        missing_r1 = sorted(set(reverse) - set(forward))
        details = []
        if missing_r2:
            details.append(f"no R2 for {', '.join(missing_r2)}")
        if missing_r1:
            details.append(f"no R1 for {', '.join(missing_r1)}")
        raise SampleResolutionError(
            f"R1 and R2 files do not pair up by sample name ({'; '.join(details)})"
        )

    samples = [
        Sample(key=key, r1=forward[key], r2=reverse[key], extension=extension)
        for key in forward
    ]
    samples.sort(key=lambda s: str(s.r1))

    logger.debug(f"Resolved {len(samples)} samples in {input_dir}")
    return samples
