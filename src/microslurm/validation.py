"""
Argument and precondition validation for pipeline commands.

Every check here runs before any job is submitted. Single-value checks
raise ``ValidationError``; the multi-field checks return a tuple of
(is_valid, errors) so the command line can report every problem at once.
"""

from pathlib import Path
from typing import List, Optional, Tuple, Union

PathLike = Union[str, Path]

HOST_REFERENCE_EXTENSIONS = (".fa", ".fna", ".fasta")

KRAKEN2_DATABASE_FILES = {
    "hash.k2d": "needed for taxonomic profiling",
    "opts.k2d": "needed for taxonomic profiling",
    "taxo.k2d": "needed for taxonomic profiling",
    "database50mers.kmer_distrib": "was bracken-build ran with '-l 50'?",
}


class MicroslurmError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(MicroslurmError):
    """An argument or filesystem precondition is not met."""


def require_directory(path: Optional[PathLike], flag: str, what: str) -> Path:
    """Return ``path`` as a Path, raising if it is unset or not a directory."""
    if path is None or str(path).strip() == "":
        raise ValidationError(f"Argument {flag} is required, please supply {what}")
    resolved = Path(path)
    if not resolved.is_dir():
        raise ValidationError(f"Argument {flag} should be a directory, please supply {what}")
    return resolved


def validate_email(email: Optional[str], flag: str = "-f") -> str:
    """Check the failure notification address (only an '@' is required)."""
    if not email:
        raise ValidationError(
            f"Argument {flag} is required, please supply an email that can be notified "
            "upon failure of any jobs ran during the pipeline"
        )
    if "@" not in email:
        raise ValidationError(
            f"Argument {flag} requires a valid email, please give an email in the form of xxxx@xxxx.xxx"
        )
    return email


def validate_host_reference(path: Optional[PathLike], flag: str = "-r") -> Path:
    """Host reference must be a single uncompressed FASTA file."""
    if path is None or str(path).strip() == "":
        raise ValidationError(
            f"Argument {flag} is required, please supply a host genome reference file in FASTA format"
        )
    reference = Path(path)
    if reference.is_dir():
        raise ValidationError(
            f"Argument {flag} should be a single FASTA file, please supply a host genome "
            "reference file in FASTA format"
        )
    if reference.suffix not in HOST_REFERENCE_EXTENSIONS:
        raise ValidationError(
            "Expecting host genome reference file to be in FASTA format with extension "
            "'.fa', '.fna', or '.fasta'"
        )
    if not reference.is_file():
        raise ValidationError(f"Host genome reference file not found: {reference}")
    return reference


def validate_kraken2_database(path: PathLike, flag: str = "-b") -> Path:
    """Kraken2/Bracken database directory must hold the index sentinel files."""
    database = Path(path)
    if not database.is_dir():
        raise ValidationError(
            f"Argument {flag} should be a directory, please supply the Kraken2 database directory"
        )
    for name, hint in KRAKEN2_DATABASE_FILES.items():
        if not (database / name).is_file():
            raise ValidationError(
                f"Did not find file '{name}' in supplied Kraken2 database directory, {hint}"
            )
    return database


def validate_adapters(path: PathLike, flag: str = "-a") -> Path:
    """The adapters file must be the adapters.fa shipped with BBMerge/BBDuk."""
    adapters = Path(path)
    if adapters.is_dir():
        raise ValidationError(
            f"Argument {flag} should be the path to a single file, not a directory, please supply "
            "path to the adapters.fa file that comes with BBMerge and BBDuk"
        )
    if adapters.name != "adapters.fa":
        raise ValidationError(
            f"path given to {flag} does not contain the file name adapters.fa, please supply the "
            "adapters.fa file that comes with BBMerge and BBDuk to this argument"
        )
    if not adapters.is_file():
        raise ValidationError(f"Adapters file not found: {adapters}")
    return adapters


def validate_merge_options(merge: bool, adapters: Optional[PathLike]) -> Tuple[bool, List[str]]:
    """Merging and the adapters file must be given together."""
    errors: List[str] = []
    if merge and not adapters:
        errors.append("when specifying the -x parameter, the -a parameter must also be specified")
    if adapters and not merge:
        errors.append("when specifying the -a parameter, the -x parameter must also be specified")
    if adapters and merge:
        try:
            validate_adapters(adapters)
        except ValidationError as e:
            errors.append(str(e))
    return len(errors) == 0, errors


def validate_job_settings(
    prog_load: Optional[str],
    fail_email: Optional[str],
    partition: Optional[str],
    time: Optional[str],
    cpus: Optional[str],
    mem_per_cpu: Optional[str],
) -> Tuple[bool, List[str]]:
    """
    Validate the flags every scheduled command needs.

    Args:
        prog_load: Program-loading commands (may be a single space)
        fail_email: Failure notification address
        partition, time, cpus, mem_per_cpu: Raw flag values; None means missing

    Returns:
        Tuple of (is_valid, errors)
    """
    errors: List[str] = []

    if prog_load is None or prog_load == "":
        errors.append(
            "Argument -p is required, please supply a single quoted string of commands needed to "
            "load required programs (can be an empty string ' ' if none required)"
        )

    required = [
        ("-n", "a node partition name to send jobs to", partition),
        ("-t", "a max length of time to run each job for", time),
        ("-k", "the number of cores being requested to run each job", cpus),
        ("-m", "a memory request for each core of each job", mem_per_cpu),
    ]
    for flag, what, value in required:
        if value is None or str(value).strip() == "":
            errors.append(f"Argument {flag} is required, please supply {what}.")

    try:
        validate_email(fail_email)
    except ValidationError as e:
        errors.append(str(e))

    return len(errors) == 0, errors
