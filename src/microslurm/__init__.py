"""
microslurm: shotgun metagenomic sequence processing on SLURM

Runs paired-end shotgun metagenomic reads through quality control, host
decontamination, low-complexity filtering and taxonomic/functional
profiling, one SLURM array job per step.
"""

__version__ = "1.0.0"
__author__ = "microslurm developers"

from microslurm.config import Config, get_config
from microslurm.layout import LayoutMode, Stage
from microslurm.logging import get_logger, setup_logging
from microslurm.pipeline import Pipeline, run_stage
from microslurm.samples import Sample, resolve_samples
from microslurm.validation import MicroslurmError, ValidationError

__all__ = [
    "Config",
    "get_config",
    "LayoutMode",
    "Stage",
    "Pipeline",
    "run_stage",
    "Sample",
    "resolve_samples",
    "MicroslurmError",
    "ValidationError",
    "setup_logging",
    "get_logger",
    "__version__",
]
