"""
microslurm Configuration Module

Centralized configuration management for the pipeline commands.
Supports environment variables and sensible defaults.

Configuration Priority (highest to lowest):
1. Explicit command-line flags
2. Environment variables
3. Auto-detected defaults

Environment Variables:
    MICROSLURM_PROG_LOAD   - Commands that load the pipeline programs
    MICROSLURM_FAIL_EMAIL  - Address notified by SLURM on job failure
    MICROSLURM_PARTITION   - Default partition for single-partition commands
    MICROSLURM_WORK_DIR    - Directory for transient job descriptors
    MICROSLURM_SBATCH      - Path to sbatch
    MICROSLURM_SACCT       - Path to sacct
    MICROSLURM_LOCAL       - Run jobs locally instead of submitting to SLURM
"""

import os
import shutil
import logging
import tempfile
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Singleton config instance
_config_instance: Optional["Config"] = None

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class Config:
    """
    microslurm configuration container.

    Attributes:
        prog_load: Shell commands run at the top of every job to load programs
        fail_email: Address notified by the scheduler when a job fails
        partition: Default SLURM partition
        work_dir: Parent directory for per-invocation job descriptor directories
        sbatch_path: Path to the sbatch executable
        sacct_path: Path to the sacct executable
        local: Run jobs on the local machine instead of submitting them
    """

    # Job environment
    prog_load: Optional[str] = None
    fail_email: Optional[str] = None
    partition: Optional[str] = None

    # Working directories
    work_dir: Optional[Path] = None

    # Scheduler executables
    sbatch_path: Optional[Path] = None
    sacct_path: Optional[Path] = None
    local: bool = False

    # Internal state
    _initialized: bool = field(default=False, repr=False)

    def __post_init__(self):
        """Initialize configuration from environment and auto-detection."""
        if not self._initialized:
            self._load_from_environment()
            self._auto_detect_paths()
            self._initialized = True

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""

        if os.environ.get("MICROSLURM_PROG_LOAD"):
            self.prog_load = os.environ["MICROSLURM_PROG_LOAD"]
        if os.environ.get("MICROSLURM_FAIL_EMAIL"):
            self.fail_email = os.environ["MICROSLURM_FAIL_EMAIL"]
        if os.environ.get("MICROSLURM_PARTITION"):
            self.partition = os.environ["MICROSLURM_PARTITION"]

        # Working directories
        if os.environ.get("MICROSLURM_WORK_DIR"):
            self.work_dir = Path(os.environ["MICROSLURM_WORK_DIR"])
        elif os.environ.get("SCRATCH_DIR"):
            self.work_dir = Path(os.environ["SCRATCH_DIR"])
        elif os.environ.get("TMPDIR"):
            self.work_dir = Path(os.environ["TMPDIR"])

        # Scheduler
        if os.environ.get("MICROSLURM_SBATCH"):
            self.sbatch_path = Path(os.environ["MICROSLURM_SBATCH"])
        if os.environ.get("MICROSLURM_SACCT"):
            self.sacct_path = Path(os.environ["MICROSLURM_SACCT"])
        if os.environ.get("MICROSLURM_LOCAL"):
            self.local = os.environ["MICROSLURM_LOCAL"].strip().lower() in _TRUE_VALUES

    def _auto_detect_paths(self) -> None:
        """Auto-detect scheduler executables if not explicitly configured."""

        if not self.sbatch_path:
            sbatch_cmd = shutil.which("sbatch")
            if sbatch_cmd:
                self.sbatch_path = Path(sbatch_cmd)

        if not self.sacct_path:
            sacct_cmd = shutil.which("sacct")
            if sacct_cmd:
                self.sacct_path = Path(sacct_cmd)

        if not self.work_dir:
            self.work_dir = Path(tempfile.gettempdir())

    def validate(self, require_scheduler: bool = True) -> tuple[bool, list[str]]:
        """
        Validate configuration.

        Args:
            require_scheduler: Whether sbatch must be available

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        errors = []

        if require_scheduler and not self.local:
            if not self.sbatch_path:
                errors.append("sbatch not found. Set MICROSLURM_SBATCH or ensure sbatch is in PATH.")
            elif not self.sbatch_path.exists():
                errors.append(f"sbatch executable not found: {self.sbatch_path}")

        if self.work_dir and not self.work_dir.is_dir():
            errors.append(f"Working directory not found: {self.work_dir}")

        if self.fail_email and "@" not in self.fail_email:
            errors.append(f"MICROSLURM_FAIL_EMAIL is not an e-mail address: {self.fail_email}")

        return len(errors) == 0, errors

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return {
            "prog_load": self.prog_load,
            "fail_email": self.fail_email,
            "partition": self.partition,
            "work_dir": str(self.work_dir) if self.work_dir else None,
            "sbatch_path": str(self.sbatch_path) if self.sbatch_path else None,
            "sacct_path": str(self.sacct_path) if self.sacct_path else None,
            "local": self.local,
        }

    def to_shell_exports(self) -> str:
        """Generate shell export statements for this configuration."""
        lines = ["# microslurm Configuration Exports"]

        if self.prog_load:
            escaped = self.prog_load.replace('"', '\\"')
            lines.append(f'export MICROSLURM_PROG_LOAD="{escaped}"')
        if self.fail_email:
            lines.append(f'export MICROSLURM_FAIL_EMAIL="{self.fail_email}"')
        if self.partition:
            lines.append(f'export MICROSLURM_PARTITION="{self.partition}"')
        if self.work_dir:
            lines.append(f'export MICROSLURM_WORK_DIR="{self.work_dir}"')
        if self.local:
            lines.append('export MICROSLURM_LOCAL="1"')

        return "\n".join(lines)

    def print_status(self) -> None:
        """Print configuration status to stdout."""
        print("microslurm Configuration Status")
        print("=" * 50)

        def status_icon(path: Optional[Path]) -> str:
            if path is None:
                return "[ ] Not configured"
            elif path.exists():
                return f"[✓] {path}"
            else:
                return f"[✗] {path} (NOT FOUND)"

        print(f"sbatch:      {status_icon(self.sbatch_path)}")
        print(f"sacct:       {status_icon(self.sacct_path)}")
        print(f"Work dir:    {status_icon(self.work_dir)}")
        print(f"Partition:   {self.partition or '(per command)'}")
        print(f"Fail email:  {self.fail_email or '(per command)'}")
        print(f"Local mode:  {'yes' if self.local else 'no'}")
        print("=" * 50)


def get_config() -> Config:
    """
    Get the global configuration instance.

    Returns:
        Config: The singleton configuration instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance


def reset_config() -> None:
    """Reset the global configuration instance (useful for testing)."""
    global _config_instance
    _config_instance = None
