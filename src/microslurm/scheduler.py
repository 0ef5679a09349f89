"""
Job descriptions and the scheduler submission seam.

Stages describe their work as ``JobSpec`` objects: a resource request plus
one list of commands per array task. A ``Scheduler`` turns a spec into a
running job, blocks until every task has finished and reports per-task
states in a ``JobResult``.

``SlurmScheduler`` serializes specs to batch scripts and submits them with
``sbatch --wait``. ``LocalScheduler`` runs the same tasks on this machine,
one after another, with ``SLURM_ARRAY_TASK_ID`` set the way SLURM would.
"""

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from microslurm.layout import ERROR_LOG_DIR, STDOUT_LOG_DIR
from microslurm.validation import MicroslurmError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

COMPLETED = "COMPLETED"
FAILED = "FAILED"
UNKNOWN = "UNKNOWN"


class SubmissionError(MicroslurmError):
    """The scheduler did not accept a job."""


@dataclass(frozen=True)
class ResourceRequest:
    """Scheduler resources for every task of one job.

    Attributes:
        partition: Node partition to submit to
        time: Wall-clock limit in any format sbatch accepts
        cpus: Cores per task
        mem_per_cpu: Memory per core in megabytes
    """
    partition: str
    time: str
    cpus: int
    mem_per_cpu: int

    @property
    def max_mem_gb(self) -> int:
        """Java heap size (GB) handed to BBTools via -Xmx."""
        return max(1, self.mem_per_cpu * self.cpus // 1000)


@dataclass(frozen=True)
class Command:
    """One command line, optionally redirecting stdout to a file.

    Attributes:
        argv: Program and arguments
        stdout: File receiving standard output, None to leave it alone
        append: Append to ``stdout`` instead of truncating it
        merge_stderr: Send standard error to the same file as stdout
    """
    argv: Sequence[str]
    stdout: Optional[Path] = None
    append: bool = False
    merge_stderr: bool = True

    def render(self) -> str:
        """Render as a single shell line."""
        line = " ".join(shlex.quote(str(a)) for a in self.argv)
        if self.stdout is not None:
            op = ">>" if self.append else ">"
            line += f" {op} {shlex.quote(str(self.stdout))}"
            if self.merge_stderr:
                line += " 2>&1"
        return line


@dataclass
class JobSpec:
    """
    A schedulable unit of work.

    ``tasks`` holds one command list per array task; the array size is
    ``len(tasks)``. A non-array job must have exactly one task.

    Attributes:
        name: Scheduler job name
        resources: Resource request shared by every task
        tasks: Commands for each task, in array-index order
        log_dir: Stage directory holding the ``0.ErrorOut``/``0.Output`` folders
        capture_name: Prefix for scheduler-captured stderr/stdout files
        mail_user: Address notified on failure
        prog_load: Shell commands run before the task commands
        array: Submit as an array job
    """
    name: str
    resources: ResourceRequest
    tasks: List[List[Command]]
    log_dir: Path
    capture_name: str
    mail_user: Optional[str] = None
    prog_load: Optional[str] = None
    array: bool = True

    def __post_init__(self):
        if not self.tasks:
            raise ValueError(f"Job '{self.name}' has no tasks")
        if not self.array and len(self.tasks) != 1:
            raise ValueError(f"Non-array job '{self.name}' must have exactly one task")

    @property
    def size(self) -> int:
        return len(self.tasks)

    def capture_paths(self, job_id: str = "%A", task_id: str = "%a") -> Dict[str, Path]:
        """Paths of the stderr/stdout capture files, with SLURM patterns by default."""
        stem = f"{self.capture_name}_{job_id}_{task_id}" if self.array else self.capture_name
        return {
            "error": Path(self.log_dir) / ERROR_LOG_DIR / f"{stem}.err",
            "output": Path(self.log_dir) / STDOUT_LOG_DIR / f"{stem}.out",
        }


@dataclass
class JobResult:
    """Outcome of a finished job: the final state of each array task (1-based)."""
    job_id: str
    task_states: Dict[int, str] = field(default_factory=dict)

    @property
    def failed_tasks(self) -> List[int]:
        return sorted(i for i, state in self.task_states.items() if state != COMPLETED)

    @property
    def succeeded(self) -> bool:
        return bool(self.task_states) and not self.failed_tasks


def render_task(commands: Sequence[Command]) -> str:
    return "\n".join(c.render() for c in commands)


class Scheduler(ABC):
    """Submission interface used by every stage."""

    @abstractmethod
    def submit_and_wait(self, spec: JobSpec) -> JobResult:
        """Run ``spec`` and block until all of its tasks have finished."""


class SlurmScheduler(Scheduler):
    """
    Submit jobs to SLURM.

    Each submission writes its batch script to a uniquely named file in a
    fresh temporary directory under ``work_dir``, so concurrent pipeline
    invocations never share a descriptor. The directory is removed once
    sbatch returns.
    """

    def __init__(
        self,
        sbatch: PathLike = "sbatch",
        sacct: Optional[PathLike] = "sacct",
        work_dir: Optional[PathLike] = None,
    ):
        self.sbatch = str(sbatch)
        self.sacct = str(sacct) if sacct else None
        self.work_dir = Path(work_dir) if work_dir else None

    def render(self, spec: JobSpec) -> str:
        """Serialize a job spec to a batch script."""
        res = spec.resources
        paths = spec.capture_paths()
        lines = [
            "#!/bin/bash",
            f"#SBATCH --partition={res.partition}",
            f"#SBATCH --job-name={spec.name}",
            f"#SBATCH --error={paths['error']}",
            f"#SBATCH --output={paths['output']}",
            f"#SBATCH --time={res.time}",
            "#SBATCH --ntasks=1",
            f"#SBATCH --cpus-per-task={res.cpus}",
            f"#SBATCH --mem-per-cpu={res.mem_per_cpu}",
        ]
        if spec.mail_user:
            lines.append("#SBATCH --mail-type=FAIL")
            lines.append(f"#SBATCH --mail-user={spec.mail_user}")
        if spec.array:
            lines.append(f"#SBATCH --array=1-{spec.size}")
        if spec.prog_load and spec.prog_load.strip():
            lines.append(spec.prog_load)
        lines.append("set -e")

        if spec.array:
            lines.append('case "$SLURM_ARRAY_TASK_ID" in')
            for index, commands in enumerate(spec.tasks, 1):
                lines.append(f"{index})")
                lines.extend("  " + line for line in render_task(commands).splitlines())
                lines.append("  ;;")
            lines.append("*)")
            lines.append('  echo "Unexpected array index $SLURM_ARRAY_TASK_ID" >&2')
            lines.append("  exit 1")
            lines.append("  ;;")
            lines.append("esac")
        else:
            lines.append(render_task(spec.tasks[0]))

        return "\n".join(lines) + "\n"

    def submit_and_wait(self, spec: JobSpec) -> JobResult:
        job_dir = Path(tempfile.mkdtemp(prefix="microslurm_", dir=self.work_dir))
        try:
            with tempfile.NamedTemporaryFile(
                "w", prefix=f"{spec.name}_", suffix=".sh", dir=job_dir, delete=False
            ) as handle:
                handle.write(self.render(spec))
                script = Path(handle.name)
            script.chmod(0o755)

            logger.debug(f"Submitting {spec.name} ({spec.size} task(s)) from {script}")
            try:
                proc = subprocess.run(
                    [self.sbatch, "--parsable", "--wait", str(script)],
                    capture_output=True,
                    text=True,
                )
            except OSError as e:
                raise SubmissionError(f"Could not run {self.sbatch}: {e}") from e
        finally:
            shutil.rmtree(job_dir, ignore_errors=True)

        job_id = proc.stdout.strip().splitlines()[0].split(";")[0] if proc.stdout.strip() else ""
        if not job_id:
            raise SubmissionError(
                f"sbatch rejected job {spec.name}: {proc.stderr.strip() or 'no job id returned'}"
            )

        states = self._query_states(job_id, spec)
        if not states:
            # sacct unavailable: sbatch --wait exits non-zero when any task failed
            state = COMPLETED if proc.returncode == 0 else UNKNOWN
            states = {i: state for i in range(1, spec.size + 1)}
        else:
            # tasks missing from sacct output are unknown
            for i in range(1, spec.size + 1):
                states.setdefault(i, UNKNOWN)

        result = JobResult(job_id=job_id, task_states=states)
        logger.debug(f"Job {job_id} finished: {result.task_states}")
        return result

    def _query_states(self, job_id: str, spec: JobSpec) -> Dict[int, str]:
        """Per-task states from sacct; empty when accounting is unavailable."""
        if not self.sacct:
            return {}
        try:
            proc = subprocess.run(
                [self.sacct, "-j", job_id, "--format=JobID,State,ExitCode",
                 "--noheader", "--parsable2"],
                capture_output=True,
                text=True,
            )
        except OSError as e:
            logger.warning(f"Could not query job states with {self.sacct}: {e}")
            return {}
        if proc.returncode != 0:
            logger.warning(f"sacct failed for job {job_id}: {proc.stderr.strip()}")
            return {}
        return parse_sacct(proc.stdout, job_id, spec.array)


def parse_sacct(text: str, job_id: str, array: bool = True) -> Dict[int, str]:
    """
    Parse ``sacct --parsable2`` output (JobID|State|ExitCode) into task states.

    Job steps (``123_1.batch``) and pending ranges (``123_[2-4]``) are ignored;
    only the allocation line of each task counts.
    """
    states: Dict[int, str] = {}
    for line in text.splitlines():
        parts = line.strip().split("|")
        if len(parts) < 2 or "." in parts[0]:
            continue
        ident, state = parts[0], parts[1].split()[0] if parts[1] else UNKNOWN
        if array:
            prefix = f"{job_id}_"
            if not ident.startswith(prefix):
                continue
            index = ident[len(prefix):]
            if not index.isdigit():
                continue
            states[int(index)] = state
        elif ident == job_id:
            states[1] = state
    return states


class LocalScheduler(Scheduler):
    """
    Run jobs on this machine.

    Tasks run sequentially through bash with ``SLURM_ARRAY_TASK_ID`` set,
    stdout and stderr captured into the stage's capture folders.
    """

    def __init__(self, shell: str = "bash"):
        self.shell = shell
        self._counter = 0

    def submit_and_wait(self, spec: JobSpec) -> JobResult:
        self._counter += 1
        job_id = f"local{os.getpid()}-{self._counter}"
        states: Dict[int, str] = {}

        for index, commands in enumerate(spec.tasks, 1):
            script = "set -e\n"
            if spec.prog_load and spec.prog_load.strip():
                script = spec.prog_load + "\n" + script
            script += render_task(commands) + "\n"

            env = dict(os.environ)
            env["SLURM_ARRAY_TASK_ID"] = str(index)
            env["SLURM_ARRAY_JOB_ID"] = job_id
            env["SLURM_CPUS_PER_TASK"] = str(spec.resources.cpus)

            paths = spec.capture_paths(job_id, str(index))
            for path in paths.values():
                path.parent.mkdir(parents=True, exist_ok=True)

            logger.debug(f"Running {spec.name} task {index}/{spec.size} locally")
            with open(paths["output"], "w") as out, open(paths["error"], "w") as err:
                proc = subprocess.run([self.shell, "-c", script], stdout=out, stderr=err, env=env)
            states[index] = COMPLETED if proc.returncode == 0 else FAILED

        return JobResult(job_id=job_id, task_states=states)
