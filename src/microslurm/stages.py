"""
Stage executors: one class per pipeline stage.

Each executor resolves its input and output directories, collects the
per-sample inputs afresh, builds one array job per tool step, submits it
through the scheduler seam and finally checks that every sample produced
its declared outputs. Reorganizing tool outputs (moving extracted reads,
merging per-sample tables) happens in-process between jobs.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Type

from microslurm import tables
from microslurm.layout import (
    HOST_SEQUENCES_DIR,
    MERGED_TABLES_DIR,
    REMOVED_SEQUENCES_DIR,
    InputShape,
    LayoutMode,
    Stage,
    StageInput,
    collect_stage_inputs,
    create_stage_dirs,
    input_shape,
    resolve_io,
)
from microslurm.samples import SequenceExtension
from microslurm.scheduler import Command, JobResult, JobSpec, ResourceRequest, Scheduler
from microslurm.validation import MicroslurmError

logger = logging.getLogger(__name__)

PROFILES_SUFFIX = "_Profiles"
HUMANN_TEMP_SUFFIX = "_humann_temp"
HUMANN_TABLES = ("genefamilies", "pathabundance", "pathcoverage")


class StageFailedError(MicroslurmError):
    """A scheduled job failed or a stage did not produce its outputs."""


@dataclass
class StageContext:
    """Everything about one pipeline run that stage executors need.

    Attributes:
        pipeline_root: Pipeline output tree root
        mode: Layout mode, detected once at start-up
        prog_load: Commands loading the pipeline programs in each job
        fail_email: Address notified by the scheduler on failure
        raw_dir: Directory with the raw paired-end reads
        extension: Extension convention of the raw reads
        merge: Paired reads are merged with BBMerge in stage 2
        join: R1 and R2 are concatenated during low-complexity filtering
        adapters: adapters.fa shipped with BBMerge/BBDuk
        host_reference: Host genome FASTA for decontamination
        kraken2_db: Kraken2/Bracken database; MetaPhlAn is used when None
        chocophlan: ChocoPhlAn nucleotide database for HUMAnN
        uniref: UniRef protein database for HUMAnN
    """
    pipeline_root: Path
    mode: LayoutMode
    prog_load: str
    fail_email: str
    raw_dir: Optional[Path] = None
    extension: SequenceExtension = SequenceExtension.FASTQ_GZ
    merge: bool = False
    join: bool = False
    adapters: Optional[Path] = None
    host_reference: Optional[Path] = None
    kraken2_db: Optional[Path] = None
    chocophlan: Optional[Path] = None
    uniref: Optional[Path] = None


def fastqc_report_name(reads: Path) -> str:
    """Name of the zip FastQC writes for a reads file."""
    ext = SequenceExtension.from_filename(reads.name)
    stem = reads.name[: -len(ext.suffix)] if ext else reads.stem
    return f"{stem}_fastqc.zip"


class StageExecutor(ABC):
    """Base class for stage executors."""

    stage: Stage

    def __init__(self, ctx: StageContext, resources: ResourceRequest, scheduler: Scheduler):
        self.ctx = ctx
        self.resources = resources
        self.scheduler = scheduler
        self.input_dir, self.output_dir = resolve_io(
            self.stage, ctx.pipeline_root, ctx.mode, ctx.raw_dir, ctx.merge
        )

    @property
    def shape(self) -> InputShape:
        return input_shape(self.stage, self.ctx.merge, self.ctx.join)

    @property
    def input_extension(self) -> SequenceExtension:
        if self.ctx.raw_dir is not None and self.input_dir == Path(self.ctx.raw_dir):
            return self.ctx.extension
        return SequenceExtension.FASTQ_GZ

    @property
    def xmx(self) -> str:
        return f"-Xmx{self.resources.max_mem_gb}g"

    def collect_inputs(self) -> List[StageInput]:
        return collect_stage_inputs(self.input_dir, self.shape, self.input_extension)

    def run(self) -> List[StageInput]:
        """Run the stage and check its outputs; returns the inputs processed."""
        create_stage_dirs(self.output_dir)
        inputs = self.collect_inputs()
        logger.info(f"Found {len(inputs)} sample(s) in {self.input_dir}")
        self.execute(inputs)
        self.verify(inputs)
        return inputs

    @abstractmethod
    def execute(self, inputs: List[StageInput]) -> None:
        """Submit the stage's jobs."""

    def expected_outputs(self, item: StageInput) -> List[Path]:
        return [self.log_path(item.key)]

    def verify(self, inputs: Sequence[StageInput]) -> None:
        missing = [
            path for item in inputs for path in self.expected_outputs(item) if not path.exists()
        ]
        if missing:
            shown = ", ".join(str(p.relative_to(self.output_dir)) for p in missing[:10])
            more = f" (and {len(missing) - 10} more)" if len(missing) > 10 else ""
            raise StageFailedError(
                f"Stage '{self.stage.value}' did not produce expected outputs in "
                f"{self.output_dir}: {shown}{more}"
            )

    def submit(
        self,
        name: str,
        tasks: List[List[Command]],
        capture_name: Optional[str] = None,
        array: bool = True,
        labels: Optional[Sequence[str]] = None,
    ) -> JobResult:
        """Submit one job and abort the stage if any of its tasks failed."""
        spec = JobSpec(
            name=name,
            resources=self.resources,
            tasks=tasks,
            log_dir=self.output_dir,
            capture_name=capture_name or name,
            mail_user=self.ctx.fail_email,
            prog_load=self.ctx.prog_load,
            array=array,
        )
        result = self.scheduler.submit_and_wait(spec)
        if not result.succeeded:
            failed = result.failed_tasks
            if labels:
                failed = [labels[i - 1] if 0 < i <= len(labels) else i for i in failed]
            raise StageFailedError(
                f"{name} job {result.job_id} failed for task(s) {', '.join(map(str, failed))}; "
                f"see {self.output_dir / '0.ErrorOut'}"
            )
        return result

    def log_path(self, key: str) -> Path:
        return self.output_dir / f"{key}.log"

    def reads_out(self, key: str, single: bool, directory: Optional[Path] = None) -> List[Path]:
        """Output reads for ``key``: one merged file or an R1/R2 pair."""
        directory = directory or self.output_dir
        if single:
            return [directory / f"{key}.fastq.gz"]
        return [directory / f"{key}_R1.fastq.gz", directory / f"{key}_R2.fastq.gz"]

    def temp_join(self, item: StageInput) -> List[Command]:
        """Commands concatenating a pair into ``<key>.temp.fastq``."""
        temp = self.temp_path(item.key)
        return [Command(["zcat", *item.files], stdout=temp, merge_stderr=False)]

    def temp_path(self, key: str) -> Path:
        return self.output_dir / f"{key}.temp.fastq"

    def single_source(self, item: StageInput) -> Tuple[List[Command], Path, List[Command]]:
        """Pre-commands, the one reads file a tool consumes, and clean-up commands."""
        if len(item.files) == 1:
            return [], item.files[0], []
        temp = self.temp_path(item.key)
        return self.temp_join(item), temp, [Command(["rm", "-f", temp])]


class FastQCExecutor(StageExecutor):
    """FastQC per sample followed by a MultiQC summary of the stage."""

    def execute(self, inputs):
        out = self.output_dir
        tasks = [
            [Command(["fastqc", *item.files, "-d", out, "-o", out], stdout=self.log_path(item.key))]
            for item in inputs
        ]
        self.submit("FastQC", tasks, labels=[i.key for i in inputs])
        self.submit(
            "MultiQC",
            [[Command(["multiqc", out, "-o", out], stdout=out / "multiqc.log")]],
            array=False,
        )

    def expected_outputs(self, item):
        return [self.log_path(item.key)] + [
            self.output_dir / fastqc_report_name(f) for f in item.files
        ]


class InitialFastQCExecutor(FastQCExecutor):
    stage = Stage.FASTQC_INITIAL


class FinalFastQCExecutor(FastQCExecutor):
    stage = Stage.FASTQC_FINAL


class MergeExecutor(StageExecutor):
    """BBMerge: merge overlapping read pairs into single reads."""

    stage = Stage.MERGE

    def execute(self, inputs):
        if self.ctx.adapters is None:
            raise StageFailedError("Merging paired-end reads requires the adapters.fa file")
        tasks = []
        for item in inputs:
            r1, r2 = item.files
            (merged,) = self.reads_out(item.key, single=True)
            tasks.append([Command(
                ["bbmerge.sh", f"in1={r1}", f"in2={r2}", f"out={merged}",
                 f"adapters={self.ctx.adapters}", "rem", "iterations=5", "extend2=20", "ecct",
                 f"t={self.resources.cpus}", self.xmx],
                stdout=self.log_path(item.key),
            )])
        self.submit("Merge", tasks, labels=[i.key for i in inputs])

    def expected_outputs(self, item):
        return self.reads_out(item.key, single=True) + [self.log_path(item.key)]


class QualityControlExecutor(StageExecutor):
    """BBDuk adapter/PhiX removal and quality trimming."""

    stage = Stage.QC

    def stats_path(self, key: str) -> Path:
        return self.output_dir / f"{key}_stats.txt"

    def execute(self, inputs):
        single = self.shape is InputShape.MERGED
        tasks = []
        for item in inputs:
            outs = self.reads_out(item.key, single)
            if single:
                argv = ["bbduk.sh", f"in={item.files[0]}", f"out={outs[0]}",
                        f"stats={self.stats_path(item.key)}",
                        "ftm=5", "qtrim=rl", "trimq=25", "minlen=50", "ref=adapters,phix"]
            else:
                argv = ["bbduk.sh", f"in={item.files[0]}", f"in2={item.files[1]}",
                        f"out={outs[0]}", f"out2={outs[1]}",
                        f"stats={self.stats_path(item.key)}",
                        "ftm=5", "tpe", "tbo", "qtrim=rl", "trimq=25", "minlen=50",
                        "ref=adapters,phix"]
            argv.append(self.xmx)
            tasks.append([Command(argv, stdout=self.log_path(item.key))])
        self.submit("QC", tasks, labels=[i.key for i in inputs])

    def expected_outputs(self, item):
        single = self.shape is InputShape.MERGED
        return self.reads_out(item.key, single) + [
            self.log_path(item.key), self.stats_path(item.key)
        ]


class DecontaminationExecutor(StageExecutor):
    """BBSplit: index the host genome, then split off reads mapping to it."""

    stage = Stage.DECONTAM
    index_log = "Host_Ref_Indexing.log"

    def refstats_path(self, key: str) -> Path:
        return self.output_dir / f"{key}_refstats.log"

    def execute(self, inputs):
        if self.ctx.host_reference is None:
            raise StageFailedError("Removing host sequences requires a host reference genome")
        out = self.output_dir

        logger.info("Indexing host reference genome")
        self.submit(
            "Host_Ref_Indexing",
            [[Command(
                ["bbsplit.sh", f"ref={self.ctx.host_reference}", f"path={out}",
                 f"t={self.resources.cpus}", self.xmx],
                stdout=out / self.index_log,
            )]],
            array=False,
        )

        single = self.shape is InputShape.MERGED
        tasks = []
        for item in inputs:
            outs = self.reads_out(item.key, single)
            if single:
                argv = ["bbsplit.sh", f"in={item.files[0]}", f"out={outs[0]}"]
            else:
                argv = ["bbsplit.sh", f"in1={item.files[0]}", f"in2={item.files[1]}",
                        f"outu1={outs[0]}", f"outu2={outs[1]}"]
            argv += [f"path={out}",
                     f"basename={out / (item.key + '.%_contam_#.fastq.gz')}",
                     f"refstats={self.refstats_path(item.key)}",
                     f"t={self.resources.cpus}", self.xmx]
            tasks.append([Command(argv, stdout=self.log_path(item.key))])
        self.submit("Decontam", tasks, labels=[i.key for i in inputs])

        self.collect_extracted()

    def collect_extracted(self) -> Path:
        """Drop the host index and move extracted host reads aside."""
        out = self.output_dir
        index_dir = out / "ref"
        if index_dir.is_dir():
            shutil.rmtree(index_dir)
        extracted = out / HOST_SEQUENCES_DIR
        extracted.mkdir(exist_ok=True)
        for path in sorted(out.iterdir()):
            if path.is_file() and "contam" in path.name:
                shutil.move(str(path), str(extracted / path.name))
        return extracted

    def expected_outputs(self, item):
        single = self.shape is InputShape.MERGED
        return self.reads_out(item.key, single) + [
            self.log_path(item.key), self.refstats_path(item.key)
        ]


class EntropyFilterExecutor(StageExecutor):
    """BBDuk entropy filter removing low-complexity reads."""

    stage = Stage.ENTROPY_FILTER
    entropy_args = ["entropy=0.01", "entropywindow=50", "entropyk=5"]

    @property
    def single_output(self) -> bool:
        return self.shape in (InputShape.MERGED, InputShape.JOINED)

    def execute(self, inputs):
        removed_dir = self.output_dir / REMOVED_SEQUENCES_DIR
        removed_dir.mkdir(exist_ok=True)

        tasks = []
        for item in inputs:
            outs = self.reads_out(item.key, self.single_output)
            removed = self.reads_out(item.key, self.single_output, removed_dir)
            commands: List[Command] = []
            if self.shape is InputShape.PAIRED:
                argv = ["bbduk.sh", f"in={item.files[0]}", f"in2={item.files[1]}",
                        f"out={outs[0]}", f"out2={outs[1]}",
                        f"outm={removed[0]}", f"outm2={removed[1]}"]
            else:
                source = item.files[0]
                if self.shape is InputShape.JOINED:
                    commands += self.temp_join(item)
                    source = self.temp_path(item.key)
                argv = ["bbduk.sh", f"in={source}", f"out={outs[0]}", f"outm={removed[0]}"]
            argv += self.entropy_args + [self.xmx]
            commands.append(Command(argv, stdout=self.log_path(item.key)))
            if self.shape is InputShape.JOINED:
                commands.append(Command(["rm", "-f", self.temp_path(item.key)]))
            tasks.append(commands)
        self.submit("Entropy_Filter", tasks, labels=[i.key for i in inputs])

    def expected_outputs(self, item):
        return self.reads_out(item.key, self.single_output) + [self.log_path(item.key)]


class TaxonomicProfilingExecutor(StageExecutor):
    """
    Taxonomic profiling with MetaPhlAn, or Kraken2/Bracken when a Kraken2
    database is configured. Per-sample profiles land in ``<key>_Profiles/``
    and are merged into ``Merged_Sample_Tables/``.
    """

    stage = Stage.TAXONOMIC_PROFILING
    metaphlan_merged = ("rel_ab", "rel_ab_w_unknown", "counts")

    @property
    def use_kraken2(self) -> bool:
        return self.ctx.kraken2_db is not None

    @property
    def merged_dir(self) -> Path:
        return self.output_dir / MERGED_TABLES_DIR

    def profiles_dir(self, key: str) -> Path:
        return self.output_dir / f"{key}{PROFILES_SUFFIX}"

    def profile_keys(self) -> List[str]:
        """Sample keys of every ``*_Profiles`` directory, sorted."""
        return sorted(
            p.name[: -len(PROFILES_SUFFIX)]
            for p in self.output_dir.glob(f"*{PROFILES_SUFFIX}") if p.is_dir()
        )

    def execute(self, inputs):
        if self.use_kraken2:
            logger.info("Running Kraken2/Bracken workflow")
            self.run_kraken2(inputs)
        else:
            logger.info("Running MetaPhlAn workflow")
            self.run_metaphlan(inputs)

    # MetaPhlAn

    def run_metaphlan(self, inputs: List[StageInput]) -> None:
        cpus = str(self.resources.cpus)
        tasks = []
        for item in inputs:
            profiles = self.profiles_dir(item.key)
            pre, source, post = self.single_source(item)
            tasks.append(
                [Command(["mkdir", "-p", profiles])] + pre + [Command(
                    ["metaphlan", source, "--input_type", "fastq", "-t", "rel_ab",
                     "--nproc", cpus,
                     "--bowtie2out", profiles / f"{item.key}_metaphlan_bowtie2.txt",
                     "-o", profiles / f"{item.key}_metaphlan_rel_ab.tsv"],
                )] + post
            )
        self.submit("Profiling", tasks, capture_name="Taxonomic_Profiling",
                    labels=[i.key for i in inputs])

        keys = self.profile_keys()
        tasks = []
        for key in keys:
            profiles = self.profiles_dir(key)
            tasks.append([Command(
                ["metaphlan", profiles / f"{key}_metaphlan_bowtie2.txt",
                 "--input_type", "bowtie2out", "-t", "rel_ab", "--unknown_estimation",
                 "--nproc", cpus,
                 "-o", profiles / f"{key}_metaphlan_bugs_list_w_unknown.tsv"],
            )])
        self.submit("get_taxa_counts", tasks, labels=keys)

        self.merged_dir.mkdir(exist_ok=True)
        staged: Dict[str, List[Path]] = {name: [] for name in self.metaphlan_merged}
        for key in keys:
            profiles = self.profiles_dir(key)
            w_unknown = profiles / f"{key}_metaphlan_bugs_list_w_unknown.tsv"
            counts = tables.metaphlan_counts_table(
                w_unknown,
                profiles / f"{key}_metaphlan_bowtie2.txt",
                profiles / f"{key}_metaphlan_rel_ab_w_counts.tsv",
            )
            w_unknown.unlink()

            rel_ab = self.output_dir / f"{key}_metaphlan_rel_ab.tsv"
            shutil.copyfile(profiles / rel_ab.name, rel_ab)
            w_unknown_copy, counts_copy = tables.split_counts_table(counts, self.output_dir, key)
            staged["rel_ab"].append(rel_ab)
            staged["rel_ab_w_unknown"].append(w_unknown_copy)
            staged["counts"].append(counts_copy)

        self._merge_metaphlan_tables(staged)

    def _merge_metaphlan_tables(self, staged: Dict[str, List[Path]]) -> None:
        tasks = [
            [Command(["merge_metaphlan_tables.py", *staged[name]],
                     stdout=self.merged_dir / f"metaphlan_{name}.tsv", merge_stderr=False)]
            for name in self.metaphlan_merged
        ]
        self.submit("Merge_tables", tasks)
        for name in self.metaphlan_merged:
            tables.strip_header_suffix(self.merged_dir / f"metaphlan_{name}.tsv",
                                       f"_metaphlan_{name}")
            for path in staged[name]:
                path.unlink(missing_ok=True)

    # Kraken2 / Bracken

    def run_kraken2(self, inputs: List[StageInput]) -> None:
        db = self.ctx.kraken2_db
        tasks = []
        for item in inputs:
            key = item.key
            profiles = self.profiles_dir(key)
            log = profiles / f"{key}.log"
            reads = list(item.files)
            if len(reads) == 2:
                reads.append("--paired")
            tasks.append([
                Command(["mkdir", "-p", profiles]),
                Command(
                    ["kraken2", *reads, "--db", db, "--threads", str(self.resources.cpus),
                     "--confidence", "0.5", "--minimum-base-quality", "0",
                     "--minimum-hit-groups", "3",
                     "--report", profiles / f"{key}_kraken2_report.tsv",
                     "--report-zero-counts", "--use-names", "--gzip-compressed",
                     "--unclassified-out", profiles / f"{key}_kraken2_unclassified#.fastq",
                     "--output", profiles / f"{key}_kraken2_classified.tsv"],
                    stdout=log,
                ),
                Command(
                    ["bracken", "-d", db, "-i", profiles / f"{key}_kraken2_report.tsv",
                     "-r", "50", "-l", "S", "-t", "30",
                     "-w", profiles / f"{key}_bracken_report.tsv",
                     "-o", profiles / f"{key}_bracken_counts.tsv"],
                    stdout=log, append=True,
                ),
                Command(
                    ["kreport2mpa.py", "-r", profiles / f"{key}_bracken_report.tsv",
                     "-o", profiles / f"{key}_bracken_counts_mpa.tsv"],
                ),
            ])
        self.submit("Profiling", tasks, capture_name="Taxonomic_Profiling",
                    labels=[i.key for i in inputs])

        self.merged_dir.mkdir(exist_ok=True)
        staged = []
        for key in self.profile_keys():
            mpa = self.profiles_dir(key) / f"{key}_bracken_counts_mpa.tsv"
            tables.prepend_mpa_header(mpa, key)
            copy = self.output_dir / mpa.name
            shutil.copyfile(mpa, copy)
            staged.append(copy)

        combined = self.merged_dir / "bracken_counts_mpa.tsv"
        self.submit(
            "Merge_tables",
            [[Command(["combine_mpa.py", "-i", *staged, "-o", combined])]],
            array=False,
        )
        tables.fix_combined_mpa_header(combined, Path(db).name)
        for path in staged:
            path.unlink(missing_ok=True)

    def expected_outputs(self, item):
        profiles = self.profiles_dir(item.key)
        if self.use_kraken2:
            return [profiles / f"{item.key}_bracken_counts_mpa.tsv"]
        return [
            profiles / f"{item.key}_metaphlan_rel_ab.tsv",
            profiles / f"{item.key}_metaphlan_rel_ab_w_counts.tsv",
        ]

    def verify(self, inputs):
        super().verify(inputs)
        names = ["bracken_counts_mpa"] if self.use_kraken2 else [
            f"metaphlan_{n}" for n in self.metaphlan_merged
        ]
        missing = [n for n in names if not (self.merged_dir / f"{n}.tsv").is_file()]
        if missing:
            raise StageFailedError(
                f"Merged tables not produced in {self.merged_dir}: {', '.join(missing)}"
            )


class FunctionalProfilingExecutor(StageExecutor):
    """HUMAnN functional profiling with per-sample and merged tables."""

    stage = Stage.FUNCTIONAL_PROFILING

    @property
    def merged_dir(self) -> Path:
        return self.output_dir / MERGED_TABLES_DIR

    def profiles_dir(self, key: str) -> Path:
        return self.output_dir / f"{key}{PROFILES_SUFFIX}"

    def execute(self, inputs):
        if self.ctx.chocophlan is None or self.ctx.uniref is None:
            raise StageFailedError("Functional profiling requires ChocoPhlAn and UniRef databases")
        out = self.output_dir
        tasks = []
        for item in inputs:
            pre, source, post = self.single_source(item)
            tasks.append(pre + [Command(
                ["humann", "--input", source, "--output", out,
                 "--output-basename", item.key,
                 "--nucleotide-database", self.ctx.chocophlan,
                 "--protein-database", self.ctx.uniref,
                 "--metaphlan-options", "-t rel_ab",
                 "--prescreen-threshold", "0.01",
                 "--threads", str(self.resources.cpus),
                 "--verbose"],
                stdout=self.log_path(item.key),
            )] + post)
        self.submit("Profiling", tasks, capture_name="Functional_profiling",
                    labels=[i.key for i in inputs])

        logger.info("Cleaning things up... merging per sample tables and removing unneeded files")
        keys = self.reorganize()
        self.merge_tables(keys)

    def reorganize(self) -> List[str]:
        """Move each sample's HUMAnN outputs into ``<key>_Profiles/``."""
        out = self.output_dir
        keys = []
        for temp_dir in sorted(out.glob(f"*{HUMANN_TEMP_SUFFIX}")):
            if not temp_dir.is_dir():
                continue
            key = temp_dir.name[: -len(HUMANN_TEMP_SUFFIX)]
            profiles = self.profiles_dir(key)
            profiles.mkdir(exist_ok=True)

            for name in (f"{key}_metaphlan_bugs_list.tsv", f"{key}_metaphlan_bowtie2.txt"):
                if (temp_dir / name).exists():
                    shutil.move(str(temp_dir / name), str(profiles / name))
            if (temp_dir / f"{key}.log").exists():
                shutil.move(str(temp_dir / f"{key}.log"), str(profiles / f"{key}_humann.log"))
            shutil.rmtree(temp_dir)

            # exact names only: one key may be a prefix of another
            for path in [out / f"{key}_{table}.tsv" for table in HUMANN_TABLES] + [self.log_path(key)]:
                if path.is_file():
                    shutil.move(str(path), str(profiles / path.name))
            keys.append(key)
        return keys

    def merge_tables(self, keys: List[str]) -> None:
        out = self.output_dir
        self.merged_dir.mkdir(exist_ok=True)

        staged: List[Path] = []
        for key in keys:
            profiles = self.profiles_dir(key)
            for name in [f"{key}_metaphlan_bugs_list.tsv"] + [
                f"{key}_{table}.tsv" for table in HUMANN_TABLES
            ]:
                if (profiles / name).exists():
                    shutil.copyfile(profiles / name, out / name)
                    staged.append(out / name)

        bugs_lists = [p for p in staged if p.name.endswith("_metaphlan_bugs_list.tsv")]
        tasks = [[Command(
            ["merge_metaphlan_tables.py", *bugs_lists],
            stdout=self.merged_dir / "metaphlan_bugs_list.tsv", merge_stderr=False,
        )]]
        for table in HUMANN_TABLES:
            tasks.append([Command(
                ["humann_join_tables", "--input", out,
                 "--output", self.merged_dir / f"humann_{table}.tsv",
                 "--file_name", f"{table}.tsv"],
            )])
        self.submit("Merge_tables", tasks)

        tables.strip_header_suffix(self.merged_dir / "metaphlan_bugs_list.tsv",
                                   "_metaphlan_bugs_list")
        for path in staged:
            path.unlink(missing_ok=True)

    def expected_outputs(self, item):
        profiles = self.profiles_dir(item.key)
        return [profiles / f"{item.key}_{table}.tsv" for table in HUMANN_TABLES]

    def verify(self, inputs):
        super().verify(inputs)
        names = ["metaphlan_bugs_list"] + [f"humann_{t}" for t in HUMANN_TABLES]
        missing = [n for n in names if not (self.merged_dir / f"{n}.tsv").is_file()]
        if missing:
            raise StageFailedError(
                f"Merged tables not produced in {self.merged_dir}: {', '.join(missing)}"
            )


EXECUTORS: Dict[Stage, Type[StageExecutor]] = {
    Stage.FASTQC_INITIAL: InitialFastQCExecutor,
    Stage.MERGE: MergeExecutor,
    Stage.QC: QualityControlExecutor,
    Stage.DECONTAM: DecontaminationExecutor,
    Stage.ENTROPY_FILTER: EntropyFilterExecutor,
    Stage.FASTQC_FINAL: FinalFastQCExecutor,
    Stage.TAXONOMIC_PROFILING: TaxonomicProfilingExecutor,
    Stage.FUNCTIONAL_PROFILING: FunctionalProfilingExecutor,
}


def build_executor(
    stage: Stage, ctx: StageContext, resources: ResourceRequest, scheduler: Scheduler
) -> StageExecutor:
    return EXECUTORS[stage](ctx, resources, scheduler)

