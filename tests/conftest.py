"""Shared fixtures: raw read directories, pipeline trees and a fake scheduler."""

import gzip
import pytest
from pathlib import Path

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from microslurm.layout import HOST_SEQUENCES_DIR, REMOVED_SEQUENCES_DIR, LayoutMode, Stage
from microslurm.scheduler import COMPLETED, FAILED, JobResult, ResourceRequest, Scheduler
from microslurm.stages import StageContext, fastqc_report_name


def write_fastq(path, seqs):
    """Write reads to a (gzipped, by extension) FASTQ file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    text = "".join(f"@read{i}\n{seq}\n+\n{'I' * len(seq)}\n" for i, seq in enumerate(seqs))
    if path.name.endswith(".gz"):
        with gzip.open(path, "wt") as handle:
            handle.write(text)
    else:
        path.write_text(text)
    return path


def bbtools_log(input_reads, result_reads):
    """Minimal BBTools stdout with the Input:/Result: lines the report reads."""
    return (
        "java -ea -Xmx2g -cp bbtools\n"
        f"Input:                  \t{input_reads} reads \t\t{input_reads * 100} bases.\n"
        f"Result:                 \t{result_reads} reads ({result_reads}%) \t"
        f"{result_reads * 100} bases.\n"
        "Time:                         \t0.1 seconds.\n"
    )


QC_STATS = (
    "#File\t{key}_R1.fastq.gz\n"
    "#Total\t10\n"
    "#Matched\t2\t20.00000%\n"
    "#Name\tReads\tReadsPct\n"
    "TruSeq Adapter\t2\t20.000%\n"
)


def make_raw_dir(base, keys, ext="fastq.gz", seqs=("ACGT" * 25,)):
    """Raw input directory holding <key>_R1/<key>_R2 files for each key."""
    raw = Path(base) / "raw"
    raw.mkdir(parents=True, exist_ok=True)
    for key in keys:
        for tag in ("R1", "R2"):
            name = f"{key}_{tag}.{ext}"
            if ext.endswith(".gz"):
                write_fastq(raw / name, seqs)
            else:
                (raw / name).write_text("".join(f"@r\n{s}\n+\n{'I' * len(s)}\n" for s in seqs))
    return raw


def build_expanded_tree(root, keys, merge=False, host_reads=None):
    """
    Expanded pipeline tree as the processing stages leave it.

    Every sample gets QC (10 in, 8 out), decontamination and entropy
    filtering (5 out) outputs. ``host_reads`` maps a key to the number of
    extracted host reads; samples not listed have none.
    """
    root = Path(root)
    host_reads = host_reads or {}
    merge_dir = root / Stage.MERGE.expanded_dir
    qc = root / Stage.QC.expanded_dir
    decontam = root / Stage.DECONTAM.expanded_dir
    entropy = root / Stage.ENTROPY_FILTER.expanded_dir
    for directory in (qc, decontam, entropy, decontam / HOST_SEQUENCES_DIR,
                      entropy / REMOVED_SEQUENCES_DIR):
        directory.mkdir(parents=True, exist_ok=True)
    if merge:
        merge_dir.mkdir(parents=True, exist_ok=True)

    for key in keys:
        if merge:
            (merge_dir / f"{key}.log").write_text(bbtools_log(10, 10))
            write_fastq(merge_dir / f"{key}.fastq.gz", ["ACGT" * 25] * 10)
        (qc / f"{key}.log").write_text(bbtools_log(10, 8))
        (qc / f"{key}_stats.txt").write_text(QC_STATS.format(key=key))
        (decontam / f"{key}.log").write_text(bbtools_log(8, 8))
        (decontam / f"{key}_refstats.log").write_text("#name\tunambiguousReads\nhg\t0\n")
        (entropy / f"{key}.log").write_text(bbtools_log(8, 5))
        if merge:
            write_fastq(qc / f"{key}.fastq.gz", ["ACGT" * 25, "ACGT" * 12 + "AC"])
            write_fastq(decontam / f"{key}.fastq.gz", ["ACGT" * 25, "ACGT" * 12 + "AC"])
            write_fastq(entropy / f"{key}.fastq.gz", ["ACGT" * 25, "ACGT" * 12 + "AC"])
            write_fastq(entropy / REMOVED_SEQUENCES_DIR / f"{key}.fastq.gz", ["AAAA" * 10])
        else:
            for tag in ("R1", "R2"):
                write_fastq(qc / f"{key}_{tag}.fastq.gz", ["ACGT" * 25, "ACGT" * 12 + "AC"])
                write_fastq(decontam / f"{key}_{tag}.fastq.gz", ["ACGT" * 25, "ACGT" * 12 + "AC"])
                write_fastq(entropy / f"{key}_{tag}.fastq.gz", ["ACGT" * 25, "ACGT" * 12 + "AC"])
                write_fastq(entropy / REMOVED_SEQUENCES_DIR / f"{key}_{tag}.fastq.gz",
                            ["AAAA" * 10])
        if host_reads.get(key):
            write_fastq(decontam / HOST_SEQUENCES_DIR / f"{key}.hg_contam_1.fastq.gz",
                        ["GGCC" * 25] * host_reads[key])
    return root


class FakeScheduler(Scheduler):
    """
    Records submitted jobs and fabricates the files BBTools and FastQC
    would write, so stages can run without SLURM or the tools installed.

    ``fail`` maps a job name to the 1-based task indices reported FAILED.
    """

    reads = ["ACGT" * 25, "ACGT" * 12 + "AC"]

    def __init__(self, fail=None):
        self.specs = []
        self.fail = fail or {}

    def submit_and_wait(self, spec):
        self.specs.append(spec)
        states = {}
        for index, commands in enumerate(spec.tasks, 1):
            for command in commands:
                self._simulate(command)
            failed = index in self.fail.get(spec.name, ())
            states[index] = FAILED if failed else COMPLETED
        return JobResult(job_id=str(1000 + len(self.specs)), task_states=states)

    def submitted(self, name):
        return [s for s in self.specs if s.name == name]

    def _simulate(self, command):
        argv = [str(a) for a in command.argv]
        tool = argv[0]
        options = dict(a.split("=", 1) for a in argv[1:] if "=" in a and not a.startswith("-"))

        if tool == "mkdir":
            Path(argv[-1]).mkdir(parents=True, exist_ok=True)
        elif tool == "fastqc":
            out = Path(argv[argv.index("-o") + 1])
            for reads in argv[1:argv.index("-d")]:
                (out / fastqc_report_name(Path(reads))).write_bytes(b"")
        elif tool in ("bbduk.sh", "bbmerge.sh", "bbsplit.sh"):
            if tool == "bbsplit.sh" and "ref" in options:
                (Path(options["path"]) / "ref" / "genome" / "1").mkdir(parents=True, exist_ok=True)
            for name in ("out", "out2", "outu1", "outu2", "outm", "outm2"):
                if name in options:
                    write_fastq(options[name], self.reads)
            if "basename" in options:
                host = options["basename"].replace("%", "hg").replace("#", "1")
                write_fastq(host, ["GGCC" * 25])
            if "stats" in options:
                Path(options["stats"]).write_text(QC_STATS.format(key=Path(options["stats"]).stem))
            if "refstats" in options:
                Path(options["refstats"]).write_text("#name\tunambiguousReads\nhg\t1\n")

        text = self._simulate_profiling(tool, argv)

        if command.stdout is not None:
            if text is None:
                text = bbtools_log(4, 2) if tool.startswith("bb") else f"{tool} done\n"
            mode = "a" if command.append else "w"
            with open(command.stdout, mode) as handle:
                handle.write(text)


    def _simulate_profiling(self, tool, argv):
        """Fabricate profiler outputs; returns stdout text for tools that print tables."""
        def value(flag):
            return Path(argv[argv.index(flag) + 1])

        if tool == "metaphlan":
            if "--bowtie2out" in argv:
                value("--bowtie2out").write_text("read1\tmarker1\n#nreads\t1000\n")
            value("-o").write_text(METAPHLAN_PROFILE)
        elif tool == "merge_metaphlan_tables.py":
            names = "\t".join(Path(a).name[: -len(".tsv")] for a in argv[1:])
            return f"#mpa_vJan21\nclade_name\tNCBI_tax_id\t{names}\nk__Bacteria\t2\t80.0\n"
        elif tool == "kraken2":
            value("--report").write_text("100.00\t10\t0\tR\t1\troot\n")
            value("--output").write_text("C\tread1\t2\t100\t2:66\n")
        elif tool == "bracken":
            value("-w").write_text("100.00\t10\t10\tR\t1\troot\n")
            value("-o").write_text("name\ttaxonomy_id\tnew_est_reads\nE. coli\t562\t10\n")
        elif tool == "kreport2mpa.py":
            value("-o").write_text("k__Bacteria\t10\n")
        elif tool == "combine_mpa.py":
            keys = "\t".join(Path(a).name.split("_bracken")[0] for a in argv[2:argv.index("-o")])
            value("-o").write_text(f"#Classification\t{keys}\nk__Bacteria\t10\t10\n")
        elif tool == "humann":
            out, key = value("--output"), argv[argv.index("--output-basename") + 1]
            for table in ("genefamilies", "pathabundance", "pathcoverage"):
                (out / f"{key}_{table}.tsv").write_text(f"# Gene Family\t{key}_Abundance-RPKs\n")
            temp = out / f"{key}_humann_temp"
            temp.mkdir(exist_ok=True)
            (temp / f"{key}_metaphlan_bugs_list.tsv").write_text(METAPHLAN_PROFILE)
            (temp / f"{key}_metaphlan_bowtie2.txt").write_text("#nreads\t1000\n")
            (temp / f"{key}.log").write_text("humann log\n")
            (temp / f"{key}_diamond_aligned.tsv").write_text("")
        elif tool == "humann_join_tables":
            value("--output").write_text("# Gene Family\tS1_Abundance-RPKs\n")
        return None


METAPHLAN_PROFILE = (
    "#mpa_vJan21_CHOCOPhlAnSGB_202103\n"
    "#metaphlan reads.fastq --input_type fastq\n"
    "#SampleID\tMetaphlan_Analysis\n"
    "#clade_name\tNCBI_tax_id\trelative_abundance\tadditional_species\n"
    "UNKNOWN\t-1\t20.0\t\n"
    "k__Bacteria\t2\t80.0\t\n"
)


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def resources():
    return ResourceRequest(partition="general", time="1:00:00", cpus=4, mem_per_cpu=2000)


@pytest.fixture
def make_context(tmp_path):
    """Factory for stage contexts rooted in a fresh pipeline directory."""

    def factory(raw_dir=None, **kwargs):
        root = tmp_path / "Metagenomic_Pipeline_1_Jan_2024"
        root.mkdir(exist_ok=True)
        settings = dict(
            pipeline_root=root,
            mode=LayoutMode.EXPANDED,
            prog_load="module load bbtools",
            fail_email="user@example.org",
            raw_dir=raw_dir,
        )
        settings.update(kwargs)
        return StageContext(**settings)

    return factory
