"""
microslurm Command-Line Interface

Entry point for the ``microslurm`` command: the full pipeline, each stage
on its own, compaction, the report and configuration checks.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from microslurm import __version__
from microslurm.compaction import compact
from microslurm.config import Config, get_config
from microslurm.layout import (
    Stage,
    create_pipeline_root,
    detect_layout_mode,
    parse_skip_list,
)
from microslurm.logging import StageTimer, add_run_log, setup_logging
from microslurm.pipeline import Pipeline, run_stage
from microslurm.report import write_report
from microslurm.samples import SequenceExtension, resolve_samples
from microslurm.scheduler import LocalScheduler, ResourceRequest, Scheduler, SlurmScheduler
from microslurm.stages import StageContext
from microslurm.validation import (
    MicroslurmError,
    ValidationError,
    require_directory,
    validate_host_reference,
    validate_job_settings,
    validate_kraken2_database,
    validate_merge_options,
)

logger = logging.getLogger("microslurm")

NA = "NA"


class ArgumentParser(argparse.ArgumentParser):
    """Argument parser reporting usage errors as [ERROR] with exit status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"[ERROR] {message}\n")


# Argument groups

def _add_output(parser, what="path to the pipeline output directory"):
    parser.add_argument("-o", "--output", dest="output", help=f"(Required) {what}")


def _add_job_arguments(parser, per_stage: bool = False):
    group = parser.add_argument_group("job settings")
    suffix = (
        " Give one value for every stage or a comma separated list of 8 values, one per "
        "stage; use NA for stages that will not run." if per_stage else ""
    )
    group.add_argument("-p", "--prog-load", dest="prog_load",
                       help="(Required) Single quoted string of commands that load the programs "
                            "each job needs (can be ' ' if none required)")
    group.add_argument("-n", "--partition", dest="partition",
                       help="(Required) Partition to submit jobs to." + suffix)
    group.add_argument("-t", "--time", dest="time",
                       help="(Required) Time request for each job (e.g. 12:00:00)." + suffix)
    group.add_argument("-k", "--cpus", dest="cpus",
                       help="(Required) Number of cores for each job." + suffix)
    group.add_argument("-m", "--mem-per-cpu", dest="mem_per_cpu",
                       help="(Required) Memory per core in megabytes." + suffix)
    group.add_argument("-f", "--fail-email", dest="fail_email",
                       help="(Required) E-mail notified upon failure of any job")
    group.add_argument("--local", action="store_true",
                       help="Run jobs on this machine instead of submitting them to SLURM")


def _add_merge_join(parser, join: bool = True):
    parser.add_argument("-x", "--merge", action="store_true",
                        help="Paired-end reads were merged earlier in the pipeline")
    if join:
        parser.add_argument("-j", "--join", action="store_true",
                            help="Forward and reverse reads were joined during low-complexity "
                                 "filtering")


# Settings resolution

def _apply_config_defaults(args, config: Config) -> None:
    """Fill unset job flags from the environment configuration."""
    if getattr(args, "prog_load", None) is None and config.prog_load is not None:
        args.prog_load = config.prog_load
    if getattr(args, "fail_email", None) is None and config.fail_email:
        args.fail_email = config.fail_email
    if getattr(args, "partition", None) is None and config.partition:
        args.partition = config.partition


def _check_job_settings(args) -> None:
    is_valid, errors = validate_job_settings(
        args.prog_load, args.fail_email, args.partition, args.time, args.cpus, args.mem_per_cpu
    )
    if not is_valid:
        raise ValidationError("; ".join(errors))


def _to_int(value: str, flag: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"Argument {flag} expects a whole number, got '{value}'") from None
    if number < 1:
        raise ValidationError(f"Argument {flag} must be at least 1, got '{value}'")
    return number


def parse_resources(partition: str, time: str, cpus: str, mem_per_cpu: str) -> ResourceRequest:
    """Resource request from single flag values."""
    return ResourceRequest(
        partition=partition,
        time=time,
        cpus=_to_int(cpus, "-k"),
        mem_per_cpu=_to_int(mem_per_cpu, "-m"),
    )


def _split_stage_list(value: str, flag: str) -> List[str]:
    values = [v.strip() for v in value.split(",")]
    count = len(Stage)
    if len(values) == 1:
        return values * count
    if len(values) != count:
        raise ValidationError(
            f"Argument {flag} expects 1 value or a comma separated list of {count} values "
            f"(one per pipeline step), got {len(values)}"
        )
    return values


def parse_stage_resources(
    partition: str, time: str, cpus: str, mem_per_cpu: str
) -> Dict[Stage, Optional[ResourceRequest]]:
    """Per-stage resource requests from comma separated lists; NA entries give None."""
    columns = [
        _split_stage_list(partition, "-n"),
        _split_stage_list(time, "-t"),
        _split_stage_list(cpus, "-k"),
        _split_stage_list(mem_per_cpu, "-m"),
    ]
    resources: Dict[Stage, Optional[ResourceRequest]] = {}
    for index, stage in enumerate(Stage):
        values = [column[index] for column in columns]
        if any(v.upper() == NA or not v for v in values):
            resources[stage] = None
        else:
            resources[stage] = parse_resources(*values)
    return resources


def make_scheduler(args, config: Config) -> Scheduler:
    if getattr(args, "local", False) or config.local:
        logger.debug("Running jobs locally")
        return LocalScheduler()
    is_valid, errors = config.validate(require_scheduler=True)
    if not is_valid:
        raise ValidationError("; ".join(errors))
    return SlurmScheduler(config.sbatch_path, config.sacct_path, config.work_dir)


def _raw_samples(input_dir):
    raw_dir = require_directory(input_dir, "-i", "a directory with input fastq files")
    return raw_dir, resolve_samples(raw_dir)


def _database_paths(args, need_functional: bool):
    kraken2_db = None
    if getattr(args, "kraken2_db", None):
        kraken2_db = validate_kraken2_database(args.kraken2_db)
    chocophlan = uniref = None
    if need_functional:
        chocophlan = require_directory(args.chocophlan, "-c", "path to ChocoPhlAn database directory")
        uniref = require_directory(args.uniref, "-u", "path to UniRef database directory")
    return kraken2_db, chocophlan, uniref


# Commands

def cmd_init(args, config: Config) -> int:
    out_dir = require_directory(args.output, "-o", "path to a directory for the pipeline output")
    root = create_pipeline_root(out_dir)
    print(root)
    return 0


def cmd_run(args, config: Config) -> int:
    _check_job_settings(args)
    skip = parse_skip_list(args.skip)
    is_valid, errors = validate_merge_options(args.merge, args.adapters)
    if not is_valid:
        raise ValidationError("; ".join(errors))

    raw_dir, samples = _raw_samples(args.input)
    out_dir = require_directory(args.output, "-o", "path to a directory for the pipeline output")
    host_reference = None
    if Stage.DECONTAM not in skip:
        host_reference = validate_host_reference(args.host_reference)
    kraken2_db, chocophlan, uniref = _database_paths(args, Stage.FUNCTIONAL_PROFILING not in skip)
    resources = parse_stage_resources(args.partition, args.time, args.cpus, args.mem_per_cpu)
    scheduler = make_scheduler(args, config)

    root = create_pipeline_root(out_dir)
    ctx = StageContext(
        pipeline_root=root,
        mode=detect_layout_mode(root),
        prog_load=args.prog_load,
        fail_email=args.fail_email,
        raw_dir=raw_dir,
        extension=samples[0].extension,
        merge=args.merge,
        join=args.join,
        adapters=Path(args.adapters) if args.adapters else None,
        host_reference=host_reference,
        kraken2_db=kraken2_db,
        chocophlan=chocophlan,
        uniref=uniref,
    )
    pipeline = Pipeline(ctx, resources, scheduler, skip=skip,
                        delete_intermediates=args.delete_intermediates)
    handler = add_run_log(logger, root)
    try:
        logger.info(f"Writing run log to {handler.baseFilename}")
        pipeline.run()
        logger.info(f"Pipeline complete, results in {root}")
    finally:
        logger.removeHandler(handler)
        handler.close()
    return 0


def _stage_command(stage: Stage):
    """Build the handler running one stage against an existing pipeline tree."""

    def handler(args, config: Config) -> int:
        _check_job_settings(args)
        root = require_directory(args.output, "-o", "path to pipeline result directory")
        resources = parse_resources(args.partition, args.time, args.cpus, args.mem_per_cpu)
        merge = getattr(args, "merge", False)

        raw_dir = None
        extension = SequenceExtension.FASTQ_GZ
        reads_raw = stage in (Stage.FASTQC_INITIAL, Stage.MERGE) or (stage is Stage.QC and not merge)
        if reads_raw:
            raw_dir, samples = _raw_samples(args.input)
            extension = samples[0].extension

        adapters = None
        if stage is Stage.MERGE:
            is_valid, errors = validate_merge_options(True, args.adapters)
            if not is_valid:
                raise ValidationError("; ".join(errors))
            adapters = Path(args.adapters)
        host_reference = None
        if stage is Stage.DECONTAM:
            host_reference = validate_host_reference(args.host_reference)
        kraken2_db, chocophlan, uniref = _database_paths(
            args, stage is Stage.FUNCTIONAL_PROFILING
        )
        scheduler = make_scheduler(args, config)

        ctx = StageContext(
            pipeline_root=root,
            mode=detect_layout_mode(root),
            prog_load=args.prog_load,
            fail_email=args.fail_email,
            raw_dir=raw_dir,
            extension=extension,
            merge=merge or stage is Stage.MERGE,
            join=getattr(args, "join", False),
            adapters=adapters,
            host_reference=host_reference,
            kraken2_db=kraken2_db,
            chocophlan=chocophlan,
            uniref=uniref,
        )
        run_stage(stage, ctx, resources, scheduler)
        return 0

    return handler


def cmd_compact(args, config: Config) -> int:
    _raw_dir, samples = _raw_samples(args.input)
    root = require_directory(args.output, "-o", "the pipeline output directory")
    compact(root, samples, args.merge)
    return 0


def cmd_report(args, config: Config) -> int:
    root = require_directory(args.output, "-o", "path to pipeline output directory")
    with StageTimer(logger, "Creating pipeline report", "Pipeline report complete"):
        write_report(root, detect_layout_mode(root))
    return 0


def cmd_check_config(args, config: Config) -> int:
    config.print_status()
    is_valid, errors = config.validate(require_scheduler=not args.local)
    if not is_valid:
        logger.error("Configuration Errors:")
        for error in errors:
            logger.error(f"  ✗ {error}")
        return 1
    logger.info("✓ Configuration is valid")
    return 0


# Parser

STAGE_COMMANDS = {
    Stage.FASTQC_INITIAL: "Generate FastQC/MultiQC reports for raw sequences",
    Stage.MERGE: "Merge paired-end reads with BBMerge",
    Stage.QC: "Quality trim and filter reads with BBDuk",
    Stage.DECONTAM: "Remove host sequences with BBSplit",
    Stage.ENTROPY_FILTER: "Remove low-complexity sequences with BBDuk",
    Stage.FASTQC_FINAL: "Generate FastQC/MultiQC reports for processed sequences",
    Stage.TAXONOMIC_PROFILING: "Taxonomic profiling with MetaPhlAn or Kraken2/Bracken",
    Stage.FUNCTIONAL_PROFILING: "Functional profiling with HUMAnN",
}


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog="microslurm",
        description="Shotgun metagenomic sequence processing and profiling on SLURM",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("init", help="Create the dated pipeline result directory")
    _add_output(p, "path to a directory in which to create the pipeline result directory")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("run", help="Run the whole pipeline")
    p.add_argument("-i", "--input", help="(Required) Directory with paired-end fastq files")
    _add_output(p, "path to a directory in which to create the pipeline result directory")
    p.add_argument("-r", "--host-reference", dest="host_reference",
                   help="Host genome reference in FASTA format (required unless decontam is skipped)")
    p.add_argument("-c", "--chocophlan", help="ChocoPhlAn database directory for HUMAnN")
    p.add_argument("-u", "--uniref", help="UniRef database directory for HUMAnN")
    p.add_argument("-b", "--kraken2-db", dest="kraken2_db",
                   help="Kraken2/Bracken database; use Kraken2/Bracken instead of MetaPhlAn")
    p.add_argument("-a", "--adapters", help="adapters.fa file shipped with BBMerge/BBDuk (with -x)")
    _add_merge_join(p)
    p.add_argument("-s", "--skip", help="Comma separated list of steps to skip: "
                                        "fastqc_initial, QC, decontam, entropy_filter, "
                                        "fastqc_final, taxonomic_profiling, functional_profiling")
    p.add_argument("-d", "--delete", dest="delete_intermediates", action="store_true",
                   help="Delete intermediate sequence files and reorganize the output directory")
    _add_job_arguments(p, per_stage=True)
    p.set_defaults(func=cmd_run)

    for stage, description in STAGE_COMMANDS.items():
        p = sub.add_parser(stage.value.replace("_", "-"), help=description)
        _add_output(p)
        if stage in (Stage.FASTQC_INITIAL, Stage.MERGE, Stage.QC):
            p.add_argument("-i", "--input", help="Directory with paired-end fastq files")
        if stage is Stage.MERGE:
            p.add_argument("-a", "--adapters", help="(Required) adapters.fa file shipped with BBMerge")
        if stage is Stage.QC:
            _add_merge_join(p, join=False)
        elif stage in (Stage.DECONTAM,):
            p.add_argument("-r", "--host-reference", dest="host_reference",
                           help="(Required) Host genome reference in FASTA format")
            _add_merge_join(p, join=False)
        elif stage not in (Stage.FASTQC_INITIAL, Stage.MERGE):
            _add_merge_join(p)
        if stage is Stage.TAXONOMIC_PROFILING:
            p.add_argument("-b", "--kraken2-db", dest="kraken2_db",
                           help="Kraken2/Bracken database; use Kraken2/Bracken instead of MetaPhlAn")
        if stage is Stage.FUNCTIONAL_PROFILING:
            p.add_argument("-c", "--chocophlan", help="(Required) ChocoPhlAn database directory")
            p.add_argument("-u", "--uniref", help="(Required) UniRef database directory")
        _add_job_arguments(p)
        p.set_defaults(func=_stage_command(stage))

    p = sub.add_parser("compact", help="Delete intermediate sequence files and reorganize")
    p.add_argument("-i", "--input", help="(Required) Directory with the raw paired-end fastq files")
    _add_output(p)
    _add_merge_join(p, join=False)
    p.set_defaults(func=cmd_compact)

    p = sub.add_parser("report", help="Summarize read lengths, counts and adapters per sample")
    _add_output(p)
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("check-config", help="Show and validate the environment configuration")
    p.add_argument("--local", action="store_true", help="Do not require SLURM executables")
    p.set_defaults(func=cmd_check_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging("microslurm", verbose=args.verbose)

    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    config = get_config()
    _apply_config_defaults(args, config)
    try:
        return args.func(args, config)
    except MicroslurmError as e:
        for message in str(e).split("; "):
            logger.error(message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
