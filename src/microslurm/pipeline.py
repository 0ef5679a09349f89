"""
Sequential pipeline orchestration.

Stages run strictly one after another. Before a stage runs, its output
directory (with the scheduler capture folders) is created, whether or not
the stage is skipped, so the next stage and the report always find the
directory they expect.
"""

import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from microslurm.compaction import compact
from microslurm.layout import (
    LayoutMode,
    Stage,
    create_stage_dirs,
    detect_layout_mode,
    output_dir,
)
from microslurm.logging import StageTimer
from microslurm.samples import Sample, resolve_samples
from microslurm.scheduler import ResourceRequest, Scheduler
from microslurm.stages import StageContext, build_executor
from microslurm.validation import ValidationError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_stage_dir(
    stage: Stage,
    pipeline_root: PathLike,
    skip_set: Iterable[Stage],
    run: Optional[Callable[[], object]] = None,
    mode: Optional[LayoutMode] = None,
) -> Path:
    """
    Create a stage's output directory, then run the stage unless it is skipped.

    Directory creation is idempotent, so a stage skipped earlier can be run
    later against the same tree.

    Args:
        stage: Stage to prepare
        pipeline_root: Pipeline output tree root
        skip_set: Stages to skip
        run: Callable doing the stage's work; not called when skipped
        mode: Layout mode; detected from the filesystem when None

    Returns:
        The stage's output directory
    """
    if mode is None:
        mode = detect_layout_mode(pipeline_root)
    out_dir = create_stage_dirs(output_dir(stage, pipeline_root, mode))

    if stage in set(skip_set):
        logger.info(f"Skipping {stage.definition.title}")
        return out_dir

    if run is not None:
        with StageTimer(
            logger,
            f"Running {stage.definition.title}",
            f"Running of {stage.definition.title} complete",
        ):
            run()
    return out_dir


def run_stage(
    stage: Stage,
    ctx: StageContext,
    resources: ResourceRequest,
    scheduler: Scheduler,
) -> Path:
    """Run a single stage against an existing pipeline tree."""
    executor = build_executor(stage, ctx, resources, scheduler)
    return ensure_stage_dir(stage, ctx.pipeline_root, (), run=executor.run, mode=ctx.mode)


class Pipeline:
    """
    The full eight-stage pipeline.

    Args:
        ctx: Run-wide settings shared by the stage executors
        resources: Resource request per stage; None for stages that will not run
        scheduler: Submission seam
        skip: Stages to skip; merging is skipped unless ``ctx.merge`` is set
        delete_intermediates: Compact the tree once every stage has run
    """

    def __init__(
        self,
        ctx: StageContext,
        resources: Dict[Stage, Optional[ResourceRequest]],
        scheduler: Scheduler,
        skip: Iterable[Stage] = (),
        delete_intermediates: bool = False,
    ):
        self.ctx = ctx
        self.resources = resources
        self.scheduler = scheduler
        self.skip: Set[Stage] = set(skip)
        if not ctx.merge:
            self.skip.add(Stage.MERGE)
        self.delete_intermediates = delete_intermediates

    @property
    def active_stages(self) -> List[Stage]:
        return [stage for stage in Stage if stage not in self.skip]

    def validate(self) -> None:
        """Every stage that will run needs a complete resource request."""
        missing = [s.value for s in self.active_stages if self.resources.get(s) is None]
        if missing:
            raise ValidationError(
                f"No resources given for stage(s) that will run: {', '.join(missing)}; "
                "'NA' is only allowed for skipped stages"
            )
        if self.ctx.raw_dir is None:
            raise ValidationError("Argument -i is required, please supply a directory with input fastq files")

    def run(self) -> List[Sample]:
        """Run every stage in order; returns the samples processed."""
        self.validate()
        samples = resolve_samples(self.ctx.raw_dir)
        logger.info(f"Found {len(samples)} sample(s) in {self.ctx.raw_dir}")

        for stage in Stage:
            run = None
            if stage not in self.skip:
                executor = build_executor(stage, self.ctx, self.resources[stage], self.scheduler)
                run = executor.run
            ensure_stage_dir(stage, self.ctx.pipeline_root, self.skip, run=run, mode=self.ctx.mode)

        if self.delete_intermediates:
            compact(self.ctx.pipeline_root, samples, self.ctx.merge)

        return samples
