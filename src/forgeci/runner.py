# runner.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .cache import STAGING_MOUNT, StagingArea, overlapping_directories
from .container import ContainerRuntime
from .dag import Batch, schedule, step_order, validate
from .errors import StageNotFoundError
from .executor import execute_step
from .model import (
    CacheConfig,
    Pipeline,
    PipelineOutcome,
    Stage,
    StageResult,
    StageStatus,
    Step,
    StepResult,
)
from .reporting import Reporter
from .secrets import resolve_secrets

log = logging.getLogger(__name__)


@dataclass
class RunOptions:
    verbose: bool = False
    cache_override: Optional[bool] = None   # None: use the pipeline's cache.enabled
    stage_filter: Optional[str] = None      # run only this stage
    max_workers: Optional[int] = None       # cap on concurrently running steps; None = no cap
    staging_dir: Optional[Path] = None      # parent of the staging directory (default: system temp)
    staging_mount: str = STAGING_MOUNT      # where the staging directory appears in containers


class _RunContext:
    """Everything a step needs that is shared by the whole run."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        staging: StagingArea,
        cache: CacheConfig,
        secrets: Mapping[str, str],
        reporter: Reporter,
        max_workers: Optional[int],
    ):
        self.runtime = runtime
        self.staging = staging
        self.cache = cache
        self.secrets = dict(secrets)
        self.reporter = reporter
        self._slots = asyncio.Semaphore(max_workers) if max_workers else None

    async def execute(self, stage: Stage, step: Step) -> StepResult:
        if self._slots is None:
            return await self._execute(stage, step)
        async with self._slots:
            return await self._execute(stage, step)

    async def _execute(self, stage: Stage, step: Step) -> StepResult:
        return await execute_step(
            stage,
            step,
            runtime=self.runtime,
            staging=self.staging,
            cache=self.cache,
            secrets=self.secrets,
            reporter=self.reporter,
        )


# ----------------------------------------------------------------------
# Stage execution
# ----------------------------------------------------------------------

async def _run_sequential(stage: Stage, ctx: _RunContext) -> Dict[str, StepResult]:
    results: Dict[str, StepResult] = {}
    failed = False
    for step in step_order(stage):
        if failed:
            results[step.name] = StepResult.skipped(stage.name, step.name)
            continue
        result = await ctx.execute(stage, step)
        results[step.name] = result
        failed = not result.ok
    return results


async def _run_parallel(stage: Stage, ctx: _RunContext) -> Dict[str, StepResult]:
    """
    Launch every step whose dependencies succeeded, then launch newly
    unblocked steps as running ones complete. After the first failure no new
    step starts; running ones finish.
    """
    by_name = {s.name: s for s in stage.steps}
    pending: List[str] = [s.name for s in step_order(stage)]
    succeeded: set[str] = set()
    results: Dict[str, StepResult] = {}
    in_flight: Dict[asyncio.Task, str] = {}
    failed = False

    while pending or in_flight:
        if not failed:
            ready = [n for n in pending if set(by_name[n].depends_on) <= succeeded]
            for name in ready:
                pending.remove(name)
                task = asyncio.create_task(ctx.execute(stage, by_name[name]))
                in_flight[task] = name

        if not in_flight:
            break

        done, _ = await asyncio.wait(list(in_flight), return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            name = in_flight.pop(task)
            result = task.result()
            results[name] = result
            if result.ok:
                succeeded.add(name)
            else:
                failed = True

    for name in pending:
        results[name] = StepResult.skipped(stage.name, name)
    return results


async def _run_stage(stage: Stage, ctx: _RunContext) -> StageResult:
    ctx.reporter.stage_started(stage)
    if stage.parallel:
        results = await _run_parallel(stage, ctx)
    else:
        results = await _run_sequential(stage, ctx)

    steps = tuple(results[s.name] for s in stage.steps)
    status = StageStatus.SUCCESS if all(r.ok for r in steps) else StageStatus.FAILED
    result = StageResult(name=stage.name, status=status, steps=steps)
    ctx.reporter.stage_finished(result)
    return result


def _skipped_stage(stage: Stage) -> StageResult:
    return StageResult(
        name=stage.name,
        status=StageStatus.SKIPPED,
        steps=tuple(StepResult.skipped(stage.name, s.name) for s in stage.steps),
    )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def select_stages(pipeline: Pipeline, stage_filter: Optional[str]) -> List[Stage]:
    """
    Stages to run. A filter keeps one stage and drops its stage-level
    dependencies (they are not run).
    """
    if stage_filter is None:
        return list(pipeline.stages)
    stage = pipeline.stage(stage_filter)
    if stage is None:
        raise StageNotFoundError(stage=stage_filter, known=pipeline.stage_names)
    return [replace(stage, depends_on=())]


async def run_pipeline(
    pipeline: Pipeline,
    runtime: ContainerRuntime,
    options: Optional[RunOptions] = None,
    *,
    reporter: Optional[Reporter] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineOutcome:
    """
    Validate, plan and run a pipeline.

    Raises (before any container is created):
      - ValidationError / CycleDetectedError
      - StageNotFoundError
      - SecretResolutionError
      - StagingError
    Step failures and runtime errors are reported in the outcome instead.
    """
    options = options or RunOptions()
    reporter = reporter or Reporter()

    pipeline = pipeline.normalized()
    validate(pipeline)
    stages = select_stages(pipeline, options.stage_filter)
    batches: List[Batch] = schedule(stages)

    secrets = resolve_secrets(pipeline.secrets, environ)

    cache = pipeline.cache
    if options.cache_override is not None:
        cache = replace(cache, enabled=options.cache_override)
    if cache.enabled:
        for outer, inner in overlapping_directories(cache.directories):
            log.warning("cache directories overlap: '%s' contains '%s'", outer, inner)

    results: Dict[str, StageResult] = {}
    with StagingArea.create(options.staging_dir, mount_point=options.staging_mount) as staging:
        if options.verbose:
            reporter.staging_ready(staging.root)
        ctx = _RunContext(runtime, staging, cache, secrets, reporter, options.max_workers)
        aborted = False

        for batch in batches:
            if aborted:
                for stage in batch.stages:
                    results[stage.name] = _skipped_stage(stage)
                continue

            reporter.batch_started(batch)
            # created in declaration order, so launched in declaration order
            tasks = [asyncio.create_task(_run_stage(stage, ctx)) for stage in batch.stages]
            # let every stage of the batch settle before staging can be torn down
            settled = await asyncio.gather(*tasks, return_exceptions=True)
            for stage_result in settled:
                if isinstance(stage_result, BaseException):
                    raise stage_result
                results[stage_result.name] = stage_result
                if not stage_result.ok:
                    aborted = True

    return PipelineOutcome(stages=tuple(results[s.name] for s in stages))


def run(
    pipeline: Pipeline,
    runtime: ContainerRuntime,
    options: Optional[RunOptions] = None,
    *,
    reporter: Optional[Reporter] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineOutcome:
    """Blocking wrapper around run_pipeline()."""
    return asyncio.run(run_pipeline(pipeline, runtime, options, reporter=reporter, environ=environ))
