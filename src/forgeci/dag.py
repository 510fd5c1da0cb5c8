# dag.py
from __future__ import annotations

import posixpath
from collections import Counter, deque
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from .errors import CycleDetectedError, UnknownReference, ValidationError
from .model import Pipeline, Stage, Step


@dataclass(frozen=True)
class Batch:
    """Stages whose dependencies all live in earlier batches. May run concurrently."""
    index: int
    stages: Tuple[Stage, ...]

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.stages]


# ----------------------------------------------------------------------
# Graph helpers (generic over "named nodes with depends_on")
# ----------------------------------------------------------------------

def _deps_map(nodes: Sequence[Stage] | Sequence[Step]) -> Dict[str, Tuple[str, ...]]:
    # first declaration wins; duplicates are reported by validate()
    deps: Dict[str, Tuple[str, ...]] = {}
    for n in nodes:
        deps.setdefault(n.name, tuple(n.depends_on))
    return deps


def find_cycle(deps: Dict[str, Tuple[str, ...]]) -> List[str] | None:
    """
    Return one dependency cycle as [a, b, ..., a] (a depends on b, ...),
    or None. Walks nodes in declaration order so the report is stable.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in deps}

    for root in deps:
        if color[root] != WHITE:
            continue
        path: List[str] = [root]
        color[root] = GREY
        stack = [iter(deps[root])]

        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if nxt not in color:
                continue  # unknown reference, reported elsewhere
            if color[nxt] == GREY:
                start = path.index(nxt)
                return path[start:] + [nxt]
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(deps[nxt]))

    return None


def topo_levels(deps: Dict[str, Tuple[str, ...]], *, scope: str = "stages") -> List[List[str]]:
    """
    Kahn layering. Each level holds every node whose dependencies are all in
    earlier levels, in declaration order.
    """
    order = list(deps)
    position = {n: i for i, n in enumerate(order)}
    dependents: Dict[str, List[str]] = {n: [] for n in order}
    indeg: Dict[str, int] = {n: 0 for n in order}

    for name, needs in deps.items():
        for d in dict.fromkeys(needs):  # de-dupe, keep order
            if d in dependents:
                dependents[d].append(name)
                indeg[name] += 1

    ready = deque(n for n in order if indeg[n] == 0)
    levels: List[List[str]] = []
    processed = 0

    while ready:
        level = sorted(ready, key=position.__getitem__)
        ready.clear()
        levels.append(level)
        processed += len(level)

        for node in level:
            for child in dependents[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    ready.append(child)

    if processed != len(order):
        stuck = [n for n in order if indeg[n] > 0]
        cycle = find_cycle({n: deps[n] for n in stuck}) or stuck
        raise CycleDetectedError(cycle=cycle, scope=scope)

    return levels


# ----------------------------------------------------------------------
# Graph Validator
# ----------------------------------------------------------------------

def _duplicates(names: List[str]) -> List[str]:
    return [n for n, c in Counter(names).items() if c > 1]


def validate(pipeline: Pipeline) -> None:
    """
    Check a pipeline before anything runs.

    Collects every structural problem and unknown reference and raises them
    together as ValidationError. Only a pipeline free of those is checked for
    cycles (CycleDetectedError). Pure: no I/O, no mutation.
    """
    pipeline = pipeline.normalized()
    problems: List[str] = []
    unknown: List[UnknownReference] = []

    if not pipeline.stages:
        problems.append("pipeline must define at least one stage or step")

    for name in _duplicates(pipeline.stage_names):
        problems.append(f"duplicate stage name '{name}'")

    stage_names = set(pipeline.stage_names)

    for stage in pipeline.stages:
        if not stage.name or not stage.name.strip():
            problems.append("stage without a name")
        if not stage.steps:
            problems.append(f"stage '{stage.name}' has no steps")

        for target in stage.depends_on:
            if target not in stage_names:
                unknown.append(UnknownReference(stage=stage.name, target=target))

        step_names = [s.name for s in stage.steps]
        for name in _duplicates(step_names):
            problems.append(f"duplicate step name '{name}' in stage '{stage.name}'")

        known_steps = set(step_names)
        for step in stage.steps:
            if not step.command or not step.command.strip():
                problems.append(f"step '{step.name}' in stage '{stage.name}' has an empty command")
            for target in step.depends_on:
                if target not in known_steps:
                    unknown.append(UnknownReference(stage=stage.name, step=step.name, target=target))

    for directory in pipeline.cache.directories:
        if not posixpath.isabs(directory):
            problems.append(f"cache directory must be an absolute path: '{directory}'")

    if problems or unknown:
        raise ValidationError(problems=problems, unknown=unknown)

    cycle = find_cycle(_deps_map(pipeline.stages))
    if cycle:
        raise CycleDetectedError(cycle=cycle, scope="stages")

    for stage in pipeline.stages:
        cycle = find_cycle(_deps_map(stage.steps))
        if cycle:
            raise CycleDetectedError(cycle=cycle, scope=f"steps of stage '{stage.name}'")


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

def schedule(stages: Sequence[Stage]) -> List[Batch]:
    """Layer already-validated stages into batches (no validation)."""
    by_name = {s.name: s for s in stages}
    levels = topo_levels(_deps_map(stages), scope="stages")
    return [
        Batch(index=i, stages=tuple(by_name[n] for n in level))
        for i, level in enumerate(levels)
    ]


def plan(pipeline: Pipeline) -> List[Batch]:
    """
    Normalize, validate and layer the pipeline into ready batches.

    Raises ValidationError / CycleDetectedError for an invalid pipeline.
    """
    pipeline = pipeline.normalized()
    validate(pipeline)
    return schedule(pipeline.stages)


def step_order(stage: Stage) -> List[Step]:
    """Launch order of a stage's steps: dependencies first, then declaration order."""
    by_name = {s.name: s for s in stage.steps}
    levels = topo_levels(_deps_map(stage.steps), scope=f"steps of stage '{stage.name}'")
    return [by_name[n] for level in levels for n in level]
