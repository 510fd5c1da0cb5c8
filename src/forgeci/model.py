# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

from .errors import ContainerRuntimeError, StepFailure

DEFAULT_IMAGE = "alpine:latest"
DEFAULT_VERSION = "1.0"
LEGACY_STAGE_NAME = "default"


def _freeze(obj, name: str, value) -> None:
    # frozen dataclass: normalise lists coming from callers into tuples
    object.__setattr__(obj, name, tuple(value or ()))


@dataclass(frozen=True)
class Step:
    """A single command run inside its own container."""
    command: str
    name: str = ""
    image: str = ""
    working_dir: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _freeze(self, "depends_on", self.depends_on)
        object.__setattr__(self, "env", dict(self.env or {}))

    @property
    def effective_image(self) -> str:
        return self.image or DEFAULT_IMAGE


@dataclass(frozen=True)
class Stage:
    """
    A named group of steps.

    `parallel` decides whether the steps run concurrently; `depends_on`
    names the stages that must succeed first.
    """
    name: str
    steps: Tuple[Step, ...]
    parallel: bool = False
    depends_on: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _freeze(self, "steps", self.steps)
        _freeze(self, "depends_on", self.depends_on)

    def step(self, name: str) -> Optional[Step]:
        for s in self.steps:
            if s.name == name:
                return s
        return None


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = False
    directories: Tuple[str, ...] = ()  # absolute in-container paths

    def __post_init__(self) -> None:
        _freeze(self, "directories", self.directories)


@dataclass(frozen=True)
class Secret:
    name: str     # variable name inside the container
    env_var: str  # variable name on the host


@dataclass(frozen=True)
class Pipeline:
    """
    Root of the config model.

    Canonical layout: `stages`
    Legacy layout: a flat `steps` list, folded into one stage by normalized()
    """
    stages: Tuple[Stage, ...] = ()
    steps: Tuple[Step, ...] = ()
    cache: CacheConfig = field(default_factory=CacheConfig)
    secrets: Tuple[Secret, ...] = ()
    version: str = DEFAULT_VERSION

    def __post_init__(self) -> None:
        _freeze(self, "stages", self.stages)
        _freeze(self, "steps", self.steps)
        _freeze(self, "secrets", self.secrets)

    def normalized(self) -> "Pipeline":
        """
        Return the pipeline the engine works on:
          - legacy `steps` wrapped in a sequential stage named "default"
          - unnamed steps labelled "step-<n>" by position
        Idempotent.
        """
        stages = self.stages
        if not stages and self.steps:
            stages = (Stage(name=LEGACY_STAGE_NAME, steps=self.steps, parallel=False),)

        labelled = []
        for stage in stages:
            steps = tuple(
                s if s.name else replace(s, name=f"step-{i}")
                for i, s in enumerate(stage.steps, start=1)
            )
            labelled.append(stage if steps == stage.steps else replace(stage, steps=steps))

        return replace(self, stages=tuple(labelled), steps=())

    def stage(self, name: str) -> Optional[Stage]:
        for s in self.stages:
            if s.name == name:
                return s
        return None

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

class StepStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"    # container exited non-zero
    ERROR = "error"      # runtime/transport problem
    SKIPPED = "skipped"  # never started (fail-fast)


class StageStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    stage: str
    step: str
    status: StepStatus
    exit_code: int | None = None
    error: StepFailure | ContainerRuntimeError | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCESS

    @classmethod
    def skipped(cls, stage: str, step: str) -> "StepResult":
        return cls(stage=stage, step=step, status=StepStatus.SKIPPED)


@dataclass(frozen=True)
class StageResult:
    name: str
    status: StageStatus
    steps: Tuple[StepResult, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is StageStatus.SUCCESS

    def step(self, name: str) -> Optional[StepResult]:
        for r in self.steps:
            if r.step == name:
                return r
        return None


@dataclass(frozen=True)
class PipelineOutcome:
    stages: Tuple[StageResult, ...] = ()

    @property
    def success(self) -> bool:
        ran = [s for s in self.stages if s.status is not StageStatus.SKIPPED]
        return bool(ran) and all(s.ok for s in ran)

    @property
    def failed_stages(self) -> list[str]:
        return [s.name for s in self.stages if s.status is StageStatus.FAILED]

    def stage(self, name: str) -> Optional[StageResult]:
        for s in self.stages:
            if s.name == name:
                return s
        return None

    def step_results(self) -> list[StepResult]:
        return [r for s in self.stages for r in s.steps]
