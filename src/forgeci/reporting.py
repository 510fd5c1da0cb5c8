# reporting.py
"""Hooks the engine calls while a pipeline runs. The console implements them."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .cache import CommandPlan
from .container import LogStream
from .dag import Batch
from .model import Stage, StageResult, Step, StepResult


@dataclass(frozen=True)
class LogLine:
    stage: str
    step: str
    stream: LogStream
    text: str


class Reporter:
    """No-op base; override what you want to observe."""

    def staging_ready(self, root: Path) -> None:
        pass

    def batch_started(self, batch: Batch) -> None:
        pass

    def stage_started(self, stage: Stage) -> None:
        pass

    def step_started(self, stage: Stage, step: Step, image: str, command: CommandPlan) -> None:
        pass

    def step_log(self, line: LogLine) -> None:
        pass

    def step_finished(self, result: StepResult) -> None:
        pass

    def stage_finished(self, result: StageResult) -> None:
        pass
