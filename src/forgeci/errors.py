# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class ForgeError(Exception):
    """Base class for every error raised by the engine."""


@dataclass
class ConfigError(ForgeError):
    """The pipeline document is structurally invalid (the run never starts)."""
    message: str
    location: str | None = None  # e.g. "stages[1].steps[0].command"

    def __str__(self) -> str:
        if self.location:
            return f"{self.location}: {self.message}"
        return self.message


@dataclass(frozen=True)
class UnknownReference:
    """A `depends_on` entry that names nothing."""
    stage: str
    target: str
    step: str | None = None

    def __str__(self) -> str:
        if self.step is None:
            return f"stage '{self.stage}' depends on unknown stage '{self.target}'"
        return (
            f"step '{self.step}' in stage '{self.stage}' "
            f"depends on unknown step '{self.target}'"
        )


@dataclass
class ValidationError(ForgeError):
    """
    The pipeline graph is not runnable.

    Carries every structural problem and every unknown reference found,
    not just the first one.
    """
    problems: List[str] = field(default_factory=list)
    unknown: List[UnknownReference] = field(default_factory=list)

    def messages(self) -> List[str]:
        return list(self.problems) + [str(u) for u in self.unknown]

    def __str__(self) -> str:
        lines = self.messages()
        if len(lines) == 1:
            return f"invalid pipeline: {lines[0]}"
        return "invalid pipeline:\n" + "\n".join(f"  - {line}" for line in lines)


@dataclass
class CycleDetectedError(ValidationError):
    """A dependency cycle. `cycle` is ordered: each name depends on the next."""
    cycle: List[str] = field(default_factory=list)
    scope: str = "stages"

    def messages(self) -> List[str]:
        return [f"cycle detected in {self.scope}: {' -> '.join(self.cycle)}"]


@dataclass
class SecretResolutionError(ForgeError):
    secret: str
    env_var: str

    def __str__(self) -> str:
        return (
            f"secret '{self.secret}' needs host environment variable "
            f"'{self.env_var}', which is not set"
        )


@dataclass
class ContainerRuntimeError(ForgeError):
    """
    The container runtime failed (pull, create, start, wait, remove).

    Points at the environment rather than at the user's command, so it keeps
    more context than a StepFailure.
    """
    operation: str
    message: str
    image: str | None = None
    container: str | None = None
    hint: str | None = None

    def __str__(self) -> str:
        lines = [f"container runtime error during {self.operation}: {self.message}"]
        if self.image:
            lines.append(f"image={self.image}")
        if self.container:
            lines.append(f"container={self.container}")
        if self.hint:
            lines.append(f"hint={self.hint}")
        return "\n".join(lines)


@dataclass
class StepFailure(ForgeError):
    stage: str
    step: str
    exit_code: int
    command: str

    def __str__(self) -> str:
        return f"[{self.stage}] step '{self.step}' failed (exit={self.exit_code}): {self.command}"


@dataclass
class StageNotFoundError(ForgeError):
    stage: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"stage not found: {self.stage}. Known stages: {self.known}"


@dataclass
class StagingError(ForgeError):
    """The shared staging directory could not be allocated. Fatal."""
    path: Optional[str]
    reason: str

    def __str__(self) -> str:
        where = f" under {self.path}" if self.path else ""
        return f"cannot create staging directory{where}: {self.reason}"
