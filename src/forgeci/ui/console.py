"""Console output formatting utilities for FORGE."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

from forgeci.cache import CommandPlan
from forgeci.container import LogStream
from forgeci.dag import Batch
from forgeci.model import (
    Pipeline,
    PipelineOutcome,
    Stage,
    StageResult,
    Step,
    StepResult,
    StepStatus,
)
from forgeci.reporting import LogLine, Reporter


class Console(Reporter):
    """Centralized console output; also receives engine progress events."""

    def __init__(self, debug: bool = False, verbose: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            verbose: If True, show images, commands and environment names per step
        """
        self.debug = debug
        self.verbose = verbose

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, config_file: str, pipeline: Pipeline) -> None:
        """Print run start information."""
        print("\nFORGE PIPELINE RUNNER")
        print(f"Config: {config_file}")
        print(f"Stages: {len(pipeline.stages)}")
        print(f"Cache: {'enabled' if pipeline.cache.enabled else 'disabled'}")
        print()

    # ---- engine events ----

    def staging_ready(self, root: Path) -> None:
        print(f"Staging directory: {root}")

    def batch_started(self, batch: Batch) -> None:
        if self.verbose:
            print(f"\n=== Batch {batch.index + 1}: {batch.names} ===")

    def stage_started(self, stage: Stage) -> None:
        mode = "parallel" if stage.parallel else "sequential"
        print(f"\nSTAGE STARTED: {stage.name} ({len(stage.steps)} steps, {mode})")

    def step_started(self, stage: Stage, step: Step, image: str, command: CommandPlan) -> None:
        print(f"[{stage.name}] STEP: {step.name}")
        if self.verbose:
            print(f"  Command: {step.command}")
            print(f"  Image: {image}")
            if step.working_dir:
                print(f"  Working directory: {step.working_dir}")
            if step.env:
                print(f"  Environment: {', '.join(sorted(step.env))}")
            if command.wrapped:
                print("  Cache: restore/persist enabled")

    def step_log(self, line: LogLine) -> None:
        stream = sys.stderr if line.stream is LogStream.STDERR else sys.stdout
        print(f"[{line.stage}/{line.step}] {line.text}", file=stream)

    def step_finished(self, result: StepResult) -> None:
        prefix = f"[{result.stage}] "
        if result.status is StepStatus.SUCCESS:
            print(f"{prefix}STEP PASSED: {result.step} ({result.duration:.1f}s)")
        elif result.status is StepStatus.FAILED:
            self.print_failure(result.step, str(result.error), exit_code=result.exit_code, prefix=prefix)
        elif result.status is StepStatus.ERROR:
            hint = getattr(result.error, "hint", None)
            self.print_failure(result.step, str(result.error), hint=hint, prefix=prefix)

    def stage_finished(self, result: StageResult) -> None:
        print(f"STAGE {result.status.value.upper()}: {result.name}")

    # ---- general output ----

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        prefix: str = "",
    ) -> None:
        """
        Print step failure message.

        Args:
            name: Step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            prefix: Optional "[stage] " prefix
        """
        print(f"{prefix}STEP FAILED: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_results(self, outcome: PipelineOutcome) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for stage in outcome.stages:
            print(f"  {stage.name}: {stage.status.value.upper()}")
            for step in stage.steps:
                detail = f" (exit={step.exit_code})" if step.status is StepStatus.FAILED else ""
                print(f"    {step.step}: {step.status.value.upper()}{detail}")
        print()
        if outcome.success:
            print("Pipeline completed successfully!")
        else:
            failed = outcome.failed_stages
            print(f"Pipeline failed ({', '.join(failed) if failed else 'no stage ran'})")

    def print_validation_summary(self, pipeline: Pipeline) -> None:
        """Print what a valid configuration declares."""
        print("Configuration is valid!")
        print("Stages:")
        for stage in pipeline.stages:
            deps = f", depends on {list(stage.depends_on)}" if stage.depends_on else ""
            print(f"  - {stage.name} ({len(stage.steps)} steps{deps})")
        if pipeline.cache.enabled:
            print("Cache: Enabled")
            print("Cached directories:")
            for directory in pipeline.cache.directories:
                print(f"  - {directory}")
        else:
            print("Cache: Disabled")
        if pipeline.secrets:
            print("Secrets:")
            for secret in pipeline.secrets:
                print(f"  - {secret.name} (from {secret.env_var})")

    def print_plan(self, batches: List[Batch]) -> None:
        """Print execution batches."""
        self.print_header("EXECUTION PLAN")
        for batch in batches:
            print(f"Batch {batch.index + 1}:")
            for stage in batch.stages:
                mode = "parallel" if stage.parallel else "sequential"
                print(f"  {stage.name} ({mode})")
                for step in stage.steps:
                    needs = f" <- {list(step.depends_on)}" if step.depends_on else ""
                    print(f"    - {step.name} [{step.effective_image}]{needs}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
