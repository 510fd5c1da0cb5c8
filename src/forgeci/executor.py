# executor.py
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .cache import StagingArea, compose_command
from .container import ContainerHandle, ContainerRuntime, LogStream, Mount
from .errors import ContainerRuntimeError, StepFailure
from .model import CacheConfig, Stage, Step, StepResult, StepStatus
from .reporting import LogLine, Reporter
from .secrets import mask_secrets

log = logging.getLogger(__name__)

# how long to keep draining output once the exit code is known
LOG_DRAIN_TIMEOUT = 5.0


class _LineSplitter:
    """Turns byte chunks per stream into complete text lines."""

    def __init__(self) -> None:
        self._pending: Dict[LogStream, bytes] = {}

    def feed(self, stream: LogStream, chunk: bytes) -> List[Tuple[LogStream, str]]:
        data = self._pending.pop(stream, b"") + chunk
        *lines, rest = data.split(b"\n")
        if rest:
            self._pending[stream] = rest
        return [(stream, self._decode(line)) for line in lines]

    def flush(self) -> List[Tuple[LogStream, str]]:
        out = [(stream, self._decode(rest)) for stream, rest in self._pending.items()]
        self._pending.clear()
        return out

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").rstrip("\r")


async def _pump_logs(
    runtime: ContainerRuntime,
    handle: ContainerHandle,
    stage: Stage,
    step: Step,
    reporter: Reporter,
    secret_values: Iterable[str],
) -> None:
    secret_values = list(secret_values)
    splitter = _LineSplitter()

    def emit(lines: List[Tuple[LogStream, str]]) -> None:
        for stream, text in lines:
            reporter.step_log(LogLine(stage.name, step.name, stream, mask_secrets(text, secret_values)))

    async for stream, chunk in runtime.stream_logs(handle):
        emit(splitter.feed(stream, chunk))
    emit(splitter.flush())


async def _wait_streaming(
    runtime: ContainerRuntime,
    handle: ContainerHandle,
    stage: Stage,
    step: Step,
    reporter: Reporter,
    secret_values: Iterable[str],
) -> int:
    """Await the exit code while logs stream in a sibling task."""
    logs = asyncio.create_task(_pump_logs(runtime, handle, stage, step, reporter, secret_values))
    try:
        exit_code = await runtime.wait_for_exit(handle)
    except BaseException:
        logs.cancel()
        await asyncio.gather(logs, return_exceptions=True)
        raise

    done, _ = await asyncio.wait({logs}, timeout=LOG_DRAIN_TIMEOUT)
    if not done:
        log.warning("[%s] step '%s': log stream still open after exit, dropping the rest", stage.name, step.name)
        logs.cancel()
        await asyncio.gather(logs, return_exceptions=True)
    elif logs.exception() is not None:
        log.warning("[%s] step '%s': log streaming failed: %s", stage.name, step.name, logs.exception())
    return exit_code


async def _remove_quietly(runtime: ContainerRuntime, handle: ContainerHandle, stage: Stage, step: Step) -> None:
    try:
        await runtime.remove(handle)
    except ContainerRuntimeError as e:
        log.warning("[%s] step '%s': failed to remove container %s: %s", stage.name, step.name, handle.short_id, e)


async def execute_step(
    stage: Stage,
    step: Step,
    *,
    runtime: ContainerRuntime,
    staging: StagingArea,
    cache: CacheConfig,
    secrets: Mapping[str, str],
    reporter: Optional[Reporter] = None,
) -> StepResult:
    """
    Run one step in its own container and classify the outcome.

    Never returns while the container may still be running: the container
    is removed (forcefully) on every path before the result is built.
    Runtime failures become an ERROR result, a non-zero exit a FAILED one;
    neither is raised.
    """
    reporter = reporter or Reporter()
    started = time.monotonic()

    image = step.effective_image
    command = compose_command(
        step.command,
        cache.directories,
        enabled=cache.enabled,
        mount_point=staging.mount_point,
    )
    env = dict(step.env)
    env.update(secrets)
    mounts = [Mount(host_path=str(staging.root), container_path=staging.mount_point)]

    reporter.step_started(stage, step, image, command)
    log.debug("[%s] step '%s' script:\n%s", stage.name, step.name, command.script())

    handle: Optional[ContainerHandle] = None
    exit_code: Optional[int] = None
    error: Optional[ContainerRuntimeError] = None
    try:
        await runtime.ensure_image(image)
        handle = await runtime.create_and_start(image, command.argv(), env, step.working_dir, mounts)
        exit_code = await _wait_streaming(runtime, handle, stage, step, reporter, secrets.values())
    except ContainerRuntimeError as e:
        error = e
    finally:
        if handle is not None:
            await _remove_quietly(runtime, handle, stage, step)

    duration = time.monotonic() - started
    if error is not None:
        result = StepResult(stage.name, step.name, StepStatus.ERROR, error=error, duration=duration)
    elif exit_code == 0:
        result = StepResult(stage.name, step.name, StepStatus.SUCCESS, exit_code=0, duration=duration)
    else:
        result = StepResult(
            stage.name,
            step.name,
            StepStatus.FAILED,
            exit_code=exit_code,
            error=StepFailure(stage=stage.name, step=step.name, exit_code=exit_code, command=step.command),
            duration=duration,
        )

    reporter.step_finished(result)
    return result
