# tests/conftest.py
"""
Shared fixtures.

- FakeRuntime: in-memory ContainerRuntime that records every call and
  replays scripted exit codes/output, keyed by the container's script.
- ShellRuntime: runs the container script with the host's /bin/sh, with
  bind mounts simulated by path rewriting. Used to exercise the cache
  restore/persist scripts for real.
"""

from __future__ import annotations

import asyncio
import os
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from forgeci.container import ContainerHandle, ContainerRuntime, LogStream, Mount
from forgeci.errors import ContainerRuntimeError


class FakeRuntime(ContainerRuntime):
    def __init__(self) -> None:
        self.exit_codes: Dict[str, int] = {}
        self.output: Dict[str, List[Tuple[LogStream, bytes]]] = {}
        self.pull_failures: set = set()
        self.create_failures: set = set()
        self.wait_failures: set = set()
        self.fail_remove = False
        self.delay = 0.01

        self.pulled: List[str] = []
        self.created: List[dict] = []
        self.started: List[str] = []    # scripts, in start order
        self.finished: List[str] = []   # scripts, in exit order
        self.removed: List[str] = []
        self.running = 0
        self.max_running = 0
        self._scripts: Dict[str, str] = {}

    async def ensure_image(self, image: str) -> None:
        if image in self.pull_failures:
            raise ContainerRuntimeError(operation="pull", message="manifest unknown", image=image)
        self.pulled.append(image)

    async def create_and_start(
        self,
        image: str,
        command: Sequence[str],
        env: Mapping[str, str],
        working_dir: Optional[str],
        mounts: Sequence[Mount],
    ) -> ContainerHandle:
        script = command[-1]
        if script in self.create_failures:
            raise ContainerRuntimeError(operation="create", message="no space left on device", image=image)
        handle = ContainerHandle(id=f"c{len(self.created)}", name=f"forge-test-{len(self.created)}")
        self.created.append(
            {
                "id": handle.id,
                "image": image,
                "command": list(command),
                "env": dict(env),
                "working_dir": working_dir,
                "mounts": list(mounts),
            }
        )
        self._scripts[handle.id] = script
        self.started.append(script)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        return handle

    async def stream_logs(self, handle: ContainerHandle):
        for item in self.output.get(self._scripts[handle.id], []):
            yield item

    async def wait_for_exit(self, handle: ContainerHandle) -> int:
        script = self._scripts[handle.id]
        await asyncio.sleep(self.delay)
        self.running -= 1
        self.finished.append(script)
        if script in self.wait_failures:
            raise ContainerRuntimeError(operation="wait", message="connection reset", container=handle.id)
        return self.exit_codes.get(script, 0)

    async def remove(self, handle: ContainerHandle) -> None:
        self.removed.append(handle.id)
        if self.fail_remove:
            raise ContainerRuntimeError(operation="remove", message="removal in progress", container=handle.id)


class ShellRuntime(ContainerRuntime):
    """Runs `command` on the host; every mount's container path is rewritten to its host path."""

    def __init__(self) -> None:
        self.envs: List[dict] = []
        self._results: Dict[str, Tuple[int, bytes, bytes]] = {}

    async def ensure_image(self, image: str) -> None:
        return None

    async def create_and_start(self, image, command, env, working_dir, mounts) -> ContainerHandle:
        argv = list(command)
        for m in mounts:
            argv = [a.replace(m.container_path, m.host_path) for a in argv]
        full_env = os.environ.copy()
        full_env.update(env)
        self.envs.append(dict(env))
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=full_env,
            cwd=working_dir or None,
        )
        out, err = await proc.communicate()
        handle = ContainerHandle(id=f"sh{len(self._results)}")
        self._results[handle.id] = (proc.returncode, out, err)
        return handle

    async def stream_logs(self, handle: ContainerHandle):
        _code, out, err = self._results[handle.id]
        if out:
            yield LogStream.STDOUT, out
        if err:
            yield LogStream.STDERR, err

    async def wait_for_exit(self, handle: ContainerHandle) -> int:
        return self._results[handle.id][0]

    async def remove(self, handle: ContainerHandle) -> None:
        self._results.pop(handle.id, None)


class RecordingReporter:
    """Collects engine events (duck-typed Reporter)."""

    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.lines: List = []

    def staging_ready(self, root):
        self.events.append(("staging", str(root)))

    def batch_started(self, batch):
        self.events.append(("batch", tuple(batch.names)))

    def stage_started(self, stage):
        self.events.append(("stage_started", stage.name))

    def step_started(self, stage, step, image, command):
        self.events.append(("step_started", stage.name, step.name))

    def step_log(self, line):
        self.lines.append(line)

    def step_finished(self, result):
        self.events.append(("step_finished", result.stage, result.step, result.status.value))

    def stage_finished(self, result):
        self.events.append(("stage_finished", result.name, result.status.value))


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def shell_runtime() -> ShellRuntime:
    return ShellRuntime()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()
