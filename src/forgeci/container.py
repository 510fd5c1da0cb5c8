# container.py
from __future__ import annotations

import asyncio
import enum
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ContainerRuntimeError

log = logging.getLogger(__name__)

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
}


class LogStream(str, enum.Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class Mount:
    """Bind mount: host_path is exposed inside the container at container_path."""
    host_path: str
    container_path: str
    readonly: bool = False

    def docker_spec(self) -> str:
        fields = ["type=bind", f"source={self.host_path}", f"target={self.container_path}"]
        if self.readonly:
            fields.append("readonly")
        # --mount is parsed as CSV
        return ",".join(f'"{f}"' if "," in f else f for f in fields)


@dataclass(frozen=True)
class ContainerHandle:
    id: str
    name: str = ""

    @property
    def short_id(self) -> str:
        return self.id[:12]


class ContainerRuntime:
    """
    What the engine needs from a container engine.

    Every method raises ContainerRuntimeError on failure. Implementations
    must be usable from several concurrent tasks.
    """

    async def ensure_image(self, image: str) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    async def create_and_start(
        self,
        image: str,
        command: Sequence[str],
        env: Mapping[str, str],
        working_dir: Optional[str],
        mounts: Sequence[Mount],
    ) -> ContainerHandle:  # pragma: no cover - abstract
        raise NotImplementedError

    def stream_logs(self, handle: ContainerHandle) -> AsyncIterator[Tuple[LogStream, bytes]]:  # pragma: no cover - abstract
        """Chunks of output as they arrive; ends once the container has exited."""
        raise NotImplementedError

    async def wait_for_exit(self, handle: ContainerHandle) -> int:  # pragma: no cover - abstract
        raise NotImplementedError

    async def remove(self, handle: ContainerHandle) -> None:  # pragma: no cover - abstract
        raise NotImplementedError


# ---------------------------------------------------------------------
# Docker (command line client)
# ---------------------------------------------------------------------

class DockerRuntime(ContainerRuntime):
    """ContainerRuntime backed by the `docker` CLI."""

    def __init__(self, docker_bin: str = "docker", *, name_prefix: str = "forge"):
        self.docker_bin = docker_bin
        self.name_prefix = name_prefix
        self._pull_locks: Dict[str, asyncio.Lock] = {}

    async def _run(
        self,
        *args: str,
        operation: str,
        image: str | None = None,
        container: str | None = None,
    ) -> Tuple[int, str, str]:
        log.debug("docker %s", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_bin,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ContainerRuntimeError(
                operation=operation,
                message=f"{self.docker_bin} command not found",
                image=image,
                container=container,
                hint=TOOL_HINTS["docker"],
            ) from e
        except OSError as e:
            raise ContainerRuntimeError(
                operation=operation, message=str(e), image=image, container=container
            ) from e

        out, err = await proc.communicate()
        return (
            proc.returncode,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    async def _exec(self, *args: str, operation: str, image: str | None = None,
                    container: str | None = None) -> str:
        code, out, err = await self._run(*args, operation=operation, image=image, container=container)
        if code != 0:
            raise ContainerRuntimeError(
                operation=operation,
                message=err.strip() or f"docker exited with code {code}",
                image=image,
                container=container,
            )
        return out

    async def ping(self) -> str:
        """Return the daemon version; raises if the daemon is unreachable."""
        out = await self._exec("version", "--format", "{{.Server.Version}}", operation="ping")
        return out.strip()

    async def ensure_image(self, image: str) -> None:
        lock = self._pull_locks.setdefault(image, asyncio.Lock())
        async with lock:
            code, _out, _err = await self._run("image", "inspect", image, operation="inspect", image=image)
            if code == 0:
                return
            log.info("pulling image %s", image)
            await self._exec("pull", "--quiet", image, operation="pull", image=image)

    @staticmethod
    def _write_env_file(env: Mapping[str, str], image: str) -> str:
        """Write KEY=VALUE lines to a 0600 temp file; the caller deletes it."""
        for key, value in env.items():
            if "\n" in key or "\n" in value or "=" in key:
                raise ContainerRuntimeError(
                    operation="create",
                    message=f"environment variable {key!r} cannot be passed to docker: "
                            "names must not contain '=' and values must be single-line",
                    image=image,
                )
        fd, path = tempfile.mkstemp(prefix="forge-env-")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            for key, value in env.items():
                f.write(f"{key}={value}\n")
        return path

    async def create_and_start(
        self,
        image: str,
        command: Sequence[str],
        env: Mapping[str, str],
        working_dir: Optional[str],
        mounts: Sequence[Mount],
    ) -> ContainerHandle:
        name = f"{self.name_prefix}-{uuid.uuid4().hex[:12]}"
        args: List[str] = ["create", "--name", name]

        # values go through a private --env-file: never argv, never the client's own env
        env_file = self._write_env_file(env, image) if env else None
        if env_file:
            args.extend(["--env-file", env_file])
        if working_dir:
            args.extend(["--workdir", working_dir])
        for m in mounts:
            args.extend(["--mount", m.docker_spec()])
        args.append(image)
        args.extend(command)

        try:
            out = await self._exec(*args, operation="create", image=image)
        finally:
            if env_file:
                os.unlink(env_file)
        handle = ContainerHandle(id=out.strip().splitlines()[-1] if out.strip() else name, name=name)

        try:
            await self._exec("start", handle.id, operation="start", image=image, container=handle.id)
        except ContainerRuntimeError:
            try:
                await self.remove(handle)
            except ContainerRuntimeError as e:
                log.warning("failed to remove container %s after start failure: %s", handle.short_id, e)
            raise
        return handle

    async def stream_logs(self, handle: ContainerHandle) -> AsyncIterator[Tuple[LogStream, bytes]]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_bin,
                "logs",
                "--follow",
                handle.id,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ContainerRuntimeError(operation="logs", message=str(e), container=handle.id) from e

        queue: asyncio.Queue = asyncio.Queue()

        async def pump(reader: asyncio.StreamReader, stream: LogStream) -> None:
            try:
                while True:
                    chunk = await reader.read(4096)
                    if not chunk:
                        break
                    await queue.put((stream, chunk))
            finally:
                await queue.put(None)

        pumps = [
            asyncio.create_task(pump(proc.stdout, LogStream.STDOUT)),
            asyncio.create_task(pump(proc.stderr, LogStream.STDERR)),
        ]
        open_streams = len(pumps)
        try:
            while open_streams:
                item = await queue.get()
                if item is None:
                    open_streams -= 1
                    continue
                yield item
            await proc.wait()
        finally:
            for t in pumps:
                t.cancel()
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

    async def wait_for_exit(self, handle: ContainerHandle) -> int:
        out = await self._exec("wait", handle.id, operation="wait", container=handle.id)
        try:
            return int(out.strip().splitlines()[-1])
        except (IndexError, ValueError) as e:
            raise ContainerRuntimeError(
                operation="wait",
                message=f"unexpected output from docker wait: {out!r}",
                container=handle.id,
            ) from e

    async def remove(self, handle: ContainerHandle) -> None:
        await self._exec("rm", "--force", handle.id, operation="remove", container=handle.id)
