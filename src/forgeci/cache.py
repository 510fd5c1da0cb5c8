# cache.py
from __future__ import annotations

import logging
import posixpath
import shlex
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

from .errors import StagingError

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# One staging tree per pipeline run, bind-mounted into every container:
#
#   host:       <tmp>/forge-XXXX/
#   container:  /forge-shared/
#
# A cached directory /app/node_modules lives at /forge-shared/app/node_modules.
# Each step restores it before the user command and persists it afterwards,
# so a later step (same or later stage) sees what an earlier one left there.
#
# Distinct cache directories map to disjoint staging sub-paths, so concurrent
# steps need no lock. Overlapping directories (/app and /app/cache) are a
# configuration hazard: see overlapping_directories().
# ---------------------------------------------------------------------

STAGING_MOUNT = "/forge-shared"
SHELL = "/bin/sh"

log = logging.getLogger(__name__)


def staging_path(directory: str, mount_point: str = STAGING_MOUNT) -> str:
    """In-container staging location of an absolute cache directory."""
    return posixpath.join(mount_point, directory.lstrip("/"))


def _non_empty_dir(path: str) -> str:
    q = shlex.quote(path)
    return f'[ -d {q} ] && [ -n "$(ls -A {q} 2>/dev/null)" ]'


def restore_command(directory: str, mount_point: str = STAGING_MOUNT) -> str:
    """Copy the staged contents into `directory`. No-op when nothing is staged."""
    src = staging_path(directory, mount_point)
    dst = shlex.quote(directory)
    return (
        f"if {_non_empty_dir(src)}; then "
        f"mkdir -p {dst} && cp -a {shlex.quote(src)}/. {dst}/; "
        f"fi"
    )


def persist_command(directory: str, mount_point: str = STAGING_MOUNT) -> str:
    """Copy the contents of `directory` into staging. No-op when it is missing or empty."""
    dst = shlex.quote(staging_path(directory, mount_point))
    return (
        f"if {_non_empty_dir(directory)}; then "
        f"mkdir -p {dst} && cp -a {shlex.quote(directory)}/. {dst}/; "
        f"fi"
    )


@dataclass(frozen=True)
class CommandPlan:
    """
    The in-container command as discrete parts:
      restore entries -> user command -> persist entries
    """
    user: str
    restore: Tuple[str, ...] = ()
    persist: Tuple[str, ...] = ()

    @property
    def wrapped(self) -> bool:
        return bool(self.restore or self.persist)

    def script(self) -> str:
        if not self.wrapped:
            return self.user

        lines: List[str] = []
        for cmd in self.restore:
            lines.append(f"{{ {cmd}; }} || echo 'forge: cache restore failed' >&2")
        # own shell: an `exit` in the user command must not skip persist
        lines.append(f"{SHELL} -c {shlex.quote(self.user)}")
        lines.append("forge_status=$?")
        for cmd in self.persist:
            lines.append(f"{{ {cmd}; }} || echo 'forge: cache persist failed' >&2")
        lines.append("exit $forge_status")
        return "\n".join(lines)

    def argv(self) -> List[str]:
        return [SHELL, "-c", self.script()]


def compose_command(
    user_command: str,
    directories: Sequence[str] = (),
    *,
    enabled: bool = False,
    mount_point: str = STAGING_MOUNT,
) -> CommandPlan:
    if not enabled or not directories:
        return CommandPlan(user=user_command)
    return CommandPlan(
        user=user_command,
        restore=tuple(restore_command(d, mount_point) for d in directories),
        persist=tuple(persist_command(d, mount_point) for d in directories),
    )


def overlapping_directories(directories: Sequence[str]) -> List[Tuple[str, str]]:
    """Pairs (a, b) where b is a or lives below a."""
    norm = [posixpath.normpath(d) for d in directories]
    pairs = []
    for i, a in enumerate(norm):
        for b in norm[i + 1:]:
            outer, inner = (a, b) if len(a) <= len(b) else (b, a)
            if inner == outer or inner.startswith(outer.rstrip("/") + "/"):
                pairs.append((outer, inner))
    return pairs


class StagingArea:
    """
    Pipeline-scoped staging directory (the cache exchange point).

    Created before the first stage, removed after the last one or on abort.
    Use as a context manager; removal is best-effort.
    """

    def __init__(self, root: str | Path, mount_point: str = STAGING_MOUNT):
        self.root = Path(root)
        self.mount_point = mount_point

    @classmethod
    def create(cls, base_dir: str | Path | None = None, *, mount_point: str = STAGING_MOUNT) -> "StagingArea":
        try:
            if base_dir is not None:
                Path(base_dir).mkdir(parents=True, exist_ok=True)
            root = tempfile.mkdtemp(prefix="forge-", dir=None if base_dir is None else str(base_dir))
        except OSError as e:
            raise StagingError(path=None if base_dir is None else str(base_dir), reason=str(e)) from e
        log.debug("created staging directory %s", root)
        return cls(root, mount_point=mount_point)

    def host_path(self, directory: str) -> Path:
        """Host location of the staged copy of `directory`."""
        return self.root / directory.lstrip("/")

    @property
    def exists(self) -> bool:
        return self.root.exists()

    def cleanup(self) -> bool:
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            return True
        except OSError as e:
            log.warning("failed to remove staging directory %s: %s", self.root, e)
            return False
        log.debug("removed staging directory %s", self.root)
        return True

    def __enter__(self) -> "StagingArea":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()
