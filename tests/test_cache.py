import asyncio
import logging

import pytest

from forgeci import cache as cache_mod
from forgeci.cache import (
    STAGING_MOUNT,
    StagingArea,
    compose_command,
    overlapping_directories,
    persist_command,
    restore_command,
    staging_path,
)
from forgeci.errors import StagingError
from forgeci.executor import execute_step
from forgeci.model import CacheConfig, Stage, Step, StepStatus


def test_staging_path():
    assert staging_path("/app/node_modules") == "/forge-shared/app/node_modules"
    assert staging_path("/app", "/mnt/x") == "/mnt/x/app"


def test_disabled_cache_runs_command_unwrapped():
    plan = compose_command("echo hi", ["/app"], enabled=False)
    assert not plan.wrapped
    assert plan.argv() == ["/bin/sh", "-c", "echo hi"]
    assert compose_command("echo hi", [], enabled=True).argv() == ["/bin/sh", "-c", "echo hi"]


def test_enabled_cache_wraps_restore_user_persist():
    plan = compose_command("npm ci && exit 4", ["/app/node_modules"], enabled=True)
    script = plan.script()

    assert plan.restore == (restore_command("/app/node_modules"),)
    assert plan.persist == (persist_command("/app/node_modules"),)
    lines = script.splitlines()
    assert "/forge-shared/app/node_modules" in lines[0]
    assert lines[1] == "/bin/sh -c 'npm ci && exit 4'"
    assert lines[2] == "forge_status=$?"
    assert "/forge-shared/app/node_modules" in lines[3]
    assert lines[-1] == "exit $forge_status"


def test_paths_are_shell_quoted():
    cmd = restore_command("/app/my dir")
    assert "'/app/my dir'" in cmd
    assert "'/forge-shared/app/my dir'" in cmd


def test_overlapping_directories():
    assert overlapping_directories(["/app", "/app/cache", "/other"]) == [("/app", "/app/cache")]
    assert overlapping_directories(["/app/cache", "/app"]) == [("/app", "/app/cache")]
    assert overlapping_directories(["/app", "/application"]) == []
    assert overlapping_directories(["/a/", "/a"]) == [("/a", "/a")]


def test_staging_area_create_and_cleanup(tmp_path):
    staging = StagingArea.create(tmp_path)
    assert staging.exists
    assert staging.root.parent == tmp_path
    assert staging.root.name.startswith("forge-")
    assert staging.mount_point == STAGING_MOUNT
    assert staging.host_path("/app/x") == staging.root / "app" / "x"

    assert staging.cleanup() is True
    assert not staging.exists
    # already gone is fine
    assert staging.cleanup() is True


def test_staging_area_create_failure(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(StagingError):
        StagingArea.create(blocker / "sub")


def test_cleanup_failure_is_a_warning(tmp_path, monkeypatch, caplog):
    staging = StagingArea.create(tmp_path)

    def boom(path):
        raise PermissionError("read-only file system")

    monkeypatch.setattr(cache_mod.shutil, "rmtree", boom)
    with caplog.at_level(logging.WARNING, logger="forgeci.cache"):
        assert staging.cleanup() is False
    assert "failed to remove staging directory" in caplog.text


def test_persist_survives_failing_command_and_restore_brings_it_back(tmp_path, shell_runtime):
    """Runs the generated scripts with the host shell; the mount is simulated by path rewriting."""
    work = tmp_path / "work" / "deps"
    cache = CacheConfig(enabled=True, directories=[str(work)])
    stage = Stage(name="s", steps=[Step(name="x", command="x")])

    with StagingArea.create(tmp_path / "staging") as staging:
        produce = Step(name="produce", command=f"mkdir -p {work} && echo hello > {work}/f && exit 3")
        result = asyncio.run(
            execute_step(stage, produce, runtime=shell_runtime, staging=staging, cache=cache, secrets={})
        )
        assert result.status is StepStatus.FAILED
        assert result.exit_code == 3
        assert (staging.host_path(str(work)) / "f").read_text() == "hello\n"

        # a fresh container would not have the directory
        (work / "f").unlink()
        work.rmdir()

        consume = Step(name="consume", command=f"test \"$(cat {work}/f)\" = hello")
        result = asyncio.run(
            execute_step(stage, consume, runtime=shell_runtime, staging=staging, cache=cache, secrets={})
        )
        assert result.status is StepStatus.SUCCESS


def test_nothing_staged_is_a_noop(tmp_path, shell_runtime):
    work = tmp_path / "never-created"
    cache = CacheConfig(enabled=True, directories=[str(work)])
    stage = Stage(name="s", steps=[Step(name="x", command="x")])

    with StagingArea.create(tmp_path / "staging") as staging:
        step = Step(name="noop", command="true")
        result = asyncio.run(
            execute_step(stage, step, runtime=shell_runtime, staging=staging, cache=cache, secrets={})
        )
        assert result.ok
        assert not work.exists()
        assert not staging.host_path(str(work)).exists()
