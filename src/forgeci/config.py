"""Pipeline document loading (YAML) and the starter file written by `forge init`.

Only structural parsing happens here. Graph checks (references, cycles,
empty commands) belong to dag.validate().
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .model import DEFAULT_VERSION, CacheConfig, Pipeline, Secret, Stage, Step

DEFAULT_CONFIG_FILE = "forge.yaml"

EXAMPLE_CONFIG = """\
# FORGE Configuration File
version: "1.0"

# Define stages in your pipeline
stages:
  - name: setup
    steps:
      - name: Install Dependencies
        command: echo "Installing dependencies..."
        image: alpine:latest
    parallel: false

  - name: test
    steps:
      - name: Run Tests
        command: echo "Running tests..."
        image: alpine:latest
    depends_on:
      - setup

  - name: build
    steps:
      - name: Build Application
        command: echo "Building application..."
        image: alpine:latest
    depends_on:
      - test

# Cache configuration
cache:
  enabled: true
  directories:
    - /app/node_modules
    - /app/.cache

# Secrets configuration
secrets:
  - name: API_TOKEN
    env_var: FORGE_API_TOKEN
"""


def _expect(value: Any, kind: type | tuple, where: str, what: str) -> Any:
    if not isinstance(value, kind):
        raise ConfigError(f"must be {what}, got {type(value).__name__}", location=where)
    return value


def _string_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    _expect(value, list, where, "a list of strings")
    for i, item in enumerate(value):
        _expect(item, str, f"{where}[{i}]", "a string")
    return list(value)


def _optional_str(obj: Dict[str, Any], key: str, where: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    return _expect(value, str, f"{where}.{key}", "a string")


def _coerce_step(obj: Any, where: str) -> Step:
    _expect(obj, dict, where, "a mapping")
    if "command" not in obj:
        raise ConfigError("missing required field 'command'", location=where)
    command = obj["command"]
    if command is None:
        command = ""
    _expect(command, str, f"{where}.command", "a string")

    env_raw = obj.get("env") or {}
    _expect(env_raw, dict, f"{where}.env", "a mapping")
    env: Dict[str, str] = {}
    for key, value in env_raw.items():
        if isinstance(value, (dict, list)):
            raise ConfigError("must be a scalar", location=f"{where}.env.{key}")
        # YAML turns `true`/`1` into bool/int; containers only see strings
        if value is None:
            env[str(key)] = ""
        elif isinstance(value, bool):
            env[str(key)] = "true" if value else "false"
        else:
            env[str(key)] = str(value)

    return Step(
        name=_optional_str(obj, "name", where),
        command=command,
        image=_optional_str(obj, "image", where),
        working_dir=_optional_str(obj, "working_dir", where) or None,
        env=env,
        depends_on=tuple(_string_list(obj.get("depends_on"), f"{where}.depends_on")),
    )


def _coerce_steps(value: Any, where: str) -> List[Step]:
    if value is None:
        return []
    _expect(value, list, where, "a list of steps")
    return [_coerce_step(item, f"{where}[{i}]") for i, item in enumerate(value)]


def _coerce_stage(obj: Any, where: str) -> Stage:
    _expect(obj, dict, where, "a mapping")
    name = obj.get("name")
    if not name or not isinstance(name, str):
        raise ConfigError("stage missing string 'name'", location=where)
    if "steps" not in obj:
        raise ConfigError(f"stage '{name}' missing required field 'steps'", location=where)
    parallel = obj.get("parallel", False)
    if parallel is None:
        parallel = False
    _expect(parallel, bool, f"{where}.parallel", "a boolean")
    return Stage(
        name=name,
        steps=tuple(_coerce_steps(obj["steps"], f"{where}.steps")),
        parallel=parallel,
        depends_on=tuple(_string_list(obj.get("depends_on"), f"{where}.depends_on")),
    )


def _coerce_cache(value: Any) -> CacheConfig:
    if value is None:
        return CacheConfig()
    _expect(value, dict, "cache", "a mapping")
    enabled = value.get("enabled", False)
    if enabled is None:
        enabled = False
    _expect(enabled, bool, "cache.enabled", "a boolean")
    return CacheConfig(
        enabled=enabled,
        directories=tuple(_string_list(value.get("directories"), "cache.directories")),
    )


def _coerce_secret(obj: Any, where: str) -> Secret:
    _expect(obj, dict, where, "a mapping")
    for key in ("name", "env_var"):
        if not obj.get(key) or not isinstance(obj.get(key), str):
            raise ConfigError(f"secret missing string '{key}'", location=where)
    return Secret(name=obj["name"], env_var=obj["env_var"])


def _build_pipeline(data: Any) -> Pipeline:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"pipeline root must be a mapping, got {type(data).__name__}")

    version = data.get("version", DEFAULT_VERSION)
    if version is None:
        version = DEFAULT_VERSION
    if isinstance(version, bool) or not isinstance(version, (str, int, float)):
        raise ConfigError("must be a string", location="version")

    stages_raw = data.get("stages") or []
    _expect(stages_raw, list, "stages", "a list of stages")
    stages = [_coerce_stage(item, f"stages[{i}]") for i, item in enumerate(stages_raw)]

    secrets_raw = data.get("secrets") or []
    _expect(secrets_raw, list, "secrets", "a list of secrets")

    return Pipeline(
        version=str(version),
        stages=tuple(stages),
        steps=tuple(_coerce_steps(data.get("steps"), "steps")),
        cache=_coerce_cache(data.get("cache")),
        secrets=tuple(_coerce_secret(item, f"secrets[{i}]") for i, item in enumerate(secrets_raw)),
    )


def load_pipeline_from_string(text: str) -> Pipeline:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML parse error: {e}") from e
    return _build_pipeline(data)


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline document from disk.

    Raises ConfigError on a missing/unreadable file or structural issues.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"configuration file not found: {p}")
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read configuration file: {e}") from e
    return load_pipeline_from_string(text)


def write_example_config(path: str | Path = DEFAULT_CONFIG_FILE, *, force: bool = False) -> Path:
    p = Path(path)
    if p.exists() and not force:
        raise ConfigError(f"file {p} already exists. Use --force to overwrite.")
    try:
        p.write_text(EXAMPLE_CONFIG, encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot write {p}: {e}") from e
    return p


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "EXAMPLE_CONFIG",
    "load_pipeline",
    "load_pipeline_from_string",
    "write_example_config",
]
