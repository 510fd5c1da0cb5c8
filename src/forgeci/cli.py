# cli.py
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from forgeci.config import DEFAULT_CONFIG_FILE, load_pipeline, write_example_config
from forgeci.container import DockerRuntime
from forgeci.dag import plan, validate
from forgeci.errors import (
    ConfigError,
    ContainerRuntimeError,
    CycleDetectedError,
    ForgeError,
    SecretResolutionError,
    StageNotFoundError,
    ValidationError,
)
from forgeci.runner import RunOptions, run_pipeline
from forgeci.ui.console import Console, get_console, set_console


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load_or_exit(file: str):
    console = get_console()
    try:
        return load_pipeline(file)
    except ConfigError as e:
        suggestion = None
        if not Path(file).exists():
            suggestion = f"Create one with:\n  forge init --file {file}"
        console.print_error("Invalid configuration", str(e), suggestion=suggestion)
        sys.exit(1)


def _report_validation_error(e: ValidationError) -> None:
    console = get_console()
    if isinstance(e, CycleDetectedError):
        console.print_error(
            "Dependency cycle detected",
            f"The {e.scope} form a cycle:",
            details=[" -> ".join(e.cycle)],
            suggestion="Remove one of the depends_on entries in the cycle.",
        )
    else:
        console.print_error("Invalid pipeline", "The configuration cannot be run:", details=e.messages())


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.version_option(package_name="forgeci", prog_name="forge")
@click.pass_context
def cli(ctx, debug):
    """FORGE: run CI/CD pipelines locally in Docker containers."""
    configure_logging(debug)
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("-f", "--file", "file", default=DEFAULT_CONFIG_FILE, show_default=True, help="Path to the pipeline file")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Show images, commands and container details")
@click.option("--cache/--no-cache", "cache", default=None, help="Force caching on or off (overrides the file)")
@click.option("-s", "--stage", default=None, help="Run only this stage")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max containers running at once")
@click.pass_context
def run(ctx, file, verbose, cache, stage, workers):
    """Run the pipeline."""
    debug = ctx.obj.get("debug", False)
    console = Console(debug=debug, verbose=verbose)
    set_console(console)

    pipeline = _load_or_exit(file).normalized()
    # checked before docker is contacted
    try:
        validate(pipeline)
    except ValidationError as e:
        _report_validation_error(e)
        sys.exit(1)
    console.print_run_started(file, pipeline)

    options = RunOptions(
        verbose=verbose,
        cache_override=cache,
        stage_filter=stage,
        max_workers=workers,
    )
    runtime = DockerRuntime()

    async def _main():
        version = await runtime.ping()
        console.print_debug(f"Docker daemon {version}")
        return await run_pipeline(pipeline, runtime, options, reporter=console)

    try:
        outcome = asyncio.run(_main())
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except ValidationError as e:
        _report_validation_error(e)
        sys.exit(1)
    except SecretResolutionError as e:
        console.print_error(
            "Missing secret",
            str(e),
            suggestion=f"Export it before running:\n  export {e.env_var}=...",
        )
        sys.exit(1)
    except StageNotFoundError as e:
        console.print_error("Stage not found", str(e))
        sys.exit(1)
    except ContainerRuntimeError as e:
        console.print_error("Docker is not available", str(e), suggestion=e.hint)
        sys.exit(1)
    except ForgeError as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(outcome)
    if not outcome.success:
        sys.exit(1)


@cli.command(name="validate")
@click.option("-f", "--file", "file", default=DEFAULT_CONFIG_FILE, show_default=True, help="Path to the pipeline file")
def validate_cmd(file):
    """Validate a pipeline file without running it."""
    console = get_console()
    console.print_info("Validating configuration file...")
    pipeline = _load_or_exit(file).normalized()
    try:
        validate(pipeline)
    except ValidationError as e:
        _report_validation_error(e)
        sys.exit(1)
    console.print_validation_summary(pipeline)


@cli.command(name="plan")
@click.option("-f", "--file", "file", default=DEFAULT_CONFIG_FILE, show_default=True, help="Path to the pipeline file")
def plan_cmd(file):
    """Show the execution batches."""
    console = get_console()
    pipeline = _load_or_exit(file)
    try:
        batches = plan(pipeline)
    except ValidationError as e:
        _report_validation_error(e)
        sys.exit(1)
    console.print_plan(batches)


@cli.command()
@click.option("-f", "--file", "file", default=DEFAULT_CONFIG_FILE, show_default=True, help="Path of the file to create")
@click.option("-F", "--force", is_flag=True, default=False, help="Overwrite an existing file")
def init(file, force):
    """Create an example pipeline file."""
    console = get_console()
    try:
        path = write_example_config(file, force=force)
    except ConfigError as e:
        console.print_error("Cannot create configuration", str(e))
        sys.exit(1)
    console.print_info(f"Created example configuration file: {path}")
    console.print_info("Edit this file to configure your pipeline.")


if __name__ == "__main__":
    cli()
