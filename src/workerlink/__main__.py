"""CLI entry point for workerlink."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from workerlink.config import WorkerOptions
from workerlink.errors import WorkerLinkError
from workerlink.limits import installed_version
from workerlink.program import ProgramSource


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_progress(value: Any) -> None:
    click.echo(f"progress: {json.dumps(value)}", err=True)


def _echo_batch(values: Any) -> None:
    for value in values if isinstance(values, list) else [values]:
        _echo_progress(value)


def _echo_console(level: str, args: list[Any]) -> None:
    text = " ".join(str(arg) for arg in args)
    click.echo(f"[{click.style(level, fg='cyan')}] {text}", err=True)


async def _run_once(
    source: ProgramSource, options: WorkerOptions, action: str, payload: Any
) -> Any:
    from workerlink.client import create

    async with await create(source, options) as worker:
        return await worker.call(action, payload)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Run named operations in a worker process or an in-loop emulation."""
    if version:
        click.echo(f"workerlink {installed_version()}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("program")
@click.argument("action")
@click.option("--payload", default="null", help="JSON payload passed to the operation")
@click.option("--fragment", is_flag=True, help="PROGRAM is a 'document.md#name' reference")
@click.option("--emulated", is_flag=True, help="Run in the cooperative emulator")
@click.option("--timeout-ms", type=click.FloatRange(min=0, min_open=True), default=None)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="TOML file with a [worker] table",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def run(
    program: str,
    action: str,
    payload: str,
    fragment: bool,
    emulated: bool,
    timeout_ms: float | None,
    config_path: Path | None,
    verbose: bool,
) -> None:
    """Call ACTION in PROGRAM once and print the JSON result."""
    _configure_logging(verbose)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--payload") from exc

    overrides: dict[str, Any] = {
        "on_live_progress": _echo_progress,
        "on_deferred_progress": _echo_batch,
        "on_console": _echo_console,
    }
    if emulated:
        overrides["use_real_backend"] = False
    if timeout_ms is not None:
        overrides["timeout_ms"] = timeout_ms

    try:
        if config_path is not None:
            options = WorkerOptions.load(config_path, **overrides)
        else:
            options = WorkerOptions.from_mapping(None, **overrides)
        source = ProgramSource(fragment=program) if fragment else ProgramSource(path=Path(program))
        result = asyncio.run(_run_once(source, options, action, data))
    except WorkerLinkError as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc

    click.echo(json.dumps(result))


@cli.command()
def version() -> None:
    """Show the installed version."""
    click.echo(installed_version())


if __name__ == "__main__":
    cli()
