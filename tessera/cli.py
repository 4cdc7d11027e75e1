"""Command-line interface for Tessera.

This module defines the CLI commands using the Click framework. It is a
thin adapter: it loads the YAML configuration, calls the build core and
reports the result.

Commands:
- build: Build the site into the output directory.
- watch: Build, then rebuild incrementally whenever sources change.
"""

from __future__ import annotations

from pathlib import Path

import click

from . import __version__
from .build import BuildResult, build_all
from .config import BuildConfig, load_config
from .errors import ConfigError
from .logging import configure_logging
from .utils import relative_to
from .watcher import watch as watch_site

CONFIG_FILENAME = "tessera.yaml"


@click.group()
@click.version_option(version=__version__, prog_name="tessera")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=CONFIG_FILENAME,
    show_default=True,
    help="Site configuration file; its directory is the project root.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log every build step")
@click.pass_context
def cli(ctx: click.Context, config_path: Path, verbose: bool):
    """Tessera incremental static site builder."""
    configure_logging(verbose=verbose)
    ctx.obj = {"config_path": config_path.resolve()}


@cli.command()
@click.option("--clean", is_flag=True, help="Empty the output directory before writing")
@click.option("--env", "environment", default=None, help="Environment variant name")
@click.pass_obj
def build(obj: dict, clean: bool, environment: str | None):
    """Build the site into the output directory."""
    config = _load(obj["config_path"], environment)
    result = build_all(config, clean=clean)
    _report(result, config)
    if result.exit_code:
        raise SystemExit(result.exit_code)


@cli.command()
@click.option("--env", "environment", default=None, help="Environment variant name")
@click.pass_obj
def watch(obj: dict, environment: str | None):
    """Build the site and rebuild on every source change."""
    config_path = obj["config_path"]
    config = _load(config_path, environment)

    def on_batch(result: BuildResult) -> None:
        _report(result, config)

    handle = watch_site(
        config, on_batch, reload_config=lambda: load_config(config_path, environment)
    )
    click.echo(f"Watching {config.source_root} (Ctrl+C to stop)")
    try:
        while handle.running:
            handle.join(0.5)
    except KeyboardInterrupt:
        click.echo("Stopping...")
    finally:
        handle.stop()
        handle.join()


def main() -> None:
    cli()


def _load(config_path: Path, environment: str | None) -> BuildConfig:
    try:
        return load_config(config_path, environment=environment)
    except ConfigError as exc:
        click.echo(click.style("Configuration error:", fg="red", bold=True), err=True)
        click.echo(click.style(f"  {exc}", fg="white"), err=True)
        raise SystemExit(2) from None


def _display(path: Path | None, config: BuildConfig) -> str:
    if path is None:
        return "-"
    rel = relative_to(path, config.source_root)
    return rel.as_posix() if rel is not None else str(path)


def _report(result: BuildResult, config: BuildConfig) -> None:
    if result.fatal is not None:
        click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
        click.echo(
            click.style(f"  File: {_display(result.fatal.source_path, config)}", fg="yellow"),
            err=True,
        )
        click.echo(click.style(f"  Error: {result.fatal.kind}: {result.fatal.message}", fg="white"), err=True)
        return
    for failure in result.failed:
        click.echo(
            click.style(f"  {failure.kind}", fg="red")
            + f" {_display(failure.source_path, config)}: {failure.message}",
            err=True,
        )
    pages = len(result.succeeded)
    line = (
        f"Built {pages} page{'s' if pages != 1 else ''} into {config.output_root} "
        f"({len(result.written)} written, {len(result.unchanged)} unchanged, "
        f"{len(result.removed)} removed) in {result.elapsed:.2f}s"
    )
    if result.failed:
        click.echo(click.style(f"{line}; {len(result.failed)} failed", fg="yellow"))
    else:
        click.echo(line)
