"""
Command-line interface for buildstash.

Inspects and maintains the persisted cache of a build configuration without
running a build.

Main Commands:
    info: Show the index header and the pack table
    validate: Run startup validation and report warm or cold
    gc: Drop entries outside the retention window and rewrite the packs
    clear: Delete the cache namespace

Example Usage:
    $ buildstash info --config buildstash.toml
    $ buildstash validate --json
    $ buildstash --log-level DEBUG gc
    $ buildstash clear --yes
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Any

import click
import orjson
from rich.console import Console
from rich.table import Table

from ..cache.backends import PackStore
from ..core.config import BuildCacheConfig, load_config
from ..core.session import CacheSession, SessionState
from ..utils.error_handling import CacheError, ConfigurationError, create_error_report
from ..utils.logging_config import LogFormat, LogLevel, configure_logging

DEFAULT_CONFIG = "buildstash.toml"


def _load(config_path: str) -> BuildCacheConfig:
    path = Path(config_path)
    if not path.exists():
        if config_path != DEFAULT_CONFIG:
            raise click.ClickException(f"Configuration file not found: {config_path}")
        return BuildCacheConfig()
    try:
        return load_config(path)
    except ConfigurationError as e:
        raise click.ClickException(e.message) from e


def _emit_json(data: dict[str, Any]) -> None:
    sys.stdout.write(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS).decode())
    sys.stdout.write("\n")


def _format_time(timestamp: float) -> str:
    if not timestamp:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(timestamp))


@click.group()
@click.option("--config", "config_path", default=DEFAULT_CONFIG, show_default=True, help="Configuration file")
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default="WARNING",
    help="Log level",
)
@click.option("--log-file", help="Log file path")
@click.option(
    "--log-format",
    type=click.Choice(["simple", "detailed", "json", "structured"]),
    default="simple",
    help="Log format",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str,
    debug: bool,
    log_level: str,
    log_file: str | None,
    log_format: str,
) -> None:
    """buildstash - persistent, content-aware build cache"""
    if debug:
        log_level = "DEBUG"
    configure_logging(
        level=LogLevel(log_level),
        format_type=LogFormat(log_format),
        log_file=Path(log_file) if log_file else None,
        enable_file=bool(log_file),
        enable_console=True,
    )
    ctx.obj = _load(config_path)


@cli.command("info")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON")
@click.pass_obj
def info_cmd(config: BuildCacheConfig, as_json: bool) -> None:
    """Show the persisted index of the cache namespace."""
    store = PackStore(config.cache.namespace_dir)
    try:
        index = store.read_index()
    except CacheError as e:
        raise click.ClickException(e.message) from e

    if index is None:
        if as_json:
            _emit_json({"directory": str(store.directory), "exists": False})
        else:
            click.echo(f"No cache at {store.directory}")
        return

    packs = sorted(index.packs.values(), key=lambda info: info.pack_id)
    data = {
        "directory": str(store.directory),
        "exists": True,
        "format": index.format,
        "version": index.version,
        "name": index.name,
        "written_at": index.written_at,
        "entries": index.entry_count,
        "disk_bytes": store.disk_usage(),
        "packs": [
            {
                "id": info.pack_id,
                "entries": len(info.entries),
                "bytes": info.size_bytes,
                "last_accessed": max(info.entries.values(), default=0.0),
            }
            for info in packs
        ],
    }
    if as_json:
        _emit_json(data)
        return

    console = Console()
    console.print(f"[bold]{data['name']}[/bold] version={data['version']!r} format={data['format']}")
    console.print(f"{store.directory}  written {_format_time(index.written_at)}")
    console.print(f"{data['entries']} entries in {len(packs)} packs, {data['disk_bytes']} bytes on disk")

    table = Table(title="Packs")
    table.add_column("Pack", style="cyan")
    table.add_column("Entries", justify="right")
    table.add_column("Bytes", justify="right")
    table.add_column("Last accessed")
    for pack in data["packs"]:
        table.add_row(pack["id"], str(pack["entries"]), str(pack["bytes"]), _format_time(pack["last_accessed"]))
    console.print(table)


@cli.command("validate")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON")
@click.option("--show-errors", is_flag=True, default=False, help="Show the detailed error report")
@click.pass_obj
def validate_cmd(config: BuildCacheConfig, as_json: bool, show_errors: bool) -> None:
    """Run startup validation without building; exit code 1 means cold."""
    session = CacheSession(config)
    state = session.start()
    warm = state is SessionState.WARM_BUILD

    data = {
        "state": state.value,
        "warm": warm,
        "reason": session.cold_reason,
        "roots": list(session.record.roots),
        "entries": len(session.cache),
        "changed_paths": sorted(str(p) for p in session.changed_paths),
        "errors": session.errors.get_summary(),
    }
    if as_json:
        _emit_json(data)
    else:
        console = Console()
        if warm:
            console.print(f"[green]warm[/green]: {data['entries']} cached entries")
        else:
            console.print(f"[yellow]cold[/yellow]: {session.cold_reason}")
        for path in data["changed_paths"]:
            console.print(f"  changed: {path}")
        if show_errors and session.errors.get_errors():
            console.print(create_error_report(session.errors))
    sys.exit(0 if warm else 1)


@cli.command("gc")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON")
@click.pass_obj
def gc_cmd(config: BuildCacheConfig, as_json: bool) -> None:
    """Drop expired entries and rewrite the pack files."""
    session = CacheSession(config)
    state = session.start()
    if state is not SessionState.WARM_BUILD:
        raise click.ClickException(f"Cache is not valid ({session.cold_reason}); nothing to collect")

    before = len(session.cache)
    written = session.persist(force=True)
    stats = session.cache.get_stats()
    data = {
        "written": written,
        "entries_before": before,
        "entries_after": len(session.cache),
        "evicted": stats["evictions"],
        "packs": stats["packs"],
    }
    if as_json:
        _emit_json(data)
    else:
        click.echo(
            f"Removed {data['evicted']} expired entries; "
            f"{data['entries_after']} entries in {data['packs']} packs"
        )


@cli.command("clear")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@click.pass_obj
def clear_cmd(config: BuildCacheConfig, yes: bool) -> None:
    """Delete the index and every pack of the cache namespace."""
    store = PackStore(config.cache.namespace_dir)
    if not store.directory.exists():
        click.echo(f"No cache at {store.directory}")
        return
    if not yes:
        click.confirm(f"Delete the cache at {store.directory}?", abort=True)
    try:
        store.clear()
    except CacheError as e:
        raise click.ClickException(e.message) from e
    click.echo(f"Cleared {store.directory}")


def main() -> None:
    cli(prog_name="buildstash")


if __name__ == "__main__":
    main()
