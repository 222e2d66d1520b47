"""CLI commands for the resilient fetch layer."""

import json
import logging
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path

import click
import structlog

from resilient_fetch.cache.durable import SqliteCacheStore
from resilient_fetch.cache.errors import CacheError
from resilient_fetch.cache.service import MultiTierCache
from resilient_fetch.fetch.errors import FetchError
from resilient_fetch.layer import FetchLayer, LayerConfig
from resilient_fetch.observability.logging import (
    bind_command_context,
    configure_logging,
)
from resilient_fetch.settings.loader import ConfigValidationError, resolve_layer_config


logger = structlog.get_logger()


@dataclass
class CliOptions:
    """Options shared by every command."""

    config_path: Path | None
    db_path: Path | None
    json_logs: bool
    verbose: bool


def _load_config(options: CliOptions) -> LayerConfig:
    """Resolve configuration, applying the --db override. Exits on invalid config."""
    try:
        config = resolve_layer_config(options.config_path)
    except ConfigValidationError as e:
        click.echo(f"Configuration validation failed: {e.file_path}", err=True)
        for error in e.errors:
            click.echo(f"  - {error['loc']}: {error['msg']}", err=True)
        sys.exit(1)

    if options.db_path is not None:
        cache_config = config.cache.model_copy(
            update={"durable_path": str(options.db_path)}
        )
        config = config.model_copy(update={"cache": cache_config})
    return config


def _start_command(ctx: click.Context, command: str) -> CliOptions:
    options: CliOptions = ctx.obj
    log_level = logging.DEBUG if options.verbose else logging.INFO
    configure_logging(level=log_level, json_format=options.json_logs)
    bind_command_context(command, str(uuid.uuid4()))
    return options


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to a YAML layer configuration (default: environment settings).",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to the SQLite cache database (overrides configuration).",
)
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    db_path: Path | None,
    json_logs: bool,
    verbose: bool,
) -> None:
    """Resilient cache-backed fetch layer CLI."""
    ctx.obj = CliOptions(
        config_path=config_path,
        db_path=db_path,
        json_logs=json_logs,
        verbose=verbose,
    )


@cli.command()
@click.argument("urls", nargs=-1, required=True)
@click.option(
    "--repeat",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Fetch every URL this many times (later rounds hit the cache).",
)
@click.option(
    "--ttl-ms",
    type=click.IntRange(min=1),
    default=None,
    help="TTL for newly cached values.",
)
@click.pass_context
def fetch(
    ctx: click.Context,
    urls: tuple[str, ...],
    repeat: int,
    ttl_ms: int | None,
) -> None:
    """Fetch URLs through the cache and print sizes and statistics as JSON."""
    options = _start_command(ctx, "fetch")
    config = _load_config(options)
    log = logger.bind(component="cli", command="fetch")

    results: list[dict[str, object]] = []
    failed = False

    with FetchLayer(config) as layer:
        for round_number in range(1, repeat + 1):
            for url in urls:
                try:
                    value = layer.fetch(url, ttl_ms=ttl_ms)
                except (FetchError, ValueError) as e:
                    failed = True
                    log.warning("fetch_failed", url=url, error=str(e))
                    results.append(
                        {"round": round_number, "url": url, "error": str(e)}
                    )
                    continue
                results.append(
                    {
                        "round": round_number,
                        "url": url,
                        "bytes": len(str(value).encode("utf-8")),
                    }
                )

        output = {
            "results": results,
            "client": layer.client.metrics.to_dict(),
            "domains": {
                origin: stats.to_dict()
                for origin, stats in layer.client.get_all_stats().items()
            },
            "cache": layer.cache.get_stats().to_dict(),
        }

    click.echo(json.dumps(output, indent=2))
    if failed:
        sys.exit(1)


@cli.group()
def cache() -> None:
    """Inspect and maintain the durable cache."""


def _open_store(config: LayerConfig) -> SqliteCacheStore:
    store = SqliteCacheStore(config.cache.durable_path)
    try:
        store.connect()
    except CacheError as e:
        click.echo(f"Cannot open cache database: {e}", err=True)
        sys.exit(1)
    return store


@cache.command("keys")
@click.argument("pattern", required=False)
@click.pass_context
def cache_keys(ctx: click.Context, pattern: str | None) -> None:
    """List stored keys, optionally filtered by a glob PATTERN."""
    options = _start_command(ctx, "cache-keys")
    config = _load_config(options)

    store = _open_store(config)
    with store:
        for key in store.list_keys(pattern):
            click.echo(key)


@cache.command("clear")
@click.pass_context
def cache_clear(ctx: click.Context) -> None:
    """Remove every stored entry."""
    options = _start_command(ctx, "cache-clear")
    config = _load_config(options)

    store = _open_store(config)
    with store:
        removed = store.clear()
    click.echo(f"Removed {removed} entries.")


@cache.command("sweep")
@click.pass_context
def cache_sweep(ctx: click.Context) -> None:
    """Remove entries past their stale window."""
    options = _start_command(ctx, "cache-sweep")
    config = _load_config(options)

    store = _open_store(config)
    with store, MultiTierCache(config.cache, store=store, start_cleanup=False) as swept:
        removed = swept.cleanup_expired()
    click.echo(f"Swept {removed} expired entries.")


if __name__ == "__main__":
    cli()
