"""Kripa CLI entry point.

Provides command-line interface for running the API server and for
operating on the analytics ledger and quota store.
"""

from __future__ import annotations

import asyncio
import importlib.metadata
import json
import logging
from datetime import UTC, datetime
from pathlib import Path

import typer
from typing_extensions import Annotated

from kripa.config import KripaConfig, get_config
from kripa.errors import QuotaStoreError, ShardCorruptError
from kripa.ledger import EventLedger, ShardStore
from kripa.quota import QuotaGuard

logger = logging.getLogger(__name__)

# Create CLI app
app = typer.Typer(
    name="kripa",
    help="Kripa - devotional story retrieval with daily quotas and engagement analytics",
    add_completion=False,
)

ConfigOption = Annotated[
    str, typer.Option("--config", "-c", help="Path to configuration file")
]


def _load_config(config: str) -> KripaConfig:
    if config and not Path(config).expanduser().exists():
        typer.echo(f"❌ Configuration file not found: {config}", err=True)
        raise typer.Exit(code=1)
    return get_config(config or None)


def _ledger(cfg: KripaConfig) -> EventLedger:
    assert cfg.ledger.analytics_dir is not None
    return EventLedger(
        ShardStore(cfg.ledger.analytics_dir),
        shard_size_ceiling_bytes=cfg.ledger.shard_size_ceiling_bytes,
        session_window_minutes=cfg.ledger.session_window_minutes,
    )


@app.command()
def start(
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind to")] = 0,
    config: ConfigOption = "",
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Enable verbose output")
    ] = False,
) -> None:
    """Start the Kripa API server.

    Examples:
        # Start with defaults from the environment
        kripa start

        # Start with custom host and port
        kripa start --host 0.0.0.0 --port 9000

        # Start with custom config file
        kripa start --config /path/to/config.yaml
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    cfg = _load_config(config)
    host = host or cfg.api_host
    port = port or cfg.api_port

    import uvicorn

    from kripa.api import create_app

    logger.info(f"Starting Kripa API on {host}:{port}")
    uvicorn.run(create_app(cfg), host=host, port=port, log_level="debug" if verbose else "info")


@app.command()
def stats(
    start: Annotated[str, typer.Option("--start", help="First day (YYYY-MM-DD)")] = "",
    end: Annotated[str, typer.Option("--end", help="Last day (YYYY-MM-DD)")] = "",
    config: ConfigOption = "",
) -> None:
    """Print the aggregate analytics report for a day range as JSON."""
    cfg = _load_config(config)
    today = datetime.now(UTC).date().isoformat()
    start = start or end or today
    end = end or start

    try:
        report = asyncio.run(_ledger(cfg).aggregate(start, end))
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(json.dumps(report.model_dump(mode="json"), indent=2))


@app.command("verify-shard")
def verify_shard(
    day: Annotated[str, typer.Argument(help="Day to verify (YYYY-MM-DD)")],
    config: ConfigOption = "",
) -> None:
    """Check that a shard's cached summary matches its raw records.

    Exit codes: 0 consistent, 1 mismatch or missing, 2 corrupt.
    """
    cfg = _load_config(config)

    try:
        result = asyncio.run(_ledger(cfg).verify_day(day))
    except ShardCorruptError as e:
        typer.echo(f"❌ Corrupt shard: {e.path} ({e.reason})", err=True)
        raise typer.Exit(code=2)

    if result is None:
        typer.echo(f"❌ No shard for {day}", err=True)
        raise typer.Exit(code=1)

    cached, recomputed = result
    if cached != recomputed:
        typer.echo(f"❌ Summary mismatch for {day}", err=True)
        for field, value in recomputed.model_dump().items():
            cached_value = getattr(cached, field)
            if cached_value != value:
                typer.echo(f"   {field}: cached={cached_value} recomputed={value}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"✅ Summary for {day} is consistent")
    typer.echo(json.dumps(recomputed.model_dump(), indent=2))


@app.command("quota-gc")
def quota_gc(config: ConfigOption = "") -> None:
    """Remove quota counters from previous days."""
    cfg = _load_config(config)
    assert cfg.quota.store_path is not None
    guard = QuotaGuard(
        cfg.quota.store_path,
        daily_cap=cfg.quota.daily_cap,
        utc_offset_minutes=cfg.quota.utc_offset_minutes,
    )

    async def run() -> int:
        await guard.load()
        return await guard.collect_garbage()

    try:
        removed = asyncio.run(run())
    except QuotaStoreError as e:
        typer.echo(f"❌ {e.message}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"✅ Removed {removed} stale quota counters ({len(guard)} remaining)")


@app.command()
def version() -> None:
    """Show Kripa version information."""
    try:
        ver = importlib.metadata.version("kripa")
    except importlib.metadata.PackageNotFoundError:
        from kripa import __version__ as ver
    typer.echo(f"Kripa version: {ver}")


@app.command()
def info(config: ConfigOption = "") -> None:
    """Show Kripa configuration summary."""
    cfg = _load_config(config)
    typer.echo("Kripa - devotional story retrieval")
    typer.echo("")
    typer.echo(f"Environment: {cfg.environment}")
    typer.echo(f"Corpus dir: {cfg.retrieval.corpus_dir}")
    typer.echo(f"Analytics dir: {cfg.ledger.analytics_dir}")
    typer.echo(f"Quota store: {cfg.quota.store_path}")
    typer.echo(f"Embeddings: {cfg.embedding.provider} ({cfg.embedding.model})")
    typer.echo(f"Completion: {'enabled' if cfg.completion.enabled else 'disabled'}")
    typer.echo(
        f"Retrieval: threshold={cfg.retrieval.similarity_threshold} top_k={cfg.retrieval.top_k}"
    )
    typer.echo(f"Daily cap: {cfg.quota.daily_cap}")


def main() -> None:
    """Main CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app()


if __name__ == "__main__":
    main()
