"""Main CLI entry point for Mnemos.

This module provides the main Typer application. The ``jobs`` sub-commands
let an operator inspect and repair the embedding job queue directly against
the job database. A host process embeds the worker with ``run_worker``,
which wires the job manager from configuration and serves its health
endpoint.

Usage:
    mnemos jobs status
    mnemos jobs show <job-id>
    mnemos jobs retry-failed
    mnemos jobs recover
    mnemos jobs cleanup --retention-days 14
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mnemos.cli import jobs as jobs_cli
from mnemos.config import LoggingConfig, MnemosConfig, load_config
from mnemos.database.connection import get_engine, get_session_factory
from mnemos.embeddings.cache import EmbeddingCache
from mnemos.embeddings.openai_client import OpenAIEmbeddingProvider
from mnemos.embeddings.types import EmbeddingProvider, EntityStorage
from mnemos.jobs.manager import EmbeddingJobManager
from mnemos.jobs.rate_limiter import RateLimiter
from mnemos.jobs.store import JobStore
from mnemos.logging import get_logger, setup_logging
from mnemos.web.health import create_health_app, serve_health

app = typer.Typer(
    name="mnemos",
    help="Mnemos: durable embedding jobs for agent memory graphs",
    no_args_is_help=True,
)

app.add_typer(jobs_cli.app, name="jobs", help="Inspect and maintain the embedding job queue")

console = Console()
logger = get_logger(__name__)


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Mnemos configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
        job_store: Job store bound to session_factory
    """

    def __init__(self, config: MnemosConfig):
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)
        self.job_store = JobStore(self.session_factory)


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: MnemosConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


def build_manager(
    config: MnemosConfig,
    storage: EntityStorage,
    provider: EmbeddingProvider | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    worker_id: str | None = None,
) -> EmbeddingJobManager:
    """Assemble an embedding job manager from configuration.

    Args:
        config: Loaded Mnemos configuration
        storage: Graph store the manager reads entities from and writes vectors to
        provider: Embedding provider; defaults to an OpenAI-compatible client
            built from ``config.embedding`` (enter it before starting the manager)
        session_factory: Job database sessions; defaults to a new engine built
            from ``config.database``
        worker_id: Lease owner identity; defaults to host and process id

    Returns:
        Manager with its job store, rate limiter and embedding cache wired up.
    """
    if provider is None:
        provider = OpenAIEmbeddingProvider(config.embedding)
    if session_factory is None:
        session_factory = get_session_factory(get_engine(config.database))

    cache = None
    if config.embedding.cache_size > 0:
        cache = EmbeddingCache(
            max_size=config.embedding.cache_size,
            ttl_seconds=config.embedding.cache_ttl_seconds,
        )

    return EmbeddingJobManager(
        storage=storage,
        provider=provider,
        job_store=JobStore(session_factory),
        rate_limiter=RateLimiter(config.rate_limit),
        config=config.jobs,
        retry_policy=config.retry,
        worker_id=worker_id,
        cache=cache,
    )


async def run_worker(
    config: MnemosConfig,
    storage: EntityStorage,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    """Run the background job loops and the health endpoint until cancelled.

    The manager's loops are stopped when the health server exits, whether it
    returns normally or is cancelled.
    """
    async with OpenAIEmbeddingProvider(config.embedding) as provider:
        manager = build_manager(
            config, storage, provider=provider, session_factory=session_factory
        )
        await manager.start()
        logger.info(
            "embedding_worker_started",
            worker_id=manager.worker_id,
            host=config.web.host,
            port=config.web.port,
        )
        try:
            await serve_health(create_health_app(manager), config.web)
        finally:
            await manager.stop()
            logger.info("embedding_worker_stopped", worker_id=manager.worker_id)


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    log_config = config.logging
    if verbose:
        log_config = LoggingConfig(level="DEBUG", format="console", file=log_config.file)
    setup_logging(log_config)

    try:
        initialize_context(config)
    except Exception as e:
        console.print(f"[red]Error initializing application:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
