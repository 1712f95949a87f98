"""
Courier command line interface.

Usage:
    courier --help
    courier check-config
    courier init-db
    courier add-source https://example.com/feed.xml
    courier crawl-once
    courier run
"""

import asyncio
import signal
import sys
from datetime import timedelta

import click
from rich.console import Console
from rich.table import Table

from .config.settings import get_settings, CourierSettings
from .database.connection import get_db_manager
from .database.schema import DatabaseSchema
from .ingestion.feed_fetcher import FeedFetcher
from .processing.backoff import BackoffTracker
from .processing.orchestrator import CrawlOrchestrator, TickReport
from .scheduler.crawl_scheduler import CrawlScheduler
from .search.indexer import SearchIndexer
from .storage.feed_repository import FeedRepository
from .utils.exceptions import CourierError, DuplicateSourceError
from .utils.logging import configure_application_logging, get_logger_for_component
from .utils.validators import URLValidator

console = Console()


def _configure_logging(settings: CourierSettings, debug: bool) -> None:
    configure_application_logging(
        log_level="DEBUG" if debug else settings.get_effective_log_level(),
        log_file=settings.logging.file_path,
        enable_console=settings.logging.console_logging,
        structured_logging=settings.logging.structured_logging,
        max_file_size=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )


def _repository(settings: CourierSettings) -> FeedRepository:
    DatabaseSchema(settings.database.path).create_tables()
    db = get_db_manager(settings.database.path, pool_size=settings.database.pool_size)
    return FeedRepository(db)


def _fetcher(settings: CourierSettings) -> FeedFetcher:
    return FeedFetcher(
        timeout=settings.fetch.timeout_seconds,
        user_agent=settings.fetch.user_agent,
        max_connections=settings.fetch.max_connections,
        max_redirects=settings.fetch.max_redirects,
        max_connections_per_host=settings.fetch.max_connections_per_host,
    )


def _indexer(settings: CourierSettings) -> SearchIndexer:
    return SearchIndexer(
        base_url=settings.search.url,
        index_uid=settings.search.index,
        api_key=settings.search.api_key,
        timeout=settings.search.timeout_seconds,
    )


def _orchestrator(settings, repository, fetcher, indexer) -> CrawlOrchestrator:
    return CrawlOrchestrator(
        repository,
        fetcher,
        indexer,
        batch_size=settings.crawl.batch_size,
        content_max_length=settings.crawl.content_max_length,
        backoff=BackoffTracker(
            floor=timedelta(seconds=settings.backoff.floor_seconds),
            ceiling=timedelta(seconds=settings.backoff.ceiling_seconds),
            factor=settings.backoff.factor,
        ),
    )


def _load_settings(ctx) -> CourierSettings:
    try:
        settings = get_settings()
    except CourierError as e:
        console.print(f"[bold red]❌ Configuration error: {e}[/bold red]")
        sys.exit(1)
    _configure_logging(settings, ctx.obj.get("debug", False))
    return settings


def _print_report(report: TickReport) -> None:
    table = Table(title="Crawl Tick")
    table.add_column("Source", style="cyan")
    table.add_column("Outcome")
    table.add_column("Status")
    table.add_column("Items", justify="right")
    table.add_column("Changed", justify="right")
    table.add_column("Error")

    for result in report.sources:
        outcome_style = "green" if result.success else "red"
        error = result.error
        table.add_row(
            result.source_url,
            f"[{outcome_style}]{result.outcome.value}[/{outcome_style}]",
            str(result.status or ""),
            str(result.items),
            str(result.changed),
            str(error) if error else "",
        )

    console.print(table)
    console.print(
        f"Indexed {report.documents_indexed} documents, "
        f"{len(report.unindexed_document_ids)} unindexed, "
        f"in {report.duration_seconds:.2f}s"
    )


@click.group(invoke_without_command=True)
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, debug):
    """Courier - feed ingestion into a search index."""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
def check_config():
    """Validate configuration from environment variables and .env."""
    console.print("[bold blue]🔧 Checking Courier Configuration[/bold blue]")

    try:
        settings = get_settings()
    except CourierError as e:
        console.print(f"[bold red]❌ Configuration error: {e}[/bold red]")
        sys.exit(1)

    table = Table(title="Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Values")

    table.add_row("Crawl", f"every {settings.crawl.interval_seconds}s, batch {settings.crawl.batch_size}")
    table.add_row(
        "Backoff",
        f"{settings.backoff.floor_seconds:.0f}s → {settings.backoff.ceiling_seconds:.0f}s, x{settings.backoff.factor}",
    )
    table.add_row("Fetch", f"timeout {settings.fetch.timeout_seconds}s, UA {settings.fetch.user_agent}")
    table.add_row("Database", settings.database.path)
    table.add_row(
        "Search",
        f"{settings.search.url} index={settings.search.index} "
        f"api_key={'set' if settings.search.api_key else 'unset'}",
    )
    table.add_row("Logging", f"{settings.get_effective_log_level()} → {settings.logging.file_path or 'console'}")

    console.print(table)
    console.print("[bold green]✅ Configuration is valid[/bold green]")


@cli.command()
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    settings = _load_settings(ctx)
    schema = DatabaseSchema(settings.database.path)
    schema.create_tables()

    if schema.verify_schema():
        console.print(f"[bold green]✅ Database ready at {settings.database.path}[/bold green]")
    else:
        console.print("[bold red]❌ Database schema verification failed[/bold red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def db_info(ctx):
    """Show database statistics."""
    settings = _load_settings(ctx)
    repository = _repository(settings)
    info = repository.db.get_database_info()

    table = Table(title="Database")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Path", info["database_path"])
    table.add_row("Size", f"{info['database_size_mb']:.2f} MB")
    for name, count in info["table_counts"].items():
        table.add_row(f"{name} rows", str(count))
    console.print(table)


@cli.command()
@click.argument('url')
@click.option('--title', default='', help='Initial title; replaced by the feed title on first fetch')
@click.pass_context
def add_source(ctx, url, title):
    """Register a feed URL."""
    settings = _load_settings(ctx)

    try:
        url = URLValidator.validate_source_url(url)
        source = _repository(settings).insert_source(url, title=title)
    except DuplicateSourceError:
        console.print(f"[yellow]⚠️ Source already registered: {url}[/yellow]")
        sys.exit(1)
    except CourierError as e:
        console.print(f"[bold red]❌ {e.user_message}[/bold red]")
        sys.exit(1)

    console.print(f"[bold green]✅ Added source {source.id}[/bold green] {source.url}")


@cli.command()
@click.option('--all', 'show_all', is_flag=True, help='Include inactive sources')
@click.pass_context
def list_sources(ctx, show_all):
    """List registered sources."""
    settings = _load_settings(ctx)
    sources = _repository(settings).list_sources(active_only=not show_all)

    table = Table(title=f"Sources ({len(sources)})")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("URL")
    table.add_column("Last crawled")
    table.add_column("Active")

    for source in sources:
        table.add_row(
            source.id,
            source.title,
            source.url,
            source.last_crawled_at.isoformat() if source.last_crawled_at else "never",
            "yes" if source.active else "no",
        )
    console.print(table)


@cli.command()
@click.option('--limit', default=20, show_default=True, help='Number of entries')
@click.option('--offset', default=0, show_default=True, help='Entries to skip')
@click.option('--source-id', default=None, help='Restrict to one source')
@click.pass_context
def recent(ctx, limit, offset, source_id):
    """Show the most recent stored entries."""
    settings = _load_settings(ctx)
    entries = _repository(settings).list_recent_entries(limit, offset, source_id=source_id)

    table = Table(title="Recent entries")
    table.add_column("Published")
    table.add_column("Source", style="cyan")
    table.add_column("Title")
    table.add_column("URL", style="dim")

    for entry in entries:
        table.add_row(
            entry.published_at.strftime("%Y-%m-%d %H:%M") if entry.published_at else "",
            entry.source_title,
            entry.title,
            entry.url,
        )
    console.print(table)


@cli.command()
@click.argument('url')
@click.option('--etag', default=None, help='If-None-Match validator')
@click.option('--last-modified', default=None, help='If-Modified-Since validator')
@click.pass_context
def fetch_feed(ctx, url, etag, last_modified):
    """Fetch one feed conditionally and show what came back."""
    settings = _load_settings(ctx)

    async def _fetch():
        async with _fetcher(settings) as fetcher:
            return await fetcher.fetch(url, etag, last_modified)

    try:
        result = asyncio.run(_fetch())
    except CourierError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        sys.exit(1)

    console.print(f"Status {result.status}  ETag={result.etag!r}  Last-Modified={result.last_modified!r}")
    if result.not_modified:
        console.print("[yellow]Not modified[/yellow]")
        return
    if result.feed is None:
        console.print("[yellow]Empty body[/yellow]")
        return

    table = Table(title=result.feed.title or url)
    table.add_column("Published")
    table.add_column("Title", style="cyan")
    table.add_column("Link", style="dim")
    for item in result.feed.items:
        table.add_row(
            item.published_at.isoformat() if item.published_at else "",
            item.title,
            item.link,
        )
    console.print(table)


@cli.command()
@click.pass_context
def crawl_once(ctx):
    """Run a single crawl tick."""
    settings = _load_settings(ctx)
    repository = _repository(settings)

    async def _crawl():
        async with _fetcher(settings) as fetcher, _indexer(settings) as indexer:
            orchestrator = _orchestrator(settings, repository, fetcher, indexer)
            scheduler = CrawlScheduler(
                orchestrator,
                interval_seconds=settings.crawl.interval_seconds,
                indexer=indexer,
                db_manager=repository.db,
                startup_timeout=settings.search.startup_timeout_seconds,
            )
            await scheduler.startup_checks()
            return await scheduler.run_once()

    try:
        report = asyncio.run(_crawl())
    except CourierError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        sys.exit(1)

    if report is None:
        console.print("[bold red]❌ Crawl tick did not complete[/bold red]")
        sys.exit(1)

    _print_report(report)
    if report.aborted:
        sys.exit(1)


@cli.command()
@click.pass_context
def run(ctx):
    """Run the crawl scheduler until interrupted."""
    settings = _load_settings(ctx)
    logger = get_logger_for_component("service")
    repository = _repository(settings)

    async def _serve():
        async with _fetcher(settings) as fetcher, _indexer(settings) as indexer:
            orchestrator = _orchestrator(settings, repository, fetcher, indexer)
            scheduler = CrawlScheduler(
                orchestrator,
                interval_seconds=settings.crawl.interval_seconds,
                indexer=indexer,
                db_manager=repository.db,
                startup_timeout=settings.search.startup_timeout_seconds,
            )
            await scheduler.startup_checks()

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, scheduler.stop)
                except NotImplementedError:
                    logger.debug(f"Signal handler for {sig.name} not supported")

            await scheduler.run_forever()

    console.print("[bold blue]🚀 Starting Courier crawl service[/bold blue]")
    try:
        asyncio.run(_serve())
    except CourierError as e:
        logger.error(f"Service failed to start: {e}", extra=e.to_dict())
        console.print(f"[bold red]❌ {e}[/bold red]")
        sys.exit(1)
    finally:
        repository.db.close_all_connections()


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
