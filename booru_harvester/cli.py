"""CLI entry-point for the booru harvester."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .api import ListingAPI
from .config import DatabaseConfig, HarvesterConfig, ListingConfig, StorageConfig
from .db import Database
from .errors import HarvesterError
from .harvester import CrawlReport, Harvester

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _print_report(report: CrawlReport) -> None:
    table = Table(title=f"Crawl Summary: {report.tag}", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in report.stats.items():
        table.add_row(key.capitalize(), str(val))
    console.print(table)


@click.group()
@click.option("--db-host", envvar="DB_HOST", default="localhost", help="PostgreSQL host")
@click.option("--db-port", envvar="DB_PORT", default=5432, type=int, help="PostgreSQL port")
@click.option("--db-name", envvar="DB_NAME", default="booru", help="PostgreSQL database name")
@click.option("--db-user", envvar="DB_USER", default="booru", help="PostgreSQL user")
@click.option("--db-password", envvar="DB_PASSWORD", default="booru", help="PostgreSQL password")
@click.option(
    "--image-path", envvar="IMAGE_PATH", default="images",
    type=click.Path(file_okay=False, path_type=Path), help="Directory for downloaded assets",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, **kwargs: object) -> None:
    """Booru Harvester – import tagged posts and images into Postgres.

    Pages through the listing API for a tag, downloads every referenced
    image into a content-addressed directory and records posts and tags.
    """
    _setup_logging(bool(kwargs.pop("verbose")))
    ctx.ensure_object(dict)
    ctx.obj["db_cfg"] = DatabaseConfig(
        host=kwargs["db_host"],  # type: ignore[arg-type]
        port=kwargs["db_port"],  # type: ignore[arg-type]
        dbname=kwargs["db_name"],  # type: ignore[arg-type]
        user=kwargs["db_user"],  # type: ignore[arg-type]
        password=kwargs["db_password"],  # type: ignore[arg-type]
    )
    ctx.obj["storage_cfg"] = StorageConfig(root=kwargs["image_path"])  # type: ignore[arg-type]


def _make_config(ctx: click.Context) -> HarvesterConfig:
    return HarvesterConfig(db=ctx.obj["db_cfg"], storage=ctx.obj["storage_cfg"])


# ─── Commands ────────────────────────────────────────────────────


@cli.command()
@click.argument("tags", nargs=-1, required=True)
@click.pass_context
def crawl(ctx: click.Context, tags: tuple[str, ...]) -> None:
    """Crawl one or more tags.

    Example: booru-harvester crawl zumi yeero
    """
    with Harvester(_make_config(ctx)) as h:
        results = h.crawl_tags(tags)
    for tag, report in results.items():
        if report is None:
            console.print(f"[red]✗[/red] Crawl of {tag!r} aborted, see log")
            continue
        console.print(f"[green]✓[/green] Crawled {tag!r} ({len(report.failures)} failed tasks)")
        _print_report(report)
    if all(report is None for report in results.values()):
        sys.exit(1)


@cli.command()
@click.argument("tag")
@click.argument("page_no", type=int)
@click.pass_context
def page(ctx: click.Context, tag: str, page_no: int) -> None:
    """Crawl a single listing page of a tag.

    Example: booru-harvester page zumi 3
    """
    with Harvester(_make_config(ctx)) as h:
        try:
            report = h.crawl_page(tag, page_no)
        except HarvesterError as exc:
            console.print(f"[red]✗[/red] Page {page_no} of {tag!r} failed: {exc}")
            sys.exit(1)
    _print_report(report)


@cli.command()
@click.argument("tag")
@click.option("--limit", default=10, type=int, help="Number of posts to show")
def preview(tag: str, limit: int) -> None:
    """Preview the first listing page of a tag without importing.

    Example: booru-harvester preview zumi --limit 5
    """
    with ListingAPI(ListingConfig()) as api:
        try:
            listing = api.fetch_page(api.listing_url(tag))
        except HarvesterError as exc:
            console.print(f"[red]✗[/red] {exc}")
            sys.exit(1)
    table = Table(title=f"{tag} ({listing.count} results)", show_header=True, header_style="bold cyan")
    table.add_column("Id", style="bold", justify="right")
    table.add_column("Rating", justify="center")
    table.add_column("Size", justify="right")
    table.add_column("Tags", max_width=50)
    for post in listing.posts[:limit]:
        table.add_row(str(post.id), post.rating, f"{post.width}x{post.height}", post.tags)
    console.print(table)


@cli.command(name="init-db")
@click.option("--account", default="crawler", help="Name of the crawler account")
@click.pass_context
def init_db(ctx: click.Context, account: str) -> None:
    """Create the tables and the crawler account."""
    with Database(ctx.obj["db_cfg"]) as db:
        db.apply_schema(account)
    console.print("[green]✓[/green] Schema ready")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
