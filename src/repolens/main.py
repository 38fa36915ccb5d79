"""RepoLens CLI - repository analysis with live progress.

Usage:
    repolens analyze <repo-url> [options]
    repolens analyze https://github.com/pallets/flask --branch main --depth 1
    repolens validate https://github.com/pallets/flask
    repolens serve --port 8420
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import DEFAULT_BRANCH, DEFAULT_DEPTH, MAX_DEPTH, MIN_DEPTH, Settings
from .errors import RepoLensError
from .events import EventType
from .pipeline import AnalysisOptions
from .service import AnalysisService, build_service

console = Console()
logger = logging.getLogger(__name__)

NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy", "uvicorn.access", "multipart")


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once, on stderr so stdout stays pipeable."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Logging level (default from REPOLENS_LOG_LEVEL or INFO)")
@click.option("--debug", is_flag=True, help="Show internal diagnostics in error messages")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, debug: bool):
    """RepoLens - clone, analyze and enrich source repositories.

    Produces a file inventory, language set, dependency list and size
    metrics, plus qualitative insights from a local Ollama model (or a
    built-in fallback when no model is available).
    """
    load_dotenv()
    settings = Settings.from_env()
    if log_level:
        settings = dataclasses.replace(settings, log_level=log_level)
    if debug:
        settings = dataclasses.replace(settings, debug=True)
    setup_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.argument("url")
@click.option("--branch", "-b", default=DEFAULT_BRANCH, show_default=True, help="Branch to clone")
@click.option("--depth", "-d", default=DEFAULT_DEPTH, show_default=True,
              type=click.IntRange(MIN_DEPTH, MAX_DEPTH), help="Clone history depth")
@click.option("--no-deps", is_flag=True, help="Skip dependency extraction")
@click.option("--skip-model", is_flag=True, help="Use fallback insights, no model inference")
@click.option("--model", "-m", default=None, help="Ollama model name")
@click.option("--owner", default=None, help="Owner id recorded on the analysis (default: $USER)")
@click.option("--json-only", is_flag=True, help="Output raw JSON to stdout (for piping)")
@click.pass_obj
def analyze(settings: Settings, url: str, branch: str, depth: int, no_deps: bool,
            skip_model: bool, model: str | None, owner: str | None, json_only: bool):
    """Clone URL, analyze it and store the result.

    Examples:

        repolens analyze https://github.com/pallets/flask

        repolens analyze git@github.com:pallets/click.git --branch main --depth 1

        repolens analyze https://gitlab.com/group/project --skip-model --json-only
    """
    settings = dataclasses.replace(settings, allow_local_urls=True)
    if skip_model:
        settings = dataclasses.replace(settings, enrichment_enabled=False)
    if model:
        settings = dataclasses.replace(settings, ollama_model=model)
    owner = owner or os.getenv("USER") or "local"
    options = AnalysisOptions(url=url, branch=branch, depth=depth, include_dependencies=not no_deps)

    if not json_only:
        console.print()
        console.print(Panel.fit(
            f"[bold cyan]RepoLens v{__version__}[/] - Repository Analyzer",
            border_style="cyan",
        ))
        console.print(f"  {url} [dim]({branch}, depth {depth})[/]")

    service = build_service(settings)
    try:
        record = asyncio.run(_run_with_progress(service, owner, options, show=not json_only))
    except RepoLensError as e:
        raise click.ClickException(e.public_message(settings.debug))
    finally:
        service.close()

    from .server import to_response
    result = to_response(record, include_data=True)
    if json_only:
        click.echo(json.dumps(result.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2))
        return

    if record.status != "completed":
        raise click.ClickException(record.error or "Analysis failed")
    _print_result(result)


async def _run_with_progress(service: AnalysisService, owner: str, options: AnalysisOptions, show: bool):
    record = await service.start(owner, options, wait=False)
    # Subscribe before yielding to the loop so no event is missed
    sub = service.broadcaster.subscribe(record.id)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        disable=not show,
    ) as progress:
        task = progress.add_task("Queued...", total=100)
        async for event in sub:
            payload = event.payload
            if event.type == EventType.PROGRESS:
                progress.update(task, description=payload.get("message") or payload["stage"],
                                completed=payload["percent"])
            elif event.type == EventType.COMPLETED:
                progress.update(task, description="Done!", completed=100)
            elif event.type == EventType.FAILED:
                progress.update(task, description=f"[red]{payload.get('error')}[/]")
            if event.is_terminal:
                break

    service.broadcaster.unsubscribe(sub)
    await service.shutdown()
    return await service.get(record.id, owner)


@cli.command()
@click.argument("url")
@click.pass_obj
def validate(settings: Settings, url: str):
    """Check that URL is a reachable repository."""
    service = build_service(dataclasses.replace(settings, enrichment_enabled=False, allow_local_urls=True))
    try:
        result = asyncio.run(service.validate(url))
    finally:
        service.close()

    if not result["valid"]:
        raise click.ClickException(result.get("error") or "Repository is not accessible")

    console.print(f"[green]Valid repository:[/] {url}")
    metadata = result.get("metadata")
    if metadata:
        table = Table(show_header=False, border_style="dim")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key in ("full_name", "description", "language", "stars", "forks", "open_issues", "default_branch"):
            if metadata.get(key) is not None:
                table.add_row(key.replace("_", " ").title(), str(metadata[key]))
        console.print(table)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from REPOLENS_HOST)")
@click.option("--port", "-p", default=None, type=int, help="Port (default from REPOLENS_PORT)")
@click.pass_obj
def serve(settings: Settings, host: str | None, port: int | None):
    """Run the HTTP API and progress WebSocket."""
    import uvicorn

    from .server import create_app

    settings = dataclasses.replace(
        settings,
        host=host or settings.host,
        port=port or settings.port,
    )
    console.print(f"[bold cyan]RepoLens API[/] on http://{settings.host}:{settings.port}/api")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


@cli.command()
def version():
    """Show version information."""
    console.print(f"repolens v{__version__}")
    console.print("Repository analysis with live progress")


def _print_result(result) -> None:
    summary = result.summary
    data = result.analysis_data

    table = Table(title="Repository Analysis", show_header=False, border_style="dim")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Analysis", result.analysis_id)
    table.add_row("Files / Dirs", f"{data.structure.files:,} / {data.structure.directories:,}")
    table.add_row("Lines", f"{summary.total_lines:,} in {summary.total_files:,} text files")
    if summary.languages:
        table.add_row("Languages", ", ".join(summary.languages))
    table.add_row("Dependencies", str(summary.dependencies))
    if data.code_metrics.largest_file.path:
        largest = data.code_metrics.largest_file
        table.add_row("Largest file", f"{largest.path} ({largest.lines:,} lines)")
    table.add_row("Complexity", summary.complexity)
    table.add_row("Quality score", str(summary.quality_score))
    if result.metrics:
        table.add_row("Duration", f"{result.metrics.analysis_duration:.1f}s")
    console.print(table)

    insights = result.insights
    source = "model" if data.enrichment_source == "model" else "fallback, model unavailable"
    console.print()
    console.print(Panel(
        f"[bold]Architecture:[/] {insights.architecture}\n[bold]Quality:[/] {insights.quality}",
        title=f"Insights ({source})",
        border_style="green",
    ))
    for title, items in (("Performance", insights.performance),
                         ("Security", insights.security),
                         ("DevOps", insights.devops)):
        console.print(f"[bold]{title}:[/]")
        for item in items:
            console.print(f"  - {item}")


if __name__ == "__main__":
    cli()
