"""
Command line entry points.

``run`` replays one recorded test and exits 0 on success, 1 on failure;
it is what each isolated job executes. ``crawl`` smoke-crawls a URL without
a recorded session. ``serve`` starts the HTTP service.
"""

from __future__ import annotations

import asyncio
import logging
import os

import typer

from .service_config import BIND, PORT
from .service_crawl import crawl_site
from .service_errors import ReplayError
from .service_jobs import RUN_ID_ENV
from .service_logging import configure_logging, run_id_ctx
from .service_replay import replay_test, sanitize_test_name

app = typer.Typer(name="replay-service", help="Replay recorded browser sessions", no_args_is_help=True)


@app.command("run")
def run_cmd(
    test_name: str = typer.Argument(..., help="Name of the recorded test (sessions/<name>.json)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Replay a single recorded test."""
    configure_logging(logging.DEBUG if verbose else logging.INFO)
    run_id = os.getenv(RUN_ID_ENV, "")
    if run_id:
        run_id_ctx.set(run_id)

    outcome = asyncio.run(replay_test(sanitize_test_name(test_name)))
    if outcome.succeeded:
        typer.echo(f"✅ {outcome.test_name}: {outcome.steps_replayed}/{outcome.steps_total} steps replayed")
    else:
        typer.echo(f"❌ {outcome.test_name}: {outcome.error_kind} {outcome.error_message}", err=True)
    raise typer.Exit(code=outcome.exit_code)


@app.command("crawl")
def crawl_cmd(
    url: str = typer.Argument(..., help="Start URL"),
    device: str = typer.Option("desktop", "--device", "-d", help="Device to emulate, e.g. 'iPhone 11'"),
    depth: int = typer.Option(1, "--depth", min=0, help="How many link levels to follow"),
    links: int = typer.Option(3, "--links", min=0, help="Links followed per page"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Smoke-crawl a site: screenshots, placeholder form input and a page log."""
    configure_logging(logging.DEBUG if verbose else logging.INFO)
    try:
        report = asyncio.run(crawl_site(url, device, max_depth=depth, max_links=links))
    except ReplayError as exc:
        typer.echo(f"❌ crawl failed: {exc.describe()}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"✅ visited {len(report.visited)} page(s), {len(report.failed)} unreachable; log: {report.log_path}")


@app.command("serve")
def serve_cmd(
    host: str = typer.Option(BIND, help="Bind address"),
    port: int = typer.Option(PORT, help="Port"),
) -> None:
    """Start the HTTP control service."""
    import uvicorn

    uvicorn.run("replay_service:app", host=host, port=port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
