#!/usr/bin/env python3
"""Main CLI entry point for SiteScribe using Typer.

Opens pages in a Playwright browser and captures them into archive bundles,
either once on demand or automatically after each page load.
"""

import asyncio
import json
import logging
from enum import IntEnum
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .. import __version__
from ..capture import (
    CaptureSettings,
    HostCapabilities,
    PlaywrightHost,
    StaticSettingsStore,
    YamlSettingsStore,
    create_auto_capture,
    run_capture_diagnostics,
)
from ..models.capture import CaptureOutcome, CaptureState
from ..persistence import LocalArtifactStore, RecentCapturesLog


logger = logging.getLogger(__name__)


RECENT_LOG_NAME = "recent_captures.json"


class ExitCode(IntEnum):
    """CLI exit codes."""
    SUCCESS = 0         # Capture persisted
    CAPTURE_FAILED = 1  # Capture aborted or skipped
    CONFIG_ERROR = 2    # Configuration or setup error


app = typer.Typer(
    name="sitescribe",
    help="SiteScribe - archival capture of live web pages",
    add_completion=False,
    rich_markup_mode="rich"
)


ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to YAML settings file")
]
OutOption = Annotated[
    Path,
    typer.Option("--out", "-o", help="Directory bundles are written to")
]
HeadfulOption = Annotated[
    bool,
    typer.Option("--headful", help="Show the browser window")
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging")
]
QuietOption = Annotated[
    bool,
    typer.Option("--quiet", "-q", help="Only log warnings and errors")
]


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logging for CLI runs."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def load_settings(config: Optional[Path], headful: bool = False):
    """Load settings for a CLI run.

    Returns:
        Tuple of (settings, settings store)

    Raises:
        typer.Exit: With CONFIG_ERROR when the settings are invalid
    """
    try:
        if config is not None:
            if not config.exists():
                typer.echo(f"Error: configuration file not found: {config}", err=True)
                raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)
            store = YamlSettingsStore(config)
            settings = store.load_sync()
        else:
            settings = CaptureSettings()
            store = StaticSettingsStore(settings)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    if headful:
        settings.browser.headless = False
    return settings, store


def print_outcome(outcome: CaptureOutcome) -> None:
    """Echo a short summary of a capture attempt."""
    if outcome.state == CaptureState.PERSISTED and outcome.bundle is not None:
        typer.echo(f"Captured {outcome.url}")
        typer.echo(f"  Folder:  {outcome.bundle.folder_path}")
        typer.echo(f"  Formats: {', '.join(outcome.bundle.record.formats)}")
        if outcome.failed_kinds:
            failed = ', '.join(kind.value for kind in outcome.failed_kinds)
            typer.echo(f"  Failed:  {failed}")
        if outcome.duration_ms is not None:
            typer.echo(f"  Took:    {outcome.duration_ms:.0f}ms")
    else:
        reason = outcome.abort_reason.value if outcome.abort_reason else outcome.state.value
        typer.echo(f"Capture of {outcome.url or outcome.page_handle} {outcome.state.value}: {reason}", err=True)
        if outcome.error:
            typer.echo(f"  {outcome.error}", err=True)


def outcome_exit_code(outcome: Optional[CaptureOutcome]) -> ExitCode:
    if outcome is not None and outcome.is_successful:
        return ExitCode.SUCCESS
    return ExitCode.CAPTURE_FAILED


async def _capture(
    url: str,
    settings: CaptureSettings,
    settings_store,
    out: Path,
    stabilize: bool
) -> CaptureOutcome:
    recent = RecentCapturesLog(path=out / RECENT_LOG_NAME)
    await recent.load()

    async with PlaywrightHost(settings.browser).session() as browser:
        scheduler = create_auto_capture(
            HostCapabilities.from_host(browser),
            LocalArtifactStore(out),
            settings=settings,
            settings_store=settings_store,
            recent=recent,
        )
        try:
            handle = await browser.open_page(url)
            if stabilize:
                await scheduler.monitor.start_monitoring(handle, url)
                changed = await scheduler.monitor.render_page(handle)
                logger.info(f"Render sweep finished (significant change: {changed})")
            return await scheduler.orchestrator.capture_now(handle)
        finally:
            await scheduler.orchestrator.script_fetcher.close()


async def _watch(
    url: str,
    settings: CaptureSettings,
    settings_store,
    out: Path,
    duration: float
) -> int:
    recent = RecentCapturesLog(path=out / RECENT_LOG_NAME)
    await recent.load()
    persisted = []

    async with PlaywrightHost(settings.browser).session() as browser:
        scheduler = create_auto_capture(
            HostCapabilities.from_host(browser),
            LocalArtifactStore(out),
            settings=settings,
            settings_store=settings_store,
            recent=recent,
        )
        scheduler.orchestrator.add_callback(print_outcome)
        scheduler.orchestrator.add_callback(
            lambda outcome: persisted.append(outcome) if outcome.state == CaptureState.PERSISTED else None
        )

        async def on_close(handle: str, _url: str) -> None:
            await scheduler.on_page_closed(handle)

        browser.add_load_hook(scheduler.on_page_loaded)
        browser.add_close_hook(on_close)

        try:
            async with scheduler.session():
                await browser.open_page(url)
                await asyncio.sleep(duration)
        finally:
            await scheduler.orchestrator.script_fetcher.close()

    return len(persisted)


async def _diagnose(url: str, settings: CaptureSettings) -> dict:
    async with PlaywrightHost(settings.browser).session() as browser:
        host = HostCapabilities.from_host(browser)
        scheduler = create_auto_capture(host, LocalArtifactStore("."), settings=settings)
        handle = await browser.open_page(url)
        return await run_capture_diagnostics(host, scheduler.orchestrator.bridge, handle)


@app.callback()
def main():
    """
    SiteScribe - archival capture of live web pages.

    Captures metadata, screenshots, markup, text and readable content of a
    page into a folder derived from its URL.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"SiteScribe CLI v{__version__}")


@app.command()
def capture(
    url: Annotated[str, typer.Argument(help="URL of the page to capture")],
    config: ConfigOption = None,
    out: OutOption = Path("."),
    headful: HeadfulOption = False,
    stabilize: Annotated[
        bool,
        typer.Option("--stabilize", help="Run the scroll render sweep before capturing")
    ] = False,
    verbose: VerboseOption = False,
    quiet: QuietOption = False,
):
    """Open a page, wait for it to load and capture it once."""
    configure_logging(verbose, quiet)
    settings, settings_store = load_settings(config, headful)

    outcome = asyncio.run(_capture(url, settings, settings_store, out, stabilize))
    print_outcome(outcome)
    raise typer.Exit(code=outcome_exit_code(outcome).value)


@app.command()
def watch(
    url: Annotated[str, typer.Argument(help="URL of the page to open")],
    duration: Annotated[
        float,
        typer.Option("--duration", "-d", min=1.0, help="Seconds to keep watching")
    ] = 60.0,
    config: ConfigOption = None,
    out: OutOption = Path("."),
    headful: HeadfulOption = False,
    verbose: VerboseOption = False,
    quiet: QuietOption = False,
):
    """Capture pages automatically after they load, for a fixed duration."""
    configure_logging(verbose, quiet)
    settings, settings_store = load_settings(config, headful)
    if not settings.auto_capture_enabled:
        typer.echo("Warning: auto-capture is disabled in the settings", err=True)

    captured = asyncio.run(_watch(url, settings, settings_store, out, duration))
    typer.echo(f"{captured} capture(s) persisted")
    raise typer.Exit(code=ExitCode.SUCCESS.value if captured else ExitCode.CAPTURE_FAILED.value)


@app.command()
def diagnose(
    url: Annotated[str, typer.Argument(help="URL of the page to diagnose")],
    config: ConfigOption = None,
    headful: HeadfulOption = False,
    verbose: VerboseOption = False,
    quiet: QuietOption = False,
):
    """Run capture diagnostics against a page."""
    configure_logging(verbose, quiet)
    settings, _ = load_settings(config, headful)

    report = asyncio.run(_diagnose(url, settings))
    typer.echo(json.dumps(report, indent=2, default=str))
    failed = any(isinstance(value, dict) and "error" in value for value in report.values())
    raise typer.Exit(code=ExitCode.CAPTURE_FAILED.value if failed else ExitCode.SUCCESS.value)


@app.command()
def recent(
    out: OutOption = Path("."),
    as_json: Annotated[bool, typer.Option("--json", help="Print records as JSON")] = False,
):
    """List the most recent captures."""
    log = RecentCapturesLog(path=out / RECENT_LOG_NAME)
    records = asyncio.run(log.load())

    if as_json:
        typer.echo(json.dumps([record.to_dict() for record in records], indent=2))
        return
    if not records:
        typer.echo("No captures recorded yet")
        return
    for record in records:
        typer.echo(f"{record.timestamp}  {record.title or '(untitled)'}")
        typer.echo(f"    {record.url}")
        typer.echo(f"    {', '.join(record.formats)}")


if __name__ == "__main__":
    app()
