"""CLI for streamboard using Typer and Rich.

Runs refresh cycles and queries the leaderboard and its history.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Annotated

import typer

from streamboard.config import Config
from streamboard.console import (
    make_table,
    print_error,
    print_json,
    print_success,
    print_warning,
    rank_movement,
    set_console,
    status,
)
from streamboard.console import print as cprint
from streamboard.errors import AuthorizationError, StoreError
from streamboard.refresh import RefreshEngine, RefreshReport
from streamboard.safe_logging import configure_rich_logging, redact_dict
from streamboard.scrapers.kworb import KworbArtistDetailsScraper
from streamboard.stats import ArtistSort, StatsService
from streamboard.stats_db import StatsDB
from streamboard.trigger import RefreshTrigger, TriggerMode, TriggerStatus


class OutputFormat(StrEnum):
    """Output format for CLI commands."""

    TEXT = "text"
    JSON = "json"


class ExitCode:
    """Standard exit codes for CLI commands."""

    SUCCESS = 0
    ERROR = 1
    NO_RESULTS = 2
    PARTIAL = 3


app = typer.Typer(
    name="streamboard",
    help="Streamboard: streaming chart leaderboard with refresh and history",
    no_args_is_help=True,
    add_completion=False,
)

history_app = typer.Typer(help="Snapshot history for artists and tracks")
app.add_typer(history_app, name="history")


class AppState:
    """Global application state passed between commands."""

    config: Config
    output_format: OutputFormat
    verbose: int


state = AppState()


def _format_ts(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=UTC).isoformat()


def _open_stats(details_scraper: KworbArtistDetailsScraper | None = None) -> StatsService:
    return StatsService(StatsDB(state.config.database.path), details_scraper=details_scraper)


@app.callback()
def main(
    config_path: Annotated[
        Path | None,
        typer.Option("--config", help="Path to configuration TOML file", exists=True),
    ] = None,
    output: Annotated[
        OutputFormat,
        typer.Option("--output", "-o", help="Output format"),
    ] = OutputFormat.TEXT,
    verbose: Annotated[
        int,
        typer.Option("--verbose", "-v", count=True, help="Increase verbosity"),
    ] = 0,
    db_path: Annotated[Path | None, typer.Option("--db", help="Stats database path")] = None,
    no_enrich: Annotated[bool, typer.Option(help="Skip Spotify metadata enrichment")] = False,
) -> None:
    """Streamboard: streaming chart leaderboard with refresh and history."""
    logger = logging.getLogger(__name__)

    # Load config (TOML + env vars)
    cfg = Config.load(config_path)
    if config_path:
        logger.info(f"Loaded config from {config_path}")

    # CLI > Env > Config File > Defaults
    if db_path:
        cfg.database.path = db_path
    if no_enrich:
        cfg.refresh.enrich = False

    if verbose > 0:
        log_level = logging.DEBUG if verbose >= 2 else logging.INFO
    else:
        log_level = getattr(logging, cfg.logging.level.upper(), logging.WARNING)

    console = configure_rich_logging(level=log_level, show_time=True, show_path=False)
    set_console(console)

    # Suppress external library logging unless very verbose (-vvv)
    if verbose < 3:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger.debug(f"Logging configured: level={logging.getLevelName(log_level)}")
    logger.debug(f"Effective config: {redact_dict(cfg.model_dump(mode='json'))}")

    state.config = cfg
    state.output_format = output
    state.verbose = verbose


# ====================================================================
# REFRESH
# ====================================================================


def _print_report(report: RefreshReport) -> None:
    if state.output_format == OutputFormat.JSON:
        print_json(report.to_dict())
        return

    table = make_table(
        "Refresh",
        [
            ("Scope", "left"),
            ("Kind", "left"),
            ("Records", "right"),
            ("Rejected", "right"),
            ("Purged", "right"),
            ("Enriched", "right"),
            ("Unresolved", "right"),
            ("Status", "left"),
        ],
    )
    for p in report.pipelines:
        table.add_row(
            p.scope,
            str(p.kind),
            str(p.records),
            str(p.rejected),
            str(p.purged),
            str(p.enriched),
            str(p.enrichment_misses),
            "[green]ok[/green]" if p.ok else f"[red]{p.error}[/red]",
        )
    cprint(table)


@app.command()
def refresh(
    wait: Annotated[
        bool, typer.Option("--wait", help="Run synchronously and report the outcome")
    ] = False,
    secret: Annotated[
        str | None,
        typer.Option(help="Admin secret (required in production)", envvar="ADMIN_SECRET"),
    ] = None,
) -> None:
    """Refresh every configured chart scope.

    Without --wait the refresh runs in the background and the command only
    stays alive until it finishes.

    Examples:
        streamboard refresh --wait
        streamboard -o json refresh --wait --secret "$ADMIN_SECRET"
    """
    logger = logging.getLogger(__name__)
    cfg = state.config

    with RefreshEngine.from_config(cfg) as engine:
        trigger = RefreshTrigger(engine, cfg.trigger)
        mode = TriggerMode.SYNCHRONOUS if wait else TriggerMode.FIRE_AND_FORGET

        try:
            result = trigger.trigger(mode, secret=secret)
        except AuthorizationError as e:
            print_error(f"Unauthorized: {e}")
            raise typer.Exit(code=ExitCode.ERROR) from e

        if result.status == TriggerStatus.STARTED:
            logger.info("Refresh started in background")
            with status("Refreshing charts..."):
                trigger.wait()
            report = trigger.last_report
        elif result.status == TriggerStatus.COMPLETED:
            report = result.report
        else:
            print_error(result.message)
            raise typer.Exit(code=ExitCode.ERROR)

    if report is None:
        print_error("Failed to refresh stats")
        raise typer.Exit(code=ExitCode.ERROR)

    _print_report(report)
    if report.ok:
        if state.output_format == OutputFormat.TEXT:
            print_success("Refresh completed")
        raise typer.Exit(code=ExitCode.SUCCESS)
    if report.partial:
        print_warning(f"{len(report.failed)} pipeline(s) failed")
        raise typer.Exit(code=ExitCode.PARTIAL)
    raise typer.Exit(code=ExitCode.ERROR)


# ====================================================================
# QUERIES
# ====================================================================


@app.command()
def artists(
    limit: Annotated[int, typer.Option(help="Maximum artists to show")] = 500,
    scope: Annotated[str, typer.Option(help="Chart scope (e.g. global, nl)")] = "global",
    sort: Annotated[ArtistSort, typer.Option(help="Sort order")] = ArtistSort.RANK,
) -> None:
    """Show the artist leaderboard."""
    try:
        rows = _open_stats().get_top_artists(limit=limit, scope=scope, sort_by=sort)
    except StoreError as e:
        print_error(str(e))
        raise typer.Exit(code=ExitCode.ERROR) from e

    if state.output_format == OutputFormat.JSON:
        print_json({"artists": [asdict(a) for a in rows]})
    else:
        table = make_table(
            f"Top artists ({scope})",
            [("#", "right"), ("Move", "right"), ("Artist", "left"), ("Monthly listeners", "right"), ("Change", "right")],
        )
        for a in rows:
            change = f"{a.listeners_delta:+,}" if a.listeners_delta is not None else ""
            table.add_row(str(a.rank), rank_movement(a.rank_delta), a.name, f"{a.monthly_listeners:,}", change)
        cprint(table)

    raise typer.Exit(code=ExitCode.SUCCESS if rows else ExitCode.NO_RESULTS)


@app.command()
def tracks(
    limit: Annotated[int, typer.Option(help="Maximum tracks to show")] = 100,
    scope: Annotated[str, typer.Option(help="Chart scope (e.g. global, nl)")] = "global",
) -> None:
    """Show the track leaderboard."""
    try:
        rows = _open_stats().get_top_tracks(limit=limit, scope=scope)
    except StoreError as e:
        print_error(str(e))
        raise typer.Exit(code=ExitCode.ERROR) from e

    if state.output_format == OutputFormat.JSON:
        print_json({"tracks": [asdict(t) for t in rows]})
    else:
        table = make_table(
            f"Top tracks ({scope})",
            [("#", "right"), ("Move", "right"), ("Track", "left"), ("Artist", "left"), ("Daily streams", "right")],
        )
        for t in rows:
            table.add_row(str(t.rank), rank_movement(t.rank_delta), t.title, t.artist_name, f"{t.daily_streams:,}")
        cprint(table)

    raise typer.Exit(code=ExitCode.SUCCESS if rows else ExitCode.NO_RESULTS)


@app.command()
def artist(
    artist_id_or_name: Annotated[str, typer.Argument(help="Spotify artist ID or artist name")],
    details: Annotated[bool, typer.Option(help="Fetch top songs and top videos from kworb")] = True,
) -> None:
    """Show one artist, preferring its global chart entry."""
    scraper = (
        KworbArtistDetailsScraper(
            timeout_s=state.config.refresh.fetch_timeout_s,
            user_agent=state.config.refresh.user_agent,
        )
        if details
        else None
    )
    try:
        with _open_stats(details_scraper=scraper) as stats:
            found = stats.get_artist_details(artist_id_or_name)
    except StoreError as e:
        print_error(str(e))
        raise typer.Exit(code=ExitCode.ERROR) from e

    if found is None:
        print_warning(f"Artist not found: {artist_id_or_name}")
        raise typer.Exit(code=ExitCode.NO_RESULTS)

    if state.output_format == OutputFormat.JSON:
        print_json(
            {
                "artist": asdict(found.artist),
                "top_songs": [asdict(s) for s in found.top_songs],
                "top_videos": [asdict(v) for v in found.top_videos],
            }
        )
        raise typer.Exit(code=ExitCode.SUCCESS)

    a = found.artist
    cprint(f"[bold]{a.name}[/bold] ({a.scope}) #{a.rank}")
    cprint(f"  Monthly listeners: {a.monthly_listeners:,}")
    if a.genres:
        cprint(f"  Genres: {', '.join(a.genres)}")
    if a.spotify_url:
        cprint(f"  Spotify: {a.spotify_url}")

    if found.top_songs:
        table = make_table("Top songs", [("Song", "left"), ("Streams", "right"), ("Daily", "right")])
        for s in found.top_songs:
            table.add_row(s.title, f"{s.total_streams:,}", f"{s.daily_streams:,}")
        cprint(table)
    if found.top_videos:
        table = make_table("Top videos", [("Video", "left"), ("Views", "right"), ("Yesterday", "right")])
        for v in found.top_videos:
            table.add_row(v.title, f"{v.total_views:,}", f"{v.yesterday_views:,}")
        cprint(table)
    raise typer.Exit(code=ExitCode.SUCCESS)


@history_app.command("artist")
def history_artist(
    name: Annotated[str, typer.Argument(help="Artist name")],
    scope: Annotated[str, typer.Option(help="Chart scope")] = "global",
    days: Annotated[int, typer.Option(help="Window in days")] = 30,
) -> None:
    """Show an artist's snapshot history."""
    try:
        snapshots = _open_stats().get_artist_history(name, scope=scope, window_days=days)
    except StoreError as e:
        print_error(str(e))
        raise typer.Exit(code=ExitCode.ERROR) from e

    if state.output_format == OutputFormat.JSON:
        print_json(
            {
                "artist_name": name,
                "scope": scope,
                "history": [
                    {
                        "date": _format_ts(s.created_at),
                        "rank": s.rank,
                        "monthly_listeners": s.monthly_listeners,
                        "listeners_delta": s.listeners_delta,
                    }
                    for s in snapshots
                ],
                "data_points": len(snapshots),
            }
        )
    else:
        table = make_table(f"{name} ({scope})", [("Date", "left"), ("#", "right"), ("Monthly listeners", "right")])
        for s in snapshots:
            table.add_row(_format_ts(s.created_at), str(s.rank), f"{s.monthly_listeners:,}")
        cprint(table)

    raise typer.Exit(code=ExitCode.SUCCESS if snapshots else ExitCode.NO_RESULTS)


@history_app.command("track")
def history_track(
    title: Annotated[str, typer.Argument(help="Track title")],
    artist_name: Annotated[str, typer.Argument(help="Artist name")],
    scope: Annotated[str, typer.Option(help="Chart scope")] = "global",
    days: Annotated[int, typer.Option(help="Window in days")] = 30,
) -> None:
    """Show a track's snapshot history."""
    try:
        snapshots = _open_stats().get_track_history(title, artist_name, scope=scope, window_days=days)
    except StoreError as e:
        print_error(str(e))
        raise typer.Exit(code=ExitCode.ERROR) from e

    if state.output_format == OutputFormat.JSON:
        print_json(
            {
                "track_name": title,
                "artist_name": artist_name,
                "scope": scope,
                "history": [
                    {
                        "date": _format_ts(s.created_at),
                        "rank": s.rank,
                        "daily_streams": s.daily_streams,
                        "total_streams": s.total_streams,
                    }
                    for s in snapshots
                ],
                "data_points": len(snapshots),
            }
        )
    else:
        table = make_table(
            f"{title} - {artist_name} ({scope})",
            [("Date", "left"), ("#", "right"), ("Daily streams", "right")],
        )
        for s in snapshots:
            table.add_row(_format_ts(s.created_at), str(s.rank), f"{s.daily_streams:,}")
        cprint(table)

    raise typer.Exit(code=ExitCode.SUCCESS if snapshots else ExitCode.NO_RESULTS)


@app.command("last-updated")
def last_updated() -> None:
    """Show when the leaderboard was last refreshed."""
    try:
        ts = _open_stats().get_last_refresh_timestamp()
    except StoreError as e:
        print_error(str(e))
        raise typer.Exit(code=ExitCode.ERROR) from e

    if state.output_format == OutputFormat.JSON:
        print_json({"last_updated": _format_ts(ts)})
    elif ts is None:
        print_warning("No refresh has completed yet")
    else:
        cprint(_format_ts(ts))

    raise typer.Exit(code=ExitCode.SUCCESS if ts is not None else ExitCode.NO_RESULTS)


# ====================================================================
# ENTRY POINT
# ====================================================================


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
