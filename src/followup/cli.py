"""Command-line interface for the follow-up engine.

Provides commands for configuration validation, one-off analysis of a
mailbox export, and a watch mode that re-runs the analysis on a schedule.

Usage:
    python -m followup validate-config
    python -m followup analyze --messages export.json --user me@example.com
    python -m followup watch --messages export.json --user me@example.com
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from followup.config import ConfigLoader, get_config_path, validate_config_file
from followup.core.logging import configure_logging

if TYPE_CHECKING:
    from followup.config_schema import AppConfig
    from followup.engine.analyzer import AnalysisSummary, FollowupAnalyzer
    from followup.models import FollowupCandidate
    from followup.sources.base import FollowupAdvisor
    from followup.sources.json_source import JsonMailSource

console = Console()

PRIORITY_STYLES = {"high": "bold red", "medium": "yellow", "low": "dim"}


def _load_app_config(config_path: Path | None) -> tuple[AppConfig, ConfigLoader | None]:
    """Load config from a file, or fall back to defaults when none exists.

    Prints an actionable error and exits with status 1 on invalid config.
    """
    from followup.config_schema import AppConfig
    from followup.core.errors import ConfigLoadError, ConfigValidationError

    path = config_path or get_config_path()
    if config_path is None and not path.exists():
        console.print(f"[dim]No config at {path}; using defaults.[/dim]")
        return AppConfig(), None

    loader = ConfigLoader(path)
    try:
        return loader.load(), loader
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(1)


def _build_advisor(config: AppConfig) -> FollowupAdvisor | None:
    """Claude advisor when AI is enabled and an API key is available."""
    if not config.analysis.ai_enabled:
        return None
    if not os.environ.get("ANTHROPIC_API_KEY"):
        console.print("[dim]ANTHROPIC_API_KEY not set; using local sentiment and summaries.[/dim]")
        return None

    import anthropic

    from followup.advisor.claude_advisor import ClaudeAdvisor

    # The engine's retry executor wraps every advisor call
    client = anthropic.AsyncAnthropic(max_retries=0)
    return ClaudeAdvisor(client, config.advisor)


def _build_analyzer(
    config: AppConfig, messages_path: Path
) -> tuple[FollowupAnalyzer, JsonMailSource]:
    from followup.core.errors import PermanentError
    from followup.engine.analyzer import FollowupAnalyzer
    from followup.sources.json_source import JsonMailSource

    try:
        source = JsonMailSource(messages_path)
    except PermanentError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    analyzer = FollowupAnalyzer(config, mail_source=source, advisor=_build_advisor(config))
    return analyzer, source


def _resolve_user(user: str | None, config: AppConfig) -> str:
    email = user or config.user_email
    if not email:
        console.print(
            "[red]Error:[/red] No mailbox owner. Pass [cyan]--user[/cyan] "
            "or set [cyan]user_email[/cyan] in config.yaml."
        )
        sys.exit(1)
    return email


def _render_candidates(candidates: list[FollowupCandidate]) -> None:
    if not candidates:
        console.print("[green]Nothing to follow up on.[/green]")
        return

    table = Table(title=f"Follow-ups needed ({len(candidates)})")
    table.add_column("Priority")
    table.add_column("Days", justify="right")
    table.add_column("Subject")
    table.add_column("To")
    table.add_column("Sentiment")
    table.add_column("Thread", justify="right")
    table.add_column("Summary", overflow="fold")

    for c in candidates:
        style = PRIORITY_STYLES.get(c.priority, "")
        table.add_row(
            f"[{style}]{c.priority}[/{style}]" if style else c.priority,
            str(c.days_without_response),
            c.subject or "(no subject)",
            ", ".join(c.recipients[:3]) + (" ..." if len(c.recipients) > 3 else ""),
            c.sentiment,
            str(len(c.thread_messages)),
            c.summary,
        )
    console.print(table)


def _render_summary(summary: AnalysisSummary | None) -> None:
    if summary is None:
        return
    console.print(f"\n[bold]Analysis Summary[/bold] (run {summary.run_id[:8]}...)")
    console.print(f"  Duration:      {summary.duration_ms}ms")
    console.print(f"  Conversations: {summary.groups}")
    console.print(f"  Candidates:    {summary.candidates}")
    console.print(f"  Failed:        {summary.errors}")
    if summary.cancelled:
        console.print("  [yellow]Run was cancelled[/yellow]")


class WatchCycle:
    """Scheduled analysis runs sharing one analyzer.

    The analyzer is built once, so its cache, circuit breakers and retry
    statistics carry over between runs. Before each run the config file is
    re-applied if it changed on disk, and the message export is re-read.
    """

    def __init__(
        self,
        analyzer: FollowupAnalyzer,
        source: JsonMailSource,
        email: str,
        loader: ConfigLoader | None = None,
        debug: bool = False,
    ):
        self.analyzer = analyzer
        self._source = source
        self._email = email
        self._loader = loader
        self._debug = debug

    async def run(self) -> list[FollowupCandidate] | None:
        """Run one analysis. Returns the candidates, or None if the run failed."""
        from followup.core.errors import FollowupError

        if self._loader is not None and self._loader.reload_if_changed():
            config = self._loader.config
            if not self._debug:
                configure_logging(log_level=config.log_level, json_output=config.json_logs)
            self.analyzer.reconfigure(config, advisor=_build_advisor(config))
            console.print("[dim]Configuration reloaded.[/dim]")

        try:
            self._source.reload()
            candidates = await self.analyzer.analyze_recent(self._email)
        except FollowupError as e:
            console.print(f"[red]Run failed:[/red] {e}")
            return None

        summary = self.analyzer.last_summary
        high = sum(1 for c in candidates if c.priority == "high")
        console.print(
            f"[dim]Run {summary.run_id[:8] if summary else '?'}...[/dim] "
            f"candidates={len(candidates)} high={high} "
            f"failed={summary.errors if summary else 0} "
            f"({summary.duration_ms if summary else 0}ms)"
        )
        return candidates


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """Follow-up engine - find sent mail that is still waiting for a reply."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    log_level = "DEBUG" if debug else "WARNING"
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or get_config_path()}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


_messages_option = click.option(
    "--messages",
    "-m",
    "messages_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON export of the mailbox (list of messages or {'value': [...]})",
)
_user_option = click.option(
    "--user",
    "-u",
    default=None,
    help="Mailbox owner address (default: user_email from config)",
)
_config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)


@cli.command("analyze")
@_messages_option
@_user_option
@_config_option
@click.option(
    "--recent",
    is_flag=True,
    help="Only analyze the most recent email_count messages within days_back",
)
def analyze(messages_path: Path, user: str | None, config_path: Path | None, recent: bool) -> None:
    """Run one analysis and print the follow-up candidates."""
    try:
        asyncio.run(_run_analyze(messages_path, user, config_path, recent))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_analyze(
    messages_path: Path,
    user: str | None,
    config_path: Path | None,
    recent: bool,
) -> None:
    config, _ = _load_app_config(config_path)
    email = _resolve_user(user, config)
    analyzer, source = _build_analyzer(config, messages_path)

    async with analyzer.cache:
        if recent:
            candidates = await analyzer.analyze_recent(email)
        else:
            candidates = await analyzer.analyze(source.messages, email)

    _render_candidates(candidates)
    _render_summary(analyzer.last_summary)


@cli.command("watch")
@_messages_option
@_user_option
@_config_option
@click.pass_context
def watch(
    ctx: click.Context, messages_path: Path, user: str | None, config_path: Path | None
) -> None:
    """Re-run the analysis every analysis.auto_refresh_minutes.

    The config file and the message export are reloaded before each run.
    Logging follows log_level and json_logs from the config unless --debug is set.
    """
    try:
        asyncio.run(_run_watch(messages_path, user, config_path, ctx.obj.get("debug", False)))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_watch(
    messages_path: Path,
    user: str | None,
    config_path: Path | None,
    debug: bool,
) -> None:
    """Run analysis in continuous mode with APScheduler."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    config, loader = _load_app_config(config_path)
    email = _resolve_user(user, config)
    if not debug:
        configure_logging(log_level=config.log_level, json_output=config.json_logs)

    analyzer, source = _build_analyzer(config, messages_path)
    cycle = WatchCycle(analyzer, source, email, loader=loader, debug=debug)

    interval = config.analysis.auto_refresh_minutes
    async with analyzer.cache:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            cycle.run,
            "interval",
            minutes=interval,
            id="followup_analysis",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()

        console.print(f"Analyzing every {interval} minutes. Press Ctrl+C to stop.")
        await cycle.run()

        # Wait until interrupted
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
        await stop_event.wait()

        scheduler.shutdown(wait=False)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
