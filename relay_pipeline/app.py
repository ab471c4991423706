"""Typer CLI entrypoint for the relay moderation and verification pipelines."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, PipelineConfig
from .infra import (
    EndpointSelector,
    ResourcePool,
    SQLiteManager,
    SQLiteStore,
    playwright_factory,
)
from .logging_conf import available_pipeline_logs, configure_logging, default_log_path, tail_log
from .models import ModerationVerdict, VerificationOutcome
from .moderation import ClassifierClient, ModerationDispatcher
from .verification import (
    ExtractionPipeline,
    ProfileVerifier,
    VerificationDispatcher,
    VisionClient,
)

app = typer.Typer(
    help="Relay moderation and identity verification pipelines",
    no_args_is_help=True,
    rich_markup_mode=None,
)
config_app = typer.Typer(
    name="config",
    help="Configuration commands",
    no_args_is_help=True,
    rich_markup_mode=None,
)
log_app = typer.Typer(
    name="log",
    help="Log viewing commands",
    no_args_is_help=True,
    rich_markup_mode=None,
)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: PipelineConfig
    storage: SQLiteManager
    store: SQLiteStore
    closers: list = field(default_factory=list)

    def path(self, value: Path) -> Path:
        return self.repository.resolve_path(value)

    def close(self) -> None:
        while self.closers:
            self.closers.pop()()
        self.storage.close_all()


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    config = repository.load()
    storage = SQLiteManager()
    store = SQLiteStore(
        storage,
        repository.resolve_path(config.database_path),
    )
    return AppState(repository=repository, config=config, storage=storage, store=store)


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def build_classifier(state: AppState) -> ClassifierClient:
    classifier = ClassifierClient(
        state.config.moderation,
        download_dir=state.path(state.config.moderation.temp_dir),
    )
    state.closers.append(classifier.close)
    return classifier


def build_moderation(state: AppState) -> ModerationDispatcher:
    return ModerationDispatcher(state.store, build_classifier(state), state.config.moderation)


def build_verifier(state: AppState) -> ProfileVerifier:
    settings = state.config.verification
    pool = ResourcePool(
        playwright_factory(settings.headless, settings.page_timeout_ms),
        size=settings.pool_size,
        init_timeout=settings.pool_init_timeout_seconds,
        probe_timeout=settings.session_probe_timeout_seconds,
    )
    state.closers.append(pool.close)
    vision = VisionClient(
        settings.vision_endpoint, settings.vision_model, timeout=settings.vision_timeout_seconds
    )
    state.closers.append(vision.close)
    return ProfileVerifier(
        pool,
        EndpointSelector.from_config(settings.mirrors, settings.requests_per_minute),
        ExtractionPipeline(vision, passes=settings.consensus_passes),
        state.path(settings.temp_dir),
        mirrors_per_attempt=settings.mirrors_per_attempt,
        page_timeout=settings.page_timeout_ms / 1000,
    )


def build_verification(state: AppState) -> VerificationDispatcher:
    return VerificationDispatcher(
        state.store,
        build_verifier(state),
        state.config.verification,
        relay_pubkey=state.config.relay_pubkey,
    )


def _render_verdict(url: str, verdict: ModerationVerdict) -> Table:
    table = Table(title=f"Verdict · {url}", box=box.SIMPLE_HEAD)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="green", overflow="fold")
    table.add_row("decision", verdict.decision.value)
    table.add_row("content_level", str(verdict.content_level))
    table.add_row("confidence", f"{verdict.confidence:.2f}")
    table.add_row("category", verdict.category or "-")
    table.add_row("explanation", verdict.explanation or "-")
    return table


def _render_outcome(handle: str, outcome: VerificationOutcome) -> Table:
    table = Table(title=f"Verification · @{handle}", box=box.SIMPLE_HEAD)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="green", overflow="fold")
    table.add_row("verified", "yes" if outcome.is_verified else "no")
    table.add_row("source", outcome.verification_source.value)
    table.add_row("claimed_key", outcome.claimed_key or "-")
    table.add_row("followers", outcome.external_follower_count or "-")
    if outcome.error:
        table.add_row("error", outcome.error)
    return table


app.add_typer(config_app, name="config", help="Show the active configuration")
app.add_typer(log_app, name="log", help="View log files")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)
    ctx.call_on_close(ctx.obj.close)


@app.command("run", help="Start both pipelines and block until interrupted.")
def run(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    dispatchers: list = []
    if state.config.moderation.enabled:
        dispatchers.append(build_moderation(state))
    if state.config.verification.enabled:
        dispatchers.append(build_verification(state))
    if not dispatchers:
        console.print("Both pipelines are disabled in the configuration.", style="yellow")
        raise typer.Exit(code=0)

    for dispatcher in dispatchers:
        dispatcher.start()
    console.print(f"Running {len(dispatchers)} pipeline(s); press Ctrl+C to stop.", style="cyan")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("Stopping...", style="yellow")
    finally:
        for dispatcher in dispatchers:
            dispatcher.stop()


@app.command("sweep", help="Enqueue verification for every profile carrying a handle.")
def sweep(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    dispatcher = VerificationDispatcher(
        state.store,
        verifier=None,
        config=state.config.verification,
        relay_pubkey=state.config.relay_pubkey,
    )
    queued = dispatcher.sweep()
    console.print(f"Queued {queued} verification(s).", style="green")


@app.command("moderate", help="Classify one media URL and print the verdict.")
def moderate(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Media URL"),
    dispute_reason: Optional[str] = typer.Option(
        None, "--dispute", help="Evaluate as a dispute with this reason."
    ),
) -> None:
    state = _get_state(ctx)
    classifier = build_classifier(state)
    try:
        if dispute_reason:
            verdict = classifier.moderate_dispute_url(url, dispute_reason)
        else:
            verdict = classifier.moderate_url(url)
    except Exception as exc:
        console.print(f"Moderation failed: {exc}", style="red")
        raise typer.Exit(code=1)
    console.print(_render_verdict(url, verdict))


@app.command("verify", help="Verify one handle against a hex public key.")
def verify(
    ctx: typer.Context,
    pubkey: str = typer.Argument(..., help="Subject public key (hex)"),
    handle: str = typer.Argument(..., help="External handle, with or without @"),
) -> None:
    state = _get_state(ctx)
    handle = handle.strip().lstrip("@")
    verifier = build_verifier(state)
    try:
        outcome = verifier.verify_profile(pubkey, handle)
    except Exception as exc:
        console.print(f"Verification failed: {exc}", style="red")
        raise typer.Exit(code=1)
    console.print(_render_outcome(handle, outcome))
    if not outcome.is_verified:
        raise typer.Exit(code=2)


@app.command("cleanup", help="Run temp file cleanup and retention purges once.")
def cleanup(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    counts = build_moderation(state).run_cleanup()
    table = Table(title="Cleanup", box=box.SIMPLE_HEAD)
    table.add_column("Task", style="cyan")
    table.add_column("Removed", style="green", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)

    records = state.store.blocked_records()
    if not records:
        return
    retained = Table(title="Blocked events", box=box.SIMPLE_HEAD)
    retained.add_column("Event", style="cyan")
    retained.add_column("Level", justify="right")
    retained.add_column("Reason")
    retained.add_column("Retained until", style="magenta")
    for record in records:
        retained.add_row(
            record.event_id,
            str(record.content_level),
            record.reason,
            record.retain_until.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(retained)


@config_app.command("show", help="Print the active configuration as YAML.")
def config_show(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    console.print(f"# {state.repository.locator.config_path()}", style="dim")
    console.print(
        yaml.safe_dump(state.config.model_dump(mode="json"), allow_unicode=True, sort_keys=False),
        highlight=False,
        markup=False,
    )


@log_app.command("list", help="List available log files.")
def log_list() -> None:
    logs = list(available_pipeline_logs())
    if not logs:
        console.print("No pipeline logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("tail", help="Show the last lines of a log.")
def log_tail(
    name: str = typer.Option("pipeline", "--name", help="moderation, verification, pipeline or error"),
    lines: int = typer.Option(100, "--lines", "-n", help="Number of lines to show."),
) -> None:
    path = default_log_path(name)
    content = tail_log(path, lines)
    if not content:
        console.print("No log entries yet.", style="dim")
        return
    console.print(f"{path.name} · last {len(content)} lines", style="cyan")
    console.print("".join(content), highlight=False, markup=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
