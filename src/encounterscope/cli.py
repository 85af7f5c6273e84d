"""EncounterScope CLI."""

import asyncio
import json
from pathlib import Path
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from encounterscope.config import Settings, settings
from encounterscope.inference import ModelPricing, OllamaGateway
from encounterscope.logging_config import configure_logging
from encounterscope.models import OCRPage
from encounterscope.pipeline import (
    ChunkProcessor,
    CoordinateResolver,
    PendingReconciler,
    ProcessingResult,
    SessionManager,
    run_sessions,
)
from encounterscope.storage import (
    FinalEncounterRepository,
    PendingRepository,
    SessionRepository,
    close_db,
    create_engine,
    create_session_factory,
    get_session,
    init_db,
)

app = typer.Typer(
    name="encounterscope",
    help="Progressive encounter extraction for long scanned medical records",
    add_completion=False,
)
console = Console()


def load_pages(path: Path) -> list[OCRPage]:
    """Read OCR pages from a JSON file (a list of pages or {"pages": [...]})."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("pages", [])
    return [OCRPage.model_validate(page) for page in data]


def _build_manager(cfg: Settings, session_factory) -> tuple[SessionManager, OllamaGateway]:
    gateway = OllamaGateway(
        host=cfg.ollama_host,
        model=cfg.inference_model,
        timeout=cfg.inference_timeout_seconds,
        pricing=ModelPricing(
            input_per_million=cfg.input_cost_per_million,
            output_per_million=cfg.output_cost_per_million,
        ),
    )
    processor = ChunkProcessor(
        gateway,
        session_factory,
        config=cfg.chunk_config(),
        resolver=CoordinateResolver(cfg.coordinate_config()),
    )
    reconciler = PendingReconciler(session_factory, concurrency=cfg.reconcile_concurrency)
    return SessionManager(session_factory, processor, reconciler, cfg.session_config()), gateway


def _print_result(result: ProcessingResult) -> None:
    console.print(f"[bold green]Session {result.session_id}[/bold green] {result.status.value}")
    console.print(
        f"[dim]{result.total_chunks} chunks, {len(result.final_encounter_ids)} encounters, "
        f"{result.total_input_tokens}+{result.total_output_tokens} tokens, "
        f"cost {result.total_cost:.4f}[/dim]"
    )
    if result.requires_manual_review:
        console.print(
            f"[yellow]Needs review ({result.pending_count_unresolved} unresolved pendings):[/yellow]"
        )
        for reason in result.review_reasons:
            console.print(f"  - {reason}")


async def _process(paths: list[Path], workers: int) -> list:
    engine = create_engine(settings.database_url, echo=settings.log_level == "DEBUG")
    session_factory = create_session_factory(engine)
    manager, gateway = _build_manager(settings, session_factory)
    try:
        documents = [(str(path), load_pages(path)) for path in paths]
        return await run_sessions(manager, documents, max_concurrency=workers)
    finally:
        await gateway.aclose()
        await close_db(engine)


@app.command()
def process(
    ocr_path: Path = typer.Argument(..., exists=True, help="OCR JSON file for one document"),
) -> None:
    """Process a single OCR'd document."""
    configure_logging(settings.log_level)
    console.print(f"[bold blue]Processing:[/bold blue] {ocr_path}")
    [outcome] = asyncio.run(_process([ocr_path], workers=1))
    if isinstance(outcome, Exception):
        console.print(f"[red]Failed:[/red] {outcome}")
        raise typer.Exit(code=1)
    _print_result(outcome)


@app.command()
def batch(
    directory: Path = typer.Argument(..., exists=True, file_okay=False, help="Directory of OCR JSON files"),
    workers: int = typer.Option(settings.max_concurrent_sessions, help="Sessions run in parallel"),
) -> None:
    """Process every OCR JSON file in a directory."""
    configure_logging(settings.log_level)
    paths = sorted(directory.glob("*.json"))
    console.print(f"[bold blue]Batch processing:[/bold blue] {len(paths)} documents")
    console.print(f"[dim]Workers: {workers}[/dim]")
    failures = 0
    for path, outcome in zip(paths, asyncio.run(_process(paths, workers))):
        console.print(f"[bold]{path.name}[/bold]")
        if isinstance(outcome, Exception):
            failures += 1
            console.print(f"  [red]Failed:[/red] {outcome}")
        else:
            _print_result(outcome)
    if failures:
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db_command() -> None:
    """Create database tables."""
    configure_logging(settings.log_level)

    async def run() -> None:
        engine = create_engine(settings.database_url)
        try:
            await init_db(engine)
        finally:
            await close_db(engine)

    asyncio.run(run())
    console.print("[green]Database initialised[/green]")


@app.command()
def status(session_id: UUID = typer.Argument(..., help="Session ID")) -> None:
    """Show a session's status and metrics."""

    async def run() -> None:
        engine = create_engine(settings.database_url)
        try:
            async with get_session(create_session_factory(engine)) as db:
                orm = await SessionRepository(db).get_by_id(session_id)
                if orm is None:
                    console.print(f"[red]Session {session_id} not found[/red]")
                    raise typer.Exit(code=1)
                finals = await FinalEncounterRepository(db).list_for_session(session_id)
        finally:
            await close_db(engine)

        console.print(f"[bold blue]Session {orm.id}[/bold blue] {orm.status.value}")
        console.print(
            f"Chunk {orm.current_chunk}/{orm.total_chunks}, {orm.total_pages} pages, "
            f"cost {orm.total_cost:.4f}"
        )
        if orm.error_message:
            console.print(f"[red]{orm.error_message}[/red]")

        table = Table(title="Final encounters")
        table.add_column("Type")
        table.add_column("Pages")
        table.add_column("Date")
        table.add_column("Provider")
        table.add_column("Tier")
        for final in finals:
            pages = ", ".join(f"{r['start']}-{r['end']}" for r in final.page_ranges)
            table.add_row(
                final.encounter_type,
                pages,
                final.encounter_start_date or "-",
                final.provider_name or "-",
                final.quality_tier.value,
            )
        console.print(table)

    asyncio.run(run())


@app.command()
def review(session_id: UUID = typer.Argument(..., help="Session ID")) -> None:
    """List abandoned and unresolved pendings that need manual review."""

    async def run() -> None:
        engine = create_engine(settings.database_url)
        try:
            async with get_session(create_session_factory(engine)) as db:
                orm = await SessionRepository(db).get_by_id(session_id)
                rows = await PendingRepository(db).list_needing_review(session_id)
        finally:
            await close_db(engine)

        console.print("[bold blue]Review Queue[/bold blue]")
        if orm is not None:
            for reason in orm.review_reasons or []:
                console.print(f"  - {reason}")
        if not rows:
            console.print("[green]No pendings need review[/green]")
            return
        table = Table()
        table.add_column("Pending")
        table.add_column("Status")
        table.add_column("Chunk")
        table.add_column("Type")
        table.add_column("Reason")
        for row in rows:
            table.add_row(
                row.pending_id,
                row.status.value,
                str(row.chunk_number),
                row.encounter.get("encounter_type", "?"),
                row.review_reason or "",
            )
        console.print(table)

    asyncio.run(run())


if __name__ == "__main__":
    app()
