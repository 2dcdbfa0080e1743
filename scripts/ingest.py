from __future__ import annotations

import logging
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config.settings import get_settings
from knowledge.retrieval import IngestStats, KeywordRetriever
from knowledge.storage.note_store import NoteStore

app = typer.Typer(help="Load uploads and learned notes into the keyword retrieval store.")
console = Console()


def _configure_logging(log_level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def _render_ingestion(title: str, stats: IngestStats) -> None:
    table = Table(title=title)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Scanned", str(stats.scanned))
    table.add_row("Added", str(stats.added))
    table.add_row("Already Stored", str(max(0, stats.scanned - stats.added)))
    console.print(table)


@app.command("uploads")
def uploads(
    directory: Path = typer.Option(None, help="Directory of .txt files (defaults to data/uploads)."),
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    retriever = KeywordRetriever(get_settings())
    _render_ingestion("Upload Ingestion Summary", retriever.ingest_uploads(directory))


@app.command("learned")
def learned(
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    retriever = KeywordRetriever(get_settings())
    _render_ingestion("Learned Note Ingestion Summary", retriever.ingest_learned())


@app.command("stats")
def stats(
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    settings = get_settings()
    summary = KeywordRetriever(settings).stats()

    table = Table(title="Retrieval Store")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Documents", str(summary["documents"]))
    table.add_row("Learned", str(summary["learned"]))
    table.add_row("Store Path", str(settings.rag_store_path))
    console.print(table)


@app.command("notes")
def notes(
    limit: int = typer.Option(20, min=1, help="Newest learned notes to list."),
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    store = NoteStore(get_settings().learned_dir)

    table = Table(title="Learned Notes")
    table.add_column("Id")
    table.add_column("Created")
    table.add_column("Question")
    for note in store.list_notes()[:limit]:
        table.add_row(note.note_id[:12], note.created_at, note.question)
    console.print(table)


if __name__ == "__main__":
    app()
