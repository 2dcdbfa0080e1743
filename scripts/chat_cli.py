from __future__ import annotations

import logging
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from runtime.chat import ChatReply, ChatService

app = typer.Typer(help="Interactive chat CLI for the tiered concierge.")
console = Console()

ENGINE_STYLES = {
    "retrieval": "blue",
    "primary": "green",
    "escalation": "magenta",
    "tool_authority": "yellow",
    "weather": "cyan",
    "error": "red",
}


def _configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        force=True,
    )
    for noisy_name in ("httpx", "httpcore", "openai", "openai._base_client"):
        noisy = logging.getLogger(noisy_name)
        noisy.setLevel(logging.WARNING)
        noisy.propagate = False


def _render_reply(reply: ChatReply, show_model: bool) -> None:
    title = reply.engine
    if show_model and reply.model_info.get("model"):
        title = f"{reply.engine} · {reply.model_info['model']}"
    console.print(Panel(reply.reply, title=title, border_style=ENGINE_STYLES.get(reply.engine, "white")))
    for suggestion in reply.suggestions or []:
        console.print(f"[dim]- {suggestion}[/dim]")


def _run_chat_loop(service: ChatService, session_id: str | None, show_model: bool) -> None:
    console.print("Type `exit` or `quit` to stop.")

    sid = session_id
    while True:
        try:
            query = console.input("\n[bold cyan]You > [/bold cyan]").strip()
        except (KeyboardInterrupt, EOFError):
            console.print("\nExiting chat.")
            break

        if not query:
            continue
        if query.lower() in {"exit", "quit"}:
            console.print("Exiting chat.")
            break

        reply = service.handle(query, session_id=sid)
        sid = reply.session_id
        _render_reply(reply, show_model)

    if sid:
        console.print(f"[dim]Session: {sid}[/dim]")


@app.command()
def run(
    session_id: str = typer.Option("", help="Resume an existing session id."),
    show_model: bool = typer.Option(False, help="Show the answering model next to the engine tag."),
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    service = ChatService()
    _run_chat_loop(service, session_id or None, show_model)


@app.command()
def ask(
    message: str = typer.Argument(..., help="Single message to send."),
    session_id: str = typer.Option("", help="Session id to attach the turn to."),
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, WARNING)."),
) -> None:
    _configure_logging(log_level)
    reply = ChatService().handle(message, session_id=session_id or None)
    _render_reply(reply, show_model=True)
    console.print(f"[dim]Session: {reply.session_id}[/dim]")


if __name__ == "__main__":
    app()
