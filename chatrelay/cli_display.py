"""Terminal rendering for streamed completions.

ConsoleEventForwarder is the CLI's client channel: it receives the same
events the HTTP server would push over SSE and renders them with Rich
as they arrive.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chatrelay.schemas.completion import CompletionResult
from chatrelay.server.events import EventForwarder, EventKind
from chatrelay.streaming.reassembler import TERMINAL_MARKER


def _delta_text(payload: Any) -> str:
    """Text carried by an answer event, or "" for control chunks."""
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


class ConsoleEventForwarder(EventForwarder):
    """Prints answer deltas inline and error events as a red panel."""

    def __init__(self, console: Console) -> None:
        super().__init__()
        self._console = console
        self.received_text = ""

    async def _write(self, kind: str, payload: Any) -> None:
        if kind == EventKind.ERROR:
            message = payload.get("message", payload) if isinstance(payload, dict) else payload
            self._console.print()
            self._console.print(Panel(
                str(message),
                title="[bold red]Upstream error[/bold red]",
                border_style="red",
            ))
            return

        if payload == TERMINAL_MARKER:
            self._console.print()
            return

        text = _delta_text(payload)
        if text:
            self.received_text += text
            self._console.print(text, end="", markup=False, highlight=False, soft_wrap=True)


def render_usage(console: Console, model: str, result: CompletionResult) -> None:
    """Print the token accounting for a finished completion."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="dim")
    table.add_column("Value", justify="right")

    table.add_row("Model", model)
    table.add_row("Prompt tokens", f"{result.prompt_tokens:,}")
    table.add_row("Output cap", f"{result.max_output:,}")
    table.add_row("Total tokens", f"{result.total_tokens:,}")
    if result.interrupted:
        table.add_row("Stream", "[yellow]interrupted[/yellow]")

    console.print()
    console.print(table)
