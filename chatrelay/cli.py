"""chatrelay CLI — Typer + Rich terminal interface.

Commands: serve, models, chat.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chatrelay import __version__
from chatrelay.cli_display import ConsoleEventForwarder, render_usage
from chatrelay.context.tokens import build_token_counter
from chatrelay.errors import BudgetExceededError, StreamError
from chatrelay.keys import load_keys_env
from chatrelay.orchestrator import CompletionOrchestrator
from chatrelay.providers import build_backend, short_error_reason
from chatrelay.providers.registry import ModelCatalog, load_relay_config
from chatrelay.schemas.completion import CompletionRequest, CompletionResult, RelayConfig
from chatrelay.schemas.messages import Message, Role

# Load API keys from ~/.chatrelay/keys.env and .env on startup
load_keys_env()

console = Console()

app = typer.Typer(
    name="chatrelay",
    help="Context-window truncation and streaming completion relay.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"chatrelay {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Fit conversations into a model's context and relay completions."""


# ── Helpers ──────────────────────────────────────────────────────

def _load_config(path: Path | None) -> RelayConfig:
    """Load relay config, exit on error."""
    try:
        return load_relay_config(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from None


def _load_catalog(config: RelayConfig, path: Path | None = None) -> ModelCatalog:
    """Load the model catalog, exit on error."""
    try:
        return ModelCatalog.from_config(
            path, default_context_window=config.relay.default_context_window,
        )
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading models:[/red] {e}")
        raise typer.Exit(1) from None


# ── chatrelay serve ──────────────────────────────────────────────

@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Interface to bind"),
    port: int = typer.Option(None, "--port", "-p", help="Port to listen on"),
    log_level: str = typer.Option(
        "info", "--log-level",
        help="uvicorn log level (debug, info, warning, error)",
    ),
    config_path: Path = typer.Option(
        None, "--config", "-c",
        help="Path to a defaults.toml overriding the packaged one",
    ),
) -> None:
    """Start the HTTP relay server."""
    import uvicorn

    from chatrelay.server.app import create_app

    config = _load_config(config_path)
    host = host or config.server.host
    port = port or config.server.port

    console.print(Panel(
        f"[bold]URL:[/bold] http://{host}:{port}\n"
        f"[bold]Backend:[/bold] {config.relay.backend}\n"
        f"[bold]Upstream:[/bold] {config.upstream.base_url}",
        title="[bold blue]chatrelay[/bold blue]",
        border_style="blue",
    ))

    app_instance = create_app(config, catalog=_load_catalog(config))
    uvicorn.run(app_instance, host=host, port=port, log_level=log_level.lower())


# ── chatrelay models ─────────────────────────────────────────────

@app.command()
def models(
    models_path: Path = typer.Option(
        None, "--models", "-m",
        help="Path to a models.toml overriding the packaged one",
    ),
) -> None:
    """Show the model catalog as a table."""
    catalog = _load_catalog(RelayConfig(), models_path)
    entries = catalog.items()

    table = Table(title="Model Catalog", show_lines=True)
    table.add_column("Key", style="bold cyan")
    table.add_column("Display Name")
    table.add_column("Provider", style="dim")
    table.add_column("Context", justify="right")
    table.add_column("API Base", style="dim")

    for key, cfg in entries:
        table.add_row(
            key,
            cfg.display_name,
            cfg.provider,
            f"{cfg.context_window:,}",
            cfg.api_base or "-",
        )

    console.print(table)
    console.print(f"\n[dim]{len(entries)} models in catalog[/dim]")


# ── chatrelay chat ───────────────────────────────────────────────

@app.command()
def chat(
    prompt: str = typer.Argument(..., help="User message to send"),
    model: str = typer.Option("gpt-3.5-turbo", "--model", "-m", help="Model identifier"),
    system: str = typer.Option(None, "--system", "-s", help="System prompt"),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Stream the reply"),
    temperature: float = typer.Option(0.0, "--temperature", "-t", min=0.0, max=2.0),
    max_tokens: int = typer.Option(
        None, "--max-tokens",
        help="Maximum output tokens (default from config)",
    ),
    config_path: Path = typer.Option(
        None, "--config", "-c",
        help="Path to a defaults.toml overriding the packaged one",
    ),
) -> None:
    """Run one completion and print the reply."""
    config = _load_config(config_path)
    catalog = _load_catalog(config)

    prompts: list[Message] = []
    if system:
        prompts.append(Message(id="system", role=Role.SYSTEM, text=system))
    prompts.append(Message(id="user", role=Role.USER, text=prompt))

    request = CompletionRequest(
        model=model,
        temperature=temperature,
        max_output=max_tokens or config.relay.default_max_output,
        stream=stream,
    )

    try:
        result = asyncio.run(_run_chat(config, catalog, request, prompts))
    except BudgetExceededError as e:
        console.print(f"[red]Prompt too large:[/red] {e}")
        raise typer.Exit(1) from None
    except StreamError:
        # Already rendered by the console forwarder
        raise typer.Exit(1) from None
    except Exception as e:
        console.print(f"[red]Completion failed:[/red] {short_error_reason(e)}")
        raise typer.Exit(1) from None

    if not stream:
        console.print(Panel(
            Text(result.response_text) if result.response_text else "[dim](empty reply)[/dim]",
            title=f"[bold]{model}[/bold]",
            border_style="green",
        ))
    render_usage(console, model, result)


async def _run_chat(
    config: RelayConfig,
    catalog: ModelCatalog,
    request: CompletionRequest,
    prompts: list[Message],
) -> CompletionResult:
    backend = build_backend(config.relay.backend, config.upstream)
    counter = build_token_counter(config.relay.token_counter)
    orchestrator = CompletionOrchestrator(backend, counter, catalog, config.relay)

    credential = os.environ.get(config.upstream.api_key_env, "")
    forwarder = ConsoleEventForwarder(console) if request.stream else None
    try:
        return await orchestrator.execute(request, credential, prompts, forwarder)
    finally:
        await backend.aclose()


# ── Entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    app()
